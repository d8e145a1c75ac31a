"""
gitrescue/recovery_strategies.py -- Per-category remediation planning and execution.

One strategy per family of corruption types.  Each strategy turns a
:class:`~gitrescue.models.CorruptionIssue` into an ordered list of
:class:`~gitrescue.models.RecoveryAction` objects (a pure function of the
issue and the caller's options) and knows how to apply those actions.

Actions carry typed operations only (see ``gitrescue.models.operations``).
Git commands go through the :class:`~gitrescue.git_driver.RepositoryDriver`;
file and directory removals are confined to the working tree and its git
directory.

Usage::

    registry = RecoveryStrategyRegistry(driver)
    strategy = registry.find_strategy(issue)
    actions = strategy.generate_actions(issue, RecoveryOptions())
    outcome = strategy.execute_actions(actions, RecoveryOptions())
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from gitrescue.config import RescueSettings, load_settings
from gitrescue.git_driver import GitCommandError, RepositoryDriver
from gitrescue.models import (
    CorruptionIssue,
    CorruptionType,
    CreateStash,
    DataLossRisk,
    RecoveryAction,
    RecoveryOptions,
    RecoveryStrategyKind,
    RemoveDirectory,
    RemoveFile,
    RunGitCommand,
    StrategyOutcome,
)
from gitrescue.models.operations import describe_operation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class RecoveryStrategy:
    """Base class for all recovery strategies.

    Subclasses set :attr:`handled_types` and implement
    :meth:`generate_actions`.  Execution is shared: every operation of an
    action is applied in order and the first failing operation fails the
    whole action.
    """

    name = "base"
    handled_types: tuple[CorruptionType, ...] = ()

    def __init__(self, driver: RepositoryDriver, settings: Optional[RescueSettings] = None):
        self.driver = driver
        self.settings = settings or load_settings()

    def can_handle(self, issue: CorruptionIssue) -> bool:
        return issue.type in self.handled_types

    def generate_actions(self, issue: CorruptionIssue,
                         options: RecoveryOptions) -> list[RecoveryAction]:
        raise NotImplementedError

    def follow_up(self, action: RecoveryAction) -> list[str]:
        """Next steps to show the user after *action* has run."""
        return []

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_actions(self, actions: list[RecoveryAction],
                        options: RecoveryOptions) -> StrategyOutcome:
        """Apply *actions* in order and report what they achieved.

        A failing action is recorded in ``failed_actions`` and execution
        carries on with the next one; deciding whether to halt is the
        coordinator's job.
        """
        outcome = StrategyOutcome()
        for action in actions:
            try:
                self.apply_action(action)
            except (GitCommandError, OSError, ValueError) as exc:
                logger.warning("[%s] action failed: %s (%s)", self.name, action.description, exc)
                outcome.failed_actions.append(action)
                outcome.user_messages.append(f"Failed: {action.description}: {exc}")
                continue

            outcome.user_messages.append(f"Completed: {action.description}")
            if action.resolves_issue and action.issue_type is not None \
                    and action.issue_type not in outcome.resolved_issues:
                outcome.resolved_issues.append(action.issue_type)
            for step in self.follow_up(action):
                if step not in outcome.next_steps:
                    outcome.next_steps.append(step)
        return outcome

    def apply_action(self, action: RecoveryAction) -> None:
        logger.info("[%s] %s", self.name, action.description)
        for op in action.operations:
            logger.debug("[%s]   %s", self.name, describe_operation(op))
            self.apply_operation(op)

    def apply_operation(self, op) -> None:
        if isinstance(op, RemoveFile):
            path = self._confine(op.path)
            path.unlink(missing_ok=True)
        elif isinstance(op, RemoveDirectory):
            path = self._confine(op.path)
            if path.exists():
                shutil.rmtree(path)
        elif isinstance(op, RunGitCommand):
            result = self.driver.run(op.args, timeout=op.timeout_seconds, check=not op.allow_failure)
            if not result.ok:
                logger.info("%s exited %d (ignored)", op.describe(), result.returncode)
        elif isinstance(op, CreateStash):
            args = ["stash", "push", "-m", op.message]
            if op.include_untracked:
                args.append("--include-untracked")
            self.driver.run(args, timeout=self.settings.listing_timeout_seconds)
        else:
            raise TypeError(f"Unknown operation type: {type(op).__name__}")

    def _confine(self, raw_path: str) -> Path:
        """Resolve *raw_path* and refuse anything outside the repository."""
        path = Path(raw_path)
        if not path.is_absolute():
            path = self.driver.repo_path / path
        path = path.resolve()
        roots = (self.driver.repo_path, self.driver.git_dir.resolve())
        if not any(path == root or root in path.parents for root in roots):
            raise ValueError(f"Refusing to remove path outside the repository: {path}")
        if path in roots:
            raise ValueError(f"Refusing to remove repository root: {path}")
        return path

    def _git(self, *args: str, timeout: Optional[float] = None,
             allow_failure: bool = False) -> RunGitCommand:
        return RunGitCommand(
            args=list(args),
            timeout_seconds=timeout or self.settings.scan_timeout_seconds,
            allow_failure=allow_failure,
        )


# ---------------------------------------------------------------------------
# Lock files
# ---------------------------------------------------------------------------

class LockFileRecoveryStrategy(RecoveryStrategy):
    name = "lock_file"
    handled_types = (
        CorruptionType.STALE_LOCK_FILE,
        CorruptionType.INDEX_LOCK,
        CorruptionType.REF_LOCK,
    )

    def generate_actions(self, issue, options):
        return [
            RecoveryAction(
                strategy_kind=RecoveryStrategyKind.AUTO_REPAIR,
                description=f"Remove stale lock file {Path(path).name}",
                operations=[RemoveFile(path=path)],
                data_loss_risk=DataLossRisk.NONE,
                success_probability=95,
                estimated_time=1,
                issue_type=issue.type,
            )
            for path in issue.affected_files
        ]


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class IndexRecoveryStrategy(RecoveryStrategy):
    name = "index"
    handled_types = (CorruptionType.INVALID_INDEX, CorruptionType.CORRUPT_INDEX)

    def generate_actions(self, issue, options):
        if issue.type == CorruptionType.INVALID_INDEX:
            return [RecoveryAction(
                strategy_kind=RecoveryStrategyKind.AUTO_REPAIR,
                description="Rebuild missing index from HEAD",
                operations=[self._git("reset", timeout=self.settings.listing_timeout_seconds)],
                data_loss_risk=DataLossRisk.NONE,
                success_probability=98,
                estimated_time=1,
                issue_type=issue.type,
            )]

        index_path = str(self.driver.git_dir / "index")
        actions: list[RecoveryAction] = []
        if options.preserve_uncommitted:
            actions.append(RecoveryAction(
                strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
                description="Stash uncommitted changes before rebuilding the index",
                operations=[CreateStash(message="git-rescue: before index rebuild",
                                        include_untracked=True)],
                data_loss_risk=DataLossRisk.NONE,
                success_probability=80,
                estimated_time=1,
                issue_type=issue.type,
                resolves_issue=False,
            ))
        actions.append(RecoveryAction(
            strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
            description="Remove corrupted index and reset it from HEAD",
            operations=[
                RemoveFile(path=index_path),
                self._git("reset", "--mixed", "HEAD", timeout=self.settings.listing_timeout_seconds),
            ],
            data_loss_risk=(
                DataLossRisk.MODERATE if options.preserve_uncommitted else DataLossRisk.MINIMAL
            ),
            success_probability=90,
            estimated_time=2,
            requires_backup=True,
            issue_type=issue.type,
        ))
        return actions

    def follow_up(self, action):
        if any(isinstance(op, CreateStash) for op in action.operations):
            return ["Review stashed changes with 'git stash list' and reapply with 'git stash pop'"]
        return []


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

class ReferenceRecoveryStrategy(RecoveryStrategy):
    name = "reference"
    handled_types = (
        CorruptionType.DANGLING_REF,
        CorruptionType.INVALID_REF_FORMAT,
        CorruptionType.CORRUPT_REF,
    )

    def generate_actions(self, issue, options):
        if issue.type == CorruptionType.DANGLING_REF:
            ref = issue.context.get("ref")
            if not ref:
                raise ValueError("Dangling ref issue does not name the ref to prune")
            return [RecoveryAction(
                strategy_kind=RecoveryStrategyKind.AUTO_REPAIR,
                description=f"Prune dangling reference {ref}",
                operations=[
                    self._git("update-ref", "-d", ref, timeout=self.settings.listing_timeout_seconds),
                    self._git("gc", "--prune=now", timeout=self.settings.heavy_timeout_seconds,
                              allow_failure=True),
                ],
                data_loss_risk=DataLossRisk.MINIMAL,
                success_probability=90,
                estimated_time=2,
                requires_backup=True,
                issue_type=issue.type,
            )]

        if issue.type == CorruptionType.INVALID_REF_FORMAT:
            return [
                RecoveryAction(
                    strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
                    description=f"Remove malformed ref file {path}",
                    operations=[RemoveFile(path=path)],
                    data_loss_risk=DataLossRisk.MINIMAL,
                    success_probability=85,
                    estimated_time=1,
                    requires_backup=True,
                    issue_type=issue.type,
                )
                for path in issue.affected_files
            ]

        return [RecoveryAction(
            strategy_kind=RecoveryStrategyKind.MANUAL_INTERVENTION,
            description="Inspect reference corruption with a full fsck",
            operations=[self._git("fsck", "--full", allow_failure=True)],
            data_loss_risk=DataLossRisk.MODERATE,
            success_probability=70,
            estimated_time=15,
            requires_backup=True,
            requires_user_confirmation=True,
            issue_type=issue.type,
            resolves_issue=False,
        )]

    def follow_up(self, action):
        if action.strategy_kind == RecoveryStrategyKind.MANUAL_INTERVENTION:
            return [
                "Review the fsck output for broken references",
                "Recreate damaged refs with 'git update-ref' or restore from a backup",
            ]
        return []


# ---------------------------------------------------------------------------
# Incomplete operations
# ---------------------------------------------------------------------------

_ABORT_COMMANDS = {
    CorruptionType.INCOMPLETE_MERGE: ("merge", ("merge", "--abort")),
    CorruptionType.INCOMPLETE_REBASE: ("rebase", ("rebase", "--abort")),
    CorruptionType.INCOMPLETE_CHERRY_PICK: ("cherry-pick", ("cherry-pick", "--abort")),
}


class IncompleteOperationRecoveryStrategy(RecoveryStrategy):
    name = "incomplete_operation"
    handled_types = (
        CorruptionType.INCOMPLETE_MERGE,
        CorruptionType.INCOMPLETE_REBASE,
        CorruptionType.INCOMPLETE_CHERRY_PICK,
        CorruptionType.INCOMPLETE_APPLY,
    )

    def generate_actions(self, issue, options):
        timeout = self.settings.listing_timeout_seconds
        if issue.type == CorruptionType.INCOMPLETE_APPLY:
            return [RecoveryAction(
                strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
                description="Abort incomplete patch application",
                operations=[
                    self._git("am", "--abort", timeout=timeout, allow_failure=True),
                    RemoveDirectory(path=str(self.driver.git_dir / "rebase-apply")),
                ],
                data_loss_risk=DataLossRisk.MINIMAL,
                success_probability=90,
                estimated_time=1,
                issue_type=issue.type,
            )]

        label, args = _ABORT_COMMANDS[issue.type]
        return [RecoveryAction(
            strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
            description=f"Abort incomplete {label} operation",
            operations=[self._git(*args, timeout=timeout)],
            data_loss_risk=DataLossRisk.MINIMAL,
            success_probability=95,
            estimated_time=1,
            issue_type=issue.type,
        )]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationRecoveryStrategy(RecoveryStrategy):
    name = "configuration"
    handled_types = (CorruptionType.INVALID_REMOTE, CorruptionType.CORRUPT_CONFIG)

    def generate_actions(self, issue, options):
        if issue.type == CorruptionType.INVALID_REMOTE:
            remote = issue.context.get("remote")
            if not remote:
                raise ValueError("Invalid remote issue does not name the remote")
            return [RecoveryAction(
                strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
                description=f"Remove remote '{remote}' with an invalid URL",
                operations=[self._git("remote", "remove", remote,
                                      timeout=self.settings.probe_timeout_seconds)],
                data_loss_risk=DataLossRisk.NONE,
                success_probability=90,
                estimated_time=1,
                issue_type=issue.type,
            )]

        return [RecoveryAction(
            strategy_kind=RecoveryStrategyKind.MANUAL_INTERVENTION,
            description="Inspect repository configuration",
            operations=[self._git("config", "--list", timeout=self.settings.probe_timeout_seconds,
                                  allow_failure=True)],
            data_loss_risk=DataLossRisk.MINIMAL,
            success_probability=80,
            estimated_time=10,
            requires_user_confirmation=True,
            issue_type=issue.type,
            resolves_issue=False,
        )]

    def follow_up(self, action):
        if action.strategy_kind == RecoveryStrategyKind.MANUAL_INTERVENTION:
            return [
                "Fix the syntax error reported for .git/config",
                "Restore .git/config from a backup if it cannot be repaired",
            ]
        return ["Re-add the remote with a valid URL using 'git remote add'"]


# ---------------------------------------------------------------------------
# Object database
# ---------------------------------------------------------------------------

class ObjectDatabaseRecoveryStrategy(RecoveryStrategy):
    name = "object_database"
    handled_types = (
        CorruptionType.CORRUPT_PACKFILE,
        CorruptionType.CORRUPT_OBJECT,
        CorruptionType.MISSING_OBJECT,
    )

    def generate_actions(self, issue, options):
        heavy = self.settings.heavy_timeout_seconds
        if issue.type == CorruptionType.CORRUPT_PACKFILE:
            return [RecoveryAction(
                strategy_kind=RecoveryStrategyKind.DATA_RECONSTRUCTION,
                description="Repack the object database",
                operations=[
                    self._git("repack", "-a", "-d", timeout=heavy),
                    self._git("gc", "--aggressive", "--prune=now", timeout=heavy),
                ],
                data_loss_risk=DataLossRisk.MODERATE,
                success_probability=75,
                estimated_time=10,
                requires_backup=True,
                requires_user_confirmation=True,
                issue_type=issue.type,
            )]

        return [RecoveryAction(
            strategy_kind=RecoveryStrategyKind.BACKUP_RESTORE,
            description="Object corruption requires restoring from a backup",
            operations=[self._git("fsck", "--full", allow_failure=True)],
            data_loss_risk=DataLossRisk.HIGH,
            success_probability=50,
            estimated_time=30,
            requires_backup=True,
            requires_user_confirmation=True,
            issue_type=issue.type,
            resolves_issue=False,
        )]

    def follow_up(self, action):
        if action.strategy_kind == RecoveryStrategyKind.BACKUP_RESTORE:
            return [
                "Restore the repository from a recent backup",
                "Or re-clone from the remote and re-apply local work",
            ]
        return []


# ---------------------------------------------------------------------------
# Environment (permissions, disk, filesystem)
# ---------------------------------------------------------------------------

class EnvironmentRecoveryStrategy(RecoveryStrategy):
    """Problems outside git's own data: nothing to repair automatically."""

    name = "environment"
    handled_types = (
        CorruptionType.PERMISSION_DENIED,
        CorruptionType.DISK_FULL,
        CorruptionType.FILESYSTEM_ERROR,
    )

    _GUIDANCE = {
        CorruptionType.PERMISSION_DENIED: (
            "Restore read/write access to the git directory",
            DataLossRisk.NONE, 60, 10,
        ),
        CorruptionType.DISK_FULL: (
            "Free disk space before attempting any repair",
            DataLossRisk.NONE, 70, 15,
        ),
        CorruptionType.FILESYSTEM_ERROR: (
            "Check filesystem health before touching the repository",
            DataLossRisk.MODERATE, 40, 30,
        ),
    }

    def generate_actions(self, issue, options):
        description, risk, probability, minutes = self._GUIDANCE[issue.type]
        operations = []
        if issue.type == CorruptionType.DISK_FULL:
            operations.append(self._git("count-objects", "-vH",
                                        timeout=self.settings.probe_timeout_seconds,
                                        allow_failure=True))
        return [RecoveryAction(
            strategy_kind=RecoveryStrategyKind.MANUAL_INTERVENTION,
            description=description,
            operations=operations,
            data_loss_risk=risk,
            success_probability=probability,
            estimated_time=minutes,
            requires_backup=issue.type == CorruptionType.FILESYSTEM_ERROR,
            requires_user_confirmation=True,
            issue_type=issue.type,
            resolves_issue=False,
        )]

    def follow_up(self, action):
        if action.issue_type == CorruptionType.PERMISSION_DENIED:
            return ["Check ownership with 'ls -la .git' and fix it with chown/chmod"]
        if action.issue_type == CorruptionType.DISK_FULL:
            return ["Delete unneeded files or move the repository to a larger disk"]
        return ["Run a filesystem check, then re-run corruption detection"]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

STRATEGY_CLASSES = (
    LockFileRecoveryStrategy,
    IndexRecoveryStrategy,
    ReferenceRecoveryStrategy,
    IncompleteOperationRecoveryStrategy,
    ConfigurationRecoveryStrategy,
    ObjectDatabaseRecoveryStrategy,
    EnvironmentRecoveryStrategy,
)


class RecoveryStrategyRegistry:
    """Ordered collection of strategies; the first match wins."""

    def __init__(self, driver: RepositoryDriver, settings: Optional[RescueSettings] = None):
        settings = settings or load_settings()
        self._strategies: list[RecoveryStrategy] = [cls(driver, settings) for cls in STRATEGY_CLASSES]

    @property
    def strategies(self) -> list[RecoveryStrategy]:
        return list(self._strategies)

    def register(self, strategy: RecoveryStrategy) -> None:
        """Add *strategy* ahead of the built-in ones."""
        self._strategies.insert(0, strategy)

    def find_strategy(self, issue: CorruptionIssue) -> Optional[RecoveryStrategy]:
        for strategy in self._strategies:
            if strategy.can_handle(issue):
                return strategy
        return None

    def find_strategy_for_type(self, issue_type: CorruptionType) -> Optional[RecoveryStrategy]:
        for strategy in self._strategies:
            if issue_type in strategy.handled_types:
                return strategy
        return None

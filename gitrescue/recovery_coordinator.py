"""
gitrescue/recovery_coordinator.py -- Orchestrates detection, planning and repair.

A recovery session moves through a fixed sequence of states::

    created -> backup -> executing -> validating -> success | partial | failed

The backup step is skipped when the plan does not need one.  Actions run
strictly one at a time through the strategy that owns their issue type;
nothing here runs concurrently, and callers must make sure no other
process writes to the repository while a session is in progress.

Sessions are kept in a dict owned by the coordinator instance for its
whole lifetime.  They are never evicted, which suits a short-lived
command-line invocation.

Usage::

    from gitrescue.recovery_coordinator import CorruptionRecoveryCoordinator

    coordinator = CorruptionRecoveryCoordinator("/path/to/repo")
    detection = coordinator.detect_corruption()
    plan = coordinator.create_recovery_plan(detection, RecoveryOptions())
    result = coordinator.execute_recovery_plan(plan, RecoveryOptions(), on_progress=print)
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Callable, Optional

from gitrescue.backup_manager import BackupError, BackupManager
from gitrescue.config import RescueSettings, load_settings
from gitrescue.corruption_detector import CorruptionDetector, calculate_integrity_score
from gitrescue.git_driver import RepositoryDriver
from gitrescue.models import (
    BackupOptions,
    CorruptionIssue,
    CorruptionSeverity,
    DataLossRisk,
    DetectionResult,
    QuickCheckResult,
    RecoveryAction,
    RecoveryOptions,
    RecoveryPlan,
    RecoveryProgress,
    RecoveryRecommendation,
    RecoveryResult,
    RecoverySession,
    RecoveryStrategyKind,
    RecoverySummary,
    SessionState,
)
from gitrescue.models.validators import is_within_data_loss_threshold, max_risk, worst_severity
from gitrescue.recovery_strategies import RecoveryStrategyRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[RecoveryProgress], None]

_SESSION_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class RepositoryCorruptedError(RuntimeError):
    """The pre-flight check found corruption that blocks further work."""

    def __init__(self, issues: list[CorruptionIssue]):
        self.issues = issues
        summary = "; ".join(f"{i.type.value}: {i.description}" for i in issues)
        super().__init__(
            "Repository corruption detected. Run a recovery before continuing. "
            f"Blocking issues: {summary}"
        )


# Recommendation presets by worst severity present
_RECOMMENDATIONS: dict[str, tuple[dict, Optional[str], bool]] = {
    "critical": (
        dict(max_data_loss="acceptable", auto_repair=False, create_backup=True,
             preserve_uncommitted=True, aggressive=False, timeout_minutes=60,
             require_confirmation=True),
        "Critical corruption detected. Backup and manual intervention strongly recommended.",
        False,
    ),
    "high": (
        dict(max_data_loss="moderate", auto_repair=False, create_backup=True,
             preserve_uncommitted=True, aggressive=False, timeout_minutes=30,
             require_confirmation=True),
        "High-severity corruption detected. Proceed with caution.",
        True,
    ),
    "medium": (
        dict(max_data_loss="minimal", auto_repair=True, create_backup=True,
             preserve_uncommitted=True, aggressive=False, timeout_minutes=15,
             require_confirmation=False),
        None,
        True,
    ),
    "low": (
        dict(max_data_loss="none", auto_repair=True, create_backup=False,
             preserve_uncommitted=False, aggressive=False, timeout_minutes=10,
             require_confirmation=False),
        None,
        True,
    ),
}


# ---------------------------------------------------------------------------
# CorruptionRecoveryCoordinator
# ---------------------------------------------------------------------------

class CorruptionRecoveryCoordinator:
    """Plans and runs recovery for one repository.

    Parameters
    ----------
    repo_path : str or pathlib.Path
        Root of the working tree.
    settings : RescueSettings, optional
    backup_dir : str or pathlib.Path, optional
        Passed through to :class:`BackupManager`.
    driver, detector, backup_manager, registry : optional
        Collaborators; built from *repo_path* when omitted.
    """

    def __init__(self, repo_path, settings: Optional[RescueSettings] = None, backup_dir=None,
                 driver: Optional[RepositoryDriver] = None,
                 detector: Optional[CorruptionDetector] = None,
                 backup_manager: Optional[BackupManager] = None,
                 registry: Optional[RecoveryStrategyRegistry] = None):
        self.settings = settings or load_settings()
        self.driver = driver or RepositoryDriver(repo_path)
        self.repo_path = self.driver.repo_path
        self.detector = detector or CorruptionDetector(self.repo_path, self.settings, self.driver)
        self._backup_manager = backup_manager or BackupManager(
            self.repo_path, backup_dir=backup_dir, settings=self.settings, driver=self.driver,
        )
        self.registry = registry or RecoveryStrategyRegistry(self.driver, self.settings)

        self._sessions: dict[str, RecoverySession] = {}
        self._last_preflight: Optional[tuple[float, QuickCheckResult]] = None

    @property
    def backup_manager(self) -> BackupManager:
        return self._backup_manager

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_corruption(self) -> DetectionResult:
        return self.detector.detect_corruption()

    def quick_corruption_check(self) -> QuickCheckResult:
        """Cheap gate for other call sites: only High/Critical issues block."""
        result = self.detector.detect_corruption()
        blocking = [
            issue for issue in result.issues
            if issue.severity in (CorruptionSeverity.HIGH, CorruptionSeverity.CRITICAL)
        ]
        return QuickCheckResult(
            is_corrupted=result.is_corrupted,
            critical_issues=blocking,
            can_continue=not blocking,
        )

    def ensure_repository_healthy(self, force: bool = False) -> QuickCheckResult:
        """Run the quick check at most once per ``preflight_interval_seconds``.

        Raises
        ------
        RepositoryCorruptedError
            If blocking corruption is present.
        """
        now = time.monotonic()
        if not force and self._last_preflight is not None:
            checked_at, cached = self._last_preflight
            if cached.can_continue and now - checked_at < self.settings.preflight_interval_seconds:
                return cached

        check = self.quick_corruption_check()
        self._last_preflight = (now, check)
        if not check.can_continue:
            logger.error("Pre-flight check blocked: %d issue(s)", len(check.critical_issues))
            raise RepositoryCorruptedError(check.critical_issues)
        return check

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def create_recovery_plan(self, detection: DetectionResult,
                             options: RecoveryOptions) -> RecoveryPlan:
        actions: list[RecoveryAction] = []
        for issue in detection.issues:
            generated: list[RecoveryAction] = []
            strategy = self.registry.find_strategy(issue)
            if strategy is None:
                logger.warning("No strategy handles %s", issue.type.value)
            else:
                try:
                    generated = strategy.generate_actions(issue, options)
                except Exception:
                    logger.warning("Could not plan %s with %s", issue.type.value,
                                   type(strategy).__name__, exc_info=True)
                    generated = []
            actions.extend(generated or [self._placeholder_action(issue)])

        any_confirmation = any(a.requires_user_confirmation for a in actions)
        risk = max_risk(a.data_loss_risk for a in actions)
        requires_backup = any(a.requires_backup for a in actions) or (
            options.create_backup and bool(actions)
        )
        requires_confirmation = any_confirmation or options.require_confirmation
        can_auto_execute = (
            options.auto_repair
            and not requires_confirmation
            and is_within_data_loss_threshold(risk, options.max_data_loss)
        )

        return RecoveryPlan(
            issues=list(detection.issues),
            actions=actions,
            estimated_time=sum(a.estimated_time for a in actions),
            data_loss_risk=risk,
            requires_backup=requires_backup,
            requires_confirmation=requires_confirmation,
            can_auto_execute=can_auto_execute,
        )

    @staticmethod
    def _placeholder_action(issue: CorruptionIssue) -> RecoveryAction:
        return RecoveryAction(
            strategy_kind=RecoveryStrategyKind.MANUAL_INTERVENTION,
            description=f"Manual intervention required for {issue.type.value}: {issue.description}",
            data_loss_risk=DataLossRisk.MODERATE,
            success_probability=50,
            estimated_time=15,
            requires_backup=True,
            requires_user_confirmation=True,
            issue_type=issue.type,
            resolves_issue=False,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_recovery_plan(self, plan: RecoveryPlan, options: RecoveryOptions,
                              on_progress: Optional[ProgressCallback] = None) -> RecoveryResult:
        """Run *plan* and validate the repository afterwards.

        *on_progress* is called synchronously after every completed step
        (backup, each action, validation).
        """
        start = time.monotonic()
        deadline = start + options.timeout_minutes * 60
        session = RecoverySession(
            id=self._generate_session_id(),
            detection_result=DetectionResult(
                is_corrupted=bool(plan.issues),
                issues=plan.issues,
                integrity_score=calculate_integrity_score(plan.issues),
            ),
            planned_actions=plan.actions,
            options=options,
        )
        self._sessions[session.id] = session
        logger.info("Recovery session %s: %d action(s)", session.id, len(plan.actions))

        total = len(plan.actions) + (1 if plan.requires_backup else 0) + 1
        completed = 0

        def report(step: str) -> None:
            if on_progress is not None:
                on_progress(RecoveryProgress(step=step, completed=completed, total=total))

        user_messages: list[str] = []
        next_steps: list[str] = []
        resolved = []
        backup_id = None

        # 1. Backup
        if plan.requires_backup:
            session.state = SessionState.BACKUP
            try:
                info = self._backup_manager.create_backup(BackupOptions(
                    reason=f"Pre-recovery backup for session {session.id}",
                    include_working_directory=options.preserve_uncommitted,
                ))
            except BackupError as exc:
                if options.require_confirmation:
                    session.state = SessionState.FAILED
                    result = RecoveryResult(
                        success=False,
                        remaining_issues=plan.issues,
                        recovery_time=self._elapsed_ms(start),
                        user_messages=[f"Recovery aborted: backup creation failed ({exc})"],
                        next_steps=["Fix the backup location or free disk space, then retry"],
                    )
                    session.result = result
                    return result
                logger.warning("Continuing without a backup: %s", exc)
                user_messages.append(f"Warning: backup creation failed, continuing without one ({exc})")
                completed += 1
                report("Backup failed")
            else:
                session.backup_created = info
                backup_id = info.id
                user_messages.append(f"Created backup {info.id}")
                if info.skipped_refs:
                    user_messages.append(
                        "Backup left out refs whose objects are missing: " + ", ".join(info.skipped_refs)
                    )
                completed += 1
                report("Created backup")

        # 2. Actions, strictly in order
        session.state = SessionState.EXECUTING
        applied: list[RecoveryAction] = []
        for action in plan.actions:
            if time.monotonic() > deadline:
                user_messages.append(
                    f"Recovery stopped after {options.timeout_minutes} minute(s); "
                    "remaining actions were not run"
                )
                break

            strategy = None
            if action.issue_type is not None:
                strategy = self.registry.find_strategy_for_type(action.issue_type)

            if strategy is None or (
                not action.operations
                and action.strategy_kind == RecoveryStrategyKind.MANUAL_INTERVENTION
            ):
                user_messages.append(f"Manual action required: {action.description}")
                if action.description not in next_steps:
                    next_steps.append(action.description)
                completed += 1
                report(action.description)
                continue

            outcome = strategy.execute_actions([action], options)
            user_messages.extend(outcome.user_messages)
            for step in outcome.next_steps:
                if step not in next_steps:
                    next_steps.append(step)
            completed += 1

            if outcome.failed_actions:
                report(action.description)
                if action.data_loss_risk == DataLossRisk.HIGH:
                    user_messages.append("A high-risk action failed; stopping recovery")
                    break
                continue

            applied.append(action)
            session.executed_actions.append(action)
            for issue_type in outcome.resolved_issues:
                if issue_type not in resolved:
                    resolved.append(issue_type)
            report(action.description)

        # 3. Validation
        session.state = SessionState.VALIDATING
        post = self.detector.detect_corruption()
        completed += 1
        report("Validated repository")

        tracked = {issue.type for issue in plan.issues}
        still_present = {issue.type for issue in post.issues}
        remaining_tracked = [i for i in post.issues if i.type in tracked]
        success = post.integrity_score > 80 or not remaining_tracked

        if not success:
            next_steps.append("Re-run corruption detection and review the remaining issues")
            if backup_id:
                next_steps.append(f"Restore backup {backup_id} if the repository is worse than before")

        result = RecoveryResult(
            success=success,
            applied_actions=applied,
            resolved_issues=[t for t in resolved if t not in still_present],
            remaining_issues=post.issues,
            data_loss=any(
                a.data_loss_risk in (DataLossRisk.MODERATE, DataLossRisk.HIGH) for a in applied
            ),
            recovery_time=self._elapsed_ms(start),
            user_messages=user_messages,
            next_steps=next_steps,
            backup_created=backup_id,
        )
        if success:
            session.state = SessionState.SUCCESS
        elif applied:
            session.state = SessionState.PARTIAL
        else:
            session.state = SessionState.FAILED
        session.result = result

        logger.info(
            "Recovery session %s finished: %s (score %d, %d remaining issue(s))",
            session.id, session.state.value, post.integrity_score, len(post.issues),
        )
        return result

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    @staticmethod
    def _generate_session_id() -> str:
        suffix = "".join(secrets.choice(_SESSION_SUFFIX_ALPHABET) for _ in range(6))
        return f"recovery-{int(time.time() * 1000)}-{suffix}"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_recovery_session(self, session_id: str) -> Optional[RecoverySession]:
        return self._sessions.get(session_id)

    def list_recovery_sessions(self) -> list[RecoverySession]:
        """Return every session, most recent first."""
        return sorted(self._sessions.values(), key=lambda s: s.start_time, reverse=True)

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def get_recovery_recommendations(self, detection: DetectionResult) -> RecoveryRecommendation:
        worst = worst_severity(issue.severity for issue in detection.issues)
        priority = worst.value if worst is not None else "low"
        preset, warning, can_proceed = _RECOMMENDATIONS[priority]
        return RecoveryRecommendation(
            priority=priority,
            recommended_options=RecoveryOptions(**preset),
            warning_message=warning,
            can_proceed=can_proceed,
        )

    def recover_from_corruption(self, **overrides) -> RecoverySummary:
        """Detect, plan and execute in one call.

        Keyword arguments override the default :class:`RecoveryOptions`
        (minimal data loss, auto-repair, backup, preserve uncommitted
        changes, 30 minute limit).  Critical corruption is refused unless
        ``aggressive=True``.

        Raises
        ------
        pydantic.ValidationError
            If an override is not a valid option value.
        """
        options = RecoveryOptions(**overrides)
        detection = self.detect_corruption()
        if not detection.is_corrupted:
            return RecoverySummary(success=True,
                                   message="No corruption detected - repository is healthy")

        recommendation = self.get_recovery_recommendations(detection)
        if not recommendation.can_proceed and not options.aggressive:
            return RecoverySummary(
                success=False,
                message="Critical corruption detected. "
                        + (recommendation.warning_message or "Manual intervention required."),
            )

        plan = self.create_recovery_plan(detection, options)
        result = self.execute_recovery_plan(plan, options)
        message = (
            "Repository corruption recovery completed successfully"
            if result.success
            else "Recovery completed with issues - manual intervention may be required"
        )
        return RecoverySummary(success=result.success, message=message, result=result)

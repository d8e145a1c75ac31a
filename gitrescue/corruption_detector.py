"""
gitrescue/corruption_detector.py -- Structural integrity checks for a git repository.

Runs seven independent, read-only checks and merges what they find into a
single scored :class:`~gitrescue.models.DetectionResult`:

    1. Object database     git fsck --full --strict, git verify-pack per pack
    2. Index               presence, readability, git ls-files --stage
    3. References          dangling targets, malformed loose ref files
    4. Lock files          index/HEAD/config locks (60s), refs/**/*.lock (300s)
    5. Incomplete ops      MERGE_HEAD, REBASE_HEAD, CHERRY_PICK_HEAD, rebase-apply
    6. Configuration       git config --list, remote URL schemes
    7. Permissions         access to the git directory, free disk space

The checks share no mutable state and run concurrently on a thread pool.
Every check is fault-isolated: a check that blows up is logged and
contributes no issues, and ``detect_corruption()`` itself never raises.
When the repository cannot be inspected at all the result collapses to a
single critical ``filesystem_error`` issue with a score of 0.

Usage::

    from gitrescue.corruption_detector import CorruptionDetector

    detector = CorruptionDetector("/path/to/repo")
    result = detector.detect_corruption()
    print(result.integrity_score, [i.type for i in result.issues])
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, Optional

from gitrescue.config import RescueSettings, load_settings
from gitrescue.git_driver import GitCommandError, GitTimeoutError, RepositoryDriver, read_packed_refs
from gitrescue.models import CorruptionIssue, CorruptionSeverity, CorruptionType, DetectionResult
from gitrescue.models.validators import (
    SEVERITY_PENALTY,
    is_valid_object_id,
    is_valid_ref_content,
    is_valid_remote_url,
)
from gitrescue.utils import now_utc

logger = logging.getLogger(__name__)

# Top-level lock files checked against the short threshold
_TOP_LEVEL_LOCKS = ("index.lock", "HEAD.lock", "config.lock")

# Marker file/dir -> the in-progress operation it signals.  Order matters:
# the first marker found for a type wins.
_OPERATION_MARKERS = (
    ("MERGE_HEAD", CorruptionType.INCOMPLETE_MERGE, "merge"),
    ("REBASE_HEAD", CorruptionType.INCOMPLETE_REBASE, "rebase"),
    ("rebase-merge", CorruptionType.INCOMPLETE_REBASE, "rebase"),
    ("CHERRY_PICK_HEAD", CorruptionType.INCOMPLETE_CHERRY_PICK, "cherry-pick"),
    ("rebase-apply", CorruptionType.INCOMPLETE_APPLY, "apply"),
)


def calculate_integrity_score(issues: Iterable[CorruptionIssue]) -> int:
    """Return 100 minus the severity penalty of every issue, floored at 0.

    Low costs 5, Medium 15, High 30, Critical 50.  The deduction is purely
    additive, so the score does not depend on issue order.
    """
    score = 100
    for issue in issues:
        score -= SEVERITY_PENALTY[issue.severity]
    return max(0, score)


def _make_issue(
    issue_type: CorruptionType,
    severity: CorruptionSeverity,
    description: str,
    affected_files: list,
    *,
    auto_recoverable: bool,
    recommended_actions: list[str],
    potential_data_loss: bool = False,
    backup_required: bool = False,
    context: Optional[dict] = None,
) -> CorruptionIssue:
    return CorruptionIssue(
        type=issue_type,
        severity=severity,
        description=description,
        affected_files=[str(p) for p in affected_files],
        auto_recoverable=auto_recoverable,
        recommended_actions=recommended_actions,
        potential_data_loss=potential_data_loss,
        backup_required=backup_required,
        context={k: str(v) for k, v in (context or {}).items()},
    )


# ---------------------------------------------------------------------------
# CorruptionDetector
# ---------------------------------------------------------------------------

class CorruptionDetector:
    """Identifies corruption in a git repository's internal data structures.

    Parameters
    ----------
    repo_path : str or pathlib.Path
        Root of the working tree.
    settings : RescueSettings, optional
        Thresholds and timeouts (default: :func:`load_settings`).
    driver : RepositoryDriver, optional
        Command runner; one is created for *repo_path* if omitted.
    """

    def __init__(self, repo_path, settings: Optional[RescueSettings] = None,
                 driver: Optional[RepositoryDriver] = None):
        self.settings = settings or load_settings()
        self.driver = driver or RepositoryDriver(repo_path)
        self.repo_path = self.driver.repo_path
        self.git_dir = self.driver.git_dir

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def detect_corruption(self) -> DetectionResult:
        """Run every check concurrently and return the scored result."""
        start = time.monotonic()
        checks: list[tuple[str, Callable[[], list[CorruptionIssue]]]] = [
            ("object_database", self.check_object_database),
            ("index", self.check_index_file),
            ("references", self.check_references),
            ("lock_files", self.check_lock_files),
            ("incomplete_operations", self.check_incomplete_operations),
            ("configuration", self.check_configuration),
            ("permissions", self.check_permissions),
        ]

        try:
            self._ensure_inspectable()
            with ThreadPoolExecutor(max_workers=len(checks), thread_name_prefix="detect") as pool:
                futures = [(name, pool.submit(self._run_check, name, fn)) for name, fn in checks]
                issues: list[CorruptionIssue] = []
                for _name, future in futures:
                    issues.extend(future.result())
        except Exception as exc:
            logger.error("Corruption detection failed for %s: %s", self.repo_path, exc)
            issue = _make_issue(
                CorruptionType.FILESYSTEM_ERROR,
                CorruptionSeverity.CRITICAL,
                f"Corruption detection failed: {exc}",
                [self.git_dir],
                auto_recoverable=False,
                recommended_actions=["Manual inspection required", "Check filesystem integrity"],
                potential_data_loss=True,
                backup_required=True,
            )
            return DetectionResult(
                is_corrupted=True,
                issues=[issue],
                integrity_score=0,
                last_check=now_utc(),
                check_duration=int((time.monotonic() - start) * 1000),
            )

        score = calculate_integrity_score(issues)
        duration = int((time.monotonic() - start) * 1000)
        logger.info(
            "Detection finished in %dms: %d issue(s), integrity score %d",
            duration, len(issues), score,
        )
        return DetectionResult(
            is_corrupted=len(issues) > 0,
            issues=issues,
            integrity_score=score,
            last_check=now_utc(),
            check_duration=duration,
        )

    def _ensure_inspectable(self) -> None:
        """Raise if the working tree or its git directory is unusable."""
        if not self.repo_path.is_dir():
            raise FileNotFoundError(f"Repository root not found: {self.repo_path}")
        if not self.git_dir.is_dir():
            raise FileNotFoundError(f"Git directory not found: {self.git_dir}")
        # Listing the directory surfaces EACCES/EIO early
        os.listdir(self.git_dir)

    def _run_check(self, name: str, fn: Callable[[], list[CorruptionIssue]]) -> list[CorruptionIssue]:
        try:
            issues = fn()
        except Exception:
            logger.warning("Check %r failed; treating as no evidence", name, exc_info=True)
            return []
        if issues:
            logger.debug("Check %r found %d issue(s)", name, len(issues))
        return issues

    # ------------------------------------------------------------------
    # 1. Object database
    # ------------------------------------------------------------------

    def check_object_database(self) -> list[CorruptionIssue]:
        """Scan objects with a strict fsck, then verify every packfile."""
        issues: list[CorruptionIssue] = []
        objects_dir = self.git_dir / "objects"

        try:
            result = self.driver.run(
                ["fsck", "--full", "--strict", "--no-progress"],
                timeout=self.settings.scan_timeout_seconds,
                check=False,
            )
        except GitTimeoutError:
            logger.warning("git fsck timed out; object database not verified")
            result = None

        if result is not None:
            seen: set[str] = set()
            for line in result.output.splitlines():
                line = line.strip()
                if not line or line in seen:
                    continue
                seen.add(line)
                issue = self._parse_fsck_line(line, objects_dir)
                if issue is not None:
                    issues.append(issue)

            if not issues and not result.ok and "corrupt" in result.output.lower():
                issues.append(_make_issue(
                    CorruptionType.CORRUPT_OBJECT,
                    CorruptionSeverity.HIGH,
                    f"Object database corruption detected: {result.stderr.strip()}",
                    [objects_dir],
                    auto_recoverable=False,
                    recommended_actions=["Run git fsck --full", "Consider object recovery"],
                    potential_data_loss=True,
                    backup_required=True,
                ))

        issues.extend(self._check_packfiles())
        return issues

    def _parse_fsck_line(self, line: str, objects_dir: Path) -> Optional[CorruptionIssue]:
        lowered = line.lower()
        if "missing" in lowered:
            return _make_issue(
                CorruptionType.MISSING_OBJECT,
                CorruptionSeverity.HIGH,
                line,
                [objects_dir],
                auto_recoverable=False,
                recommended_actions=["Restore from backup", "Attempt object recovery"],
                potential_data_loss=True,
                backup_required=True,
            )
        if "corrupt" in lowered:
            return _make_issue(
                CorruptionType.CORRUPT_OBJECT,
                CorruptionSeverity.CRITICAL,
                line,
                [objects_dir],
                auto_recoverable=False,
                recommended_actions=["Restore from backup", "Reconstruct repository"],
                potential_data_loss=True,
                backup_required=True,
            )
        return None

    def _check_packfiles(self) -> list[CorruptionIssue]:
        issues: list[CorruptionIssue] = []
        pack_dir = self.git_dir / "objects" / "pack"
        if not pack_dir.is_dir():
            return issues

        for pack in sorted(pack_dir.glob("*.pack")):
            try:
                self.driver.run(
                    ["verify-pack", "-v", str(pack)],
                    timeout=self.settings.heavy_timeout_seconds,
                )
            except GitCommandError as exc:
                issues.append(_make_issue(
                    CorruptionType.CORRUPT_PACKFILE,
                    CorruptionSeverity.HIGH,
                    f"Packfile corruption in {pack.name}: {exc.stderr.strip() or exc}",
                    [pack],
                    auto_recoverable=False,
                    recommended_actions=["Repack repository", "Restore from backup"],
                    potential_data_loss=True,
                    backup_required=True,
                ))
        return issues

    # ------------------------------------------------------------------
    # 2. Index
    # ------------------------------------------------------------------

    def check_index_file(self) -> list[CorruptionIssue]:
        index_path = self.git_dir / "index"

        if not index_path.exists():
            if not self._has_head_commit():
                # A repository without commits legitimately has no index yet
                return []
            return [_make_issue(
                CorruptionType.INVALID_INDEX,
                CorruptionSeverity.LOW,
                "Index file is missing",
                [index_path],
                auto_recoverable=True,
                recommended_actions=["Rebuild index with git reset"],
            )]

        if not os.access(index_path, os.R_OK | os.W_OK):
            return [self._corrupt_index_issue(index_path, "index file is not readable and writable")]

        try:
            self.driver.run(["ls-files", "--stage"], timeout=self.settings.listing_timeout_seconds)
        except GitTimeoutError:
            logger.warning("git ls-files timed out; index not verified")
        except GitCommandError as exc:
            return [self._corrupt_index_issue(index_path, exc.stderr.strip() or str(exc))]
        return []

    def _corrupt_index_issue(self, index_path: Path, detail: str) -> CorruptionIssue:
        return _make_issue(
            CorruptionType.CORRUPT_INDEX,
            CorruptionSeverity.HIGH,
            f"Index file corruption: {detail}",
            [index_path],
            auto_recoverable=False,
            recommended_actions=["Remove and rebuild index", "Check for filesystem issues"],
            potential_data_loss=True,
            backup_required=True,
        )

    def _has_head_commit(self) -> bool:
        try:
            result = self.driver.run(
                ["rev-parse", "--verify", "--quiet", "HEAD"],
                timeout=self.settings.probe_timeout_seconds,
                check=False,
            )
        except GitCommandError:
            return True
        return result.ok

    # ------------------------------------------------------------------
    # 3. References
    # ------------------------------------------------------------------

    def check_references(self) -> list[CorruptionIssue]:
        issues: list[CorruptionIssue] = []
        targets: dict[str, str] = {}

        try:
            result = self.driver.run(
                ["for-each-ref", "--format=%(refname) %(objectname)"],
                timeout=self.settings.listing_timeout_seconds,
            )
        except GitCommandError as exc:
            issues.append(_make_issue(
                CorruptionType.CORRUPT_REF,
                CorruptionSeverity.HIGH,
                f"Reference system error: {exc.stderr.strip() or exc}",
                [self.git_dir / "refs"],
                auto_recoverable=False,
                recommended_actions=["Manual ref inspection", "Restore from backup"],
                potential_data_loss=True,
                backup_required=True,
            ))
        else:
            for line in result.stdout.splitlines():
                parts = line.strip().split(" ")
                if len(parts) == 2 and all(parts):
                    targets[parts[0]] = parts[1]

        # for-each-ref skips refs whose object is gone, so read ref storage too
        file_issues, loose_targets = self._scan_ref_files()
        issues.extend(file_issues)
        for ref_name, object_name in {**read_packed_refs(self.git_dir), **loose_targets}.items():
            targets.setdefault(ref_name, object_name)

        for ref_name, object_name in sorted(targets.items()):
            issue = self._check_ref_target(ref_name, object_name)
            if issue is not None:
                issues.append(issue)
        return issues

    def _check_ref_target(self, ref_name: str, object_name: str) -> Optional[CorruptionIssue]:
        try:
            lookup = self.driver.run(
                ["cat-file", "-e", object_name],
                timeout=self.settings.probe_timeout_seconds,
                check=False,
            )
        except GitTimeoutError:
            logger.warning("Object lookup for %s timed out", ref_name)
            return None
        if lookup.ok:
            return None

        loose = self.git_dir / ref_name
        affected = loose if loose.exists() else self.git_dir / "packed-refs"
        return _make_issue(
            CorruptionType.DANGLING_REF,
            CorruptionSeverity.MEDIUM,
            f"Reference {ref_name} points to missing object {object_name}",
            [affected],
            auto_recoverable=True,
            recommended_actions=["Prune dangling references", "Update ref to valid commit"],
            context={"ref": ref_name, "object": object_name},
        )

    def _scan_ref_files(self) -> tuple[list[CorruptionIssue], dict[str, str]]:
        """Validate loose ref files; return issues and the well-formed direct refs."""
        issues: list[CorruptionIssue] = []
        targets: dict[str, str] = {}
        refs_dir = self.git_dir / "refs"
        if not refs_dir.is_dir():
            return issues, targets

        for ref_file in sorted(p for p in refs_dir.rglob("*") if p.is_file()):
            if ref_file.name.endswith(".lock"):
                continue
            ref_name = ref_file.relative_to(self.git_dir).as_posix()
            try:
                content = ref_file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                issues.append(_make_issue(
                    CorruptionType.CORRUPT_REF,
                    CorruptionSeverity.MEDIUM,
                    f"Cannot read ref file {ref_file}: {exc}",
                    [ref_file],
                    auto_recoverable=True,
                    recommended_actions=["Remove corrupted ref file"],
                    context={"ref": ref_name},
                ))
                continue

            if not is_valid_ref_content(content):
                issues.append(_make_issue(
                    CorruptionType.INVALID_REF_FORMAT,
                    CorruptionSeverity.MEDIUM,
                    f"Invalid ref format in {ref_file}",
                    [ref_file],
                    auto_recoverable=True,
                    recommended_actions=["Update ref to valid commit hash"],
                    context={"ref": ref_name},
                ))
            elif is_valid_object_id(content):
                targets[ref_name] = content.strip()
        return issues, targets

    # ------------------------------------------------------------------
    # 4. Lock files
    # ------------------------------------------------------------------

    def check_lock_files(self) -> list[CorruptionIssue]:
        issues: list[CorruptionIssue] = []

        for name in _TOP_LEVEL_LOCKS:
            lock = self.git_dir / name
            age = self._lock_age(lock)
            if age is not None and age > self.settings.index_lock_threshold_seconds:
                issues.append(self._lock_issue(lock, age))

        refs_dir = self.git_dir / "refs"
        if refs_dir.is_dir():
            for lock in sorted(refs_dir.rglob("*.lock")):
                age = self._lock_age(lock)
                if age is not None and age > self.settings.ref_lock_threshold_seconds:
                    issues.append(self._lock_issue(lock, age))
        return issues

    @staticmethod
    def _lock_age(path: Path) -> Optional[float]:
        """Return the age of *path* in seconds, or None if it does not exist."""
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, time.time() - mtime)

    def _lock_issue(self, lock: Path, age: float) -> CorruptionIssue:
        rel = lock.relative_to(self.git_dir).as_posix()
        if lock.name == "index.lock" and lock.parent == self.git_dir:
            lock_type = CorruptionType.INDEX_LOCK
        elif rel.startswith("refs/"):
            lock_type = CorruptionType.REF_LOCK
        else:
            lock_type = CorruptionType.STALE_LOCK_FILE

        return _make_issue(
            lock_type,
            CorruptionSeverity.MEDIUM,
            f"Stale lock file detected: {lock} (age: {round(age)}s)",
            [lock],
            auto_recoverable=True,
            recommended_actions=["Remove stale lock file"],
            context={"age_seconds": round(age)},
        )

    # ------------------------------------------------------------------
    # 5. Incomplete operations
    # ------------------------------------------------------------------

    def check_incomplete_operations(self) -> list[CorruptionIssue]:
        issues: list[CorruptionIssue] = []
        found: set[CorruptionType] = set()

        for marker, op_type, label in _OPERATION_MARKERS:
            if op_type in found:
                continue
            path = self.git_dir / marker
            if not path.exists():
                continue
            found.add(op_type)
            issues.append(_make_issue(
                op_type,
                CorruptionSeverity.MEDIUM,
                f"Incomplete {label} operation detected",
                [path],
                auto_recoverable=True,
                recommended_actions=[f"Complete or abort the {label} operation"],
                context={"marker": marker},
            ))
        return issues

    # ------------------------------------------------------------------
    # 6. Configuration
    # ------------------------------------------------------------------

    def check_configuration(self) -> list[CorruptionIssue]:
        config_path = self.git_dir / "config"

        try:
            self.driver.run(["config", "--list"], timeout=self.settings.probe_timeout_seconds)
        except GitTimeoutError:
            logger.warning("git config --list timed out; configuration not verified")
            return []
        except GitCommandError as exc:
            return [_make_issue(
                CorruptionType.CORRUPT_CONFIG,
                CorruptionSeverity.MEDIUM,
                f"Git configuration error: {exc.stderr.strip() or exc}",
                [config_path],
                auto_recoverable=True,
                recommended_actions=["Check config file syntax", "Restore config from backup"],
            )]

        try:
            remotes = self.driver.run(
                ["remote", "-v"], timeout=self.settings.probe_timeout_seconds, check=False,
            )
        except GitTimeoutError:
            return []

        issues: list[CorruptionIssue] = []
        seen: set[tuple[str, str]] = set()
        for line in remotes.stdout.splitlines():
            name, sep, rest = line.partition("\t")
            if not sep:
                continue
            url = rest.rsplit(" (", 1)[0].strip()
            if (name, url) in seen:
                continue
            seen.add((name, url))
            if not is_valid_remote_url(url):
                issues.append(_make_issue(
                    CorruptionType.INVALID_REMOTE,
                    CorruptionSeverity.LOW,
                    f"Invalid remote URL for '{name}': {url}",
                    [config_path],
                    auto_recoverable=True,
                    recommended_actions=["Update remote URL", "Remove invalid remote"],
                    context={"remote": name, "url": url},
                ))
        return issues

    # ------------------------------------------------------------------
    # 7. Permissions and disk space
    # ------------------------------------------------------------------

    def check_permissions(self) -> list[CorruptionIssue]:
        issues: list[CorruptionIssue] = []

        if not os.access(self.git_dir, os.R_OK | os.W_OK | os.X_OK):
            issues.append(self._permission_issue())

        try:
            free = shutil.disk_usage(self.git_dir).free
        except OSError as exc:
            if exc.errno == errno.ENOSPC:
                issues.append(self._disk_full_issue("no space left on device"))
            elif exc.errno in (errno.EACCES, errno.EPERM) and not issues:
                issues.append(self._permission_issue())
            return issues

        if free < self.settings.min_free_disk_bytes:
            issues.append(self._disk_full_issue(f"only {free} bytes free"))
        return issues

    def _permission_issue(self) -> CorruptionIssue:
        return _make_issue(
            CorruptionType.PERMISSION_DENIED,
            CorruptionSeverity.HIGH,
            "Insufficient permissions to access the git directory",
            [self.git_dir],
            auto_recoverable=False,
            recommended_actions=["Check file permissions", "Run as appropriate user"],
        )

    def _disk_full_issue(self, detail: str) -> CorruptionIssue:
        return _make_issue(
            CorruptionType.DISK_FULL,
            CorruptionSeverity.CRITICAL,
            f"Insufficient disk space: {detail}",
            [self.repo_path],
            auto_recoverable=False,
            recommended_actions=["Free up disk space", "Move repository to larger disk"],
            potential_data_loss=True,
            backup_required=True,
        )

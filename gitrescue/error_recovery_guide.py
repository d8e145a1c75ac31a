"""
gitrescue/error_recovery_guide.py -- Turns git error text into recovery guidance.

Holds an ordered table of error patterns.  Each pattern maps raw git
output to an optional corruption type and a structured instruction
(symptom, likely cause, immediate actions, recovery steps, prevention
tips).  The first matching pattern wins, so the order of the table
matters: more specific patterns come before broader ones.

Nothing here raises.  Unrecognised text gets generic guidance.

Usage::

    from gitrescue.error_recovery_guide import ErrorRecoveryGuide

    guide = ErrorRecoveryGuide()
    analysis = guide.analyze_error("fatal: index file corrupt")
    print(guide.generate_user_friendly_message("fatal: index file corrupt", analysis.guidance))
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from gitrescue.models import CorruptionSeverity, CorruptionType, DetectionResult, RecoveryOptions
from gitrescue.models.base import Priority
from gitrescue.models.validators import SEVERITY_ORDER

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ErrorRecoveryInstruction(BaseModel):
    symptom: str
    likely_cause: str
    immediate_actions: list[str] = Field(default_factory=list)
    recovery_steps: list[str] = Field(default_factory=list)
    prevention_tips: list[str] = Field(default_factory=list)
    severity: Priority = "medium"
    auto_recoverable: bool = False
    data_loss_risk: bool = False


class ErrorAnalysis(BaseModel):
    matched: bool
    corruption_type: Optional[CorruptionType] = None
    guidance: ErrorRecoveryInstruction
    recovery_options: Optional[RecoveryOptions] = None


class CorruptionIndicator(BaseModel):
    is_corruption: bool
    corruption_type: Optional[CorruptionType] = None
    severity: Priority = "low"


@dataclass(frozen=True)
class ErrorPattern:
    pattern: re.Pattern
    corruption_type: Optional[CorruptionType]
    instruction: ErrorRecoveryInstruction


def _pattern(regex: str, corruption_type: Optional[CorruptionType], **instruction) -> ErrorPattern:
    return ErrorPattern(
        pattern=re.compile(regex, re.IGNORECASE),
        corruption_type=corruption_type,
        instruction=ErrorRecoveryInstruction(**instruction),
    )


# ---------------------------------------------------------------------------
# Pattern table (order is significant)
# ---------------------------------------------------------------------------

ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    _pattern(
        r"index file corrupt|invalid index",
        CorruptionType.CORRUPT_INDEX,
        symptom="The git index (staging area) is corrupted or unreadable",
        likely_cause="A git command was interrupted, the disk failed, or the system crashed "
                     "while the index was being written",
        immediate_actions=[
            "Stop running git commands in this repository",
            "Check free disk space and filesystem health",
            "Back up your current work",
        ],
        recovery_steps=[
            '1. Stash uncommitted changes: git stash push -m "before index rebuild"',
            "2. Delete the damaged index: rm .git/index",
            "3. Rebuild it from HEAD: git reset --mixed HEAD",
            "4. Bring your changes back: git stash pop",
            "5. Review and re-stage your changes",
        ],
        prevention_tips=[
            "Keep enough free disk space for git to write its files",
            "Avoid shutting the machine down while git is running",
            "Back up important repositories regularly",
        ],
        severity="medium",
        auto_recoverable=True,
        data_loss_risk=False,
    ),
    _pattern(
        r"bad object|corrupt object|missing blob|loose object",
        CorruptionType.CORRUPT_OBJECT,
        symptom="The object database holds corrupt or missing objects",
        likely_cause="Disk corruption, an interrupted clone or fetch, or filesystem errors",
        immediate_actions=[
            "Do not commit or push until this is resolved",
            "Take a full copy of the repository directory now",
            "Write down the exact error message",
        ],
        recovery_steps=[
            "1. List every problem: git fsck --full --strict",
            "2. Try a cleanup: git gc --aggressive --prune=now",
            "3. If problems remain, clone the remote into a fresh directory",
            "4. Copy uncommitted work into the new clone",
            "5. Confirm the result: git fsck --full",
        ],
        prevention_tips=[
            "Run git fsck now and then to catch corruption early",
            "Use reliable storage and avoid hard power-offs",
            "Keep backups of important repositories",
        ],
        severity="high",
        auto_recoverable=False,
        data_loss_risk=True,
    ),
    _pattern(
        r"another git process|index\.lock|unable to create.*lock",
        CorruptionType.STALE_LOCK_FILE,
        symptom="A leftover lock file is blocking git",
        likely_cause="An earlier git process was interrupted or crashed",
        immediate_actions=[
            "Check whether another git process is still running",
            "Give any running git command a moment to finish",
        ],
        recovery_steps=[
            "1. Look for running git processes: ps aux | grep git",
            "2. If none are running, delete the lock files:",
            "   - rm .git/index.lock",
            "   - rm .git/HEAD.lock",
            "   - rm .git/refs/heads/*.lock",
            "3. Retry the git command",
        ],
        prevention_tips=[
            "Let git commands finish before closing the terminal",
            "Avoid force-killing git processes",
            "Run one git command at a time per repository",
        ],
        severity="low",
        auto_recoverable=True,
        data_loss_risk=False,
    ),
    _pattern(
        r"merge conflict|automatic merge failed",
        None,
        symptom="Git could not merge the changes automatically",
        likely_cause="Both branches changed the same part of a file",
        immediate_actions=[
            "Check which files conflict with git status",
            "Understand each conflict before resolving it",
        ],
        recovery_steps=[
            "1. Show conflicted files: git status",
            "2. Find the conflict markers (<<<<<<<, =======, >>>>>>>) in each file",
            "3. Edit the files to resolve the conflicts",
            "4. Stage the resolved files: git add <file>",
            "5. Finish the merge: git commit",
            "Or give up on the merge: git merge --abort",
        ],
        prevention_tips=[
            "Coordinate with teammates working on the same files",
            "Keep commits small and focused",
            "Sync with the remote branch often",
        ],
        severity="medium",
        auto_recoverable=False,
        data_loss_risk=False,
    ),
    _pattern(
        r"rebase.*conflict|cannot continue rebase",
        CorruptionType.INCOMPLETE_REBASE,
        symptom="A rebase stopped because of conflicts",
        likely_cause="Commits being replayed conflict with the target branch",
        immediate_actions=[
            "Do not switch branches until the rebase is finished or aborted",
            "Check the rebase status",
        ],
        recovery_steps=[
            "1. Check status: git status",
            "2. Resolve the conflicts in the listed files",
            "3. Stage them: git add <file>",
            "4. Carry on: git rebase --continue",
            "Or skip the commit: git rebase --skip",
            "Or abandon the rebase: git rebase --abort",
        ],
        prevention_tips=[
            "Rebase a few commits at a time",
            "Test your changes before rebasing",
            "Read the commit history before rebasing",
        ],
        severity="medium",
        auto_recoverable=True,
        data_loss_risk=False,
    ),
    _pattern(
        r"invalid ref|bad ref|corrupt ref",
        CorruptionType.CORRUPT_REF,
        symptom="Branch or tag references are corrupted or invalid",
        likely_cause="Damaged files under .git/refs or an interrupted ref update",
        immediate_actions=[
            "Copy the .git/refs directory somewhere safe",
            "Note which refs are affected",
        ],
        recovery_steps=[
            "1. Back up refs: cp -r .git/refs .git/refs.backup",
            "2. Check packed refs: cat .git/packed-refs",
            "3. Delete the damaged files under .git/refs/",
            "4. Recreate branches: git branch <name> <commit>",
            "5. Confirm: git for-each-ref",
        ],
        prevention_tips=[
            "Do not edit files under .git/refs by hand",
            "Use git commands to change refs",
            "Check filesystem health regularly",
        ],
        severity="high",
        auto_recoverable=False,
        data_loss_risk=True,
    ),
    _pattern(
        r"pack.*corrupt|bad pack|pack-objects failed",
        CorruptionType.CORRUPT_PACKFILE,
        symptom="One or more packfiles are corrupted",
        likely_cause="Disk errors, an interrupted fetch or push, or storage corruption",
        immediate_actions=[
            "Take a full backup before trying to repair anything",
            "Find out which packfiles are damaged",
        ],
        recovery_steps=[
            "1. Verify packs: git verify-pack -v .git/objects/pack/*.pack",
            "2. Move damaged packs aside: .git/objects/pack/pack-<hash>.*",
            "3. Repack: git repack -ad",
            "4. Clean up: git gc --aggressive",
            "5. Confirm: git fsck --full",
        ],
        prevention_tips=[
            "Verify pack integrity from time to time",
            "Use reliable storage",
            "Watch disk health",
        ],
        severity="high",
        auto_recoverable=False,
        data_loss_risk=True,
    ),
    _pattern(
        r"permission denied|access denied|operation not permitted",
        CorruptionType.PERMISSION_DENIED,
        symptom="File permissions are blocking git",
        likely_cause="Wrong ownership or permissions inside the .git directory",
        immediate_actions=[
            "Check which user you are running as and who owns the files",
            "Make sure you have write access to the repository",
        ],
        recovery_steps=[
            "1. Check ownership: ls -la .git",
            "2. Fix ownership: sudo chown -R $USER .git",
            "3. Fix permissions: chmod -R u+rwX .git",
            "4. Retry the git command",
        ],
        prevention_tips=[
            "Do not run git with sudo",
            "Keep one owner for the whole working tree",
        ],
        severity="medium",
        auto_recoverable=True,
        data_loss_risk=False,
    ),
    _pattern(
        r"no space left|disk full|quota exceeded",
        CorruptionType.DISK_FULL,
        symptom="Git is failing because the disk is full",
        likely_cause="The disk or your quota has run out of space",
        immediate_actions=[
            "Check free space: df -h",
            "Find what is using the space",
        ],
        recovery_steps=[
            "1. Delete files you no longer need",
            "2. Compact the repository: git gc --aggressive --prune=now",
            "3. Remove large files from history if needed",
            "4. Move the repository to a bigger disk if needed",
            "5. Retry the git command",
        ],
        prevention_tips=[
            "Keep an eye on disk usage",
            "Set up low-disk alerts",
            "Run git gc periodically",
        ],
        severity="critical",
        auto_recoverable=False,
        data_loss_risk=False,
    ),
    _pattern(
        r"remote.*rejected|failed to push|authentication failed|connection.*refused",
        None,
        symptom="Talking to the remote repository failed",
        likely_cause="Network trouble, bad credentials, or a problem on the remote side",
        immediate_actions=[
            "Check your network connection",
            "Check your credentials",
            "Check whether the remote host is up",
        ],
        recovery_steps=[
            "1. Check the remote URL: git remote -v",
            "2. Test access: git ls-remote origin",
            "3. Refresh credentials if needed",
            "4. Retry with verbose output: git push -v",
        ],
        prevention_tips=[
            "Keep access tokens up to date",
            "Prefer SSH keys for long-lived access",
        ],
        severity="low",
        auto_recoverable=True,
        data_loss_risk=False,
    ),
)

GENERIC_INSTRUCTION = ErrorRecoveryInstruction(
    symptom="Unrecognised git error",
    likely_cause="Could be several things; needs a closer look",
    immediate_actions=[
        "Write down the exact error message",
        "Note which command you were running",
        "Check repository status: git status",
    ],
    recovery_steps=[
        "1. Run the command again with verbose output",
        "2. Check repository integrity: git fsck",
        "3. Check the remote connection if the command used one",
        "4. Look up the error message in the git documentation",
        "5. Run corruption detection if the error keeps happening",
    ],
    prevention_tips=[
        "Keep git up to date",
        "Run repository maintenance regularly",
    ],
    severity="medium",
    auto_recoverable=False,
    data_loss_risk=False,
)

_CORRUPTION_KEYWORDS = (
    "corrupt", "bad object", "missing blob", "invalid",
    "broken", "damaged", "unable to read",
)

_LOCK_TYPES = (CorruptionType.STALE_LOCK_FILE, CorruptionType.INDEX_LOCK, CorruptionType.REF_LOCK)
_INDEX_TYPES = (CorruptionType.CORRUPT_INDEX, CorruptionType.INVALID_INDEX)


# ---------------------------------------------------------------------------
# ErrorRecoveryGuide
# ---------------------------------------------------------------------------

class ErrorRecoveryGuide:
    """Looks up guidance for git error output."""

    def __init__(self, patterns: tuple[ErrorPattern, ...] = ERROR_PATTERNS):
        self.patterns = patterns

    def _match(self, error_text: str, require_type: bool = False) -> Optional[ErrorPattern]:
        for entry in self.patterns:
            if require_type and entry.corruption_type is None:
                continue
            if entry.pattern.search(error_text):
                return entry
        return None

    def analyze_error(self, error_text) -> ErrorAnalysis:
        """Return guidance for the first pattern matching *error_text*."""
        text = "" if error_text is None else str(error_text)
        entry = self._match(text)
        if entry is None:
            return ErrorAnalysis(matched=False, guidance=GENERIC_INSTRUCTION)
        return ErrorAnalysis(
            matched=True,
            corruption_type=entry.corruption_type,
            guidance=entry.instruction,
            recovery_options=self._recovery_options_for(entry.instruction),
        )

    @staticmethod
    def _recovery_options_for(instruction: ErrorRecoveryInstruction) -> RecoveryOptions:
        cautious = instruction.data_loss_risk or instruction.severity == "high"
        return RecoveryOptions(
            max_data_loss="moderate" if instruction.data_loss_risk else "minimal",
            auto_repair=instruction.auto_recoverable,
            create_backup=cautious,
            preserve_uncommitted=True,
            aggressive=instruction.severity == "critical",
            timeout_minutes=60 if instruction.severity == "critical" else 30,
            require_confirmation=cautious,
        )

    def get_corruption_guidance(self, corruption_type: CorruptionType) -> Optional[ErrorRecoveryInstruction]:
        for entry in self.patterns:
            if entry.corruption_type == corruption_type:
                return entry.instruction
        return None

    def is_corruption_indicator(self, error_text) -> CorruptionIndicator:
        """Best-effort triage: does *error_text* suggest repository corruption?"""
        text = "" if error_text is None else str(error_text)
        entry = self._match(text, require_type=True)
        if entry is not None:
            return CorruptionIndicator(
                is_corruption=True,
                corruption_type=entry.corruption_type,
                severity=entry.instruction.severity,
            )

        lowered = text.lower()
        if any(keyword in lowered for keyword in _CORRUPTION_KEYWORDS):
            return CorruptionIndicator(is_corruption=True, severity="medium")
        return CorruptionIndicator(is_corruption=False, severity="low")

    def get_quick_fixes(self, error_text) -> list[str]:
        analysis = self.analyze_error(error_text)
        kind = analysis.corruption_type
        if kind in _LOCK_TYPES:
            return [
                "Remove lock files: rm .git/*.lock",
                "Check for running git processes: ps aux | grep git",
            ]
        if kind in _INDEX_TYPES:
            return [
                "Reset index: git reset --mixed HEAD",
                "Remove the corrupt index: rm .git/index",
            ]
        if kind == CorruptionType.INCOMPLETE_REBASE:
            return ["Continue the rebase: git rebase --continue", "Abort the rebase: git rebase --abort"]
        if kind == CorruptionType.INCOMPLETE_MERGE:
            return ["Finish the merge: git commit (after resolving conflicts)",
                    "Abort the merge: git merge --abort"]
        return list(analysis.guidance.immediate_actions)

    def generate_user_friendly_message(self, error_text, guidance: ErrorRecoveryInstruction) -> str:
        """Format *guidance* as a plain-text block for the terminal."""
        lines = [f"Git Error Recovery Guide [{guidance.severity.upper()} SEVERITY]"]
        if guidance.data_loss_risk:
            lines.append("WARNING: this problem can lose data. Make a backup before you continue.")
        lines += ["", "What happened:", f"  {guidance.symptom}",
                  "", "Likely cause:", f"  {guidance.likely_cause}",
                  "", "Immediate actions:"]
        lines += [f"  - {a}" for a in guidance.immediate_actions]
        lines += ["", "Recovery steps:"]
        lines += [f"  {s}" for s in guidance.recovery_steps]
        lines += ["", "Prevention tips:"]
        lines += [f"  - {t}" for t in guidance.prevention_tips]
        lines += ["", f"Original error: {error_text}"]
        return "\n".join(lines)

    def format_detection_report(self, result: DetectionResult) -> str:
        """Summarise a detection result in plain language."""
        if not result.is_corrupted:
            return (
                f"Your repository looks healthy (integrity score {result.integrity_score}/100). "
                "No problems were found."
            )

        lines = [
            f"Found {len(result.issues)} "
            f"{'problem' if len(result.issues) == 1 else 'problems'} "
            f"(integrity score {result.integrity_score}/100).",
        ]
        for severity in reversed(SEVERITY_ORDER):
            group = [i for i in result.issues if i.severity == severity]
            if not group:
                continue
            lines.append("")
            lines.append(f"{severity.value.title()}:")
            for issue in group:
                tag = "fixable automatically" if issue.auto_recoverable else "needs attention"
                lines.append(f"  - {issue.description} ({tag})")
                for action in issue.recommended_actions:
                    lines.append(f"      * {action}")

        if any(i.potential_data_loss for i in result.issues):
            lines.append("")
            lines.append("Some of these problems can lose data. Create a backup before repairing.")
        elif all(i.auto_recoverable for i in result.issues):
            lines.append("")
            lines.append("Everything here can be repaired automatically.")
        return "\n".join(lines)

"""
gitrescue/models/base.py -- Core data model for corruption diagnosis and recovery.

Every value that crosses a component boundary (detector -> coordinator ->
strategies -> backup manager) is one of the pydantic v2 models defined
here.  The closed vocabularies (corruption type, severity, strategy kind,
data-loss risk) are ``str``-valued enums so that they serialise to stable
JSON strings in backup manifests and reports.

Usage::

    from gitrescue.models import CorruptionIssue, CorruptionType, CorruptionSeverity

    issue = CorruptionIssue(
        type=CorruptionType.INDEX_LOCK,
        severity=CorruptionSeverity.MEDIUM,
        description="Stale lock file detected",
        affected_files=["/repo/.git/index.lock"],
    )
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gitrescue.models.operations import Operation


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------
# Closed vocabularies
# ------------------------------------------------------------------

class CorruptionType(str, Enum):
    CORRUPT_OBJECT = "corrupt_object"
    MISSING_OBJECT = "missing_object"
    CORRUPT_INDEX = "corrupt_index"
    INVALID_INDEX = "invalid_index"
    CORRUPT_REF = "corrupt_ref"
    DANGLING_REF = "dangling_ref"
    INVALID_REF_FORMAT = "invalid_ref_format"
    STALE_LOCK_FILE = "stale_lock_file"
    INDEX_LOCK = "index_lock"
    REF_LOCK = "ref_lock"
    INCOMPLETE_MERGE = "incomplete_merge"
    INCOMPLETE_REBASE = "incomplete_rebase"
    INCOMPLETE_CHERRY_PICK = "incomplete_cherry_pick"
    INCOMPLETE_APPLY = "incomplete_apply"
    CORRUPT_CONFIG = "corrupt_config"
    INVALID_REMOTE = "invalid_remote"
    PERMISSION_DENIED = "permission_denied"
    DISK_FULL = "disk_full"
    CORRUPT_PACKFILE = "corrupt_packfile"
    FILESYSTEM_ERROR = "filesystem_error"


class CorruptionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategyKind(str, Enum):
    AUTO_REPAIR = "auto_repair"
    SAFE_REPAIR = "safe_repair"
    MANUAL_INTERVENTION = "manual_intervention"
    BACKUP_RESTORE = "backup_restore"
    DATA_RECONSTRUCTION = "data_reconstruction"


class DataLossRisk(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    MODERATE = "moderate"
    HIGH = "high"


class SessionState(str, Enum):
    CREATED = "created"
    BACKUP = "backup"
    EXECUTING = "executing"
    VALIDATING = "validating"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


MaxDataLoss = Literal["none", "minimal", "moderate", "acceptable"]
Priority = Literal["low", "medium", "high", "critical"]


# ------------------------------------------------------------------
# Detection
# ------------------------------------------------------------------

class CorruptionIssue(BaseModel):
    """A single anomaly found in the repository's internal state."""

    type: CorruptionType
    severity: CorruptionSeverity
    description: str
    affected_files: list[str] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=_utcnow)
    auto_recoverable: bool = False
    recommended_actions: list[str] = Field(default_factory=list)
    potential_data_loss: bool = False
    backup_required: bool = False
    # Machine-readable details: ref name, remote name, lock age...
    context: dict[str, str] = Field(default_factory=dict)


class DetectionResult(BaseModel):
    """Merged output of every detector check."""

    is_corrupted: bool
    issues: list[CorruptionIssue] = Field(default_factory=list)
    integrity_score: int = Field(ge=0, le=100)
    last_check: datetime = Field(default_factory=_utcnow)
    check_duration: int = 0  # milliseconds

    @model_validator(mode="after")
    def _corrupted_matches_issues(self) -> "DetectionResult":
        if self.is_corrupted != (len(self.issues) > 0):
            raise ValueError(
                "is_corrupted must be True exactly when issues are present"
            )
        return self


# ------------------------------------------------------------------
# Planning
# ------------------------------------------------------------------

class RecoveryAction(BaseModel):
    """One remediation step with its risk, time and success estimates."""

    strategy_kind: RecoveryStrategyKind
    description: str
    operations: list[Operation] = Field(default_factory=list)
    data_loss_risk: DataLossRisk = DataLossRisk.NONE
    success_probability: int = Field(default=50, ge=0, le=100)
    estimated_time: int = Field(default=1, ge=0)  # minutes
    requires_backup: bool = False
    requires_user_confirmation: bool = False
    issue_type: Optional[CorruptionType] = None
    # Preparatory (stash) and diagnostic (fsck) actions never resolve their issue
    resolves_issue: bool = True


class RecoveryOptions(BaseModel):
    """Caller preferences that shape plan generation and execution."""

    model_config = ConfigDict(extra="forbid")

    max_data_loss: MaxDataLoss = "minimal"
    auto_repair: bool = True
    create_backup: bool = True
    preserve_uncommitted: bool = True
    aggressive: bool = False
    timeout_minutes: int = Field(default=30, gt=0)
    require_confirmation: bool = False


class RecoveryPlan(BaseModel):
    issues: list[CorruptionIssue] = Field(default_factory=list)
    actions: list[RecoveryAction] = Field(default_factory=list)
    estimated_time: int = 0
    data_loss_risk: DataLossRisk = DataLossRisk.NONE
    requires_backup: bool = False
    requires_confirmation: bool = False
    can_auto_execute: bool = False


class RecoveryResult(BaseModel):
    success: bool = False
    applied_actions: list[RecoveryAction] = Field(default_factory=list)
    resolved_issues: list[CorruptionType] = Field(default_factory=list)
    remaining_issues: list[CorruptionIssue] = Field(default_factory=list)
    data_loss: bool = False
    recovery_time: int = 0  # milliseconds
    user_messages: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    backup_created: Optional[str] = None


class StrategyOutcome(BaseModel):
    """What a strategy reports back after executing a batch of actions."""

    resolved_issues: list[CorruptionType] = Field(default_factory=list)
    user_messages: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    failed_actions: list[RecoveryAction] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.resolved_issues) and not self.failed_actions


# ------------------------------------------------------------------
# Backups
# ------------------------------------------------------------------

class BranchState(BaseModel):
    branch: str
    commit: str
    staged: list[str] = Field(default_factory=list)
    unstaged: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)


class BackupInfo(BaseModel):
    """Manifest of a point-in-time repository snapshot."""

    id: str
    path: str
    created_at: datetime
    reason: str
    branch_state: BranchState
    size: int = 0  # bytes
    compressed: bool = False
    # refs left out of the bundle because their objects were missing
    skipped_refs: list[str] = Field(default_factory=list)


class BackupOptions(BaseModel):
    reason: str
    include_working_directory: bool = False
    compress: bool = False
    max_backups: Optional[int] = Field(default=None, ge=1)


class RestoreOptions(BaseModel):
    preserve_current_changes: bool = False
    target_branch: Optional[str] = None
    partial: bool = False
    files: list[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    success: bool
    restored_files: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class StorageUsage(BaseModel):
    total_size: int = 0
    backup_count: int = 0
    oldest_backup: Optional[datetime] = None
    newest_backup: Optional[datetime] = None


# ------------------------------------------------------------------
# Coordination
# ------------------------------------------------------------------

class RecoverySession(BaseModel):
    id: str
    start_time: datetime = Field(default_factory=_utcnow)
    detection_result: DetectionResult
    planned_actions: list[RecoveryAction] = Field(default_factory=list)
    executed_actions: list[RecoveryAction] = Field(default_factory=list)
    backup_created: Optional[BackupInfo] = None
    result: Optional[RecoveryResult] = None
    options: RecoveryOptions
    state: SessionState = SessionState.CREATED


class RecoveryProgress(BaseModel):
    step: str
    completed: int
    total: int


class QuickCheckResult(BaseModel):
    is_corrupted: bool
    critical_issues: list[CorruptionIssue] = Field(default_factory=list)
    can_continue: bool


class RecoveryRecommendation(BaseModel):
    priority: Priority
    recommended_options: RecoveryOptions
    warning_message: Optional[str] = None
    can_proceed: bool


class RecoverySummary(BaseModel):
    """Outcome of the one-call detect, plan and execute entry point."""

    success: bool
    message: str
    result: Optional[RecoveryResult] = None

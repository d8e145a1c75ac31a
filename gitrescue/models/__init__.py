"""
gitrescue/models/ -- Pydantic v2 models for repository diagnosis and recovery.

Submodules:
    base        Enums and models (issues, plans, results, backups, sessions).
    operations  Typed remediation steps carried by recovery actions.
    validators  Object-id, remote-URL and risk-scale helpers.
"""

from gitrescue.models.base import (
    BackupInfo,
    BackupOptions,
    BranchState,
    CorruptionIssue,
    CorruptionSeverity,
    CorruptionType,
    DataLossRisk,
    DetectionResult,
    QuickCheckResult,
    RecoveryAction,
    RecoveryOptions,
    RecoveryPlan,
    RecoveryProgress,
    RecoveryRecommendation,
    RecoveryResult,
    RecoverySummary,
    RecoverySession,
    RecoveryStrategyKind,
    RestoreOptions,
    RestoreResult,
    SessionState,
    StorageUsage,
    StrategyOutcome,
)
from gitrescue.models.operations import (
    CreateStash,
    RemoveDirectory,
    RemoveFile,
    RunGitCommand,
)

__all__ = [
    "BackupInfo",
    "BackupOptions",
    "BranchState",
    "CorruptionIssue",
    "CorruptionSeverity",
    "CorruptionType",
    "CreateStash",
    "DataLossRisk",
    "DetectionResult",
    "QuickCheckResult",
    "RecoveryAction",
    "RecoveryOptions",
    "RecoveryPlan",
    "RecoveryProgress",
    "RecoveryRecommendation",
    "RecoveryResult",
    "RecoverySummary",
    "RecoverySession",
    "RecoveryStrategyKind",
    "RemoveDirectory",
    "RemoveFile",
    "RestoreOptions",
    "RestoreResult",
    "RunGitCommand",
    "SessionState",
    "StorageUsage",
    "StrategyOutcome",
]

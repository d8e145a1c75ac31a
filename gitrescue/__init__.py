"""
gitrescue -- Integrity diagnosis and recovery for git repositories.

Modules:
    corruption_detector    Seven concurrent structural checks and scoring.
    recovery_strategies    Per-category remediation plans and execution.
    backup_manager         Bundle-based snapshots, restore and retention.
    recovery_coordinator   Plan, back up, execute, validate; sessions.
    error_recovery_guide   Git error text to step-by-step guidance.
"""

from gitrescue.backup_manager import BackupError, BackupManager
from gitrescue.corruption_detector import CorruptionDetector
from gitrescue.error_recovery_guide import ErrorRecoveryGuide
from gitrescue.recovery_coordinator import CorruptionRecoveryCoordinator, RepositoryCorruptedError

__version__ = "0.1.0"

__all__ = [
    "BackupError",
    "BackupManager",
    "CorruptionDetector",
    "CorruptionRecoveryCoordinator",
    "ErrorRecoveryGuide",
    "RepositoryCorruptedError",
]

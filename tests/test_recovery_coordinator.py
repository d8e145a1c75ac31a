"""
Tests for gitrescue/recovery_coordinator.py

Covers:
    - Plan construction (risk aggregation, backup and confirmation flags)
    - Placeholder actions when a strategy cannot plan an issue
    - Plan execution: backup, progress reporting, session bookkeeping
    - Backup failure handling and halting on a failed high-risk action
    - Time budget, failed backup pruning and refs left out of a backup
    - Recommendations by worst severity
    - Pre-flight quick check and the one-call recovery entry point
"""

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from gitrescue import recovery_coordinator
from gitrescue.backup_manager import BackupError, BackupManager
from gitrescue.config import load_settings
from gitrescue.corruption_detector import CorruptionDetector
from gitrescue.models import (
    BackupOptions,
    CorruptionIssue,
    CorruptionSeverity,
    CorruptionType,
    DataLossRisk,
    DetectionResult,
    RecoveryAction,
    RecoveryOptions,
    RecoveryPlan,
    RecoveryStrategyKind,
    RemoveFile,
    RunGitCommand,
    SessionState,
)
from gitrescue.recovery_coordinator import CorruptionRecoveryCoordinator, RepositoryCorruptedError

from conftest import age_file


def _issue(issue_type, severity=CorruptionSeverity.MEDIUM, files=(), **context):
    return CorruptionIssue(
        type=issue_type,
        severity=severity,
        description=f"{issue_type.value} for test",
        affected_files=list(files),
        context=context,
    )


def _detection(*issues):
    return DetectionResult(
        is_corrupted=bool(issues),
        issues=list(issues),
        integrity_score=100 if not issues else 80,
    )


def _stub_detector(*results):
    detector = MagicMock(spec=CorruptionDetector)
    detector.detect_corruption.side_effect = list(results)
    return detector


@pytest.fixture
def coordinator(git_repo, settings, tmp_path):
    return CorruptionRecoveryCoordinator(git_repo, settings=settings,
                                         backup_dir=tmp_path / "snapshots")


# ======================================================================
# Planning
# ======================================================================


class TestCreatePlan:
    def test_incomplete_merge_plan(self, coordinator):
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.INCOMPLETE_MERGE)), RecoveryOptions(),
        )
        assert len(plan.actions) == 1
        assert plan.data_loss_risk == DataLossRisk.MINIMAL
        assert plan.requires_backup is True
        assert plan.requires_confirmation is False
        assert plan.can_auto_execute is True

    def test_empty_detection_gives_empty_plan(self, coordinator):
        plan = coordinator.create_recovery_plan(_detection(), RecoveryOptions())
        assert plan.actions == []
        assert plan.requires_backup is False
        assert plan.data_loss_risk == DataLossRisk.NONE

    def test_confirmation_blocks_auto_execution(self, coordinator):
        plan = coordinator.create_recovery_plan(
            _detection(
                _issue(CorruptionType.INCOMPLETE_MERGE),
                _issue(CorruptionType.CORRUPT_CONFIG),
            ),
            RecoveryOptions(max_data_loss="acceptable"),
        )
        assert plan.requires_confirmation is True
        assert plan.can_auto_execute is False

    def test_risk_above_threshold_blocks_auto_execution(self, coordinator):
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.INCOMPLETE_MERGE)),
            RecoveryOptions(max_data_loss="none"),
        )
        assert plan.can_auto_execute is False

    def test_requested_confirmation_is_honoured(self, coordinator):
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.INCOMPLETE_MERGE)),
            RecoveryOptions(require_confirmation=True),
        )
        assert plan.requires_confirmation is True
        assert plan.can_auto_execute is False

    def test_estimated_time_is_summed(self, coordinator):
        plan = coordinator.create_recovery_plan(
            _detection(
                _issue(CorruptionType.INCOMPLETE_MERGE),
                _issue(CorruptionType.CORRUPT_PACKFILE),
            ),
            RecoveryOptions(),
        )
        assert plan.estimated_time == sum(a.estimated_time for a in plan.actions)
        assert plan.data_loss_risk == DataLossRisk.MODERATE

    def test_unplannable_issue_gets_placeholder(self, coordinator):
        # A dangling ref without a ref name cannot be pruned
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.DANGLING_REF)), RecoveryOptions(),
        )
        action = plan.actions[0]
        assert action.strategy_kind == RecoveryStrategyKind.MANUAL_INTERVENTION
        assert action.data_loss_risk == DataLossRisk.MODERATE
        assert action.requires_user_confirmation is True
        assert action.operations == []
        assert plan.can_auto_execute is False


# ======================================================================
# Execution
# ======================================================================


class TestExecutePlan:
    def test_stale_index_lock_recovery(self, coordinator, git_repo):
        lock = git_repo / ".git" / "index.lock"
        lock.write_text("", encoding="utf-8")
        age_file(lock, 120)

        detection = coordinator.detect_corruption()
        assert [i.type for i in detection.issues] == [CorruptionType.INDEX_LOCK]

        options = RecoveryOptions()
        plan = coordinator.create_recovery_plan(detection, options)
        progress = MagicMock()
        result = coordinator.execute_recovery_plan(plan, options, on_progress=progress)

        assert not lock.exists()
        assert result.success
        assert result.resolved_issues == [CorruptionType.INDEX_LOCK]
        assert result.remaining_issues == []
        assert result.data_loss is False
        assert result.backup_created is not None

        # backup + one action + validation
        assert progress.call_count == 3
        last = progress.call_args.args[0]
        assert last.completed == last.total == 3

        sessions = coordinator.list_recovery_sessions()
        assert len(sessions) == 1
        session = coordinator.get_recovery_session(sessions[0].id)
        assert session.state == SessionState.SUCCESS
        assert session.backup_created.id == result.backup_created
        assert session.result == result

    def test_manual_action_becomes_next_step(self, coordinator):
        detection = _detection(_issue(CorruptionType.PERMISSION_DENIED, CorruptionSeverity.HIGH))
        options = RecoveryOptions(create_backup=False)
        plan = coordinator.create_recovery_plan(detection, options)
        result = coordinator.execute_recovery_plan(plan, options)
        assert any(m.startswith("Manual action required") for m in result.user_messages)
        assert plan.actions[0].description in result.next_steps
        assert result.applied_actions == []

    def test_backup_failure_aborts_when_confirmation_required(self, git_repo, settings):
        backups = MagicMock()
        backups.create_backup.side_effect = BackupError("no space left")
        coordinator = CorruptionRecoveryCoordinator(git_repo, settings=settings, backup_manager=backups)

        options = RecoveryOptions(require_confirmation=True)
        plan = coordinator.create_recovery_plan(_detection(_issue(CorruptionType.INCOMPLETE_MERGE)), options)
        result = coordinator.execute_recovery_plan(plan, options)

        assert result.success is False
        assert result.user_messages[0].startswith("Recovery aborted: backup creation failed")
        assert result.applied_actions == []
        session = coordinator.list_recovery_sessions()[0]
        assert session.state == SessionState.FAILED

    def test_backup_failure_warns_and_continues(self, git_repo, settings):
        lock = git_repo / ".git" / "HEAD.lock"
        lock.write_text("", encoding="utf-8")
        backups = MagicMock()
        backups.create_backup.side_effect = BackupError("no space left")
        coordinator = CorruptionRecoveryCoordinator(git_repo, settings=settings, backup_manager=backups)

        options = RecoveryOptions()
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.STALE_LOCK_FILE, files=[str(lock)])), options,
        )
        result = coordinator.execute_recovery_plan(plan, options)

        assert not lock.exists()
        assert any(m.startswith("Warning: backup creation failed") for m in result.user_messages)
        assert result.backup_created is None

    def test_failed_high_risk_action_halts(self, coordinator, git_repo):
        lock = git_repo / ".git" / "index.lock"
        lock.write_text("", encoding="utf-8")
        risky = RecoveryAction(
            strategy_kind=RecoveryStrategyKind.DATA_RECONSTRUCTION,
            description="rebuild objects",
            operations=[RunGitCommand(args=["rev-parse", "--verify", "no-such-ref"])],
            data_loss_risk=DataLossRisk.HIGH,
            issue_type=CorruptionType.CORRUPT_OBJECT,
        )
        unlock = RecoveryAction(
            strategy_kind=RecoveryStrategyKind.AUTO_REPAIR,
            description="remove lock",
            operations=[RemoveFile(path=str(lock))],
            issue_type=CorruptionType.INDEX_LOCK,
        )
        plan = RecoveryPlan(
            issues=[_issue(CorruptionType.CORRUPT_OBJECT, CorruptionSeverity.CRITICAL)],
            actions=[risky, unlock],
        )

        result = coordinator.execute_recovery_plan(plan, RecoveryOptions(create_backup=False))

        assert lock.exists()
        assert "A high-risk action failed; stopping recovery" in result.user_messages
        assert result.applied_actions == []

    def test_failed_low_risk_action_does_not_halt(self, coordinator, git_repo):
        lock = git_repo / ".git" / "index.lock"
        lock.write_text("", encoding="utf-8")
        abort = RecoveryAction(
            strategy_kind=RecoveryStrategyKind.SAFE_REPAIR,
            description="abort merge",
            operations=[RunGitCommand(args=["merge", "--abort"])],
            data_loss_risk=DataLossRisk.MINIMAL,
            issue_type=CorruptionType.INCOMPLETE_MERGE,
        )
        unlock = RecoveryAction(
            strategy_kind=RecoveryStrategyKind.AUTO_REPAIR,
            description="remove lock",
            operations=[RemoveFile(path=str(lock))],
            issue_type=CorruptionType.INDEX_LOCK,
        )
        plan = RecoveryPlan(
            issues=[_issue(CorruptionType.INDEX_LOCK)],
            actions=[abort, unlock],
        )

        result = coordinator.execute_recovery_plan(plan, RecoveryOptions(create_backup=False))

        assert not lock.exists()
        assert result.applied_actions == [unlock]

    def test_unresolved_issue_reports_failure(self, git_repo, settings):
        issue = _issue(CorruptionType.CORRUPT_OBJECT, CorruptionSeverity.CRITICAL)
        post = DetectionResult(is_corrupted=True, issues=[issue], integrity_score=60)
        coordinator = CorruptionRecoveryCoordinator(
            git_repo, settings=settings, detector=_stub_detector(post),
        )
        plan = RecoveryPlan(issues=[issue], actions=[])

        result = coordinator.execute_recovery_plan(plan, RecoveryOptions(create_backup=False))

        assert result.success is False
        assert result.remaining_issues == [issue]
        assert coordinator.list_recovery_sessions()[0].state == SessionState.FAILED

    def test_stops_when_time_budget_runs_out(self, git_repo, settings, monkeypatch):
        first = git_repo / ".git" / "index.lock"
        second = git_repo / ".git" / "HEAD.lock"
        for lock in (first, second):
            lock.write_text("", encoding="utf-8")
        actions = [
            RecoveryAction(
                strategy_kind=RecoveryStrategyKind.AUTO_REPAIR,
                description=f"remove {lock.name}",
                operations=[RemoveFile(path=str(lock))],
                issue_type=CorruptionType.INDEX_LOCK,
            )
            for lock in (first, second)
        ]
        plan = RecoveryPlan(issues=[_issue(CorruptionType.INDEX_LOCK)], actions=actions)

        # start, first deadline check, then two minutes later
        ticks = iter([0.0, 0.0, 120.0])
        clock = SimpleNamespace(monotonic=lambda: next(ticks, 120.0), time=time.time)
        monkeypatch.setattr(recovery_coordinator, "time", clock)
        coordinator = CorruptionRecoveryCoordinator(
            git_repo, settings=settings, detector=_stub_detector(_detection()),
        )

        result = coordinator.execute_recovery_plan(
            plan, RecoveryOptions(create_backup=False, timeout_minutes=1),
        )

        assert not first.exists()
        assert second.exists()
        assert result.applied_actions == [actions[0]]
        assert "Recovery stopped after 1 minute(s); remaining actions were not run" in result.user_messages

    def test_pruning_failure_does_not_fail_recovery(self, git_repo, tmp_path, monkeypatch):
        settings = load_settings(backup_dir=str(tmp_path / "backups"), min_free_disk_bytes=0,
                                 max_backups=1)
        backups = BackupManager(git_repo, backup_dir=tmp_path / "snapshots", settings=settings)
        earlier = backups.create_backup(BackupOptions(reason="earlier"))

        def refuse(backup_id):
            raise PermissionError(13, "Permission denied", backup_id)

        monkeypatch.setattr(backups, "delete_backup", refuse)
        lock = git_repo / ".git" / "HEAD.lock"
        lock.write_text("", encoding="utf-8")
        coordinator = CorruptionRecoveryCoordinator(git_repo, settings=settings, backup_manager=backups)

        options = RecoveryOptions()
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.STALE_LOCK_FILE, files=[str(lock)])), options,
        )
        result = coordinator.execute_recovery_plan(plan, options)

        assert not lock.exists()
        assert result.backup_created is not None
        assert result.backup_created != earlier.id
        assert f"Created backup {result.backup_created}" in result.user_messages

    def test_backup_reports_refs_left_out(self, coordinator, git_repo):
        (git_repo / ".git" / "refs" / "heads" / "ghost").write_text("deadbeef" * 5 + "\n", encoding="utf-8")
        lock = git_repo / ".git" / "HEAD.lock"
        lock.write_text("", encoding="utf-8")

        options = RecoveryOptions()
        plan = coordinator.create_recovery_plan(
            _detection(_issue(CorruptionType.STALE_LOCK_FILE, files=[str(lock)])), options,
        )
        result = coordinator.execute_recovery_plan(plan, options)

        assert result.backup_created is not None
        assert "Backup left out refs whose objects are missing: refs/heads/ghost" in result.user_messages

    def test_unknown_session(self, coordinator):
        assert coordinator.get_recovery_session("recovery-0-nothing") is None


# ======================================================================
# Recommendations
# ======================================================================


class TestRecommendations:
    def test_healthy_repository(self, coordinator):
        rec = coordinator.get_recovery_recommendations(_detection())
        assert rec.priority == "low"
        assert rec.can_proceed is True
        assert rec.recommended_options.auto_repair is True
        assert rec.recommended_options.create_backup is False
        assert rec.warning_message is None

    def test_critical_issue(self, coordinator):
        rec = coordinator.get_recovery_recommendations(
            _detection(_issue(CorruptionType.CORRUPT_OBJECT, CorruptionSeverity.CRITICAL)),
        )
        assert rec.priority == "critical"
        assert rec.can_proceed is False
        assert rec.recommended_options.max_data_loss == "acceptable"
        assert rec.recommended_options.require_confirmation is True
        assert rec.warning_message

    def test_worst_severity_wins(self, coordinator):
        rec = coordinator.get_recovery_recommendations(_detection(
            _issue(CorruptionType.INDEX_LOCK, CorruptionSeverity.LOW),
            _issue(CorruptionType.CORRUPT_INDEX, CorruptionSeverity.HIGH),
        ))
        assert rec.priority == "high"
        assert rec.recommended_options.max_data_loss == "moderate"
        assert rec.recommended_options.auto_repair is False


# ======================================================================
# Pre-flight check and one-call recovery
# ======================================================================


class TestPreflight:
    def test_quick_check_blocks_on_high_severity(self, git_repo, settings):
        high = _issue(CorruptionType.CORRUPT_INDEX, CorruptionSeverity.HIGH)
        low = _issue(CorruptionType.INVALID_REMOTE, CorruptionSeverity.LOW)
        coordinator = CorruptionRecoveryCoordinator(
            git_repo, settings=settings, detector=_stub_detector(_detection(high, low)),
        )
        check = coordinator.quick_corruption_check()
        assert check.is_corrupted
        assert check.critical_issues == [high]
        assert check.can_continue is False

    def test_quick_check_lets_low_severity_through(self, git_repo, settings):
        coordinator = CorruptionRecoveryCoordinator(
            git_repo, settings=settings,
            detector=_stub_detector(_detection(_issue(CorruptionType.INVALID_REMOTE, CorruptionSeverity.LOW))),
        )
        assert coordinator.quick_corruption_check().can_continue is True

    def test_ensure_healthy_raises(self, git_repo, settings):
        critical = _issue(CorruptionType.CORRUPT_OBJECT, CorruptionSeverity.CRITICAL)
        coordinator = CorruptionRecoveryCoordinator(
            git_repo, settings=settings, detector=_stub_detector(_detection(critical)),
        )
        with pytest.raises(RepositoryCorruptedError) as exc_info:
            coordinator.ensure_repository_healthy()
        assert exc_info.value.issues == [critical]

    def test_ensure_healthy_caches_clean_result(self, git_repo, settings):
        detector = _stub_detector(_detection(), _detection())
        coordinator = CorruptionRecoveryCoordinator(git_repo, settings=settings, detector=detector)
        coordinator.ensure_repository_healthy()
        coordinator.ensure_repository_healthy()
        assert detector.detect_corruption.call_count == 1
        coordinator.ensure_repository_healthy(force=True)
        assert detector.detect_corruption.call_count == 2


class TestRecoverFromCorruption:
    def test_healthy_repository(self, coordinator):
        summary = coordinator.recover_from_corruption()
        assert summary.success is True
        assert "healthy" in summary.message
        assert summary.result is None

    def test_critical_corruption_refused(self, git_repo, settings):
        critical = _issue(CorruptionType.CORRUPT_OBJECT, CorruptionSeverity.CRITICAL)
        coordinator = CorruptionRecoveryCoordinator(
            git_repo, settings=settings, detector=_stub_detector(_detection(critical)),
        )
        summary = coordinator.recover_from_corruption()
        assert summary.success is False
        assert summary.message.startswith("Critical corruption detected.")
        assert coordinator.list_recovery_sessions() == []

    def test_stale_lock_recovered_end_to_end(self, coordinator, git_repo):
        lock = git_repo / ".git" / "index.lock"
        lock.write_text("", encoding="utf-8")
        age_file(lock, 600)
        summary = coordinator.recover_from_corruption(create_backup=False)
        assert summary.success is True
        assert summary.result.resolved_issues == [CorruptionType.INDEX_LOCK]
        assert not lock.exists()

    def test_invalid_override_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.recover_from_corruption(max_data_loss="everything")

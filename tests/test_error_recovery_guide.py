"""
Tests for gitrescue/error_recovery_guide.py

Covers:
    - Pattern matching (first match wins, generic fallback, bad input)
    - Derived recovery options
    - Corruption triage with keyword fallback
    - Quick fixes per corruption family
    - Plain-text guidance and detection reports
"""

import re

import pytest

from gitrescue.error_recovery_guide import (
    ERROR_PATTERNS,
    GENERIC_INSTRUCTION,
    ErrorPattern,
    ErrorRecoveryGuide,
    ErrorRecoveryInstruction,
)
from gitrescue.models import CorruptionIssue, CorruptionSeverity, CorruptionType, DetectionResult


@pytest.fixture
def guide():
    return ErrorRecoveryGuide()


# ---------------------------------------------------------------------------
# analyze_error
# ---------------------------------------------------------------------------

class TestAnalyzeError:
    def test_index_corruption(self, guide):
        analysis = guide.analyze_error("error: bad signature\nfatal: index file corrupt")
        assert analysis.matched
        assert analysis.corruption_type == CorruptionType.CORRUPT_INDEX
        assert analysis.guidance.auto_recoverable is True

    def test_matching_is_case_insensitive(self, guide):
        assert guide.analyze_error("FATAL: INDEX FILE CORRUPT").corruption_type == CorruptionType.CORRUPT_INDEX

    def test_first_match_wins(self, guide):
        # Mentions both a bad object and a lock file; objects come first in the table
        analysis = guide.analyze_error("error: bad object HEAD (index.lock left behind)")
        assert analysis.corruption_type == CorruptionType.CORRUPT_OBJECT

    def test_lock_file_message(self, guide):
        text = ("fatal: Unable to create '/repo/.git/index.lock': File exists.\n"
                "Another git process seems to be running in this repository")
        assert guide.analyze_error(text).corruption_type == CorruptionType.STALE_LOCK_FILE

    def test_merge_conflict_has_no_corruption_type(self, guide):
        analysis = guide.analyze_error("Automatic merge failed; fix conflicts and then commit the result.")
        assert analysis.matched
        assert analysis.corruption_type is None
        assert "merge --abort" in " ".join(analysis.guidance.recovery_steps)

    def test_unknown_error_gets_generic_guidance(self, guide):
        analysis = guide.analyze_error("fatal: something nobody has seen before")
        assert analysis.matched is False
        assert analysis.guidance == GENERIC_INSTRUCTION
        assert analysis.recovery_options is None

    @pytest.mark.parametrize("value", [None, "", 42])
    def test_never_raises(self, guide, value):
        analysis = guide.analyze_error(value)
        assert analysis.guidance is not None

    def test_table_order_is_stable(self):
        kinds = [p.corruption_type for p in ERROR_PATTERNS]
        assert kinds[:3] == [
            CorruptionType.CORRUPT_INDEX,
            CorruptionType.CORRUPT_OBJECT,
            CorruptionType.STALE_LOCK_FILE,
        ]
        assert len(ERROR_PATTERNS) == 10


class TestRecoveryOptions:
    def test_data_loss_pattern_is_cautious(self, guide):
        opts = guide.analyze_error("error: corrupt object 1234").recovery_options
        assert opts.max_data_loss == "moderate"
        assert opts.create_backup is True
        assert opts.require_confirmation is True
        assert opts.auto_repair is False

    def test_critical_pattern_is_aggressive(self, guide):
        opts = guide.analyze_error("fatal: write error: No space left on device").recovery_options
        assert opts.aggressive is True
        assert opts.timeout_minutes == 60

    def test_safe_pattern(self, guide):
        opts = guide.analyze_error("fatal: Unable to create index.lock").recovery_options
        assert opts.max_data_loss == "minimal"
        assert opts.auto_repair is True
        assert opts.require_confirmation is False


# ---------------------------------------------------------------------------
# Triage and quick fixes
# ---------------------------------------------------------------------------

class TestCorruptionIndicator:
    def test_typed_pattern(self, guide):
        indicator = guide.is_corruption_indicator("fatal: bad pack header")
        assert indicator.is_corruption
        assert indicator.corruption_type == CorruptionType.CORRUPT_PACKFILE
        assert indicator.severity == "high"

    def test_untyped_pattern_is_not_corruption(self, guide):
        indicator = guide.is_corruption_indicator("Automatic merge failed")
        assert indicator.is_corruption is False

    def test_keyword_fallback(self, guide):
        indicator = guide.is_corruption_indicator("error: object file .git/objects/ab/cd is damaged")
        assert indicator.is_corruption
        assert indicator.corruption_type is None
        assert indicator.severity == "medium"

    def test_clean_text(self, guide):
        indicator = guide.is_corruption_indicator("Everything up-to-date")
        assert indicator.is_corruption is False
        assert indicator.severity == "low"

    def test_none_input(self, guide):
        assert guide.is_corruption_indicator(None).is_corruption is False


class TestQuickFixes:
    def test_lock_fixes(self, guide):
        fixes = guide.get_quick_fixes("Another git process seems to be running")
        assert fixes[0] == "Remove lock files: rm .git/*.lock"

    def test_index_fixes(self, guide):
        fixes = guide.get_quick_fixes("fatal: index file corrupt")
        assert "Reset index: git reset --mixed HEAD" in fixes

    def test_rebase_fixes(self, guide):
        fixes = guide.get_quick_fixes("rebase stopped: conflict in README.md")
        assert any("rebase --abort" in f for f in fixes)

    def test_merge_fixes_from_custom_pattern(self):
        custom = ErrorPattern(
            pattern=re.compile("MERGE_HEAD exists"),
            corruption_type=CorruptionType.INCOMPLETE_MERGE,
            instruction=ErrorRecoveryInstruction(symptom="merge", likely_cause="merge"),
        )
        fixes = ErrorRecoveryGuide(patterns=(custom,)).get_quick_fixes("fatal: MERGE_HEAD exists")
        assert any("merge --abort" in f for f in fixes)

    def test_other_types_use_immediate_actions(self, guide):
        text = "fatal: No space left on device"
        assert guide.get_quick_fixes(text) == guide.analyze_error(text).guidance.immediate_actions

    def test_unknown_error_uses_generic_actions(self, guide):
        assert guide.get_quick_fixes("???") == GENERIC_INSTRUCTION.immediate_actions


class TestGuidanceLookup:
    def test_known_type(self, guide):
        guidance = guide.get_corruption_guidance(CorruptionType.CORRUPT_PACKFILE)
        assert "packfile" in guidance.symptom

    def test_type_without_pattern(self, guide):
        assert guide.get_corruption_guidance(CorruptionType.INCOMPLETE_APPLY) is None


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

class TestFormatting:
    def test_user_friendly_message(self, guide):
        text = "error: corrupt object 1234"
        message = guide.generate_user_friendly_message(text, guide.analyze_error(text).guidance)
        assert message.startswith("Git Error Recovery Guide [HIGH SEVERITY]")
        assert "WARNING" in message
        assert "1. List every problem: git fsck --full --strict" in message
        assert message.endswith(f"Original error: {text}")

    def test_message_without_data_loss_warning(self, guide):
        message = guide.generate_user_friendly_message("oops", GENERIC_INSTRUCTION)
        assert "WARNING" not in message
        assert "[MEDIUM SEVERITY]" in message

    def test_healthy_report(self, guide):
        report = guide.format_detection_report(
            DetectionResult(is_corrupted=False, issues=[], integrity_score=100),
        )
        assert "healthy" in report
        assert "100/100" in report

    def test_report_groups_by_severity(self, guide):
        issues = [
            CorruptionIssue(type=CorruptionType.INDEX_LOCK, severity=CorruptionSeverity.LOW,
                            description="Stale index lock", auto_recoverable=True),
            CorruptionIssue(type=CorruptionType.CORRUPT_OBJECT, severity=CorruptionSeverity.CRITICAL,
                            description="Corrupt object abc", potential_data_loss=True,
                            recommended_actions=["Restore from backup"]),
        ]
        report = guide.format_detection_report(
            DetectionResult(is_corrupted=True, issues=issues, integrity_score=45),
        )
        assert report.startswith("Found 2 problems (integrity score 45/100).")
        assert report.index("Critical:") < report.index("Low:")
        assert "Stale index lock (fixable automatically)" in report
        assert "* Restore from backup" in report
        assert report.endswith("Create a backup before repairing.")

    def test_report_all_auto_recoverable(self, guide):
        issue = CorruptionIssue(type=CorruptionType.INDEX_LOCK, severity=CorruptionSeverity.LOW,
                                description="Stale index lock", auto_recoverable=True)
        report = guide.format_detection_report(
            DetectionResult(is_corrupted=True, issues=[issue], integrity_score=95),
        )
        assert report.startswith("Found 1 problem ")
        assert report.endswith("Everything here can be repaired automatically.")

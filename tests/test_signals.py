"""Tests for epicflow.lib.signals (worker output classification)."""

import pytest

from epicflow.lib.signals import (
    classify_status,
    extract_block,
    extract_outcome,
    parse_finding_lines,
)
from epicflow.lib.types import Phase, Severity, Signal


def fenced(tag, body):
    return f"```{tag}\n{body}\n```"


class TestClassifyStatus:
    """Tests for status word classification."""

    @pytest.mark.parametrize("status", ["COMPLETE", "passed", " Approved ", "GENERATED"])
    def test_success_words(self, status):
        assert classify_status(status, Phase.DEV) == Signal.SUCCESS

    @pytest.mark.parametrize("status", ["BLOCKED", "failed", "VIOLATIONS", "PARTIAL"])
    def test_failure_words(self, status):
        assert classify_status(status, Phase.DEV) == Signal.FAILURE

    def test_concerns_pass_through_for_test_quality(self):
        assert classify_status("CONCERNS", Phase.TEST_QUALITY) == Signal.SUCCESS
        assert classify_status("CONCERNS", Phase.TRACEABILITY) == Signal.SUCCESS

    def test_concerns_fail_elsewhere(self):
        assert classify_status("CONCERNS", Phase.REVIEW) == Signal.FAILURE

    def test_unknown_is_ambiguous(self):
        assert classify_status("MAYBE", Phase.DEV) == Signal.AMBIGUOUS
        assert classify_status("", Phase.DEV) == Signal.AMBIGUOUS


class TestStructuredExtraction:
    """Tests for fenced and bare JSON result blocks."""

    def test_json_block(self):
        output = "Working...\n" + fenced("json", '{"status": "COMPLETE", "story_id": "2-1", '
                                                 '"files_changed": ["src/a.py"], "tests_added": 3}')
        outcome = extract_outcome(output, Phase.DEV)

        assert outcome.success
        assert outcome.source == "json"
        assert outcome.story_id == "2-1"
        assert outcome.files_changed == ("src/a.py",)
        assert outcome.tests_added == 3

    def test_last_block_wins(self):
        output = "\n".join([
            fenced("json", '{"status": "FAILED"}'),
            "retrying",
            fenced("json", '{"status": "COMPLETE"}'),
        ])
        assert extract_outcome(output, Phase.DEV).success

    def test_malformed_last_block_falls_back_to_earlier(self):
        output = "\n".join([
            fenced("json", '{"status": "COMPLETE"}'),
            fenced("json", '{"status": "FAILED",'),
        ])
        outcome = extract_outcome(output, Phase.DEV)
        assert outcome.success
        assert outcome.source == "json"

    def test_result_fence(self):
        outcome = extract_outcome(fenced("result", '{"status": "PASSED"}'), Phase.REVIEW)
        assert outcome.success
        assert outcome.source == "result"

    def test_bare_object(self):
        outcome = extract_outcome('Done. {"status": "APPROVED", "summary": "ok"}', Phase.TEST_QUALITY)
        assert outcome.success
        assert outcome.source == "bare"
        assert outcome.summary == "ok"

    def test_unknown_status_falls_through_to_sentinel(self):
        output = fenced("json", '{"status": "WEIRD"}') + "\nREVIEW FAILED: 2-1"
        outcome = extract_outcome(output, Phase.REVIEW)
        assert outcome.failed
        assert outcome.source == "sentinel"

    def test_schema_invalid_block_ignored(self):
        output = fenced("json", '{"summary": "no status here"}')
        assert extract_outcome(output, Phase.DEV).ambiguous

    def test_issues_filtered_to_actionable(self):
        body = ('{"status": "FAILED", "issues": ['
                '{"severity": "HIGH", "description": "missing validation", "location": "src/a.py:10"},'
                '{"severity": "LOW", "description": "naming"},'
                '"MEDIUM: unclear error message"]}')
        outcome = extract_outcome(fenced("json", body), Phase.REVIEW)

        assert outcome.failed
        assert [f.severity for f in outcome.findings] == [Severity.HIGH, Severity.MEDIUM]
        assert outcome.findings[0].location == "src/a.py:10"

    def test_test_quality_only_blocks_on_high(self):
        body = '{"status": "FAILED", "issues": [{"severity": "MEDIUM", "description": "weak asserts"}]}'
        outcome = extract_outcome(fenced("json", body), Phase.TEST_QUALITY)
        assert outcome.failed
        assert outcome.findings == ()

    def test_decisions_and_concerns(self):
        body = ('{"status": "APPROVED", "decisions": ["use sqlite", {"what": "cache", "why": "speed"}],'
                ' "concerns": ["flaky timing"]}')
        outcome = extract_outcome(fenced("json", body), Phase.TEST_QUALITY)
        assert [d.what for d in outcome.decisions] == ["use sqlite", "cache"]
        assert outcome.decisions[1].why == "speed"
        assert outcome.concerns == ("flaky timing",)

    def test_legacy_mode_skips_structured(self):
        output = fenced("json", '{"status": "COMPLETE"}')
        assert extract_outcome(output, Phase.DEV, legacy=True).ambiguous


class TestTextExtraction:
    """Tests for sentinel lines and fuzzy vocabulary."""

    def test_sentinel_with_story_id(self):
        outcome = extract_outcome("All good.\nREVIEW PASSED: 2-1-login\n", Phase.REVIEW)
        assert outcome.success
        assert outcome.source == "sentinel"
        assert outcome.story_id == "2-1-login"

    def test_last_sentinel_wins(self):
        output = "IMPLEMENTATION BLOCKED: 1-1\nretried\nIMPLEMENTATION COMPLETE: 1-1"
        assert extract_outcome(output, Phase.DEV).success

    def test_sentinel_failure_reads_findings_block(self):
        output = "\n".join([
            "REVIEW FINDINGS START",
            "- [HIGH] missing input validation",
            "- [LOW] variable naming",
            "REVIEW FINDINGS END",
            "REVIEW FAILED: 2-1",
        ])
        outcome = extract_outcome(output, Phase.REVIEW)
        assert outcome.failed
        assert len(outcome.findings) == 1
        assert outcome.findings[0].description == "missing input validation"

    def test_concerns_sentinel(self):
        assert extract_outcome("TEST QUALITY CONCERNS: 2-1", Phase.TEST_QUALITY).success

    def test_fuzzy_success(self):
        outcome = extract_outcome("I think the review is approved overall.", Phase.REVIEW)
        assert outcome.success
        assert outcome.source == "fuzzy"

    def test_fuzzy_failure(self):
        outcome = extract_outcome("The review failed because of several issues.", Phase.REVIEW)
        assert outcome.failed
        assert outcome.source == "fuzzy"

    def test_fuzzy_success_checked_first(self):
        # Mentions both vocabularies; success wins
        outcome = extract_outcome("Implementation complete after earlier failure", Phase.DEV)
        assert outcome.success

    def test_no_signal_is_ambiguous(self):
        outcome = extract_outcome("I wrote some code.", Phase.DESIGN)
        assert outcome.ambiguous
        assert outcome.source == "none"

    def test_phase_by_name(self):
        assert extract_outcome("ARCH COMPLIANT", "arch_compliance").success


class TestFindingLines:
    """Tests for legacy finding line parsing."""

    def test_severity_lines(self):
        findings = parse_finding_lines("- [CRITICAL] sql injection\n* HIGH: no tests\nMEDIUM - slow")
        assert [f.severity for f in findings] == [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM]
        assert findings[1].description == "no tests"

    def test_gap_lines_with_continuation(self):
        text = "GAP: 2-1|AC-3|P0|login not covered|T-9|unit\n  Given a user\n  Then login works"
        findings = parse_finding_lines(text)

        assert len(findings) == 1
        gap = findings[0]
        assert gap.severity == Severity.CRITICAL
        assert gap.location == "2-1"
        assert gap.description.startswith("AC-3")
        assert "Given a user" in gap.description

    def test_unknown_priority_defaults_high(self):
        findings = parse_finding_lines("GAP: 2-1|AC-1|PX|missing")
        assert findings[0].severity == Severity.HIGH

    def test_extract_block_last(self):
        output = "X START\nfirst\nX END\nX START\nsecond\nX END"
        assert extract_block(output, "X START", "X END") == "second"
        assert extract_block("nothing", "X START", "X END") == ""

"""Tests for the diagnosis module."""
import json

import pytest

from diagnosis import (
    QualityGate,
    build_validation_summary,
    describe_failure,
    evaluate_quality_gates,
    overall_status,
    summarize_check,
)
from errors import CancelledError, GenerationError, InvalidInputError
from geometry_generator import generate_geometry
from geometry_validator import PrintabilityCheck, PrintabilityIssue, validate_geometry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _issue(severity, kind="thin-feature", layer=1):
    return PrintabilityIssue(
        type=kind,
        severity=severity,
        description=f"synthetic {kind}",
        layer_index=layer,
    )


def _check(errors=0, warnings=0):
    issues = [_issue("error") for _ in range(errors)]
    issues += [_issue("warning", "poor-triangle-quality") for _ in range(warnings)]
    return PrintabilityCheck(
        is_printable=errors == 0,
        issues=issues,
        recommendations=["Increase the minimum feature size or reduce image detail"] if errors else [],
    )


@pytest.fixture
def bookmark_geometry(quantized_gradient, bookmark_parameters):
    return generate_geometry(quantized_gradient, bookmark_parameters)


# ---------------------------------------------------------------------------
# Failure reports
# ---------------------------------------------------------------------------

class TestDescribeFailure:
    def test_cancelled_is_calm(self):
        report = describe_failure(CancelledError("clustering"))
        assert report.status == "cancelled"
        assert report.message == "Cancelled by user"

    def test_invalid_input_keeps_message(self):
        report = describe_failure(InvalidInputError("width must be positive, got 0"))
        assert report.status == "invalid_input"
        assert "width" in report.message
        assert report.suggestion

    def test_generation_error_names_cause(self):
        try:
            try:
                raise MemoryError("triangulation")
            except MemoryError as exc:
                raise GenerationError("Geometry generation failed") from exc
        except GenerationError as err:
            report = describe_failure(err)
        assert report.status == "generation_failed"
        assert "MemoryError" in report.message

    def test_unknown_error(self):
        report = describe_failure(OSError("disk full"))
        assert report.status == "error"
        assert "disk full" in report.message


# ---------------------------------------------------------------------------
# Quality gates
# ---------------------------------------------------------------------------

class TestQualityGates:
    def test_clean_check_passes(self):
        gates = evaluate_quality_gates(_check())
        assert [g.name for g in gates] == ["printable", "warnings"]
        assert overall_status(gates) == "pass"

    def test_errors_fail(self):
        gates = evaluate_quality_gates(_check(errors=2))
        printable = gates[0]
        assert printable.status == "fail"
        assert printable.metric_value == 2.0
        assert printable.recommendations
        assert overall_status(gates) == "fail"

    @pytest.mark.parametrize("count,expected", [(0, "pass"), (2, "warn"), (4, "fail")])
    def test_warning_thresholds(self, count, expected):
        gates = evaluate_quality_gates(_check(warnings=count))
        assert gates[1].status == expected

    def test_relief_layer_gate(self, bookmark_geometry):
        gates = evaluate_quality_gates(_check(), bookmark_geometry)
        relief = gates[-1]
        assert relief.name == "relief_layers"
        assert relief.metric_value == 3.0
        assert relief.status == "pass"

    def test_overall_status_precedence(self):
        gates = [
            QualityGate(name="a", status="pass", metric_value=0.0, message=""),
            QualityGate(name="b", status="warn", metric_value=1.0, message=""),
        ]
        assert overall_status(gates) == "warn"


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

class TestSummaries:
    def test_validation_summary_is_json_ready(self, bookmark_geometry, bookmark_parameters):
        check = validate_geometry(bookmark_geometry, bookmark_parameters)
        summary = build_validation_summary(check, bookmark_geometry)
        json.dumps(summary)
        assert summary["is_printable"] is True
        assert summary["layer_count"] == 4
        assert summary["face_count"] == bookmark_geometry.face_count
        assert summary["estimated_file_size_bytes"] == 84 + 50 * bookmark_geometry.face_count
        assert summary["bounding_box_mm"] == pytest.approx([30.0, 60.0, 3.2])
        assert summary["gates"]["printable"] == "pass"

    def test_issue_counts(self):
        summary = build_validation_summary(_check(errors=1, warnings=2))
        assert summary["issue_counts"] == {"thin-feature": 1, "poor-triangle-quality": 2}
        assert summary["error_count"] == 1
        assert summary["overall_status"] == "fail"

    def test_markdown_groups_by_severity(self):
        text = summarize_check(_check(errors=1, warnings=1))
        assert text.startswith("**Result:** NOT printable")
        assert "### Errors" in text
        assert "### Warnings" in text
        assert "### Recommended actions" in text
        assert text.index("### Errors") < text.index("### Warnings")
        assert "(layer 1)" in text

    def test_markdown_for_clean_result(self, bookmark_geometry):
        text = summarize_check(_check(), bookmark_geometry)
        assert text.startswith("**Result:** printable")
        assert "4 layers" in text
        assert "### Errors" not in text

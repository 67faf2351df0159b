"""
Diagnosis module for bookmark pipeline results.

Turns exceptions and validation results into short, user-facing reports:
failure descriptions with a suggested fix, pass/warn/fail quality gates,
and a markdown summary written next to the run artifacts.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import CancelledError, GenerationError, InvalidInputError
from geometry_generator import BookmarkGeometry
from geometry_validator import PrintabilityCheck

logger = logging.getLogger(__name__)

DIAGNOSIS_VERSION = "1.0.0"


@dataclass
class FailureReport:
    """User-facing description of a failed run."""

    status: str  # "cancelled" | "invalid_input" | "generation_failed" | "error"
    message: str
    suggestion: str = ""


@dataclass
class QualityGate:
    """A single pass/warn/fail quality check."""

    name: str
    status: str  # "pass" | "warn" | "fail"
    metric_value: float
    message: str
    recommendations: List[str] = field(default_factory=list)


def describe_failure(exc: BaseException) -> FailureReport:
    """Map a pipeline exception to a calm, actionable report."""
    if isinstance(exc, CancelledError):
        return FailureReport(status="cancelled", message="Cancelled by user")
    if isinstance(exc, InvalidInputError):
        return FailureReport(
            status="invalid_input",
            message=str(exc),
            suggestion="Check the image and bookmark parameters, then try again",
        )
    if isinstance(exc, GenerationError):
        cause = exc.__cause__
        detail = f"{exc} (caused by {type(cause).__name__})" if cause else str(exc)
        return FailureReport(
            status="generation_failed",
            message=detail,
            suggestion="Try simpler parameters: fewer colors or a larger minimum feature size",
        )
    logger.debug("Unclassified failure: %r", exc)
    return FailureReport(
        status="error",
        message=f"Unexpected error: {exc}",
        suggestion="Re-run with --verbose and inspect the log",
    )


# ---------------------------------------------------------------------------
# Quality gate evaluation
# ---------------------------------------------------------------------------

def _gate_printable(check: PrintabilityCheck) -> QualityGate:
    errors = len(check.errors)
    return QualityGate(
        name="printable",
        status="pass" if errors == 0 else "fail",
        metric_value=float(errors),
        message=f"{errors} blocking issues",
        recommendations=list(check.recommendations) if errors else [],
    )


def _gate_warnings(check: PrintabilityCheck) -> QualityGate:
    warnings = len(check.warnings)
    if warnings == 0:
        status = "pass"
    elif warnings <= 3:
        status = "warn"
    else:
        status = "fail"
    return QualityGate(
        name="warnings",
        status=status,
        metric_value=float(warnings),
        message=f"{warnings} warnings",
    )


def _gate_relief_layers(geometry: BookmarkGeometry) -> QualityGate:
    relief = len(geometry.layers) - 1
    recs: List[str] = []
    if relief >= 2:
        status = "pass"
    elif relief == 1:
        status = "warn"
        recs.append("Only one relief layer: raise the color count or use a higher-contrast image")
    else:
        status = "fail"
        recs.append("No relief layers: the image may be a single color or fully transparent")
    return QualityGate(
        name="relief_layers",
        status=status,
        metric_value=float(relief),
        message=f"{relief} relief layers",
        recommendations=recs,
    )


def evaluate_quality_gates(
    check: PrintabilityCheck,
    geometry: Optional[BookmarkGeometry] = None,
) -> List[QualityGate]:
    gates = [_gate_printable(check), _gate_warnings(check)]
    if geometry is not None:
        gates.append(_gate_relief_layers(geometry))
    return gates


def overall_status(gates: List[QualityGate]) -> str:
    statuses = [g.status for g in gates]
    if "fail" in statuses:
        return "fail"
    if "warn" in statuses:
        return "warn"
    return "pass"


def build_validation_summary(
    check: PrintabilityCheck,
    geometry: Optional[BookmarkGeometry] = None,
) -> Dict[str, Any]:
    """Flat metrics dict suitable for metrics.json."""
    gates = evaluate_quality_gates(check, geometry)
    counts: Dict[str, int] = {}
    for issue in check.issues:
        counts[issue.type] = counts.get(issue.type, 0) + 1
    summary: Dict[str, Any] = {
        "version": DIAGNOSIS_VERSION,
        "is_printable": check.is_printable,
        "overall_status": overall_status(gates),
        "error_count": len(check.errors),
        "warning_count": len(check.warnings),
        "issue_counts": counts,
        "estimated_print_time_min": check.estimated_print_time,
        "material_usage_g": check.material_usage,
        "gates": {g.name: g.status for g in gates},
    }
    if geometry is not None:
        summary.update({
            "layer_count": len(geometry.layers),
            "vertex_count": geometry.vertex_count,
            "face_count": geometry.face_count,
            "estimated_file_size_bytes": geometry.estimated_file_size,
            "bounding_box_mm": list(geometry.bounding_box.size),
        })
    return summary


def summarize_check(
    check: PrintabilityCheck,
    geometry: Optional[BookmarkGeometry] = None,
) -> str:
    """Markdown report grouping errors and warnings with next steps."""
    verdict = "printable" if check.is_printable else "NOT printable"
    lines = [f"**Result:** {verdict}", ""]
    if geometry is not None:
        sx, sy, sz = geometry.bounding_box.size
        lines.append(
            f"{len(geometry.layers)} layers, {geometry.face_count} triangles, "
            f"{sx:.1f} x {sy:.1f} x {sz:.2f} mm"
        )
        lines.append("")
    if check.estimated_print_time or check.material_usage:
        lines.append(
            f"Estimated print time {check.estimated_print_time:.0f} min, "
            f"material {check.material_usage:.2f} g"
        )
        lines.append("")

    for title, group in (("Errors", check.errors), ("Warnings", check.warnings)):
        if not group:
            continue
        lines.append(f"### {title}")
        for issue in group:
            where = f" (layer {issue.layer_index})" if issue.layer_index is not None else ""
            lines.append(f"- `{issue.type}`{where}: {issue.description}")
        lines.append("")

    if check.recommendations:
        lines.append("### Recommended actions")
        for rec in check.recommendations:
            lines.append(f"- {rec}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"

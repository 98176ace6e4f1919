from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from diffsync.exceptions import ValidationError
from diffsync.schemas import (
    DetectionResult,
    DifferentialResponse,
    EntityFailure,
    EntityResultOut,
    FilteredEntity,
    OverallSummary,
    ProcessingMetrics,
)


def filter_by_threshold(
    results: Sequence[DetectionResult], change_threshold: float
) -> Tuple[List[DetectionResult], List[FilteredEntity]]:
    """Split results into (included, filtered) on ``changePercentage``.

    Filtered entities are kept for audit with the measured percentage and a
    reason; they do not count towards the overall totals.
    """
    if change_threshold is None or change_threshold < 0:
        raise ValidationError(["changeThreshold must be a number >= 0"])

    included: List[DetectionResult] = []
    filtered: List[FilteredEntity] = []
    for result in results:
        if result.summary.change_percentage < change_threshold:
            filtered.append(
                FilteredEntity(
                    entity_type=result.entity_type,
                    change_percentage=result.summary.change_percentage,
                    reason=f"Below threshold of {change_threshold}%",
                )
            )
        else:
            included.append(result)
    return included, filtered


def estimate_duration(total_changes: int, records_per_minute: int = 1000) -> str:
    minutes = total_changes / max(1, records_per_minute)
    if minutes < 1:
        return "< 1 min"
    if minutes < 60:
        return f"{math.ceil(minutes)} min"
    hours = math.ceil(minutes / 60)
    return f"{hours} hour{'s' if hours > 1 else ''}"


def overall_recommendations(included: Sequence[DetectionResult], failures: Sequence[EntityFailure]) -> List[str]:
    total = sum(r.summary.total_changes for r in included)
    out: List[str] = []
    if total == 0:
        out.append("No entities meet the change threshold")
        out.append("Consider lowering threshold or checking for recent changes")
    else:
        out.append(f"Migration recommended for {total:,} detected changes")
        if any(r.summary.change_percentage > 10 for r in included):
            out.append("Large change percentage detected - verify data integrity before migration")
        if any(r.summary.modified_records > r.summary.new_records for r in included):
            out.append("Focus on modified records for data integrity")
    for failure in failures:
        hint = "retry later" if failure.retryable else "fix the request before retrying"
        out.append(f"Analysis of {failure.entity_type} failed ({failure.code}) - {hint}")
    return out


def build_response(
    analysis_id: str,
    baseline: datetime,
    outcomes: Sequence[DetectionResult | EntityFailure],
    change_threshold: float,
    records_per_minute: int = 1000,
    changes_limit: int = 100,
    metrics: Optional[ProcessingMetrics] = None,
) -> DifferentialResponse:
    results = [o for o in outcomes if isinstance(o, DetectionResult)]
    failures = [o for o in outcomes if isinstance(o, EntityFailure)]
    included, filtered = filter_by_threshold(results, change_threshold)

    total_changes = sum(r.summary.total_changes for r in included)
    average = (
        round(sum(r.summary.change_percentage for r in included) / len(included), 2)
        if included else 0.0
    )
    return DifferentialResponse(
        analysis_id=analysis_id,
        timestamp=datetime.now(timezone.utc),
        baseline_timestamp=baseline,
        entity_results=[
            EntityResultOut(
                entity_type=r.entity_type,
                detection_method=r.detection_method,
                total_records_analyzed=r.total_records_analyzed,
                summary=r.summary,
                changes=r.changes_detected[:changes_limit],
                performance=r.performance,
                recommendations=r.recommendations,
            )
            for r in included
        ],
        overall_summary=OverallSummary(
            total_changes=total_changes,
            estimated_migration_time=estimate_duration(total_changes, records_per_minute),
            average_change_percentage=average,
            filtered_entities=filtered,
        ),
        failed_entities=failures,
        recommendations=overall_recommendations(included, failures),
        processing_metrics=metrics,
    )

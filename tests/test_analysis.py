from datetime import datetime, timezone

import pytest

from diffsync.exceptions import ValidationError
from diffsync.schemas import ChangeSummary, DetectionResult, EntityFailure, PerformanceStats
from diffsync.services.analysis import build_response, estimate_duration, filter_by_threshold

NOW = datetime(2025, 10, 25, 12, 0, tzinfo=timezone.utc)
ANALYSIS_ID = "550e8400-e29b-41d4-a716-446655440000"


def result(entity, total, percentage, new=None, modified=0):
    return DetectionResult(
        analysis_id=ANALYSIS_ID,
        entity_type=entity,
        analysis_timestamp=NOW,
        baseline_timestamp=NOW,
        detection_method="timestamp_with_hash",
        total_records_analyzed=1000,
        changes_detected=[],
        summary=ChangeSummary(
            new_records=total if new is None else new,
            modified_records=modified,
            total_changes=total,
            change_percentage=percentage,
        ),
        performance=PerformanceStats(),
    )


def test_threshold_filters_low_signal_entities():
    included, filtered = filter_by_threshold(
        [result("doctors", 3, 0.06), result("patients", 50, 1.0)], change_threshold=0.5
    )
    assert [r.entity_type for r in included] == ["patients"]
    assert len(filtered) == 1
    assert filtered[0].entity_type == "doctors"
    assert filtered[0].change_percentage == 0.06
    assert filtered[0].reason == "Below threshold of 0.5%"


def test_zero_threshold_keeps_everything():
    included, filtered = filter_by_threshold([result("doctors", 0, 0.0)], change_threshold=0)
    assert len(included) == 1
    assert filtered == []


def test_negative_threshold_rejected():
    with pytest.raises(ValidationError):
        filter_by_threshold([], change_threshold=-1)


@pytest.mark.parametrize(
    "total,expected",
    [(0, "< 1 min"), (50, "< 1 min"), (999, "< 1 min"), (1000, "1 min"),
     (5000, "5 min"), (5001, "6 min"), (60_000, "1 hour"), (120_000, "2 hours"), (150_000, "3 hours")],
)
def test_estimate_duration(total, expected):
    assert estimate_duration(total) == expected


def test_build_response_aggregates_included_entities():
    outcomes = [
        result("offices", 69, 1.38),
        result("doctors", 156, 3.12),
        result("patients", 89, 1.78),
        result("files", 1, 0.01),
        EntityFailure(entity_type="orders", code="ANALYSIS_TIMEOUT", message="timed out", retryable=True),
    ]
    response = build_response(ANALYSIS_ID, NOW, outcomes, change_threshold=0.5)

    assert response.overall_summary.total_changes == 314
    assert [e.entity_type for e in response.entity_results] == ["offices", "doctors", "patients"]
    assert [f.entity_type for f in response.overall_summary.filtered_entities] == ["files"]
    assert response.overall_summary.average_change_percentage == 2.09
    assert response.overall_summary.estimated_migration_time == "< 1 min"
    assert response.failed_entities[0].entity_type == "orders"
    assert any("orders" in r for r in response.recommendations)


def test_build_response_with_nothing_included():
    response = build_response(ANALYSIS_ID, NOW, [result("files", 1, 0.01)], change_threshold=5)

    assert response.entity_results == []
    assert response.overall_summary.total_changes == 0
    assert response.recommendations[0] == "No entities meet the change threshold"


def test_response_serializes_camel_case():
    body = build_response(ANALYSIS_ID, NOW, [result("offices", 69, 1.38)], 0).model_dump(by_alias=True)
    assert "overallSummary" in body
    assert "estimatedMigrationTime" in body["overallSummary"]
    assert "changePercentage" in body["entityResults"][0]["summary"]

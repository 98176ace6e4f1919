from datetime import timedelta

import pytest

from diffsync.exceptions import EntityNotFoundError
from diffsync.schemas import DetectionResult, EntityFailure
from diffsync.services.detector import change_percentage

from factories import BASELINE, CHANGED_AT, SESSION_ID, office, synced


def load_scenario(detector):
    """5000 changed offices: 45 new, 23 modified, 1 removed from source."""
    rows = [office(i) for i in range(1, 5001)]
    detector.source["offices"] = rows
    dest = []
    for row in rows[:4955]:
        stale = row["id"] <= 23
        dest.append(synced(row, content_hash="sha256_0000000000000000" if stale else None))
    dest.append({"legacy_id": 9999, "updated_at": BASELINE + timedelta(days=2), "content_hash": "sha256_aaaaaaaaaaaaaaaa"})
    detector.destination["offices"] = dest


@pytest.mark.asyncio
async def test_detect_changes_counts(detector):
    load_scenario(detector)
    result = await detector.detect_changes("offices", BASELINE)

    assert result.total_records_analyzed == 5000
    assert result.summary.new_records == 45
    assert result.summary.modified_records == 23
    assert result.summary.deleted_records == 1
    assert result.summary.total_changes == 69
    assert result.summary.change_percentage == 1.38
    assert result.detection_method == "timestamp_with_hash"


@pytest.mark.asyncio
async def test_detection_output_is_deterministic(detector):
    load_scenario(detector)
    first = await detector.detect_changes("offices", BASELINE, batch_size=700)
    second = await detector.detect_changes("offices", BASELINE, batch_size=700)

    assert first.summary == second.summary
    assert [c.record_id for c in first.changes_detected] == [c.record_id for c in second.changes_detected]
    assert first.analysis_id != second.analysis_id


@pytest.mark.asyncio
async def test_changes_are_grouped_new_modified_deleted(detector):
    load_scenario(detector)
    result = await detector.detect_changes("offices", BASELINE)
    kinds = [c.change_type for c in result.changes_detected]

    assert kinds == ["new"] * 45 + ["modified"] * 23 + ["deleted"]
    assert result.changes_detected[0].record_id == "4956"
    assert result.changes_detected[-1].record_id == "9999"


@pytest.mark.asyncio
async def test_change_record_details(detector):
    load_scenario(detector)
    result = await detector.detect_changes("offices", BASELINE)
    by_type = {c.change_type: c for c in result.changes_detected}

    assert by_type["new"].destination_timestamp is None
    assert by_type["new"].metadata.confidence == 0.95
    assert by_type["modified"].previous_content_hash == "sha256_0000000000000000"
    assert by_type["modified"].content_hash != by_type["modified"].previous_content_hash
    assert by_type["modified"].metadata.confidence == 0.98
    assert by_type["deleted"].source_timestamp == by_type["deleted"].destination_timestamp
    assert by_type["deleted"].metadata.confidence == 0.90
    assert by_type["new"].metadata.source_entity == "dispatch_office"
    assert by_type["new"].metadata.destination_entity == "offices"
    for change in result.changes_detected:
        if change.change_type != "deleted":
            assert change.source_timestamp >= result.baseline_timestamp


@pytest.mark.asyncio
async def test_touch_only_write_not_reported_with_hashing(detector):
    row = office(1)
    detector.source["offices"] = [row]
    detector.destination["offices"] = [synced(row, updated_at=BASELINE)]

    result = await detector.detect_changes("offices", BASELINE)
    assert result.summary.total_changes == 0


@pytest.mark.asyncio
async def test_timestamp_only_mode(detector):
    newer, same = office(1), office(2)
    detector.source["offices"] = [newer, same]
    detector.destination["offices"] = [
        synced(newer, updated_at=CHANGED_AT - timedelta(hours=1)),
        synced(same),
    ]

    result = await detector.detect_changes("offices", BASELINE, enable_content_hashing=False)
    assert result.detection_method == "timestamp_only"
    assert [c.record_id for c in result.changes_detected] == ["1"]
    assert result.changes_detected[0].metadata.confidence == 0.85
    assert result.changes_detected[0].content_hash is None


@pytest.mark.asyncio
async def test_missing_destination_hash_falls_back_to_timestamps(detector):
    row = office(1)
    detector.source["offices"] = [row]
    detector.destination["offices"] = [
        {"legacy_id": 1, "updated_at": CHANGED_AT - timedelta(days=1), "content_hash": None}
    ]

    result = await detector.detect_changes("offices", BASELINE)
    assert result.summary.modified_records == 1
    assert result.changes_detected[0].metadata.confidence == 0.85


@pytest.mark.asyncio
async def test_rows_before_baseline_are_ignored(detector):
    detector.source["offices"] = [office(1, updated_at=BASELINE - timedelta(days=1))]
    result = await detector.detect_changes("offices", BASELINE, include_deletes=False)

    assert result.total_records_analyzed == 0
    assert result.summary.change_percentage == 0.0


@pytest.mark.asyncio
async def test_deletes_skipped_unless_requested(detector):
    load_scenario(detector)
    result = await detector.detect_changes("offices", BASELINE, include_deletes=False)

    assert result.summary.deleted_records == 0
    assert any("includeDeletes" in r for r in result.recommendations)


@pytest.mark.asyncio
async def test_unknown_entity(detector):
    with pytest.raises(EntityNotFoundError):
        await detector.detect_changes("invoices", BASELINE)


@pytest.mark.asyncio
async def test_detection_steps_are_logged(detector, log_backend):
    load_scenario(detector)
    await detector.detect_changes("offices", BASELINE, session_id=SESSION_ID)
    messages = [e.message for e in log_backend.entries if e.session_id == SESSION_ID]

    assert "Starting differential detection for offices" in messages
    assert "Differential detection completed for offices" in messages


@pytest.mark.asyncio
async def test_batch_detect_isolates_failures(detector):
    load_scenario(detector)
    detector.failures["doctors"] = ConnectionError("connection refused")

    outcomes = await detector.batch_detect_changes(["doctors", "offices", "invoices"], BASELINE)

    assert [o.entity_type for o in outcomes] == ["doctors", "offices", "invoices"]
    assert isinstance(outcomes[0], EntityFailure)
    assert outcomes[0].code == "DATABASE_CONNECTION_ERROR"
    assert outcomes[0].retryable is True
    assert "connection refused" not in outcomes[0].message
    assert isinstance(outcomes[1], DetectionResult)
    assert outcomes[1].summary.total_changes == 69
    assert isinstance(outcomes[2], EntityFailure)
    assert outcomes[2].code == "ENTITY_NOT_FOUND"


def test_batch_size_is_capped(detector):
    assert detector.resolve_batch_size(None) == 1000
    assert detector.resolve_batch_size(10_000) == 5000


def test_change_percentage_bounds():
    assert change_percentage(0, 0) == 0.0
    assert change_percentage(69, 5000) == 1.38
    assert change_percentage(12, 10) == 100.0

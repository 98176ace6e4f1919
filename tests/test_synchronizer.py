import json
from datetime import timedelta

import pytest

from diffsync.services.synchronizer import decode_cursor

from factories import BASELINE, CHANGED_AT, SESSION_ID, office, synced


class RecordingApplier:
    def __init__(self, fail_on_call=None):
        self.calls = 0
        self.fail_on_call = fail_on_call
        self.applied = []
        self.state = {}

    async def current_state(self, entity_type, record_ids):
        return {rid: self.state[rid] for rid in record_ids if rid in self.state}

    async def apply(self, entity_type, decisions, changes):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("destination rejected the batch")
        self.applied.extend(decisions)


@pytest.fixture
def offices(detector):
    detector.source["offices"] = [office(i) for i in range(1, 6)]
    return detector.source["offices"]


@pytest.mark.asyncio
async def test_without_applier_run_is_detection_only(synchronizer, checkpoints, offices):
    summary = await synchronizer.run(SESSION_ID, "offices", BASELINE)

    assert summary.detection_only is True
    assert summary.changes_detected == 5
    assert summary.records_applied == 0
    assert await checkpoints.get(SESSION_ID, "offices") is None


@pytest.mark.asyncio
async def test_applies_in_batches_and_completes(synchronizer, checkpoints, control, offices):
    applier = RecordingApplier()
    summary = await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=applier, batch_size=2)

    assert summary.batches_committed == 3
    assert summary.records_applied == 5
    assert summary.next_baseline_timestamp == CHANGED_AT
    assert [d.record_id for d in applier.applied] == ["1", "2", "3", "4", "5"]
    assert all(d.action == "upsert" for d in applier.applied)

    rows = await control.batches(SESSION_ID, "offices")
    assert [(r.batch_number, r.status, r.records_processed) for r in rows] == [
        (1, "completed", 2), (2, "completed", 2), (3, "completed", 1),
    ]

    checkpoint = await checkpoints.get_checkpoint(SESSION_ID, "offices")
    assert checkpoint.status == "completed"
    baseline, position = decode_cursor(checkpoint.last_processed_cursor)
    assert baseline == CHANGED_AT
    assert position is None


@pytest.mark.asyncio
async def test_failed_batch_commits_nothing_and_resume_reapplies_it(synchronizer, checkpoints, control, offices):
    failing = RecordingApplier(fail_on_call=2)
    with pytest.raises(RuntimeError):
        await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=failing, batch_size=2)

    rows = await control.batches(SESSION_ID, "offices")
    assert [(r.batch_number, r.status) for r in rows] == [(1, "completed"), (2, "failed")]
    assert rows[1].records_failed == 2
    assert "destination rejected" not in rows[1].error_message

    checkpoint = await checkpoints.get_checkpoint(SESSION_ID, "offices")
    assert checkpoint.status == "in_progress"
    assert json.loads(checkpoint.last_processed_cursor)["position"]["recordId"] == "2"

    retry = RecordingApplier()
    summary = await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=retry, batch_size=2)

    assert summary.changes_skipped == 2
    assert [d.record_id for d in retry.applied] == ["3", "4", "5"]
    assert (await checkpoints.get_checkpoint(SESSION_ID, "offices")).status == "completed"

    rows = await control.batches(SESSION_ID, "offices")
    assert [(r.batch_number, r.status) for r in rows] == [
        (1, "completed"), (2, "failed"), (3, "completed"), (4, "completed"),
    ]


@pytest.mark.asyncio
async def test_batch_numbers_continue_across_runs(synchronizer, detector, control, offices):
    await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=RecordingApplier(), batch_size=5)
    detector.source["offices"].append(office(6, updated_at=CHANGED_AT + timedelta(hours=1)))
    await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=RecordingApplier(), batch_size=5)

    assert await control.last_batch_number(SESSION_ID, "offices") == 2
    assert [r.batch_number for r in await control.batches(SESSION_ID, "offices")] == [1, 2]
    assert await control.last_batch_number(SESSION_ID, "doctors") == 0


@pytest.mark.asyncio
async def test_completed_run_advances_baseline(synchronizer, offices):
    await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=RecordingApplier())
    again = await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=RecordingApplier())

    assert again.baseline_timestamp == CHANGED_AT
    assert again.changes_detected == 0


@pytest.mark.asyncio
async def test_deletes_applied_after_upserts(synchronizer, detector, offices):
    detector.destination["offices"] = [
        synced(offices[0], content_hash="sha256_0000000000000000"),
        {"legacy_id": 99, "updated_at": BASELINE, "content_hash": "sha256_9999999999999999"},
    ]
    applier = RecordingApplier()
    applier.state["1"] = {"contentHash": "sha256_0000000000000000"}

    await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=applier, include_deletes=True)

    actions = [(d.record_id, d.action) for d in applier.applied]
    assert actions[-1] == ("99", "delete")
    assert ("1", "upsert") in actions
    first = next(d for d in applier.applied if d.record_id == "1")
    assert first.before_hash == "sha256_0000000000000000"


@pytest.mark.asyncio
async def test_batches_are_logged(synchronizer, log_backend, offices):
    await synchronizer.run(SESSION_ID, "offices", BASELINE, applier=RecordingApplier(), batch_size=5)
    messages = [e.message for e in log_backend.entries if e.session_id == SESSION_ID]

    assert "Batch 1 applied for offices" in messages
    assert "Synchronization completed for offices" in messages

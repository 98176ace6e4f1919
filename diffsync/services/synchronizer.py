"""Apply step: push detected changes into the destination through a caller-supplied applier.

Changes are applied in batches ordered by (phase, record id), upserts before
deletes. After each fully applied batch a control row is written and the
checkpoint is committed; a failing batch commits nothing, so a retry
re-applies it rather than skipping it.
"""
from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple

import structlog

from diffsync.exceptions import classify
from diffsync.repositories.checkpoints import CheckpointStore
from diffsync.repositories.control import ControlRepository
from diffsync.repositories.logs import LogRepository
from diffsync.schemas import ChangeRecord, ResolutionDecision, SyncRunSummary
from diffsync.services.detector import ChangeDetector
from diffsync.services.resolver import ConflictResolver
from diffsync.timestamps import as_utc

log = structlog.get_logger(__name__)


class ChangeApplier(Protocol):
    async def current_state(
        self, entity_type: str, record_ids: Sequence[str]
    ) -> Mapping[str, Mapping[str, Any]]:
        """Destination state keyed by record id; should carry ``contentHash``."""

    async def apply(
        self, entity_type: str, decisions: Sequence[ResolutionDecision], changes: Sequence[ChangeRecord]
    ) -> None: ...


def _record_key(record_id: str) -> Tuple[int, Any]:
    return (0, int(record_id)) if record_id.isdigit() else (1, record_id)


def change_key(change: ChangeRecord) -> Tuple[int, Tuple[int, Any]]:
    return (1 if change.change_type == "deleted" else 0, _record_key(change.record_id))


def encode_cursor(baseline: datetime, last: Optional[ChangeRecord]) -> str:
    position = None
    if last is not None:
        position = {"phase": change_key(last)[0], "recordId": last.record_id}
    return json.dumps({"baseline": as_utc(baseline).isoformat(), "position": position})


def decode_cursor(cursor: str) -> Tuple[datetime, Optional[Tuple[int, Tuple[int, Any]]]]:
    data = json.loads(cursor)
    baseline = as_utc(datetime.fromisoformat(data["baseline"]))
    position = data.get("position")
    if not position:
        return baseline, None
    return baseline, (int(position["phase"]), _record_key(str(position["recordId"])))


class Synchronizer:
    def __init__(
        self,
        detector: ChangeDetector,
        checkpoints: CheckpointStore,
        control: ControlRepository,
        log_repository: LogRepository,
        resolver: Optional[ConflictResolver] = None,
    ):
        self.detector = detector
        self.checkpoints = checkpoints
        self.control = control
        self.log_repository = log_repository
        self.resolver = resolver or ConflictResolver()

    async def run(
        self,
        session_id: str,
        entity_type: str,
        since: datetime,
        applier: Optional[ChangeApplier] = None,
        include_deletes: bool = False,
        enable_content_hashing: bool = True,
        batch_size: Optional[int] = None,
    ) -> SyncRunSummary:
        baseline = as_utc(since)
        resume_after = None
        checkpoint = await self.checkpoints.get_checkpoint(session_id, entity_type)
        if checkpoint is not None and checkpoint.last_processed_cursor:
            baseline, position = decode_cursor(checkpoint.last_processed_cursor)
            if checkpoint.status == "in_progress":
                resume_after = position
            log.info(
                "sync.resume", session_id=session_id, entity=entity_type,
                status=checkpoint.status, baseline=baseline.isoformat(),
            )

        result = await self.detector.detect_changes(
            entity_type, baseline, include_deletes, enable_content_hashing, batch_size, session_id,
        )
        changes = sorted(result.changes_detected, key=change_key)
        pending = [c for c in changes if resume_after is None or change_key(c) > resume_after]
        summary = SyncRunSummary(
            session_id=session_id,
            entity_type=entity_type,
            baseline_timestamp=baseline,
            changes_detected=len(changes),
            changes_skipped=len(changes) - len(pending),
        )

        if applier is None:
            summary.detection_only = True
            await self.log_repository.log(
                session_id, "info", f"Detection-only run for {entity_type}: no applier configured",
                entity_type=entity_type, details={"changesDetected": len(changes)},
            )
            return summary

        size = self.detector.resolve_batch_size(batch_size)
        # Batch numbers stay unique per session and entity across resumes and reruns.
        first = await self.control.last_batch_number(session_id, entity_type) + 1
        for number, start in enumerate(range(0, len(pending), size), start=first):
            batch = pending[start:start + size]
            await self._apply_batch(session_id, entity_type, number, batch, applier, include_deletes)
            await self.checkpoints.commit(session_id, entity_type, encode_cursor(baseline, batch[-1]))
            summary.batches_committed += 1
            summary.records_applied += len(batch)

        next_baseline = baseline
        if result.max_source_timestamp and result.max_source_timestamp > baseline:
            next_baseline = result.max_source_timestamp
        await self.checkpoints.commit(session_id, entity_type, encode_cursor(next_baseline, None), status="completed")
        summary.next_baseline_timestamp = next_baseline

        await self.log_repository.log(
            session_id, "info", f"Synchronization completed for {entity_type}",
            entity_type=entity_type,
            details=summary.model_dump(mode="json", by_alias=True),
        )
        return summary

    async def _apply_batch(
        self,
        session_id: str,
        entity_type: str,
        number: int,
        batch: Sequence[ChangeRecord],
        applier: ChangeApplier,
        include_deletes: bool,
    ) -> None:
        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        try:
            state = await applier.current_state(entity_type, [c.record_id for c in batch])
            decisions = [
                self.resolver.resolve(c, state.get(c.record_id), entity_type, include_deletes)
                for c in batch
            ]
            await applier.apply(entity_type, decisions, batch)
        except Exception as exc:
            error = classify(exc)
            await self.control.record_batch(
                session_id, entity_type, number, "failed",
                started_at=started_at, completed_at=datetime.now(timezone.utc),
                records_processed=0, records_failed=len(batch),
                error_message=error.message,
                error_details={"code": error.error_code, "exception": type(exc).__name__},
            )
            await self.log_repository.log(
                session_id, "error", f"Batch {number} failed for {entity_type}",
                entity_type=entity_type, batch_number=number,
                details={"code": error.error_code, "records": len(batch)},
            )
            log.error("sync.batch.failed", session_id=session_id, entity=entity_type, batch=number, error=str(exc))
            raise

        duration_ms = int((time.monotonic() - t0) * 1000)
        applied = sum(1 for d in decisions if d.action != "skip")
        await self.control.record_batch(
            session_id, entity_type, number, "completed",
            started_at=started_at, completed_at=datetime.now(timezone.utc),
            records_processed=len(batch),
        )
        await self.log_repository.log(
            session_id, "info", f"Batch {number} applied for {entity_type}",
            entity_type=entity_type, batch_number=number,
            details={
                "applied": applied,
                "skipped": len(decisions) - applied,
                "resolutions": [
                    {"recordId": d.record_id, "action": d.action, "beforeHash": d.before_hash, "afterHash": d.after_hash}
                    for d in decisions
                ],
            },
            performance={"durationMs": duration_ms, "recordsProcessed": len(batch)},
        )
        log.info("sync.batch.applied", session_id=session_id, entity=entity_type, batch=number, records=len(batch))

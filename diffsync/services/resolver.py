from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

import structlog

from diffsync.schemas import ChangeRecord, ResolutionDecision

log = structlog.get_logger(__name__)


class ResolutionStrategy(Protocol):
    def decide(
        self,
        change: ChangeRecord,
        entity_type: str,
        destination_state: Optional[Mapping[str, Any]],
        include_deletes: bool,
    ) -> ResolutionDecision: ...


class SourceWinsStrategy:
    """The source record is authoritative; the destination copy is replaced whole."""

    def decide(self, change, entity_type, destination_state, include_deletes):
        before = (destination_state or {}).get("contentHash") or change.previous_content_hash
        if change.change_type == "deleted":
            if include_deletes:
                return ResolutionDecision(
                    record_id=change.record_id, entity_type=entity_type, change_type=change.change_type,
                    action="delete", before_hash=before, after_hash=None,
                    reason="Record removed from source",
                )
            return ResolutionDecision(
                record_id=change.record_id, entity_type=entity_type, change_type=change.change_type,
                action="skip", before_hash=before, after_hash=before,
                reason="Deletes not requested",
            )
        return ResolutionDecision(
            record_id=change.record_id, entity_type=entity_type, change_type=change.change_type,
            action="upsert", before_hash=before, after_hash=change.content_hash,
            reason="Source wins" if destination_state else "Not present in destination",
        )


class ConflictResolver:
    def __init__(self, strategy: Optional[ResolutionStrategy] = None):
        self.strategy = strategy or SourceWinsStrategy()

    def resolve(
        self,
        change: ChangeRecord,
        destination_state: Optional[Mapping[str, Any]],
        entity_type: str,
        include_deletes: bool = False,
    ) -> ResolutionDecision:
        decision = self.strategy.decide(change, entity_type, destination_state, include_deletes)
        log.info(
            "resolver.decision",
            entity=entity_type,
            record_id=decision.record_id,
            change_type=decision.change_type,
            action=decision.action,
            before_hash=decision.before_hash,
            after_hash=decision.after_hash,
        )
        return decision

from diffsync.schemas import ChangeMetadata, ChangeRecord, ResolutionDecision
from diffsync.services.resolver import ConflictResolver

from factories import CHANGED_AT


def change(change_type, content_hash="sha256_1111111111111111", previous="sha256_2222222222222222"):
    return ChangeRecord(
        record_id="42",
        change_type=change_type,
        source_timestamp=CHANGED_AT,
        content_hash=None if change_type == "deleted" else content_hash,
        previous_content_hash=previous,
        metadata=ChangeMetadata(source_entity="dispatch_office", destination_entity="offices", confidence=0.9),
    )


def test_modified_record_source_wins():
    decision = ConflictResolver().resolve(change("modified"), {"contentHash": "sha256_3333333333333333"}, "offices")

    assert decision.action == "upsert"
    assert decision.before_hash == "sha256_3333333333333333"
    assert decision.after_hash == "sha256_1111111111111111"
    assert decision.reason == "Source wins"


def test_new_record_upserted_without_destination_state():
    decision = ConflictResolver().resolve(change("new", previous=None), None, "offices")

    assert decision.action == "upsert"
    assert decision.before_hash is None
    assert decision.reason == "Not present in destination"


def test_destination_hash_defaults_to_recorded_previous_hash():
    decision = ConflictResolver().resolve(change("modified"), {}, "offices")
    assert decision.before_hash == "sha256_2222222222222222"


def test_delete_only_when_requested():
    resolver = ConflictResolver()
    assert resolver.resolve(change("deleted"), None, "offices", include_deletes=True).action == "delete"

    skipped = resolver.resolve(change("deleted"), None, "offices", include_deletes=False)
    assert skipped.action == "skip"
    assert skipped.before_hash == skipped.after_hash


def test_strategy_is_injectable():
    class DestinationWins:
        def decide(self, change, entity_type, destination_state, include_deletes):
            return ResolutionDecision(
                record_id=change.record_id, entity_type=entity_type, change_type=change.change_type,
                action="skip", reason="Destination wins",
            )

    decision = ConflictResolver(DestinationWins()).resolve(change("modified"), {}, "offices")
    assert decision.action == "skip"
    assert decision.reason == "Destination wins"

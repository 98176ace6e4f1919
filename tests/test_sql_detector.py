from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from diffsync.config import DEFAULT_ENTITY_MAPPINGS
from diffsync.exceptions import AnalysisTimeoutError, DatabaseConnectionError, EntityNotFoundError
from diffsync.services.detector import SqlChangeDetector

from factories import BASELINE, SESSION_ID, office, synced

metadata = MetaData()

dispatch_office = Table(
    "dispatch_office", metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
    Column("city", String(100)),
    Column("updated_at", DateTime(timezone=True)),
)

offices = Table(
    "offices", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("legacy_id", Integer),
    Column("updated_at", DateTime(timezone=True)),
    Column("content_hash", String(64)),
)


async def _engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine


@pytest_asyncio.fixture
async def stores():
    source, destination = await _engine(), await _engine()
    # 1 new, 2 edited since the last sync, 3 untouched since baseline, 4 in sync; 7 gone from the source
    rows = [office(1), office(2), office(3, updated_at=BASELINE - timedelta(days=1)), office(4)]
    async with source.begin() as conn:
        await conn.execute(dispatch_office.insert(), rows)
    async with destination.begin() as conn:
        await conn.execute(
            offices.insert(),
            [
                synced(rows[1], content_hash="sha256_0000000000000000"),
                synced(rows[2]),
                synced(rows[3]),
                {"legacy_id": 7, "updated_at": BASELINE, "content_hash": "sha256_7777777777777777"},
            ],
        )
    yield source, destination
    await source.dispose()
    await destination.dispose()


def make_detector(source, destination, **kw):
    return SqlChangeDetector(source, destination, DEFAULT_ENTITY_MAPPINGS, **kw)


@pytest.mark.asyncio
async def test_classifies_against_real_tables(stores):
    result = await make_detector(*stores).detect_changes("offices", BASELINE, session_id=SESSION_ID)

    assert [(c.record_id, c.change_type) for c in result.changes_detected] == [
        ("1", "new"), ("2", "modified"), ("7", "deleted"),
    ]
    assert result.total_records_analyzed == 3
    assert result.changes_detected[1].previous_content_hash == "sha256_0000000000000000"
    assert result.changes_detected[2].previous_content_hash == "sha256_7777777777777777"
    assert result.performance.queries_executed == 4


@pytest.mark.asyncio
async def test_keyset_paging_gives_same_answer(stores):
    result = await make_detector(*stores).detect_changes("offices", BASELINE, batch_size=1)

    assert [c.record_id for c in result.changes_detected] == ["1", "2", "7"]
    assert result.total_records_analyzed == 3
    assert result.performance.queries_executed == 16


@pytest.mark.asyncio
async def test_deletes_skipped_when_not_requested(stores):
    result = await make_detector(*stores).detect_changes("offices", BASELINE, include_deletes=False)
    assert result.summary.deleted_records == 0


@pytest.mark.asyncio
async def test_count_changed(stores):
    detector = make_detector(*stores)
    assert await detector.count_changed("offices", BASELINE) == 3
    assert await detector.count_changed("offices", BASELINE - timedelta(days=2)) == 4


@pytest.mark.asyncio
async def test_missing_table_is_entity_not_found(stores):
    with pytest.raises(EntityNotFoundError):
        await make_detector(*stores).detect_changes("doctors", BASELINE)


@pytest.mark.asyncio
async def test_missing_table_isolated_in_batch(stores):
    outcomes = await make_detector(*stores).batch_detect_changes(["offices", "doctors"], BASELINE)

    assert outcomes[0].summary.total_changes == 3
    assert outcomes[1].code == "ENTITY_NOT_FOUND"


@pytest.mark.asyncio
async def test_unreachable_store_is_connection_error(stores, tmp_path):
    unreachable = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/source.db")
    try:
        detector = make_detector(unreachable, stores[1], max_retries=1)
        with pytest.raises(DatabaseConnectionError):
            await detector.count_changed("offices", BASELINE)
    finally:
        await unreachable.dispose()


@pytest.mark.asyncio
async def test_slow_query_times_out(stores):
    detector = make_detector(*stores, query_timeout=0)
    with pytest.raises(AnalysisTimeoutError):
        await detector.count_changed("offices", BASELINE)

"""
Integration tests for the resumable fetch stages
"""

from datetime import datetime
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import func, select
from core.exceptions import AuthenticationError, MalformedResponseError, NetworkError
from core.timing import TimeBudgetGuard, utcnow
from models.base import RunStatus
from models.raw_record import RawRecord
from models.stage_run import StageRun
from pipeline.kv import CheckpointStore, FailQueue
from pipeline.sources.partitions import StaticPartitionSource
from pipeline.stages.incremental_fetch import IncrementalFetchStage
from pipeline.stages.initial_fetch import InitialFetchStage
from schemas.checkpoints import IncrementalFetchCursor, InitialFetchCursor


async def raw_ids(session):
    result = await session.execute(select(RawRecord.source_id))
    return set(result.scalars().all())


def initial_stage(session, client, partitions, page_size=3, guard=None):
    return InitialFetchStage(
        session,
        guard=guard,
        client=client,
        partition_source=StaticPartitionSource(partitions),
        page_size=page_size,
        sleep=AsyncMock(),
    )


@pytest.mark.asyncio
async def test_end_to_end_partition_with_two_pages(session_factory, fake_public_data, items_factory):
    """Partition A: 1000 + 400 items → 1400 raw records, cursor advanced"""
    client = fake_public_data({"A": [items_factory("A", 1000), items_factory("A", 400, start=1000)]})

    async with session_factory() as session:
        result = await initial_stage(session, client, ["A"], page_size=1000).run()

    assert result.status == RunStatus.SUCCESS
    assert result.items_processed == 1400
    assert client.calls == [("A", 1), ("A", 2)]

    async with session_factory() as session:
        count = await session.execute(select(func.count()).select_from(RawRecord))
        assert count.scalar_one() == 1400
        values = await CheckpointStore(session).get_many(InitialFetchCursor.keys())

    assert values == {
        "next_partition_index": "1",
        "initial_fetch_last_partition": "",
        "initial_fetch_last_page": "1",
    }


@pytest.mark.asyncio
async def test_time_budget_cutoff_saves_next_page(db_session, fake_public_data, items_factory):
    client = fake_public_data({"P": [items_factory("P", 3), items_factory("P", 3, start=3)]})
    guard = TimeBudgetGuard("initial_fetch")

    with patch.object(guard, "is_exhausted", side_effect=[False, True]):
        result = await initial_stage(db_session, client, ["P"], guard=guard).run()

    assert result.status == RunStatus.INTERRUPTED
    # Page 2 was never requested
    assert client.calls == [("P", 1)]
    values = await CheckpointStore(db_session).get_many(InitialFetchCursor.keys())
    assert values["initial_fetch_last_page"] == "2"
    assert values["initial_fetch_last_partition"] == "P"
    assert values["next_partition_index"] == "0"


@pytest.mark.asyncio
async def test_interrupted_fetch_resumes_from_checkpoint(session_factory, fake_public_data, items_factory):
    """Resumability: second invocation processes pages 2-3 only"""
    pages = {"P": [
        items_factory("P", 3),
        items_factory("P", 3, start=3),
        items_factory("P", 2, start=6),
    ]}
    first_client = fake_public_data(pages)
    guard = TimeBudgetGuard("initial_fetch")

    async with session_factory() as session:
        with patch.object(guard, "is_exhausted", side_effect=[False, True]):
            first = await initial_stage(session, first_client, ["P"], guard=guard).run()
    assert first.status == RunStatus.INTERRUPTED

    second_client = fake_public_data(pages)
    async with session_factory() as session:
        second = await initial_stage(session, second_client, ["P"]).run()
        stored = await raw_ids(session)

    assert second.status == RunStatus.SUCCESS
    assert second_client.calls == [("P", 2), ("P", 3)]
    assert stored == {item["bizesId"] for page in pages["P"] for item in page}


@pytest.mark.asyncio
async def test_resume_partition_outside_window_restarts_window(db_session, fake_public_data, items_factory):
    await CheckpointStore(db_session).save(InitialFetchCursor(partition_index=0).resume_at("GONE", 5))
    client = fake_public_data({"A": [items_factory("A", 1)]})

    result = await initial_stage(db_session, client, ["A"]).run()

    assert result.status == RunStatus.SUCCESS
    assert client.calls == [("A", 1)]


@pytest.mark.asyncio
async def test_failed_partition_is_queued_and_window_continues(db_session, fake_public_data, items_factory):
    client = fake_public_data({
        "BAD": [NetworkError("connection reset")],
        "OK": [items_factory("OK", 2)],
    })

    result = await initial_stage(db_session, client, ["BAD", "OK"]).run()

    assert result.status == RunStatus.PARTIAL
    assert result.items_failed == 1
    assert result.items_processed == 2
    # Three attempts for the transient failure, then move on
    assert client.calls.count(("BAD", 1)) == 3

    queue = FailQueue(db_session)
    [message] = await queue.claim(10)
    assert message.payload.type == "initial_fetch"
    assert message.payload.partition == "BAD"
    assert message.payload.page == 1
    assert "connection reset" in message.error

    cursor = await CheckpointStore(db_session).load(InitialFetchCursor)
    assert cursor.partition_index == 2
    assert cursor.resume_partition is None


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(db_session, fake_public_data):
    client = fake_public_data({"P": [AuthenticationError("bad key")]})

    await initial_stage(db_session, client, ["P"]).run()

    assert client.calls == [("P", 1)]
    assert await FailQueue(db_session).depth() == 1


@pytest.mark.asyncio
async def test_no_partitions_left_is_skipped(db_session, fake_public_data):
    await CheckpointStore(db_session).save(InitialFetchCursor(partition_index=5))
    client = fake_public_data({})

    result = await initial_stage(db_session, client, ["A", "B"]).run()

    assert result.status == RunStatus.SKIPPED
    assert client.calls == []


@pytest.mark.asyncio
async def test_missing_credentials_skip_stage(db_session, monkeypatch):
    from core.config import settings
    monkeypatch.setattr(settings, "PUBLIC_DATA_API_KEY", None)

    result = await InitialFetchStage(db_session, partition_source=StaticPartitionSource(["A"])).run()

    assert result.status == RunStatus.SKIPPED
    runs = (await db_session.execute(select(StageRun))).scalars().all()
    assert [run.status for run in runs] == [RunStatus.SKIPPED]


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_as_failed_run(db_session, fake_public_data):
    class BrokenSource(StaticPartitionSource):
        async def list_partitions(self, offset, count):
            raise RuntimeError("partition list unavailable")

    stage = InitialFetchStage(
        db_session, client=fake_public_data({}), partition_source=BrokenSource([]), sleep=AsyncMock()
    )
    result = await stage.run()

    assert result.status == RunStatus.FAILED
    run = (await db_session.execute(select(StageRun))).scalar_one()
    assert run.status == RunStatus.FAILED
    assert "partition list unavailable" in run.error_message


@pytest.mark.asyncio
async def test_incremental_watermark_moves_to_start_time(db_session, fake_public_data, items_factory):
    before = utcnow()
    client = fake_public_data({"date": [items_factory("D", 2)]})

    result = await IncrementalFetchStage(db_session, client=client, page_size=3, sleep=AsyncMock()).run()

    assert result.status == RunStatus.SUCCESS
    assert result.items_processed == 2
    cursor = await CheckpointStore(db_session).load(IncrementalFetchCursor)
    assert cursor.last_modified >= before
    assert cursor.last_modified <= utcnow()
    assert cursor.resume_page == 1


@pytest.mark.asyncio
async def test_incremental_uses_saved_watermark(db_session, items_factory):
    watermark = datetime(2024, 5, 1, 9, 30)
    await CheckpointStore(db_session).save(IncrementalFetchCursor(last_modified=watermark))
    seen = []

    class Client:
        async def fetch_by_date(self, since, page):
            seen.append((since, page))
            return []

    await IncrementalFetchStage(db_session, client=Client(), page_size=3, sleep=AsyncMock()).run()

    assert seen == [(watermark, 1)]


@pytest.mark.asyncio
async def test_incremental_failure_queues_page_and_advances_watermark(db_session, items_factory):
    old_watermark = datetime(2024, 5, 1, 9, 30)
    await CheckpointStore(db_session).save(IncrementalFetchCursor(last_modified=old_watermark))
    calls = []

    class Client:
        """Page 2 of the old window is permanently broken."""

        async def fetch_by_date(self, since, page):
            calls.append((since, page))
            if since == old_watermark and page == 2:
                raise MalformedResponseError("unexpected body")
            return items_factory("D", 3) if page == 1 else []

    before = utcnow()
    result = await IncrementalFetchStage(db_session, client=Client(), page_size=3, sleep=AsyncMock()).run()

    assert result.status == RunStatus.PARTIAL
    cursor = await CheckpointStore(db_session).load(IncrementalFetchCursor)
    assert cursor.last_modified >= before
    assert cursor.resume_page == 1

    # Later runs start from the new watermark instead of the broken page
    for _ in range(2):
        result = await IncrementalFetchStage(db_session, client=Client(), page_size=3, sleep=AsyncMock()).run()
        assert result.status == RunStatus.SUCCESS

    assert calls[:2] == [(old_watermark, 1), (old_watermark, 2)]
    assert all(since != old_watermark for since, _ in calls[2:])
    assert all(page in (1, 2) for _, page in calls[2:])

    [message] = await FailQueue(db_session).claim(10)
    assert message.payload.type == "incremental_fetch"
    assert message.payload.page == 2
    assert message.payload.last_modified == old_watermark.isoformat()

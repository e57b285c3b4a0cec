"""
Integration tests for enrichment isolation and the publish protocol
"""

from datetime import timedelta
import uuid
import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import select
from core.background import BackgroundTaskSupervisor
from core.exceptions import EnrichmentError
from core.timing import utcnow
from models.base import RunStatus
from models.place import NormalizedPlace
from models.publish_meta import PublishMeta
from pipeline.cache import ReadCache, detail_key
from pipeline.enrichment import DEFAULT_SUMMARY
from pipeline.kv import KeyValueStore
from pipeline.sitemap import SITEMAP_INDEX_KEY, SITEMAP_NAMESPACE, SitemapGenerator
from pipeline.stages.enrich import EnrichStage
from pipeline.stages.publish import PublishStage


async def add_place(session, name, dong=None, offset=0, publishable=False, slug=None, summary=None):
    place_id = str(uuid.uuid4())
    session.add(NormalizedPlace(
        id=place_id,
        source_id=f"src-{place_id[:8]}",
        name=name,
        dong=dong,
        updated_at=utcnow() + timedelta(seconds=offset),
    ))
    await session.flush()
    session.add(PublishMeta(biz_id=place_id, slug=slug, is_publishable=publishable, ai_summary=summary))
    await session.commit()
    return place_id


async def load_meta(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(PublishMeta))
        return {meta.biz_id: meta for meta in result.scalars().all()}


class FakeTextClient:
    def __init__(self, failing_names=()):
        self.failing_names = set(failing_names)

    async def summarize(self, place):
        if place.name in self.failing_names:
            raise EnrichmentError("model unavailable")
        return f"{place.name} 요약"

    async def generate_faq(self, place):
        return f"{place.name} FAQ"


@pytest.mark.asyncio
async def test_one_failed_generation_does_not_fail_the_batch(session_factory):
    """Enrichment isolation: 1 of 5 gets the default summary"""
    async with session_factory() as session:
        ids = {}
        for n in range(5):
            ids[f"Shop {n}"] = await add_place(session, f"Shop {n}", offset=n)

        stage = EnrichStage(
            session,
            text_client=FakeTextClient(failing_names={"Shop 2"}),
            batch_size=5,
            group_delay=0,
            sleep=AsyncMock(),
        )
        result = await stage.run()

    assert result.status == RunStatus.SUCCESS
    assert result.items_processed == 5
    assert result.details["defaulted"] == 1

    metas = await load_meta(session_factory)
    failed = metas[ids["Shop 2"]]
    assert failed.ai_summary == DEFAULT_SUMMARY
    assert failed.ai_faq is None
    assert failed.is_publishable is True

    for name, place_id in ids.items():
        if name == "Shop 2":
            continue
        assert metas[place_id].ai_summary == f"{name} 요약"
        assert metas[place_id].ai_faq == f"{name} FAQ"
        assert metas[place_id].is_publishable is True


@pytest.mark.asyncio
async def test_enrich_skips_already_enriched_places(session_factory):
    async with session_factory() as session:
        await add_place(session, "Done", publishable=True, summary="기존 요약")
        client = FakeTextClient()
        client.summarize = AsyncMock(side_effect=client.summarize)

        result = await EnrichStage(session, text_client=client, sleep=AsyncMock()).run()

    assert result.items_processed == 0
    client.summarize.assert_not_awaited()


@pytest.mark.asyncio
async def test_enrich_without_credentials_is_skipped(db_session, monkeypatch):
    from core.config import settings
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)

    result = await EnrichStage(db_session).run()

    assert result.status == RunStatus.SKIPPED


@pytest.mark.asyncio
async def test_slug_collision_gets_suffix(session_factory):
    """Two "Test Shop" places in Euljiro-dong publish to distinct slugs"""
    async with session_factory() as session:
        first_id = await add_place(session, "Test Shop", "Euljiro-dong", 0, publishable=True, summary="s")
        second_id = await add_place(session, "Test Shop", "Euljiro-dong", 1, publishable=True, summary="s")

        first = await PublishStage(session, batch_size=1, site_url=None).run()
        second = await PublishStage(session, batch_size=1, site_url=None).run()

    assert first.details["slugs"] == ["test-shop-euljiro-dong"]
    [second_slug] = second.details["slugs"]
    assert second_slug.startswith("test-shop-euljiro-dong-")
    assert len(second_slug) == len("test-shop-euljiro-dong-") + 8

    metas = await load_meta(session_factory)
    assert metas[first_id].slug == "test-shop-euljiro-dong"
    assert metas[second_id].slug == second_slug
    assert metas[first_id].last_published_at is not None


@pytest.mark.asyncio
async def test_publish_is_idempotent_and_keeps_precomputed_slug(session_factory):
    async with session_factory() as session:
        place_id = await add_place(
            session, "Cafe", "을지로동", publishable=True, slug="cafe-을지로동", summary="s"
        )

        first = await PublishStage(session, site_url=None).run()
        second = await PublishStage(session, site_url=None).run()

    assert first.details["slugs"] == ["cafe-을지로동"]
    assert second.items_processed == 0
    metas = await load_meta(session_factory)
    assert metas[place_id].slug == "cafe-을지로동"


@pytest.mark.asyncio
async def test_unenriched_places_are_not_published(session_factory):
    async with session_factory() as session:
        await add_place(session, "Pending", "을지로동")
        result = await PublishStage(session, site_url=None).run()

    assert result.items_processed == 0


@pytest.mark.asyncio
async def test_publish_invalidates_cache_and_fans_out(session_factory):
    async with session_factory() as session:
        await add_place(session, "Cafe", "을지로동", publishable=True, summary="s")
        cache = ReadCache(session)
        await cache.set_detail("cafe-을지로동", {"stale": True})
        await cache.set_list({"page": 1}, [])

        revalidation = MagicMock()
        revalidation.revalidate = AsyncMock(side_effect=RuntimeError("serving layer down"))
        index_now = MagicMock()
        index_now.submit = AsyncMock(return_value=3)
        background = BackgroundTaskSupervisor()

        stage = PublishStage(
            session,
            background=background,
            site_url="https://example.com",
            revalidation=revalidation,
            index_now=index_now,
            sitemap=SitemapGenerator(session_factory, "https://example.com"),
        )
        result = await stage.run()
        outcome = await background.drain()

        assert result.status == RunStatus.SUCCESS
        revalidation.revalidate.assert_awaited_once_with("cafe-을지로동")
        index_now.submit.assert_awaited_once_with(["https://example.com/shop/cafe-을지로동"])
        assert outcome == {"succeeded": 2, "failed": 0}
        assert await cache.get_json(detail_key("cafe-을지로동")) is None
        assert await cache.kv.count("shop:list:") == 0

    async with session_factory() as session:
        index = await KeyValueStore(session, SITEMAP_NAMESPACE).get(SITEMAP_INDEX_KEY)
        urlset = await KeyValueStore(session, SITEMAP_NAMESPACE).get("sitemap-1.xml")

    assert "https://example.com/sitemap-1.xml" in index
    assert "https://example.com/shop/cafe-을지로동" in urlset

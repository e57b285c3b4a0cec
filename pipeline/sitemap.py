"""
Sitemap regeneration from published places.

Documents are stored in the "sitemap" key-value namespace so the serving
layer can return them as-is:
    sitemap-index.xml   index of every URL set
    sitemap-N.xml       URL sets of at most 10 000 entries
"""

from typing import Dict, List, Sequence, Tuple
from datetime import datetime
from xml.sax.saxutils import escape
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.publish_meta import PublishMeta
from pipeline.kv import KeyValueStore
from pipeline.notify import place_url

logger = logging.getLogger(__name__)

SITEMAP_NAMESPACE = "sitemap"
SITEMAP_INDEX_KEY = "sitemap-index.xml"
SITEMAP_MAX_URLS = 10000
CHANGEFREQ = "weekly"
PRIORITY = "0.8"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def _xml(text: str) -> str:
    return escape(text, _XML_ENTITIES)


def build_urlset(entries: Sequence[Tuple[str, datetime]]) -> str:
    urls = "\n".join(
        f"<url><loc>{_xml(loc)}</loc><lastmod>{lastmod.date().isoformat()}</lastmod>"
        f"<changefreq>{CHANGEFREQ}</changefreq><priority>{PRIORITY}</priority></url>"
        for loc, lastmod in entries
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{urls}\n"
        "</urlset>"
    )


def build_index(sitemap_urls: Sequence[str]) -> str:
    sitemaps = "\n".join(f"<sitemap><loc>{_xml(url)}</loc></sitemap>" for url in sitemap_urls)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{sitemaps}\n"
        "</sitemapindex>"
    )


def build_documents(site_url: str, published: Sequence[Tuple[str, datetime]]) -> Dict[str, str]:
    """Map of document name to XML for every published (slug, published_at)."""
    entries = [(place_url(site_url, slug), published_at) for slug, published_at in published]
    documents: Dict[str, str] = {}
    names: List[str] = []
    for number, start in enumerate(range(0, len(entries), SITEMAP_MAX_URLS), start=1):
        name = f"sitemap-{number}.xml"
        documents[name] = build_urlset(entries[start:start + SITEMAP_MAX_URLS])
        names.append(name)
    documents[SITEMAP_INDEX_KEY] = build_index(
        [f"{site_url.rstrip('/')}/{name}" for name in names]
    )
    return documents


class SitemapGenerator:
    """Regenerates every sitemap document in its own session."""

    def __init__(self, session_factory: async_sessionmaker, site_url: str):
        self.session_factory = session_factory
        self.site_url = site_url

    async def _published(self, session: AsyncSession) -> List[Tuple[str, datetime]]:
        result = await session.execute(
            select(PublishMeta.slug, PublishMeta.last_published_at)
            .where(PublishMeta.slug.is_not(None), PublishMeta.last_published_at.is_not(None))
            .order_by(PublishMeta.slug)
        )
        return [(row.slug, row.last_published_at) for row in result]

    async def regenerate(self) -> int:
        """Rebuild and store all documents. Returns the number of URLs."""
        async with self.session_factory() as session:
            published = await self._published(session)
            documents = build_documents(self.site_url, published)

            store = KeyValueStore(session, SITEMAP_NAMESPACE)
            await store.put_many(documents)

            stale = [key for key in await store.list_keys("sitemap-") if key not in documents]
            if stale:
                await store.delete_many(stale)

        logger.info(f"Sitemap regenerated: {len(published)} URLs in {len(documents) - 1} files")
        return len(published)

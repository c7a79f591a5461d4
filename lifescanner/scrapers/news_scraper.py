import asyncio
import httpx
import logging
from typing import List, Dict, Any, Optional, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from lifescanner.config import settings, source_manager, FeedSourceManager
from lifescanner.database import AsyncSessionLocal
from lifescanner.models import NewsArticle, utc_now
from lifescanner.pipeline.summary_engine import SummaryEngine, summary_engine
from lifescanner.scrapers.base import BaseScraper

logger = logging.getLogger(__name__)

class UnknownCategoryError(ValueError):
    """No enabled feed is configured for the requested category"""

class NewsScraper(BaseScraper):
    """Fetches category feeds, annotates new articles and stores them

    Ingestion is keyed by article URL: anything already stored, or already
    seen earlier in the same run, is skipped.
    """

    def __init__(
        self,
        engine: Optional[SummaryEngine] = None,
        sources: Optional[FeedSourceManager] = None,
        session_factory=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        category_delay: Optional[float] = None,
        max_per_category: Optional[int] = None,
    ):
        super().__init__(transport=transport)
        self.engine = engine or summary_engine
        self.sources = sources or source_manager
        self.session_factory = session_factory or AsyncSessionLocal
        self.category_delay = settings.category_delay_seconds if category_delay is None else category_delay
        self.max_per_category = max_per_category or settings.max_articles_per_category
        self.errors: List[str] = []
        self._seen_urls = set()

    def _record_error(self, message: str):
        self.errors.append(message)

    async def scrape(self) -> List[Dict[str, Any]]:
        return await self.scrape_all_categories()

    async def _stored_urls(self, urls: Iterable[str]) -> set:
        urls = list(urls)
        if not urls:
            return set()
        async with self.session_factory() as db:
            result = await db.execute(select(NewsArticle.url).where(NewsArticle.url.in_(urls)))
            return set(result.scalars().all())

    async def scrape_category(self, category: str) -> List[Dict[str, Any]]:
        """New articles from one category's feed"""
        feed_url = self.sources.get_feed_url(category)
        if not feed_url:
            raise UnknownCategoryError(f"Invalid category: {category}")

        items = await self.fetch_rss(feed_url)
        stored = await self._stored_urls(item["url"] for item in items)

        articles = []
        for item in items:
            url = item["url"]
            if url in stored or url in self._seen_urls:
                continue
            self._seen_urls.add(url)

            item["category"] = category
            if item["published_at"] is None:
                item["published_at"] = utc_now()
            articles.append(item)

            if len(articles) >= self.max_per_category:
                break

        logger.info(f"📰 {category}: {len(items)} feed items, {len(articles)} new")
        return articles

    async def scrape_all_categories(self) -> List[Dict[str, Any]]:
        categories = self.sources.get_categories()
        all_articles = []

        for index, category in enumerate(categories):
            try:
                all_articles.extend(await self.scrape_category(category))
            except Exception as e:
                logger.error(f"Error scraping category {category}: {e}")
                self._record_error(f"{category}: {e}")

            # Pause between categories to avoid rate limiting
            if self.category_delay and index < len(categories) - 1:
                await asyncio.sleep(self.category_delay)

        return all_articles

    async def process_and_save_articles(self, articles: List[Dict[str, Any]]) -> Dict[str, int]:
        """Annotate and store articles one at a time"""
        counts = {"processed": 0, "skipped": 0, "failed": 0}

        for article in articles:
            try:
                async with self.session_factory() as db:
                    existing = await db.execute(
                        select(NewsArticle.id).where(NewsArticle.url == article["url"])
                    )
                    if existing.scalar_one_or_none():
                        counts["skipped"] += 1
                        continue

                    ai_result = await self.engine.process_article(article)
                    impact = ai_result["impact"]

                    db.add(NewsArticle(
                        title=article["title"],
                        description=article.get("description") or "",
                        url=article["url"],
                        source=article["source"],
                        category=article["category"],
                        published_at=article["published_at"],
                        summary=ai_result["summary"],
                        impact_student=impact.get("student"),
                        impact_employee=impact.get("employee"),
                        impact_investor=impact.get("investor"),
                        impact_homemaker=impact.get("homemaker"),
                    ))
                    try:
                        await db.commit()
                    except IntegrityError:
                        # stored concurrently by another run
                        await db.rollback()
                        counts["skipped"] += 1
                        continue

                counts["processed"] += 1
                logger.info(f"Processed and saved: {article['title'][:50]}...")

            except Exception as e:
                counts["failed"] += 1
                logger.error(f"Error processing article {article.get('title', '')[:50]}: {e}")
                self._record_error(f"{article.get('url')}: {e}")

        return counts

    async def scrape_and_process(self) -> Dict[str, Any]:
        """One full ingestion run

        Returns counts plus the first hard error seen. The run is
        unsuccessful only when no category could be fetched.
        """
        self.errors = []
        self._seen_urls = set()
        logger.info("Starting news scraping process...")

        categories = self.sources.get_categories()
        if not categories:
            return {
                "success": False, "fetched": 0, "processed": 0, "skipped": 0,
                "failed": 0, "error": "No feed categories configured",
            }

        articles = await self.scrape_all_categories()
        category_failures = len(self.errors)
        logger.info(f"Found {len(articles)} articles to process")

        counts = await self.process_and_save_articles(articles)

        report = {
            "success": category_failures < len(categories),
            "fetched": len(articles),
            **counts,
            "error": self.errors[0] if self.errors else None,
        }
        logger.info(
            f"✅ Ingestion finished: {report['processed']} saved, {report['skipped']} skipped, "
            f"{report['failed']} failed"
        )
        return report

    async def get_recent_articles(self, limit: int = 20, category: Optional[str] = None) -> List[NewsArticle]:
        async with self.session_factory() as db:
            query = select(NewsArticle)
            if category:
                query = query.where(NewsArticle.category == category)
            result = await db.execute(
                query.order_by(NewsArticle.published_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

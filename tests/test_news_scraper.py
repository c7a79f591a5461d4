"""
Tests for feed configuration, RSS parsing and the ingestion run.
"""

import asyncio

import httpx
import pytest
from sqlalchemy import select

from conftest import make_article, store
from lifescanner.config import DEFAULT_FEEDS, FeedSourceManager
from lifescanner.database import AsyncSessionLocal
from lifescanner.models import NewsArticle
from lifescanner.pipeline.summary_engine import SummaryEngine
from lifescanner.scheduler.tasks import IngestionInProgress, run_ingestion
import lifescanner.scheduler.tasks as tasks
from lifescanner.scrapers.base import FeedFetchError
from lifescanner.scrapers.news_scraper import NewsScraper, UnknownCategoryError
from test_summary_engine import FakeClient, IMPACT_JSON


def rss(*items):
    body = "".join(
        f"""
        <item>
          <title>{title}</title>
          <link>{link}</link>
          <description>&lt;p&gt;About {title}&lt;/p&gt;</description>
          <pubDate>Wed, 01 Jan 2025 10:00:00 +0100</pubDate>
        </item>"""
        for title, link in items
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Test Feed</title>{body}</channel></rss>"""


@pytest.fixture
def sources(tmp_path):
    path = tmp_path / "feeds.yaml"
    path.write_text(
        "feeds:\n"
        "  technology:\n"
        "    url: https://feeds.test/tech.xml\n"
        "  business: https://feeds.test/business.xml\n"
        "  weather:\n"
        "    url: https://feeds.test/weather.xml\n"
        "    enabled: false\n"
        "  broken: {}\n"
    )
    return FeedSourceManager(str(path))


def make_scraper(sources, feeds, engine=None, category_delay=0, **kwargs):
    """``feeds`` maps feed URLs to RSS bodies; anything else answers 500"""

    def handler(request):
        body = feeds.get(str(request.url))
        if body is None:
            return httpx.Response(500, text="unavailable")
        return httpx.Response(200, text=body)

    return NewsScraper(
        engine=engine or SummaryEngine(FakeClient()),
        sources=sources,
        transport=httpx.MockTransport(handler),
        category_delay=category_delay,
        **kwargs,
    )


async def stored_articles():
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(NewsArticle).order_by(NewsArticle.url))
        return result.scalars().all()


def test_feed_config_loading(sources):
    assert sources.get_categories() == ["technology", "business"]
    assert sources.get_feed_url("business") == "https://feeds.test/business.xml"
    assert sources.get_feed_url("weather") == ""
    assert sources.get_feed_url("unknown") == ""
    assert sources.get_feeds() == {
        "technology": "https://feeds.test/tech.xml",
        "business": "https://feeds.test/business.xml",
    }


def test_missing_feed_config_uses_defaults(tmp_path):
    manager = FeedSourceManager(str(tmp_path / "absent.yaml"))
    assert manager.get_feeds() == DEFAULT_FEEDS


async def test_fetch_rss_parses_items(sources):
    feeds = {"https://feeds.test/tech.xml": rss(("Chips", "https://news.test/chips"))}
    async with make_scraper(sources, feeds) as scraper:
        items = await scraper.fetch_rss("https://feeds.test/tech.xml")

    assert len(items) == 1
    item = items[0]
    assert item["url"] == "https://news.test/chips"
    assert item["title"] == "Chips"
    assert item["description"] == "About Chips"
    assert item["source"] == "Test Feed"
    # normalized to naive UTC
    assert item["published_at"].isoformat() == "2025-01-01T09:00:00"


async def test_fetch_rss_raises_on_http_error(sources):
    async with make_scraper(sources, {}) as scraper:
        with pytest.raises(FeedFetchError):
            await scraper.fetch_rss("https://feeds.test/tech.xml")


async def test_unknown_category_is_rejected(sources):
    async with make_scraper(sources, {}) as scraper:
        with pytest.raises(UnknownCategoryError):
            await scraper.scrape_category("weather")
        with pytest.raises(UnknownCategoryError):
            await scraper.scrape_category("gossip")


async def test_scrape_and_process_stores_annotated_articles(sources):
    feeds = {
        "https://feeds.test/tech.xml": rss(("Chips", "https://news.test/chips"), ("AI", "https://news.test/ai")),
        "https://feeds.test/business.xml": rss(("Rates", "https://news.test/rates")),
    }
    async with make_scraper(sources, feeds) as scraper:
        report = await scraper.scrape_and_process()

    assert report == {"success": True, "fetched": 3, "processed": 3, "skipped": 0, "failed": 0, "error": None}

    articles = await stored_articles()
    assert [a.url for a in articles] == [
        "https://news.test/ai",
        "https://news.test/chips",
        "https://news.test/rates",
    ]
    rates = articles[2]
    assert rates.category == "business"
    assert rates.summary == "A short summary."
    assert rates.impact_student == IMPACT_JSON["student"]
    assert rates.impact_homemaker == IMPACT_JSON["homemaker"]


async def test_known_and_repeated_urls_are_skipped(sources):
    await store(make_article(1, url="https://news.test/chips"))
    shared = ("Shared", "https://news.test/shared")
    feeds = {
        "https://feeds.test/tech.xml": rss(("Chips", "https://news.test/chips"), shared),
        "https://feeds.test/business.xml": rss(shared, ("Rates", "https://news.test/rates")),
    }
    async with make_scraper(sources, feeds) as scraper:
        report = await scraper.scrape_and_process()

    assert report["fetched"] == 2
    assert report["processed"] == 2

    shared_rows = [a for a in await stored_articles() if a.url == "https://news.test/shared"]
    assert len(shared_rows) == 1
    assert shared_rows[0].category == "technology"

    # a second run finds nothing new and still succeeds
    async with make_scraper(sources, feeds) as scraper:
        report = await scraper.scrape_and_process()
    assert report == {"success": True, "fetched": 0, "processed": 0, "skipped": 0, "failed": 0, "error": None}


async def test_max_articles_per_category(sources):
    items = [(f"Story {i}", f"https://news.test/{i}") for i in range(5)]
    feeds = {
        "https://feeds.test/tech.xml": rss(*items),
        "https://feeds.test/business.xml": rss(),
    }
    async with make_scraper(sources, feeds, max_per_category=2) as scraper:
        articles = await scraper.scrape_category("technology")

    assert [a["url"] for a in articles] == ["https://news.test/0", "https://news.test/1"]


async def test_one_failing_category_does_not_stop_the_run(sources):
    feeds = {"https://feeds.test/business.xml": rss(("Rates", "https://news.test/rates"))}
    async with make_scraper(sources, feeds) as scraper:
        report = await scraper.scrape_and_process()

    assert report["success"] is True
    assert report["processed"] == 1
    assert report["error"].startswith("technology:")


async def test_all_categories_failing_is_unsuccessful(sources):
    async with make_scraper(sources, {}) as scraper:
        report = await scraper.scrape_and_process()

    assert report["success"] is False
    assert report["fetched"] == 0
    assert report["error"]


async def test_no_categories_configured(tmp_path):
    path = tmp_path / "feeds.yaml"
    path.write_text("feeds: {}\n")
    async with make_scraper(FeedSourceManager(str(path)), {}) as scraper:
        report = await scraper.scrape_and_process()

    assert report["success"] is False
    assert report["error"] == "No feed categories configured"


class ExplodingEngine:
    """Fails for one URL, annotates the rest"""

    def __init__(self, bad_url):
        self.bad_url = bad_url
        self.engine = SummaryEngine(FakeClient())

    async def process_article(self, article):
        if article["url"] == self.bad_url:
            raise RuntimeError("annotation crashed")
        return await self.engine.process_article(article)


async def test_failing_article_is_isolated(sources):
    feeds = {
        "https://feeds.test/tech.xml": rss(("Bad", "https://news.test/bad"), ("Good", "https://news.test/good")),
        "https://feeds.test/business.xml": rss(),
    }
    engine = ExplodingEngine("https://news.test/bad")
    async with make_scraper(sources, feeds, engine=engine) as scraper:
        report = await scraper.scrape_and_process()

    assert report["success"] is True
    assert report["processed"] == 1
    assert report["failed"] == 1
    assert "annotation crashed" in report["error"]
    assert [a.url for a in await stored_articles()] == ["https://news.test/good"]


async def test_service_outage_still_stores_fallbacks(sources):
    from lifescanner.completions import CompletionError

    feeds = {
        "https://feeds.test/tech.xml": rss(("Chips", "https://news.test/chips")),
        "https://feeds.test/business.xml": rss(),
    }
    engine = SummaryEngine(FakeClient(error=CompletionError("down")))
    async with make_scraper(sources, feeds, engine=engine) as scraper:
        report = await scraper.scrape_and_process()

    assert report["processed"] == 1
    article = (await stored_articles())[0]
    assert article.summary == "Summary generation failed. Please try again later."
    assert article.impact_employee == "Unable to generate specific impact analysis for employees at this time."


async def test_run_ingestion_refuses_overlapping_runs(sources, monkeypatch):
    monkeypatch.setattr(tasks, "_ingestion_running", True)
    with pytest.raises(IngestionInProgress):
        await run_ingestion(make_scraper(sources, {}))


async def test_run_ingestion_resets_flag(sources):
    feeds = {
        "https://feeds.test/tech.xml": rss(("Chips", "https://news.test/chips")),
        "https://feeds.test/business.xml": rss(),
    }
    report = await run_ingestion(make_scraper(sources, feeds))

    assert report["processed"] == 1
    assert tasks._ingestion_running is False


async def test_get_recent_articles(sources):
    await store(make_article(1, "technology"), make_article(2, "business"), make_article(3, "technology"))
    async with make_scraper(sources, {}) as scraper:
        recent = await scraper.get_recent_articles(limit=5, category="technology")

    assert [a.title for a in recent] == ["Story 3", "Story 1"]


async def test_categories_are_spaced_by_the_configured_delay(tmp_path, monkeypatch):
    path = tmp_path / "feeds.yaml"
    path.write_text(
        "feeds:\n"
        "  technology: https://feeds.test/tech.xml\n"
        "  business: https://feeds.test/business.xml\n"
        "  health: https://feeds.test/health.xml\n"
    )
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)

    async with make_scraper(FeedSourceManager(str(path)), {}, category_delay=2.5) as scraper:
        await scraper.scrape_all_categories()

    assert delays == [2.5, 2.5]

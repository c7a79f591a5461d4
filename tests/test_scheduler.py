"""
Tests for the scheduled jobs.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import auth_headers, make_article, store
import lifescanner.scheduler.tasks as tasks
from lifescanner.database import AsyncSessionLocal
from lifescanner.models import AuthSession, NewsArticle, utc_now
from lifescanner.scheduler.tasks import IngestionInProgress, NewsScheduler
from test_telegram import FakeBot


@pytest.fixture
def news_scheduler():
    return NewsScheduler()


def test_jobs_are_registered(news_scheduler):
    job_ids = {job.id for job in news_scheduler.scheduler.get_jobs()}
    assert job_ids == {"news_ingestion", "daily_summary", "daily_cleanup"}


async def test_collect_news_tolerates_running_ingestion(news_scheduler, monkeypatch):
    async def busy():
        raise IngestionInProgress("News ingestion is already running")

    monkeypatch.setattr(tasks, "run_ingestion", busy)
    await news_scheduler.collect_news()


async def test_cleanup_removes_old_articles_and_expired_sessions(api, news_scheduler):
    await auth_headers(api, email="fresh@example.com")
    await auth_headers(api, email="stale@example.com")
    old = utc_now() - timedelta(days=tasks.settings.article_retention_days + 1)
    await store(make_article(1, created_at=old), make_article(2))

    async with AsyncSessionLocal() as db:
        sessions = (await db.execute(select(AuthSession))).scalars().all()
        sessions[0].expires_at = utc_now() - timedelta(minutes=1)
        await db.commit()

    await news_scheduler.cleanup_old_data()

    async with AsyncSessionLocal() as db:
        titles = (await db.execute(select(NewsArticle.title))).scalars().all()
        remaining = (await db.execute(select(AuthSession))).scalars().all()
    assert titles == ["Story 2"]
    assert len(remaining) == 1


async def test_daily_summaries_need_a_bot_token(news_scheduler):
    assert await news_scheduler.send_daily_summaries() == 0


async def test_daily_summaries_go_to_linked_chats(api, news_scheduler, monkeypatch):
    linked = await auth_headers(api, email="linked@example.com")
    await api.put("/api/auth/profile", headers=linked, json={"telegramChat": "1001"})
    muted = await auth_headers(api, email="muted@example.com")
    await api.put("/api/auth/profile", headers=muted, json={"telegramChat": "1002", "notifications": False})
    await auth_headers(api, email="unlinked@example.com")
    await store(make_article(1), make_article(2))

    bot = FakeBot()
    monkeypatch.setattr(tasks, "TelegramBot", lambda: bot)

    assert await news_scheduler.send_daily_summaries() == 1
    assert [chat for chat, _ in bot.sent] == ["1001"]
    assert "Story 2" in bot.sent[0][1]

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import timedelta
from sqlalchemy import select, delete, and_
from typing import Dict, Any, Optional
import logging

from lifescanner.auth import delete_expired_sessions, parse_categories
from lifescanner.config import settings
from lifescanner.database import AsyncSessionLocal
from lifescanner.models import NewsArticle, UserPreference, User, utc_now
from lifescanner.news import list_articles
from lifescanner.scrapers.news_scraper import NewsScraper
from lifescanner.telegram.bot import TelegramBot
from lifescanner.telegram.handler import TelegramBotHandler

logger = logging.getLogger(__name__)

class IngestionInProgress(RuntimeError):
    """An ingestion run is already active"""

_ingestion_running = False

async def run_ingestion(scraper: Optional[NewsScraper] = None) -> Dict[str, Any]:
    """Run one scrape-and-process pass, never two at once"""
    global _ingestion_running
    if _ingestion_running:
        raise IngestionInProgress("News ingestion is already running")

    _ingestion_running = True
    try:
        scraper = scraper or NewsScraper()
        async with scraper:
            return await scraper.scrape_and_process()
    finally:
        _ingestion_running = False

class NewsScheduler:
    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._setup_jobs()

    def _setup_jobs(self):
        """Setup all scheduled jobs"""

        # Periodic news ingestion
        self.scheduler.add_job(
            self.collect_news,
            IntervalTrigger(minutes=settings.scrape_interval_minutes),
            id="news_ingestion",
            max_instances=1,
            coalesce=True,
        )

        # Daily Telegram summary for linked users
        self.scheduler.add_job(
            self.send_daily_summaries,
            CronTrigger(hour=settings.daily_summary_hour, minute=0),
            id="daily_summary",
            max_instances=1
        )

        # Daily cleanup
        self.scheduler.add_job(
            self.cleanup_old_data,
            CronTrigger(hour=2, minute=0),  # 2 AM daily
            id="daily_cleanup",
            max_instances=1
        )

    async def collect_news(self):
        logger.info("Starting scheduled news collection...")
        try:
            report = await run_ingestion()
            if not report["success"]:
                logger.warning(f"⚠️ Scheduled ingestion failed: {report['error']}")
        except IngestionInProgress:
            logger.info("Skipping scheduled collection, a run is already in progress")
        except Exception as e:
            logger.error(f"Error in news collection: {e}")

    async def send_daily_summaries(self) -> int:
        """Send each linked, opted-in user a summary of the last day"""
        bot = TelegramBot()
        if not bot.is_valid_token():
            await bot.close()
            return 0

        sent = 0
        try:
            async with AsyncSessionLocal() as db:
                result = await db.execute(
                    select(UserPreference)
                    .join(User, User.id == UserPreference.user_id)
                    .where(and_(
                        UserPreference.notifications == True,  # noqa: E712
                        UserPreference.telegram_chat.is_not(None),
                        User.is_active == True,  # noqa: E712
                    ))
                )
                recipients = result.scalars().all()

            handler = TelegramBotHandler(bot=bot)
            since = utc_now() - timedelta(days=1)
            for prefs in recipients:
                try:
                    async with AsyncSessionLocal() as db:
                        articles = await list_articles(
                            db, limit=20, categories=parse_categories(prefs.categories) or None
                        )
                    recent = [a for a in articles if a.created_at >= since]
                    if not recent:
                        continue
                    await handler.send_daily_summary(prefs.telegram_chat, recent)
                    sent += 1
                except Exception as e:
                    logger.error(f"Error sending daily summary to chat {prefs.telegram_chat}: {e}")
        finally:
            await bot.close()

        logger.info(f"📨 Sent {sent} daily summaries")
        return sent

    async def cleanup_old_data(self):
        """Delete expired articles and sessions"""
        logger.info("Starting daily cleanup...")
        try:
            async with AsyncSessionLocal() as db:
                cutoff = utc_now() - timedelta(days=settings.article_retention_days)
                result = await db.execute(
                    delete(NewsArticle).where(NewsArticle.created_at < cutoff)
                )
                await db.commit()
                sessions = await delete_expired_sessions(db)
                logger.info(f"Cleanup completed: {result.rowcount or 0} articles, {sessions} sessions removed")
        except Exception as e:
            logger.error(f"Error in cleanup: {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("News scheduler started")

    def shutdown(self):
        """Shutdown the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("News scheduler stopped")

# Global scheduler instance
scheduler = NewsScheduler()

from html import escape
import logging
from typing import Dict, Any, List, Optional

from sqlalchemy import select

from lifescanner.auth import parse_categories
from lifescanner.database import AsyncSessionLocal
from lifescanner.export import localize
from lifescanner.models import NewsArticle, UserPreference, Profile
from lifescanner.news import list_articles, impact_for
from lifescanner.telegram.bot import TelegramBot

logger = logging.getLogger(__name__)

COMMANDS_TEXT = (
    "📰 /news - Get the latest news updates based on your profile\n"
    "📝 /summary - Receive a summary of today's important news\n"
    "👤 /profile - Connect this chat to your account\n"
    "❓ /help - Show this help message"
)

class TelegramBotHandler:
    """Answers bot commands from stored, annotated articles"""

    def __init__(self, bot: Optional[TelegramBot] = None, session_factory=None, news_limit: int = 5):
        self.bot = bot or TelegramBot()
        self.session_factory = session_factory or AsyncSessionLocal
        self.news_limit = news_limit

    async def handle_message(self, message: Dict[str, Any]):
        chat_id = message.get("chat", {}).get("id")
        text = (message.get("text") or "").strip()
        if chat_id is None or not text:
            return

        command = text.split()[0].split("@")[0].lower()
        handlers = {
            "/start": self.handle_start,
            "/help": self.handle_help,
            "/news": self.handle_news,
            "/summary": self.handle_summary,
            "/profile": self.handle_profile,
        }
        handler = handlers.get(command, self.handle_unknown_command)

        try:
            await handler(chat_id)
        except Exception as e:
            logger.error(f"Error handling Telegram command {command}: {e}")
            try:
                await self.bot.send_message(chat_id, "Sorry, something went wrong. Please try again later.")
            except Exception as send_error:
                logger.error(f"Could not send apology to chat {chat_id}: {send_error}")

    async def _linked_preferences(self, chat_id) -> Optional[UserPreference]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(UserPreference).where(UserPreference.telegram_chat == str(chat_id))
            )
            return result.scalars().first()

    async def _articles_for(self, prefs: Optional[UserPreference], limit: int) -> List[NewsArticle]:
        async with self.session_factory() as db:
            categories = parse_categories(prefs.categories) if prefs else []
            return await list_articles(db, limit=limit, categories=categories or None)

    async def handle_start(self, chat_id):
        message = (
            "🤖 <b>Welcome to LifeScanner!</b>\n\n"
            "I keep you updated with personalized news insights.\n\n"
            f"{COMMANDS_TEXT}\n\n"
            "To personalize updates, add this chat ID to your profile on the website: "
            f"<code>{chat_id}</code>"
        )
        await self.bot.send_message(chat_id, message)

    async def handle_help(self, chat_id):
        message = (
            "📚 <b>LifeScanner Bot Help</b>\n\n"
            f"{COMMANDS_TEXT}\n\n"
            "💡 News is personalized for your profile (student, employee, investor, "
            "homemaker) and preferred categories once this chat is linked to your account."
        )
        await self.bot.send_message(chat_id, message)

    async def handle_news(self, chat_id):
        prefs = await self._linked_preferences(chat_id)
        articles = await self._articles_for(prefs, self.news_limit)
        if not articles:
            await self.bot.send_message(chat_id, "No news is available yet. Please check back later.")
            return

        profile = Profile(prefs.profile) if prefs else None
        blocks = []
        for article in articles:
            block = f"• <a href=\"{escape(article.url)}\">{escape(article.title)}</a>"
            if article.summary:
                block += f"\n{escape(article.summary)}"
            impact = impact_for(article, profile)
            if impact:
                block += f"\n💡 <i>{escape(impact)}</i>"
            blocks.append(block)

        header = "📰 <b>Latest News Updates</b>"
        if prefs is None:
            header += "\n(Link this chat in your profile for personalized insights.)"
        await self.bot.send_message(
            chat_id, header + "\n\n" + "\n\n".join(blocks), disable_web_page_preview=True
        )

    async def handle_summary(self, chat_id):
        prefs = await self._linked_preferences(chat_id)
        articles = await self._articles_for(prefs, 20)
        await self.send_daily_summary(chat_id, articles)

    async def handle_profile(self, chat_id):
        prefs = await self._linked_preferences(chat_id)
        if prefs is not None:
            message = (
                "👤 <b>Profile</b>\n\n"
                f"This chat is linked to your account.\n"
                f"Profile: {escape(Profile(prefs.profile).value)}\n"
                f"Categories: {escape(', '.join(parse_categories(prefs.categories)) or 'all')}\n\n"
                "Change your preferences on the website profile page."
            )
        else:
            message = (
                "👤 <b>Profile Management</b>\n\n"
                "1. Log in on the website\n"
                "2. Open your profile settings\n"
                f"3. Set your Telegram Chat ID to <code>{chat_id}</code>\n\n"
                "Once connected you will receive personalized news, impact analysis and daily summaries."
            )
        await self.bot.send_message(chat_id, message)

    async def handle_unknown_command(self, chat_id):
        message = (
            "❓ <b>Unknown Command</b>\n\n"
            "I didn't recognize that command. Here's what I can help you with:\n\n"
            f"{COMMANDS_TEXT}"
        )
        await self.bot.send_message(chat_id, message)

    async def send_news_alert(self, chat_id, article: NewsArticle, tz_name: str = "UTC"):
        published = localize(article.published_at, tz_name)
        message = (
            "📰 <b>News Alert</b>\n\n"
            f"<b>{escape(article.title)}</b>\n\n"
            f"{escape(article.description or '')}\n\n"
            f"📂 <b>Category:</b> {escape(article.category)}\n"
            f"📅 <b>Published:</b> {published.strftime('%Y-%m-%d') if published else 'unknown'}\n\n"
            f"🤖 <b>AI Summary:</b> {escape(article.summary or 'Summary not available')}\n\n"
            f"Read more: {escape(article.url)}"
        )
        await self.bot.send_message(chat_id, message)

    async def send_daily_summary(self, chat_id, articles: List[NewsArticle]):
        if not articles:
            await self.bot.send_message(chat_id, "📝 No stories to summarize yet. Please check back later.")
            return

        article_list = "\n".join(f"• {escape(a.title)}" for a in articles[:5])
        message = (
            "📝 <b>Daily News Summary</b>\n\n"
            "Here are today's top stories:\n\n"
            f"{article_list}\n\n"
            f"📊 <b>Total Articles:</b> {len(articles)}\n"
            "🤖 Personalized impact analysis is available on your dashboard."
        )
        await self.bot.send_message(chat_id, message, disable_web_page_preview=True)

from pydantic_settings import BaseSettings
from typing import List, Dict, Any
import yaml
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = PACKAGE_DIR / "templates"
STATIC_DIR = PACKAGE_DIR / "static"

class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite+aiosqlite:///./lifescanner.db"
    database_echo: bool = False

    # Security Settings
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    token_expire_days: int = 7
    bcrypt_rounds: int = 12
    auth_cookie_name: str = "authToken"

    # AI completion service (any OpenAI-compatible endpoint)
    ai_base_url: str = "https://api.openai.com/v1"
    ai_api_key: str = ""
    ai_model: str = "gpt-4o-mini"  # "auto" = detect via /models
    ai_fallback_model: str = "local-model"
    ai_timeout_seconds: float = 30.0
    summary_max_tokens: int = 150
    impact_max_tokens: int = 300
    ai_temperature: float = 0.7

    # Ingestion
    feeds_config_path: str = "config/feeds.yaml"
    max_articles_per_category: int = 10
    category_delay_seconds: float = 1.0

    # Schedule
    enable_scheduler: bool = True
    scrape_interval_minutes: int = 60
    daily_summary_hour: int = 7
    article_retention_days: int = 30

    # Content
    news_default_limit: int = 20
    news_max_limit: int = 100
    export_limit: int = 50

    # Telegram
    telegram_bot_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    telegram_webhook_secret: str = ""

    class Config:
        env_file = ".env"

DEFAULT_FEEDS = {
    "technology": "https://feeds.bbci.co.uk/news/technology/rss.xml",
    "business": "https://feeds.bbci.co.uk/news/business/rss.xml",
    "science": "https://feeds.bbci.co.uk/news/science_and_environment/rss.xml",
    "health": "https://feeds.bbci.co.uk/news/health/rss.xml",
    "sports": "https://feeds.bbci.co.uk/sport/rss.xml",
    "entertainment": "https://feeds.bbci.co.uk/news/entertainment_and_arts/rss.xml",
}

class FeedSourceManager:
    """Manages category feeds from YAML configuration

    The file maps category names to a feed entry::

        feeds:
          technology:
            url: https://example.com/tech.rss
            enabled: true
    """

    def __init__(self, config_path: str = "config/feeds.yaml"):
        self.config_path = Path(config_path)
        self._feeds: Dict[str, Dict[str, Any]] = {}
        self.load_sources()

    def load_sources(self):
        """Load feeds from YAML file, falling back to the built-in set"""
        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    raw = yaml.safe_load(f) or {}
                self._feeds = self._normalize(raw.get("feeds", {}))
                logger.info(f"📋 Loaded {len(self._feeds)} feed categories from {self.config_path}")
            else:
                self._create_default_config()
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"⚠️ Error loading feeds config: {e}")
            self._create_default_config()

    def _create_default_config(self):
        self._feeds = {
            category: {"url": url, "enabled": True}
            for category, url in DEFAULT_FEEDS.items()
        }

    @staticmethod
    def _normalize(feeds: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        normalized = {}
        for category, entry in feeds.items():
            if isinstance(entry, str):
                entry = {"url": entry}
            if not isinstance(entry, dict) or not entry.get("url"):
                logger.warning(f"Ignoring feed entry without url: {category}")
                continue
            normalized[str(category).lower()] = {
                "url": entry["url"],
                "enabled": entry.get("enabled", True),
            }
        return normalized

    def get_categories(self) -> List[str]:
        """Enabled categories in configuration order"""
        return [c for c, entry in self._feeds.items() if entry.get("enabled", True)]

    def get_feed_url(self, category: str) -> str:
        entry = self._feeds.get(category)
        if not entry or not entry.get("enabled", True):
            return ""
        return entry["url"]

    def get_feeds(self) -> Dict[str, str]:
        return {c: self._feeds[c]["url"] for c in self.get_categories()}

    def reload_sources(self):
        """Reload feeds from file (useful for runtime updates)"""
        self.load_sources()

# Create global instances
settings = Settings()
source_manager = FeedSourceManager(settings.feeds_config_path)

import httpx
import feedparser
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from bs4 import BeautifulSoup
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import logging

logger = logging.getLogger(__name__)

class FeedFetchError(Exception):
    """A feed could not be downloaded or parsed"""

class BaseScraper(ABC):
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            timeout=30.0,
            follow_redirects=True,
            headers={
                "User-Agent": "LifeScanner/1.0 (Personalized News Aggregator)"
            },
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    @abstractmethod
    async def scrape(self) -> List[Dict[str, Any]]:
        """Scrape articles from source"""
        pass

    async def fetch_rss(self, url: str) -> List[Dict[str, Any]]:
        """Fetch and parse RSS feed into article dicts"""
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Error fetching RSS {url}: {e}")
            raise FeedFetchError(f"Error fetching {url}: {e}") from e

        feed = feedparser.parse(response.content)
        if feed.bozo and not feed.entries:
            raise FeedFetchError(f"Could not parse feed {url}: {feed.get('bozo_exception')}")

        feed_title = feed.feed.get("title") or ""
        articles = []

        for entry in feed.entries:
            link = entry.get("link")
            if not link:
                continue
            raw_summary = entry.get("summary", "")
            articles.append({
                "url": link,
                "title": entry.get("title") or "Untitled",
                "description": self.extract_text_content(raw_summary) if raw_summary else "",
                "content": self._entry_content(entry) or raw_summary or None,
                "source": self._entry_source(entry, feed_title),
                "published_at": self._parse_date(entry.get("published") or entry.get("updated")),
            })

        return articles

    def _entry_source(self, entry, feed_title: str) -> str:
        source = entry.get("author") or entry.get("source", {}).get("title") or feed_title
        return source or "Unknown Source"

    def _entry_content(self, entry) -> Optional[str]:
        content = entry.get("content")
        if content:
            return content[0].get("value")
        return None

    def _parse_date(self, date_str: Optional[str]) -> Optional[datetime]:
        """Parse RFC 822 or ISO dates into timezone-naive UTC"""
        if not date_str:
            return None

        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError):
            try:
                dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
            except ValueError:
                logger.warning(f"Could not parse date: {date_str}")
                return None

        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt

    def extract_text_content(self, html: str, max_length: int = 1000) -> str:
        """Extract clean text from HTML"""
        soup = BeautifulSoup(html, 'html.parser')

        # Remove script and style elements
        for element in soup(["script", "style", "nav", "footer", "aside"]):
            element.decompose()

        text = soup.get_text(" ")
        text = ' '.join(text.split())

        return text[:max_length] if len(text) > max_length else text

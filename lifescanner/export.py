"""
HTML news report export
"""

from datetime import datetime
from typing import List, Optional
import logging

import pytz
from jinja2 import Environment, FileSystemLoader, select_autoescape

from lifescanner.config import TEMPLATES_DIR
from lifescanner.models import NewsArticle, User
from lifescanner.news import parse_profile, impact_for, ALL

logger = logging.getLogger(__name__)

def localize(dt: Optional[datetime], tz_name: str = "UTC") -> Optional[datetime]:
    """Convert a naive UTC datetime to the given timezone"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        # Assume UTC if no timezone info
        dt = dt.replace(tzinfo=pytz.UTC)
    try:
        tz = pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return dt.astimezone(tz)

def profile_title(profile: Optional[str]) -> str:
    if not profile or profile == ALL:
        return "All Profiles"
    return profile.capitalize() + "s"

def category_title(category: Optional[str]) -> str:
    if not category or category == ALL:
        return "All Categories"
    return category.capitalize()

def export_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"daily-news-summary-{now.strftime('%Y-%m-%d')}.html"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)
_env.filters["localtime"] = localize

def generate_html_report(
    articles: List[NewsArticle],
    profile: Optional[str],
    category: Optional[str],
    user: User,
    tz_name: str = "UTC",
    now: Optional[datetime] = None,
) -> str:
    """Self-contained, print friendly report of the given articles"""
    selected = parse_profile(profile)
    generated_at = localize(now or datetime.utcnow(), tz_name)

    items = [
        {"article": article, "impact": impact_for(article, selected)}
        for article in articles
    ]

    html = _env.get_template("export.html").render(
        items=items,
        user_label=user.name or user.email,
        profile_title=profile_title(selected.value if selected else None),
        category_title=category_title(category),
        generated_at=generated_at,
        tz_name=tz_name,
    )
    logger.info(f"📄 Rendered export with {len(items)} articles for {user.email}")
    return html

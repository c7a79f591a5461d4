from typing import List, Dict, Any, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lifescanner.models import NewsArticle, Profile, IMPACT_COLUMNS

ALL = "all"

def parse_profile(value: Optional[str]) -> Optional[Profile]:
    """None for "all" or empty, raises ValueError for unknown profiles"""
    if not value or value == ALL:
        return None
    return Profile(value.lower())

async def list_articles(
    db: AsyncSession,
    category: Optional[str] = ALL,
    profile: Optional[str] = ALL,
    limit: int = 20,
    categories: Optional[List[str]] = None,
) -> List[NewsArticle]:
    """Newest articles first

    ``profile`` keeps only rows that carry an impact note for it.
    ``categories`` restricts to a set when no single category is given.
    """
    query = select(NewsArticle)

    if category and category != ALL:
        query = query.where(NewsArticle.category == category)
    elif categories:
        query = query.where(NewsArticle.category.in_(categories))

    selected = parse_profile(profile)
    if selected is not None:
        query = query.where(getattr(NewsArticle, IMPACT_COLUMNS[selected]).is_not(None))

    result = await db.execute(
        query.order_by(NewsArticle.published_at.desc(), NewsArticle.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())

def impact_for(article: NewsArticle, profile: Optional[Profile]) -> Optional[str]:
    if profile is None:
        return None
    return getattr(article, IMPACT_COLUMNS[profile])

def serialize_article(article: NewsArticle) -> Dict[str, Any]:
    return {
        "id": article.id,
        "title": article.title,
        "description": article.description,
        "url": article.url,
        "source": article.source,
        "category": article.category,
        "publishedAt": article.published_at.isoformat() if article.published_at else None,
        "summary": article.summary,
        "impactStudent": article.impact_student,
        "impactEmployee": article.impact_employee,
        "impactInvestor": article.impact_investor,
        "impactHomemaker": article.impact_homemaker,
        "createdAt": article.created_at.isoformat() if article.created_at else None,
    }

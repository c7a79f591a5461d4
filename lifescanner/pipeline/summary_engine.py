import asyncio
import json
import re
import logging
from typing import Dict, Any, Optional

from lifescanner.completions import CompletionClient, CompletionError, completion_client
from lifescanner.config import settings
from lifescanner.models import PROFILES

logger = logging.getLogger(__name__)

SUMMARY_UNAVAILABLE = "Unable to generate summary."
SUMMARY_FAILED = "Summary generation failed. Please try again later."
PROCESSING_FAILED = "Unable to process this article at this time."

# Used when the service answers but the answer is not the expected JSON
PARSE_FALLBACK_IMPACT = {
    "student": "This news may have implications for education and learning opportunities.",
    "employee": "This could affect workplace dynamics and career development.",
    "investor": "This news may impact market conditions and investment decisions.",
    "homemaker": "This could influence daily life and family planning decisions.",
}

# Used when the service cannot be reached or returns nothing
SERVICE_FALLBACK_IMPACT = {
    profile: f"Unable to generate specific impact analysis for {profile}s at this time."
    for profile in PROFILES
}

UNAVAILABLE_IMPACT = {profile: "Analysis unavailable." for profile in PROFILES}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

class SummaryEngine:
    """Produces the AI summary and per-profile impact notes for an article

    Articles are plain dicts with ``title``, ``description`` and an
    optional ``content``. Every public method returns usable text; failures
    of the completion service are replaced by fixed fallback strings.
    """

    def __init__(self, client: Optional[CompletionClient] = None):
        self.client = client or completion_client

    def _article_block(self, article: Dict[str, Any]) -> str:
        lines = [
            f"Title: {article.get('title', '')}",
            f"Description: {article.get('description', '')}",
        ]
        if article.get("content"):
            lines.append(f"Content: {article['content']}")
        return "\n".join(lines)

    def _create_summary_prompt(self, article: Dict[str, Any]) -> str:
        return (
            "You are an expert news analyst. Please provide a concise summary of the "
            "following news article:\n\n"
            f"{self._article_block(article)}\n\n"
            "Please provide a 2-3 sentence summary that captures the key points and "
            "significance of this news."
        )

    def _create_impact_prompt(self, article: Dict[str, Any]) -> str:
        return (
            "You are an expert analyst specializing in understanding how news impacts "
            "different demographics.\n"
            "Analyze the following news article and provide specific impact assessments for:\n\n"
            "1. Students (education, learning, career development)\n"
            "2. Employees (work, career, job security)\n"
            "3. Investors (markets, investments, financial impact)\n"
            "4. Homemakers (daily life, family, household management)\n\n"
            f"Article:\n{self._article_block(article)}\n\n"
            "Please provide a JSON response with the following structure:\n"
            "{\n"
            '  "student": "Impact assessment for students...",\n'
            '  "employee": "Impact assessment for employees...",\n'
            '  "investor": "Impact assessment for investors...",\n'
            '  "homemaker": "Impact assessment for homemakers..."\n'
            "}\n\n"
            "Each assessment should be 1-2 sentences specific to that demographic."
        )

    async def generate_summary(self, article: Dict[str, Any]) -> str:
        try:
            summary = await self.client.complete(
                [
                    {
                        "role": "system",
                        "content": "You are an expert news analyst providing concise, accurate summaries of news articles.",
                    },
                    {"role": "user", "content": self._create_summary_prompt(article)},
                ],
                max_tokens=settings.summary_max_tokens,
            )
        except CompletionError as e:
            logger.error(f"Error generating summary for '{article.get('title', '')[:50]}': {e}")
            return SUMMARY_FAILED

        return summary or SUMMARY_UNAVAILABLE

    async def generate_impact_analysis(self, article: Dict[str, Any]) -> Dict[str, str]:
        try:
            response = await self.client.complete(
                [
                    {
                        "role": "system",
                        "content": "You are an expert demographic impact analyst providing specific, actionable insights for different user groups.",
                    },
                    {"role": "user", "content": self._create_impact_prompt(article)},
                ],
                max_tokens=settings.impact_max_tokens,
            )
        except CompletionError as e:
            logger.error(f"Error generating impact analysis for '{article.get('title', '')[:50]}': {e}")
            return dict(SERVICE_FALLBACK_IMPACT)

        if not response:
            logger.error("No response from AI service for impact analysis")
            return dict(SERVICE_FALLBACK_IMPACT)

        parsed = self._parse_impact(response)
        if parsed is None:
            logger.warning(f"Unparsable impact analysis: {response[:80]!r}")
            return dict(PARSE_FALLBACK_IMPACT)
        return parsed

    def _parse_impact(self, response: str) -> Optional[Dict[str, str]]:
        """Read the impact JSON, tolerating code fences and surrounding prose"""
        text = _FENCE_RE.sub("", response.strip())
        try:
            data = json.loads(text)
        except ValueError:
            match = _OBJECT_RE.search(text)
            if not match:
                return None
            try:
                data = json.loads(match.group(0))
            except ValueError:
                return None

        if not isinstance(data, dict):
            return None

        impact = {}
        for profile in PROFILES:
            value = data.get(profile)
            if isinstance(value, str) and value.strip():
                impact[profile] = value.strip()
            else:
                impact[profile] = PARSE_FALLBACK_IMPACT[profile]
        return impact

    async def process_article(self, article: Dict[str, Any]) -> Dict[str, Any]:
        """Summary and impact analysis, requested concurrently"""
        try:
            summary, impact = await asyncio.gather(
                self.generate_summary(article),
                self.generate_impact_analysis(article),
            )
        except Exception as e:
            logger.error(f"Error processing article '{article.get('title', '')[:50]}': {e}")
            return {"summary": PROCESSING_FAILED, "impact": dict(UNAVAILABLE_IMPACT)}

        return {"summary": summary, "impact": impact}

# Global instance
summary_engine = SummaryEngine()

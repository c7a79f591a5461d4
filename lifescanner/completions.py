"""
Chat completion client for any OpenAI-compatible endpoint
Optionally auto-detects the served model through /models
"""

import httpx
import time
import logging
from typing import Optional, List, Dict, Any
from lifescanner.config import settings

logger = logging.getLogger(__name__)

class CompletionError(Exception):
    """The completion service failed or returned no usable content"""

class CompletionClient:
    """Talks to the completion service and tracks the model in use"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.ai_base_url).rstrip("/")
        self.model = model or settings.ai_model
        key = settings.ai_api_key if api_key is None else api_key
        headers = {"Authorization": f"Bearer {key}"} if key else {}
        self.client = httpx.AsyncClient(
            timeout=settings.ai_timeout_seconds, headers=headers, transport=transport
        )
        self._current_model = None
        self._last_check = 0.0
        self._check_interval = 300  # Check every 5 minutes

    async def get_current_model(self) -> str:
        """Configured model, or the detected one when set to "auto" """
        if self.model != "auto":
            return self.model

        # Use cached model if recent
        if self._current_model and time.time() - self._last_check < self._check_interval:
            return self._current_model

        models = await self._get_available_models()
        if models:
            active = next((m for m in models if m.get("active")), models[0])
            self._current_model = active["id"]
            self._last_check = time.time()
            logger.info(f"🤖 Detected completion model: {self._current_model}")
            return self._current_model

        logger.warning("⚠️ Could not detect completion model, using fallback")
        return settings.ai_fallback_model

    async def _get_available_models(self) -> List[Dict[str, Any]]:
        try:
            response = await self.client.get(f"{self.base_url}/models")
            response.raise_for_status()
            return response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Could not get models list: {e}")
            return []

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float = None,
    ) -> str:
        """Return the first choice's message content"""
        model = await self.get_current_model()
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": settings.ai_temperature if temperature is None else temperature,
        }

        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            raise CompletionError(
                f"completion service returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionError(f"completion request failed: {e}") from e

        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError("malformed completion response") from e

        return (content or "").strip()

    async def is_available(self) -> bool:
        """Check if the completion service is reachable"""
        try:
            response = await self.client.get(f"{self.base_url}/models", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def get_model_info(self) -> Dict[str, Any]:
        model_name = await self.get_current_model()
        return {
            "model_name": model_name,
            "is_available": await self.is_available(),
            "base_url": self.base_url,
            "auto_detected": self.model == "auto" and model_name != settings.ai_fallback_model,
        }

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

# Global instance
completion_client = CompletionClient()

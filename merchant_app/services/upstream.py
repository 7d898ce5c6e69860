import logging
from typing import Any, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import settings
from .exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)

FALLBACK_CHAT_MESSAGE = (
    "I'm sorry, I'm having trouble connecting right now. "
    "Please try again in a moment or contact the store directly."
)


class UpstreamClient:
    """Forwards chat and recommendation calls to the AI backend"""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or settings.AI_BACKEND_URL).rstrip("/")
        self.session = self._create_session()
        self.headers = {
            "User-Agent": settings.USER_AGENT,
            "Accept": "application/json",
        }

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        # urllib3 only retries idempotent methods, so POSTs are sent once
        retry_strategy = Retry(
            total=settings.MAX_RETRIES,
            backoff_factor=settings.RETRY_DELAY,
            status_forcelist=[502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def forward(self, path: str, body: bytes, content_type: Optional[str] = None) -> Tuple[int, Any]:
        """
        POST a raw body to the AI backend

        Args:
            path: Backend path, e.g. ``/api/chat``
            body: Request body exactly as the widget sent it
            content_type: Content type to forward

        Returns:
            tuple: (status code, decoded JSON or text)

        Raises:
            UpstreamUnavailable: network failure or 5xx answer
        """
        url = f"{self.base_url}{path}"
        headers = dict(self.headers, **{"Content-Type": content_type or "application/json"})

        try:
            response = self.session.post(url, data=body, headers=headers, timeout=settings.AI_BACKEND_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.error(f"AI backend request to {url} failed: {e}")
            raise UpstreamUnavailable(str(e))

        logger.info(f"AI backend {path} answered {response.status_code} ({len(response.content)} bytes)")

        if response.status_code >= 500:
            raise UpstreamUnavailable(f"AI backend returned HTTP {response.status_code}")

        try:
            return response.status_code, response.json()
        except ValueError:
            return response.status_code, response.text

    def chat(self, body: bytes, content_type: Optional[str] = None) -> Tuple[int, Any]:
        return self.forward("/api/chat", body, content_type)

    def recommendations(self, body: bytes, content_type: Optional[str] = None) -> Tuple[int, Any]:
        return self.forward("/api/recommendations", body, content_type)


def chat_fallback() -> Dict[str, Any]:
    """Body returned to the widget when the AI backend is down"""
    return {
        "success": False,
        "error": "Chat service unavailable",
        "message": FALLBACK_CHAT_MESSAGE,
        "response": FALLBACK_CHAT_MESSAGE,
        "fallback": True,
    }


def recommendations_fallback() -> Dict[str, Any]:
    return {
        "success": False,
        "recommendations": [],
        "message": "Recommendations are temporarily unavailable",
        "fallback": True,
    }

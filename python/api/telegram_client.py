import json
from typing import Any, Dict, List, Optional

import requests

from colored_logger import get_colored_logger
from core import RateLimiter

logger = get_colored_logger(__name__)


class TelegramClient:
    """Minimal Telegram Bot API client: long polling plus the three calls the bot sends."""

    BASE_URL = "https://api.telegram.org"
    USER_AGENT = "StickerSearchBot/1.0"

    # Bot API limits
    MAX_INLINE_RESULTS = 50

    def __init__(
        self,
        token: str,
        rate_limiter: Optional[RateLimiter] = None,
        request_timeout: float = 10.0,
    ):
        if not token:
            raise ValueError("A bot token is required")

        self.token = token
        self.rate_limiter = rate_limiter or RateLimiter(max_requests=60, window_seconds=60)
        self.request_timeout = request_timeout

    def _url(self, method: str) -> str:
        return f"{self.BASE_URL}/bot{self.token}/{method}"

    def _call(
        self, method: str, payload: Dict[str, Any], timeout: Optional[float] = None
    ) -> Optional[Any]:
        """
        POST a Bot API method and return its ``result`` field.

        Network errors and ``ok: false`` replies are logged and reported as
        None; the token is never written to the log.
        """
        headers = {"User-Agent": self.USER_AGENT}

        try:
            response = requests.post(
                self._url(method),
                json=payload,
                headers=headers,
                timeout=timeout or self.request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Bot API call %s failed: %s", method, type(e).__name__)
            return None
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON from Bot API call %s: %s", method, e)
            return None

        if not data.get("ok"):
            logger.error(
                "Bot API call %s rejected: %s", method, data.get("description", "unknown error")
            )
            return None

        return data.get("result")

    def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Dict[str, Any]]:
        """Long-poll for updates; returns [] on failure so the loop keeps going."""
        payload: Dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "inline_query", "chosen_inline_result"],
        }
        if offset is not None:
            payload["offset"] = offset

        # Leave the HTTP timeout a little longer than the server-side poll
        result = self._call("getUpdates", payload, timeout=timeout + 5)
        return result if isinstance(result, list) else []

    def answer_inline_query(
        self,
        inline_query_id: str,
        results: List[Dict[str, Any]],
        next_offset: str = "",
        cache_time: int = 0,
    ) -> bool:
        self.rate_limiter.wait_if_needed()
        payload = {
            "inline_query_id": inline_query_id,
            "results": results[: self.MAX_INLINE_RESULTS],
            "next_offset": next_offset,
            "cache_time": cache_time,
            "is_personal": False,
        }
        return self._call("answerInlineQuery", payload) is not None

    def send_message(
        self,
        chat_id: int,
        text: str,
        reply_to_message_id: Optional[int] = None,
        parse_mode: Optional[str] = None,
    ) -> bool:
        self.rate_limiter.wait_if_needed()
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return self._call("sendMessage", payload) is not None

    @staticmethod
    def cached_sticker_result(result_id: str, file_id: str) -> Dict[str, Any]:
        """InlineQueryResultCachedSticker payload."""
        return {"type": "sticker", "id": result_id, "sticker_file_id": file_id}

import logging

import httpx

from reelbox.errors import FileTypeMismatch, ForwardingError
from reelbox.services.captions import truncate_caption

logger = logging.getLogger("reelbox.forwarder")

FILE_TYPE_MISMATCH_MARKERS = (
    "file of type",
    "wrong file type",
    "wrong type of the file",
    "type of file",
)


def _classify_telegram_error(description: str) -> tuple[str, bool]:
    lowered = description.lower()
    if any(marker in lowered for marker in FILE_TYPE_MISMATCH_MARKERS):
        return ("FILE_TYPE_MISMATCH", False)
    if "file too large" in lowered or "file is too big" in lowered:
        return ("FILE_TOO_LARGE", False)
    if "chat not found" in lowered:
        return ("CHAT_NOT_FOUND", False)
    if "wrong file identifier" in lowered:
        return ("WRONG_FILE_ID", False)
    if "too many requests" in lowered:
        return ("HTTP_429", True)
    if "forbidden" in lowered:
        return ("FORBIDDEN", False)
    return ("TELEGRAM_ERROR", False)


class ChannelForwarder:
    """Sends an already-received file into a storage channel through the Bot API."""

    def __init__(
        self,
        bot_token: str,
        api_base_url: str = "https://api.telegram.org",
        *,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = f"{api_base_url.rstrip('/')}/bot{bot_token}"
        self._timeout = timeout or httpx.Timeout(30.0, read=120.0)
        self._transport = transport

    async def forward(self, file_ref: str, target_channel: int | str, caption: str = "") -> int:
        try:
            return await self._send(
                "sendDocument",
                target_channel,
                caption,
                {"document": file_ref},
            )
        except FileTypeMismatch as exc:
            logger.info(
                "document transport refused, falling back to video",
                extra={"action": "forward_fallback_video", "reason": str(exc)},
            )
        return await self._send(
            "sendVideo",
            target_channel,
            caption,
            {"video": file_ref, "supports_streaming": "true"},
        )

    async def _send(
        self,
        method: str,
        target_channel: int | str,
        caption: str,
        fields: dict[str, str],
    ) -> int:
        data = {
            "chat_id": str(target_channel),
            "caption": truncate_caption(caption),
            "parse_mode": "HTML",
            "disable_notification": "true",
            **fields,
        }
        url = f"{self._base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, data=data)
        except httpx.TimeoutException as exc:
            raise ForwardingError(f"{method} timed out", code="timeout", retryable=True) from exc
        except httpx.RequestError as exc:
            raise ForwardingError(
                f"{method} connection error: {exc}", code="connection_error", retryable=True
            ) from exc

        if response.status_code == 429:
            raise ForwardingError(f"{method} rate limited", code="HTTP_429", retryable=True)
        if 500 <= response.status_code <= 599:
            raise ForwardingError(
                f"{method} failed with HTTP {response.status_code}",
                code=f"HTTP_{response.status_code}",
                retryable=True,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ForwardingError(
                f"{method} returned invalid JSON (HTTP {response.status_code})",
                code="invalid_response",
            ) from exc

        if not payload.get("ok"):
            description = payload.get("description") or f"HTTP {response.status_code}"
            code, retryable = _classify_telegram_error(description)
            message = f"Telegram API error: {description}"
            if code == "FILE_TYPE_MISMATCH":
                raise FileTypeMismatch(message)
            raise ForwardingError(message, code=code, retryable=retryable)

        message_id = (payload.get("result") or {}).get("message_id")
        if not message_id:
            raise ForwardingError(f"{method} response has no message_id", code="invalid_response")
        return int(message_id)

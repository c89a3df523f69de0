"""
Telegram Bot API transport.

Inbound updates arrive through the webhook route and are reduced to
InboundEvent records; replies go out through sendMessage. Photos and image
documents are referenced by their Telegram file_id and only downloaded when
the inference service needs their bytes.
"""

import logging
from typing import Any, TypedDict

import httpx

logger = logging.getLogger(__name__)

_API_BASE = "https://api.telegram.org"
_MESSAGE_LIMIT = 4096


class InboundEvent(TypedDict):
    conversation_id: str
    text: str | None
    attachment_ref: str | None


def parse_update(update: dict[str, Any]) -> InboundEvent | None:
    """Reduce a Telegram update to the fields the bot uses. None for updates without a message."""
    message = update.get("message") or update.get("edited_message")
    if not message:
        return None
    chat = message.get("chat") or {}
    if "id" not in chat:
        return None

    text = message.get("text") or message.get("caption")
    attachment_ref = None
    photos = message.get("photo") or []
    if photos:
        # Telegram lists the same photo at increasing resolutions.
        largest = max(photos, key=lambda p: p.get("file_size") or p.get("width", 0) * p.get("height", 0))
        attachment_ref = largest.get("file_id")
    else:
        document = message.get("document") or {}
        if str(document.get("mime_type", "")).startswith("image/"):
            attachment_ref = document.get("file_id")

    if not text and not attachment_ref:
        return None
    return {"conversation_id": str(chat["id"]), "text": text, "attachment_ref": attachment_ref}


def _chunks(text: str, limit: int = _MESSAGE_LIMIT) -> list[str]:
    if len(text) <= limit:
        return [text]
    chunks = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


class TelegramTransport:
    def __init__(self, token: str, client: httpx.AsyncClient | None = None, api_base: str = _API_BASE) -> None:
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=15.0)
        self._api_base = api_base.rstrip("/")

    def _method_url(self, method: str) -> str:
        return f"{self._api_base}/bot{self._token}/{method}"

    async def send(self, conversation_id: str, text: str) -> None:
        for chunk in _chunks(text):
            response = await self._client.post(
                self._method_url("sendMessage"),
                json={"chat_id": conversation_id, "text": chunk},
            )
            response.raise_for_status()
        logger.info("Sent %d char(s) to %s", len(text), conversation_id)

    async def fetch_attachment(self, ref: str) -> bytes:
        response = await self._client.get(self._method_url("getFile"), params={"file_id": ref})
        response.raise_for_status()
        payload = response.json()
        if not payload.get("ok"):
            raise httpx.HTTPError(f"getFile failed for {ref}: {payload.get('description')}")
        file_path = payload["result"]["file_path"]
        download = await self._client.get(f"{self._api_base}/file/bot{self._token}/{file_path}")
        download.raise_for_status()
        return download.content

    async def aclose(self) -> None:
        await self._client.aclose()

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .client import MediaFile, individual_jid, is_individual_jid
from .metrics import MESSAGES_OUT_TOTAL
from .registry import SessionRegistry
from .session import SessionState
from .storage import sanitize_phone


LOGGER = logging.getLogger("wagateway.sender")

TEXT_CONTENT = "text"


class SendError(Exception):
    """Base class for caller-visible send failures."""

    status_code = 400


class ClientNotConnectedError(SendError):
    status_code = 404

    def __init__(self, phone: str) -> None:
        super().__init__("Client is not connected")
        self.phone = phone


class UnsupportedContentTypeError(SendError):
    def __init__(self, content_type: str) -> None:
        super().__init__(f"Unsupported contentType: {content_type}")
        self.content_type = content_type


class InvalidRecipientError(SendError):
    def __init__(self, to: str) -> None:
        super().__init__(f"Unsupported recipient: {to}")
        self.to = to


class MediaFileNotFoundError(SendError):
    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path


@dataclass(slots=True)
class SendResult:
    message_id: str
    provider_id: bool


def extract_message_id(result: Any) -> Optional[str]:
    """Pull the provider id out of whatever the client returned."""

    if result is None:
        return None
    if isinstance(result, str):
        return result or None
    if isinstance(result, dict):
        value = result.get("id")
    else:
        value = getattr(result, "id", None)
    if isinstance(value, dict):
        value = value.get("id")
    elif value is not None and not isinstance(value, (str, int)):
        value = getattr(value, "id", None)
    if value is None or value == "":
        return None
    return str(value)


class OutboundSender:
    def __init__(
        self,
        registry: SessionRegistry,
        request_reconnect: Callable[[str], None],
    ) -> None:
        self._registry = registry
        self._request_reconnect = request_reconnect

    async def send(
        self,
        from_phone: str,
        to: str,
        message: str,
        *,
        content_type: str = TEXT_CONTENT,
        file_path: Optional[str] = None,
    ) -> SendResult:
        phone = sanitize_phone(from_phone)
        kind = "text" if content_type == TEXT_CONTENT else "media"
        if "@" in to and not is_individual_jid(to):
            LOGGER.warning("stage=send_rejected reason=invalid_recipient phone=%s to=%s", phone, to)
            MESSAGES_OUT_TOTAL.labels(kind, "invalid_recipient").inc()
            raise InvalidRecipientError(to)
        session = self._registry.get(phone)
        if session is None:
            LOGGER.warning("stage=send_rejected reason=not_connected phone=%s", phone)
            MESSAGES_OUT_TOTAL.labels(kind, "not_connected").inc()
            self._request_reconnect(phone)
            raise ClientNotConnectedError(phone)
        if session.state is not SessionState.READY or session.client is None:
            LOGGER.warning(
                "stage=send_rejected reason=not_ready phone=%s state=%s",
                phone,
                session.state.value,
            )
            MESSAGES_OUT_TOTAL.labels(kind, "not_connected").inc()
            raise ClientNotConnectedError(phone)

        chat_id = to if is_individual_jid(to) else individual_jid(sanitize_phone(to))
        if content_type == TEXT_CONTENT:
            result = await session.client.send_text(chat_id, message)
        elif file_path:
            path = Path(file_path)
            if not await asyncio.to_thread(path.is_file):
                LOGGER.error("stage=send_rejected reason=file_not_found phone=%s path=%s", phone, path)
                MESSAGES_OUT_TOTAL.labels(kind, "file_not_found").inc()
                raise MediaFileNotFoundError(file_path)
            data = await asyncio.to_thread(path.read_bytes)
            media = MediaFile(mimetype=content_type, data=data, filename=path.name)
            result = await session.client.send_media(chat_id, media, caption=message)
        else:
            LOGGER.error(
                "stage=send_rejected reason=unsupported_content phone=%s content_type=%s",
                phone,
                content_type,
            )
            MESSAGES_OUT_TOTAL.labels(kind, "unsupported").inc()
            raise UnsupportedContentTypeError(content_type)

        provider_id = extract_message_id(result)
        message_id = provider_id or secrets.token_hex(8)
        MESSAGES_OUT_TOTAL.labels(kind, "sent").inc()
        LOGGER.info(
            "stage=send_ok phone=%s to=%s message_id=%s content_type=%s",
            phone,
            to,
            message_id,
            content_type,
        )
        return SendResult(message_id=message_id, provider_id=provider_id is not None)


__all__ = [
    "ClientNotConnectedError",
    "InvalidRecipientError",
    "MediaFileNotFoundError",
    "OutboundSender",
    "SendError",
    "SendResult",
    "UnsupportedContentTypeError",
    "extract_message_id",
]

"""Inbound chat event → canonical webhook payload."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .client import ChatClient, InboundMessage, individual_jid, is_individual_jid, jid_to_phone


LOGGER = logging.getLogger("wagateway.normalizer")

MAX_MEDIA_BYTES = 16 * 1024 * 1024
OVERSIZED_MEDIA_TEXT = "File is too large (over 16 MB) and was not delivered"

TEXT_TYPES = frozenset({"chat", "text"})
MEDIA_TYPES = frozenset({"image", "video", "audio", "document", "sticker"})
REACTION_TYPE = "reaction"
UNKNOWN_TYPE = "unknown"

_FALLBACK_EXTENSIONS = {"sticker": "webp", "audio": "ogg", "video": "mp4"}


@dataclass(slots=True)
class MediaAttachment:
    id: str
    mime_type: str
    caption: str
    file_path: str
    filename: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mimeType": self.mime_type,
            "caption": self.caption,
            "filePath": self.file_path,
            "filename": self.filename,
        }


@dataclass(slots=True)
class NormalizedMessage:
    id: str
    from_phone: str
    to_phone: str
    timestamp: Any
    type: str
    text: str
    media: Optional[MediaAttachment] = None
    size_rejected: bool = False

    def to_payload(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "id": self.id,
            "from": self.from_phone,
            "timestamp": self.timestamp,
            "type": self.type,
            "text": {"body": self.text},
        }
        if self.type not in ("text", UNKNOWN_TYPE):
            message[self.type] = self.media.to_payload() if self.media else None
        return {
            "entry": [
                {
                    "changes": [
                        {
                            "value": {
                                "messages": [message],
                                "metadata": {"phone_number_id": self.to_phone},
                            }
                        }
                    ]
                }
            ]
        }


def fallback_mime_type(message_type: str) -> str:
    return f"{message_type}/{_FALLBACK_EXTENSIONS.get(message_type, 'jpg')}"


def _canonical_type(raw_type: str) -> str:
    if raw_type in TEXT_TYPES:
        return "text"
    if raw_type in MEDIA_TYPES or raw_type == REACTION_TYPE:
        return raw_type
    return UNKNOWN_TYPE


def _extension(mime_type: str) -> str:
    _, _, subtype = mime_type.partition("/")
    subtype = subtype.split(";", 1)[0].strip()
    return subtype or "unknown"


def media_filename(message: InboundMessage, mime_type: str) -> str:
    if message.filename:
        name = Path(str(message.filename)).name
        if name:
            return name
    return f"{message.type}_{message.id}.{_extension(mime_type)}"


def accepts(message: InboundMessage, session_phone: str) -> bool:
    """Only one-to-one chats, and never the session's own outbound echo."""

    if not is_individual_jid(message.from_jid) or not is_individual_jid(message.to_jid):
        LOGGER.info(
            "stage=message_skipped reason=not_individual phone=%s from=%s to=%s",
            session_phone,
            message.from_jid,
            message.to_jid,
        )
        return False
    if message.from_jid == individual_jid(session_phone):
        LOGGER.info(
            "stage=message_skipped reason=self_echo phone=%s to=%s",
            session_phone,
            message.to_jid,
        )
        return False
    return True


class MessageNormalizer:
    def __init__(
        self,
        files_root: Callable[[str], Path],
        *,
        max_media_bytes: int = MAX_MEDIA_BYTES,
    ) -> None:
        self._files_root = files_root
        self._max_media_bytes = max_media_bytes

    async def normalize(
        self,
        message: InboundMessage,
        session_phone: str,
        client: ChatClient,
    ) -> Optional[NormalizedMessage]:
        if not accepts(message, session_phone):
            return None

        raw_type = (message.type or "").strip()
        normalized = NormalizedMessage(
            id=message.id,
            from_phone=jid_to_phone(message.from_jid),
            to_phone=session_phone,
            timestamp=message.timestamp,
            type=_canonical_type(raw_type),
            text="",
        )

        if raw_type in TEXT_TYPES:
            normalized.text = message.body or ""
        elif raw_type in MEDIA_TYPES:
            await self._attach_media(normalized, message, session_phone, client)
        elif raw_type == REACTION_TYPE:
            target = message.reacted_message_id or "unknown"
            normalized.text = f"Reaction: {message.reaction or ''} to message {target}"
        else:
            normalized.text = f"Unknown type: {raw_type or UNKNOWN_TYPE}"
        return normalized

    async def _attach_media(
        self,
        normalized: NormalizedMessage,
        message: InboundMessage,
        session_phone: str,
        client: ChatClient,
    ) -> None:
        kind = normalized.type
        normalized.text = message.caption or message.body or kind
        try:
            media = await client.download_media(message)
        except Exception as exc:
            LOGGER.warning(
                "stage=media_download_failed phone=%s message_id=%s error=%s",
                session_phone,
                message.id,
                exc,
            )
            media = None
        if media is None:
            normalized.text = f"{kind} (media download failed)"
            return

        size = media.size
        if size > self._max_media_bytes:
            LOGGER.warning(
                "stage=media_too_large phone=%s file=%s_%s size_mb=%.2f",
                session_phone,
                kind,
                message.id,
                size / (1024 * 1024),
            )
            normalized.text = OVERSIZED_MEDIA_TEXT
            normalized.size_rejected = True
            return

        mime_type = media.mimetype or fallback_mime_type(kind)
        filename = media_filename(message, mime_type)
        directory = Path(self._files_root(session_phone))
        target = directory / filename
        await asyncio.to_thread(_write_file, target, media.data)
        LOGGER.info("stage=media_saved phone=%s file=%s path=%s", session_phone, filename, target)
        normalized.media = MediaAttachment(
            id=message.id,
            mime_type=mime_type,
            caption=message.caption or "",
            file_path=str(target),
            filename=filename,
        )


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


__all__ = [
    "MAX_MEDIA_BYTES",
    "MEDIA_TYPES",
    "MediaAttachment",
    "MessageNormalizer",
    "NormalizedMessage",
    "OVERSIZED_MEDIA_TEXT",
    "UNKNOWN_TYPE",
    "accepts",
    "fallback_mime_type",
    "media_filename",
]

"""Contract of the underlying messaging client.

The gateway never speaks the chat protocol itself. A concrete engine adapter
(browser automation, a protocol library, ...) implements :class:`ChatClient`
and is plugged in through ``WA_CLIENT_FACTORY``.

Lifecycle events emitted through ``on``:

``qr`` (challenge string)
    A pairing challenge that has to be scanned on the phone.
``authenticated``
    Credentials were accepted.
``ready``
    The session can send and receive messages.
``auth_failure`` (reason)
    Credentials were rejected.
``disconnected`` (reason)
    The connection was lost.
``message`` (:class:`InboundMessage`)
    An inbound chat event.

Listeners must be invoked on the gateway's event loop; they never block.
"""
from __future__ import annotations

import base64
import importlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol


INDIVIDUAL_CHAT_SUFFIX = "@c.us"

CLIENT_EVENTS = ("qr", "authenticated", "ready", "auth_failure", "disconnected", "message")


@dataclass(slots=True)
class MediaFile:
    mimetype: Optional[str]
    data: bytes
    filename: Optional[str] = None

    @classmethod
    def from_base64(cls, mimetype: Optional[str], data: str, filename: Optional[str] = None) -> "MediaFile":
        return cls(mimetype=mimetype, data=base64.b64decode(data), filename=filename)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class InboundMessage:
    id: str
    from_jid: str
    to_jid: str
    timestamp: int
    type: str
    body: str = ""
    caption: Optional[str] = None
    filename: Optional[str] = None
    has_media: bool = False
    reaction: Optional[str] = None
    reacted_message_id: Optional[str] = None
    raw: Any = None


@dataclass(frozen=True, slots=True)
class ClientOptions:
    client_id: str
    auth_dir: Path
    cache_dir: Path
    headless: bool = True


class ChatClient(Protocol):
    def on(self, event: str, listener: Callable[..., Any]) -> None: ...

    async def initialize(self) -> None: ...

    async def destroy(self) -> None: ...

    async def send_text(self, chat_id: str, text: str) -> Any: ...

    async def send_media(self, chat_id: str, media: MediaFile, *, caption: str = "") -> Any: ...

    async def download_media(self, message: InboundMessage) -> Optional[MediaFile]: ...


ClientFactory = Callable[[ClientOptions], ChatClient]


class ClientFactoryError(RuntimeError):
    """Raised when no usable client factory is configured."""


def load_client_factory(path: Optional[str]) -> ClientFactory:
    """Resolve ``package.module:attribute`` into a client factory."""

    if not path:
        return _unconfigured_factory
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ClientFactoryError(f"invalid client factory path: {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise ClientFactoryError(f"client factory not found: {path!r}") from exc
    if not callable(factory):
        raise ClientFactoryError(f"client factory is not callable: {path!r}")
    return factory


def _unconfigured_factory(options: ClientOptions) -> ChatClient:
    raise ClientFactoryError("WA_CLIENT_FACTORY is not configured")


def individual_jid(phone: str) -> str:
    return f"{phone}{INDIVIDUAL_CHAT_SUFFIX}"


def is_individual_jid(jid: Optional[str]) -> bool:
    return bool(jid) and str(jid).endswith(INDIVIDUAL_CHAT_SUFFIX)


def jid_to_phone(jid: str) -> str:
    return jid.replace(INDIVIDUAL_CHAT_SUFFIX, "")


__all__ = [
    "CLIENT_EVENTS",
    "INDIVIDUAL_CHAT_SUFFIX",
    "ChatClient",
    "ClientFactory",
    "ClientFactoryError",
    "ClientOptions",
    "InboundMessage",
    "MediaFile",
    "individual_jid",
    "is_individual_jid",
    "jid_to_phone",
    "load_client_factory",
]

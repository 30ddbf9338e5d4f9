from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from wagateway.backend import BackendClient
from wagateway.client import ClientOptions, InboundMessage, MediaFile
from wagateway.manager import SessionManager
from wagateway.storage import SessionStorage


class FakeChatClient:
    """In-memory client; ``script`` events are emitted from ``initialize``."""

    def __init__(
        self,
        options: ClientOptions,
        *,
        script: tuple[tuple[Any, ...], ...] = (),
        init_error: Optional[Exception] = None,
        send_result: Any = None,
    ) -> None:
        self.options = options
        self.script = script
        self.init_error = init_error
        self.send_result = send_result
        self.listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self.initialized = False
        self.destroyed = False
        self.sent: list[tuple[Any, ...]] = []
        self.media: dict[str, Optional[MediaFile]] = {}
        self.download_error: Optional[Exception] = None

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self.listeners[event].append(listener)

    def emit(self, event: str, *args: Any) -> None:
        for listener in list(self.listeners[event]):
            listener(*args)

    async def initialize(self) -> None:
        if self.init_error is not None:
            raise self.init_error
        self.initialized = True
        for event, *args in self.script:
            self.emit(event, *args)

    async def destroy(self) -> None:
        self.destroyed = True

    async def send_text(self, chat_id: str, text: str) -> Any:
        self.sent.append(("text", chat_id, text))
        return self.send_result

    async def send_media(self, chat_id: str, media: MediaFile, *, caption: str = "") -> Any:
        self.sent.append(("media", chat_id, media, caption))
        return self.send_result

    async def download_media(self, message: InboundMessage) -> Optional[MediaFile]:
        if self.download_error is not None:
            raise self.download_error
        return self.media.get(message.id)


class FakeClientFactory:
    """Hands out :class:`FakeChatClient` instances; ``scripts`` apply in creation order."""

    def __init__(self) -> None:
        self.clients: list[FakeChatClient] = []
        self.options: list[ClientOptions] = []
        self.scripts: list[tuple[tuple[Any, ...], ...]] = []
        self.init_errors: list[Optional[Exception]] = []
        self.fail_with: Optional[Exception] = None

    def __call__(self, options: ClientOptions) -> FakeChatClient:
        self.options.append(options)
        if self.fail_with is not None:
            raise self.fail_with
        index = len(self.clients)
        script = self.scripts[index] if index < len(self.scripts) else ()
        init_error = self.init_errors[index] if index < len(self.init_errors) else None
        client = FakeChatClient(options, script=script, init_error=init_error)
        self.clients.append(client)
        return client


class BackendRecorder:
    """``httpx.MockTransport`` handler that records every backend request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.registered: Any = []
        self.webhook_status = 200
        self.registered_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/whatsappwebhook":
            return httpx.Response(self.webhook_status, json={"ok": True})
        handler = request.url.params.get("handler")
        if handler == "RegisteredPhones":
            return httpx.Response(self.registered_status, json=self.registered)
        if handler == "NotifyAuthSuccess":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def backend(self, base_url: str = "http://backend.test") -> BackendClient:
        return BackendClient(base_url, transport=self.transport())

    @property
    def webhooks(self) -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path == "/whatsappwebhook"
        ]

    @property
    def notifications(self) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.params.get("handler") == "NotifyAuthSuccess"
        ]


def build_manager(
    tmp_path: Path,
    factory: FakeClientFactory,
    recorder: BackendRecorder,
    **kwargs: Any,
) -> SessionManager:
    storage = SessionStorage(tmp_path)
    storage.ensure_roots()
    kwargs.setdefault("qr_timeout", 30.0)
    kwargs.setdefault("retry_delay", 30.0)
    return SessionManager(storage, recorder.backend(), factory, **kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def settle(manager: SessionManager, phone: str) -> None:
    session = manager.registry.get(phone)
    if session is not None:
        await session.mailbox.join()
    await manager.dispatcher.drain(1.0)

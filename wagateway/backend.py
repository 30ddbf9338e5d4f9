"""HTTP calls towards the backend: webhook delivery, auth notification, phone list."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional

import httpx

from .metrics import WEBHOOK_DELIVERIES_TOTAL


LOGGER = logging.getLogger("wagateway.backend")

WEBHOOK_PATH = "/whatsappwebhook"
HANDLER_PATH = "/whatsapp"


class BackendError(Exception):
    """Raised when the backend answers with an unusable response."""


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def webhook_url(self) -> str:
        return f"{self._base_url}{WEBHOOK_PATH}"

    async def post_webhook(self, payload: Dict[str, Any]) -> httpx.Response:
        return await self._http.post(
            self.webhook_url,
            json=payload,
            headers={"Content-Type": "application/json"},
        )

    async def notify_auth_success(self, phone: str, line_id: Optional[str]) -> bool:
        """Best-effort ``NotifyAuthSuccess`` call; never raises."""

        params = {"handler": "NotifyAuthSuccess", "phone": phone, "lineId": line_id or ""}
        try:
            response = await self._http.get(f"{self._base_url}{HANDLER_PATH}", params=params)
        except httpx.HTTPError as exc:
            LOGGER.warning("stage=notify_failed phone=%s error=%s", phone, exc)
            return False
        if not response.is_success:
            LOGGER.warning(
                "stage=notify_failed phone=%s status=%s reason=%s",
                phone,
                response.status_code,
                response.reason_phrase,
            )
            return False
        body: Any = None
        with contextlib.suppress(ValueError):
            body = response.json()
        LOGGER.info("stage=notify_ok phone=%s line_id=%s response=%s", phone, line_id, body)
        return True

    async def fetch_registered_phones(self) -> Any:
        """Single attempt; raises on transport errors, non-2xx and ``204``."""

        response = await self._http.get(
            f"{self._base_url}{HANDLER_PATH}", params={"handler": "RegisteredPhones"}
        )
        if not response.is_success or response.status_code == 204:
            raise BackendError(f"http_status_{response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError("invalid_json") from exc

    async def aclose(self) -> None:
        await self._http.aclose()


class WebhookDispatcher:
    """Fire-and-forget webhook delivery: one POST, no retry."""

    def __init__(self, backend: BackendClient) -> None:
        self._backend = backend
        self._tasks: set[asyncio.Task[Any]] = set()

    def submit(self, payload: Dict[str, Any], *, phone: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(self.deliver(payload, phone=phone))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def deliver(self, payload: Dict[str, Any], *, phone: str) -> bool:
        try:
            response = await self._backend.post_webhook(payload)
        except httpx.HTTPError as exc:
            WEBHOOK_DELIVERIES_TOTAL.labels("error").inc()
            LOGGER.error("stage=webhook_fail phone=%s error=%s", phone, exc)
            return False
        if not response.is_success:
            WEBHOOK_DELIVERIES_TOTAL.labels("rejected").inc()
            LOGGER.warning(
                "stage=webhook_rejected phone=%s status=%s reason=%s",
                phone,
                response.status_code,
                response.reason_phrase,
            )
            return False
        WEBHOOK_DELIVERIES_TOTAL.labels("ok").inc()
        LOGGER.info("stage=webhook_ok phone=%s url=%s", phone, self._backend.webhook_url)
        return True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._tasks:
            return
        _, still_pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in still_pending:
            task.cancel()


__all__ = ["BackendClient", "BackendError", "WebhookDispatcher", "WEBHOOK_PATH", "HANDLER_PATH"]

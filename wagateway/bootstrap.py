"""Startup reconciliation: restore sessions the backend expects to be active."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import httpx

from .backend import BackendClient, BackendError
from .storage import sanitize_phone

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .manager import SessionManager


LOGGER = logging.getLogger("wagateway.bootstrap")

FETCH_MAX_ATTEMPTS = 5
FETCH_RETRY_DELAY = 30.0


@dataclass(frozen=True, slots=True)
class RegisteredPhone:
    phone_number: str
    line_id: Optional[str]


def _parse_registered(data: Any) -> list[RegisteredPhone]:
    phones: list[RegisteredPhone] = []
    for item in data:
        if not isinstance(item, dict):
            LOGGER.warning("stage=registered_phone_skipped reason=not_object item=%r", item)
            continue
        raw_phone = item.get("phoneNumber")
        if not raw_phone:
            LOGGER.warning("stage=registered_phone_skipped reason=no_phone item=%r", item)
            continue
        line_id = item.get("lineId")
        phones.append(
            RegisteredPhone(
                phone_number=str(raw_phone),
                line_id=str(line_id) if line_id not in (None, "") else None,
            )
        )
    return phones


async def fetch_registered_phones(
    backend: BackendClient,
    *,
    max_attempts: int = FETCH_MAX_ATTEMPTS,
    retry_delay: float = FETCH_RETRY_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[RegisteredPhone]:
    """Fetch the phone list, retrying transient failures.

    An empty answer is final and not retried. After ``max_attempts``
    failures the list is empty and startup continues without bootstrap
    sessions.
    """

    for attempt in range(1, max_attempts + 1):
        try:
            data = await backend.fetch_registered_phones()
        except (httpx.HTTPError, BackendError) as exc:
            LOGGER.error(
                "stage=fetch_registered_failed attempt=%s max_attempts=%s error=%s",
                attempt,
                max_attempts,
                exc,
            )
            if attempt >= max_attempts:
                LOGGER.warning(
                    "stage=fetch_registered_exhausted max_attempts=%s result=empty", max_attempts
                )
                return []
            LOGGER.info("stage=fetch_registered_retry delay=%.0fs", retry_delay)
            await sleep(retry_delay)
            continue

        LOGGER.info("stage=fetch_registered_ok data=%s", data)
        if not data or not isinstance(data, list):
            LOGGER.info("stage=fetch_registered_empty")
            return []
        return _parse_registered(data)
    return []


async def initialize_registered_sessions(
    manager: "SessionManager",
    backend: BackendClient,
    **fetch_kwargs: Any,
) -> int:
    """Resume every listed phone that still has persisted credentials."""

    started = 0
    try:
        registered = await fetch_registered_phones(backend, **fetch_kwargs)
        if not registered:
            LOGGER.info("stage=bootstrap_skip reason=no_registered_phones")
            return 0
        for entry in registered:
            phone = sanitize_phone(entry.phone_number)
            if not phone:
                continue
            if not await asyncio.to_thread(manager.storage.has_credentials, phone):
                LOGGER.warning("stage=bootstrap_skip reason=no_credentials phone=%s", phone)
                continue
            LOGGER.info("stage=bootstrap_resume phone=%s line_id=%s", phone, entry.line_id)
            if await manager.resume_session(phone, entry.line_id):
                started += 1
    except asyncio.CancelledError:
        raise
    except Exception:
        LOGGER.exception("stage=bootstrap_failed")
    LOGGER.info("stage=bootstrap_done started=%s", started)
    return started


__all__ = [
    "FETCH_MAX_ATTEMPTS",
    "FETCH_RETRY_DELAY",
    "RegisteredPhone",
    "fetch_registered_phones",
    "initialize_registered_sessions",
]

"""Per-phone session lifecycle.

The lifecycle is a pure transition table: :func:`transition` maps the
current state and an incoming event to the next state plus a list of
effects. :class:`~wagateway.manager.SessionManager` executes the effects
(timers, registry, backend notification, answering a waiting registration).

::

    initializing --qr--> awaiting_qr_scan --authenticated--> authenticated --ready--> ready
         |                      |
         |                      +--qr_timeout--> disconnected (re-create after delay)
         +--authenticated/ready (resume, credentials already present)

    any live state --auth_failure--> auth_failed   (re-create after delay)
    any live state --disconnected--> disconnected  (resume after delay)
    any live state --init_failed---> disconnected  (retry in the same mode)
    any state      --delete--------> destroyed
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from .client import ChatClient


class SessionState(str, enum.Enum):
    INITIALIZING = "initializing"
    AWAITING_QR_SCAN = "awaiting_qr_scan"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"
    DESTROYED = "destroyed"

    @property
    def is_live(self) -> bool:
        return self in _LIVE_STATES

    @property
    def is_authenticated(self) -> bool:
        return self in (SessionState.AUTHENTICATED, SessionState.READY)


_LIVE_STATES = frozenset(
    {
        SessionState.INITIALIZING,
        SessionState.AWAITING_QR_SCAN,
        SessionState.AUTHENTICATED,
        SessionState.READY,
    }
)


class CreationMode(str, enum.Enum):
    INTERACTIVE = "interactive"
    RESUME = "resume"
    RECONNECT = "reconnect"


class Effect(str, enum.Enum):
    RENDER_QR = "render_qr"
    START_QR_TIMER = "start_qr_timer"
    CANCEL_QR_TIMER = "cancel_qr_timer"
    CANCEL_TIMERS = "cancel_timers"
    REMOVE_FROM_REGISTRY = "remove_from_registry"
    RELEASE_CLIENT = "release_client"
    NOTIFY_BACKEND = "notify_backend"
    ANSWER_QR = "answer_qr"
    ANSWER_SUCCESS = "answer_success"
    ANSWER_AUTH_ERROR = "answer_auth_error"
    ANSWER_INIT_ERROR = "answer_init_error"
    ANSWER_DISCONNECTED = "answer_disconnected"
    ANSWER_DELETED = "answer_deleted"
    SCHEDULE_RECREATE = "schedule_recreate"
    SCHEDULE_RESUME = "schedule_resume"


QR = "qr"
AUTHENTICATED = "authenticated"
READY = "ready"
AUTH_FAILURE = "auth_failure"
DISCONNECTED = "disconnected"
QR_TIMEOUT = "qr_timeout"
INIT_FAILED = "init_failed"
DELETE = "delete"

LIFECYCLE_EVENTS = frozenset(
    {QR, AUTHENTICATED, READY, AUTH_FAILURE, DISCONNECTED, QR_TIMEOUT, INIT_FAILED, DELETE}
)


@dataclass(frozen=True, slots=True)
class Transition:
    state: SessionState
    effects: Tuple[Effect, ...] = ()
    ignored: bool = False


def _ignore(state: SessionState) -> Transition:
    return Transition(state=state, ignored=True)


_TEARDOWN = (Effect.CANCEL_TIMERS, Effect.REMOVE_FROM_REGISTRY, Effect.RELEASE_CLIENT)


def transition(state: SessionState, event: str, *, mode: CreationMode = CreationMode.INTERACTIVE) -> Transition:
    if event == DELETE:
        if state is SessionState.DESTROYED:
            return _ignore(state)
        return Transition(SessionState.DESTROYED, _TEARDOWN + (Effect.ANSWER_DELETED,))

    if not state.is_live:
        return _ignore(state)

    if event == QR:
        if state is SessionState.INITIALIZING:
            return Transition(
                SessionState.AWAITING_QR_SCAN,
                (Effect.RENDER_QR, Effect.START_QR_TIMER, Effect.ANSWER_QR),
            )
        if state is SessionState.AWAITING_QR_SCAN:
            return Transition(state, (Effect.RENDER_QR,))
        return _ignore(state)

    if event == AUTHENTICATED:
        if state in (SessionState.INITIALIZING, SessionState.AWAITING_QR_SCAN):
            return Transition(SessionState.AUTHENTICATED, (Effect.CANCEL_QR_TIMER,))
        return _ignore(state)

    if event == READY:
        if state is SessionState.READY:
            return _ignore(state)
        return Transition(
            SessionState.READY,
            (Effect.CANCEL_QR_TIMER, Effect.NOTIFY_BACKEND, Effect.ANSWER_SUCCESS),
        )

    if event == QR_TIMEOUT:
        if state is not SessionState.AWAITING_QR_SCAN:
            return _ignore(state)
        return Transition(
            SessionState.DISCONNECTED,
            _TEARDOWN + (Effect.SCHEDULE_RECREATE,),
        )

    if event == AUTH_FAILURE:
        return Transition(
            SessionState.AUTH_FAILED,
            _TEARDOWN + (Effect.ANSWER_AUTH_ERROR, Effect.SCHEDULE_RECREATE),
        )

    if event == DISCONNECTED:
        return Transition(
            SessionState.DISCONNECTED,
            _TEARDOWN + (Effect.ANSWER_DISCONNECTED, Effect.SCHEDULE_RESUME),
        )

    if event == INIT_FAILED:
        retry = Effect.SCHEDULE_RESUME if mode is CreationMode.RESUME else Effect.SCHEDULE_RECREATE
        return Transition(
            SessionState.DISCONNECTED,
            _TEARDOWN + (Effect.ANSWER_INIT_ERROR, retry),
        )

    return _ignore(state)


@dataclass(slots=True)
class RegistrationResult:
    status_code: int
    body: dict[str, Any]


@dataclass(eq=False)
class Session:
    phone: str
    line_id: Optional[str]
    mode: CreationMode
    client: Optional[ChatClient] = None
    state: SessionState = SessionState.INITIALIZING
    qr_data_url: Optional[str] = None
    pending_request: Optional[asyncio.Future[RegistrationResult]] = None
    mailbox: asyncio.Queue[tuple[str, tuple[Any, ...]]] = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task[Any]] = None
    init_task: Optional[asyncio.Task[Any]] = None

    def post(self, event: str, *args: Any) -> None:
        self.mailbox.put_nowait((event, args))

    def answer(self, result: RegistrationResult) -> bool:
        """Fulfill the waiting registration request once; later answers are dropped."""

        future = self.pending_request
        if future is None or future.done():
            return False
        future.set_result(result)
        return True

    @property
    def is_authenticated(self) -> bool:
        return self.state.is_authenticated


__all__ = [
    "AUTHENTICATED",
    "AUTH_FAILURE",
    "CreationMode",
    "DELETE",
    "DISCONNECTED",
    "Effect",
    "INIT_FAILED",
    "LIFECYCLE_EVENTS",
    "QR",
    "QR_TIMEOUT",
    "READY",
    "RegistrationResult",
    "Session",
    "SessionState",
    "Transition",
    "transition",
]

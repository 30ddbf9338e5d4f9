from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional

from .backend import BackendClient, WebhookDispatcher
from .bootstrap import initialize_registered_sessions
from .client import ChatClient, ClientFactory, ClientOptions, InboundMessage
from .logging_config import log_unhandled_loop_errors
from .metrics import (
    EVENT_ERRORS_TOTAL,
    MESSAGES_IN_TOTAL,
    QR_CHALLENGES_TOTAL,
    QR_TIMEOUTS_TOTAL,
    RECOVERY_SCHEDULED_TOTAL,
    SESSIONS_BY_STATE,
)
from .normalizer import MessageNormalizer
from .qr import qr_data_url
from .registry import SessionRegistry
from .sender import OutboundSender, SendResult
from .session import (
    AUTH_FAILURE,
    AUTHENTICATED,
    DELETE,
    DISCONNECTED,
    INIT_FAILED,
    QR,
    QR_TIMEOUT,
    READY,
    CreationMode,
    Effect,
    RegistrationResult,
    Session,
    SessionState,
    transition,
)
from .storage import SessionStorage, sanitize_phone
from .timers import TimerService


LOGGER = logging.getLogger("wagateway")


QR_SCAN_TIMEOUT = 30.0
RETRY_DELAY = 30.0
REGISTER_TIMEOUT = 60.0
SHUTDOWN_DRAIN_TIMEOUT = 5.0

MESSAGE = "message"
_STOP = "stop"

_QR_TIMER = "qr"
_RECOVERY_TIMER = "recovery"

_CLIENT_LIFECYCLE_EVENTS = (QR, AUTHENTICATED, READY, AUTH_FAILURE, DISCONNECTED)

AUTH_SUCCESS_MESSAGE = "WhatsApp authenticated successfully"


def _error(status_code: int, message: str) -> RegistrationResult:
    return RegistrationResult(status_code, {"status": "error", "message": message})


class SessionManager:
    """Own every phone session: creation, lifecycle effects, recovery and teardown.

    Each session gets a mailbox and one worker task. Client listeners only
    enqueue into the mailbox, so events of one phone are handled strictly in
    emission order while different phones never wait on each other.
    Lifecycle handling runs under the phone's registry lock; inbound
    messages do not take the lock.
    """

    def __init__(
        self,
        storage: SessionStorage,
        backend: BackendClient,
        client_factory: ClientFactory,
        *,
        registry: Optional[SessionRegistry] = None,
        timers: Optional[TimerService] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        normalizer: Optional[MessageNormalizer] = None,
        qr_timeout: float = QR_SCAN_TIMEOUT,
        retry_delay: float = RETRY_DELAY,
        register_timeout: float = REGISTER_TIMEOUT,
        bootstrap_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.storage = storage
        self.backend = backend
        self.registry = registry or SessionRegistry()
        self.timers = timers or TimerService()
        self.dispatcher = dispatcher or WebhookDispatcher(backend)
        self.normalizer = normalizer or MessageNormalizer(storage.files_dir)
        self.sender = OutboundSender(self.registry, self.request_reconnect)
        self._client_factory = client_factory
        self._qr_timeout = qr_timeout
        self._retry_delay = retry_delay
        self._register_timeout = register_timeout
        self._bootstrap_options = dict(bootstrap_options or {})
        self._line_ids: Dict[str, Optional[str]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._bootstrap_task: Optional[asyncio.Task[Any]] = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(log_unhandled_loop_errors)
        await asyncio.to_thread(self.storage.ensure_roots)
        self._bootstrap_task = loop.create_task(
            initialize_registered_sessions(self, self.backend, **self._bootstrap_options),
            name="wagateway-bootstrap",
        )
        LOGGER.info("stage=manager_started base_url=%s", self.backend.base_url)

    async def shutdown(self) -> None:
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._bootstrap_task
        await self.timers.shutdown()

        to_release: list[tuple[Session, ChatClient]] = []
        workers: list[asyncio.Task[Any]] = []
        for session in self.registry:
            async with self.registry.lock(session.phone):
                session.state = SessionState.DESTROYED
                self.registry.remove(session.phone, session)
                client = self._detach_client(session)
                if client is not None:
                    to_release.append((session, client))
                if session.worker is not None:
                    workers.append(session.worker)
        for session, client in to_release:
            await self._release_client(session, client)
        if workers:
            _, stuck = await asyncio.wait(workers, timeout=SHUTDOWN_DRAIN_TIMEOUT)
            for task in stuck:
                task.cancel()

        await self.dispatcher.drain(SHUTDOWN_DRAIN_TIMEOUT)
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.backend.aclose()
        self._refresh_gauge()
        LOGGER.info("stage=manager_stopped")

    # ------------------------------------------------------------------
    # control operations

    async def register(
        self,
        phone: str,
        line_id: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> RegistrationResult:
        """Start an interactive pairing and wait for its first outcome."""

        key = sanitize_phone(phone)
        if not key:
            return _error(400, "phone is required")
        loop = asyncio.get_running_loop()
        async with self.registry.lock(key):
            if line_id:
                self._line_ids[key] = line_id
            line_id = self._line_ids.get(key)
            connected = RegistrationResult(
                200, {"status": "connected", "phone": key, "lineId": line_id}
            )
            if key in self.registry:
                LOGGER.info("stage=register_connected phone=%s reason=session_exists", key)
                return connected
            if self.timers.pending(key) == _RECOVERY_TIMER:
                LOGGER.info("stage=register_connected phone=%s reason=recovery_pending", key)
                return connected
            if await asyncio.to_thread(self.storage.has_credentials, key):
                LOGGER.info("stage=register_connected phone=%s reason=credentials_present", key)
                self._start_locked(key, line_id, CreationMode.RESUME)
                return connected
            future: asyncio.Future[RegistrationResult] = loop.create_future()
            self._start_locked(key, line_id, CreationMode.INTERACTIVE, pending_request=future)

        wait_for = self._register_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(future), wait_for)
        except asyncio.TimeoutError:
            future.cancel()
            LOGGER.warning("stage=register_timeout phone=%s timeout=%.0fs", key, wait_for)
            return _error(504, "Timed out waiting for WhatsApp client")

    async def resume_session(self, phone: str, line_id: Optional[str] = None) -> bool:
        key = sanitize_phone(phone)
        async with self.registry.lock(key):
            if key in self.registry:
                return False
            if line_id:
                self._line_ids[key] = line_id
            self._start_locked(key, self._line_ids.get(key), CreationMode.RESUME)
            return True

    async def delete_session(self, phone: str, *, purge: bool = True) -> bool:
        """Tear down the phone's session and wipe its stored data. Idempotent."""

        key = sanitize_phone(phone)
        client: Optional[ChatClient] = None
        async with self.registry.lock(key):
            self.timers.cancel(key)
            self._line_ids.pop(key, None)
            session = self.registry.get(key)
            if session is not None:
                client = await self._apply(session, DELETE, ())
        if session is not None and client is not None:
            await self._release_client(session, client)
        if purge:
            await self.storage.purge(key)
        self._refresh_gauge()
        LOGGER.info("stage=session_deleted phone=%s existed=%s purge=%s", key, session is not None, purge)
        return session is not None

    def status(self, phone: str) -> Dict[str, Any]:
        key = sanitize_phone(phone)
        session = self.registry.get(key)
        authenticated = bool(session is not None and session.is_authenticated)
        return {
            "status": "connected" if authenticated else "disconnected",
            "phone": key,
            "isAuthenticated": authenticated,
        }

    async def send(
        self,
        from_phone: str,
        to: str,
        message: str,
        *,
        content_type: str = "text",
        file_path: Optional[str] = None,
    ) -> SendResult:
        return await self.sender.send(
            from_phone, to, message, content_type=content_type, file_path=file_path
        )

    def request_reconnect(self, phone: str) -> None:
        """Schedule a re-creation for a phone nobody is currently recovering."""

        key = sanitize_phone(phone)
        if not key or key in self.registry or self.timers.pending(key) is not None:
            return
        self._schedule_recovery(
            key, self._line_ids.get(key), CreationMode.RECONNECT, reason="send_not_connected"
        )

    def stats_snapshot(self) -> dict[str, int]:
        return self.registry.state_counts()

    # ------------------------------------------------------------------
    # session creation

    def _start_locked(
        self,
        phone: str,
        line_id: Optional[str],
        mode: CreationMode,
        *,
        pending_request: Optional[asyncio.Future[RegistrationResult]] = None,
    ) -> Session:
        loop = asyncio.get_running_loop()
        session = Session(phone=phone, line_id=line_id, mode=mode, pending_request=pending_request)
        self.registry.put(phone, session)
        session.worker = loop.create_task(self._run_worker(session), name=f"wagateway-session-{phone}")
        LOGGER.info("stage=session_create phone=%s line_id=%s mode=%s", phone, line_id, mode.value)

        options = ClientOptions(
            client_id=phone,
            auth_dir=self.storage.credential_dir(phone),
            cache_dir=self.storage.session_cache_dir(phone),
        )
        try:
            client = self._client_factory(options)
        except Exception as exc:
            LOGGER.error("stage=client_create_failed phone=%s error=%s", phone, exc)
            EVENT_ERRORS_TOTAL.labels("client_create").inc()
            self._post(session, INIT_FAILED, str(exc))
            self._refresh_gauge()
            return session

        session.client = client
        for event in _CLIENT_LIFECYCLE_EVENTS:
            client.on(event, self._listener(session, event))
        client.on(MESSAGE, self._listener(session, MESSAGE))
        session.init_task = loop.create_task(self._initialize_client(session, client))
        self._refresh_gauge()
        return session

    def _listener(self, session: Session, event: str):
        def _enqueue(*args: Any) -> None:
            self._post(session, event, *args)

        return _enqueue

    def _post(self, session: Session, event: str, *args: Any) -> None:
        if session.worker is None or session.worker.done():
            LOGGER.debug("stage=event_dropped phone=%s event=%s reason=worker_stopped", session.phone, event)
            return
        session.post(event, *args)

    async def _initialize_client(self, session: Session, client: ChatClient) -> None:
        try:
            await client.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.error("stage=client_init_failed phone=%s error=%s", session.phone, exc)
            EVENT_ERRORS_TOTAL.labels("client_init").inc()
            self._post(session, INIT_FAILED, str(exc))

    # ------------------------------------------------------------------
    # event handling

    async def _run_worker(self, session: Session) -> None:
        while session.state.is_live or not session.mailbox.empty():
            event, args = await session.mailbox.get()
            try:
                if event == _STOP:
                    continue
                if event == MESSAGE:
                    await self._handle_message(session, *args)
                else:
                    await self._handle_lifecycle(session, event, args)
            except asyncio.CancelledError:
                raise
            except Exception:
                EVENT_ERRORS_TOTAL.labels(event).inc()
                LOGGER.exception("stage=event_failed phone=%s event=%s", session.phone, event)
            finally:
                session.mailbox.task_done()
        LOGGER.debug("stage=worker_stopped phone=%s state=%s", session.phone, session.state.value)

    async def _handle_lifecycle(self, session: Session, event: str, args: tuple[Any, ...]) -> None:
        async with self.registry.lock(session.phone):
            client = await self._apply(session, event, args)
        if client is not None:
            await self._release_client(session, client)
        self._refresh_gauge()

    async def _apply(self, session: Session, event: str, args: tuple[Any, ...]) -> Optional[ChatClient]:
        """Run one transition under the phone lock; return a client to release afterwards."""

        result = transition(session.state, event, mode=session.mode)
        if result.ignored:
            LOGGER.debug(
                "stage=event_ignored phone=%s event=%s state=%s",
                session.phone,
                event,
                session.state.value,
            )
            return None
        if result.state is not session.state:
            LOGGER.info(
                "stage=state_transition phone=%s from=%s to=%s event=%s",
                session.phone,
                session.state.value,
                result.state.value,
                event,
            )
        session.state = result.state

        released: Optional[ChatClient] = None
        for effect in result.effects:
            if effect is Effect.RENDER_QR:
                QR_CHALLENGES_TOTAL.inc()
                session.qr_data_url = await asyncio.to_thread(qr_data_url, str(args[0]))
                LOGGER.info("stage=qr_rendered phone=%s", session.phone)
            elif effect is Effect.START_QR_TIMER:
                self.timers.schedule(
                    session.phone,
                    self._qr_timeout,
                    lambda: self._on_qr_timeout(session),
                    kind=_QR_TIMER,
                )
            elif effect is Effect.CANCEL_QR_TIMER:
                self.timers.cancel(session.phone, kind=_QR_TIMER)
            elif effect is Effect.CANCEL_TIMERS:
                self.timers.cancel(session.phone)
            elif effect is Effect.REMOVE_FROM_REGISTRY:
                self.registry.remove(session.phone, session)
            elif effect is Effect.RELEASE_CLIENT:
                released = self._detach_client(session)
            elif effect is Effect.NOTIFY_BACKEND:
                self._spawn(self.backend.notify_auth_success(session.phone, session.line_id))
            elif effect is Effect.ANSWER_QR:
                session.answer(
                    RegistrationResult(
                        200, {"status": "qr", "qr": session.qr_data_url, "phone": session.phone}
                    )
                )
            elif effect is Effect.ANSWER_SUCCESS:
                LOGGER.info("stage=auth_success phone=%s line_id=%s", session.phone, session.line_id)
                session.answer(
                    RegistrationResult(
                        200,
                        {
                            "status": "success",
                            "message": AUTH_SUCCESS_MESSAGE,
                            "phone": session.phone,
                            "lineId": session.line_id,
                        },
                    )
                )
            elif effect is Effect.ANSWER_AUTH_ERROR:
                reason = str(args[0]) if args else "unknown"
                LOGGER.error("stage=auth_failure phone=%s reason=%s", session.phone, reason)
                session.answer(_error(401, f"Authentication failed: {reason}"))
            elif effect is Effect.ANSWER_INIT_ERROR:
                session.answer(_error(503, "Failed to initialize WhatsApp client"))
            elif effect is Effect.ANSWER_DISCONNECTED:
                reason = str(args[0]) if args else "unknown"
                LOGGER.warning("stage=disconnected phone=%s reason=%s", session.phone, reason)
                session.answer(_error(503, f"Client disconnected: {reason}"))
            elif effect is Effect.ANSWER_DELETED:
                session.answer(_error(410, "Session was deleted"))
            elif effect is Effect.SCHEDULE_RECREATE:
                self._schedule_recovery(session.phone, session.line_id, CreationMode.RECONNECT, reason=event)
            elif effect is Effect.SCHEDULE_RESUME:
                self._schedule_recovery(session.phone, session.line_id, CreationMode.RESUME, reason=event)
        return released

    async def _handle_message(self, session: Session, message: InboundMessage) -> None:
        client = session.client
        if client is None or not session.state.is_live:
            return
        normalized = await self.normalizer.normalize(message, session.phone, client)
        if normalized is None:
            return
        MESSAGES_IN_TOTAL.labels(normalized.type).inc()
        LOGGER.info(
            "stage=message_in phone=%s from=%s type=%s message_id=%s",
            session.phone,
            normalized.from_phone,
            normalized.type,
            normalized.id,
        )
        self.dispatcher.submit(normalized.to_payload(), phone=session.phone)

    async def _on_qr_timeout(self, session: Session) -> None:
        if not self.registry.is_current(session):
            return
        QR_TIMEOUTS_TOTAL.inc()
        LOGGER.warning("stage=qr_timeout phone=%s timeout=%.0fs", session.phone, self._qr_timeout)
        self._post(session, QR_TIMEOUT)

    # ------------------------------------------------------------------
    # recovery and teardown

    def _schedule_recovery(
        self,
        phone: str,
        line_id: Optional[str],
        mode: CreationMode,
        *,
        reason: str,
    ) -> None:
        RECOVERY_SCHEDULED_TOTAL.labels(reason).inc()
        LOGGER.info(
            "stage=recovery_scheduled phone=%s mode=%s reason=%s delay=%.0fs",
            phone,
            mode.value,
            reason,
            self._retry_delay,
        )

        async def _recover() -> None:
            await self._recover(phone, line_id, mode)

        self.timers.schedule(phone, self._retry_delay, _recover, kind=_RECOVERY_TIMER)

    async def _recover(self, phone: str, line_id: Optional[str], mode: CreationMode) -> None:
        async with self.registry.lock(phone):
            if phone in self.registry:
                LOGGER.info("stage=recovery_skipped phone=%s reason=session_exists", phone)
                return
            if mode is CreationMode.RESUME and not await asyncio.to_thread(
                self.storage.has_credentials, phone
            ):
                LOGGER.warning("stage=recovery_skipped phone=%s reason=no_credentials", phone)
                self._line_ids.pop(phone, None)
                return
            self._start_locked(phone, self._line_ids.get(phone, line_id), mode)

    def _detach_client(self, session: Session) -> Optional[ChatClient]:
        client = session.client
        session.client = None
        worker = session.worker
        if worker is not None and worker is not asyncio.current_task() and not worker.done():
            session.post(_STOP)
        return client

    async def _release_client(self, session: Session, client: ChatClient) -> None:
        init_task = session.init_task
        if init_task is not None and not init_task.done():
            init_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await init_task
        try:
            await client.destroy()
        except Exception as exc:
            LOGGER.warning("stage=client_destroy_failed phone=%s error=%s", session.phone, exc)
        else:
            LOGGER.info("stage=client_destroyed phone=%s", session.phone)

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _refresh_gauge(self) -> None:
        counts = self.registry.state_counts()
        for state in SessionState:
            SESSIONS_BY_STATE.labels(state.value).set(counts.get(state.value, 0))


__all__ = [
    "AUTH_SUCCESS_MESSAGE",
    "QR_SCAN_TIMEOUT",
    "REGISTER_TIMEOUT",
    "RETRY_DELAY",
    "SessionManager",
]

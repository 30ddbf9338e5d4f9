from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Dict, Iterator, Optional

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .session import Session


class SessionExistsError(Exception):
    """Raised when a live session is already registered for the phone."""

    def __init__(self, phone: str) -> None:
        super().__init__(f"session_exists:{phone}")
        self.phone = phone


@dataclass(slots=True)
class _PhoneLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionRegistry:
    """Phone → live session map with one lock per phone.

    Callers hold ``lock(phone)`` around any check-then-act sequence; the map
    itself never blocks. A phone's lock is dropped once nobody holds or
    waits for it and the phone has no session.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, "Session"] = {}
        self._locks: Dict[str, _PhoneLock] = {}

    @contextlib.asynccontextmanager
    async def lock(self, phone: str) -> AsyncIterator[None]:
        entry = self._locks.get(phone)
        if entry is None:
            entry = _PhoneLock()
            self._locks[phone] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and phone not in self._sessions and self._locks.get(phone) is entry:
                del self._locks[phone]

    @property
    def tracked_locks(self) -> int:
        return len(self._locks)

    def put(self, phone: str, session: "Session") -> None:
        if phone in self._sessions:
            raise SessionExistsError(phone)
        self._sessions[phone] = session

    def get(self, phone: str) -> Optional["Session"]:
        return self._sessions.get(phone)

    def remove(self, phone: str, session: Optional["Session"] = None) -> bool:
        """Drop the entry; with ``session`` given, only if it is still the registered one."""

        current = self._sessions.get(phone)
        if current is None:
            return False
        if session is not None and current is not session:
            return False
        del self._sessions[phone]
        return True

    def is_current(self, session: "Session") -> bool:
        return self._sessions.get(session.phone) is session

    def __contains__(self, phone: object) -> bool:
        return phone in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator["Session"]:
        return iter(list(self._sessions.values()))

    def state_counts(self) -> dict[str, int]:
        return dict(Counter(session.state.value for session in self._sessions.values()))


__all__ = ["SessionExistsError", "SessionRegistry"]

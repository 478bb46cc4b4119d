"""Abstract contracts for the auth and record-store backends."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .models import AuthEvent, Filter, Session

SessionCallback = Callable[[AuthEvent, Optional[Session]], None]

ENTRIES_TABLE = "diary_entries"
PROFILES_TABLE = "profiles"


class BackendError(Exception):
    """Raised when a backend rejects or fails to complete a request."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class Subscription:
    """Handle for a registered session-change callback."""

    def __init__(self, channel: "SessionChannel", token: int) -> None:
        self._channel = channel
        self._token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._release(self._token)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class SessionChannel:
    """Fan-out of session transitions to registered callbacks.

    Callbacks are invoked outside the internal lock, in registration order,
    exactly once per published transition.
    """

    def __init__(self) -> None:
        self._callbacks: Dict[int, SessionCallback] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: SessionCallback) -> Subscription:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._callbacks[token] = callback
        return Subscription(self, token)

    def publish(self, event: AuthEvent, session: Optional[Session]) -> None:
        with self._lock:
            callbacks = list(self._callbacks.values())
        for callback in callbacks:
            callback(event, session)

    def _release(self, token: int) -> None:
        with self._lock:
            self._callbacks.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)


class AuthBackend(Protocol):
    def sign_in(self, email: str, password: str) -> Session:
        ...

    def sign_up(self, email: str, password: str) -> Optional[Session]:
        ...

    def sign_out(self) -> None:
        ...

    def refresh_session(self) -> Session:
        ...

    def current_session(self) -> Optional[Session]:
        ...

    def on_session_change(self, callback: SessionCallback) -> Subscription:
        ...


class RecordStore(Protocol):
    def select(self, table: str, filters: Sequence[Filter] = ()) -> List[Dict[str, Any]]:
        ...

    def insert(self, table: str, record: Mapping[str, Any]) -> None:
        ...

    def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> None:
        ...

    def delete(self, table: str, record_id: str) -> None:
        ...


__all__ = [
    "AuthBackend",
    "BackendError",
    "ENTRIES_TABLE",
    "PROFILES_TABLE",
    "RecordStore",
    "SessionCallback",
    "SessionChannel",
    "Subscription",
]

"""Per-client composition of the session manager and entry gateway."""

from __future__ import annotations

import logging
import threading
from datetime import date, timezone, tzinfo
from typing import Dict, List, Optional

from .authorization import resolve_is_admin
from .backend import PROFILES_TABLE, AuthBackend, BackendError, RecordStore, Subscription
from .config import CredentialDirectory
from .entries import EntryStoreGateway, StoreError
from .models import AuthEvent, Entry, Session
from .sessions import AuthSessionManager

logger = logging.getLogger("diary.client")


class DiaryClient:
    """View state and user-facing operations for one signed-in browser.

    Session transitions drive the state: entering a session resolves the
    admin role and loads today's entries, leaving it clears everything.
    Failures raised while reacting to a transition are queued and handed to
    the presentation layer through :meth:`drain_errors`.
    """

    def __init__(
        self,
        directory: CredentialDirectory,
        auth_backend: AuthBackend,
        store: RecordStore,
        *,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._auth_backend = auth_backend
        self._store = store
        self._lock = threading.Lock()
        self._authors: Dict[str, str] = {}
        self._errors: List[StoreError] = []
        self.sessions = AuthSessionManager(directory, auth_backend)
        self.gateway = EntryStoreGateway(store, self.sessions, tz=tz)
        self._subscription: Optional[Subscription] = self.sessions.subscribe(self._on_session_change)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def session(self) -> Optional[Session]:
        return self.sessions.session

    @property
    def is_authenticated(self) -> bool:
        return self.sessions.is_authenticated

    @property
    def is_admin(self) -> bool:
        return self.gateway.is_admin

    @property
    def selected_day(self) -> date:
        return self.gateway.selected_day

    @property
    def entries(self) -> List[Entry]:
        return self.gateway.entries

    def author_of(self, entry: Entry) -> Optional[str]:
        with self._lock:
            return self._authors.get(entry.user_id)

    def can_modify(self, entry: Entry) -> bool:
        return self.gateway.can_modify(entry)

    def drain_errors(self) -> List[StoreError]:
        with self._lock:
            errors, self._errors = self._errors, []
        return errors + self.gateway.drain_errors()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def bootstrap(self) -> Optional[Session]:
        return self.sessions.bootstrap()

    def login(self, username: str, password: str) -> None:
        self.sessions.login(username, password)

    def logout(self) -> None:
        self.sessions.logout()

    def select_day(self, day: date) -> List[Entry]:
        return self.gateway.list_for_day(day)

    def create_entry(self, content: str) -> None:
        self.gateway.create(content)

    def update_entry(self, entry_id: str, content: str) -> None:
        self.gateway.update(entry_id, content)

    def delete_entry(self, entry_id: str) -> None:
        self.gateway.delete(entry_id)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self.sessions.close()
        close_backend = getattr(self._auth_backend, "close", None)
        if callable(close_backend):
            close_backend()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _on_session_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        if session is None:
            self.gateway.clear()
            with self._lock:
                self._authors = {}
            return
        if event not in (AuthEvent.INITIAL_SESSION, AuthEvent.SIGNED_IN):
            return

        self.gateway.is_admin = resolve_is_admin(self._store, session.user_id)
        self._load_authors(session)
        try:
            self.gateway.list_for_day(self.gateway.today())
        except StoreError as exc:
            with self._lock:
                self._errors.append(exc)

    def _load_authors(self, session: Session) -> None:
        authors = {session.user_id: session.email}
        try:
            rows = self._store.select(PROFILES_TABLE)
        except BackendError as exc:
            logger.warning("Could not load author profiles: %s", exc.message)
            rows = []
        for row in rows:
            email = row.get("email")
            if row.get("id") and email:
                authors[str(row["id"])] = str(email)
        with self._lock:
            self._authors = authors


__all__ = ["DiaryClient"]

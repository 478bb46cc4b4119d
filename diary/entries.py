"""Day-scoped access to diary entries for the signed-in client."""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, time, timezone, tzinfo
from typing import List, Optional, Tuple

from .backend import ENTRIES_TABLE, BackendError, RecordStore
from .models import Entry, Session, eq, gte, lte
from .sessions import AuthSessionManager

logger = logging.getLogger("diary.entries")


class SessionRequired(RuntimeError):
    """An entry operation was attempted without an authenticated session."""


class ValidationError(Exception):
    title = "Error"

    def __init__(self, message: str = "Entry cannot be empty") -> None:
        super().__init__(message)
        self.message = message


class StoreError(Exception):
    """The record store rejected or failed a data operation."""

    def __init__(self, message: str, *, title: str = "Error") -> None:
        super().__init__(message)
        self.message = message
        self.title = title


class PermissionDenied(StoreError):
    """The caller neither owns the entry nor holds the admin role."""


def day_bounds(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return the inclusive UTC range covering ``day`` in timezone ``tz``."""

    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class EntryStoreGateway:
    """List, create, update and delete entries for the selected day.

    Every successful mutation re-lists the selected day in full; ``entries``
    always reflects the most recent listing. A failed re-list after a
    committed write does not fail the write: the error is queued for
    :meth:`drain_errors`.
    """

    def __init__(
        self,
        store: RecordStore,
        sessions: AuthSessionManager,
        *,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._tz = tz
        self._lock = threading.RLock()
        self._selected_day = self.today()
        self._entries: List[Entry] = []
        self._errors: List[StoreError] = []
        self.is_admin = False

    @property
    def tz(self) -> tzinfo:
        return self._tz

    @property
    def selected_day(self) -> date:
        return self._selected_day

    @property
    def entries(self) -> List[Entry]:
        with self._lock:
            return list(self._entries)

    def today(self) -> date:
        return datetime.now(self._tz).date()

    def list_for_day(self, day: date) -> List[Entry]:
        self._require_session()
        start, end = day_bounds(day, self._tz)
        with self._lock:
            self._selected_day = day
            try:
                rows = self._store.select(
                    ENTRIES_TABLE,
                    [gte("created_at", start), lte("created_at", end)],
                )
            except BackendError as exc:
                logger.warning("Failed to load entries for %s: %s", day.isoformat(), exc.message)
                raise StoreError(exc.message, title="Error loading entries") from exc

            entries = [Entry.from_record(row) for row in rows]
            entries.sort(key=lambda entry: (entry.created_at, entry.id))
            self._entries = entries
            return list(entries)

    def refresh(self) -> List[Entry]:
        return self.list_for_day(self._selected_day)

    def create(self, content: str) -> None:
        session = self._require_session()
        if not content.strip():
            raise ValidationError()
        try:
            self._store.insert(ENTRIES_TABLE, {"content": content, "user_id": session.user_id})
        except BackendError as exc:
            logger.warning("Failed to save entry for %s: %s", session.user_id, exc.message)
            raise StoreError(exc.message, title="Error saving entry") from exc
        self._refresh_after_write()

    def update(self, entry_id: str, content: str) -> None:
        self._require_session()
        if not content.strip():
            raise ValidationError()
        self._check_can_modify(entry_id, title="Error updating entry")
        try:
            self._store.update(ENTRIES_TABLE, entry_id, {"content": content})
        except BackendError as exc:
            logger.warning("Failed to update entry %s: %s", entry_id, exc.message)
            raise StoreError(exc.message, title="Error updating entry") from exc
        self._refresh_after_write()

    def delete(self, entry_id: str) -> None:
        self._require_session()
        self._check_can_modify(entry_id, title="Error deleting entry")
        try:
            self._store.delete(ENTRIES_TABLE, entry_id)
        except BackendError as exc:
            logger.warning("Failed to delete entry %s: %s", entry_id, exc.message)
            raise StoreError(exc.message, title="Error deleting entry") from exc
        self._refresh_after_write()

    def drain_errors(self) -> List[StoreError]:
        with self._lock:
            errors, self._errors = self._errors, []
        return errors

    def can_modify(self, entry: Entry) -> bool:
        session = self._sessions.session
        if session is None:
            return False
        return self.is_admin or entry.user_id == session.user_id

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self.is_admin = False

    def _refresh_after_write(self) -> None:
        try:
            self.refresh()
        except StoreError as exc:
            with self._lock:
                self._errors.append(exc)

    def _require_session(self) -> Session:
        session = self._sessions.session
        if session is None:
            raise SessionRequired("An authenticated session is required for entry operations")
        return session

    def _find_entry(self, entry_id: str) -> Optional[Entry]:
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    return entry
        try:
            rows = self._store.select(ENTRIES_TABLE, [eq("id", entry_id)])
        except BackendError as exc:
            raise StoreError(exc.message, title="Error loading entries") from exc
        return Entry.from_record(rows[0]) if rows else None

    def _check_can_modify(self, entry_id: str, *, title: str) -> None:
        entry = self._find_entry(entry_id)
        if entry is None:
            raise StoreError("Entry not found", title=title)
        if not self.can_modify(entry):
            raise PermissionDenied("You can only modify your own entries", title=title)


__all__ = [
    "EntryStoreGateway",
    "PermissionDenied",
    "SessionRequired",
    "StoreError",
    "ValidationError",
    "day_bounds",
]

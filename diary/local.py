"""Auth backend and record store served from the local SQLite database."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .backend import ENTRIES_TABLE, PROFILES_TABLE, BackendError, SessionCallback, SessionChannel, Subscription
from .database import Database
from .models import AuthEvent, Filter, Session

logger = logging.getLogger("diary.local")

_RLS_VIOLATION = 'new row violates row-level security policy for table "{table}"'


class LocalAuthBackend:
    """Auth backend for one client, persisting its session in SQLite.

    The session survives process restarts because it is keyed by the client
    id rather than held in memory.
    """

    def __init__(
        self,
        database: Database,
        client_id: str,
        *,
        ttl: timedelta = timedelta(hours=1),
    ) -> None:
        if not client_id:
            raise ValueError("Client id must not be empty")
        self._database = database
        self._client_id = client_id
        self._ttl = ttl
        self._channel = SessionChannel()
        self._lock = threading.Lock()

    @property
    def client_id(self) -> str:
        return self._client_id

    def sign_in(self, email: str, password: str) -> Session:
        user_id = self._database.authenticate_account(email, password)
        if user_id is None:
            raise BackendError("Invalid login credentials", status=400)
        with self._lock:
            session = self._database.create_session(self._client_id, user_id, self._ttl)
        self._channel.publish(AuthEvent.SIGNED_IN, session)
        return session

    def sign_up(self, email: str, password: str) -> Optional[Session]:
        # Registration does not sign the client in; callers follow up with sign_in.
        self._database.create_account(email, password)
        logger.info("Registered account for %s", email)
        return None

    def sign_out(self) -> None:
        with self._lock:
            removed = self._database.delete_session(self._client_id)
        if removed:
            self._channel.publish(AuthEvent.SIGNED_OUT, None)

    def refresh_session(self) -> Session:
        with self._lock:
            current = self._database.get_session(self._client_id)
            if current is None:
                raise BackendError("Auth session missing!", status=401)
            session = self._database.rotate_session(self._client_id, current.refresh_token, self._ttl)
        if session is None:
            raise BackendError("Invalid Refresh Token: Refresh Token Not Found", status=400)
        self._channel.publish(AuthEvent.TOKEN_REFRESHED, session)
        return session

    def current_session(self) -> Optional[Session]:
        with self._lock:
            session = self._database.get_session(self._client_id)
            if session is None:
                return None
            if not session.is_expired():
                return session
            self._database.delete_session(self._client_id)
        logger.info("Session for client %s expired", self._client_id)
        self._channel.publish(AuthEvent.SIGNED_OUT, None)
        return None

    def on_session_change(self, callback: SessionCallback) -> Subscription:
        return self._channel.subscribe(callback)


class LocalRecordStore:
    """Record store enforcing per-row access rules for the signed-in client."""

    def __init__(self, database: Database, auth: LocalAuthBackend) -> None:
        self._database = database
        self._auth = auth

    def select(self, table: str, filters: Sequence[Filter] = ()) -> List[Dict[str, Any]]:
        session = self._require_session()
        rows = self._database.select_rows(table, filters)
        if self._is_admin(session.user_id):
            return rows
        if table == ENTRIES_TABLE:
            return [row for row in rows if row["user_id"] == session.user_id]
        if table == PROFILES_TABLE:
            return [row for row in rows if row["id"] == session.user_id]
        return rows

    def insert(self, table: str, record: Mapping[str, Any]) -> None:
        session = self._require_session()
        if table != ENTRIES_TABLE or record.get("user_id") != session.user_id:
            raise BackendError(_RLS_VIOLATION.format(table=table), status=403)
        self._database.insert_row(table, record)

    def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> None:
        session = self._require_session()
        self._check_mutation(table, record_id, session)
        if "user_id" in fields or "id" in fields:
            raise BackendError(_RLS_VIOLATION.format(table=table), status=403)
        self._database.update_row(table, record_id, fields)

    def delete(self, table: str, record_id: str) -> None:
        session = self._require_session()
        self._check_mutation(table, record_id, session)
        self._database.delete_row(table, record_id)

    def _require_session(self) -> Session:
        session = self._auth.current_session()
        if session is None:
            raise BackendError("JWT expired", status=401)
        return session

    def _is_admin(self, user_id: str) -> bool:
        profile = self._database.get_row(PROFILES_TABLE, user_id)
        return bool(profile and profile["is_admin"])

    def _check_mutation(self, table: str, record_id: str, session: Session) -> None:
        if table != ENTRIES_TABLE:
            raise BackendError(f'permission denied for table "{table}"', status=403)
        row = self._database.get_row(table, record_id)
        if row is None:
            raise BackendError(f"Entry {record_id} not found", status=404)
        if row["user_id"] != session.user_id and not self._is_admin(session.user_id):
            logger.warning(
                "Rejected %s mutation of entry %s by user %s",
                table,
                record_id,
                session.user_id,
            )
            raise BackendError(_RLS_VIOLATION.format(table=table), status=403)


__all__ = ["LocalAuthBackend", "LocalRecordStore"]

"""Construction and bookkeeping of per-browser diary clients."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .client import DiaryClient
from .config import CredentialDirectory, resolve_session_ttl
from .database import Database, resolve_database_path
from .local import LocalAuthBackend, LocalRecordStore
from .remote import RemoteBackend

logger = logging.getLogger("diary.service")

ClientFactory = Callable[[str], DiaryClient]


def local_client_factory(
    database: Database,
    directory: CredentialDirectory,
    *,
    tz: tzinfo = timezone.utc,
    ttl: timedelta = timedelta(hours=1),
) -> ClientFactory:
    """Build clients backed by the bundled SQLite database."""

    def factory(client_id: str) -> DiaryClient:
        auth = LocalAuthBackend(database, client_id, ttl=ttl)
        store = LocalRecordStore(database, auth)
        return DiaryClient(directory, auth, store, tz=tz)

    return factory


def remote_client_factory(
    base_url: str,
    api_key: str,
    directory: CredentialDirectory,
    *,
    session_dir: Optional[Path] = None,
    tz: tzinfo = timezone.utc,
    timeout: float = 30.0,
) -> ClientFactory:
    """Build clients talking to a hosted backend over HTTP."""

    def factory(client_id: str) -> DiaryClient:
        session_file = session_dir / f"{client_id}.json" if session_dir is not None else None
        backend = RemoteBackend(base_url, api_key, session_file=session_file, timeout=timeout)
        return DiaryClient(directory, backend, backend, tz=tz)

    return factory


def client_factory_from_env(directory: CredentialDirectory, *, tz: tzinfo) -> ClientFactory:
    """Select the backend named by ``DIARY_BACKEND`` (``local`` or ``remote``)."""

    kind = (os.getenv("DIARY_BACKEND") or "local").strip().lower()
    if kind == "local":
        database = Database(resolve_database_path(os.getenv("DIARY_DB_PATH")))
        database.initialize()
        return local_client_factory(
            database,
            directory,
            tz=tz,
            ttl=resolve_session_ttl(os.getenv("DIARY_SESSION_TTL")),
        )
    if kind == "remote":
        base_url = os.getenv("DIARY_REMOTE_URL")
        api_key = os.getenv("DIARY_REMOTE_API_KEY")
        if not base_url or not api_key:
            raise RuntimeError("DIARY_REMOTE_URL and DIARY_REMOTE_API_KEY must be set for the remote backend")
        session_dir = resolve_database_path(os.getenv("DIARY_DB_PATH")).parent / "sessions"
        return remote_client_factory(base_url, api_key, directory, session_dir=session_dir, tz=tz)
    raise RuntimeError(f"Unknown DIARY_BACKEND '{kind}'")


@dataclass
class _ClientRecord:
    client: DiaryClient
    expires_at: datetime


class ClientRegistry:
    """Map opaque browser client ids to live :class:`DiaryClient` instances.

    Clients idle for longer than ``idle_ttl`` are closed and forgotten; the
    next request for their id builds a fresh client that resumes the
    persisted session.
    """

    def __init__(self, factory: ClientFactory, *, idle_ttl: timedelta = timedelta(minutes=30)) -> None:
        self._factory = factory
        self._idle_ttl = idle_ttl
        self._clients: Dict[str, _ClientRecord] = {}
        self._lock = threading.Lock()

    @property
    def idle_ttl(self) -> timedelta:
        return self._idle_ttl

    def get(self, client_id: str) -> DiaryClient:
        """Return the client for ``client_id``, bootstrapping it on first use."""

        now = self._now()
        with self._lock:
            expired = self._pop_expired(now)
            record = self._clients.get(client_id)
            if record is None:
                client = self._factory(client_id)
                client.bootstrap()
                record = _ClientRecord(client=client, expires_at=now)
                self._clients[client_id] = record
            record.expires_at = now + self._idle_ttl
            client = record.client
        self._close_all(expired, reason="idle")
        return client

    def discard(self, client_id: str) -> None:
        with self._lock:
            record = self._clients.pop(client_id, None)
        if record is not None:
            record.client.close()

    def close(self) -> None:
        with self._lock:
            clients = [record.client for record in self._clients.values()]
            self._clients.clear()
        self._close_all(clients, reason="shutdown")

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def _pop_expired(self, now: datetime) -> List[DiaryClient]:
        expired = [client_id for client_id, record in self._clients.items() if record.expires_at <= now]
        return [self._clients.pop(client_id).client for client_id in expired]

    def _close_all(self, clients: List[DiaryClient], *, reason: str) -> None:
        for client in clients:
            client.close()
        if clients:
            logger.info("Closed %d diary client(s) on %s", len(clients), reason)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = [
    "ClientFactory",
    "ClientRegistry",
    "client_factory_from_env",
    "local_client_factory",
    "remote_client_factory",
]

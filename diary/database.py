"""SQLite-backed persistence for accounts, profiles, sessions and entries."""
from __future__ import annotations

import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from passlib.context import CryptContext

from .backend import ENTRIES_TABLE, PROFILES_TABLE, BackendError
from .models import Filter, Session


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the diary database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "diary.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _generate_token() -> str:
    return secrets.token_urlsafe(32)


_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


# Columns exposed through the generic table operations.
_TABLE_COLUMNS: Dict[str, tuple[str, ...]] = {
    ENTRIES_TABLE: ("id", "content", "user_id", "created_at"),
    PROFILES_TABLE: ("id", "email", "is_admin"),
}

_TIMESTAMP_COLUMNS = {"created_at"}

_SQL_OPERATORS = {"eq": "=", "gte": ">=", "lte": "<="}


def _table_columns(table: str) -> tuple[str, ...]:
    try:
        return _TABLE_COLUMNS[table]
    except KeyError as exc:
        raise BackendError(f'relation "{table}" does not exist', status=404) from exc


def _check_columns(table: str, columns: Sequence[str]) -> None:
    allowed = _table_columns(table)
    for column in columns:
        if column not in allowed:
            raise BackendError(
                f"Could not find the '{column}' column of '{table}'",
                status=400,
            )


def _coerce_value(column: str, value: Any) -> Any:
    if column in _TIMESTAMP_COLUMNS:
        if isinstance(value, str):
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if isinstance(value, datetime):
            return _serialize_datetime(value)
    if isinstance(value, bool):
        return int(value)
    return value


class Database:
    """Simple wrapper around SQLite for persisting the diary state."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
                    email TEXT NOT NULL,
                    is_admin INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS diary_entries (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    user_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS client_sessions (
                    client_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
                    access_token TEXT NOT NULL UNIQUE,
                    refresh_token TEXT NOT NULL UNIQUE,
                    expires_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_diary_entries_created_at ON diary_entries(created_at);
                CREATE INDEX IF NOT EXISTS idx_diary_entries_user_id ON diary_entries(user_id);
                """
            )

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------
    def create_account(self, email: str, password: str) -> str:
        """Register a new account and its profile, returning the account id."""

        if len(password) < 6:
            raise BackendError("Password should be at least 6 characters", status=422)

        normalized_email = email.strip().lower()
        account_id = str(uuid.uuid4())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO accounts (id, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        account_id,
                        normalized_email,
                        _hash_password(password),
                        _serialize_datetime(_current_timestamp()),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise BackendError("User already registered", status=422) from exc
            conn.execute(
                "INSERT INTO profiles (id, email, is_admin) VALUES (?, ?, 0)",
                (account_id, normalized_email),
            )
        return account_id

    def authenticate_account(self, email: str, password: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, password_hash FROM accounts WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        if not _verify_password(password, str(row["password_hash"])):
            return None
        return str(row["id"])

    def list_accounts(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT accounts.id, accounts.email, accounts.created_at,
                       COALESCE(profiles.is_admin, 0) AS is_admin
                FROM accounts LEFT JOIN profiles ON profiles.id = accounts.id
                ORDER BY accounts.created_at
                """
            ).fetchall()
        return [
            {
                "id": str(row["id"]),
                "email": str(row["email"]),
                "created_at": _parse_datetime(str(row["created_at"])),
                "is_admin": bool(row["is_admin"]),
            }
            for row in rows
        ]

    def set_admin(self, email: str, is_admin: bool) -> bool:
        """Set the admin flag for the profile with ``email``; ``False`` if missing."""

        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE profiles SET is_admin = ? WHERE email = ?",
                (int(is_admin), email.strip().lower()),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------
    def create_session(self, client_id: str, user_id: str, ttl: timedelta) -> Session:
        """Issue a session for ``client_id``, replacing any existing one."""

        expires_at = _current_timestamp() + ttl
        access_token = _generate_token()
        refresh_token = _generate_token()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO client_sessions (client_id, user_id, access_token, refresh_token, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(client_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at
                """,
                (client_id, user_id, access_token, refresh_token, _serialize_datetime(expires_at)),
            )
        session = self.get_session(client_id)
        if session is None:
            raise RuntimeError("Failed to load session after creation")
        return session

    def get_session(self, client_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT client_sessions.*, accounts.email
                FROM client_sessions JOIN accounts ON accounts.id = client_sessions.user_id
                WHERE client_sessions.client_id = ?
                """,
                (client_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def rotate_session(self, client_id: str, refresh_token: str, ttl: timedelta) -> Optional[Session]:
        """Exchange ``refresh_token`` for fresh tokens; ``None`` if it is unknown."""

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE client_sessions
                SET access_token = ?, refresh_token = ?, expires_at = ?
                WHERE client_id = ? AND refresh_token = ?
                """,
                (
                    _generate_token(),
                    _generate_token(),
                    _serialize_datetime(_current_timestamp() + ttl),
                    client_id,
                    refresh_token,
                ),
            )
        if cursor.rowcount == 0:
            return None
        return self.get_session(client_id)

    def delete_session(self, client_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM client_sessions WHERE client_id = ?", (client_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Generic table access
    # ------------------------------------------------------------------
    def select_rows(self, table: str, filters: Sequence[Filter] = ()) -> List[Dict[str, Any]]:
        columns = _table_columns(table)
        _check_columns(table, [item.column for item in filters])

        clauses = []
        params: List[Any] = []
        for item in filters:
            clauses.append(f"{item.column} {_SQL_OPERATORS[item.operator]} ?")
            params.append(_coerce_value(item.column, item.value))

        query = f"SELECT {', '.join(columns)} FROM {table}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(table, row) for row in rows]

    def get_row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self.select_rows(table, [Filter("id", "eq", record_id)])
        return rows[0] if rows else None

    def insert_row(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        values = dict(record)
        if table == ENTRIES_TABLE:
            values.setdefault("id", str(uuid.uuid4()))
            values.setdefault("created_at", _current_timestamp())
        _check_columns(table, list(values))

        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        params = [_coerce_value(column, values[column]) for column in columns]
        with self._connect() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                    params,
                )
            except sqlite3.IntegrityError as exc:
                raise BackendError(str(exc), status=409) from exc
        stored = self.get_row(table, str(values["id"]))
        if stored is None:
            raise RuntimeError("Failed to load record after insertion")
        return stored

    def update_row(self, table: str, record_id: str, fields: Mapping[str, Any]) -> bool:
        if not fields:
            raise BackendError("No fields to update", status=400)
        _check_columns(table, list(fields))
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_coerce_value(column, value) for column, value in fields.items()]
        params.append(record_id)
        with self._connect() as conn:
            cursor = conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)
        return cursor.rowcount > 0

    def delete_row(self, table: str, record_id: str) -> bool:
        _table_columns(table)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            user_id=str(row["user_id"]),
            email=str(row["email"]),
            access_token=str(row["access_token"]),
            refresh_token=str(row["refresh_token"]),
            expires_at=_parse_datetime(str(row["expires_at"])),
        )

    def _row_to_record(self, table: str, row: sqlite3.Row) -> Dict[str, Any]:
        record = {key: row[key] for key in row.keys()}
        if table == PROFILES_TABLE:
            record["is_admin"] = bool(record["is_admin"])
        if "created_at" in record:
            record["created_at"] = _parse_datetime(str(record["created_at"]))
        return record


__all__ = ["Database", "resolve_database_path"]

"""Domain models shared by the diary components and its backends."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


class AuthEvent(Enum):
    """Kinds of session transitions delivered to subscribers."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class CredentialEntry:
    """An allow-listed account: short username, password and canonical email."""

    username: str
    password: str
    email: str


@dataclass(frozen=True)
class Session:
    """An authenticated identity issued by the auth backend."""

    user_id: str
    email: str
    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return self.expires_at <= current


@dataclass(frozen=True)
class Profile:
    id: str
    is_admin: bool

    @staticmethod
    def from_record(record: Mapping[str, Any]) -> Optional["Profile"]:
        """Build a :class:`Profile` from a ``profiles`` row, or ``None`` if malformed."""

        flag = record.get("is_admin")
        if not record.get("id") or not isinstance(flag, bool):
            return None
        return Profile(id=str(record["id"]), is_admin=flag)


@dataclass(frozen=True)
class Entry:
    """A single dated journal record owned by one user."""

    id: str
    content: str
    user_id: str
    created_at: datetime

    @staticmethod
    def from_record(record: Mapping[str, Any]) -> "Entry":
        """Build an :class:`Entry` from a raw ``diary_entries`` row."""

        created_at = record["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return Entry(
            id=str(record["id"]),
            content=str(record.get("content") or ""),
            user_id=str(record["user_id"]),
            created_at=created_at,
        )


@dataclass(frozen=True)
class Filter:
    """A single column predicate understood by every record store."""

    column: str
    operator: str
    value: Any

    OPERATORS = ("eq", "gte", "lte")

    def __post_init__(self) -> None:
        if self.operator not in self.OPERATORS:
            raise ValueError(f"Unsupported filter operator '{self.operator}'")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


__all__ = [
    "AuthEvent",
    "CredentialEntry",
    "Entry",
    "Filter",
    "Profile",
    "Session",
    "eq",
    "gte",
    "lte",
]

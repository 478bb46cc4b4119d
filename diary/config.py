"""Configuration loading for the diary service."""
from __future__ import annotations

import os
from datetime import timedelta, tzinfo
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .models import CredentialEntry


def _normalize_email(value: str) -> str:
    return value.strip().lower()


def credential_from_dict(data: Mapping[str, object]) -> CredentialEntry:
    """Create a :class:`CredentialEntry` from raw dictionary data."""
    required_fields = {"username", "password", "email"}
    missing = required_fields - data.keys()
    if missing:
        raise ValueError(f"Missing required user configuration fields: {', '.join(sorted(missing))}")

    username = str(data["username"]).strip()
    password = str(data["password"])
    email = _normalize_email(str(data["email"]))
    if not username:
        raise ValueError("Username must not be empty")
    if not password:
        raise ValueError(f"Password for '{username}' must not be empty")
    if "@" not in email:
        raise ValueError(f"Email for '{username}' is not a valid address")

    return CredentialEntry(username=username, password=password, email=email)


class CredentialDirectory:
    """Read-only allow-list of accounts permitted to sign in."""

    def __init__(self, entries: Iterable[CredentialEntry]) -> None:
        directory: Dict[str, CredentialEntry] = {}
        for entry in entries:
            if entry.username in directory:
                raise ValueError(f"Duplicate username '{entry.username}' in credential directory")
            directory[entry.username] = entry
        if not directory:
            raise ValueError("Credential directory must contain at least one user")
        self._entries = directory

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Mapping[str, object]]) -> "CredentialDirectory":
        """Build a directory from ``{username: {"password": ..., "email": ...}}``."""
        return cls(
            credential_from_dict({"username": username, **dict(values)})
            for username, values in mapping.items()
        )

    def lookup(self, username: str) -> Optional[CredentialEntry]:
        return self._entries.get(username)

    def find_by_email(self, email: str) -> Optional[CredentialEntry]:
        normalized = _normalize_email(email)
        for entry in self._entries.values():
            if entry.email == normalized:
                return entry
        return None

    def list(self) -> Iterable[CredentialEntry]:
        return self._entries.values()

    def __contains__(self, username: object) -> bool:
        return username in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def load_credential_directory(config_path: Path) -> CredentialDirectory:
    """Load the allow-listed users from a YAML file."""
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    users_raw = raw.get("users")
    if not users_raw:
        raise ValueError("Configuration file must define at least one user under the 'users' key")

    return CredentialDirectory(credential_from_dict(item) for item in users_raw)


def _project_root() -> Path:
    return Path(__file__).resolve().parent.parent


def resolve_users_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the credential directory file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (_project_root() / "config" / "users.yaml").resolve(strict=False)


def resolve_timezone(env_value: Optional[str]) -> tzinfo:
    """Resolve the timezone that defines a diary day."""
    name = (env_value or "").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{name}'") from exc


def resolve_session_ttl(env_value: Optional[str]) -> timedelta:
    if not env_value:
        return timedelta(hours=1)
    seconds = int(env_value)
    if seconds <= 0:
        raise ValueError("Session TTL must be a positive number of seconds")
    return timedelta(seconds=seconds)


def env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def resolve_session_secret(env_value: Optional[str]) -> str:
    if env_value:
        return env_value
    raise RuntimeError("DIARY_SESSION_SECRET must be configured to use the diary web interface")


def load_directory_from_env() -> CredentialDirectory:
    return load_credential_directory(resolve_users_path(os.getenv("DIARY_USERS_FILE")))


__all__ = [
    "CredentialDirectory",
    "credential_from_dict",
    "env_flag",
    "load_credential_directory",
    "load_directory_from_env",
    "resolve_session_secret",
    "resolve_session_ttl",
    "resolve_timezone",
    "resolve_users_path",
]

"""Core package for the Digital Diary web application."""

from __future__ import annotations

from typing import Any

from .client import DiaryClient
from .config import CredentialDirectory, load_credential_directory
from .database import Database, resolve_database_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the diary web application."""

    from .web import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "CredentialDirectory",
    "Database",
    "DiaryClient",
    "create_app",
    "load_credential_directory",
    "resolve_database_path",
]

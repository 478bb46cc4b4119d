"""Admin role resolution from the profiles table."""

from __future__ import annotations

import logging

from .backend import PROFILES_TABLE, BackendError, RecordStore
from .models import Profile, eq

logger = logging.getLogger("diary.authorization")


def resolve_is_admin(store: RecordStore, user_id: str) -> bool:
    """Return whether ``user_id`` holds the admin role.

    Exactly one profile row must match; a missing row, an ambiguous match, a
    backend failure or a malformed flag all resolve to ``False``.
    """

    try:
        rows = store.select(PROFILES_TABLE, [eq("id", user_id)])
    except BackendError as exc:
        logger.warning("Could not resolve admin status for %s: %s", user_id, exc.message)
        return False

    if len(rows) != 1:
        if rows:
            logger.warning("Expected one profile for %s, found %d", user_id, len(rows))
        return False

    profile = Profile.from_record(rows[0])
    if profile is None or profile.id != user_id:
        logger.warning("Ignoring malformed profile for %s", user_id)
        return False
    return profile.is_admin


__all__ = ["resolve_is_admin"]

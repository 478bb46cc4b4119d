"""Session bootstrap, login and logout for a single diary client."""

from __future__ import annotations

import hmac
import logging
import threading
from typing import Optional

from .backend import AuthBackend, BackendError, SessionCallback, SessionChannel, Subscription
from .config import CredentialDirectory
from .models import AuthEvent, Session

logger = logging.getLogger("diary.auth")


class AuthError(Exception):
    """Base class for authentication failures shown to the user."""

    title = "Error signing in"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidCredentials(AuthError):
    """The username is not allow-listed or the password does not match."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class AuthBackendError(AuthError):
    """The auth backend rejected a sign-in, sign-up or sign-out request."""

    def __init__(self, message: str, *, title: Optional[str] = None) -> None:
        super().__init__(message)
        if title is not None:
            self.title = title


class AuthSessionManager:
    """Track the client's session and relay its transitions to subscribers.

    The manager registers a single callback with the auth backend and fans
    every backend transition out to its own subscribers, so each transition
    reaches each subscriber exactly once.
    """

    def __init__(self, directory: CredentialDirectory, backend: AuthBackend) -> None:
        self._directory = directory
        self._backend = backend
        self._channel = SessionChannel()
        self._lock = threading.Lock()
        self._session: Optional[Session] = None
        self._backend_subscription: Optional[Subscription] = backend.on_session_change(self._on_backend_change)

    @property
    def backend(self) -> AuthBackend:
        return self._backend

    @property
    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    def subscribe(self, callback: SessionCallback) -> Subscription:
        return self._channel.subscribe(callback)

    def bootstrap(self) -> Optional[Session]:
        """Resume a persisted session, announcing it as ``INITIAL_SESSION``."""

        session = self._backend.current_session()
        with self._lock:
            self._session = session
        if session is not None:
            logger.info("Resumed session for %s", session.email)
        self._channel.publish(AuthEvent.INITIAL_SESSION, session)
        return session

    def login(self, username: str, password: str) -> None:
        """Sign in an allow-listed user.

        The new session is delivered to subscribers as ``SIGNED_IN``; nothing
        is returned.
        """

        entry = self._directory.lookup(username)
        if entry is None or not hmac.compare_digest(
            entry.password.encode("utf-8"), password.encode("utf-8")
        ):
            logger.info("Rejected login for unknown user or wrong password")
            raise InvalidCredentials()

        try:
            self._backend.sign_in(entry.email, password)
            return
        except BackendError as exc:
            logger.warning("Sign in error for %s: %s", entry.email, exc.message)

        try:
            self._backend.sign_up(entry.email, password)
        except BackendError as exc:
            logger.error("Sign up error for %s: %s", entry.email, exc.message)
            raise AuthBackendError(exc.message, title="Error creating account") from exc

        try:
            self._backend.sign_in(entry.email, password)
        except BackendError as exc:
            logger.error("Final sign in error for %s: %s", entry.email, exc.message)
            raise AuthBackendError(exc.message) from exc

    def logout(self) -> None:
        try:
            self._backend.sign_out()
        except BackendError as exc:
            raise AuthBackendError(exc.message, title="Error signing out") from exc

    def refresh(self) -> Session:
        try:
            return self._backend.refresh_session()
        except BackendError as exc:
            raise AuthBackendError(exc.message, title="Error refreshing session") from exc

    def close(self) -> None:
        if self._backend_subscription is not None:
            self._backend_subscription.unsubscribe()
            self._backend_subscription = None

    def _on_backend_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        with self._lock:
            self._session = session
        if event is AuthEvent.SIGNED_IN and session is not None:
            logger.info("Signed in as %s", session.email)
        elif event is AuthEvent.SIGNED_OUT:
            logger.info("Signed out")
        self._channel.publish(event, session)


__all__ = [
    "AuthBackendError",
    "AuthError",
    "AuthSessionManager",
    "InvalidCredentials",
]

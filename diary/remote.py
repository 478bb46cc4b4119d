"""HTTP client for a hosted auth + REST backend speaking the Supabase dialect."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from .backend import BackendError, SessionCallback, SessionChannel, Subscription
from .models import AuthEvent, Filter, Session

logger = logging.getLogger("diary.remote")


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Backend base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _format_filter_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _session_from_payload(payload: object) -> Session:
    if not isinstance(payload, dict):
        raise BackendError("Auth backend returned an unexpected response payload")
    try:
        user = payload["user"]
        access_token = str(payload["access_token"])
        refresh_token = str(payload["refresh_token"])
        user_id = str(user["id"])
        email = str(user.get("email") or "")
        if payload.get("expires_at") is not None:
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
        else:
            expires_in = int(payload.get("expires_in") or 3600)
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    except (KeyError, TypeError, AttributeError, ValueError, OverflowError, OSError) as exc:
        raise BackendError("Auth backend response was missing required fields") from exc

    return Session(
        user_id=user_id,
        email=email,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
    )


def _session_to_dict(session: Session) -> Dict[str, Any]:
    return {
        "user_id": session.user_id,
        "email": session.email,
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "expires_at": session.expires_at.isoformat(),
    }


def _session_from_dict(data: Mapping[str, Any]) -> Session:
    return Session(
        user_id=str(data["user_id"]),
        email=str(data["email"]),
        access_token=str(data["access_token"]),
        refresh_token=str(data["refresh_token"]),
        expires_at=datetime.fromisoformat(str(data["expires_at"])),
    )


class RemoteBackend:
    """Auth backend and record store backed by a hosted REST service.

    The current session is kept in memory and, when ``session_file`` is given,
    persisted as JSON so that a restarted client resumes it.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session_file: Optional[Path] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._api_key = api_key.strip()
        if not self._api_key:
            raise ValueError("API key must not be empty when using RemoteBackend")
        self._client = httpx.Client(
            base_url=_normalize_base_url(base_url),
            timeout=timeout,
            transport=transport,
        )
        self._session_file = session_file
        self._session: Optional[Session] = None
        self._channel = SessionChannel()
        self._lock = threading.Lock()
        self._load_persisted_session()

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Auth backend
    # ------------------------------------------------------------------
    def sign_in(self, email: str, password: str) -> Session:
        payload = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            authenticated=False,
        )
        session = _session_from_payload(payload)
        self._store_session(session)
        self._channel.publish(AuthEvent.SIGNED_IN, session)
        return session

    def sign_up(self, email: str, password: str) -> Optional[Session]:
        self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password},
            authenticated=False,
        )
        return None

    def sign_out(self) -> None:
        with self._lock:
            session = self._session
        if session is None:
            return
        self._request("POST", "/auth/v1/logout")
        self._store_session(None)
        self._channel.publish(AuthEvent.SIGNED_OUT, None)

    def refresh_session(self) -> Session:
        with self._lock:
            current = self._session
        if current is None:
            raise BackendError("Auth session missing!", status=401)
        payload = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": current.refresh_token},
            authenticated=False,
        )
        session = _session_from_payload(payload)
        self._store_session(session)
        self._channel.publish(AuthEvent.TOKEN_REFRESHED, session)
        return session

    def current_session(self) -> Optional[Session]:
        with self._lock:
            session = self._session
        if session is None or not session.is_expired():
            return session
        try:
            return self.refresh_session()
        except BackendError as exc:
            logger.info("Discarding expired session: %s", exc.message)
        self._store_session(None)
        self._channel.publish(AuthEvent.SIGNED_OUT, None)
        return None

    def on_session_change(self, callback: SessionCallback) -> Subscription:
        return self._channel.subscribe(callback)

    # ------------------------------------------------------------------
    # Record store
    # ------------------------------------------------------------------
    def select(self, table: str, filters: Sequence[Filter] = ()) -> List[Dict[str, Any]]:
        params: List[Tuple[str, str]] = [("select", "*")]
        for item in filters:
            params.append((item.column, f"{item.operator}.{_format_filter_value(item.value)}"))
        payload = self._request("GET", f"/rest/v1/{table}", params=params)
        if not isinstance(payload, list):
            raise BackendError("Record store returned an unexpected response payload")
        return [dict(row) for row in payload if isinstance(row, dict)]

    def insert(self, table: str, record: Mapping[str, Any]) -> None:
        self._request(
            "POST",
            f"/rest/v1/{table}",
            json=[dict(record)],
            headers={"Prefer": "return=minimal"},
        )

    def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> None:
        self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={"id": f"eq.{record_id}"},
            json=dict(fields),
            headers={"Prefer": "return=minimal"},
        )

    def delete(self, table: str, record_id: str) -> None:
        self._request("DELETE", f"/rest/v1/{table}", params={"id": f"eq.{record_id}"})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _headers(self, authenticated: bool) -> Dict[str, str]:
        token = self._api_key
        if authenticated:
            with self._lock:
                if self._session is not None:
                    token = self._session.access_token
        return {"apikey": self._api_key, "Authorization": f"Bearer {token}"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> object:
        request_headers = self._headers(authenticated)
        if headers:
            request_headers.update(headers)
        try:
            response = self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers=request_headers,
            )
        except httpx.RequestError as exc:  # pragma: no cover - network failure
            raise BackendError(f"Failed to contact backend: {exc}") from exc

        if response.status_code >= 400:
            message = f"Backend request failed with status {response.status_code}"
            try:
                parsed = response.json()
            except ValueError:
                parsed = response.text
            raise BackendError(_extract_error_message(parsed, message), status=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError("Backend returned an invalid response") from exc

    def _store_session(self, session: Optional[Session]) -> None:
        with self._lock:
            self._session = session
        if self._session_file is None:
            return
        if session is None:
            self._session_file.unlink(missing_ok=True)
            return
        self._session_file.parent.mkdir(parents=True, exist_ok=True)
        self._session_file.write_text(json.dumps(_session_to_dict(session)), encoding="utf-8")

    def _load_persisted_session(self) -> None:
        if self._session_file is None or not self._session_file.exists():
            return
        try:
            data = json.loads(self._session_file.read_text(encoding="utf-8"))
            self._session = _session_from_dict(data)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self._session_file, exc)


__all__ = ["RemoteBackend"]

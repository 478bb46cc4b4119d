"""Browser-based diary interface."""
from __future__ import annotations

import os
import secrets
from contextlib import asynccontextmanager
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

import anyio
from fastapi import FastAPI, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from markupsafe import Markup, escape
from starlette.middleware.sessions import SessionMiddleware

from .client import DiaryClient
from .config import env_flag, load_directory_from_env, resolve_session_secret, resolve_timezone
from .entries import SessionRequired, StoreError, ValidationError
from .service import ClientFactory, ClientRegistry, client_factory_from_env
from .sessions import AuthError

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

T = TypeVar("T")


def render_content(content: str) -> Markup:
    """Render user-authored entry text as escaped HTML with line breaks kept."""

    escaped = escape(content)
    lines = str(escaped).replace("\r\n", "\n").split("\n")
    return Markup("<br>\n".join(lines))


def _parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def create_app(
    *,
    client_factory: Optional[ClientFactory] = None,
    session_secret: Optional[str] = None,
    client_idle_ttl: timedelta = timedelta(minutes=30),
) -> FastAPI:
    """Create the diary web application."""

    if session_secret is None:
        session_secret = resolve_session_secret(os.getenv("DIARY_SESSION_SECRET"))

    if client_factory is None:
        client_factory = client_factory_from_env(
            load_directory_from_env(),
            tz=resolve_timezone(os.getenv("DIARY_TIMEZONE")),
        )

    registry = ClientRegistry(client_factory, idle_ttl=client_idle_ttl)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        registry.close()

    app = FastAPI(
        title="Digital Diary",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.clients = registry

    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="diary_session",
        https_only=env_flag(os.getenv("DIARY_SESSION_SECURE"), False),
        same_site="lax",
        max_age=60 * 60 * 24 * 7,
    )

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.filters["render_content"] = render_content

    def _flash(request: Request, title: str, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"title": title, "message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _client_for(request: Request, create: bool) -> Optional[DiaryClient]:
        client_id = request.session.get("client_id")
        if not isinstance(client_id, str) or not client_id:
            if not create:
                return None
            client_id = secrets.token_urlsafe(16)
            request.session["client_id"] = client_id
        return registry.get(client_id)

    async def _client(request: Request, *, create: bool = False) -> Optional[DiaryClient]:
        return await anyio.to_thread.run_sync(_client_for, request, create)

    def _forget_client(request: Request) -> None:
        client_id = request.session.pop("client_id", None)
        if isinstance(client_id, str) and client_id:
            registry.discard(client_id)

    async def _run(func: Callable[[], T]) -> T:
        return await anyio.to_thread.run_sync(func)

    def _flash_pending(request: Request, client: DiaryClient) -> None:
        for error in client.drain_errors():
            _flash(request, error.title, error.message, category="error")

    def _redirect_home(request: Request, day: Optional[date] = None) -> RedirectResponse:
        url = request.url_for("index")
        if day is not None:
            url = url.include_query_params(day=day.isoformat())
        return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)

    @app.get("/", response_class=HTMLResponse, name="index")
    async def index(request: Request, day: Optional[str] = None):
        client = await _client(request)

        if client is None or not client.is_authenticated:
            if client is not None:
                _flash_pending(request, client)
                _forget_client(request)
            return templates.TemplateResponse(
                request,
                "login.html",
                {"messages": _consume_flash(request)},
            )

        selected = _parse_day(day) or client.selected_day
        try:
            await _run(lambda: client.select_day(selected))
        except StoreError as exc:
            _flash(request, exc.title, exc.message, category="error")
        except SessionRequired:
            return _redirect_home(request)
        _flash_pending(request, client)

        entries = [
            {
                "id": entry.id,
                "content": entry.content,
                "created_at": entry.created_at.astimezone(client.gateway.tz),
                "author": client.author_of(entry),
                "can_modify": client.can_modify(entry),
            }
            for entry in client.entries
        ]
        return templates.TemplateResponse(
            request,
            "diary.html",
            {
                "messages": _consume_flash(request),
                "session": client.session,
                "is_admin": client.is_admin,
                "selected_day": client.selected_day,
                "entries": entries,
            },
        )

    @app.post("/login", name="login")
    async def login(request: Request, username: str = Form(...), password: str = Form(...)):
        client = await _client(request, create=True)
        try:
            await _run(lambda: client.login(username, password))
        except AuthError as exc:
            _flash(request, exc.title, exc.message, category="error")
            if not client.is_authenticated:
                _forget_client(request)
            return _redirect_home(request)

        _flash(request, "Success", "Signed in successfully", category="success")
        return _redirect_home(request)

    @app.post("/logout", name="logout")
    async def logout(request: Request):
        client = await _client(request)
        if client is None:
            return _redirect_home(request)
        try:
            await _run(client.logout)
        except AuthError as exc:
            _flash(request, exc.title, exc.message, category="error")
            return _redirect_home(request)

        _forget_client(request)
        return _redirect_home(request)

    @app.post("/entries", name="create_entry")
    async def create_entry(request: Request, content: str = Form("")):
        client = await _client(request)
        if client is None or not client.is_authenticated:
            return _redirect_home(request)
        try:
            await _run(lambda: client.create_entry(content))
        except (ValidationError, StoreError) as exc:
            _flash(request, exc.title, exc.message, category="error")
        except SessionRequired:
            return _redirect_home(request)
        else:
            _flash(request, "Success", "Entry saved successfully", category="success")
        return _redirect_home(request, client.selected_day)

    @app.post("/entries/{entry_id}/update", name="update_entry")
    async def update_entry(request: Request, entry_id: str, content: str = Form("")):
        client = await _client(request)
        if client is None or not client.is_authenticated:
            return _redirect_home(request)
        try:
            await _run(lambda: client.update_entry(entry_id, content))
        except (ValidationError, StoreError) as exc:
            _flash(request, exc.title, exc.message, category="error")
        except SessionRequired:
            return _redirect_home(request)
        else:
            _flash(request, "Success", "Entry updated successfully", category="success")
        return _redirect_home(request, client.selected_day)

    @app.post("/entries/{entry_id}/delete", name="delete_entry")
    async def delete_entry(request: Request, entry_id: str):
        client = await _client(request)
        if client is None or not client.is_authenticated:
            return _redirect_home(request)
        try:
            await _run(lambda: client.delete_entry(entry_id))
        except StoreError as exc:
            _flash(request, exc.title, exc.message, category="error")
        except SessionRequired:
            return _redirect_home(request)
        else:
            _flash(request, "Success", "Entry deleted successfully", category="success")
        return _redirect_home(request, client.selected_day)

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    return app


__all__ = ["create_app", "render_content"]

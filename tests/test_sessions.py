from __future__ import annotations

import pytest

from diary.config import CredentialDirectory
from diary.models import AuthEvent
from diary.sessions import AuthBackendError, AuthSessionManager, InvalidCredentials

from fakes import FakeAuthBackend, make_session


KABILAN_EMAIL = "kabilan.diary@example.com"


def _manager(directory: CredentialDirectory, backend: FakeAuthBackend):
    manager = AuthSessionManager(directory, backend)
    events = []
    manager.subscribe(lambda event, session: events.append((event, session)))
    return manager, events


@pytest.mark.parametrize("username", ["Nobody", "kabilan", "", "Kabilan "])
def test_unknown_username_is_rejected_without_backend_call(directory, username):
    backend = FakeAuthBackend()
    manager, events = _manager(directory, backend)

    with pytest.raises(InvalidCredentials) as excinfo:
        manager.login(username, "Kabilan_M123")

    assert excinfo.value.message == "Invalid credentials"
    assert backend.calls == []
    assert events == []


def test_wrong_password_is_rejected_without_backend_call(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"})
    manager, _ = _manager(directory, backend)

    with pytest.raises(InvalidCredentials):
        manager.login("Kabilan", "kabilan_m123")

    assert backend.calls == []


def test_login_delivers_session_through_subscription(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"})
    manager, events = _manager(directory, backend)

    assert manager.login("Kabilan", "Kabilan_M123") is None

    assert backend.calls == [("sign_in", KABILAN_EMAIL)]
    assert len(events) == 1
    event, session = events[0]
    assert event is AuthEvent.SIGNED_IN
    assert session.email == KABILAN_EMAIL
    assert manager.session == session
    assert manager.is_authenticated


def test_login_falls_back_to_sign_up_then_retries_once(directory):
    backend = FakeAuthBackend()
    manager, events = _manager(directory, backend)

    manager.login("Kabilan", "Kabilan_M123")

    assert backend.calls == [
        ("sign_in", KABILAN_EMAIL),
        ("sign_up", KABILAN_EMAIL),
        ("sign_in", KABILAN_EMAIL),
    ]
    assert [event for event, _ in events] == [AuthEvent.SIGNED_IN]
    assert manager.session.email == KABILAN_EMAIL


def test_sign_up_failure_surfaces_backend_message(directory):
    backend = FakeAuthBackend(sign_up_error="User already registered")
    manager, events = _manager(directory, backend)

    with pytest.raises(AuthBackendError) as excinfo:
        manager.login("Kabilan", "Kabilan_M123")

    assert excinfo.value.message == "User already registered"
    assert excinfo.value.title == "Error creating account"
    assert [call[0] for call in backend.calls] == ["sign_in", "sign_up"]
    assert events == []
    assert manager.session is None


def test_retry_failure_after_sign_up_is_not_retried_again(directory):
    backend = FakeAuthBackend(register_on_sign_up=False)
    manager, _ = _manager(directory, backend)

    with pytest.raises(AuthBackendError) as excinfo:
        manager.login("Kabilan", "Kabilan_M123")

    assert excinfo.value.message == "Invalid login credentials"
    assert [call[0] for call in backend.calls] == ["sign_in", "sign_up", "sign_in"]


def test_logout_announces_signed_out(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"})
    manager, events = _manager(directory, backend)
    manager.login("Kabilan", "Kabilan_M123")

    manager.logout()

    assert events[-1] == (AuthEvent.SIGNED_OUT, None)
    assert manager.session is None


def test_logout_failure_is_reported(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"}, sign_out_error="network down")
    manager, _ = _manager(directory, backend)
    manager.login("Kabilan", "Kabilan_M123")

    with pytest.raises(AuthBackendError) as excinfo:
        manager.logout()

    assert excinfo.value.message == "network down"
    assert manager.is_authenticated


def test_bootstrap_resumes_persisted_session(directory):
    persisted = make_session("user-1", KABILAN_EMAIL)
    backend = FakeAuthBackend(persisted=persisted)
    manager, events = _manager(directory, backend)

    assert manager.bootstrap() == persisted
    assert events == [(AuthEvent.INITIAL_SESSION, persisted)]
    assert manager.is_authenticated


def test_bootstrap_without_session_starts_unauthenticated(directory):
    backend = FakeAuthBackend()
    manager, events = _manager(directory, backend)

    assert manager.bootstrap() is None
    assert events == [(AuthEvent.INITIAL_SESSION, None)]
    assert not manager.is_authenticated


def test_refresh_is_relayed_as_token_refreshed(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"})
    manager, events = _manager(directory, backend)
    manager.login("Kabilan", "Kabilan_M123")

    refreshed = manager.refresh()

    assert events[-1] == (AuthEvent.TOKEN_REFRESHED, refreshed)
    assert manager.session == refreshed


def test_unsubscribed_callbacks_stop_receiving_events(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"})
    manager = AuthSessionManager(directory, backend)
    received = []
    subscription = manager.subscribe(lambda event, session: received.append(event))

    subscription.unsubscribe()
    subscription.unsubscribe()
    manager.login("Kabilan", "Kabilan_M123")

    assert received == []
    assert not subscription.active


def test_subscription_context_manager_releases_callback(directory):
    backend = FakeAuthBackend({KABILAN_EMAIL: "Kabilan_M123"})
    manager = AuthSessionManager(directory, backend)
    received = []

    with manager.subscribe(lambda event, session: received.append(event)):
        manager.login("Kabilan", "Kabilan_M123")
    manager.logout()

    assert received == [AuthEvent.SIGNED_IN]


def test_close_releases_backend_subscription(directory):
    backend = FakeAuthBackend()
    manager = AuthSessionManager(directory, backend)
    assert len(backend.channel) == 1

    manager.close()
    manager.close()

    assert len(backend.channel) == 0

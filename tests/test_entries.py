from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from diary.client import DiaryClient
from diary.entries import (
    EntryStoreGateway,
    PermissionDenied,
    SessionRequired,
    StoreError,
    ValidationError,
    day_bounds,
)
from diary.service import local_client_factory
from diary.sessions import AuthSessionManager

from fakes import FakeAuthBackend, FakeRecordStore


KABILAN = ("Kabilan", "Kabilan_M123")
AFRIN = ("Afrin_Tabassum", "Harry James Potter")
ADMIN = ("Admin", "Admin123")


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _promote_admin(database) -> None:
    database.create_account("admin.diary@example.com", "Admin123")
    assert database.set_admin("admin.diary@example.com", True)


def test_day_one_scenario(make_client):
    client = make_client("browser-kabilan")
    client.login(*KABILAN)

    client.create_entry("Day one")

    entries = client.select_day(_today())
    assert len(entries) == 1
    assert entries[0].content == "Day one"
    assert entries[0].user_id == client.session.user_id
    assert client.session.email == "kabilan.diary@example.com"


def test_create_refreshes_selected_day(make_client):
    client = make_client("browser-kabilan")
    client.login(*KABILAN)

    client.create_entry("hello")

    assert [entry.content for entry in client.entries] == ["hello"]


@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
def test_blank_content_is_rejected_before_insert(directory, content):
    backend = FakeAuthBackend({"kabilan.diary@example.com": "Kabilan_M123"})
    store = FakeRecordStore()
    client = DiaryClient(directory, backend, store)
    client.login(*KABILAN)
    store.calls.clear()

    with pytest.raises(ValidationError) as excinfo:
        client.create_entry(content)

    assert excinfo.value.message == "Entry cannot be empty"
    assert not [call for call in store.calls if call[0] == "insert"]


def test_deleted_entry_is_no_longer_listed(make_client):
    client = make_client("browser-kabilan")
    client.login(*KABILAN)
    client.create_entry("keep")
    client.create_entry("drop")
    doomed = next(entry for entry in client.entries if entry.content == "drop")

    client.delete_entry(doomed.id)

    listed = client.select_day(_today())
    assert doomed.id not in {entry.id for entry in listed}
    assert [entry.content for entry in listed] == ["keep"]


def test_update_changes_content_only(make_client):
    client = make_client("browser-kabilan")
    client.login(*KABILAN)
    client.create_entry("draft")
    original = client.entries[0]

    client.update_entry(original.id, "final")

    updated = client.entries[0]
    assert updated.id == original.id
    assert updated.content == "final"
    assert updated.user_id == original.user_id
    assert updated.created_at == original.created_at


def test_update_rejects_blank_content(make_client):
    client = make_client("browser-kabilan")
    client.login(*KABILAN)
    client.create_entry("draft")

    with pytest.raises(ValidationError):
        client.update_entry(client.entries[0].id, "  ")


def test_operations_require_session(directory):
    backend = FakeAuthBackend()
    store = FakeRecordStore()
    gateway = EntryStoreGateway(store, AuthSessionManager(directory, backend))

    with pytest.raises(SessionRequired):
        gateway.list_for_day(_today())
    with pytest.raises(SessionRequired):
        gateway.create("hello")
    with pytest.raises(SessionRequired):
        gateway.delete("entry-1")
    assert store.calls == []


def test_admin_sees_and_deletes_every_entry(database, make_client):
    _promote_admin(database)
    kabilan = make_client("browser-kabilan")
    kabilan.login(*KABILAN)
    kabilan.create_entry("Kabilan's day")
    afrin = make_client("browser-afrin")
    afrin.login(*AFRIN)
    afrin.create_entry("Afrin's day")

    admin = make_client("browser-admin")
    admin.login(*ADMIN)

    assert admin.is_admin
    listed = admin.select_day(_today())
    assert {entry.content for entry in listed} == {"Kabilan's day", "Afrin's day"}
    assert all(admin.can_modify(entry) for entry in listed)
    assert {admin.author_of(entry) for entry in listed} == {
        "kabilan.diary@example.com",
        "afrin.diary@example.com",
    }

    for entry in listed:
        admin.delete_entry(entry.id)
    assert admin.entries == []
    assert kabilan.select_day(_today()) == []


def test_non_admin_only_sees_and_modifies_own_entries(database, make_client):
    _promote_admin(database)
    kabilan = make_client("browser-kabilan")
    kabilan.login(*KABILAN)
    kabilan.create_entry("Kabilan's day")
    foreign_id = kabilan.entries[0].id

    afrin = make_client("browser-afrin")
    afrin.login(*AFRIN)
    afrin.create_entry("Afrin's day")

    assert not afrin.is_admin
    assert [entry.content for entry in afrin.select_day(_today())] == ["Afrin's day"]
    assert afrin.can_modify(afrin.entries[0])

    with pytest.raises(StoreError):
        afrin.delete_entry(foreign_id)
    with pytest.raises(StoreError):
        afrin.update_entry(foreign_id, "overwritten")
    assert kabilan.select_day(_today())[0].content == "Kabilan's day"


def test_gateway_rejects_foreign_entry_before_backend_call(directory):
    backend = FakeAuthBackend({"afrin.diary@example.com": "Harry James Potter"})
    store = FakeRecordStore(
        {"diary_entries": [
            {"id": "e1", "content": "not yours", "user_id": "someone", "created_at": datetime.now(timezone.utc)}
        ]}
    )
    client = DiaryClient(directory, backend, store)
    client.login(*AFRIN)

    with pytest.raises(PermissionDenied):
        client.delete_entry("e1")

    assert not [call for call in store.calls if call[0] == "delete"]


def test_backend_rejection_is_surfaced(directory):
    backend = FakeAuthBackend({"kabilan.diary@example.com": "Kabilan_M123"})
    store = FakeRecordStore()
    client = DiaryClient(directory, backend, store)
    client.login(*KABILAN)
    client.create_entry("mine")
    store.fail["delete"] = 'new row violates row-level security policy for table "diary_entries"'

    with pytest.raises(StoreError) as excinfo:
        client.delete_entry(client.entries[0].id)

    assert "row-level security" in excinfo.value.message
    assert excinfo.value.title == "Error deleting entry"
    assert len(client.entries) == 1


def test_load_failure_during_login_is_queued(directory):
    backend = FakeAuthBackend({"kabilan.diary@example.com": "Kabilan_M123"})
    store = FakeRecordStore()
    store.fail["select"] = "relation does not exist"
    client = DiaryClient(directory, backend, store)

    client.login(*KABILAN)

    errors = client.drain_errors()
    assert [error.title for error in errors] == ["Error loading entries"]
    assert client.drain_errors() == []
    assert client.is_authenticated
    assert not client.is_admin


def test_logout_clears_view_state(make_client):
    client = make_client("browser-kabilan")
    client.login(*KABILAN)
    client.create_entry("hello")

    client.logout()

    assert not client.is_authenticated
    assert client.entries == []
    assert not client.is_admin


def test_bootstrap_restores_session_and_entries(database, directory):
    factory = local_client_factory(database, directory)
    first = factory("browser-kabilan")
    first.bootstrap()
    first.login(*KABILAN)
    first.create_entry("persisted")
    first.close()

    restarted = factory("browser-kabilan")
    session = restarted.bootstrap()
    try:
        assert session is not None
        assert session.email == "kabilan.diary@example.com"
        assert [entry.content for entry in restarted.entries] == ["persisted"]
    finally:
        restarted.close()


def test_day_bounds_use_configured_timezone():
    start, end = day_bounds(date(2024, 3, 10), ZoneInfo("Asia/Kolkata"))

    assert start == datetime(2024, 3, 9, 18, 30, tzinfo=timezone.utc)
    assert end == datetime(2024, 3, 10, 18, 29, 59, 999999, tzinfo=timezone.utc)


def test_listing_filters_by_local_day(database, directory):
    user_id = database.create_account("kabilan.diary@example.com", "Kabilan_M123")
    for content, created_at in (
        ("just after midnight", datetime(2024, 3, 9, 18, 30, tzinfo=timezone.utc)),
        ("last second", datetime(2024, 3, 10, 18, 29, 59, tzinfo=timezone.utc)),
        ("next day", datetime(2024, 3, 10, 18, 30, tzinfo=timezone.utc)),
        ("previous day", datetime(2024, 3, 9, 18, 29, 59, tzinfo=timezone.utc)),
    ):
        database.insert_row(
            "diary_entries",
            {"content": content, "user_id": user_id, "created_at": created_at},
        )

    client = local_client_factory(database, directory, tz=ZoneInfo("Asia/Kolkata"))("browser")
    client.bootstrap()
    client.login(*KABILAN)
    try:
        listed = client.select_day(date(2024, 3, 10))
    finally:
        client.close()

    assert [entry.content for entry in listed] == ["just after midnight", "last second"]
    assert client.selected_day == date(2024, 3, 10)


def test_listing_is_ordered_by_creation_time(directory):
    backend = FakeAuthBackend({"kabilan.diary@example.com": "Kabilan_M123"})
    now = datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)
    store = FakeRecordStore(
        {"diary_entries": [
            {"id": "b", "content": "later", "user_id": "x", "created_at": now + timedelta(minutes=5)},
            {"id": "a", "content": "earlier", "user_id": "x", "created_at": now},
        ]}
    )
    client = DiaryClient(directory, backend, store)
    client.login(*KABILAN)

    assert [entry.id for entry in client.select_day(now.date())] == ["a", "b"]


def test_committed_create_succeeds_when_relist_fails(directory):
    backend = FakeAuthBackend({"kabilan.diary@example.com": "Kabilan_M123"})
    store = FakeRecordStore()
    client = DiaryClient(directory, backend, store)
    client.login(*KABILAN)
    store.fail["select"] = "upstream timeout"

    client.create_entry("Day one")

    assert len(store.tables["diary_entries"]) == 1
    errors = client.drain_errors()
    assert [(error.title, error.message) for error in errors] == [("Error loading entries", "upstream timeout")]
    assert client.drain_errors() == []


def test_committed_update_and_delete_succeed_when_relist_fails(directory):
    backend = FakeAuthBackend({"kabilan.diary@example.com": "Kabilan_M123"})
    store = FakeRecordStore()
    client = DiaryClient(directory, backend, store)
    client.login(*KABILAN)
    client.create_entry("draft")
    entry_id = client.entries[0].id
    store.fail["select"] = "upstream timeout"

    client.update_entry(entry_id, "final")
    assert store.tables["diary_entries"][0]["content"] == "final"

    client.delete_entry(entry_id)
    assert store.tables["diary_entries"] == []

    assert len(client.drain_errors()) == 2

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from diary.client import DiaryClient
from diary.config import CredentialDirectory
from diary.database import Database
from diary.service import local_client_factory


USERS = {
    "Kabilan": {"password": "Kabilan_M123", "email": "kabilan.diary@example.com"},
    "Afrin_Tabassum": {"password": "Harry James Potter", "email": "afrin.diary@example.com"},
    "Admin": {"password": "Admin123", "email": "admin.diary@example.com"},
}


@pytest.fixture()
def directory() -> CredentialDirectory:
    return CredentialDirectory.from_mapping(USERS)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "diary.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def make_client(database: Database, directory: CredentialDirectory) -> Callable[[str], DiaryClient]:
    factory = local_client_factory(database, directory)
    clients = []

    def build(client_id: str) -> DiaryClient:
        client = factory(client_id)
        client.bootstrap()
        clients.append(client)
        return client

    yield build

    for client in clients:
        client.close()

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from config import Settings
from consistency import ConsistencyGuard
from contact_store import SqliteContactStore
from db_setup import get_db_connection, init_db
from main import app, get_guard


class TickingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def settings() -> Settings:
    return Settings(
        identify_retry_max=3,
        identify_retry_base_backoff_seconds=0.01,
        identify_retry_max_backoff_seconds=0.05,
        identify_timeout_seconds=5,
        db_busy_timeout_seconds=2,
    )


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "contacts.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    connection = get_db_connection(db_path)
    yield connection
    connection.close()


@pytest.fixture
def store(conn) -> SqliteContactStore:
    return SqliteContactStore(conn, clock=TickingClock())


@pytest.fixture
def guard(db_path, settings) -> ConsistencyGuard:
    return ConsistencyGuard(db_path, settings=settings)


@pytest.fixture
def client(guard):
    app.dependency_overrides[get_guard] = lambda: guard
    yield TestClient(app)
    app.dependency_overrides.clear()


def fetch_all(conn):
    return [dict(row) for row in conn.execute("SELECT * FROM Contact ORDER BY id").fetchall()]


def assert_invariants(conn):
    rows = {row["id"]: row for row in fetch_all(conn)}
    for row in rows.values():
        if row["linkPrecedence"] == "secondary":
            assert row["linkedId"] in rows
            assert rows[row["linkedId"]]["linkPrecedence"] == "primary"
        else:
            assert row["linkedId"] is None

    # union-find over shared email/phone values
    parent = {contact_id: contact_id for contact_id in rows}

    def find(x):
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    seen = {}
    for row in rows.values():
        for key in (("email", row["email"]), ("phone", row["phoneNumber"])):
            if key[1] is None:
                continue
            if key in seen:
                parent[find(row["id"])] = find(seen[key])
            else:
                seen[key] = row["id"]

    primaries_per_component = {}
    for row in rows.values():
        if row["linkPrecedence"] == "primary":
            root = find(row["id"])
            primaries_per_component[root] = primaries_per_component.get(root, 0) + 1
    roots = {find(contact_id) for contact_id in rows}
    for root in roots:
        assert primaries_per_component.get(root) == 1

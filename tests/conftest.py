"""Pytest fixtures shared by the API, voting and integration tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import main
from auth import get_current_user


class FakeCursor:
    """Cursor stand-in that answers queries by SQL fragment.

    ``rules`` is a list of ``(fragment, result)`` pairs; the first fragment
    found in an executed statement decides what ``fetchone``/``fetchall``
    return. ``result`` may be a callable taking the query params.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.executed = []
        self.result = None
        self.closed = False

    def execute(self, sql, params=None):
        statement = " ".join(sql.split())
        self.executed.append((statement, params))
        self.result = None
        for fragment, result in self.rules:
            if fragment in statement:
                self.result = result(params) if callable(result) else result
                break

    def fetchone(self):
        if isinstance(self.result, list):
            return self.result[0] if self.result else None
        return self.result

    def fetchall(self):
        if self.result is None:
            return []
        if isinstance(self.result, list):
            return self.result
        return [self.result]

    def statements(self, fragment):
        return [s for s, _ in self.executed if fragment in s]

    def close(self):
        self.closed = True


@pytest.fixture
def make_cursor():
    return FakeCursor


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def student_user():
    return {
        "id": 7,
        "full_name": "Test Student",
        "email": "student@college.edu",
        "student_id": "S12345",
        "year": "2nd Year",
        "department": "Engineering",
        "role": "student",
        "approved": True,
        "created_at": None,
    }


@pytest.fixture
def admin_user():
    return {
        "id": 1,
        "full_name": "Admin User",
        "email": "admin@college.edu",
        "student_id": "ADMIN001",
        "year": "N/A",
        "department": None,
        "role": "admin",
        "approved": True,
        "created_at": None,
    }


@pytest.fixture
def open_election(now):
    return {
        "id": 3,
        "title": "Student Council 2026",
        "description": "",
        "status": "active",
        "start_date": now - timedelta(hours=1),
        "end_date": now + timedelta(hours=1),
    }


@pytest.fixture
def president_position():
    return {"id": 11, "election_id": 3, "title": "President", "description": "", "max_selections": 1}


@pytest.fixture
def vote_cursor(make_cursor, open_election, president_position):
    """Cursor scripted for one successful ballot for candidate 21 or 22."""
    def _build(election=open_election, position=president_position, already_voted=False, vote_rows=None):
        return make_cursor([
            ("FROM elections", election),
            ("FROM positions", position),
            ("FROM candidates", [{"id": 21}, {"id": 22}]),
            ("INSERT INTO votes (", None if already_voted else {"id": 99}),
            ("FROM votes v", vote_rows or []),
        ])
    return _build


@pytest.fixture
def client():
    test_client = TestClient(main.app)
    yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def login_as():
    """Make every request run as ``user`` without touching the database."""
    def _login(user):
        main.app.dependency_overrides[get_current_user] = lambda: user
    return _login


@pytest.fixture
def mock_db(monkeypatch):
    """Route main's connections to a MagicMock wrapping ``cursor``."""
    def _install(cursor):
        conn = MagicMock()
        conn.cursor.return_value = cursor
        monkeypatch.setattr(main, "get_db_connection", lambda: conn)
        return conn
    return _install

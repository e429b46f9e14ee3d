"""
Pytest configuration and fixtures for backend tests
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-integrity-tests")
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")

import copy
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError
from starlette.testclient import TestClient

from proctorwatch.core.host import ProcessInfo
from proctorwatch.core.security import create_access_token, get_password_hash
from proctorwatch.core.telemetry import Connection, TelemetrySample
from proctorwatch.dependencies import IntegrityServices, get_db, get_services
from proctorwatch.main import app
from proctorwatch.utils.clock import parse_timestamp
from proctorwatch.utils.exceptions import NativeCallFailure, TelemetryFetchFailure


# ============================================================================
# In-memory PostgREST double
# ============================================================================

class FakeResponse:
    def __init__(self, data):
        self.data = data


def _comparable(value):
    if isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValueError:
            return value
    return value


class FakeQuery:
    """Subset of the postgrest request builder used by the services"""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.operation = "select"
        self.payload: Any = None
        self.filters: List = []
        self.ordering: Optional[tuple] = None
        self.row_limit: Optional[int] = None

    # Operations
    def select(self, *columns):
        self.operation = "select"
        return self

    def insert(self, row):
        self.operation = "insert"
        self.payload = row
        return self

    def update(self, values):
        self.operation = "update"
        self.payload = values
        return self

    def delete(self):
        self.operation = "delete"
        return self

    # Filters
    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def _compare(self, column, value, op):
        def check(row):
            current = row.get(column)
            if current is None:
                return False
            return op(_comparable(current), _comparable(value))
        self.filters.append(check)
        return self

    def gt(self, column, value):
        return self._compare(column, value, lambda a, b: a > b)

    def gte(self, column, value):
        return self._compare(column, value, lambda a, b: a >= b)

    def lt(self, column, value):
        return self._compare(column, value, lambda a, b: a < b)

    def lte(self, column, value):
        return self._compare(column, value, lambda a, b: a <= b)

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def _matches(self, row):
        return all(check(row) for check in self.filters)

    def execute(self):
        with self.db.lock:
            self.db.statements.append((self.table_name, self.operation))
            return getattr(self, f"_execute_{self.operation}")(self.db.tables.setdefault(self.table_name, []))

    def _execute_select(self, rows):
        result = [copy.deepcopy(r) for r in rows if self._matches(r)]
        if self.ordering:
            column, desc = self.ordering
            present = [r for r in result if r.get(column) is not None]
            missing = [r for r in result if r.get(column) is None]
            present.sort(key=lambda r: _comparable(r[column]), reverse=desc)
            result = present + missing
        if self.row_limit is not None:
            result = result[:self.row_limit]
        return FakeResponse(result)

    def _execute_insert(self, rows):
        new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
        stored = []
        for row in new_rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            for unique in self.db.unique.get(self.table_name, []):
                if unique(rows, row):
                    raise APIError({"code": "23505", "message": "duplicate key value violates unique constraint"})
            rows.append(row)
            stored.append(copy.deepcopy(row))
        return FakeResponse(stored)

    def _execute_update(self, rows):
        updated = []
        for row in rows:
            if self._matches(row):
                row.update(copy.deepcopy(self.payload))
                updated.append(copy.deepcopy(row))
        return FakeResponse(updated)

    def _execute_delete(self, rows):
        deleted = [r for r in rows if self._matches(r)]
        rows[:] = [r for r in rows if not self._matches(r)]
        return FakeResponse(deleted)


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        with self.db.lock:
            self.db.statements.append((self.name, "rpc"))
            return FakeResponse(self.db.functions[self.name](self.db, **self.params))


def _increment_session_flag(db, p_session_id, p_severity):
    column = {"RED": "red_flags", "ORANGE": "orange_flags"}[p_severity]
    for row in db.tables.get("exam_sessions", []):
        if row["id"] == p_session_id:
            row[column] = row.get(column, 0) + 1
            return copy.deepcopy(row)
    return None


def _live_code_exists(rows, row):
    return any(r["code"] == row.get("code") and not r.get("used") for r in rows)


class FakeSupabase:
    """Tables as lists of dicts; each statement runs under one lock"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.lock = threading.Lock()
        self.statements: List[tuple] = []
        self.functions = {"increment_session_flag": _increment_session_flag}
        self.unique = {"override_codes": [_live_code_exists]}

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    def rows(self, name) -> List[Dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def seed(self, name, **row) -> Dict[str, Any]:
        row.setdefault("id", str(uuid.uuid4()))
        self.rows(name).append(row)
        return row


# ============================================================================
# Host doubles
# ============================================================================

class FakeHost:
    """Scripted HostCapabilities that records every call"""

    def __init__(self, processes=None, foreground="ProctorWatch - Exam"):
        self.processes = [ProcessInfo(pid, name) for pid, name in (processes or [])]
        self.foreground = foreground
        self.calls: List[tuple] = []
        self.key_filter = None
        self.fail = set()

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise NativeCallFailure(name, "scripted failure")

    def list_processes(self):
        self._record("list_processes")
        return list(self.processes)

    def kill_process(self, pid):
        self._record("kill_process", pid)
        self.processes = [p for p in self.processes if p.pid != pid]

    def clear_clipboard(self):
        self._record("clear_clipboard")

    def get_foreground_window(self):
        self._record("get_foreground_window")
        return self.foreground

    def set_focus(self):
        self._record("set_focus")

    def pin_window(self, on_top, fullscreen):
        self._record("pin_window", on_top, fullscreen)

    def install_key_hook(self, key_filter):
        self._record("install_key_hook")
        self.key_filter = key_filter

    def uninstall_key_hook(self):
        self._record("uninstall_key_hook")
        self.key_filter = None

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


class FakeTelemetry:
    def __init__(self, sample: Optional[TelemetrySample] = None, error: bool = False):
        self.sample = sample or TelemetrySample(processes=[], connections=[], interfaces=["eth0"])
        self.error = error
        self.collected = 0

    def collect(self):
        self.collected += 1
        if self.error:
            raise TelemetryFetchFailure("scripted failure")
        return self.sample


def established(port: int, remote: bool = False) -> Connection:
    if remote:
        return Connection(local_port=50000, remote_port=port, status="ESTABLISHED")
    return Connection(local_port=port, remote_port=50000, status="ESTABLISHED")


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def telemetry():
    return FakeTelemetry()


@pytest.fixture
def services(db, clock, host, telemetry):
    return IntegrityServices(
        db,
        host_factory=lambda: host,
        telemetry_factory=lambda: telemetry,
        now=clock,
    )


@pytest.fixture
def mock_admin(db):
    return db.seed(
        "users", username="admin1", role="admin", is_active=True,
        password_hash=get_password_hash("AdminPass123"),
    )


@pytest.fixture
def mock_teacher(db):
    return db.seed("users", username="teacher1", role="teacher", is_active=True)


@pytest.fixture
def mock_student(db):
    return db.seed("users", username="student1", role="student", is_active=True)


@pytest.fixture
def mock_test(db, clock):
    return db.seed(
        "tests",
        title="Physics Midterm",
        start_time=(clock() - timedelta(hours=1)).isoformat(),
        end_time=(clock() + timedelta(hours=2)).isoformat(),
        duration_minutes=60,
    )


def _session(db, student, test, status, **extra):
    row = {
        "student_id": student["id"],
        "test_id": test["id"],
        "status": status,
        "red_flags": 0,
        "orange_flags": 0,
        "score": None,
    }
    row.update(extra)
    return db.seed("exam_sessions", **row)


@pytest.fixture
def scheduled_session(db, mock_student, mock_test):
    return _session(db, mock_student, mock_test, "scheduled")


@pytest.fixture
def active_session(db, mock_student, mock_test, clock):
    return _session(db, mock_student, mock_test, "in_progress", started_at=clock().isoformat())


@pytest.fixture
def submitted_session(db, mock_student, mock_test, clock):
    return _session(
        db, mock_student, mock_test, "submitted",
        started_at=(clock() - timedelta(minutes=50)).isoformat(),
        ended_at=clock().isoformat(),
        score=82,
    )


def _headers(user):
    token = create_access_token({"sub": user["id"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_auth_headers(mock_admin):
    return _headers(mock_admin)


@pytest.fixture
def teacher_auth_headers(mock_teacher):
    return _headers(mock_teacher)


@pytest.fixture
def auth_headers(mock_student):
    return _headers(mock_student)


@pytest.fixture
def client(db, services):
    """FastAPI test client bound to the in-memory store"""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

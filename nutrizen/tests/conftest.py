# nutrizen/tests/conftest.py
import uuid
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from nutrizen.models.user import AuthenticatedUser
from nutrizen.services.onboarding_service import clear_onboarding_cache


def api_error(code: str, message: str = "db error") -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


# --- Fake Supabase client ---
class FakeQuery:
    """
    Chainable stand-in for the postgrest request builder, backed by plain
    lists of dicts. `or_` filters are recorded but not evaluated.
    """

    def __init__(self, db: "FakeClient", table: str):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.or_filters: List[str] = []
        self._negate_next = False
        self._limit: Optional[int] = None
        self._order: Optional[tuple] = None
        self._single: Optional[str] = None

    # actions
    def select(self, *columns, **kwargs):
        self.action = "select"
        return self

    def insert(self, rows):
        self.action, self.payload = "insert", rows
        return self

    def upsert(self, rows, on_conflict=None, **kwargs):
        self.action, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def update(self, fields):
        self.action, self.payload = "update", fields
        return self

    def delete(self):
        self.action = "delete"
        return self

    # filters
    def _add(self, predicate):
        if self._negate_next:
            self._negate_next = False
            self.filters.append(lambda row: not predicate(row))
        else:
            self.filters.append(predicate)
        return self

    @property
    def not_(self):
        self._negate_next = True
        return self

    def eq(self, col, value):
        return self._add(lambda row: row.get(col) == value)

    def neq(self, col, value):
        return self._add(lambda row: row.get(col) != value)

    def gt(self, col, value):
        return self._add(lambda row: row.get(col) is not None and row.get(col) > value)

    def gte(self, col, value):
        return self._add(lambda row: row.get(col) is not None and row.get(col) >= value)

    def lt(self, col, value):
        return self._add(lambda row: row.get(col) is not None and row.get(col) < value)

    def lte(self, col, value):
        return self._add(lambda row: row.get(col) is not None and row.get(col) <= value)

    def is_(self, col, value):
        expected = None if value in (None, "null") else value
        return self._add(lambda row: row.get(col) is expected if expected is None else row.get(col) == expected)

    def in_(self, col, values):
        values = list(values)
        return self._add(lambda row: row.get(col) in values)

    def or_(self, expression):
        self.or_filters.append(expression)
        return self

    def order(self, col, desc=False, **kwargs):
        self._order = (col, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def maybe_single(self):
        self._single = "maybe"
        return self

    def single(self):
        self._single = "single"
        return self

    # execution
    def _matching(self) -> List[Dict[str, Any]]:
        return [row for row in self.db.rows(self.table_name) if all(f(row) for f in self.filters)]

    def _store(self, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        if self.table_name == "user_weekly_menus":
            row.setdefault("menu_id", str(uuid.uuid4()))
        self.db.rows(self.table_name).append(row)
        return row

    def _run(self) -> List[Dict[str, Any]]:
        if self.action == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            return [self._store(r) for r in rows]

        if self.action == "upsert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = [k.strip() for k in (self.on_conflict or "id").split(",")]
            out = []
            for new in rows:
                existing = next(
                    (r for r in self.db.rows(self.table_name) if all(r.get(k) == new.get(k) for k in keys)),
                    None,
                )
                if existing is not None:
                    existing.update(new)
                    out.append(existing)
                else:
                    out.append(self._store(new))
            return out

        matched = self._matching()
        if self.action == "update":
            for row in matched:
                row.update(self.payload)
            return matched
        if self.action == "delete":
            table = self.db.rows(self.table_name)
            table[:] = [r for r in table if r not in matched]
            return matched

        if self._order:
            col, desc = self._order
            matched = sorted(matched, key=lambda r: (r.get(col) is None, r.get(col)), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return [dict(r) for r in matched]

    def execute(self):
        self.db.executed.append((self.table_name, self.action, self.payload))
        error = self.db.table_errors.get((self.table_name, self.action)) or self.db.table_errors.get(
            (self.table_name, "*")
        )
        if error is not None:
            raise error

        rows = self._run()
        if self._single == "maybe":
            return SimpleNamespace(data=rows[0]) if rows else None
        if self._single == "single":
            if not rows:
                raise api_error("PGRST116", "JSON object requested, multiple (or no) rows returned")
            return SimpleNamespace(data=rows[0])
        return SimpleNamespace(data=rows, count=len(rows))


class FakeRpc:

    def __init__(self, db: "FakeClient", name: str, params: Dict[str, Any]):
        self.db, self.name, self.params = db, name, params

    def execute(self):
        self.db.rpc_calls.append((self.name, self.params))
        if self.name not in self.db.rpc_handlers:
            raise api_error("PGRST202", f"Could not find the function {self.name}")
        handler = self.db.rpc_handlers[self.name]
        if isinstance(handler, Exception):
            raise handler
        data = handler(self.params) if callable(handler) else handler
        return SimpleNamespace(data=data)


class FakeAuth:

    def __init__(self):
        self.tokens: Dict[str, SimpleNamespace] = {}
        self.admin = MagicMock()

    def get_user(self, token):
        user = self.tokens.get(token)
        if user is None:
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=user)


class FakeClient:

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.table_errors: Dict[tuple, Exception] = {}
        self.rpc_handlers: Dict[str, Any] = {}
        self.rpc_calls: List[tuple] = []
        self.executed: List[tuple] = []
        self.auth = FakeAuth()

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def seed(self, name: str, *rows: Dict[str, Any]) -> None:
        for row in rows:
            self.rows(name).append(dict(row))

    def fail(self, table: str, error: Exception, action: str = "*") -> None:
        self.table_errors[(table, action)] = error

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        return FakeRpc(self, name, params or {})

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [params for rpc_name, params in self.rpc_calls if rpc_name == name]


@pytest.fixture
def fake_db():
    return FakeClient()


@pytest.fixture
def user():
    return AuthenticatedUser(id="11111111-2222-3333-4444-555555555555", email="lea@example.com", access_token="tok-1")


@pytest.fixture(autouse=True)
def clear_onboarding_state():
    clear_onboarding_cache()
    yield
    clear_onboarding_cache()


# --- Fake LLM gateway (OpenAI-compatible client shape) ---
class FakeOpenAI:

    def __init__(self, answers=None, error: Optional[Exception] = None):
        self.answers = list(answers or [])
        self.error = error
        self.requests: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        content = self.answers.pop(0) if self.answers else None
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def fake_openai():
    return FakeOpenAI

import copy
import itertools
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from library_app.auth import AuthService
from library_app.cache_manager import cache_manager
from library_app.models import utcnow
from library_app.services.supabase import NO_SINGLE_ROW, BackendError, Query
from library_app.ui_helpers import OUTPUT_MODE_ENV


def _ilike(value: Any, pattern: str) -> bool:
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, str(value or ""), re.IGNORECASE | re.DOTALL) is not None


def _matches(row: Dict[str, Any], column: str, op: str, value: Any) -> bool:
    actual = row.get(column)
    if op == "eq":
        if isinstance(value, bool) or isinstance(actual, bool):
            return actual is value
        return actual == value or str(actual) == str(value)
    if op == "ilike":
        return _ilike(actual, value)
    raise AssertionError(f"Unsupported operator {op}")


class FakeBackend:
    """Tables, auth users, stored objects and functions of a hosted backend, in memory."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            "books": [],
            "borrows": [],
            "profiles": [],
            "admin_codes": [],
        }
        self.users: Dict[str, Dict[str, Any]] = {}
        self.passwords: Dict[str, str] = {}
        self.tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.objects: Dict[tuple, bytes] = {}
        self.function_handler: Optional[Callable[..., Any]] = None
        self.function_calls: List[Dict[str, Any]] = []
        self._counter = itertools.count(1)

    # --- Seeding helpers ---
    def add_user(self, email: str, password: str = "secret123", role: str = "member",
                 full_name: Optional[str] = None) -> Dict[str, Any]:
        user = {
            "id": str(uuid.uuid4()),
            "email": email,
            "user_metadata": {"role": role, "full_name": full_name},
            "created_at": utcnow().isoformat(),
        }
        self.users[user["id"]] = user
        self.passwords[email] = password
        # Mirrors the trigger that creates a profile for every new account
        self.tables["profiles"].append({
            "id": user["id"],
            "email": email,
            "full_name": full_name,
            "role": role,
            "created_at": user["created_at"],
        })
        return copy.deepcopy(user)

    def add_book(self, title: str, author: str = "Author", isbn: str = "0000000000",
                 category: str = "Fiction", available: bool = True, **extra: Any) -> Dict[str, Any]:
        row = {"title": title, "author": author, "isbn": isbn, "category": category, "available": available}
        row.update(extra)
        return self.insert("books", [row])[0]

    def add_admin_code(self, code: str, is_used: bool = False) -> Dict[str, Any]:
        return self.insert("admin_codes", [{"code": code, "is_used": is_used, "used_at": None}])[0]

    def issue_token(self, user_id: str) -> Dict[str, Any]:
        n = next(self._counter)
        access, refresh = f"access-{n}", f"refresh-{n}"
        self.tokens[access] = user_id
        self.refresh_tokens[refresh] = user_id
        return {
            "access_token": access,
            "refresh_token": refresh,
            "token_type": "bearer",
            "expires_in": 3600,
            "user": copy.deepcopy(self.users[user_id]),
        }

    # --- Table operations ---
    def rows(self, table: str, query: Optional[Query] = None) -> List[Dict[str, Any]]:
        rows = self.tables.setdefault(table, [])
        if query is None:
            return rows
        selected = [r for r in rows if all(_matches(r, c, op, v) for c, op, v in query.filters)]
        if query.any_of:
            selected = [r for r in selected if any(_matches(r, c, op, v) for c, op, v in query.any_of)]
        return selected

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        created = []
        for row in rows:
            record = {"id": str(uuid.uuid4()), "created_at": utcnow().isoformat()}
            record.update(copy.deepcopy(row))
            if table == "books":
                record.setdefault("updated_at", record["created_at"])
                record.setdefault("cover_image_url", None)
            self.tables.setdefault(table, []).append(record)
            created.append(copy.deepcopy(record))
        return created


class FakeDB:
    def __init__(self, backend: FakeBackend):
        self.backend = backend

    def select(self, query: Query, single: bool = False) -> Any:
        rows = [copy.deepcopy(r) for r in self.backend.rows(query.table, query)]
        for row in rows:
            for embed in query.embeds:
                related = [
                    r for r in self.backend.rows(embed.table)
                    if str(r.get("id")) == str(row.get(embed.foreign_key))
                ]
                row[embed.alias] = copy.deepcopy(related[0]) if related else None
        if query.order_by:
            rows.sort(key=lambda r: str(r.get(query.order_by) or ""), reverse=not query.ascending)
        if query.columns != "*":
            names = [c.strip() for c in query.columns.split(",")]
            aliases = [e.alias for e in query.embeds]
            rows = [{k: v for k, v in r.items() if k in names or k in aliases} for r in rows]
        if single:
            if len(rows) != 1:
                raise BackendError(
                    "JSON object requested, multiple (or no) rows returned", status_code=406, code=NO_SINGLE_ROW
                )
            return rows[0]
        return rows

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self.backend.insert(table, rows)

    def update(self, query: Query, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not query.has_filters:
            raise ValueError("Refusing to update without a filter.")
        updated = []
        for row in self.backend.rows(query.table, query):
            row.update(copy.deepcopy(values))
            updated.append(copy.deepcopy(row))
        return updated

    def delete(self, query: Query) -> None:
        if not query.has_filters:
            raise ValueError("Refusing to delete without a filter.")
        doomed = self.backend.rows(query.table, query)
        self.backend.tables[query.table] = [r for r in self.backend.tables[query.table] if r not in doomed]


class FakeAuth:
    def __init__(self, backend: FakeBackend):
        self.backend = backend

    def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if email in self.backend.passwords:
            raise BackendError("User already registered", status_code=422)
        data = data or {}
        return self.backend.add_user(email, password, role=data.get("role", "member"),
                                     full_name=data.get("full_name"))

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        if self.backend.passwords.get(email) != password:
            raise BackendError("Invalid login credentials", status_code=400)
        user_id = next(uid for uid, u in self.backend.users.items() if u["email"] == email)
        return self.backend.issue_token(user_id)

    def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        user_id = self.backend.refresh_tokens.pop(refresh_token, None)
        if user_id is None:
            raise BackendError("Invalid Refresh Token", status_code=400)
        return self.backend.issue_token(user_id)

    def sign_out(self, access_token: str) -> None:
        if self.backend.tokens.pop(access_token, None) is None:
            raise BackendError("invalid JWT", status_code=401)

    def get_user(self, access_token: str) -> Dict[str, Any]:
        user_id = self.backend.tokens.get(access_token)
        if user_id is None:
            raise BackendError("invalid JWT", status_code=401)
        return copy.deepcopy(self.backend.users[user_id])

    def admin_list_users(self, per_page: int = 200) -> List[Dict[str, Any]]:
        return [copy.deepcopy(u) for u in self.backend.users.values()]


class FakeStorage:
    def __init__(self, backend: FakeBackend):
        self.backend = backend

    def upload(self, bucket: str, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        self.backend.objects[(bucket, path)] = content
        return f"{bucket}/{path}"

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"http://backend.test/storage/v1/object/public/{bucket}/{path}"


class FakeFunctions:
    def __init__(self, backend: FakeBackend):
        self.backend = backend

    def invoke(self, name: str, path: str = "", access_token: Optional[str] = None, method: str = "GET",
               payload: Optional[Dict[str, Any]] = None) -> Any:
        self.backend.function_calls.append(
            {"name": name, "path": path, "access_token": access_token, "method": method}
        )
        if self.backend.function_handler is None:
            raise BackendError(f"Failed to call function {name}", status_code=404)
        return self.backend.function_handler(name, path, access_token, method, payload)


class FakeSupabaseClient:
    """Stands in for SupabaseClient, sharing one FakeBackend across tokens."""

    def __init__(self, backend: FakeBackend, access_token: Optional[str] = None):
        self.backend = backend
        self.url = "http://backend.test"
        self.key = "anon-key"
        self.access_token = access_token
        self.db = FakeDB(backend)
        self.auth = FakeAuth(backend)
        self.storage = FakeStorage(backend)
        self.functions = FakeFunctions(backend)

    def with_token(self, access_token: Optional[str]) -> "FakeSupabaseClient":
        return FakeSupabaseClient(self.backend, access_token=access_token)


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    cache_manager.clear()
    AuthService._listeners.clear()
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)
    yield
    cache_manager.clear()
    AuthService._listeners.clear()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def fake_client(backend):
    return FakeSupabaseClient(backend)


@pytest.fixture
def member(backend):
    return backend.add_user("member@example.com", "secret123", role="member", full_name="Mia Member")


@pytest.fixture
def admin(backend):
    return backend.add_user("admin@example.com", "secret123", role="admin", full_name="Ada Admin")


@pytest.fixture
def web(fake_client):
    from library_app.api import app, get_supabase_client

    app.dependency_overrides[get_supabase_client] = lambda: fake_client
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def sign_in(web):
    """Post the login form; the session cookie stays on ``web``."""
    def _sign_in(email: str, password: str = "secret123"):
        return web.post("/login", data={"email": email, "password": password}, follow_redirects=False)
    return _sign_in

"""Thin client for the hosted backend (Supabase).

Covers the four services the application talks to:

- the PostgREST database API (``/rest/v1``),
- the GoTrue auth API (``/auth/v1``),
- the storage API (``/storage/v1``),
- edge functions (``/functions/v1``).

Every non-2xx response is raised as :class:`BackendError` carrying the
provider's message and error code.
"""

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from library_app.config import settings
from library_app.services.http_client import BackendHTTPClient, get_http_client

logger = logging.getLogger(__name__)

# PostgREST error code for ``single()`` selects that did not match exactly one row
NO_SINGLE_ROW = "PGRST116"
# Postgres error code for a value that does not parse as the column type, e.g. a malformed uuid
INVALID_TEXT_REPRESENTATION = "22P02"


class BackendError(Exception):
    """Error reported by the hosted backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "BackendError":
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {}
        message = (
            payload.get("message")
            or payload.get("msg")
            or payload.get("error_description")
            or payload.get("error")
            or response.text
            or f"HTTP {response.status_code}"
        )
        code = payload.get("code") or payload.get("error_code")
        return cls(str(message), status_code=response.status_code, code=str(code) if code is not None else None)


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    error = BackendError.from_response(response)
    logger.warning(
        "Backend request failed: %s %s -> %s %s",
        response.request.method, response.request.url.path, response.status_code, error.message,
    )
    raise error


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _quote_or_value(value: str) -> str:
    """Quote a value used inside an ``or=(...)`` group."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class Embed:
    """A nested select, e.g. ``book:book_id(*)``."""
    alias: str
    foreign_key: str
    table: str


@dataclass
class Query:
    """Filters and ordering for one table, encoded as PostgREST parameters."""
    table: str
    columns: str = "*"
    embeds: List[Embed] = field(default_factory=list)
    filters: List[Tuple[str, str, Any]] = field(default_factory=list)
    any_of: List[Tuple[str, str, Any]] = field(default_factory=list)
    order_by: Optional[str] = None
    ascending: bool = True

    def select(self, columns: str) -> "Query":
        self.columns = columns
        return self

    def embed(self, alias: str, foreign_key: str, table: str) -> "Query":
        self.embeds.append(Embed(alias, foreign_key, table))
        return self

    def eq(self, column: str, value: Any) -> "Query":
        self.filters.append((column, "eq", value))
        return self

    def ilike(self, column: str, pattern: str) -> "Query":
        self.filters.append((column, "ilike", pattern))
        return self

    def search(self, columns: List[str], term: str) -> "Query":
        """Case-insensitive substring match on any of ``columns``."""
        self.any_of = [(column, "ilike", f"*{term}*") for column in columns]
        return self

    def order(self, column: str, ascending: bool = True) -> "Query":
        self.order_by = column
        self.ascending = ascending
        return self

    @property
    def has_filters(self) -> bool:
        return bool(self.filters or self.any_of)

    def select_clause(self) -> str:
        parts = [self.columns]
        parts.extend(f"{e.alias}:{e.foreign_key}(*)" for e in self.embeds)
        return ",".join(parts)

    def filter_params(self) -> List[Tuple[str, str]]:
        params = [(column, f"{op}.{_encode_value(value)}") for column, op, value in self.filters]
        if self.any_of:
            group = ",".join(
                f"{column}.{op}.{_quote_or_value(_encode_value(value))}" for column, op, value in self.any_of
            )
            params.append(("or", f"({group})"))
        return params

    def to_params(self) -> List[Tuple[str, str]]:
        params = [("select", self.select_clause())]
        params.extend(self.filter_params())
        if self.order_by:
            params.append(("order", f"{self.order_by}.{'asc' if self.ascending else 'desc'}"))
        return params


class PostgrestAPI:
    """Table reads and writes through ``/rest/v1``."""

    def __init__(self, http: BackendHTTPClient, base_url: str, headers: Callable[[], Dict[str, str]]):
        self._http = http
        self._base_url = f"{base_url}/rest/v1"
        self._headers = headers

    def _url(self, table: str) -> str:
        return f"{self._base_url}/{table}"

    def select(self, query: Query, single: bool = False) -> Any:
        headers = self._headers()
        if single:
            headers["Accept"] = "application/vnd.pgrst.object+json"
        response = self._http.get_with_retry(self._url(query.table), params=query.to_params(), headers=headers)
        _raise_for_status(response)
        return response.json()

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        headers = self._headers()
        headers["Prefer"] = "return=representation"
        response = self._http.request("POST", self._url(table), json=rows, headers=headers)
        _raise_for_status(response)
        return response.json()

    def update(self, query: Query, values: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not query.has_filters:
            raise ValueError("Refusing to update without a filter.")
        headers = self._headers()
        headers["Prefer"] = "return=representation"
        response = self._http.request(
            "PATCH", self._url(query.table), params=query.filter_params(), json=values, headers=headers
        )
        _raise_for_status(response)
        return response.json()

    def delete(self, query: Query) -> None:
        if not query.has_filters:
            raise ValueError("Refusing to delete without a filter.")
        response = self._http.request(
            "DELETE", self._url(query.table), params=query.filter_params(), headers=self._headers()
        )
        _raise_for_status(response)


class AuthAPI:
    """Email/password auth through ``/auth/v1``."""

    def __init__(self, http: BackendHTTPClient, base_url: str, api_key: str):
        self._http = http
        self._base_url = f"{base_url}/auth/v1"
        self._api_key = api_key

    def _headers(self, bearer: Optional[str] = None) -> Dict[str, str]:
        return {"apikey": self._api_key, "Authorization": f"Bearer {bearer or self._api_key}"}

    def _post(self, path: str, payload: Optional[Dict[str, Any]] = None, bearer: Optional[str] = None,
              params: Optional[Dict[str, str]] = None) -> httpx.Response:
        response = self._http.request(
            "POST", f"{self._base_url}{path}", json=payload or {}, params=params, headers=self._headers(bearer)
        )
        _raise_for_status(response)
        return response

    def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create an account; ``data`` ends up as the user's metadata."""
        payload = {"email": email, "password": password, "data": data or {}}
        return self._post("/signup", payload).json()

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        return self._post(
            "/token", {"email": email, "password": password}, params={"grant_type": "password"}
        ).json()

    def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        return self._post(
            "/token", {"refresh_token": refresh_token}, params={"grant_type": "refresh_token"}
        ).json()

    def sign_out(self, access_token: str) -> None:
        self._post("/logout", bearer=access_token)

    def get_user(self, access_token: str) -> Dict[str, Any]:
        response = self._http.get_with_retry(f"{self._base_url}/user", headers=self._headers(access_token))
        _raise_for_status(response)
        return response.json()

    def admin_list_users(self, per_page: int = 200) -> List[Dict[str, Any]]:
        """List every auth user. Needs the service-role key."""
        users: List[Dict[str, Any]] = []
        page = 1
        while True:
            response = self._http.get_with_retry(
                f"{self._base_url}/admin/users",
                params={"page": page, "per_page": per_page},
                headers=self._headers(),
            )
            _raise_for_status(response)
            batch = response.json().get("users", [])
            users.extend(batch)
            if len(batch) < per_page:
                return users
            page += 1


class StorageAPI:
    """Object uploads through ``/storage/v1``."""

    def __init__(self, http: BackendHTTPClient, base_url: str, headers: Callable[[], Dict[str, str]]):
        self._http = http
        self._base_url = f"{base_url}/storage/v1"
        self._headers = headers

    def upload(self, bucket: str, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        headers = self._headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "false"
        response = self._http.request(
            "POST", f"{self._base_url}/object/{bucket}/{quote(path)}", content=content, headers=headers
        )
        _raise_for_status(response)
        return response.json().get("Key", f"{bucket}/{path}")

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self._base_url}/object/public/{bucket}/{quote(path)}"


class FunctionsAPI:
    """Edge function calls through ``/functions/v1``."""

    def __init__(self, http: BackendHTTPClient, functions_url: str, api_key: str):
        self._http = http
        self._base_url = functions_url
        self._api_key = api_key

    def invoke(self, name: str, path: str = "", access_token: Optional[str] = None, method: str = "GET",
               payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self._base_url}/{name}"
        if path:
            url = f"{url}/{path.lstrip('/')}"
        headers = {"apikey": self._api_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        response = self._http.request(method, url, json=payload, headers=headers)
        if not response.is_success:
            try:
                message = response.json().get("error")
            except (ValueError, AttributeError):
                message = None
            logger.warning("Function %s/%s returned %s", name, path, response.status_code)
            raise BackendError(message or f"Failed to call function {name}", status_code=response.status_code)
        return response.json()


class SupabaseClient:
    """Database, auth, storage and functions bound to one API key.

    Requests carry ``access_token`` as bearer when set (see :meth:`with_token`),
    so row-level security applies to the signed-in user.
    """

    def __init__(self, url: str, key: str, *, access_token: Optional[str] = None,
                 functions_url: Optional[str] = None, http: Optional[BackendHTTPClient] = None):
        self.url = url.rstrip("/")
        self.key = key
        self.access_token = access_token
        self.functions_url = (functions_url or f"{self.url}/functions/v1").rstrip("/")
        self.http = http or get_http_client()

        self.db = PostgrestAPI(self.http, self.url, self._headers)
        self.auth = AuthAPI(self.http, self.url, key)
        self.storage = StorageAPI(self.http, self.url, self._headers)
        self.functions = FunctionsAPI(self.http, self.functions_url, key)

    def _headers(self) -> Dict[str, str]:
        return {"apikey": self.key, "Authorization": f"Bearer {self.access_token or self.key}"}

    def with_token(self, access_token: Optional[str]) -> "SupabaseClient":
        return SupabaseClient(
            self.url, self.key, access_token=access_token, functions_url=self.functions_url, http=self.http
        )


@lru_cache(maxsize=1)
def get_supabase() -> SupabaseClient:
    """Client using the public (anon) key."""
    return SupabaseClient(settings.supabase_url, settings.supabase_anon_key, functions_url=settings.functions_url)


@lru_cache(maxsize=1)
def get_service_supabase() -> SupabaseClient:
    """Client using the service-role key; bypasses row-level security."""
    if not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY is not configured.")
    return SupabaseClient(
        settings.supabase_url, settings.supabase_service_role_key, functions_url=settings.functions_url
    )

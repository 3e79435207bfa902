"""The ``admin-api`` serverless function.

Validates the caller's bearer token, requires the ``admin`` role on the
caller's profile and then serves the combined user list. Runs with the
service-role key, so it is the only place the full user list is exposed.

    GET /functions/v1/admin-api/users  ->  {"users": [...]}
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from library_app.config import settings
from library_app.models import Role
from library_app.services.supabase import BackendError, Query, SupabaseClient, get_service_supabase
from library_app.users import ADMIN_FUNCTION, combine_users

logger = logging.getLogger(__name__)

FUNCTION_PREFIX = f"/functions/v1/{ADMIN_FUNCTION}"


class FunctionError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


# --- Models ---
class AdminUserMetadata(BaseModel):
    role: str
    full_name: str


class AdminUserModel(BaseModel):
    id: str
    email: str
    user_metadata: AdminUserMetadata
    created_at: Optional[str] = None


class UsersResponse(BaseModel):
    users: List[AdminUserModel]


# --- Dependencies ---
def get_service_client() -> SupabaseClient:
    return get_service_supabase()


def require_admin_caller(
    authorization: Optional[str] = Header(None),
    client: SupabaseClient = Depends(get_service_client),
) -> Dict[str, Any]:
    """Resolve the caller from the bearer token and require the admin role."""
    if not authorization:
        raise FunctionError(401, "Unauthorized")

    token = authorization.replace("Bearer ", "", 1).strip()
    try:
        user = client.auth.get_user(token)
    except BackendError as e:
        logger.warning("Rejected token: %s", e)
        raise FunctionError(401, "Unauthorized")
    if not user or not user.get("id"):
        raise FunctionError(401, "Unauthorized")

    try:
        profile = client.db.select(Query("profiles").select("role").eq("id", user["id"]), single=True)
    except BackendError as e:
        logger.warning("No profile for %s: %s", user.get("email"), e)
        profile = None
    if not profile or profile.get("role") != Role.ADMIN.value:
        logger.warning("Non-admin caller rejected: %s", user.get("email"))
        raise FunctionError(403, "Forbidden - Admin access required")
    return user


# --- App ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    yield


app = FastAPI(title=ADMIN_FUNCTION, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
router = APIRouter(prefix=FUNCTION_PREFIX)


@app.exception_handler(FunctionError)
async def function_error_handler(request: Request, exc: FunctionError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@router.get("/users", response_model=UsersResponse)
def list_users(
    caller: Dict[str, Any] = Depends(require_admin_caller),
    client: SupabaseClient = Depends(get_service_client),
):
    """All auth users combined with their profile roles."""
    try:
        auth_users = client.auth.admin_list_users()
        profiles = client.db.select(Query("profiles"))
    except BackendError as e:
        raise FunctionError(500, e.message)
    logger.info("User list served to %s", caller.get("email"))
    return {"users": combine_users(auth_users, profiles)}


app.include_router(router)


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def not_found(path: str, caller: Dict[str, Any] = Depends(require_admin_caller)):
    raise FunctionError(404, "Not found")

from typing import Any, Dict, Iterable, List, Optional

from library_app.models import Role, Session, User
from library_app.services.supabase import BackendError, SupabaseClient

ADMIN_FUNCTION = "admin-api"


def combine_users(auth_users: Iterable[Dict[str, Any]], profiles: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge auth records with profile roles.

    The role comes from the profile (``member`` when there is none), the
    name from the auth metadata, falling back to the email's local part.
    """
    roles = {profile.get("id"): profile.get("role") for profile in profiles}
    users = []
    for auth_user in auth_users:
        email = auth_user.get("email") or ""
        metadata = auth_user.get("user_metadata") or {}
        users.append({
            "id": auth_user["id"],
            "email": email,
            "user_metadata": {
                "role": roles.get(auth_user["id"]) or Role.MEMBER.value,
                "full_name": metadata.get("full_name") or (email.split("@")[0] if email else None) or "Unknown",
            },
            "created_at": auth_user.get("created_at"),
        })
    return users


def filter_users(users: List[User], search: Optional[str]) -> List[User]:
    """Case-insensitive match on email, role or full name."""
    if not search:
        return list(users)
    needle = search.strip().lower()
    return [
        user for user in users
        if needle in (user.email or "").lower()
        or needle in user.role.value
        or needle in (user.full_name or "").lower()
    ]


class UserDirectory:
    """Full user list, only reachable through the admin-api function."""

    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    def get_all_users(self, session: Optional[Session]) -> List[User]:
        if session is None:
            raise BackendError("Not authenticated", status_code=401)
        payload = self.client.functions.invoke(ADMIN_FUNCTION, "users", access_token=session.access_token)
        return [User.from_dict(record) for record in payload.get("users", [])]

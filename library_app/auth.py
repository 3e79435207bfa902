import logging
from typing import Any, Callable, Dict, List, Optional

from library_app.forms import RegisterForm
from library_app.models import AdminCode, Role, Session, User, utcnow
from library_app.services.supabase import BackendError, Query, SupabaseClient

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

AuthListener = Callable[[str, Optional[Session]], None]


class RegistrationError(ValueError):
    """Sign-up rejected before reaching the auth provider."""

    def __init__(self, message: str, field: str = "__all__"):
        super().__init__(message)
        self.field = field


class AuthService:
    """Sign-in, sign-up and sign-out against the hosted auth provider.

    Listeners registered with :meth:`on_auth_state_change` are told about
    every session change.
    """

    _listeners: List[AuthListener] = []

    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    # ------------------------- Subscriptions ------------------------- #
    @classmethod
    def on_auth_state_change(cls, callback: AuthListener) -> Callable[[], None]:
        """Register ``callback(event, session)``; returns an unsubscribe function."""
        cls._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in cls._listeners:
                cls._listeners.remove(callback)

        return unsubscribe

    @classmethod
    def _notify(cls, event: str, session: Optional[Session]) -> None:
        for listener in list(cls._listeners):
            listener(event, session)

    # ------------------------- Sessions ------------------------- #
    def sign_in(self, email: str, password: str) -> Session:
        data = self.client.auth.sign_in_with_password(email.strip(), password)
        session = Session.from_token_response(data)
        logger.info("User signed in: %s", session.user.email)
        self._notify(SIGNED_IN, session)
        return session

    def sign_out(self, session: Optional[Session]) -> None:
        if session is not None:
            try:
                self.client.auth.sign_out(session.access_token)
            except BackendError as e:
                # An expired token cannot be revoked; the local session still ends.
                logger.warning("Sign-out failed for %s: %s", session.user.email, e)
            logger.info("User signed out: %s", session.user.email)
        self._notify(SIGNED_OUT, None)

    def refresh(self, session: Session) -> Session:
        if not session.refresh_token:
            raise BackendError("Session has no refresh token", status_code=401)
        data = self.client.auth.refresh_session(session.refresh_token)
        refreshed = Session.from_token_response(data)
        self._notify(TOKEN_REFRESHED, refreshed)
        return refreshed

    def restore(self, data: Optional[Dict[str, Any]]) -> Optional[Session]:
        """Rebuild a stored session, refreshing it when the token expired.

        Returns None when nothing is stored or the refresh is rejected.
        """
        if not data:
            return None
        try:
            session = Session.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed stored session")
            return None
        if not session.is_expired():
            return session
        try:
            return self.refresh(session)
        except BackendError as e:
            logger.info("Session refresh failed for %s: %s", session.user.email, e)
            self._notify(SIGNED_OUT, None)
            return None

    # ------------------------- Registration ------------------------- #
    def find_unused_admin_code(self, code: str) -> Optional[AdminCode]:
        query = Query("admin_codes").eq("code", code).eq("is_used", False)
        rows = self.client.db.select(query)
        return AdminCode.from_dict(rows[0]) if rows else None

    def mark_admin_code_used(self, code: str) -> None:
        self.client.db.update(
            Query("admin_codes").eq("code", code),
            {"is_used": True, "used_at": utcnow().isoformat()},
        )

    def sign_up(self, form: RegisterForm) -> User:
        """Register a new account.

        Admin sign-ups need an unused admin code, which is consumed once the
        account exists.
        """
        if form.role == Role.ADMIN:
            if not form.admin_code or self.find_unused_admin_code(form.admin_code) is None:
                raise RegistrationError("Invalid admin code", field="admin_code")

        data = self.client.auth.sign_up(
            form.email,
            form.password,
            {"role": form.role.value, "full_name": form.full_name},
        )
        # Depending on email confirmation the provider returns a user or a session.
        record = data.get("user") if isinstance(data.get("user"), dict) else data
        user = User.from_dict(record)

        if form.role == Role.ADMIN:
            self.mark_admin_code_used(form.admin_code)
        logger.info("User registered: %s (%s)", user.email, form.role.value)
        return user

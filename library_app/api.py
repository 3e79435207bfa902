import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from library_app.auth import AuthService, RegistrationError
from library_app.borrows import BorrowWorkflow
from library_app.catalog import BookCatalog
from library_app.config import settings
from library_app.forms import BookForm, LoginForm, RegisterForm, form_errors
from library_app.models import BorrowStatus, Session, User, utcnow
from library_app.services.http_client import cleanup_http_client
from library_app.services.supabase import BackendError, SupabaseClient, get_supabase
from library_app.users import UserDirectory, filter_users

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")
templates = Jinja2Templates(directory=TEMPLATES_DIR)

SESSION_KEY = "auth"
FLASH_KEY = "flash"


class LoginRequired(Exception):
    pass


class AdminRequired(Exception):
    pass


def _log_auth_event(event: str, session: Optional[Session]) -> None:
    logger.debug("Auth state changed: %s (%s)", event, session.user.email if session else "-")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    unsubscribe = AuthService.on_auth_state_change(_log_auth_event)
    try:
        yield
    finally:
        unsubscribe()
        cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie=settings.session_cookie,
    max_age=settings.session_max_age,
    same_site="lax",
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    # Pages depend on the signed-in user
    response.headers.setdefault("Cache-Control", "no-store")
    return response


# --- Notifications and rendering ---
def flash(request: Request, message: str, category: str = "info") -> None:
    """Queue a one-shot notification shown on the next rendered page."""
    messages = request.session.get(FLASH_KEY, [])
    messages.append({"message": message, "category": category})
    request.session[FLASH_KEY] = messages


def _session_user(request: Request) -> Optional[User]:
    stored = request.session.get(SESSION_KEY)
    if not stored or "user" not in stored:
        return None
    return User.from_dict(stored["user"])


def render(request: Request, template: str, context: Optional[Dict[str, Any]] = None, status_code: int = 200):
    ctx: Dict[str, Any] = {
        "current_user": _session_user(request),
        "flashes": request.session.pop(FLASH_KEY, []),
        "app_name": settings.app_name,
        "errors": {},
    }
    ctx.update(context or {})
    return templates.TemplateResponse(request, template, ctx, status_code=status_code)


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=303)


# --- Dependencies ---
def get_supabase_client() -> SupabaseClient:
    return get_supabase()


def get_auth_service(client: SupabaseClient = Depends(get_supabase_client)) -> AuthService:
    return AuthService(client)


def get_session(request: Request, auth: AuthService = Depends(get_auth_service)) -> Optional[Session]:
    """Session stored in the cookie, refreshed when its token expired."""
    stored = request.session.get(SESSION_KEY)
    session = auth.restore(stored)
    if session is None:
        request.session.pop(SESSION_KEY, None)
    elif session.to_dict() != stored:
        request.session[SESSION_KEY] = session.to_dict()
    return session


def require_session(session: Optional[Session] = Depends(get_session)) -> Session:
    if session is None:
        raise LoginRequired()
    return session


def require_admin(session: Session = Depends(require_session)) -> Session:
    if not session.user.is_admin:
        raise AdminRequired()
    return session


def get_user_client(
    session: Session = Depends(require_session),
    client: SupabaseClient = Depends(get_supabase_client),
) -> SupabaseClient:
    return client.with_token(session.access_token)


def get_catalog(client: SupabaseClient = Depends(get_user_client)) -> BookCatalog:
    return BookCatalog(client)


def get_borrow_workflow(
    client: SupabaseClient = Depends(get_user_client),
    catalog: BookCatalog = Depends(get_catalog),
) -> BorrowWorkflow:
    return BorrowWorkflow(client, catalog)


def get_user_directory(client: SupabaseClient = Depends(get_user_client)) -> UserDirectory:
    return UserDirectory(client)


# --- Exception handlers ---
@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired):
    return redirect("/login")


@app.exception_handler(AdminRequired)
async def admin_required_handler(request: Request, exc: AdminRequired):
    return redirect("/")


@app.exception_handler(StarletteHTTPException)
async def not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return render(request, "404.html", {"path": request.url.path}, status_code=404)
    return await http_exception_handler(request, exc)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    logger.warning("Backend error on %s: %s", request.url.path, exc.message)
    return render(request, "error.html", {"message": exc.message}, status_code=502)


def _checked(value: Optional[str]) -> bool:
    return (value or "").lower() in ("true", "on", "1", "yes")


def _get_book_or_404(catalog: BookCatalog, book_id: str):
    try:
        return catalog.get_book(book_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Book not found.")


# --- Health ---
@app.get("/health")
def health():
    return {
        "status": "healthy",
        "version": settings.app_version,
        "timestamp": utcnow().isoformat(),
    }


# --- Public pages ---
@app.get("/")
def home(request: Request):
    return render(request, "home.html")


@app.get("/login")
def login_page(request: Request):
    return render(request, "login.html", {"email": ""})


@app.post("/login")
def login_submit(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    auth: AuthService = Depends(get_auth_service),
):
    try:
        form = LoginForm(email=email, password=password)
    except ValidationError as e:
        return render(request, "login.html", {"email": email, "errors": form_errors(e)}, status_code=400)

    try:
        session = auth.sign_in(form.email, form.password)
    except BackendError as e:
        flash(request, f"Error signing in: {e.message}", "error")
        return render(request, "login.html", {"email": email}, status_code=401)

    request.session[SESSION_KEY] = session.to_dict()
    flash(request, "Signed in successfully", "success")
    return redirect("/")


@app.get("/register")
def register_page(request: Request):
    return render(request, "register.html", {"values": {"role": "member"}})


@app.post("/register")
def register_submit(
    request: Request,
    full_name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    role: str = Form("member"),
    admin_code: str = Form(""),
    auth: AuthService = Depends(get_auth_service),
):
    values = {"full_name": full_name, "email": email, "role": role, "admin_code": admin_code}
    try:
        form = RegisterForm(
            full_name=full_name,
            email=email,
            password=password,
            confirm_password=confirm_password,
            role=role,
            admin_code=admin_code,
        )
        auth.sign_up(form)
    except ValidationError as e:
        return render(request, "register.html", {"values": values, "errors": form_errors(e)}, status_code=400)
    except RegistrationError as e:
        return render(request, "register.html", {"values": values, "errors": {e.field: str(e)}}, status_code=400)
    except BackendError as e:
        flash(request, f"Error signing up: {e.message}", "error")
        return render(request, "register.html", {"values": values}, status_code=400)

    flash(request, "Registration successful. Please check your email to verify your account.", "success")
    return redirect("/login")


@app.post("/logout")
def logout(request: Request, auth: AuthService = Depends(get_auth_service)):
    stored = request.session.pop(SESSION_KEY, None)
    session = Session.from_dict(stored) if stored else None
    auth.sign_out(session)
    flash(request, "Signed out successfully", "success")
    return redirect("/")


# --- Member pages ---
@app.get("/books")
def books_page(
    request: Request,
    q: Optional[str] = None,
    category: Optional[str] = None,
    available: Optional[str] = None,
    session: Session = Depends(require_session),
    catalog: BookCatalog = Depends(get_catalog),
):
    available_only = _checked(available)
    books = catalog.list_books(search=q, category=category, available=True if available_only else None)
    return render(request, "books.html", {
        "books": books,
        "categories": catalog.get_categories(),
        "q": q or "",
        "category": category or "",
        "available_only": available_only,
    })


@app.get("/books/{book_id}")
def book_detail(
    request: Request,
    book_id: str,
    session: Session = Depends(require_session),
    catalog: BookCatalog = Depends(get_catalog),
):
    book = _get_book_or_404(catalog, book_id)
    return render(request, "book_detail.html", {"book": book})


@app.post("/books/{book_id}/borrow")
def borrow_book(
    request: Request,
    book_id: str,
    session: Session = Depends(require_session),
    catalog: BookCatalog = Depends(get_catalog),
    borrows: BorrowWorkflow = Depends(get_borrow_workflow),
):
    book = _get_book_or_404(catalog, book_id)
    if not book.available:
        flash(request, "This book is currently not available.", "error")
        return redirect(f"/books/{book.id}")
    try:
        borrows.request_borrow(book.id, session.user.id)
        flash(request, "Borrow request submitted. An administrator will review your request.", "success")
    except BackendError as e:
        flash(request, f"Failed to submit borrow request: {e.message}", "error")
    return redirect(f"/books/{book.id}")


@app.get("/profile")
def profile_page(
    request: Request,
    session: Session = Depends(require_session),
    borrows: BorrowWorkflow = Depends(get_borrow_workflow),
):
    user_borrows = borrows.get_user_borrows(session.user.id)
    return render(request, "profile.html", {
        "user": session.user,
        "groups": BorrowWorkflow.split_by_status(user_borrows),
    })


@app.post("/profile/borrows/{borrow_id}/return")
def return_borrow(
    request: Request,
    borrow_id: str,
    session: Session = Depends(require_session),
    borrows: BorrowWorkflow = Depends(get_borrow_workflow),
):
    try:
        borrows.return_book(borrow_id)
        flash(request, "Book returned successfully", "success")
    except (BackendError, LookupError) as e:
        flash(request, f"Failed to return book: {e}", "error")
    return redirect("/profile")


# --- Admin pages ---
@app.get("/admin")
def admin_dashboard(
    request: Request,
    session: Session = Depends(require_admin),
    catalog: BookCatalog = Depends(get_catalog),
    borrows: BorrowWorkflow = Depends(get_borrow_workflow),
):
    books = catalog.list_books()
    requests = borrows.get_all_borrows(BorrowStatus.REQUESTED)
    return render(request, "admin/dashboard.html", {
        "total_books": len(books),
        "available_books": sum(1 for b in books if b.available),
        "pending_requests": len(requests),
        "requests": requests,
    })


@app.post("/admin/borrows/{borrow_id}/status")
def admin_update_borrow(
    request: Request,
    borrow_id: str,
    status: str = Form(...),
    session: Session = Depends(require_admin),
    borrows: BorrowWorkflow = Depends(get_borrow_workflow),
):
    if status not in (BorrowStatus.APPROVED.value, BorrowStatus.DENIED.value, BorrowStatus.RETURNED.value):
        flash(request, f"Unsupported status: {status}", "error")
        return redirect("/admin")
    try:
        borrows.update_borrow_status(borrow_id, status)
        flash(request, "Status updated. Borrow request has been processed.", "success")
    except (BackendError, LookupError) as e:
        flash(request, f"Failed to update status: {e}", "error")
    return redirect("/admin")


@app.get("/admin/books")
def admin_books(
    request: Request,
    q: Optional[str] = None,
    session: Session = Depends(require_admin),
    catalog: BookCatalog = Depends(get_catalog),
):
    return render(request, "admin/books.html", {"books": catalog.list_books(search=q), "q": q or ""})


@app.post("/admin/books/{book_id}/delete")
def admin_delete_book(
    request: Request,
    book_id: str,
    session: Session = Depends(require_admin),
    catalog: BookCatalog = Depends(get_catalog),
):
    try:
        catalog.delete_book(book_id)
        flash(request, "Book deleted", "success")
    except BackendError as e:
        flash(request, f"Failed to delete book: {e.message}", "error")
    return redirect("/admin/books")


def _read_cover(catalog: BookCatalog, cover_image: Optional[UploadFile]) -> Optional[str]:
    """Upload the submitted cover, if any, and return its public URL."""
    if cover_image is None or not cover_image.filename:
        return None
    # One byte past the limit is enough for the size check
    content = cover_image.file.read(settings.max_upload_size + 1)
    return catalog.upload_cover_image(cover_image.filename, content, cover_image.content_type)


@app.get("/admin/books/add")
def admin_add_book_page(request: Request, session: Session = Depends(require_admin)):
    return render(request, "admin/book_form.html", {"mode": "add", "values": {"available": True}})


@app.post("/admin/books/add")
def admin_add_book(
    request: Request,
    title: str = Form(""),
    author: str = Form(""),
    isbn: str = Form(""),
    category: str = Form(""),
    available: Optional[str] = Form(None),
    cover_image: Optional[UploadFile] = File(None),
    session: Session = Depends(require_admin),
    catalog: BookCatalog = Depends(get_catalog),
):
    values = {"title": title, "author": author, "isbn": isbn, "category": category, "available": _checked(available)}
    try:
        form = BookForm(**values)
    except ValidationError as e:
        return render(request, "admin/book_form.html",
                      {"mode": "add", "values": values, "errors": form_errors(e)}, status_code=400)
    try:
        cover_url = _read_cover(catalog, cover_image)
        catalog.create_book(cover_image_url=cover_url, **form.model_dump())
    except (BackendError, ValueError) as e:
        flash(request, f"Failed to add book: {e}", "error")
        return render(request, "admin/book_form.html", {"mode": "add", "values": values}, status_code=400)

    flash(request, "Book added. The book has been added to the library.", "success")
    return redirect("/admin/books")


@app.get("/admin/books/edit/{book_id}")
def admin_edit_book_page(
    request: Request,
    book_id: str,
    session: Session = Depends(require_admin),
    catalog: BookCatalog = Depends(get_catalog),
):
    book = _get_book_or_404(catalog, book_id)
    return render(request, "admin/book_form.html", {"mode": "edit", "book": book, "values": book.to_dict()})


@app.post("/admin/books/edit/{book_id}")
def admin_edit_book(
    request: Request,
    book_id: str,
    title: str = Form(""),
    author: str = Form(""),
    isbn: str = Form(""),
    category: str = Form(""),
    available: Optional[str] = Form(None),
    cover_image: Optional[UploadFile] = File(None),
    session: Session = Depends(require_admin),
    catalog: BookCatalog = Depends(get_catalog),
):
    book = _get_book_or_404(catalog, book_id)
    values = {"title": title, "author": author, "isbn": isbn, "category": category, "available": _checked(available)}
    context = {"mode": "edit", "book": book, "values": values}
    try:
        form = BookForm(**values)
    except ValidationError as e:
        return render(request, "admin/book_form.html", dict(context, errors=form_errors(e)), status_code=400)

    fields = form.model_dump()
    try:
        cover_url = _read_cover(catalog, cover_image)
        if cover_url:
            fields["cover_image_url"] = cover_url
        catalog.update_book(book.id, **fields)
    except (BackendError, ValueError, LookupError) as e:
        flash(request, f"Failed to update book: {e}", "error")
        return render(request, "admin/book_form.html", context, status_code=400)

    flash(request, "Book updated. The book has been updated successfully.", "success")
    return redirect("/admin/books")


@app.get("/admin/users")
def admin_users(
    request: Request,
    q: Optional[str] = None,
    session: Session = Depends(require_admin),
    directory: UserDirectory = Depends(get_user_directory),
):
    try:
        users = directory.get_all_users(session)
    except BackendError as e:
        flash(request, f"Failed to load users: {e.message}", "error")
        users = []
    return render(request, "admin/users.html", {"users": filter_users(users, q), "q": q or ""})

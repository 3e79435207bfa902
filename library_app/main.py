import logging
import secrets
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console

from library_app.borrows import BorrowWorkflow
from library_app.catalog import BookCatalog
from library_app.config import settings
from library_app.models import AdminCode, Borrow, BorrowStatus, User
from library_app.services.supabase import BackendError, Query, SupabaseClient, get_service_supabase
from library_app.ui_helpers import print_records, set_output_mode
from library_app.users import combine_users, filter_users

APP_NAME = "Library CLI"

console = Console()
logger = logging.getLogger(__name__)

app = typer.Typer(help="Administer the library lending app from the command line.")
admin_code_app = typer.Typer(help="Manage single-use admin registration codes.")
app.add_typer(admin_code_app, name="admin-code")


def get_client() -> SupabaseClient:
    """Service-role client; the CLI acts as an administrator."""
    return get_service_supabase()


def _client_or_exit() -> SupabaseClient:
    try:
        return get_client()
    except RuntimeError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)


def _fail(message: str) -> None:
    print(message)
    raise typer.Exit(code=1)


def _borrow_row(borrow: Borrow) -> dict:
    return {
        "id": borrow.id,
        "book": borrow.book.title if borrow.book else borrow.book_id,
        "user": borrow.user.display_name if borrow.user else borrow.user_id,
        "status": borrow.status.value,
        "borrow_date": borrow.borrow_date.date().isoformat(),
        "due_date": borrow.due_date.date().isoformat(),
        "overdue": borrow.is_overdue,
    }


def _user_row(user: User) -> dict:
    return {"id": user.id, "email": user.email, "full_name": user.display_name, "role": user.role.value}


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)


# --- Servers ---
@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
    browser: bool = typer.Option(True, "--browser/--no-browser", help="Open the site in a browser"),
):
    """Start the web app with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/"
    console.print(f"[green]Starting web app: [link={url}]{url}[/link][/]")
    if browser:
        webbrowser.open(url)
    args = [sys.executable, "-m", "uvicorn", "library_app.api:app", "--host", host, "--port", str(port)]
    subprocess.run(args, check=False)


@app.command("serve-function")
def cli_serve_function(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
):
    """Start the admin-api function locally with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.function_port)
    console.print(f"[green]Starting admin-api function on http://{host}:{port}/functions/v1/admin-api[/]")
    args = [
        sys.executable, "-m", "uvicorn", "library_app.functions.admin_api:app",
        "--host", host, "--port", str(port),
    ]
    subprocess.run(args, check=False)


# --- Catalog ---
@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Match title or author"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    available: bool = typer.Option(False, "--available", help="Only available books"),
):
    """List books ordered by title."""
    catalog = BookCatalog(_client_or_exit())
    try:
        books = catalog.list_books(search=search, category=category, available=True if available else None)
    except BackendError as e:
        _fail(f"Error: {e}")
    print_records(
        "Books",
        [("id", "ID"), ("title", "Title"), ("author", "Author"), ("isbn", "ISBN"),
         ("category", "Category"), ("available", "Available")],
        [book.to_dict() for book in books],
        "No books found.",
    )


@app.command("categories")
def cli_categories():
    """List the distinct book categories."""
    catalog = BookCatalog(_client_or_exit())
    try:
        categories = catalog.get_categories()
    except BackendError as e:
        _fail(f"Error: {e}")
    print_records("Categories", [("category", "Category")], [{"category": c} for c in categories],
                  "No categories found.")


# --- Borrows ---
@app.command("borrows")
def cli_borrows(
    status: Optional[BorrowStatus] = typer.Option(None, "--status", help="Only borrows with this status"),
):
    """List borrow records with their book and member."""
    workflow = BorrowWorkflow(_client_or_exit())
    try:
        borrows = workflow.get_all_borrows(status)
    except BackendError as e:
        _fail(f"Error: {e}")
    print_records(
        "Borrows",
        [("id", "ID"), ("book", "Book"), ("user", "Member"), ("status", "Status"),
         ("borrow_date", "Borrowed"), ("due_date", "Due"), ("overdue", "Overdue")],
        [_borrow_row(b) for b in borrows],
        "No borrows found.",
    )


def _set_status(borrow_id: str, status: BorrowStatus, done: str) -> None:
    workflow = BorrowWorkflow(_client_or_exit())
    try:
        borrow = workflow.update_borrow_status(borrow_id, status)
    except LookupError:
        _fail(f"Borrow {borrow_id} not found.")
    except BackendError as e:
        _fail(f"Error: {e}")
    print(f"Borrow {borrow.id} {done}.")


@app.command("approve")
def cli_approve(borrow_id: str):
    """Approve a borrow request."""
    _set_status(borrow_id, BorrowStatus.APPROVED, "approved")


@app.command("deny")
def cli_deny(borrow_id: str):
    """Deny a borrow request."""
    _set_status(borrow_id, BorrowStatus.DENIED, "denied")


@app.command("return")
def cli_return(borrow_id: str):
    """Mark a borrowed book as returned."""
    _set_status(borrow_id, BorrowStatus.RETURNED, "returned")


# --- Users ---
@app.command("users")
def cli_users(search: Optional[str] = typer.Option(None, "--search", "-s", help="Match email, name or role")):
    """List every registered user with their role."""
    client = _client_or_exit()
    try:
        records = combine_users(client.auth.admin_list_users(), client.db.select(Query("profiles")))
    except BackendError as e:
        _fail(f"Error: {e}")
    users = filter_users([User.from_dict(r) for r in records], search)
    print_records(
        "Users",
        [("id", "ID"), ("email", "Email"), ("full_name", "Name"), ("role", "Role")],
        [_user_row(u) for u in users],
        "No users found.",
    )


# --- Admin codes ---
@admin_code_app.command("create")
def cli_admin_code_create(code: Optional[str] = typer.Option(None, "--code", help="Code to store (random if omitted)")):
    """Store a new unused admin registration code."""
    client = _client_or_exit()
    code = (code or secrets.token_hex(4).upper()).strip()
    try:
        client.db.insert("admin_codes", [{"code": code, "is_used": False}])
    except BackendError as e:
        _fail(f"Error: {e}")
    print(f"Admin code created: {code}")


@admin_code_app.command("list")
def cli_admin_code_list():
    """List admin codes and whether they were used."""
    client = _client_or_exit()
    try:
        rows = client.db.select(Query("admin_codes").order("code"))
    except BackendError as e:
        _fail(f"Error: {e}")
    codes = [AdminCode.from_dict(row) for row in rows]
    print_records(
        "Admin codes",
        [("code", "Code"), ("is_used", "Used"), ("used_at", "Used at")],
        [{"code": c.code, "is_used": c.is_used, "used_at": c.used_at} for c in codes],
        "No admin codes.",
    )


if __name__ == "__main__":
    app()

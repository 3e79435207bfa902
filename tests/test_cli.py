import json

import pytest
from typer.testing import CliRunner
from unittest.mock import MagicMock

import library_app.main as cli
from library_app.main import app

runner = CliRunner()


@pytest.fixture
def service(monkeypatch, fake_client):
    monkeypatch.setattr(cli, "get_client", MagicMock(return_value=fake_client))
    return fake_client


def _borrow(backend, book, user, status="requested"):
    return backend.insert("borrows", [{
        "book_id": book["id"],
        "user_id": user["id"],
        "status": status,
        "borrow_date": "2024-01-01T00:00:00+00:00",
        "due_date": "2024-01-15T00:00:00+00:00",
        "return_date": None,
    }])[0]


def test_books_empty(service):
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books found." in result.stdout


def test_books_plain(service, backend):
    backend.add_book("Dune", author="Frank Herbert", isbn="0441013597")
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "Dune | Frank Herbert | 0441013597" in result.stdout


def test_books_json_output(service, backend):
    backend.add_book("Dune", author="Frank Herbert")
    backend.add_book("Emma", author="Jane Austen", available=False)
    result = runner.invoke(app, ["--output", "json", "books", "--available"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [b["title"] for b in payload] == ["Dune"]


def test_books_rich_output(service, backend):
    backend.add_book("Dune")
    result = runner.invoke(app, ["-o", "rich", "books"])
    assert result.exit_code == 0
    assert "Dune" in result.stdout


def test_categories(service, backend):
    backend.add_book("Dune", category="Science Fiction")
    backend.add_book("Emma", category="Classics")
    result = runner.invoke(app, ["categories"])
    assert result.stdout.splitlines() == ["Classics", "Science Fiction"]


def test_borrows_filtered_by_status(service, backend, member):
    book = backend.add_book("Dune")
    _borrow(backend, book, member, status="requested")
    _borrow(backend, book, member, status="denied")

    result = runner.invoke(app, ["borrows", "--status", "requested"])
    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert len(lines) == 1
    assert "Dune | Mia Member | requested" in lines[0]


def test_approve_and_return(service, backend, member):
    book = backend.add_book("Dune")
    borrow = _borrow(backend, book, member)

    result = runner.invoke(app, ["approve", borrow["id"]])
    assert result.exit_code == 0
    assert f"Borrow {borrow['id']} approved." in result.stdout
    assert backend.tables["books"][0]["available"] is False

    result = runner.invoke(app, ["return", borrow["id"]])
    assert result.exit_code == 0
    assert backend.tables["borrows"][0]["status"] == "returned"
    assert backend.tables["books"][0]["available"] is True


def test_deny_unknown_borrow(service):
    result = runner.invoke(app, ["deny", "missing"])
    assert result.exit_code == 1
    assert "Borrow missing not found." in result.stdout


def test_users(service, admin, member):
    result = runner.invoke(app, ["users", "--search", "admin"])
    assert result.exit_code == 0
    assert "admin@example.com | Ada Admin | admin" in result.stdout
    assert "member@example.com" not in result.stdout


def test_admin_code_create_and_list(service, backend):
    result = runner.invoke(app, ["admin-code", "create", "--code", "LIB-2024"])
    assert result.exit_code == 0
    assert "Admin code created: LIB-2024" in result.stdout

    result = runner.invoke(app, ["admin-code", "list"])
    assert "LIB-2024 | no | -" in result.stdout


def test_admin_code_create_random(service, backend):
    result = runner.invoke(app, ["admin-code", "create"])
    assert result.exit_code == 0
    assert len(backend.tables["admin_codes"][0]["code"]) == 8


def test_missing_service_key(monkeypatch):
    monkeypatch.setattr(cli, "get_client", MagicMock(side_effect=RuntimeError("SUPABASE_SERVICE_ROLE_KEY is not configured.")))
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 1
    assert "SUPABASE_SERVICE_ROLE_KEY" in result.stdout


def test_serve_runs_uvicorn(monkeypatch):
    run = MagicMock()
    monkeypatch.setattr(cli.subprocess, "run", run)
    monkeypatch.setattr(cli.webbrowser, "open", MagicMock())
    result = runner.invoke(app, ["serve", "--port", "9000", "--no-browser"])
    assert result.exit_code == 0
    args = run.call_args[0][0]
    assert "library_app.api:app" in args
    assert args[-1] == "9000"
    cli.webbrowser.open.assert_not_called()

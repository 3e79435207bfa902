"""Library App - Lending Application Package

This package contains the application modules including:
- Page routes and templates (api.py)
- Book catalog and borrow workflow (catalog.py, borrows.py)
- Session handling (auth.py) and admin user listing (users.py)
- CLI interface (main.py)
- Hosted backend client (services/)
- The admin-api serverless function (functions/)
"""

__version__ = "1.0.0"

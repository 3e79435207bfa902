"""Library App - Services Package

This package contains the integrations with the hosted backend:
- HTTP client abstraction
- Database, auth, storage and edge-function client
"""

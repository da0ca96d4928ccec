"""Festive Postcards — FastAPI REST API layer.

This package contains the FastAPI application, Pydantic request models, and
the admin key check for dashboard endpoints.

Modules
-------
main
    FastAPI application with all route handlers and the ``main()`` CLI
    entry point.
models
    Pydantic models for API request validation.
security
    ``X-Admin-Key`` dependency guarding the dashboard endpoints.
"""

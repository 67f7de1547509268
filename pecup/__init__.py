"""
Backend package for the PEC-UP academic resources portal.

This package provides a FastAPI application with database, cache and
storage abstractions so the portal's API can run as a long-running
service in front of a hosted Postgres database.
"""

"""
Site backend package.

This package provides a FastAPI application for user profiles, subscribers,
the site logo and site settings, with record-store and attachment-store
abstractions so the same update logic runs against Postgres or an in-memory
document store.
"""

"""
Dependency wiring for the FastAPI app.

Components are built once by ``create_app`` and kept on ``app.state``; these
providers hand them to route handlers.
"""

from __future__ import annotations

from fastapi import Request

from sitebackend.config import Settings
from sitebackend.engine import PartialUpdateEngine
from sitebackend.identity import IdentityProvider


def get_engine(request: Request) -> PartialUpdateEngine:
    return request.app.state.engine


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings

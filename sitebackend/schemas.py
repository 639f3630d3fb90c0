"""
Pydantic schemas for the site backend API.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    kind: str
    detail: Optional[str] = None
    field: Optional[str] = None


class Envelope(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Any = None
    error: Optional[ErrorBody] = None
    count: Optional[int] = None


def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> Envelope:
    return Envelope(success=True, message=message, data=data, **extra)


class CreateUserPayload(BaseModel):
    uid: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., max_length=255)
    age: Optional[int] = None


class PrivacyPayload(BaseModel):
    privacySettings: dict[str, str]


class SiteSettingsPayload(BaseModel):
    site_name: str = Field(..., min_length=1)
    site_description: str = Field(..., min_length=1)
    site_url: str = Field(..., min_length=1)
    contact_email: str = Field(..., min_length=1)
    maintenance_mode: bool = False
    allow_registrations: bool = True


class SiteStatusPayload(BaseModel):
    maintenance_mode: Optional[bool] = None
    allow_registrations: Optional[bool] = None


class SubscriberPayload(BaseModel):
    email: str = Field(..., max_length=255)


class SubscriberUpdatePayload(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)
    is_active: Optional[bool] = None

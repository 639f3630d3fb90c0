"""
HTTP routes for the site backend API.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile as FormFile

from sitebackend.attachments import Upload
from sitebackend.config import Settings
from sitebackend.dependencies import (
    get_app_settings,
    get_engine,
    get_identity_provider,
)
from sitebackend.engine import PartialUpdateEngine
from sitebackend.errors import AdvisoryFailure, Conflict, ValidationError
from sitebackend.identity import IdentityProvider
from sitebackend.resources import (
    LOGO,
    SITE_SETTINGS,
    SITE_SETTINGS_DEFAULTS,
    SUBSCRIBERS,
    USERS,
    ResourceConfig,
)
from sitebackend.schemas import (
    CreateUserPayload,
    Envelope,
    PrivacyPayload,
    SiteSettingsPayload,
    SiteStatusPayload,
    SubscriberPayload,
    SubscriberUpdatePayload,
    ok,
)

logger = logging.getLogger(__name__)

router = APIRouter()
users_router = APIRouter(prefix="/users", tags=["users"])
logos_router = APIRouter(prefix="/logos", tags=["logos"])
settings_router = APIRouter(prefix="/site-settings", tags=["site-settings"])
seo_router = APIRouter(prefix="/seo", tags=["seo"])
subscribers_router = APIRouter(prefix="/subscribers", tags=["subscribers"])

SEO_DEFAULTS = {
    "site_name": SITE_SETTINGS_DEFAULTS["site_name"],
    "site_description": (
        "Empowering developers worldwide with coding resources, tutorials, "
        "and community support"
    ),
    "site_url": SITE_SETTINGS_DEFAULTS["site_url"],
    "contact_email": SITE_SETTINGS_DEFAULTS["contact_email"],
}


async def _buffer(part: FormFile, limit: int) -> Upload:
    # One byte past the limit is enough for the engine to reject it.
    data = await part.read(limit + 1)
    return Upload(
        filename=part.filename or "",
        data=data,
        content_type=part.content_type or "application/octet-stream",
    )


async def _read_update(
    request: Request, config: ResourceConfig, limit: int
) -> tuple[dict[str, Any], dict[str, Upload]]:
    """
    Split a JSON or multipart request into a field delta and uploaded files.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        delta: dict[str, Any] = {}
        uploads: dict[str, Upload] = {}
        for name, value in form.multi_items():
            if isinstance(value, FormFile):
                if value.filename:
                    uploads[name] = await _buffer(value, limit)
                continue
            spec = config.fields.get(name)
            if spec is not None and spec.merge:
                try:
                    value = json.loads(value)
                except ValueError:
                    raise ValidationError(f"{name} must be a JSON object", field=name)
            delta[name] = value
        return delta, uploads

    body = await request.body()
    if not body:
        return {}, {}
    try:
        delta = json.loads(body)
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(delta, dict):
        raise ValidationError("Request body must be a JSON object")
    return delta, {}


# Users


@users_router.get("", response_model=Envelope)
def list_users(engine: PartialUpdateEngine = Depends(get_engine)):
    users = engine.list(USERS, order_by="createdAt")
    return ok(users, count=len(users))


@users_router.get("/{uid}", response_model=Envelope)
def get_user(uid: str, engine: PartialUpdateEngine = Depends(get_engine)):
    return ok(engine.get(USERS, uid))


@users_router.post("", response_model=Envelope, status_code=201)
def create_user(
    payload: CreateUserPayload, engine: PartialUpdateEngine = Depends(get_engine)
):
    fields = payload.model_dump(exclude={"uid"})
    try:
        user = engine.create(USERS, payload.uid, fields)
    except Conflict:
        raise Conflict("User already exists")
    return ok(user, "User created successfully")


@users_router.put("/{uid}", response_model=Envelope)
@users_router.patch("/{uid}", response_model=Envelope)
async def update_user(
    uid: str,
    request: Request,
    engine: PartialUpdateEngine = Depends(get_engine),
    settings: Settings = Depends(get_app_settings),
):
    delta, uploads = await _read_update(request, USERS, settings.max_upload_bytes)
    logger.info("Updating user %s fields=%s files=%s", uid, sorted(delta), sorted(uploads))
    user = await run_in_threadpool(engine.update, USERS, uid, delta, uploads)
    return ok(user, "User updated successfully")


@users_router.patch("/{uid}/last-login", response_model=Envelope)
def update_last_login(uid: str, engine: PartialUpdateEngine = Depends(get_engine)):
    user = engine.touch(USERS, uid, "lastLogin")
    return ok(user, "Last login updated successfully")


@users_router.patch("/{uid}/privacy", response_model=Envelope)
def update_privacy(
    uid: str,
    payload: PrivacyPayload,
    engine: PartialUpdateEngine = Depends(get_engine),
):
    user = engine.update(USERS, uid, {"privacySettings": payload.privacySettings})
    return ok(user, "Privacy settings updated")


@users_router.delete("/{uid}", response_model=Envelope)
def delete_user(
    uid: str,
    engine: PartialUpdateEngine = Depends(get_engine),
    identity: IdentityProvider = Depends(get_identity_provider),
):
    engine.delete(USERS, uid)
    try:
        identity.delete_user(uid)
    except AdvisoryFailure as exc:
        logger.warning("User %s deleted locally only: %s", uid, exc.detail or exc)
        return ok(
            message="User deleted; identity provider account could not be removed"
        )
    return ok(message="User deleted from the database and identity provider")


# Logo


@logos_router.post("", response_model=Envelope)
async def upload_logo(
    response: Response,
    logo: UploadFile | None = File(None),
    engine: PartialUpdateEngine = Depends(get_engine),
    settings: Settings = Depends(get_app_settings),
):
    if logo is None or not logo.filename:
        raise ValidationError("No logo file uploaded", field="logo")
    upload = await _buffer(logo, settings.max_upload_bytes)
    record, created = await run_in_threadpool(
        engine.upsert, LOGO, {}, {"logo": upload}
    )
    if created:
        response.status_code = 201
        return ok(record, "Logo uploaded successfully")
    return ok(record, "Logo replaced successfully")


@logos_router.get("", response_model=Envelope)
def get_logo(engine: PartialUpdateEngine = Depends(get_engine)):
    record = engine.get_singleton(LOGO)
    if record is None:
        return ok(None, "No logo found")
    return ok(record)


@logos_router.delete("", response_model=Envelope)
def delete_logo(engine: PartialUpdateEngine = Depends(get_engine)):
    engine.delete(LOGO)
    return ok(message="Logo deleted successfully")


@logos_router.get("/stats", response_model=Envelope)
def logo_stats(engine: PartialUpdateEngine = Depends(get_engine)):
    total = len(engine.list(LOGO))
    return ok({"hasLogo": total > 0, "totalLogos": total})


# Site settings


@settings_router.get("", response_model=Envelope)
def get_site_settings(engine: PartialUpdateEngine = Depends(get_engine)):
    record = engine.get_singleton(SITE_SETTINGS)
    return ok(record if record is not None else dict(SITE_SETTINGS_DEFAULTS))


@settings_router.put("", response_model=Envelope)
def replace_site_settings(
    payload: SiteSettingsPayload, engine: PartialUpdateEngine = Depends(get_engine)
):
    record, _ = engine.upsert(SITE_SETTINGS, payload.model_dump())
    return ok(record, "Site settings updated successfully")


@settings_router.patch("", response_model=Envelope)
async def patch_site_settings(
    request: Request,
    engine: PartialUpdateEngine = Depends(get_engine),
    settings: Settings = Depends(get_app_settings),
):
    delta, _ = await _read_update(request, SITE_SETTINGS, settings.max_upload_bytes)
    record, _ = await run_in_threadpool(engine.upsert, SITE_SETTINGS, delta)
    return ok(record, "Site settings updated successfully")


@settings_router.patch("/status", response_model=Envelope)
def update_site_status(
    payload: SiteStatusPayload, engine: PartialUpdateEngine = Depends(get_engine)
):
    record, _ = engine.upsert(SITE_SETTINGS, payload.model_dump(exclude_none=True))
    return ok(record, "Site status updated successfully")


@settings_router.get("/maintenance-status", response_model=Envelope)
def maintenance_status(engine: PartialUpdateEngine = Depends(get_engine)):
    record = engine.get_singleton(SITE_SETTINGS) or SITE_SETTINGS_DEFAULTS
    return ok({"maintenance_mode": record["maintenance_mode"]})


@settings_router.get("/status", response_model=Envelope)
def site_status(engine: PartialUpdateEngine = Depends(get_engine)):
    record = engine.get_singleton(SITE_SETTINGS) or SITE_SETTINGS_DEFAULTS
    return ok(
        {
            "maintenance_mode": record["maintenance_mode"],
            "allow_registrations": record["allow_registrations"],
        }
    )


@settings_router.post("/reset", response_model=Envelope)
def reset_site_settings(engine: PartialUpdateEngine = Depends(get_engine)):
    return ok(engine.reset(SITE_SETTINGS), "Site settings reset to default")


@seo_router.get("", response_model=Envelope)
def get_seo(engine: PartialUpdateEngine = Depends(get_engine)):
    record = engine.get_singleton(SITE_SETTINGS)
    if record is None:
        return ok(dict(SEO_DEFAULTS))
    return ok({name: record.get(name) for name in SEO_DEFAULTS})


# Subscribers


def _recent_cutoff(days: int = 7) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


@subscribers_router.get("", response_model=Envelope)
def list_subscribers(engine: PartialUpdateEngine = Depends(get_engine)):
    subscribers = engine.list(SUBSCRIBERS, order_by="subscribed_at", descending=True)
    return ok(subscribers, "Subscribers fetched successfully", count=len(subscribers))


@subscribers_router.get("/stats/summary", response_model=Envelope)
def subscriber_stats(engine: PartialUpdateEngine = Depends(get_engine)):
    subscribers = engine.list(SUBSCRIBERS)
    cutoff = _recent_cutoff()
    active = sum(1 for s in subscribers if s.get("is_active"))
    return ok(
        {
            "total": len(subscribers),
            "active": active,
            "inactive": len(subscribers) - active,
            "recent": sum(
                1 for s in subscribers if (s.get("subscribed_at") or "") >= cutoff
            ),
        }
    )


@subscribers_router.get("/{subscriber_id}", response_model=Envelope)
def get_subscriber(
    subscriber_id: str, engine: PartialUpdateEngine = Depends(get_engine)
):
    return ok(engine.get(SUBSCRIBERS, subscriber_id), "Subscriber fetched successfully")


@subscribers_router.post("", response_model=Envelope, status_code=201)
def create_subscriber(
    payload: SubscriberPayload, engine: PartialUpdateEngine = Depends(get_engine)
):
    try:
        record = engine.create(SUBSCRIBERS, uuid4().hex, {"email": payload.email})
    except Conflict:
        raise Conflict("Email already subscribed")
    return ok(record, "Subscribed successfully")


@subscribers_router.put("/{subscriber_id}", response_model=Envelope)
def update_subscriber(
    subscriber_id: str,
    payload: SubscriberUpdatePayload,
    engine: PartialUpdateEngine = Depends(get_engine),
):
    record = engine.update(
        SUBSCRIBERS, subscriber_id, payload.model_dump(exclude_none=True)
    )
    return ok(record, "Subscriber updated successfully")


@subscribers_router.patch("/{subscriber_id}/toggle", response_model=Envelope)
def toggle_subscriber(
    subscriber_id: str, engine: PartialUpdateEngine = Depends(get_engine)
):
    record = engine.toggle(SUBSCRIBERS, subscriber_id, "is_active")
    status = "activated" if record["is_active"] else "deactivated"
    return ok(record, f"Subscription {status} successfully")


@subscribers_router.delete("/{subscriber_id}", response_model=Envelope)
def delete_subscriber(
    subscriber_id: str, engine: PartialUpdateEngine = Depends(get_engine)
):
    engine.delete(SUBSCRIBERS, subscriber_id)
    return ok(message="Subscriber deleted successfully")


router.include_router(users_router)
router.include_router(logos_router)
router.include_router(settings_router)
router.include_router(seo_router)
router.include_router(subscribers_router)

"""
Resource configurations: which fields a resource accepts, which attachment
slots it owns and how many instances it may have.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from sitebackend import validation


class Cardinality(enum.Enum):
    MANY = "many"
    SINGLETON = "singleton"


@dataclass(frozen=True)
class AttachmentSlot:
    field: str
    directory: str
    discriminator: str
    content_types: tuple = ("image/",)

    def accepts(self, content_type: Optional[str]) -> bool:
        return any((content_type or "").startswith(p) for p in self.content_types)


@dataclass(frozen=True)
class FieldSpec:
    rule: validation.Rule
    # Mapping-valued fields are overlaid on the stored mapping instead of
    # replacing it.
    merge: bool = False
    required_on_create: bool = False


@dataclass(frozen=True)
class ResourceConfig:
    name: str
    collection: str
    cardinality: Cardinality
    key_field: str
    fields: Mapping[str, FieldSpec]
    timestamp_field: str
    created_field: Optional[str] = None
    slots: Mapping[str, AttachmentSlot] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    singleton_key: str = "default"
    default_factories: Mapping[str, Callable[[], Any]] = field(default_factory=dict)
    unique_fields: tuple = ()

    @property
    def is_singleton(self) -> bool:
        return self.cardinality is Cardinality.SINGLETON

    def initial_fields(self) -> Dict[str, Any]:
        values = {name: value for name, value in self.defaults.items()}
        for name, factory in self.default_factories.items():
            values[name] = factory()
        for slot in self.slots.values():
            values.setdefault(slot.field, None)
        return values


PRIVACY_FIELDS = ("name", "email", "age", "profileImage", "coverPhoto")

USERS = ResourceConfig(
    name="user",
    collection="users",
    cardinality=Cardinality.MANY,
    key_field="uid",
    fields={
        "name": FieldSpec(
            validation.text(255, required=True), required_on_create=True
        ),
        "email": FieldSpec(validation.email, required_on_create=True),
        "age": FieldSpec(validation.optional_int(minimum=0)),
        "role": FieldSpec(validation.choice(("user", "admin"))),
        "privacySettings": FieldSpec(validation.privacy(PRIVACY_FIELDS), merge=True),
    },
    timestamp_field="updatedAt",
    created_field="createdAt",
    slots={
        "profileImage": AttachmentSlot("profileImage", "users/profile", "profile"),
        "coverPhoto": AttachmentSlot("coverPhoto", "users/cover", "cover"),
    },
    defaults={"age": None, "role": "user", "lastLogin": None},
    default_factories={
        "privacySettings": lambda: {name: "public" for name in PRIVACY_FIELDS},
    },
)

LOGO = ResourceConfig(
    name="logo",
    collection="logos",
    cardinality=Cardinality.SINGLETON,
    key_field="id",
    fields={},
    timestamp_field="uploaded_at",
    created_field="created_at",
    slots={"logo": AttachmentSlot("url", "logos", "logo")},
)

SITE_SETTINGS_DEFAULTS = {
    "site_name": "Backbencher Coder",
    "site_description": "Empowering developers worldwide",
    "site_url": "https://backbenchercoder.com",
    "contact_email": "info@backbenchercoder.com",
    "maintenance_mode": False,
    "allow_registrations": True,
}

SITE_SETTINGS = ResourceConfig(
    name="site settings",
    collection="site_settings",
    cardinality=Cardinality.SINGLETON,
    key_field="id",
    fields={
        "site_name": FieldSpec(validation.text(255, required=True)),
        "site_description": FieldSpec(validation.text(2000, required=True)),
        "site_url": FieldSpec(validation.url),
        "contact_email": FieldSpec(validation.email),
        "maintenance_mode": FieldSpec(validation.boolean),
        "allow_registrations": FieldSpec(validation.boolean),
    },
    timestamp_field="updated_at",
    created_field="created_at",
    defaults=SITE_SETTINGS_DEFAULTS,
)

SUBSCRIBERS = ResourceConfig(
    name="subscriber",
    collection="subscribers",
    cardinality=Cardinality.MANY,
    key_field="id",
    fields={
        "email": FieldSpec(validation.email, required_on_create=True),
        "is_active": FieldSpec(validation.boolean),
    },
    timestamp_field="updated_at",
    created_field="subscribed_at",
    defaults={"is_active": True},
    unique_fields=("email",),
)

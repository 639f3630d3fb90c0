"""
Partial-update engine.

Merges a field delta into a stored record and swaps attachment files in the
order stage new, commit record, release old. A failed record write releases
the newly staged files and leaves the old ones referenced. Singleton
resources collapse create into update-or-insert.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from sitebackend.attachments import AttachmentStore, Upload
from sitebackend.errors import (
    Conflict,
    IOFailure,
    NotFound,
    PersistenceFailure,
    SiteBackendError,
    ValidationError,
)
from sitebackend.locks import InMemoryKeyLocks, KeyLocks
from sitebackend.records import RecordStore, check_key
from sitebackend.resources import AttachmentSlot, ResourceConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PartialUpdateEngine:
    def __init__(
        self,
        store: RecordStore,
        attachments: AttachmentStore,
        locks: Optional[KeyLocks] = None,
        *,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        clock: Callable[[], str] = utc_now,
    ):
        self.store = store
        self.attachments = attachments
        self.locks = locks or InMemoryKeyLocks()
        self.max_upload_bytes = max_upload_bytes
        self.clock = clock

    # Reads

    def get(self, config: ResourceConfig, key: Optional[str] = None) -> dict:
        key = self._key(config, key)
        record = self.store.fetch(config.collection, key)
        if record is None:
            raise NotFound(f"{config.name.capitalize()} not found")
        return record

    def get_singleton(self, config: ResourceConfig) -> Optional[dict]:
        """The live instance, or None so callers can render defaults."""
        return self.store.fetch(config.collection, config.singleton_key)

    def list(
        self,
        config: ResourceConfig,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        return self.store.list(
            config.collection,
            order_by=order_by,
            descending=descending,
            where=where,
            limit=limit,
        )

    # Writes

    def create(
        self,
        config: ResourceConfig,
        key: str,
        fields: Mapping[str, Any],
        uploads: Optional[Mapping[str, Upload]] = None,
    ) -> dict:
        """Insert a new instance of a many-cardinality resource."""
        key = self._key(config, key)
        with self.locks.hold(self._lock_name(config, key)):
            if self.store.fetch(config.collection, key) is not None:
                raise Conflict(f"{config.name.capitalize()} already exists")
            changes = self.validate_delta(config, fields, creating=True)
            self._check_unique(config, key, changes)
            slots = self._check_uploads(config, uploads)
            return self._insert(config, key, changes, slots)

    def update(
        self,
        config: ResourceConfig,
        key: Optional[str],
        delta: Mapping[str, Any],
        uploads: Optional[Mapping[str, Upload]] = None,
    ) -> dict:
        record, _ = self._write(config, key, delta, uploads)
        return record

    def upsert(
        self,
        config: ResourceConfig,
        fields: Mapping[str, Any],
        uploads: Optional[Mapping[str, Upload]] = None,
    ) -> tuple[dict, bool]:
        """
        Create-or-replace for singletons. Returns the instance and whether it
        was created.
        """
        if not config.is_singleton:
            raise TypeError(f"{config.name} is not a singleton resource")
        return self._write(config, None, fields, uploads)

    def touch(self, config: ResourceConfig, key: str, field: str) -> dict:
        """Stamp ``field`` and the update timestamp with the current time."""
        key = self._key(config, key)
        with self.locks.hold(self._lock_name(config, key)):
            now = self.clock()
            record = self._persist(
                config, key, {field: now, config.timestamp_field: now}
            )
        if record is None:
            raise NotFound(f"{config.name.capitalize()} not found")
        return record

    def toggle(self, config: ResourceConfig, key: str, field: str) -> dict:
        """Flip a boolean field; the read and the write share one lock hold."""
        key = self._key(config, key)
        with self.locks.hold(self._lock_name(config, key)):
            current = self.store.fetch(config.collection, key)
            if current is None:
                raise NotFound(f"{config.name.capitalize()} not found")
            changes = self.validate_delta(
                config, {field: not current.get(field)}, current=current
            )
            changes[config.timestamp_field] = self.clock()
            record = self._persist(config, key, changes)
        if record is None:
            raise PersistenceFailure(
                f"{config.name.capitalize()} was removed during the update"
            )
        return record

    def delete(self, config: ResourceConfig, key: Optional[str] = None) -> dict:
        """
        Remove the instance and release every attachment it owns. Returns the
        removed instance.
        """
        key = self._key(config, key)
        with self.locks.hold(self._lock_name(config, key)):
            current = self.store.fetch(config.collection, key)
            if current is None:
                raise NotFound(f"{config.name.capitalize()} not found")
            if self.store.delete(config.collection, key) == 0:
                raise NotFound(f"{config.name.capitalize()} not found")
            self._release_owned(config, current)
        logger.info("Deleted %s %s", config.name, key)
        return current

    def reset(self, config: ResourceConfig) -> dict:
        """Replace a singleton with a fresh instance built from its defaults."""
        if not config.is_singleton:
            raise TypeError(f"{config.name} is not a singleton resource")
        key = config.singleton_key
        with self.locks.hold(self._lock_name(config, key)):
            current = self.store.fetch(config.collection, key)
            self.store.delete_all(config.collection)
            record = self._insert(config, key, {}, [])
            if current is not None:
                self._release_owned(config, current)
        logger.info("Reset %s to defaults", config.name)
        return record

    # Validation

    def validate_delta(
        self,
        config: ResourceConfig,
        delta: Mapping[str, Any],
        *,
        current: Optional[dict] = None,
        creating: bool = False,
    ) -> dict:
        """
        Keep whitelisted fields and coerce them through their rules. Fields
        the resource does not accept are dropped.
        """
        ignored = [name for name in delta if name not in config.fields]
        if ignored:
            logger.debug("Ignoring fields %s for %s", ignored, config.name)

        changes = {}
        for name, spec in config.fields.items():
            if name not in delta:
                if creating and spec.required_on_create:
                    raise ValidationError(f"{name} is required", field=name)
                continue
            value = spec.rule(name, delta[name])
            if spec.merge and isinstance(value, dict):
                base = (current or {}).get(name) or config.initial_fields().get(name) or {}
                value = {**base, **value}
            changes[name] = value
        return changes

    def _check_uploads(
        self, config: ResourceConfig, uploads: Optional[Mapping[str, Upload]]
    ) -> list[tuple[AttachmentSlot, Upload]]:
        checked = []
        for slot_name, upload in (uploads or {}).items():
            slot = config.slots.get(slot_name)
            if slot is None:
                raise ValidationError(
                    f"{config.name.capitalize()} has no attachment slot {slot_name}",
                    field=slot_name,
                )
            if not slot.accepts(upload.content_type):
                raise ValidationError(
                    "Only image files are allowed!", field=slot_name
                )
            if upload.size > self.max_upload_bytes:
                raise ValidationError(
                    f"{slot_name} exceeds the {self.max_upload_bytes} byte limit",
                    field=slot_name,
                )
            if upload.size == 0:
                raise ValidationError(f"{slot_name} is empty", field=slot_name)
            checked.append((slot, upload))
        return checked

    def _check_unique(self, config: ResourceConfig, key: str, changes: dict) -> None:
        for name in config.unique_fields:
            if name not in changes:
                continue
            for other in self.store.list(config.collection, where={name: changes[name]}):
                if other.get(config.key_field) != key:
                    raise Conflict(f"{name} {changes[name]} is already in use")

    # Internals

    def _key(self, config: ResourceConfig, key: Optional[str]) -> str:
        if config.is_singleton:
            return config.singleton_key
        return check_key(key)

    def _lock_name(self, config: ResourceConfig, key: str) -> str:
        # Unique-field checks read other records, so they need the whole
        # collection.
        if config.unique_fields:
            return config.collection
        return f"{config.collection}:{key}"

    def _write(
        self,
        config: ResourceConfig,
        key: Optional[str],
        delta: Mapping[str, Any],
        uploads: Optional[Mapping[str, Upload]],
    ) -> tuple[dict, bool]:
        key = self._key(config, key)
        with self.locks.hold(self._lock_name(config, key)):
            current = self.store.fetch(config.collection, key)
            if current is None and not config.is_singleton:
                raise NotFound(f"{config.name.capitalize()} not found")
            changes = self.validate_delta(config, delta, current=current)
            self._check_unique(config, key, changes)
            slots = self._check_uploads(config, uploads)
            if current is None:
                return self._insert(config, key, changes, slots), True
            return self._replace(config, key, current, changes, slots), False

    def _insert(
        self,
        config: ResourceConfig,
        key: str,
        changes: dict,
        slots: list[tuple[AttachmentSlot, Upload]],
    ) -> dict:
        now = self.clock()
        record = config.initial_fields()
        record.update(changes)
        record[config.key_field] = key
        if config.created_field:
            record[config.created_field] = now
        record[config.timestamp_field] = now

        with self.attachments.staging() as batch:
            for slot, upload in slots:
                record[slot.field] = batch.stage(
                    slot.directory, key, slot.discriminator, upload
                )
            try:
                created = self.store.insert(config.collection, key, record)
            except SiteBackendError:
                raise
            except Exception as exc:
                raise PersistenceFailure(
                    f"Failed to create {config.name}", detail=str(exc)
                ) from exc
            batch.commit()
        logger.info("Created %s %s", config.name, key)
        return created

    def _replace(
        self,
        config: ResourceConfig,
        key: str,
        current: dict,
        changes: dict,
        slots: list[tuple[AttachmentSlot, Upload]],
    ) -> dict:
        with self.attachments.staging() as batch:
            superseded = []
            for slot, upload in slots:
                changes[slot.field] = batch.stage(
                    slot.directory, key, slot.discriminator, upload
                )
                superseded.append(current.get(slot.field))
            changes[config.timestamp_field] = self.clock()

            updated = self._persist(config, key, changes)
            if updated is None:
                raise PersistenceFailure(
                    f"{config.name.capitalize()} was removed during the update"
                )
            batch.commit(superseded)
        logger.info(
            "Updated %s %s fields=%s", config.name, key, sorted(changes)
        )
        return updated

    def _persist(self, config: ResourceConfig, key: str, changes: dict) -> Optional[dict]:
        try:
            return self.store.partial_set(config.collection, key, changes)
        except SiteBackendError:
            raise
        except Exception as exc:
            raise PersistenceFailure(
                f"Failed to update {config.name}", detail=str(exc)
            ) from exc

    def _release_owned(self, config: ResourceConfig, record: dict) -> None:
        references = [record.get(slot.field) for slot in config.slots.values()]
        try:
            self.attachments.release_all(references)
        except IOFailure:
            # The record is gone; leftover files are orphans, not dangling
            # references.
            logger.exception("Attachments of %s left on disk", config.name)

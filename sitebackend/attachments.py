"""
Filesystem-backed attachment store.

Files live under ``root/<slot_dir>/`` and are referenced from records by a
path of the form ``/<slot_dir>/<identity_key>-<discriminator>-<token><ext>``.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from sitebackend.errors import IOFailure

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9_.-]+$")
_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


@dataclass
class Upload:
    """A fully buffered uploaded file."""

    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        ext = os.path.splitext(self.filename or "")[1].lower()
        return ext if _SAFE_EXTENSION.match(ext) else ""


class AttachmentStore:
    """
    Stages and releases attachment files below a managed root directory.

    References carry ``url_prefix`` so they match the path the files are
    served under.
    """

    def __init__(self, root: str | os.PathLike, url_prefix: str = ""):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def stage(
        self,
        slot_dir: str,
        identity_key: str,
        discriminator: str,
        upload: Upload,
    ) -> str:
        """
        Write ``upload`` to a new, never-before-used file and return its
        reference path.
        """
        for segment in (identity_key, discriminator):
            if not _SAFE_SEGMENT.match(segment or ""):
                raise IOFailure(f"Unsafe attachment name segment: {segment!r}")

        directory = self._directory(slot_dir)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(
                f"Could not create attachment directory {slot_dir}", detail=str(exc)
            ) from exc

        token = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"
        filename = f"{identity_key}-{discriminator}-{token}{upload.extension}"
        target = directory / filename
        try:
            # "x" mode fails instead of overwriting an existing file.
            with open(target, "xb") as handle:
                handle.write(upload.data)
        except FileExistsError as exc:
            raise IOFailure(
                f"Attachment {filename} already exists", detail=str(exc)
            ) from exc
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise IOFailure(
                f"Could not write attachment {filename}", detail=str(exc)
            ) from exc

        reference = f"{self.url_prefix}/{slot_dir.strip('/')}/{filename}"
        logger.info("Staged attachment %s (%d bytes)", reference, upload.size)
        return reference

    def release(self, reference: Optional[str]) -> bool:
        """
        Delete the file behind ``reference``. Returns False when there was
        nothing to delete.
        """
        if not reference:
            return False
        path = self.resolve(reference)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise IOFailure(
                f"Could not delete attachment {reference}", detail=str(exc)
            ) from exc
        logger.info("Released attachment %s", reference)
        return True

    def release_all(self, references: Iterable[Optional[str]]) -> None:
        """Release each reference, logging instead of stopping on failures."""
        failures = []
        for reference in references:
            try:
                self.release(reference)
            except IOFailure as exc:
                logger.error("Failed to release %s: %s", reference, exc.detail)
                failures.append(exc)
        if failures:
            raise failures[0]

    def resolve(self, reference: str) -> Path:
        """
        Map a reference path to its file. The containing directory must
        resolve inside the root; the final component is not followed so a
        symlink is removed rather than its target.
        """
        relative = reference
        if self.url_prefix and relative.startswith(self.url_prefix + "/"):
            relative = relative[len(self.url_prefix):]
        relative = relative.lstrip("/")
        candidate = self.root / relative
        root = self.root.resolve()
        parent = candidate.parent.resolve()
        if parent != root and root not in parent.parents:
            raise IOFailure(f"Attachment reference escapes upload root: {reference}")
        return parent / candidate.name

    def exists(self, reference: Optional[str]) -> bool:
        if not reference:
            return False
        try:
            return self.resolve(reference).is_file()
        except IOFailure:
            return False

    def staging(self) -> "StagingBatch":
        return StagingBatch(self)

    def _directory(self, slot_dir: str) -> Path:
        parts = [part for part in slot_dir.split("/") if part]
        if not parts or not all(_SAFE_SEGMENT.match(p) and p not in (".", "..") for p in parts):
            raise IOFailure(f"Invalid attachment directory: {slot_dir!r}")
        return self.root.joinpath(*parts)


@dataclass
class StagingBatch:
    """
    Files staged for one update.

    Leaving the ``with`` block without ``commit()`` releases every staged
    file. ``commit()`` releases the references the update superseded.
    """

    store: AttachmentStore
    staged: list[str] = field(default_factory=list)
    committed: bool = False

    def __enter__(self) -> "StagingBatch":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.committed:
            self.rollback()

    def stage(
        self, slot_dir: str, identity_key: str, discriminator: str, upload: Upload
    ) -> str:
        reference = self.store.stage(slot_dir, identity_key, discriminator, upload)
        self.staged.append(reference)
        return reference

    def commit(self, superseded: Iterable[Optional[str]] = ()) -> None:
        self.committed = True
        stale = [ref for ref in superseded if ref and ref not in self.staged]
        try:
            self.store.release_all(stale)
        except IOFailure:
            # The record already points at the new files; an undeletable old
            # file is an orphan, not a dangling reference.
            logger.exception("Superseded attachments left on disk: %s", stale)

    def rollback(self) -> None:
        if not self.staged:
            return
        logger.warning("Rolling back staged attachments: %s", self.staged)
        try:
            self.store.release_all(self.staged)
        except IOFailure:
            logger.exception("Rollback could not release every staged file")
        self.staged = []

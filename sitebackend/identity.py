"""
Identity provider boundary (Firebase Auth).

The backend only consumes the provider's user identifier and asks it to
delete users. Failures surface as ``AdvisoryFailure``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import firebase_admin
from firebase_admin import auth, credentials, exceptions

from sitebackend.errors import AdvisoryFailure

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def delete_user(self, uid: str) -> None:
        ...


@dataclass
class InMemoryIdentityProvider:
    """Test double that records deletions and can be told to fail."""

    deleted: list[str] = field(default_factory=list)
    fail_with: Optional[Exception] = None

    def delete_user(self, uid: str) -> None:
        if self.fail_with is not None:
            raise AdvisoryFailure(
                f"Identity provider could not delete {uid}",
                detail=str(self.fail_with),
            )
        self.deleted.append(uid)


class FirebaseIdentityProvider:
    """Deletes users from Firebase Auth through the Admin SDK."""

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        project_id: Optional[str] = None,
    ):
        options = {"projectId": project_id} if project_id else None
        try:
            self.app = firebase_admin.get_app()
        except ValueError:
            credential = (
                credentials.Certificate(credentials_path)
                if credentials_path
                else credentials.ApplicationDefault()
            )
            self.app = firebase_admin.initialize_app(credential, options)

    def delete_user(self, uid: str) -> None:
        try:
            auth.delete_user(uid, app=self.app)
        except (exceptions.FirebaseError, ValueError) as exc:
            raise AdvisoryFailure(
                f"Identity provider could not delete {uid}", detail=str(exc)
            ) from exc
        logger.info("Deleted %s from Firebase Auth", uid)

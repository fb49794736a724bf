from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

EMAIL_VERIFY = "email-verify"
PASSWORD_RESET = "password-reset"
ACTION_TOKEN_KINDS = frozenset({EMAIL_VERIFY, PASSWORD_RESET})

DEFAULT_ROLE = "customer"
REGISTRATION_ROLES = frozenset({"customer", "seller", "provider"})


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    role: str = DEFAULT_ROLE
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        password_hash: Optional[str] = None,
        name: Optional[str] = None,
        role: str = DEFAULT_ROLE,
        email_verified: bool = False,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            role=role,
            email_verified=email_verified,
            email_verified_at=now if email_verified else None,
            created_at=now,
        )


@dataclass
class RefreshSession:
    """Persisted counterpart of a refresh token, keyed by its ``jti``.

    ``family_id`` groups every record produced by successive rotations of one
    login; ``replaced_by`` points at the successor once rotated.
    """

    jti: str
    subject_id: str
    family_id: str
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


@dataclass
class ActionToken:
    token: str
    kind: str
    subject_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(cls, token: str, kind: str, subject_id: str, ttl_minutes: int) -> "ActionToken":
        now = utcnow()
        return cls(
            token=token,
            kind=kind,
            subject_id=subject_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_consumable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now

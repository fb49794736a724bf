from __future__ import annotations

import secrets
from typing import Optional, Protocol

from marketauth.config import Settings
from marketauth.logging import get_logger
from marketauth.service.errors import InvalidOrExpiredToken
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import EMAIL_VERIFY, PASSWORD_RESET, Account, ActionToken

logger = get_logger(__name__)


def generate_action_token() -> str:
    """32 random bytes rendered as 64 lowercase hex characters."""
    return secrets.token_hex(32)


class ActionTokenBackend(Protocol):
    def create_action_token(
        self,
        subject_id: str,
        kind: str,
        token: str,
        ttl_minutes: int,
        *,
        invalidate_pending: bool = False,
    ) -> ActionToken: ...

    def consume_email_verification(self, token: str) -> Optional[Account]: ...

    def consume_password_reset(self, token: str, password_hash: str) -> Optional[Account]: ...


class ActionTokenLedger:
    """Opaque single-use tokens for email verification and password reset.

    Consumption and its side effect (verified flag, or new password hash plus
    session revocation) happen in one store call.
    """

    def __init__(self, backend: ActionTokenBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings

    def _issue(self, subject_id: str, kind: str, ttl_minutes: int, *, invalidate_pending: bool) -> ActionToken:
        token = generate_action_token()
        try:
            return self.backend.create_action_token(
                subject_id, kind, token, ttl_minutes, invalidate_pending=invalidate_pending
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") != "token":
                raise
        # 256-bit collision: draw once more
        logger.warning("action_token_collision", kind=kind)
        return self.backend.create_action_token(
            subject_id,
            kind,
            generate_action_token(),
            ttl_minutes,
            invalidate_pending=invalidate_pending,
        )

    def issue_email_verification(self, subject_id: str, *, invalidate_pending: bool = False) -> ActionToken:
        return self._issue(
            subject_id,
            EMAIL_VERIFY,
            self.settings.email_verification_ttl_minutes,
            invalidate_pending=invalidate_pending,
        )

    def issue_password_reset(self, subject_id: str) -> ActionToken:
        """Issue a reset token; any earlier pending reset token stops working."""
        return self._issue(
            subject_id,
            PASSWORD_RESET,
            self.settings.password_reset_ttl_minutes,
            invalidate_pending=True,
        )

    def consume_email_verification(self, token: str) -> Account:
        account = self.backend.consume_email_verification(token) if token else None
        if not account:
            logger.warning("email_verification_invalid_token", token_prefix=(token or "")[:8])
            raise InvalidOrExpiredToken("invalid or expired token")
        return account

    def consume_password_reset(self, token: str, password_hash: str) -> Account:
        account = self.backend.consume_password_reset(token, password_hash) if token else None
        if not account:
            logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            raise InvalidOrExpiredToken("invalid or expired token")
        return account

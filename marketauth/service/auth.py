from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from marketauth.config import Settings
from marketauth.logging import get_logger, hash_email
from marketauth.service.action_tokens import ActionTokenLedger
from marketauth.service.email import Mailer
from marketauth.service.errors import (
    DuplicateAccount,
    EmailNotVerified,
    InvalidCredential,
    InvalidCredentials,
    ServiceError,
    SessionRevoked,
    ValidationError,
)
from marketauth.service.sessions import RefreshSessionStore
from marketauth.service.signer import ACCESS, REFRESH, CredentialSigner, TokenPair
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import (
    DEFAULT_ROLE,
    EMAIL_VERIFY,
    PASSWORD_RESET,
    REGISTRATION_ROLES,
    Account,
)

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        name: Optional[str] = None,
        role: str = DEFAULT_ROLE,
        email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def set_password_and_revoke_sessions(self, account_id: str, password_hash: str) -> int: ...


@dataclass
class AuthContext:
    account_id: str
    role: str
    email: str
    email_verified: bool


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def public_account(account: Account) -> dict[str, Any]:
    """Client-facing projection of an account; never includes the password hash."""
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "email_verified": account.email_verified,
        "email_verified_at": account.email_verified_at,
    }


class AuthService:
    """Registration, login and the refresh-token state machine.

    Every collaborator is injected; the service holds no mutable state of its
    own, so one instance can serve concurrent requests.
    """

    def __init__(
        self,
        store: AccountStore,
        signer: CredentialSigner,
        sessions: RefreshSessionStore,
        ledger: ActionTokenLedger,
        mailer: Mailer,
        settings: Settings,
    ) -> None:
        self.store = store
        self.signer = signer
        self.sessions = sessions
        self.ledger = ledger
        self.mailer = mailer
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- helpers ------------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            self.logger.warning("password_verification_failed", account_id=account.id)
            return False

    async def _deliver(self, email: str, kind: str, token: str) -> None:
        # Delivery never rolls back the token that was just persisted
        try:
            sent = await asyncio.to_thread(self.mailer.deliver, email, kind, token)
        except Exception as exc:
            self.logger.error(
                "email_delivery_failed",
                kind=kind,
                email_hash=hash_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            self.logger.warning("email_delivery_failed", kind=kind, email_hash=hash_email(email))

    def start_session(self, subject_id: str) -> TokenPair:
        """Issue a pair that begins a new refresh lineage for ``subject_id``."""
        pair = self.signer.issue_pair(subject_id)
        if self.sessions.save(subject_id, pair.jti):
            return pair
        self.logger.warning("refresh_jti_collision", subject_id=subject_id)
        pair = self.signer.issue_pair(subject_id)
        if not self.sessions.save(subject_id, pair.jti):
            raise ServiceError(
                "could not allocate session", status_code=500, error_code="server_error"
            )
        return pair

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    # -- operations ---------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Tuple[Account, TokenPair]:
        normalized = normalize_email(email)
        role = (role or DEFAULT_ROLE).lower()
        if role not in REGISTRATION_ROLES:
            raise ValidationError("unsupported role", detail={"field": "role"})
        if self.store.get_account_by_email(normalized):
            raise DuplicateAccount("email already registered")
        try:
            account = self.store.create_account(
                normalized, self._hash_password(password), name=name, role=role
            )
        except ConstraintViolation:
            raise DuplicateAccount("email already registered")

        token = self.ledger.issue_email_verification(account.id)
        await self._deliver(account.email, EMAIL_VERIFY, token.token)
        pair = self.start_session(account.id)
        self.logger.info("account_registered", account_id=account.id, role=role)
        return account, pair

    async def login(self, email: str, password: str) -> Tuple[Account, TokenPair]:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account or not self._password_matches(account, password):
            self.logger.warning("login_failed", email_hash=hash_email(normalized))
            raise InvalidCredentials("invalid credentials")
        if not account.email_verified:
            self.logger.info("login_blocked_unverified", account_id=account.id)
            raise EmailNotVerified("email address has not been verified")
        pair = self.start_session(account.id)
        self.logger.info("login_succeeded", account_id=account.id)
        return account, pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.signer.verify(refresh_token, REFRESH)
        record = self.sessions.get(claims.jti)
        if not record or record.subject_id != claims.sub:
            self.logger.warning("refresh_unknown_session", subject_id=claims.sub)
            raise SessionRevoked("session revoked")
        if record.revoked_at is not None:
            if self.settings.refresh_reuse_detection and record.replaced_by:
                revoked = self.sessions.revoke_family(record.family_id)
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    subject_id=claims.sub,
                    family_id=record.family_id,
                    revoked_count=revoked,
                )
            raise SessionRevoked("session revoked")

        pair = self.signer.issue_pair(claims.sub)
        try:
            replaced = self.sessions.replace(claims.jti, claims.sub, pair.jti)
        except ConstraintViolation:
            self.logger.warning("refresh_jti_collision", subject_id=claims.sub)
            pair = self.signer.issue_pair(claims.sub)
            replaced = self.sessions.replace(claims.jti, claims.sub, pair.jti)
        if not replaced:
            # Lost the compare-and-swap to a concurrent refresh or logout
            self.logger.warning("refresh_race_lost", subject_id=claims.sub)
            raise SessionRevoked("session revoked")
        self.logger.info("refresh_rotated", subject_id=claims.sub)
        return pair

    async def logout(self, refresh_token: str) -> bool:
        claims = self.signer.verify(refresh_token, REFRESH, allow_expired=True)
        revoked = self.sessions.rotate(claims.jti)
        self.logger.info("logout", subject_id=claims.sub, revoked=revoked)
        return revoked

    async def logout_all(self, subject_id: str) -> int:
        return self.sessions.revoke_all(subject_id)

    async def verify_email(self, token: str) -> Account:
        account = self.ledger.consume_email_verification(token)
        self.logger.info("email_verified", account_id=account.id)
        return account

    async def resend_verification(self, email: str) -> None:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account or account.email_verified:
            self.logger.info("verification_resend_skipped", email_hash=hash_email(normalized))
            return
        token = self.ledger.issue_email_verification(account.id, invalidate_pending=True)
        await self._deliver(account.email, EMAIL_VERIFY, token.token)
        self.logger.info("verification_resent", account_id=account.id)

    async def forgot_password(self, email: str) -> None:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized)
        if not account:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(normalized))
            return
        token = self.ledger.issue_password_reset(account.id)
        await self._deliver(account.email, PASSWORD_RESET, token.token)
        self.logger.info("password_reset_requested", account_id=account.id)

    async def reset_password(self, token: str, new_password: str) -> Account:
        account = self.ledger.consume_password_reset(token, self._hash_password(new_password))
        self.logger.info("password_reset_completed", account_id=account.id)
        return account

    async def change_password(
        self, subject_id: str, current_password: str, new_password: str
    ) -> int:
        account = self.store.get_account(subject_id)
        if not account or not self._password_matches(account, current_password):
            raise InvalidCredentials("invalid credentials")
        revoked = self.store.set_password_and_revoke_sessions(
            account.id, self._hash_password(new_password)
        )
        self.logger.info("password_changed", account_id=account.id, revoked_count=revoked)
        return revoked

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidCredential("missing bearer token")
        claims = self.signer.verify(token, ACCESS)
        account = self.store.get_account(claims.sub)
        if not account:
            raise InvalidCredential("unknown subject")
        return AuthContext(
            account_id=account.id,
            role=account.role,
            email=account.email,
            email_verified=account.email_verified,
        )

    def public_account(self, account: Account) -> dict[str, Any]:
        return public_account(account)

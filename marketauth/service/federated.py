from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

import httpx

from marketauth.logging import get_logger, hash_email
from marketauth.service.auth import AccountStore, AuthService, normalize_email
from marketauth.service.errors import InvalidAssertion
from marketauth.service.signer import TokenPair
from marketauth.storage.errors import ConstraintViolation
from marketauth.storage.models import Account

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})


@dataclass(frozen=True)
class IdentityClaims:
    email: str
    name: Optional[str]
    subject: str
    email_verified: bool


class AssertionVerifier(Protocol):
    async def verify(self, assertion: str, audience: str) -> IdentityClaims: ...


def _truthy(value: Any) -> bool:
    # tokeninfo returns booleans as strings
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class GoogleAssertionVerifier:
    """Validates a Google ID token through the tokeninfo endpoint."""

    def __init__(
        self,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.tokeninfo_url = tokeninfo_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _fetch(self, assertion: str) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(self.tokeninfo_url, params={"id_token": assertion})
        if response.status_code != 200:
            logger.warning("google_tokeninfo_rejected", status_code=response.status_code)
            raise InvalidAssertion("identity assertion rejected")
        payload = response.json()
        if not isinstance(payload, dict):
            raise InvalidAssertion("identity assertion rejected")
        return payload

    async def verify(self, assertion: str, audience: str) -> IdentityClaims:
        if not assertion:
            raise InvalidAssertion("missing identity assertion")
        try:
            payload = await self._fetch(assertion)
        except httpx.HTTPError as exc:
            logger.warning("google_tokeninfo_failed", error_type=type(exc).__name__, error=str(exc))
            raise InvalidAssertion("identity assertion could not be verified")
        except ValueError:
            logger.warning("google_tokeninfo_malformed")
            raise InvalidAssertion("identity assertion could not be verified")

        if payload.get("aud") != audience:
            logger.warning("google_audience_mismatch")
            raise InvalidAssertion("identity assertion audience mismatch")
        if payload.get("iss") not in GOOGLE_ISSUERS:
            logger.warning("google_issuer_mismatch", issuer=payload.get("iss"))
            raise InvalidAssertion("identity assertion issuer mismatch")
        try:
            expires_at = float(payload.get("exp", 0))
        except (TypeError, ValueError):
            expires_at = 0
        if expires_at <= time.time():
            raise InvalidAssertion("identity assertion expired")
        email = payload.get("email")
        if not email:
            raise InvalidAssertion("identity assertion has no email")
        return IdentityClaims(
            email=email,
            name=payload.get("name"),
            subject=str(payload.get("sub") or ""),
            email_verified=_truthy(payload.get("email_verified")),
        )


class FederatedIdentityBridge:
    """Maps a verified third-party identity onto a local account and signs it in."""

    def __init__(
        self,
        verifier: AssertionVerifier,
        store: AccountStore,
        auth: AuthService,
        *,
        audience: Optional[str],
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.auth = auth
        self.audience = audience

    def _account_for(self, identity: IdentityClaims) -> Account:
        email = normalize_email(identity.email)
        account = self.store.get_account_by_email(email)
        if account:
            return account
        try:
            account = self.store.create_account(
                email, None, name=identity.name, email_verified=True
            )
        except ConstraintViolation:
            # Concurrent first sign-in created it
            account = self.store.get_account_by_email(email)
            if not account:
                raise
            return account
        logger.info("federated_account_created", account_id=account.id)
        return account

    async def login_with_assertion(self, assertion: str) -> Tuple[Account, TokenPair]:
        if not self.audience:
            logger.error("federated_login_unconfigured")
            raise InvalidAssertion("federated sign-in is not configured")
        identity = await self.verifier.verify(assertion, self.audience)
        if not identity.email or not identity.email_verified:
            logger.warning("federated_email_unverified", email_hash=hash_email(identity.email or ""))
            raise InvalidAssertion("identity provider did not verify the email")
        account = self._account_for(identity)
        pair = self.auth.start_session(account.id)
        logger.info("federated_login_succeeded", account_id=account.id)
        return account, pair

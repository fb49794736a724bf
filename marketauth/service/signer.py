from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from marketauth.config import Settings
from marketauth.logging import get_logger
from marketauth.service.errors import ExpiredCredential, InvalidCredential

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
ACTION = "action"

CLAIMS_VERSION = 1


class _Claims(BaseModel):
    """Fixed claim set shared by every token kind; unknown claims are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ver: Literal[1] = CLAIMS_VERSION
    iss: str
    aud: str
    sub: str
    iat: int
    exp: int


class AccessClaims(_Claims):
    typ: Literal["access"] = ACCESS


class RefreshClaims(_Claims):
    typ: Literal["refresh"] = REFRESH
    jti: str


class ActionClaims(_Claims):
    typ: Literal["action"] = ACTION
    jti: str
    purpose: str


Claims = Union[AccessClaims, RefreshClaims, ActionClaims]

_CLAIM_MODELS: dict[str, Type[_Claims]] = {
    ACCESS: AccessClaims,
    REFRESH: RefreshClaims,
    ACTION: ActionClaims,
}


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    jti: str
    expires_in: int


def new_jti() -> str:
    return uuid.uuid4().hex


class CredentialSigner:
    """HS256 signer for access, refresh and action tokens.

    Each kind is signed with its own secret, so a token of one kind never
    verifies as another even before the ``typ`` claim is checked. Signing and
    verification are pure functions of the settings and the clock.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
            ACTION: settings.jwt_action_secret.encode(),
        }

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_days * 86400

    def _base_claims(self, subject_id: str, ttl_seconds: int) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "ver": CLAIMS_VERSION,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "iat": now,
            "exp": now + ttl_seconds,
        }

    def issue_access(self, subject_id: str) -> str:
        claims = AccessClaims(**self._base_claims(subject_id, self.access_ttl_seconds))
        return self._encode_jwt(ACCESS, claims)

    def issue_refresh(self, subject_id: str, *, jti: Optional[str] = None) -> Tuple[str, str]:
        jti = jti or new_jti()
        claims = RefreshClaims(
            **self._base_claims(subject_id, self.refresh_ttl_seconds), jti=jti
        )
        return self._encode_jwt(REFRESH, claims), jti

    def issue_pair(self, subject_id: str, *, jti: Optional[str] = None) -> TokenPair:
        refresh_token, jti = self.issue_refresh(subject_id, jti=jti)
        return TokenPair(
            access_token=self.issue_access(subject_id),
            refresh_token=refresh_token,
            jti=jti,
            expires_in=self.access_ttl_seconds,
        )

    def issue_action(self, subject_id: str, purpose: str, ttl_minutes: int) -> str:
        claims = ActionClaims(
            **self._base_claims(subject_id, ttl_minutes * 60),
            jti=new_jti(),
            purpose=purpose,
        )
        return self._encode_jwt(ACTION, claims)

    def verify(self, token: str, kind: str, *, allow_expired: bool = False) -> Claims:
        """Decode ``token`` as ``kind`` or raise.

        ``InvalidCredential`` covers every structural, signature, issuer,
        audience, kind and schema failure; ``ExpiredCredential`` is raised only
        for an otherwise valid token past ``exp``.
        """
        model = _CLAIM_MODELS.get(kind)
        if model is None:
            raise ValueError(f"unknown token kind: {kind}")
        payload = self._decode_jwt(kind, token)
        try:
            claims = model.model_validate(payload)
        except PydanticValidationError:
            logger.warning("jwt_claims_invalid", kind=kind)
            raise InvalidCredential("invalid token")
        if claims.iss != self.settings.jwt_issuer or claims.aud != self.settings.jwt_audience:
            logger.warning("jwt_issuer_or_audience_mismatch", kind=kind)
            raise InvalidCredential("invalid token")
        if not allow_expired and claims.exp <= self._clock() - self.settings.jwt_leeway_seconds:
            raise ExpiredCredential("token expired")
        return claims

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, kind: str, claims: _Claims) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(claims.model_dump(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _decode_jwt(self, kind: str, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidCredential("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidCredential("invalid token")

        # Header algorithm is checked before the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidCredential("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidCredential("invalid token")

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidCredential("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidCredential("invalid token")
        if not isinstance(payload, dict):
            raise InvalidCredential("invalid token")
        return payload

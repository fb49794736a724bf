from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from marketauth.api.schemas import (
    AccountResponse,
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    GoogleLoginRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RevokedResponse,
    TokenPairResponse,
    VerifyEmailRequest,
)
from marketauth.logging import get_logger, hash_email
from marketauth.service.auth import AuthContext, public_account
from marketauth.service.errors import InvalidCredential, RateLimitedError
from marketauth.service.runtime import check_rate_limit, get_runtime
from marketauth.service.signer import TokenPair
from marketauth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

# Identical for existing and unknown addresses
_RESET_SENT_MESSAGE = "If the email exists, instructions have been sent."
_VERIFICATION_SENT_MESSAGE = "If the account exists and is pending verification, a new link has been sent."


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, _remaining, reset_after = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_after)}
        )


def _token_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )


def _auth_envelope(account: Account, pair: TokenPair) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=AccountResponse(**public_account(account)),
            tokens=_token_response(pair),
        ),
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create an unverified account, send its verification link and sign it in."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.signup_rate_limit_per_minute,
    )
    account, pair = await runtime.auth.register(
        body.email, body.password, name=body.name, role=body.role
    )
    return _auth_envelope(account, pair)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{hash_email(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    account, pair = await runtime.auth.login(body.email, body.password)
    return _auth_envelope(account, pair)


@router.post("/refresh", response_model=Envelope)
async def refresh(
    body: Optional[RefreshRequest] = None,
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    """Exchange a refresh token for a new pair; the presented token stops working."""
    token = (body.refresh_token if body else None) or x_refresh_token
    if not token:
        raise InvalidCredential("refresh token required")
    runtime = get_runtime()
    pair = await runtime.auth.refresh(token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/logout", response_model=Envelope)
async def logout(
    body: Optional[LogoutRequest] = None,
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    token = (body.refresh_token if body else None) or x_refresh_token
    if not token:
        raise InvalidCredential("refresh token required")
    runtime = get_runtime()
    await runtime.auth.logout(token)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.account_id)
    return Envelope(status="ok", data=RevokedResponse(revoked_count=revoked))


async def _verify_email(token: str) -> Envelope:
    runtime = get_runtime()
    account = await runtime.auth.verify_email(token)
    return Envelope(status="ok", data=AccountResponse(**public_account(account)))


@router.get("/verify-email", response_model=Envelope)
async def verify_email_query(token: str = Query(..., min_length=1, max_length=256)):
    return await _verify_email(token)


@router.get("/verify-email/{token}", response_model=Envelope)
async def verify_email_path(token: str):
    return await _verify_email(token)


@router.post("/verify-email", response_model=Envelope)
async def verify_email_body(body: VerifyEmailRequest):
    return await _verify_email(body.token)


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(body: EmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_VERIFICATION_SENT_MESSAGE))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: EmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_RESET_SENT_MESSAGE))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    """Set a new password from a reset token and sign out every session."""
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/password/change", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=RevokedResponse(revoked_count=revoked))


@router.post("/google", response_model=Envelope)
async def google_login(body: GoogleLoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"google:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    account, pair = await runtime.federated.login_with_assertion(body.id_token)
    return _auth_envelope(account, pair)


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise InvalidCredential("unknown subject")
    return Envelope(status="ok", data=AccountResponse(**public_account(account)))

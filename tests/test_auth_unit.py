"""Unit tests for the auth service.

Covers registration, login, the refresh rotation state machine, logout,
email verification, password reset/change and bearer authentication.
"""

import asyncio
import copy
import time

import pytest

from marketauth.service.action_tokens import ActionTokenLedger
from marketauth.service.auth import AuthService
from marketauth.service.errors import (
    DuplicateAccount,
    EmailNotVerified,
    ExpiredCredential,
    InvalidCredential,
    InvalidCredentials,
    InvalidOrExpiredToken,
    SessionRevoked,
    ValidationError,
)
from marketauth.service.sessions import RefreshSessionStore
from marketauth.service.signer import CredentialSigner
from marketauth.storage.memory import MemoryStore
from marketauth.storage.models import EMAIL_VERIFY, PASSWORD_RESET

PASSWORD = "longenough1"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings, mailer, clock):
    return AuthService(
        memory_store,
        CredentialSigner(settings, clock=clock),
        RefreshSessionStore(memory_store),
        ActionTokenLedger(memory_store, settings),
        mailer,
        settings,
    )


async def _verified_account(auth_service, mailer, email="buyer@example.com"):
    account, pair = await auth_service.register(email, PASSWORD)
    await auth_service.verify_email(mailer.last_token(EMAIL_VERIFY))
    return account, pair


class TestRegister:
    async def test_register_creates_unverified_account_with_one_token(
        self, auth_service, memory_store, mailer
    ):
        account, pair = await auth_service.register("a@x.com", PASSWORD)

        assert account.email_verified is False
        assert account.role == "customer"
        assert account.password_hash != PASSWORD
        pending = memory_store.list_action_tokens(account.id, EMAIL_VERIFY)
        assert len(pending) == 1
        assert pending[0].used_at is None
        assert mailer.sent == [("a@x.com", EMAIL_VERIFY, pending[0].token)]
        assert auth_service.sessions.is_active(pair.jti)

    async def test_register_normalizes_email(self, auth_service):
        account, _ = await auth_service.register("  Mixed@Example.COM ", PASSWORD)
        assert account.email == "mixed@example.com"

    async def test_register_accepts_marketplace_roles(self, auth_service):
        account, _ = await auth_service.register(
            "provider@example.com", PASSWORD, name="Pat", role="Provider"
        )
        assert account.role == "provider"
        assert account.name == "Pat"

    async def test_register_rejects_admin_role(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("admin@example.com", PASSWORD, role="admin")

    async def test_duplicate_email_rejected(self, auth_service):
        await auth_service.register("a@x.com", PASSWORD)
        with pytest.raises(DuplicateAccount):
            await auth_service.register("A@X.com", PASSWORD)

    async def test_delivery_failure_keeps_account_and_token(
        self, auth_service, memory_store, mailer
    ):
        mailer.result = False
        account, _ = await auth_service.register("a@x.com", PASSWORD)
        assert len(memory_store.list_action_tokens(account.id, EMAIL_VERIFY)) == 1

    async def test_delivery_exception_is_swallowed(self, auth_service, memory_store):
        class BrokenMailer:
            def deliver(self, email, kind, token):
                raise ConnectionError("smtp down")

        auth_service.mailer = BrokenMailer()
        account, _ = await auth_service.register("a@x.com", PASSWORD)
        assert memory_store.get_account(account.id) is not None

    async def test_slow_delivery_does_not_stall_other_requests(self, auth_service, mailer):
        class SlowMailer:
            def deliver(self, email, kind, token):
                time.sleep(0.3)
                return mailer.deliver(email, kind, token)

        auth_service.mailer = SlowMailer()
        ticks = 0

        async def heartbeat():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(heartbeat())
        try:
            await auth_service.register("a@x.com", PASSWORD)
        finally:
            task.cancel()

        assert ticks >= 10
        assert mailer.last_token(EMAIL_VERIFY)


class TestVerifyEmail:
    async def test_verification_scenario(self, auth_service, mailer):
        account, _ = await auth_service.register("a@x.com", PASSWORD)

        with pytest.raises(InvalidOrExpiredToken):
            await auth_service.verify_email("0" * 64)

        token = mailer.last_token(EMAIL_VERIFY)
        verified = await auth_service.verify_email(token)
        assert verified.id == account.id
        assert verified.email_verified is True

        with pytest.raises(InvalidOrExpiredToken):
            await auth_service.verify_email(token)

    async def test_resend_retires_previous_link(self, auth_service, mailer):
        await auth_service.register("a@x.com", PASSWORD)
        first = mailer.last_token(EMAIL_VERIFY)

        await auth_service.resend_verification("a@x.com")
        second = mailer.last_token(EMAIL_VERIFY)

        assert first != second
        with pytest.raises(InvalidOrExpiredToken):
            await auth_service.verify_email(first)
        assert (await auth_service.verify_email(second)).email_verified

    async def test_resend_is_silent_for_unknown_and_verified(self, auth_service, mailer):
        await auth_service.resend_verification("nobody@example.com")
        await _verified_account(auth_service, mailer)
        sent_before = len(mailer.sent)

        await auth_service.resend_verification("buyer@example.com")
        assert len(mailer.sent) == sent_before


class TestLogin:
    async def test_login_unverified_issues_no_tokens(self, auth_service, memory_store):
        account, _ = await auth_service.register("a@x.com", PASSWORD)
        before = len(memory_store.list_refresh_sessions(account.id))

        with pytest.raises(EmailNotVerified):
            await auth_service.login("a@x.com", PASSWORD)
        assert len(memory_store.list_refresh_sessions(account.id)) == before

    async def test_login_verified_returns_pair(self, auth_service, mailer):
        account, _ = await _verified_account(auth_service, mailer)

        logged_in, pair = await auth_service.login("BUYER@example.com", PASSWORD)
        assert logged_in.id == account.id
        assert auth_service.sessions.is_active(pair.jti)

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth_service, mailer):
        await _verified_account(auth_service, mailer)

        with pytest.raises(InvalidCredentials) as wrong:
            await auth_service.login("buyer@example.com", "not-the-password")
        with pytest.raises(InvalidCredentials) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        assert wrong.value.message == unknown.value.message

    async def test_unverified_wrong_password_reports_invalid_credentials(self, auth_service):
        await auth_service.register("a@x.com", PASSWORD)
        with pytest.raises(InvalidCredentials):
            await auth_service.login("a@x.com", "wrong-password")

    async def test_password_less_account_cannot_login(self, auth_service, memory_store):
        memory_store.create_account("fed@example.com", None, email_verified=True)
        with pytest.raises(InvalidCredentials):
            await auth_service.login("fed@example.com", PASSWORD)


class TestRefresh:
    async def test_refresh_rotates(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)

        rotated = await auth_service.refresh(pair.refresh_token)

        assert rotated.jti != pair.jti
        assert not auth_service.sessions.is_active(pair.jti)
        assert auth_service.sessions.is_active(rotated.jti)

    async def test_second_use_fails(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)
        await auth_service.refresh(pair.refresh_token)

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(pair.refresh_token)

    async def test_reuse_revokes_lineage(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)
        rotated = await auth_service.refresh(pair.refresh_token)

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(pair.refresh_token)
        # the legitimate successor is gone too
        with pytest.raises(SessionRevoked):
            await auth_service.refresh(rotated.refresh_token)

    async def test_reuse_leaves_other_logins_alone(self, auth_service, mailer):
        _, first = await _verified_account(auth_service, mailer)
        _, second = await auth_service.login("buyer@example.com", PASSWORD)
        await auth_service.refresh(first.refresh_token)

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(first.refresh_token)
        assert auth_service.sessions.is_active(second.jti)

    async def test_reuse_detection_can_be_disabled(self, auth_service, mailer):
        auth_service.settings = auth_service.settings.model_copy(
            update={"refresh_reuse_detection": False}
        )
        _, pair = await _verified_account(auth_service, mailer)
        rotated = await auth_service.refresh(pair.refresh_token)

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(pair.refresh_token)
        assert auth_service.sessions.is_active(rotated.jti)

    async def test_losing_a_concurrent_refresh_leaves_the_winner_active(
        self, auth_service, mailer, monkeypatch
    ):
        _, pair = await _verified_account(auth_service, mailer)
        # both requests read the session while it was still active
        stale = copy.copy(auth_service.sessions.get(pair.jti))
        winner = await auth_service.refresh(pair.refresh_token)
        monkeypatch.setattr(auth_service.sessions, "get", lambda jti: stale)

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(pair.refresh_token)
        assert auth_service.sessions.backend.get_refresh_session(winner.jti).is_active
        assert auth_service.sessions.backend.get_refresh_session(pair.jti).replaced_by == winner.jti

    async def test_forged_jti_rejected(self, auth_service, mailer):
        account, _ = await _verified_account(auth_service, mailer)
        forged, _jti = auth_service.signer.issue_refresh(account.id)

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(forged)

    async def test_access_token_is_not_a_refresh_token(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)
        with pytest.raises(InvalidCredential):
            await auth_service.refresh(pair.access_token)

    async def test_expired_refresh_token(self, auth_service, mailer, clock):
        _, pair = await _verified_account(auth_service, mailer)
        clock.now += 8 * 86400

        with pytest.raises(ExpiredCredential):
            await auth_service.refresh(pair.refresh_token)

    async def test_jti_collision_regenerates(self, auth_service, mailer, memory_store, monkeypatch):
        account, pair = await _verified_account(auth_service, mailer)
        memory_store.insert_refresh_session(account.id, "taken")
        jtis = iter(["taken", "fresh"])
        monkeypatch.setattr("marketauth.service.signer.new_jti", lambda: next(jtis))

        rotated = await auth_service.refresh(pair.refresh_token)
        assert rotated.jti == "fresh"
        assert memory_store.get_refresh_session("taken").family_id == "taken"


class TestLogout:
    async def test_logout_revokes_and_is_idempotent(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)

        assert await auth_service.logout(pair.refresh_token) is True
        assert await auth_service.logout(pair.refresh_token) is False
        with pytest.raises(SessionRevoked):
            await auth_service.refresh(pair.refresh_token)

    async def test_logout_accepts_expired_token(self, auth_service, mailer, clock):
        _, pair = await _verified_account(auth_service, mailer)
        clock.now += 8 * 86400
        assert await auth_service.logout(pair.refresh_token) is True

    async def test_logout_rejects_forged_token(self, auth_service):
        with pytest.raises(InvalidCredential):
            await auth_service.logout("a.b.c")

    async def test_logout_all_revokes_every_session(self, auth_service, mailer):
        account, first = await _verified_account(auth_service, mailer)
        _, second = await auth_service.login("buyer@example.com", PASSWORD)

        assert await auth_service.logout_all(account.id) == 2
        assert not auth_service.sessions.is_active(first.jti)
        assert not auth_service.sessions.is_active(second.jti)


class TestPasswordReset:
    async def test_reset_invalidates_existing_sessions(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)

        await auth_service.forgot_password("buyer@example.com")
        await auth_service.reset_password(mailer.last_token(PASSWORD_RESET), "brand-new-pass")

        with pytest.raises(SessionRevoked):
            await auth_service.refresh(pair.refresh_token)
        with pytest.raises(InvalidCredentials):
            await auth_service.login("buyer@example.com", PASSWORD)
        _, fresh = await auth_service.login("buyer@example.com", "brand-new-pass")
        assert auth_service.sessions.is_active(fresh.jti)

    async def test_forgot_password_unknown_email_is_silent(self, auth_service, mailer):
        await auth_service.forgot_password("nobody@example.com")
        assert mailer.sent == []

    async def test_reset_token_single_use(self, auth_service, mailer):
        await _verified_account(auth_service, mailer)
        await auth_service.forgot_password("buyer@example.com")
        token = mailer.last_token(PASSWORD_RESET)
        await auth_service.reset_password(token, "brand-new-pass")

        with pytest.raises(InvalidOrExpiredToken):
            await auth_service.reset_password(token, "another-pass-1")


class TestChangePassword:
    async def test_change_password_revokes_sessions(self, auth_service, mailer):
        account, pair = await _verified_account(auth_service, mailer)

        revoked = await auth_service.change_password(account.id, PASSWORD, "changed-pass-1")

        assert revoked == 1
        assert not auth_service.sessions.is_active(pair.jti)
        await auth_service.login("buyer@example.com", "changed-pass-1")

    async def test_change_password_requires_current(self, auth_service, mailer):
        account, pair = await _verified_account(auth_service, mailer)

        with pytest.raises(InvalidCredentials):
            await auth_service.change_password(account.id, "wrong", "changed-pass-1")
        assert auth_service.sessions.is_active(pair.jti)


class TestAuthenticate:
    async def test_bearer_access_token(self, auth_service, mailer):
        account, pair = await _verified_account(auth_service, mailer)

        ctx = await auth_service.authenticate(f"Bearer {pair.access_token}")
        assert ctx.account_id == account.id
        assert ctx.email_verified is True

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "token-only"])
    async def test_missing_or_malformed_header(self, auth_service, header):
        with pytest.raises(InvalidCredential):
            await auth_service.authenticate(header)

    async def test_refresh_token_is_not_a_bearer(self, auth_service, mailer):
        _, pair = await _verified_account(auth_service, mailer)
        with pytest.raises(InvalidCredential):
            await auth_service.authenticate(f"Bearer {pair.refresh_token}")

    async def test_expired_access_token(self, auth_service, mailer, clock):
        _, pair = await _verified_account(auth_service, mailer)
        clock.now += 16 * 60
        with pytest.raises(ExpiredCredential):
            await auth_service.authenticate(f"Bearer {pair.access_token}")


def test_public_account_omits_password_hash(memory_store, auth_service):
    account = memory_store.create_account("a@x.com", "secret-hash", name="Al")
    projected = auth_service.public_account(account)
    assert "password_hash" not in projected
    assert projected["email"] == "a@x.com"
    assert projected["email_verified"] is False

import time

import httpx
import pytest

from marketauth.service.action_tokens import ActionTokenLedger
from marketauth.service.auth import AuthService
from marketauth.service.errors import InvalidAssertion
from marketauth.service.federated import (
    FederatedIdentityBridge,
    GoogleAssertionVerifier,
    IdentityClaims,
)
from marketauth.service.sessions import RefreshSessionStore
from marketauth.service.signer import CredentialSigner
from marketauth.storage.memory import MemoryStore

AUDIENCE = "test-client.apps.googleusercontent.com"


def _tokeninfo(**overrides):
    payload = {
        "iss": "https://accounts.google.com",
        "aud": AUDIENCE,
        "sub": "1234567890",
        "email": "Fed.User@Gmail.com",
        "email_verified": "true",
        "name": "Fed User",
        "exp": str(int(time.time()) + 600),
    }
    payload.update(overrides)
    return payload


def _verifier(handler):
    return GoogleAssertionVerifier(
        "https://oauth2.example.test/tokeninfo", transport=httpx.MockTransport(handler)
    )


class StaticVerifier:
    def __init__(self, identity=None, error=None):
        self.identity = identity
        self.error = error
        self.calls = []

    async def verify(self, assertion, audience):
        self.calls.append((assertion, audience))
        if self.error:
            raise self.error
        return self.identity


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings, mailer):
    return AuthService(
        memory_store,
        CredentialSigner(settings),
        RefreshSessionStore(memory_store),
        ActionTokenLedger(memory_store, settings),
        mailer,
        settings,
    )


def _bridge(verifier, memory_store, auth_service, audience=AUDIENCE):
    return FederatedIdentityBridge(verifier, memory_store, auth_service, audience=audience)


class TestGoogleAssertionVerifier:
    async def test_valid_assertion(self):
        seen = {}

        def handler(request):
            seen["id_token"] = request.url.params.get("id_token")
            return httpx.Response(200, json=_tokeninfo())

        identity = await _verifier(handler).verify("assertion-1", AUDIENCE)

        assert seen["id_token"] == "assertion-1"
        assert identity.email == "Fed.User@Gmail.com"
        assert identity.name == "Fed User"
        assert identity.subject == "1234567890"
        assert identity.email_verified is True

    async def test_unverified_email_flag_parsed(self):
        verifier = _verifier(lambda r: httpx.Response(200, json=_tokeninfo(email_verified="false")))
        identity = await verifier.verify("assertion", AUDIENCE)
        assert identity.email_verified is False

    @pytest.mark.parametrize(
        "payload",
        [
            _tokeninfo(aud="someone-else"),
            _tokeninfo(iss="https://evil.example.com"),
            _tokeninfo(exp=str(int(time.time()) - 10)),
            _tokeninfo(email=""),
        ],
    )
    async def test_rejected_claims(self, payload):
        verifier = _verifier(lambda r: httpx.Response(200, json=payload))
        with pytest.raises(InvalidAssertion):
            await verifier.verify("assertion", AUDIENCE)

    async def test_provider_rejection(self):
        verifier = _verifier(lambda r: httpx.Response(400, json={"error": "invalid_token"}))
        with pytest.raises(InvalidAssertion):
            await verifier.verify("assertion", AUDIENCE)

    async def test_non_json_body(self):
        verifier = _verifier(lambda r: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(InvalidAssertion):
            await verifier.verify("assertion", AUDIENCE)

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(InvalidAssertion):
            await _verifier(handler).verify("assertion", AUDIENCE)

    async def test_empty_assertion(self):
        def handler(request):
            raise AssertionError("provider must not be called")

        with pytest.raises(InvalidAssertion):
            await _verifier(handler).verify("", AUDIENCE)


class TestFederatedIdentityBridge:
    async def test_first_login_creates_verified_passwordless_account(
        self, memory_store, auth_service
    ):
        verifier = StaticVerifier(
            IdentityClaims(email="Fed@Example.com", name="Fed", subject="g-1", email_verified=True)
        )
        account, pair = await _bridge(verifier, memory_store, auth_service).login_with_assertion("a")

        assert verifier.calls == [("a", AUDIENCE)]
        assert account.email == "fed@example.com"
        assert account.email_verified is True
        assert account.password_hash is None
        assert account.role == "customer"
        assert auth_service.sessions.is_active(pair.jti)

    async def test_existing_account_is_reused(self, memory_store, auth_service):
        existing, _ = await auth_service.register("fed@example.com", "longenough1")
        verifier = StaticVerifier(
            IdentityClaims(email="fed@example.com", name="Fed", subject="g-1", email_verified=True)
        )

        account, _ = await _bridge(verifier, memory_store, auth_service).login_with_assertion("a")

        assert account.id == existing.id
        assert account.password_hash == existing.password_hash

    async def test_unverified_provider_email_rejected(self, memory_store, auth_service):
        verifier = StaticVerifier(
            IdentityClaims(email="fed@example.com", name=None, subject="g-1", email_verified=False)
        )
        with pytest.raises(InvalidAssertion):
            await _bridge(verifier, memory_store, auth_service).login_with_assertion("a")
        assert memory_store.get_account_by_email("fed@example.com") is None

    async def test_unconfigured_audience_rejected(self, memory_store, auth_service):
        verifier = StaticVerifier(error=AssertionError("verifier must not be called"))
        with pytest.raises(InvalidAssertion):
            await _bridge(verifier, memory_store, auth_service, audience=None).login_with_assertion("a")

    async def test_verifier_errors_propagate(self, memory_store, auth_service):
        verifier = StaticVerifier(error=InvalidAssertion("identity assertion rejected"))
        with pytest.raises(InvalidAssertion):
            await _bridge(verifier, memory_store, auth_service).login_with_assertion("a")

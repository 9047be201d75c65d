"""
Shared test fixtures for the MCP OAuth test suite.

Pytest fixtures are reusable setup functions that tests request by name.

Key fixtures:
- clock: a controllable wall clock shared by the store and the engine
- store: an InMemoryKVStore driven by that clock
- core: a fully wired AuthCore (build_core) on top of the store
- make_token: a factory that signs JWTs with arbitrary claims, for testing
  how the validator reacts to tokens the server would never mint itself
- issue_code: runs the authorization step and returns (code, verifier)

Testing approach:
- Unit tests (test_tokens, test_store, test_scopes, test_pkce, ...) exercise
  one component at a time.
- test_issuer.py covers the token endpoint state machine, including
  replay and concurrent refresh.
- test_server.py and test_mcp.py drive the ASGI app with httpx, in memory.
"""

import asyncio
import time

import jwt
import pytest

from mcp_oauth.authorize import AuthorizationRequest
from mcp_oauth.config import Settings
from mcp_oauth.consent import AuthenticatedSession
from mcp_oauth.core import build_core
from mcp_oauth.pkce import generate_pkce_pair
from mcp_oauth.store import InMemoryKVStore

TEST_SECRET = "test-secret-0123456789-abcdefghij"
TEST_ISSUER = "https://mcp.test"
WEB_REDIRECT = "https://claude.ai/api/mcp/auth_callback"
DESKTOP_REDIRECT = "http://localhost"

TEST_API_KEY = "k-analytics-123"
WILDCARD_API_KEY = "k-root-456"
TEST_DEVICE = "aa:bb:cc:dd:ee:ff"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float | None = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class YieldingStore:
    """
    Wraps a store and yields to the event loop before every operation.

    The in-memory store never suspends, so without this two gathered
    coroutines would simply run one after the other.
    """

    def __init__(self, inner):
        self._inner = inner

    async def get(self, key):
        await asyncio.sleep(0)
        return await self._inner.get(key)

    async def set_if_absent(self, key, value, ttl):
        await asyncio.sleep(0)
        return await self._inner.set_if_absent(key, value, ttl)

    async def compare_and_swap(self, key, expected, new):
        await asyncio.sleep(0)
        return await self._inner.compare_and_swap(key, expected, new)

    async def set(self, key, value, ttl):
        await asyncio.sleep(0)
        await self._inner.set(key, value, ttl)

    async def delete(self, key):
        await asyncio.sleep(0)
        await self._inner.delete(key)

    async def ping(self):
        return await self._inner.ping()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        jwt_secret_key=TEST_SECRET,
        issuer=TEST_ISSUER,
        key_prefix="test:",
        api_keys={TEST_API_KEY: ["analytics", "echo"], WILDCARD_API_KEY: ["*"]},
        authorized_devices={TEST_DEVICE: "device-user"},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKVStore(clock=clock)


@pytest.fixture
def core(test_settings, store, clock):
    return build_core(test_settings, store=store, clock=clock)


@pytest.fixture
def session():
    return AuthenticatedSession(session_id="sess-1", subject="alice@example.com")


@pytest.fixture
def pkce_pair():
    return generate_pkce_pair()


# ---------------------------------------------------------------------------
# Token factory fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to sign JWTs with arbitrary claims.

    Defaults produce a valid access token for claude-web with "mcp:read".
    Pass a claim as None to omit it, or override any claim by keyword.

    Usage in tests:
        def test_something(make_token):
            token = make_token(scope="mcp:read mcp:write", exp_offset=-10)
    """

    def _make_token(
        secret: str = TEST_SECRET,
        algorithm: str = "HS256",
        exp_offset: int = 3600,
        **claims,
    ) -> str:
        now = int(time.time())
        payload = {
            "iss": TEST_ISSUER,
            "aud": TEST_ISSUER,
            "sub": "alice@example.com",
            "client_id": "claude-web",
            "scope": "mcp:read",
            "token_type": "access_token",
            "jti": "jti-test",
            "iat": now,
            "exp": now + exp_offset,
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_token


@pytest.fixture
def issue_code(core, session, pkce_pair):
    """
    Run the authorization step and return (code, code_verifier).

    The request is validated exactly as /oauth/authorize would.
    """
    verifier, challenge = pkce_pair

    async def _issue_code(
        scope: str = "mcp:read mcp:write",
        client_id: str = "claude-web",
        redirect_uri: str = WEB_REDIRECT,
        state: str | None = "xyz",
    ) -> tuple[str, str]:
        request = AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=challenge,
            code_challenge_method="S256",
        )
        grant = await core.authorization.issue_code(request, session.subject)
        return grant.code, verifier

    return _issue_code

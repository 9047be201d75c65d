"""
Tests for the token endpoint state machine (mcp_oauth/issuer.py).

Covers:
- authorization_code exchange: single use, PKCE (S256 and plain), client/redirect binding
- confidential clients: client_secret checked on both grants
- refresh_token rotation and replay detection (family revocation)
- concurrent refreshes of one token: exactly one winner
- optional scope narrowing on refresh
- RFC 7009 revocation
- fail-closed behaviour when the store is unavailable
"""

import asyncio

import pytest

from mcp_oauth.authorize import AuthorizationRequest
from mcp_oauth.clients import ClientRegistry, OAuthClient
from mcp_oauth.core import build_core
from mcp_oauth.errors import OAuthProtocolError, StorageUnavailableError
from mcp_oauth.store import InMemoryKVStore

from tests.conftest import DESKTOP_REDIRECT, WEB_REDIRECT, YieldingStore


def code_form(code: str, verifier: str, **overrides) -> dict:
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": WEB_REDIRECT,
        "client_id": "claude-web",
        "code_verifier": verifier,
    }
    form.update(overrides)
    return form


def refresh_form(refresh_token: str, **overrides) -> dict:
    form = {"grant_type": "refresh_token", "refresh_token": refresh_token, "client_id": "claude-web"}
    form.update(overrides)
    return form


async def exchange(core, issue_code, scope="mcp:read mcp:write"):
    code, verifier = await issue_code(scope=scope)
    return await core.issuer.handle_token_request(code_form(code, verifier))


class TestRequestParsing:
    async def test_missing_grant_type(self, core):
        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request({"client_id": "claude-web"})
        assert exc.value.error == "invalid_request"

    async def test_unsupported_grant_type(self, core):
        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request({"grant_type": "password", "client_id": "claude-web"})
        assert exc.value.error == "unsupported_grant_type"

    async def test_missing_client_id(self, core):
        with pytest.raises(OAuthProtocolError, match="client_id"):
            await core.issuer.handle_token_request({"grant_type": "refresh_token", "refresh_token": "x"})

    async def test_missing_code_parameters_are_listed(self, core):
        with pytest.raises(OAuthProtocolError, match="code_verifier"):
            await core.issuer.handle_token_request(
                {"grant_type": "authorization_code", "client_id": "claude-web", "code": "c", "redirect_uri": WEB_REDIRECT}
            )

    async def test_unknown_client(self, core):
        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(refresh_form("x", client_id="evil-client"))
        assert exc.value.error == "invalid_client"


class TestAuthorizationCodeExchange:
    async def test_exchange_issues_token_pair(self, core, issue_code):
        response = await exchange(core, issue_code)

        assert response.token_type == "Bearer"
        assert response.expires_in == 3600
        assert response.scope == "mcp:read mcp:write"

        access = core.validator.validate_access(response.access_token)
        refresh = core.validator.validate_refresh(response.refresh_token)
        assert access.sub == refresh.sub == "alice@example.com"
        assert access.client_id == "claude-web"
        assert access.scopes == {"mcp:read", "mcp:write"}

    async def test_response_shape(self, core, issue_code):
        response = await exchange(core, issue_code)

        assert set(response.to_dict()) == {"access_token", "refresh_token", "token_type", "expires_in", "scope"}

    async def test_code_is_single_use(self, core, issue_code):
        code, verifier = await issue_code()
        await core.issuer.handle_token_request(code_form(code, verifier))

        with pytest.raises(OAuthProtocolError, match="already been used") as exc:
            await core.issuer.handle_token_request(code_form(code, verifier))
        assert exc.value.error == "invalid_grant"

    async def test_code_replay_revokes_issued_family(self, core, issue_code):
        """Tokens from the first exchange stop refreshing once the code is replayed."""
        code, verifier = await issue_code()
        first = await core.issuer.handle_token_request(code_form(code, verifier))

        with pytest.raises(OAuthProtocolError):
            await core.issuer.handle_token_request(code_form(code, verifier))

        with pytest.raises(OAuthProtocolError, match="revoked"):
            await core.issuer.handle_token_request(refresh_form(first.refresh_token))

    async def test_unknown_code(self, core, pkce_pair):
        verifier, _ = pkce_pair

        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(code_form("no-such-code", verifier))
        assert exc.value.error == "invalid_grant"

    async def test_wrong_verifier_leaves_code_unconsumed(self, core, issue_code):
        """A failed PKCE check writes nothing, so the rightful client can still redeem."""
        code, verifier = await issue_code()
        wrong = "x" * 64

        with pytest.raises(OAuthProtocolError, match="PKCE") as exc:
            await core.issuer.handle_token_request(code_form(code, wrong))
        assert exc.value.error == "invalid_grant"

        record = await core.codes.get(code)
        assert record.consumed is False
        await core.issuer.handle_token_request(code_form(code, verifier))

    async def test_malformed_verifier(self, core, issue_code):
        code, _ = await issue_code()

        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(code_form(code, "short"))
        assert exc.value.error == "invalid_request"

    async def test_redirect_uri_must_match(self, core, issue_code):
        code, verifier = await issue_code()

        with pytest.raises(OAuthProtocolError, match="Redirect URI mismatch"):
            await core.issuer.handle_token_request(
                code_form(code, verifier, redirect_uri="https://claude.ai/oauth/callback")
            )

    async def test_code_is_bound_to_client(self, core, issue_code):
        code, verifier = await issue_code()

        with pytest.raises(OAuthProtocolError, match="not issued to this client"):
            await core.issuer.handle_token_request(
                code_form(code, verifier, client_id="claude-desktop", redirect_uri=DESKTOP_REDIRECT)
            )

    async def test_expired_code(self, core, clock, issue_code):
        code, verifier = await issue_code()
        clock.advance(core.settings.auth_code_ttl + 1)

        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(code_form(code, verifier))
        assert exc.value.error == "invalid_grant"

    async def test_concurrent_exchanges_yield_one_pair(self, test_settings, clock, session, pkce_pair):
        core = build_core(test_settings, store=YieldingStore(InMemoryKVStore(clock=clock)), clock=clock)
        verifier, challenge = pkce_pair

        grant = await core.authorization.issue_code(
            AuthorizationRequest(
                client_id="claude-web",
                redirect_uri=WEB_REDIRECT,
                scope="mcp:read",
                state=None,
                code_challenge=challenge,
            ),
            session.subject,
        )
        form = code_form(grant.code, verifier)

        results = await asyncio.gather(
            core.issuer.handle_token_request(form),
            core.issuer.handle_token_request(form),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, OAuthProtocolError)]
        assert len(errors) == 1
        assert errors[0].error == "invalid_grant"

    async def test_first_refresh_token_names_its_family(self, core, issue_code):
        code, verifier = await issue_code()

        response = await core.issuer.handle_token_request(code_form(code, verifier))

        refresh = core.validator.validate_refresh(response.refresh_token)
        assert refresh.fam == refresh.jti
        record = await core.codes.get(code)
        assert record.family_id == refresh.fam

    async def test_plain_challenge_exchange(self, core, session):
        verifier = "plain-verifier-" + "a" * 40
        grant = await core.authorization.issue_code(
            AuthorizationRequest(
                client_id="claude-web",
                redirect_uri=WEB_REDIRECT,
                scope="mcp:read",
                state=None,
                code_challenge=verifier,
                code_challenge_method="plain",
            ),
            session.subject,
        )

        response = await core.issuer.handle_token_request(code_form(grant.code, verifier))

        assert response.scope == "mcp:read"

    async def test_plain_challenge_rejects_other_verifier(self, core, session):
        verifier = "plain-verifier-" + "a" * 40
        grant = await core.authorization.issue_code(
            AuthorizationRequest(
                client_id="claude-web",
                redirect_uri=WEB_REDIRECT,
                scope="mcp:read",
                state=None,
                code_challenge=verifier,
                code_challenge_method="plain",
            ),
            session.subject,
        )

        with pytest.raises(OAuthProtocolError, match="PKCE"):
            await core.issuer.handle_token_request(code_form(grant.code, verifier + "b"))


AGENT_REDIRECT = "https://agent.example.com/cb"


@pytest.fixture
def confidential_core(test_settings, store, clock):
    agent = OAuthClient(
        client_id="internal-agent",
        client_name="Internal Agent",
        redirect_uris=(AGENT_REDIRECT,),
        allowed_scopes=frozenset({"mcp:read"}),
        token_endpoint_auth_method="client_secret_post",
        client_secret="agent-secret",
    )
    return build_core(test_settings, store=store, clock=clock, clients=ClientRegistry((agent,)))


class TestConfidentialClient:
    async def agent_code(self, core, session, pkce_pair) -> tuple[str, str]:
        verifier, challenge = pkce_pair
        grant = await core.authorization.issue_code(
            AuthorizationRequest(
                client_id="internal-agent",
                redirect_uri=AGENT_REDIRECT,
                scope="mcp:read",
                state=None,
                code_challenge=challenge,
            ),
            session.subject,
        )
        return grant.code, verifier

    @pytest.mark.parametrize("secret", [None, "wrong-secret"])
    async def test_missing_or_wrong_secret_is_invalid_client(self, confidential_core, session, pkce_pair, secret):
        code, verifier = await self.agent_code(confidential_core, session, pkce_pair)
        form = code_form(code, verifier, client_id="internal-agent", redirect_uri=AGENT_REDIRECT)
        if secret is not None:
            form["client_secret"] = secret

        with pytest.raises(OAuthProtocolError) as exc:
            await confidential_core.issuer.handle_token_request(form)
        assert exc.value.error == "invalid_client"

        record = await confidential_core.codes.get(code)
        assert record.consumed is False

    async def test_right_secret_is_accepted(self, confidential_core, session, pkce_pair):
        code, verifier = await self.agent_code(confidential_core, session, pkce_pair)
        form = code_form(
            code, verifier, client_id="internal-agent", redirect_uri=AGENT_REDIRECT, client_secret="agent-secret"
        )

        response = await confidential_core.issuer.handle_token_request(form)

        assert response.scope == "mcp:read"

    async def test_refresh_also_needs_the_secret(self, confidential_core, session, pkce_pair):
        code, verifier = await self.agent_code(confidential_core, session, pkce_pair)
        response = await confidential_core.issuer.handle_token_request(
            code_form(code, verifier, client_id="internal-agent", redirect_uri=AGENT_REDIRECT, client_secret="agent-secret")
        )

        with pytest.raises(OAuthProtocolError) as exc:
            await confidential_core.issuer.handle_token_request(
                refresh_form(response.refresh_token, client_id="internal-agent")
            )
        assert exc.value.error == "invalid_client"


class TestRefreshRotation:
    async def test_refresh_issues_new_pair(self, core, issue_code):
        first = await exchange(core, issue_code)

        second = await core.issuer.handle_token_request(refresh_form(first.refresh_token))

        assert second.refresh_token != first.refresh_token
        assert second.scope == "mcp:read mcp:write"
        old = core.validator.validate_refresh(first.refresh_token)
        new = core.validator.validate_refresh(second.refresh_token)
        assert new.fam == old.fam
        assert new.jti != old.jti

    async def test_rotated_token_cannot_be_reused(self, core, issue_code):
        first = await exchange(core, issue_code)
        await core.issuer.handle_token_request(refresh_form(first.refresh_token))

        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(refresh_form(first.refresh_token))
        assert exc.value.error == "invalid_grant"

    async def test_replay_revokes_whole_family(self, core, issue_code):
        """
        Reusing a rotated token means it leaked. The newest token in the
        chain, held by either the attacker or the client, stops working too.
        """
        first = await exchange(core, issue_code)
        second = await core.issuer.handle_token_request(refresh_form(first.refresh_token))

        with pytest.raises(OAuthProtocolError):
            await core.issuer.handle_token_request(refresh_form(first.refresh_token))

        with pytest.raises(OAuthProtocolError, match="revoked"):
            await core.issuer.handle_token_request(refresh_form(second.refresh_token))

    async def test_other_families_are_unaffected(self, core, issue_code):
        victim = await exchange(core, issue_code)
        bystander = await exchange(core, issue_code)
        await core.issuer.handle_token_request(refresh_form(victim.refresh_token))

        with pytest.raises(OAuthProtocolError):
            await core.issuer.handle_token_request(refresh_form(victim.refresh_token))

        await core.issuer.handle_token_request(refresh_form(bystander.refresh_token))

    async def test_concurrent_refresh_has_exactly_one_winner(self, test_settings, clock, session):
        store = YieldingStore(InMemoryKVStore(clock=clock))
        core = build_core(test_settings, store=store, clock=clock)
        token, _ = core.signer.issue_refresh(session.subject, "claude-web", "mcp:read")

        results = await asyncio.gather(
            core.issuer.handle_token_request(refresh_form(token)),
            core.issuer.handle_token_request(refresh_form(token)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, OAuthProtocolError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error == "invalid_grant"
        # Losing a race is not a replay: the winner's new token still works.
        await core.issuer.handle_token_request(refresh_form(winners[0].refresh_token))

    async def test_access_token_is_not_a_refresh_token(self, core, issue_code):
        first = await exchange(core, issue_code)

        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(refresh_form(first.access_token))
        assert exc.value.error == "invalid_grant"

    async def test_refresh_is_bound_to_client(self, core, issue_code):
        first = await exchange(core, issue_code)

        with pytest.raises(OAuthProtocolError, match="not issued to this client"):
            await core.issuer.handle_token_request(refresh_form(first.refresh_token, client_id="claude-desktop"))

    async def test_rejected_refresh_does_not_rotate(self, core, issue_code):
        first = await exchange(core, issue_code)

        with pytest.raises(OAuthProtocolError):
            await core.issuer.handle_token_request(refresh_form(first.refresh_token, scope="mcp:admin"))

        await core.issuer.handle_token_request(refresh_form(first.refresh_token))


class TestScopeNarrowing:
    async def test_narrowed_access_token(self, core, issue_code):
        first = await exchange(core, issue_code)

        second = await core.issuer.handle_token_request(refresh_form(first.refresh_token, scope="mcp:read"))

        assert second.scope == "mcp:read"
        assert core.validator.validate_access(second.access_token).scopes == {"mcp:read"}

    async def test_refresh_token_keeps_original_grant(self, core, issue_code):
        """Narrowing one access token does not shrink what later refreshes may ask for."""
        first = await exchange(core, issue_code)
        second = await core.issuer.handle_token_request(refresh_form(first.refresh_token, scope="mcp:read"))

        third = await core.issuer.handle_token_request(refresh_form(second.refresh_token))

        assert third.scope == "mcp:read mcp:write"

    async def test_widening_is_rejected(self, core, issue_code):
        first = await exchange(core, issue_code, scope="mcp:read")

        with pytest.raises(OAuthProtocolError) as exc:
            await core.issuer.handle_token_request(refresh_form(first.refresh_token, scope="mcp:read mcp:write"))
        assert exc.value.error == "invalid_scope"


class TestRevocation:
    async def test_revoking_refresh_token_kills_family(self, core, issue_code):
        first = await exchange(core, issue_code)
        second = await core.issuer.handle_token_request(refresh_form(first.refresh_token))

        assert await core.issuer.revoke(second.refresh_token, "refresh_token") is True

        with pytest.raises(OAuthProtocolError):
            await core.issuer.handle_token_request(refresh_form(second.refresh_token))

    async def test_invalid_token_is_ignored(self, core):
        assert await core.issuer.revoke("garbage") is False

    async def test_access_token_is_ignored(self, core, issue_code):
        first = await exchange(core, issue_code)

        assert await core.issuer.revoke(first.access_token, "access_token") is False


class _DownStore(InMemoryKVStore):
    async def get(self, key):
        raise StorageUnavailableError("Store unavailable during get")


class TestStorageUnavailable:
    async def test_refresh_fails_closed(self, test_settings, clock, session):
        """An outage must surface as 503, never as "not revoked"."""
        core = build_core(test_settings, store=_DownStore(clock=clock), clock=clock)
        token, _ = core.signer.issue_refresh(session.subject, "claude-web", "mcp:read")

        with pytest.raises(StorageUnavailableError):
            await core.issuer.handle_token_request(refresh_form(token))

    async def test_code_exchange_fails_closed(self, test_settings, clock, pkce_pair):
        core = build_core(test_settings, store=_DownStore(clock=clock), clock=clock)
        verifier, _ = pkce_pair

        with pytest.raises(StorageUnavailableError):
            await core.issuer.handle_token_request(code_form("some-code", verifier))

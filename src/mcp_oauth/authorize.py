"""
Authorization request validation and authorization code minting.

Validation order matters for where errors may be reported:

1. client_id must be registered            -> invalid_client   (shown, never redirected)
2. redirect_uri must exactly match one      -> invalid_request  (shown, never redirected)
   registered for that client
3. response_type, if given, must be "code"  -> unsupported_response_type (redirected)
4. scope must be non-empty, supported, and  -> invalid_scope    (redirected)
   allowed for the client
5. code_challenge must be well formed and   -> invalid_request  (redirected)
   the method S256 or plain

Until steps 1 and 2 pass the redirect_uri is untrusted, so those errors are
never sent to it (that would make the endpoint an open redirector).

A successful validation mints a 256-bit random code and stores its record
with a short TTL. Nothing is written on any failure.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from mcp_oauth.clients import ClientRegistry, OAuthClient
from mcp_oauth.codes import AuthorizationCodeRecord, AuthorizationCodeStore
from mcp_oauth.errors import OAuthProtocolError, append_query
from mcp_oauth.pkce import SUPPORTED_METHODS, is_valid_code_challenge
from mcp_oauth.scopes import ScopeAuthorizer, format_scope, parse_scope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    client_id: str
    redirect_uri: str
    scope: str
    state: str | None
    code_challenge: str
    code_challenge_method: str = "S256"
    response_type: str | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> AuthorizationRequest:
        def text(name: str, default: str = "") -> str:
            value = params.get(name)
            return default if value is None else str(value)

        return cls(
            client_id=text("client_id"),
            redirect_uri=text("redirect_uri"),
            scope=text("scope"),
            state=text("state") or None,
            code_challenge=text("code_challenge"),
            code_challenge_method=text("code_challenge_method") or "S256",
            response_type=text("response_type") or None,
        )

    @property
    def scopes(self) -> list[str]:
        return parse_scope(self.scope)

    def as_params(self) -> dict[str, str]:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }
        if self.state:
            params["state"] = self.state
        return params


@dataclass(frozen=True)
class AuthorizationGrant:
    code: str
    state: str | None
    redirect_url: str


class AuthorizationRequestValidator:
    def __init__(
        self,
        clients: ClientRegistry,
        authorizer: ScopeAuthorizer,
        codes: AuthorizationCodeStore,
        code_ttl: int,
        clock: Callable[[], float] = time.time,
    ):
        self._clients = clients
        self._authorizer = authorizer
        self._codes = codes
        self._code_ttl = code_ttl
        self._clock = clock

    def validate_client(self, request: AuthorizationRequest) -> OAuthClient:
        """Steps 1 and 2: establish that the redirect_uri can be trusted."""
        client = self._clients.get(request.client_id)
        if client is None:
            raise OAuthProtocolError("invalid_client", f"Unknown client_id: {request.client_id or '(missing)'}")
        if not self._clients.redirect_uri_allowed(client, request.redirect_uri):
            raise OAuthProtocolError(
                "invalid_request", "Missing or unregistered redirect_uri for this client"
            )
        return client

    def validate(self, request: AuthorizationRequest) -> OAuthClient:
        client = self.validate_client(request)

        def fail(error: str, description: str) -> OAuthProtocolError:
            return OAuthProtocolError(
                error,
                description,
                redirect_uri=request.redirect_uri,
                state=request.state,
                redirectable=True,
            )

        if request.response_type is not None and request.response_type != "code":
            raise fail("unsupported_response_type", "Only response_type=code is supported")

        scopes = request.scopes
        if not scopes:
            raise fail("invalid_scope", "At least one scope is required")
        unsupported = [s for s in scopes if s not in self._authorizer.supported_scopes]
        if unsupported:
            raise fail("invalid_scope", f"Invalid scopes: {', '.join(unsupported)}")
        not_allowed = [s for s in scopes if s not in client.allowed_scopes]
        if not_allowed:
            raise fail("invalid_scope", f"Scopes not allowed for this client: {', '.join(not_allowed)}")

        if request.code_challenge_method not in SUPPORTED_METHODS:
            raise fail("invalid_request", "Unsupported code_challenge_method")
        if not is_valid_code_challenge(request.code_challenge):
            raise fail("invalid_request", "Missing or malformed code_challenge")

        return client

    async def issue_code(self, request: AuthorizationRequest, subject: str) -> AuthorizationGrant:
        """Validate the request and mint a code bound to the authenticated subject."""
        client = self.validate(request)
        expires_at = int(self._clock()) + self._code_ttl

        for _ in range(3):
            record = AuthorizationCodeRecord(
                code=secrets.token_urlsafe(32),
                client_id=client.client_id,
                redirect_uri=request.redirect_uri,
                scope=format_scope(request.scopes),
                code_challenge=request.code_challenge,
                code_challenge_method=request.code_challenge_method,
                subject=subject,
                expires_at=expires_at,
            )
            if await self._codes.create(record, self._code_ttl):
                break
        else:
            raise RuntimeError("Could not allocate a unique authorization code")

        logger.info(
            "Authorization code issued",
            extra={
                "auth_data": {
                    "client_id": client.client_id,
                    "subject": subject,
                    "scope": record.scope,
                    "decision": "code_issued",
                }
            },
        )

        params = {"code": record.code}
        if request.state:
            params["state"] = request.state
        return AuthorizationGrant(
            code=record.code,
            state=request.state,
            redirect_url=append_query(request.redirect_uri, params),
        )

"""
Token endpoint: authorization_code and refresh_token grants.

Both grants answer with the same shape:

    {"access_token": "...", "refresh_token": "...", "token_type": "Bearer",
     "expires_in": 3600, "scope": "mcp:read mcp:write"}

Security properties this module is responsible for:

- **Single-use codes**: a code is marked consumed with compare_and_swap, so
  two concurrent exchanges of one code produce exactly one token pair.
- **PKCE**: the code_verifier must hash (S256) or equal (plain) the stored
  challenge. Compared in constant time.
- **Refresh rotation**: every refresh revokes the presented jti with
  set_if_absent and issues a new pair. Of two concurrent refreshes of one
  token, only the one whose revoke call created the entry wins.
- **Replay detection**: presenting an already-revoked refresh token revokes
  its whole family, cutting off whoever holds the newer tokens from that
  chain. Replaying a consumed code does the same for the family it created.
- **No partial writes**: every check runs before the single atomic write
  (code consumption or jti revocation). A rejected request leaves the store
  as it found it. Replay detection is the only rejection that writes.

Store failures propagate as StorageUnavailableError; they are never read as
"not revoked" or "not consumed".
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping

from mcp_oauth.clients import ClientRegistry
from mcp_oauth.codes import AuthorizationCodeStore
from mcp_oauth.errors import AuthenticationError, OAuthProtocolError
from mcp_oauth.pkce import is_valid_code_verifier, verify_code_verifier
from mcp_oauth.revocation import RevocationStore
from mcp_oauth.scopes import format_scope, parse_scope
from mcp_oauth.tokens import TokenSigner, TokenValidator, new_token_id

logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _invalid_grant(description: str) -> OAuthProtocolError:
    return OAuthProtocolError("invalid_grant", description)


class TokenIssuer:
    """
    The token endpoint: exchanges codes and rotates refresh tokens.

    Args:
        clients: Registry used to authenticate the calling client
        signer: Mints access and refresh tokens
        validator: Verifies presented refresh tokens
        codes: Authorization code records
        revocations: Refresh token and family revocation lists
        clock: Wall clock returning epoch seconds

    Every grant raises OAuthProtocolError for a request it rejects and lets
    StorageUnavailableError through untouched when the store is down.
    """

    def __init__(
        self,
        clients: ClientRegistry,
        signer: TokenSigner,
        validator: TokenValidator,
        codes: AuthorizationCodeStore,
        revocations: RevocationStore,
        clock: Callable[[], float] = time.time,
    ):
        self._clients = clients
        self._signer = signer
        self._validator = validator
        self._codes = codes
        self._revocations = revocations
        self._clock = clock

    async def handle_token_request(self, form: Mapping[str, Any]) -> TokenResponse:
        """
        Dispatch a token endpoint request body to the matching grant.

        Raises:
            OAuthProtocolError: invalid_request, unsupported_grant_type,
                invalid_client, invalid_grant or invalid_scope
        """

        def param(name: str) -> str | None:
            value = form.get(name)
            return str(value) if value not in (None, "") else None

        grant_type = param("grant_type")
        if grant_type is None:
            raise OAuthProtocolError("invalid_request", "Missing grant_type parameter")
        if grant_type not in (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN):
            raise OAuthProtocolError(
                "unsupported_grant_type",
                "Only authorization_code and refresh_token grants are supported",
            )

        client_id = param("client_id")
        if client_id is None:
            raise OAuthProtocolError("invalid_request", "Missing client_id parameter")

        if grant_type == GRANT_AUTHORIZATION_CODE:
            missing = [n for n in ("code", "redirect_uri", "code_verifier") if param(n) is None]
            if missing:
                raise OAuthProtocolError("invalid_request", f"Missing parameter(s): {', '.join(missing)}")
            return await self.exchange_authorization_code(
                code=param("code"),
                client_id=client_id,
                redirect_uri=param("redirect_uri"),
                code_verifier=param("code_verifier"),
                client_secret=param("client_secret"),
            )

        refresh_token = param("refresh_token")
        if refresh_token is None:
            raise OAuthProtocolError("invalid_request", "Missing refresh_token parameter")
        return await self.refresh(
            refresh_token=refresh_token,
            client_id=client_id,
            client_secret=param("client_secret"),
            scope=param("scope"),
        )

    async def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
        client_secret: str | None = None,
    ) -> TokenResponse:
        """
        Redeem an authorization code for an access and refresh token pair.

        Every check runs before the code is consumed, so a rejected attempt
        leaves the code redeemable. Presenting an already consumed code
        revokes the token family the first exchange created.

        Args:
            code: The authorization code
            client_id: Must match the client the code was issued to
            redirect_uri: Must equal the redirect_uri of the authorization request
            code_verifier: PKCE verifier matching the stored challenge
            client_secret: Required for confidential clients

        Returns:
            TokenResponse whose scope is the scope granted at consent

        Raises:
            OAuthProtocolError: invalid_client, invalid_request (malformed
                verifier) or invalid_grant
        """
        client = self._clients.authenticate(client_id, client_secret)

        record = await self._codes.get(code)
        if record is None:
            raise _invalid_grant("Invalid or expired authorization code")

        if record.consumed:
            # A second exchange means the code leaked. Tokens issued from the
            # first exchange can no longer be trusted.
            if record.family_id:
                await self._revocations.revoke_family(record.family_id)
            logger.warning(
                "Authorization code replay detected",
                extra={
                    "auth_data": {
                        "client_id": client.client_id,
                        "subject": record.subject,
                        "decision": "rejected",
                        "reason": "code_reuse",
                    }
                },
            )
            raise _invalid_grant("Authorization code has already been used")

        if self._clock() >= record.expires_at:
            raise _invalid_grant("Authorization code has expired")
        if record.client_id != client.client_id:
            raise _invalid_grant("Code was not issued to this client")
        if record.redirect_uri != redirect_uri:
            raise _invalid_grant("Redirect URI mismatch")
        if not is_valid_code_verifier(code_verifier):
            raise OAuthProtocolError("invalid_request", "Invalid code_verifier format")
        if not verify_code_verifier(code_verifier, record.code_challenge, record.code_challenge_method):
            raise _invalid_grant("PKCE verification failed")

        # All checks passed. Exactly one caller gets through this swap.
        # The first refresh token's jti names the family, and the code record
        # keeps it so a later replay can revoke that family.
        family_id = new_token_id()
        if not await self._codes.consume(record, family_id):
            raise _invalid_grant("Authorization code has already been used")

        response = self._issue_pair(
            record.subject, client.client_id, record.scope, record.scope, refresh_jti=family_id
        )
        logger.info(
            "Tokens issued for authorization code",
            extra={
                "auth_data": {
                    "client_id": client.client_id,
                    "subject": record.subject,
                    "scope": record.scope,
                    "grant_type": GRANT_AUTHORIZATION_CODE,
                    "decision": "issued",
                }
            },
        )
        return response

    async def refresh(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str | None = None,
        scope: str | None = None,
    ) -> TokenResponse:
        """
        Rotate a refresh token: revoke the presented one and issue a new pair.

        The new refresh token joins the presented token's family and keeps its
        full scope. A revoked token presented again revokes the family.

        Args:
            refresh_token: The presented refresh token
            client_id: Must match the token's client_id claim
            client_secret: Required for confidential clients
            scope: Optional narrower scope for the new access token only

        Returns:
            TokenResponse with the new pair

        Raises:
            OAuthProtocolError: invalid_client, invalid_grant (invalid,
                revoked or replayed token, or a lost rotation race) or
                invalid_scope
        """
        client = self._clients.authenticate(client_id, client_secret)

        try:
            claims = self._validator.validate_refresh(refresh_token)
        except AuthenticationError as e:
            raise _invalid_grant(e.message) from e

        if claims.client_id != client.client_id:
            raise _invalid_grant("Refresh token was not issued to this client")

        if await self._revocations.is_family_revoked(claims.fam):
            raise _invalid_grant("Refresh token has been revoked")

        if await self._revocations.is_revoked(claims.jti):
            await self._revocations.revoke_family(claims.fam)
            logger.warning(
                "Refresh token replay detected",
                extra={
                    "auth_data": {
                        "client_id": client.client_id,
                        "subject": claims.sub,
                        "family_id": claims.fam,
                        "decision": "rejected",
                        "reason": "refresh_reuse",
                    }
                },
            )
            raise _invalid_grant("Refresh token has been revoked")

        # Optional down-scoping of the new access token (RFC 6749 section 6).
        requested = parse_scope(scope)
        if requested and not set(requested) <= claims.scopes:
            raise OAuthProtocolError("invalid_scope", "Requested scope exceeds the original grant")
        access_scope = format_scope(requested) if requested else claims.scope

        # Rotation: the revoke call that creates the entry is the winner.
        if not await self._revocations.revoke(claims.jti, claims.exp):
            logger.warning(
                "Concurrent refresh lost rotation race",
                extra={
                    "auth_data": {
                        "client_id": client.client_id,
                        "subject": claims.sub,
                        "decision": "rejected",
                        "reason": "rotation_race",
                    }
                },
            )
            raise _invalid_grant("Refresh token has been revoked")

        response = self._issue_pair(claims.sub, client.client_id, access_scope, claims.scope, claims.fam)
        logger.info(
            "Refresh token rotated",
            extra={
                "auth_data": {
                    "client_id": client.client_id,
                    "subject": claims.sub,
                    "scope": access_scope,
                    "grant_type": GRANT_REFRESH_TOKEN,
                    "decision": "rotated",
                }
            },
        )
        return response

    async def revoke(self, token: str, token_type_hint: str | None = None) -> bool:
        """
        Revoke a refresh token and its family (RFC 7009).

        Invalid, expired and access tokens are accepted without effect: the
        endpoint answers 200 either way, so callers learn nothing about the token.
        Returns True iff something was revoked.
        """
        try:
            claims = self._validator.validate_refresh(token)
        except AuthenticationError as e:
            logger.info(
                "Revocation request ignored",
                extra={"auth_data": {"token_type_hint": token_type_hint, "reason": e.reason}},
            )
            return False

        await self._revocations.revoke(claims.jti, claims.exp)
        await self._revocations.revoke_family(claims.fam)
        logger.info(
            "Refresh token revoked",
            extra={
                "auth_data": {
                    "client_id": claims.client_id,
                    "subject": claims.sub,
                    "decision": "revoked",
                }
            },
        )
        return True

    def _issue_pair(
        self,
        subject: str,
        client_id: str,
        access_scope: str,
        refresh_scope: str,
        family_id: str | None = None,
        refresh_jti: str | None = None,
    ) -> TokenResponse:
        access_token, _ = self._signer.issue_access(subject, client_id, access_scope)
        refresh_token, _ = self._signer.issue_refresh(
            subject, client_id, refresh_scope, family_id=family_id, jti=refresh_jti
        )
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._signer.access_ttl,
            scope=access_scope,
        )

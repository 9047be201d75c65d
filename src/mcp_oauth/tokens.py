"""
JWT access/refresh token minting and validation.

This module handles the token layer of authentication:
- Mints signed access tokens (1 hour) and refresh tokens (30 days)
- Extracts Bearer tokens from the HTTP Authorization header
- Validates signature, issuer/audience, expiration and token type
- Returns typed claims, or an AuthenticationError tagged with the reason

Token structure (JWT payload):
    {
        "iss": "https://mcp.example.com",     # Who issued the token (us)
        "aud": "https://mcp.example.com",     # Who it is for (also us)
        "sub": "alice@example.com",           # The user who consented
        "client_id": "claude-web",            # The client it was issued to
        "scope": "mcp:read mcp:write",        # Space-delimited (RFC 6749 section 3.3)
        "token_type": "access_token",         # or "refresh_token"
        "jti": "...",                         # Unique id
        "fam": "...",                         # Refresh tokens only: family id
        "iat": 1738800000,
        "exp": 1738803600
    }

`token_type` is checked on every validation: an access token must never be
accepted where a refresh token is required, and vice versa.

Revocation is not consulted here. Access tokens are short-lived; refresh
tokens are checked against the RevocationStore by the TokenIssuer.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass
from typing import Callable

import jwt

from mcp_oauth.errors import AuthenticationError
from mcp_oauth.scopes import parse_scope

ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"


@dataclass(frozen=True)
class AccessTokenClaims:
    iss: str
    sub: str
    aud: str
    client_id: str
    scope: str
    iat: int
    exp: int
    jti: str
    token_type: str = ACCESS_TOKEN

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset(parse_scope(self.scope))


@dataclass(frozen=True)
class RefreshTokenClaims:
    iss: str
    sub: str
    aud: str
    client_id: str
    scope: str
    iat: int
    exp: int
    jti: str
    fam: str
    token_type: str = REFRESH_TOKEN

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset(parse_scope(self.scope))


def new_token_id() -> str:
    return secrets.token_urlsafe(24)


class TokenSigner:
    """Mints signed access and refresh tokens with the server's key."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        access_ttl: int,
        refresh_ttl: int,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self._algorithm = algorithm
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def _encode(self, claims) -> str:
        return jwt.encode(asdict(claims), self._secret, algorithm=self._algorithm)

    def issue_access(self, subject: str, client_id: str, scope: str) -> tuple[str, AccessTokenClaims]:
        now = int(self._clock())
        claims = AccessTokenClaims(
            iss=self.issuer,
            sub=subject,
            aud=self.issuer,
            client_id=client_id,
            scope=scope,
            iat=now,
            exp=now + self.access_ttl,
            jti=new_token_id(),
        )
        return self._encode(claims), claims

    def issue_refresh(
        self,
        subject: str,
        client_id: str,
        scope: str,
        family_id: str | None = None,
        jti: str | None = None,
    ) -> tuple[str, RefreshTokenClaims]:
        """
        Mint a refresh token.

        Without a family id, the token starts a new family named after its own
        jti. A jti can be fixed up front when the caller has already recorded
        it elsewhere.
        """
        now = int(self._clock())
        jti = jti or new_token_id()
        claims = RefreshTokenClaims(
            iss=self.issuer,
            sub=subject,
            aud=self.issuer,
            client_id=client_id,
            scope=scope,
            iat=now,
            exp=now + self.refresh_ttl,
            jti=jti,
            fam=family_id or jti,
        )
        return self._encode(claims), claims


class TokenValidator:
    """
    Verifies and decodes tokens minted by TokenSigner.

    Validation pipeline:
    1. Parse the compact JWT and verify its signature
    2. Require exp/iat/iss/aud/sub and check iss == aud == our issuer
    3. Check exp > now (PyJWT does this when exp is present)
    4. Check token_type matches what the caller expects
    5. Type-check the remaining claims and build the claims object
    """

    def __init__(self, secret: str, issuer: str, algorithm: str = "HS256", leeway: float = 0):
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._leeway = leeway

    def _decode(self, token: str) -> dict:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._issuer,
                issuer=self._issuer,
                leeway=self._leeway,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired", reason="expired")
        except jwt.InvalidSignatureError:
            raise AuthenticationError("Invalid token: signature verification failed", reason="bad_signature")
        except (jwt.InvalidAudienceError, jwt.InvalidIssuerError) as e:
            raise AuthenticationError(f"Invalid token: {e}", reason="wrong_audience")
        except jwt.InvalidTokenError as e:
            # Malformed structure, missing required claims, bad algorithm, ...
            raise AuthenticationError(f"Invalid token: {e}", reason="malformed")

    def validate(self, token: str, expected_type: str) -> AccessTokenClaims | RefreshTokenClaims:
        payload = self._decode(token)

        token_type = payload.get("token_type")
        if token_type != expected_type:
            raise AuthenticationError(
                f"Invalid token type: expected {expected_type}", reason="wrong_token_type"
            )

        # Scope is a space-delimited string. A list or any other type is
        # rejected rather than coerced.
        for claim in ("scope", "client_id", "jti"):
            if not isinstance(payload.get(claim), str):
                raise AuthenticationError(f"Invalid {claim} claim", reason="malformed")

        common = {
            "iss": payload["iss"],
            "sub": payload["sub"],
            "aud": payload["aud"],
            "client_id": payload["client_id"],
            "scope": payload["scope"],
            "iat": int(payload["iat"]),
            "exp": int(payload["exp"]),
            "jti": payload["jti"],
        }
        if expected_type == REFRESH_TOKEN:
            if not isinstance(payload.get("fam"), str):
                raise AuthenticationError("Invalid fam claim", reason="malformed")
            return RefreshTokenClaims(fam=payload["fam"], **common)
        return AccessTokenClaims(**common)

    def validate_access(self, token: str) -> AccessTokenClaims:
        return self.validate(token, ACCESS_TOKEN)

    def validate_refresh(self, token: str) -> RefreshTokenClaims:
        return self.validate(token, REFRESH_TOKEN)

    def validate_bearer_header(self, authorization_header: str | None) -> AccessTokenClaims:
        """
        Validate an access token from an `Authorization: Bearer <jwt>` header.

        The scheme is matched case-insensitively (RFC 6750).
        """
        if not authorization_header:
            raise AuthenticationError("Missing Authorization header", reason="missing")

        parts = authorization_header.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
            raise AuthenticationError(
                "Invalid Authorization header format, expected 'Bearer <token>'",
                reason="malformed",
            )

        return self.validate_access(parts[1].strip())

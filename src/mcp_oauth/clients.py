"""
Static registry of OAuth clients.

Clients are known ahead of time; there is no dynamic registration. Public
clients (token_endpoint_auth_method "none") are authenticated by PKCE alone.
Confidential clients must also present their secret at the token endpoint.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from mcp_oauth.errors import OAuthProtocolError


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    client_name: str
    redirect_uris: tuple[str, ...]
    allowed_scopes: frozenset[str]
    token_endpoint_auth_method: str = "none"
    client_secret: str | None = None

    @property
    def is_public(self) -> bool:
        return self.token_endpoint_auth_method == "none"


DEFAULT_CLIENTS: tuple[OAuthClient, ...] = (
    OAuthClient(
        client_id="claude-desktop",
        client_name="Claude Desktop",
        redirect_uris=("http://localhost", "https://localhost"),
        allowed_scopes=frozenset(
            {"mcp:read", "mcp:write", "mcp:admin", "read:analytics", "read:knowledge", "admin:usage"}
        ),
    ),
    OAuthClient(
        client_id="claude-web",
        client_name="Claude.ai Web",
        redirect_uris=(
            "https://claude.ai/api/mcp/auth_callback",
            "https://claude.ai/oauth/callback",
        ),
        allowed_scopes=frozenset({"mcp:read", "mcp:write", "read:analytics", "read:knowledge"}),
    ),
)


class ClientRegistry:
    """
    Lookup and token-endpoint authentication for the known clients.

    Args:
        clients: OAuthClient entries, keyed by client_id on construction
    """

    def __init__(self, clients=DEFAULT_CLIENTS):
        self._clients: dict[str, OAuthClient] = {c.client_id: c for c in clients}

    def get(self, client_id: str | None) -> OAuthClient | None:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def redirect_uri_allowed(self, client: OAuthClient, redirect_uri: str | None) -> bool:
        """True only for an exact string match: no prefix, no normalization."""
        return bool(redirect_uri) and redirect_uri in client.redirect_uris

    def authenticate(self, client_id: str | None, client_secret: str | None = None) -> OAuthClient:
        """
        Authenticate a client at the token endpoint.

        Public clients pass on client_id alone. Confidential clients must
        also present their secret, compared in constant time.

        Args:
            client_id: The client_id form parameter
            client_secret: The client_secret form parameter, if any

        Returns:
            The authenticated OAuthClient

        Raises:
            OAuthProtocolError: invalid_client for an unknown client or a
                missing or wrong secret
        """
        client = self.get(client_id)
        if client is None:
            raise OAuthProtocolError("invalid_client", f"Unknown client_id: {client_id}")
        if client.is_public:
            return client
        if not client_secret or not client.client_secret or not hmac.compare_digest(
            client_secret.encode(), client.client_secret.encode()
        ):
            raise OAuthProtocolError("invalid_client", "Invalid client credentials")
        return client

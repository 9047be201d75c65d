"""
Authentication method selection.

Each inbound request is inspected in a fixed precedence order and exactly
one method is chosen by the *presence* of its credential:

    1. Authorization: Bearer <jwt>       -> oauth    (TokenValidator)
    2. x-api-key: <key>                  -> api_key  (ApiKeyStore)
    3. x-mac-address header, or the      -> mac      (DeviceVerifier)
       mcp_device cookie
    4. nothing                           -> AuthenticationError("Authentication required")

Once a method is selected, its failure is terminal. A request carrying a bad
Bearer token and a valid API key is rejected: falling back would let an
attacker downgrade to a weaker method just by adding a header.

    NoCredential --Bearer--> OAuthPending  --valid--> Authenticated(OAuth)
                                           --invalid--> Rejected
    NoCredential --api key-> ApiKeyPending --valid--> Authenticated(ApiKey)
                                           --invalid--> Rejected
    NoCredential --device--> MacPending    --valid--> Authenticated(Mac)
                                           --invalid--> Rejected
"""

from __future__ import annotations

import hmac
import logging
from typing import Mapping, Protocol

from mcp_oauth.context import ApiKeyContext, AuthContext, MacContext, OAuthContext, WILDCARD
from mcp_oauth.errors import AuthenticationError
from mcp_oauth.tokens import TokenValidator

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
MAC_HEADER = "x-mac-address"
DEVICE_COOKIE = "mcp_device"


class ApiKeyStore(Protocol):
    async def lookup(self, api_key: str) -> ApiKeyContext | None:
        """Return the context for a valid key, or None."""
        ...


class DeviceVerifier(Protocol):
    async def verify(self, device_id: str) -> str | None:
        """Return the user id bound to an authorized device, or None."""
        ...


class StaticApiKeyStore:
    """API keys from configuration: key -> permissions (["*"] for all tools)."""

    def __init__(self, api_keys: Mapping[str, list[str]]):
        self._keys = {key: frozenset(perms) for key, perms in api_keys.items()}

    async def lookup(self, api_key: str) -> ApiKeyContext | None:
        for index, (key, permissions) in enumerate(self._keys.items()):
            if hmac.compare_digest(api_key.encode(), key.encode()):
                return ApiKeyContext(key_id=f"key-{index}", permissions=permissions)
        return None


class StaticDeviceVerifier:
    """Authorized MAC addresses from configuration: MAC -> user id."""

    def __init__(self, devices: Mapping[str, str]):
        self._devices = {self.normalize(mac): user for mac, user in devices.items()}

    @staticmethod
    def normalize(mac: str) -> str:
        return mac.strip().lower().replace("-", ":")

    async def verify(self, device_id: str) -> str | None:
        return self._devices.get(self.normalize(device_id))


class AuthMethodDispatcher:
    def __init__(
        self,
        validator: TokenValidator,
        api_keys: ApiKeyStore,
        devices: DeviceVerifier,
    ):
        self._validator = validator
        self._api_keys = api_keys
        self._devices = devices

    @staticmethod
    def detect_method(headers: Mapping[str, str], cookies: Mapping[str, str] | None = None) -> str:
        """Name the method whose credential is present: oauth, api_key, mac or none."""
        headers = {k.lower(): v for k, v in headers.items()}
        authorization = headers.get("authorization", "")
        if authorization.split(" ", 1)[0].lower() == "bearer":
            return "oauth"
        if headers.get(API_KEY_HEADER):
            return "api_key"
        if headers.get(MAC_HEADER) or (cookies or {}).get(DEVICE_COOKIE):
            return "mac"
        return "none"

    async def authenticate(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str] | None = None,
    ) -> AuthContext:
        """
        Produce the AuthContext for a request.

        Raises:
            AuthenticationError: no credential, or the selected method failed
        """
        headers = {k.lower(): v for k, v in headers.items()}
        cookies = cookies or {}
        method = self.detect_method(headers, cookies)

        if method == "oauth":
            claims = self._validator.validate_bearer_header(headers.get("authorization"))
            return OAuthContext(user_id=claims.sub, client_id=claims.client_id, scopes=claims.scopes)

        if method == "api_key":
            context = await self._api_keys.lookup(headers[API_KEY_HEADER])
            if context is None:
                raise AuthenticationError("Invalid API key", reason="invalid_api_key")
            return context

        if method == "mac":
            device_id = headers.get(MAC_HEADER) or cookies[DEVICE_COOKIE]
            user_id = await self._devices.verify(device_id)
            if user_id is None:
                raise AuthenticationError("Unknown or unauthorized device", reason="unknown_device")
            return MacContext(user_id=user_id)

        raise AuthenticationError(
            "Authentication required. Provide a Bearer token, an x-api-key header "
            "or a registered device credential",
            reason="missing",
        )


__all__ = [
    "AuthContext",
    "ApiKeyContext",
    "ApiKeyStore",
    "AuthMethodDispatcher",
    "DeviceVerifier",
    "MacContext",
    "OAuthContext",
    "StaticApiKeyStore",
    "StaticDeviceVerifier",
    "WILDCARD",
]

"""
Composition root: builds every engine component from Settings.

The HTTP layer and tests both go through build_core(), so there is one place
that decides which store, clock and credential collaborators are used.
Nothing here is a process-wide singleton; a server owns its AuthCore.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Mapping

from mcp_oauth.authorize import AuthorizationRequestValidator
from mcp_oauth.clients import ClientRegistry
from mcp_oauth.codes import AuthorizationCodeStore
from mcp_oauth.config import Settings
from mcp_oauth.consent import ConsentDecisionHandler, ConsentGrantStore, CsrfTokenStore
from mcp_oauth.context import AuthContext, describe
from mcp_oauth.dispatcher import (
    ApiKeyStore,
    AuthMethodDispatcher,
    DeviceVerifier,
    StaticApiKeyStore,
    StaticDeviceVerifier,
)
from mcp_oauth.errors import AuthenticationError, AuthorizationError
from mcp_oauth.issuer import TokenIssuer
from mcp_oauth.revocation import RevocationStore
from mcp_oauth.scopes import ScopeAuthorizer
from mcp_oauth.store import InMemoryKVStore, KeySpace, KVStore, RedisKVStore
from mcp_oauth.tokens import TokenSigner, TokenValidator

logger = logging.getLogger(__name__)


@dataclass
class AuthCore:
    settings: Settings
    store: KVStore
    clients: ClientRegistry
    authorizer: ScopeAuthorizer
    signer: TokenSigner
    validator: TokenValidator
    codes: AuthorizationCodeStore
    revocations: RevocationStore
    authorization: AuthorizationRequestValidator
    csrf: CsrfTokenStore
    grants: ConsentGrantStore
    consent: ConsentDecisionHandler
    issuer: TokenIssuer
    dispatcher: AuthMethodDispatcher

    async def authorize_tool_call(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str] | None,
        tool_name: str,
    ) -> AuthContext:
        """
        Authenticate a protected call and check it may use `tool_name`.

        Raises:
            AuthenticationError: 401, before any authorization check
            AuthorizationError: 403, the tool is never invoked
        """
        request_id = str(uuid.uuid4())[:8]
        try:
            context = await self.dispatcher.authenticate(headers, cookies)
        except AuthenticationError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "tool": tool_name,
                        "decision": "rejected",
                        "reason": e.reason,
                    }
                },
            )
            raise

        try:
            self.authorizer.check(context, tool_name)
        except AuthorizationError:
            logger.warning(
                "Tool call denied: insufficient permission",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "tool": tool_name,
                        "decision": "denied",
                        **describe(context),
                    }
                },
            )
            raise

        logger.info(
            "Tool call authorized",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "tool": tool_name,
                    "decision": "allowed",
                    **describe(context),
                }
            },
        )
        return context


def create_store(settings: Settings) -> KVStore:
    if settings.redis_url:
        return RedisKVStore.from_url(settings.redis_url, timeout=settings.store_timeout_seconds)
    logger.info("Using in-memory store (single process only)")
    return InMemoryKVStore()


def build_core(
    settings: Settings,
    store: KVStore | None = None,
    clock: Callable[[], float] = time.time,
    clients: ClientRegistry | None = None,
    api_keys: ApiKeyStore | None = None,
    devices: DeviceVerifier | None = None,
) -> AuthCore:
    store = store if store is not None else create_store(settings)
    keys = KeySpace(settings.key_prefix)
    clients = clients or ClientRegistry()
    authorizer = ScopeAuthorizer()

    signer = TokenSigner(
        secret=settings.jwt_secret_key,
        issuer=settings.issuer,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        algorithm=settings.jwt_algorithm,
        clock=clock,
    )
    validator = TokenValidator(
        secret=settings.jwt_secret_key,
        issuer=settings.issuer,
        algorithm=settings.jwt_algorithm,
    )

    codes = AuthorizationCodeStore(store, keys)
    revocations = RevocationStore(store, keys, family_ttl=settings.refresh_token_ttl, clock=clock)
    authorization = AuthorizationRequestValidator(
        clients, authorizer, codes, code_ttl=settings.auth_code_ttl, clock=clock
    )
    csrf = CsrfTokenStore(store, keys, ttl=settings.csrf_token_ttl)
    grants = ConsentGrantStore(store, keys, ttl=settings.consent_grant_ttl)

    return AuthCore(
        settings=settings,
        store=store,
        clients=clients,
        authorizer=authorizer,
        signer=signer,
        validator=validator,
        codes=codes,
        revocations=revocations,
        authorization=authorization,
        csrf=csrf,
        grants=grants,
        consent=ConsentDecisionHandler(authorization, csrf, grants),
        issuer=TokenIssuer(clients, signer, validator, codes, revocations, clock=clock),
        dispatcher=AuthMethodDispatcher(
            validator,
            api_keys or StaticApiKeyStore(settings.api_keys),
            devices or StaticDeviceVerifier(settings.authorized_devices),
        ),
    )

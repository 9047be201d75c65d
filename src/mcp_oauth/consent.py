"""
Consent decisions: CSRF-checked approve/deny from an authenticated user.

The consent page itself is rendered elsewhere. This module only does the
bookkeeping a decision triggers:

- CsrfTokenStore: single-use CSRF tokens bound to the user's session. A
  token is stored under the hash of its value, pointing at the session id,
  for a few minutes. Consuming it is a compare_and_swap from the session id
  to a "consumed" marker, so a replayed form submission loses even when it
  races the original.
- ConsentGrantStore: remembers which scopes a user already approved for a
  client, so a repeat authorization can skip the consent page.
- ConsentDecisionHandler: turns a decision into a redirect URL carrying
  either a fresh code or error=access_denied.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from dataclasses import dataclass

from mcp_oauth.authorize import AuthorizationRequest, AuthorizationRequestValidator
from mcp_oauth.errors import AuthenticationError, append_query
from mcp_oauth.store import KeySpace, KVStore

logger = logging.getLogger(__name__)

_CONSUMED = "consumed:"


@dataclass(frozen=True)
class AuthenticatedSession:
    """What the identity collaborator tells us about the logged-in user."""

    session_id: str
    subject: str


@dataclass(frozen=True)
class ConsentOutcome:
    redirect_url: str
    approved: bool
    code: str | None = None


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CsrfTokenStore:
    def __init__(self, store: KVStore, keys: KeySpace, ttl: int):
        self._store = store
        self._keys = keys
        self._ttl = ttl

    async def issue(self, session_id: str) -> str:
        token = secrets.token_urlsafe(32)
        await self._store.set_if_absent(self._keys.csrf(_hash_token(token)), session_id, self._ttl)
        return token

    async def consume(self, session_id: str, token: str | None) -> None:
        """Spend a CSRF token for this session, or raise AuthenticationError."""
        if not token:
            raise AuthenticationError("Missing CSRF token", reason="csrf")

        key = self._keys.csrf(_hash_token(token))
        if await self._store.compare_and_swap(key, session_id, _CONSUMED + session_id):
            return

        current = await self._store.get(key)
        if current is None:
            raise AuthenticationError("CSRF token expired or unknown", reason="csrf")
        if current.startswith(_CONSUMED):
            raise AuthenticationError("CSRF token already used", reason="csrf")
        raise AuthenticationError("CSRF token does not belong to this session", reason="csrf")


class ConsentGrantStore:
    def __init__(self, store: KVStore, keys: KeySpace, ttl: int):
        self._store = store
        self._keys = keys
        self._ttl = ttl

    async def granted_scopes(self, subject: str, client_id: str) -> set[str]:
        raw = await self._store.get(self._keys.consent(subject, client_id))
        if raw is None:
            return set()
        return set(json.loads(raw))

    async def covers(self, subject: str, client_id: str, scopes) -> bool:
        scopes = set(scopes)
        return bool(scopes) and scopes <= await self.granted_scopes(subject, client_id)

    async def record(self, subject: str, client_id: str, scopes) -> None:
        """
        Add scopes to the subject's grant for this client.

        Concurrent approvals merge instead of overwriting each other: the
        first grant is created with set_if_absent, later ones swap from the
        exact value that was read and retry when another writer got there
        first. A swap keeps the grant's original expiry.
        """
        key = self._keys.consent(subject, client_id)
        scopes = set(scopes)
        while True:
            raw = await self._store.get(key)
            if raw is None:
                if await self._store.set_if_absent(key, json.dumps(sorted(scopes)), self._ttl):
                    return
                continue
            merged = set(json.loads(raw)) | scopes
            if await self._store.compare_and_swap(key, raw, json.dumps(sorted(merged))):
                return

    async def revoke(self, subject: str, client_id: str) -> None:
        await self._store.delete(self._keys.consent(subject, client_id))


class ConsentDecisionHandler:
    def __init__(
        self,
        validator: AuthorizationRequestValidator,
        csrf: CsrfTokenStore,
        grants: ConsentGrantStore,
    ):
        self._validator = validator
        self._csrf = csrf
        self._grants = grants

    async def decide(
        self,
        session: AuthenticatedSession,
        request: AuthorizationRequest,
        approved: bool,
        csrf_token: str | None,
    ) -> ConsentOutcome:
        """
        Apply the user's decision.

        Raises:
            OAuthProtocolError: the OAuth parameters are invalid (checked
                before the CSRF token is spent, nothing is written)
            AuthenticationError: CSRF token missing, expired, foreign or reused
        """
        # Never redirect to a URI we have not matched against the registry.
        self._validator.validate_client(request)
        if approved:
            self._validator.validate(request)

        await self._csrf.consume(session.session_id, csrf_token)

        if not approved:
            logger.info(
                "Authorization denied by user",
                extra={
                    "auth_data": {
                        "client_id": request.client_id,
                        "subject": session.subject,
                        "decision": "access_denied",
                    }
                },
            )
            params = {"error": "access_denied", "error_description": "User denied the authorization request"}
            if request.state:
                params["state"] = request.state
            return ConsentOutcome(append_query(request.redirect_uri, params), approved=False)

        grant = await self._validator.issue_code(request, session.subject)
        await self._grants.record(session.subject, request.client_id, request.scopes)
        return ConsentOutcome(grant.redirect_url, approved=True, code=grant.code)

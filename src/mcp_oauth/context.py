"""
AuthContext: who is calling, and by which method.

Exactly one variant is produced per request. Each variant has exactly one
authorization rule in ScopeAuthorizer, so call sites never inspect a
"method" string or guess the shape of a permissions field.

OAuth contexts carry scopes only. The tools those scopes unlock are derived
at check time from the static scope table and never stored on the context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

# Marker permission granting every tool, including ones not in the catalogue.
WILDCARD = "*"


@dataclass(frozen=True)
class OAuthContext:
    user_id: str
    client_id: str
    scopes: frozenset[str]

    method = "oauth"


@dataclass(frozen=True)
class ApiKeyContext:
    """
    API-key caller. `permissions` holds tool names and/or tool categories,
    or is exactly {"*"} for unrestricted keys.
    """

    key_id: str
    permissions: frozenset[str]

    method = "api_key"

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.permissions


@dataclass(frozen=True)
class MacContext:
    user_id: str

    method = "mac"


AuthContext = Union[OAuthContext, ApiKeyContext, MacContext]


def describe(context: AuthContext) -> dict:
    """Structured, secret-free summary of a context for log lines."""
    if isinstance(context, OAuthContext):
        return {
            "method": context.method,
            "subject": context.user_id,
            "client_id": context.client_id,
            "scopes": sorted(context.scopes),
        }
    if isinstance(context, ApiKeyContext):
        return {"method": context.method, "key_id": context.key_id}
    return {"method": context.method, "subject": context.user_id}

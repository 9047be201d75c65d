"""
Scope definitions and scope-based tool access.

This module is the central registry for access control. It holds two static
tables:

    TOOL_CATALOGUE = {"tool_name": "category"}
    SCOPE_DEFINITIONS = {"scope": ScopeDefinition(description, patterns)}

A pattern is either an exact tool name ("echo") or a category wildcard
("analytics:*", every tool whose category is "analytics"). Scopes are
additive: a token with "mcp:read mcp:write" can call the union of both.

Scope naming convention:
- "<resource>:<action>" (e.g. "mcp:read", "read:analytics")
- The "mcp:*" scopes are the current ones; "read:analytics",
  "read:knowledge" and "admin:usage" are kept for clients registered
  before them.

Anything that no pattern matches is denied, even for authenticated callers.
The one exception is an API key holding the "*" permission.
"""

from __future__ import annotations

from dataclasses import dataclass

from mcp_oauth.context import ApiKeyContext, AuthContext, MacContext, OAuthContext
from mcp_oauth.errors import AuthorizationError

# Every callable tool and its category. The tools themselves are implemented
# elsewhere; only their names matter here.
TOOL_CATALOGUE: dict[str, str] = {
    "query_matomo_database": "analytics",
    "get_visitor_analytics": "analytics",
    "get_conversion_metrics": "analytics",
    "get_content_performance": "analytics",
    "get_company_intelligence": "analytics",
    "explore_database": "analytics",
    "query_database": "analytics",
    "analyze_data": "analytics",
    "query_knowledge_graph": "knowledge",
    "get_organizational_structure": "knowledge",
    "find_capability_paths": "knowledge",
    "get_knowledge_graph_stats": "knowledge",
    "get_unified_dashboard_data": "crossdb",
    "correlate_operational_relationships": "crossdb",
    "get_usage_analytics": "admin",
    "get_cloud_sql_status": "admin",
    "get_cloud_sql_info": "admin",
    "echo": "admin",
}


@dataclass(frozen=True)
class ScopeDefinition:
    description: str
    patterns: tuple[str, ...]


SCOPE_DEFINITIONS: dict[str, ScopeDefinition] = {
    "mcp:read": ScopeDefinition(
        "Read analytics data and the knowledge graph",
        ("analytics:*", "knowledge:*", "echo"),
    ),
    "mcp:write": ScopeDefinition(
        "Run cross-database correlation tools",
        ("crossdb:*",),
    ),
    "mcp:admin": ScopeDefinition(
        "Usage analytics and system status",
        ("admin:*",),
    ),
    "read:analytics": ScopeDefinition(
        "Read access to analytics data and visitor metrics",
        ("analytics:*",),
    ),
    "read:knowledge": ScopeDefinition(
        "Read access to the knowledge graph and organizational data",
        ("knowledge:*", "crossdb:*"),
    ),
    "admin:usage": ScopeDefinition(
        "Administrative access to usage analytics and system status",
        ("admin:*",),
    ),
}

SUPPORTED_SCOPES: frozenset[str] = frozenset(SCOPE_DEFINITIONS)

# Tools reachable through legacy MAC-address authentication.
MAC_LEGACY_TOOLS: frozenset[str] = frozenset(
    name for name, category in TOOL_CATALOGUE.items() if category != "admin"
) | {"echo"}


def parse_scope(scope: str | None) -> list[str]:
    """Split a space-delimited scope string, dropping blanks and duplicates."""
    seen: dict[str, None] = {}
    for item in (scope or "").split(" "):
        if item:
            seen.setdefault(item, None)
    return list(seen)


def format_scope(scopes) -> str:
    return " ".join(scopes)


def pattern_matches(pattern: str, tool_name: str, catalogue: dict[str, str] = TOOL_CATALOGUE) -> bool:
    if pattern.endswith(":*"):
        category = pattern[:-2]
        return catalogue.get(tool_name) == category
    return pattern == tool_name


class ScopeAuthorizer:
    """
    Decides whether an AuthContext may call a tool.

    One rule per context variant:
    - ApiKey with "*": always allowed
    - ApiKey with explicit permissions: tool name or its category listed
    - OAuth: some granted scope has a pattern matching the tool
    - Mac: tool is in the legacy set
    """

    def __init__(
        self,
        scope_definitions: dict[str, ScopeDefinition] = SCOPE_DEFINITIONS,
        catalogue: dict[str, str] = TOOL_CATALOGUE,
        mac_tools: frozenset[str] = MAC_LEGACY_TOOLS,
    ):
        self._scopes = scope_definitions
        self._catalogue = catalogue
        self._mac_tools = mac_tools

    @property
    def supported_scopes(self) -> frozenset[str]:
        return frozenset(self._scopes)

    def category_of(self, tool_name: str) -> str | None:
        return self._catalogue.get(tool_name)

    def scope_allows(self, scope: str, tool_name: str) -> bool:
        definition = self._scopes.get(scope)
        if definition is None:
            return False
        return any(pattern_matches(p, tool_name, self._catalogue) for p in definition.patterns)

    def has_permission(self, context: AuthContext, tool_name: str) -> bool:
        if isinstance(context, ApiKeyContext):
            if context.is_wildcard:
                return True
            category = self.category_of(tool_name)
            return tool_name in context.permissions or (
                category is not None and category in context.permissions
            )
        if isinstance(context, OAuthContext):
            return any(self.scope_allows(scope, tool_name) for scope in context.scopes)
        if isinstance(context, MacContext):
            return tool_name in self._mac_tools
        return False

    def check(self, context: AuthContext, tool_name: str) -> None:
        """Raise AuthorizationError unless the context may call the tool."""
        if not self.has_permission(context, tool_name):
            if isinstance(context, OAuthContext):
                required = sorted(s for s in self._scopes if self.scope_allows(s, tool_name))
                if required:
                    raise AuthorizationError(
                        f"Access denied: tool '{tool_name}' requires one of scopes {required}"
                    )
            raise AuthorizationError(f"Access denied: tool '{tool_name}' is not permitted")

    def tools_for_scopes(self, scopes) -> list[str]:
        """All catalogue tools reachable with the given scopes, in catalogue order."""
        return [
            tool
            for tool in self._catalogue
            if any(self.scope_allows(scope, tool) for scope in scopes)
        ]

    def scope_descriptions(self, scopes=None) -> dict[str, str]:
        names = self._scopes if scopes is None else [s for s in scopes if s in self._scopes]
        return {name: self._scopes[name].description for name in names}

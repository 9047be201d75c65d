"""
MCP server and OAuth HTTP endpoints, built on FastMCP.

This module is the single outer routing layer. It turns HTTP requests into
calls on the AuthCore and engine errors into HTTP responses:

    GET  /oauth/authorize      validate, then redirect with a code (consent on
                               record) or hand off to the consent UI (JSON)
    POST /oauth/consent        CSRF-checked approve/deny -> {"redirect_url": ...}
    POST /oauth/token          authorization_code / refresh_token grants
    POST /oauth/revoke         RFC 7009 revocation, always 200
    POST /tools/{tool_name}    protected tool call -> ToolExecutor
    /mcp                       MCP Streamable HTTP, guarded by AuthMiddleware
    GET  /health, /ready       liveness and readiness, unauthenticated

Error mapping (see mcp_oauth.errors):
    OAuthProtocolError -> 400 {error, error_description}
    AuthenticationError -> 401 with WWW-Authenticate
    AuthorizationError -> 403
    StorageUnavailableError -> 503 (retryable; never treated as "allowed")

The user's login and the consent page are external collaborators. Login
state arrives through an IdentityResolver; by default the trusted headers
set by a fronting identity proxy.

Running the server:
    uv run python -m mcp_oauth.server
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Mapping, Protocol, Sequence

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from mcp_oauth.authorize import AuthorizationRequest
from mcp_oauth.config import Settings, settings
from mcp_oauth.consent import AuthenticatedSession
from mcp_oauth.context import AuthContext, describe
from mcp_oauth.core import AuthCore, build_core
from mcp_oauth.errors import (
    AuthenticationError,
    AuthError,
    AuthorizationError,
    OAuthProtocolError,
    StorageUnavailableError,
)
from mcp_oauth.logging_setup import configure_logging

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class IdentityResolver(Protocol):
    async def resolve(self, request: Request) -> AuthenticatedSession | None:
        """Return the logged-in user's session, or None if not logged in."""
        ...


class TrustedHeaderIdentity:
    """
    Reads the user and session id from headers set by an identity proxy.

    Only safe when the proxy strips these headers from inbound traffic.
    """

    def __init__(self, user_header: str, session_header: str):
        self._user_header = user_header
        self._session_header = session_header

    async def resolve(self, request: Request) -> AuthenticatedSession | None:
        subject = request.headers.get(self._user_header)
        session_id = request.headers.get(self._session_header)
        if not subject or not session_id:
            return None
        return AuthenticatedSession(session_id=session_id, subject=subject)


class ToolNotAvailableError(LookupError):
    pass


class ToolExecutor(Protocol):
    async def execute(self, tool_name: str, arguments: dict[str, Any], context: AuthContext) -> Any:
        ...


class UnavailableToolExecutor:
    """Placeholder until a deployment wires in the real tool implementations."""

    async def execute(self, tool_name: str, arguments: dict[str, Any], context: AuthContext) -> Any:
        raise ToolNotAvailableError(tool_name)


# ---------------------------------------------------------------------------
# Error responses
# ---------------------------------------------------------------------------


def error_response(error: AuthError, realm: str = "mcp") -> JSONResponse:
    if isinstance(error, OAuthProtocolError):
        return JSONResponse(error.to_dict(), status_code=400, headers=NO_STORE)
    if isinstance(error, AuthenticationError):
        return JSONResponse(
            {"error": "invalid_token", "error_description": error.message},
            status_code=401,
            headers={"WWW-Authenticate": f'Bearer realm="{realm}", error="invalid_token"'},
        )
    if isinstance(error, AuthorizationError):
        return JSONResponse(
            {"error": "insufficient_scope", "error_description": error.message},
            status_code=403,
        )
    if isinstance(error, StorageUnavailableError):
        return JSONResponse(
            {"error": "temporarily_unavailable", "error_description": "Please retry"},
            status_code=503,
            headers={"Retry-After": "1"},
        )
    return JSONResponse({"error": "server_error", "error_description": error.message}, status_code=error.status_code)


async def read_body(request: Request) -> dict[str, Any]:
    """Parse a form-encoded or JSON request body into a dict."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise OAuthProtocolError("invalid_request", "Malformed JSON body")
        if not isinstance(body, dict):
            raise OAuthProtocolError("invalid_request", "JSON body must be an object")
        return body
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    raise OAuthProtocolError("invalid_request", "Unsupported content type")


# ---------------------------------------------------------------------------
# MCP middleware
# ---------------------------------------------------------------------------


class AuthMiddleware(Middleware):
    """
    Authentication and tool-level authorization for the MCP endpoint.

    - tools/list responses are filtered to the tools the caller may use
    - tools/call requests are rejected before the tool runs

    Both hooks authenticate independently: the list filter hides tools, the
    call check is what actually enforces access.
    """

    def __init__(self, core: AuthCore):
        self._core = core

    def _credentials(self) -> tuple[Mapping[str, str], Mapping[str, str]]:
        try:
            request = get_http_request()
        except RuntimeError:
            # stdio transport: no credentials, so authentication fails closed.
            return {}, {}
        return request.headers, request.cookies

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        request_id = str(uuid.uuid4())[:8]
        headers, cookies = self._credentials()
        try:
            auth_context = await self._core.dispatcher.authenticate(headers, cookies)
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={"auth_data": {"request_id": request_id, "decision": "rejected", "reason": getattr(e, "reason", None)}},
            )
            raise PermissionError(e.message) from e

        all_tools = await call_next(context)
        authorizer = self._core.authorizer
        authorized = [tool for tool in all_tools if authorizer.has_permission(auth_context, tool.name)]

        logger.info(
            "Tool list filtered by permission",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "total_tools": len(all_tools),
                    "authorized_tools": [t.name for t in authorized],
                    "decision": "filtered",
                    **describe(auth_context),
                }
            },
        )
        return authorized

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        headers, cookies = self._credentials()
        try:
            await self._core.authorize_tool_call(headers, cookies, context.message.name)
        except AuthError as e:
            # FastMCP turns this into an MCP error result.
            raise PermissionError(e.message) from e
        return await call_next(context)


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_server(
    core: AuthCore | None = None,
    executor: ToolExecutor | None = None,
    identity: IdentityResolver | None = None,
    config: Settings = settings,
) -> FastMCP:
    core = core or build_core(config)
    executor = executor or UnavailableToolExecutor()
    identity = identity or TrustedHeaderIdentity(
        core.settings.identity_user_header, core.settings.identity_session_header
    )

    mcp = FastMCP(
        name="mcp-oauth-core",
        instructions=(
            "MCP server protected by OAuth 2.1. Tools are visible and callable "
            "according to the scopes granted to the caller's token."
        ),
        middleware=[AuthMiddleware(core)],
    )

    @mcp.tool(description="Echo a message back. Useful to test connectivity and auth.")
    def echo(message: str) -> str:
        return message

    # --- Health checks ----------------------------------------------------

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})

    @mcp.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        if not await core.store.ping():
            return JSONResponse({"status": "not_ready", "reason": "store unreachable"}, status_code=503)
        return JSONResponse({"status": "ready"})

    # --- Authorization endpoint -------------------------------------------

    @mcp.custom_route("/oauth/authorize", methods=["GET"])
    async def authorize(request: Request) -> Response:
        session = await identity.resolve(request)
        if session is None:
            return JSONResponse(
                {"error": "login_required", "error_description": "User is not logged in"},
                status_code=401,
            )

        auth_request = AuthorizationRequest.from_params(request.query_params)
        try:
            client = core.authorization.validate(auth_request)
            if await core.grants.covers(session.subject, client.client_id, auth_request.scopes):
                grant = await core.authorization.issue_code(auth_request, session.subject)
                return RedirectResponse(grant.redirect_url, status_code=302)
            csrf_token = await core.csrf.issue(session.session_id)
        except OAuthProtocolError as e:
            if e.redirectable:
                return RedirectResponse(e.redirect_url(), status_code=302)
            return error_response(e)
        except AuthError as e:
            return error_response(e)

        return JSONResponse(
            {
                "consent_required": True,
                "client_name": client.client_name,
                "scopes": core.authorizer.scope_descriptions(auth_request.scopes),
                "tools": core.authorizer.tools_for_scopes(auth_request.scopes),
                "csrf_token": csrf_token,
                **auth_request.as_params(),
            },
            headers=NO_STORE,
        )

    # --- Consent decision endpoint ----------------------------------------

    @mcp.custom_route("/oauth/consent", methods=["POST"])
    async def consent(request: Request) -> Response:
        session = await identity.resolve(request)
        if session is None:
            return error_response(AuthenticationError("User is not logged in", reason="missing"))

        try:
            body = await read_body(request)
            approved = body.get("approved")
            if not isinstance(approved, bool):
                raise OAuthProtocolError("invalid_request", "Missing or invalid approved parameter")
            outcome = await core.consent.decide(
                session,
                AuthorizationRequest.from_params(body),
                approved=approved,
                csrf_token=body.get("csrf_token"),
            )
        except OAuthProtocolError as e:
            if e.redirectable:
                return JSONResponse({"redirect_url": e.redirect_url()}, headers=NO_STORE)
            return error_response(e)
        except AuthError as e:
            return error_response(e)

        return JSONResponse({"redirect_url": outcome.redirect_url}, headers=NO_STORE)

    # --- Token endpoint ---------------------------------------------------

    @mcp.custom_route("/oauth/token", methods=["POST"])
    async def token(request: Request) -> Response:
        try:
            form = await read_body(request)
            response = await core.issuer.handle_token_request(form)
        except OAuthProtocolError as e:
            logger.warning(
                "Token request rejected",
                extra={"auth_data": {"error": e.error, "decision": "rejected"}},
            )
            return error_response(e)
        except AuthError as e:
            return error_response(e)
        return JSONResponse(response.to_dict(), headers=NO_STORE)

    @mcp.custom_route("/oauth/revoke", methods=["POST"])
    async def revoke(request: Request) -> Response:
        try:
            body = await read_body(request)
            token_value = body.get("token")
            if not token_value:
                raise OAuthProtocolError("invalid_request", "Missing token parameter")
            await core.issuer.revoke(str(token_value), body.get("token_type_hint"))
        except AuthError as e:
            return error_response(e)
        return JSONResponse({}, headers=NO_STORE)

    # --- Protected resource entry point -----------------------------------

    @mcp.custom_route("/tools/{tool_name}", methods=["POST"])
    async def call_tool(request: Request) -> Response:
        tool_name = request.path_params["tool_name"]
        try:
            auth_context = await core.authorize_tool_call(request.headers, request.cookies, tool_name)
        except AuthError as e:
            return error_response(e, realm=core.settings.issuer)

        arguments: dict[str, Any] = {}
        if await request.body():
            try:
                arguments = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                return JSONResponse({"error": "invalid_request", "error_description": "Malformed JSON body"}, status_code=400)
            if not isinstance(arguments, dict):
                return JSONResponse({"error": "invalid_request", "error_description": "Arguments must be an object"}, status_code=400)

        try:
            result = await executor.execute(tool_name, arguments, auth_context)
        except ToolNotAvailableError:
            return JSONResponse({"error": "tool_unavailable", "tool": tool_name}, status_code=501)
        return JSONResponse({"tool": tool_name, "result": result})

    return mcp


# Default server for `fastmcp run` and `python -m mcp_oauth.server`.
mcp = create_server()


def main() -> None:
    configure_logging(settings.log_level)
    settings.validate_for_production()
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, issuer=%s)",
        settings.host,
        settings.port,
        settings.issuer,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()

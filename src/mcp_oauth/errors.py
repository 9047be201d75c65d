"""
Error taxonomy for the authorization engine.

Every failure the engine can produce is one of four kinds, each with a fixed
HTTP status so the outer routing layer never has to guess:

    AuthenticationError      401  missing / malformed / expired / badly signed credential
    AuthorizationError       403  valid identity, insufficient scope for the tool
    OAuthProtocolError       400  RFC 6749 error (invalid_grant, invalid_client, ...)
    StorageUnavailableError  503  the key/value store could not be consulted

All of them derive from AuthError so callers that only care about "reject
this request" can catch a single type.
"""

from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl


class AuthError(Exception):
    """
    Base class for every rejection the engine produces.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code to return
    """

    status_code = 401

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class AuthenticationError(AuthError):
    """
    The credential is missing or could not be verified.

    `reason` is a short machine-readable tag (malformed, bad_signature,
    expired, wrong_audience, wrong_token_type, csrf, missing, invalid_api_key,
    unknown_device) used in logs and tests. It is not sent to clients.
    """

    status_code = 401

    def __init__(self, message: str, reason: str = "invalid"):
        self.reason = reason
        super().__init__(message)


class AuthorizationError(AuthError):
    """The caller is authenticated but not allowed to use the requested tool."""

    status_code = 403


class StorageUnavailableError(AuthError):
    """
    The backing store timed out or is unreachable.

    Retryable. Raised instead of returning a default, so an outage can never
    turn into "this token is not revoked".
    """

    status_code = 503


class OAuthProtocolError(AuthError):
    """
    A standard OAuth error response (RFC 6749 section 4.1.2.1 / 5.2).

    Attributes:
        error: The OAuth error code (invalid_request, invalid_client,
               invalid_grant, invalid_scope, unsupported_grant_type,
               access_denied)
        description: Human-readable detail for error_description
        redirect_uri: Where the error may be reported, if it is safe to do so
        state: The client's state value to echo back
        redirectable: False when the redirect_uri itself is untrusted
                      (unknown client or unregistered URI). Such errors must
                      be shown to the user instead of redirected.
    """

    status_code = 400

    def __init__(
        self,
        error: str,
        description: str,
        *,
        redirect_uri: str | None = None,
        state: str | None = None,
        redirectable: bool = False,
    ):
        self.error = error
        self.description = description
        self.redirect_uri = redirect_uri
        self.state = state
        self.redirectable = redirectable and bool(redirect_uri)
        super().__init__(f"{error}: {description}")

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}

    def redirect_url(self) -> str:
        """Build the error redirect back to the client."""
        if not self.redirectable:
            raise ValueError("error is not redirectable")
        params = {"error": self.error, "error_description": self.description}
        if self.state:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


def append_query(url: str, params: dict[str, str]) -> str:
    """Add query parameters to a URL, keeping any it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))

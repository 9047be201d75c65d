"""
CLI utility to mint tokens and PKCE pairs for testing the MCP server.

Normally tokens come out of the /oauth/token endpoint after a user consents.
For local testing and CI this script signs tokens directly with the server's
TokenSigner, so they carry exactly the claims the server validates (iss, aud,
client_id, space-delimited scope, token_type, jti).

Usage examples:

    # Access token for the web client with read access
    uv run python -m scripts.generate_token --sub alice --scope mcp:read

    # Read and write, plus a refresh token
    uv run python -m scripts.generate_token --sub alice --scope mcp:read mcp:write --refresh

    # Custom secret/issuer (must match MCP_JWT_SECRET_KEY / MCP_ISSUER on the server)
    uv run python -m scripts.generate_token --sub alice --scope mcp:read \\
        --secret my-prod-secret --issuer https://mcp.example.com

    # A PKCE verifier/challenge pair for driving /oauth/authorize by hand
    uv run python -m scripts.generate_token --pkce

The generated access token can be used with curl:

    curl -X POST http://localhost:8080/tools/echo \\
      -H "Authorization: Bearer <token>" -d '{"message": "hello"}'

The printed example uses the first tool the minted scopes can call.
"""

import argparse
import datetime

from mcp_oauth.config import settings
from mcp_oauth.pkce import generate_pkce_pair
from mcp_oauth.scopes import ScopeAuthorizer, format_scope
from mcp_oauth.tokens import TokenSigner


def generate_tokens(
    subject: str,
    scopes: list[str],
    client_id: str = "claude-web",
    secret: str = settings.jwt_secret_key,
    issuer: str = settings.issuer,
    algorithm: str = settings.jwt_algorithm,
    access_ttl: int = settings.access_token_ttl,
    include_refresh: bool = False,
) -> dict[str, str]:
    """
    Mint an access token (and optionally a refresh token) for `subject`.

    Returns:
        {"access_token": ...} plus "refresh_token" when requested
    """
    signer = TokenSigner(
        secret=secret,
        issuer=issuer,
        access_ttl=access_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        algorithm=algorithm,
    )
    scope = format_scope(scopes)
    access_token, _ = signer.issue_access(subject, client_id, scope)
    tokens = {"access_token": access_token}
    if include_refresh:
        tokens["refresh_token"], _ = signer.issue_refresh(subject, client_id, scope)
    return tokens


def example_tool(scopes: list[str]) -> str | None:
    """First catalogue tool the scopes can call, for the curl hint."""
    tools = ScopeAuthorizer().tools_for_scopes(scopes)
    return tools[0] if tools else None


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint tokens and PKCE pairs for the MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Read access:
    %(prog)s --sub alice --scope mcp:read

  Read and write with a refresh token:
    %(prog)s --sub alice --scope mcp:read mcp:write --refresh

  PKCE pair:
    %(prog)s --pkce
        """,
    )

    parser.add_argument("--sub", help="Subject: the user the token acts for (e.g., 'alice')")
    parser.add_argument(
        "--scope",
        nargs="+",
        default=["mcp:read"],
        help="Space-separated list of scopes (e.g., mcp:read mcp:write)",
    )
    parser.add_argument("--client-id", default="claude-web", help="client_id claim (default: claude-web)")
    parser.add_argument("--secret", default=settings.jwt_secret_key, help="Signing secret")
    parser.add_argument("--issuer", default=settings.issuer, help="iss/aud claim")
    parser.add_argument(
        "--exp-seconds",
        type=int,
        default=settings.access_token_ttl,
        help="Access token lifetime in seconds",
    )
    parser.add_argument("--refresh", action="store_true", help="Also mint a refresh token")
    parser.add_argument("--pkce", action="store_true", help="Print a PKCE verifier and S256 challenge")

    args = parser.parse_args()

    if args.pkce:
        verifier, challenge = generate_pkce_pair()
        print(f"code_verifier:  {verifier}")
        print(f"code_challenge: {challenge}")
        print("code_challenge_method: S256")
        if not args.sub:
            return

    if not args.sub:
        parser.error("--sub is required unless only --pkce is given")

    tokens = generate_tokens(
        subject=args.sub,
        scopes=args.scope,
        client_id=args.client_id,
        secret=args.secret,
        issuer=args.issuer,
        access_ttl=args.exp_seconds,
        include_refresh=args.refresh,
    )

    exp_time = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=args.exp_seconds)

    print(f"Subject:    {args.sub}")
    print(f"Client:     {args.client_id}")
    print(f"Scope:      {format_scope(args.scope)}")
    print(f"Expires:    {exp_time.isoformat()}")
    print()
    print(f"Access token: {tokens['access_token']}")
    if "refresh_token" in tokens:
        print(f"Refresh token: {tokens['refresh_token']}")

    tool = example_tool(args.scope)
    if tool is None:
        return
    print()
    print("Usage with curl:")
    print(f"  curl -X POST http://localhost:8080/tools/{tool} \\")
    print(f'    -H "Authorization: Bearer {tokens["access_token"]}"')


if __name__ == "__main__":
    main()

"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables. All config comes from the environment, never
hardcoded in source code.

In production these are injected by the deployment:
- MCP_HOST, MCP_PORT, MCP_LOG_LEVEL, MCP_ISSUER come from the ConfigMap
- MCP_JWT_SECRET_KEY, MCP_REDIS_URL and MCP_API_KEYS come from secrets

Locally, you can set them via environment variables or a .env file.
Complex values (api_keys, authorized_devices) are parsed from JSON, e.g.
MCP_API_KEYS='{"k-123": ["*"], "k-456": ["analytics", "echo"]}'.
"""

from pydantic_settings import BaseSettings

DEFAULT_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `issuer` reads from MCP_ISSUER, `jwt_secret_key` reads
    from MCP_JWT_SECRET_KEY.
    """

    # --- Server settings ---

    # "0.0.0.0" is required inside containers so traffic from outside reaches us.
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # "development" or "production". Production refuses the default secret.
    environment: str = "development"

    # --- Token settings ---

    # Symmetric signing key. Default is for local development only.
    jwt_secret_key: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"

    # Used for both the "iss" and "aud" claims: this server issues tokens
    # for itself, so a token minted by any other issuer is rejected.
    issuer: str = "http://localhost:8080"

    # Lifetimes in seconds.
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 30 * 24 * 3600
    auth_code_ttl: int = 600
    csrf_token_ttl: int = 600
    consent_grant_ttl: int = 365 * 24 * 3600

    # --- Storage settings ---

    # When unset, an in-process store is used (single worker only).
    redis_url: str | None = None

    # Upper bound on any single store call. A timeout is a 503, never a
    # "not revoked" answer.
    store_timeout_seconds: float = 2.0

    # Prefix for every key, separating environments sharing one database.
    key_prefix: str = "local:"

    # --- Non-OAuth credentials ---

    # API key -> list of permissions ("*" grants every tool).
    api_keys: dict[str, list[str]] = {}

    # MAC address -> user id, for legacy device authentication.
    authorized_devices: dict[str, str] = {}

    # --- Identity collaborator ---

    # Headers set by the fronting identity proxy once a user has logged in.
    identity_user_header: str = "x-authenticated-user"
    identity_session_header: str = "x-session-id"

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    def validate_for_production(self) -> None:
        """Refuse to start a production server with development defaults."""
        if self.environment == "production" and self.jwt_secret_key == DEFAULT_JWT_SECRET:
            raise ValueError("MCP_JWT_SECRET_KEY must be set in production")
        if self.access_token_ttl <= 0 or self.refresh_token_ttl <= 0:
            raise ValueError("Token lifetimes must be positive")


# Singleton instance: import this from other modules.
settings = Settings()

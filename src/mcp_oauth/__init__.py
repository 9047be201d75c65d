"""
OAuth 2.1 authorization and token-lifecycle engine for MCP servers.

The package is organised leaves first:

    store       -> atomic key/value primitives (in-memory or Redis)
    revocation  -> revoked refresh-token ids and refresh families
    codes       -> single-use authorization codes
    tokens      -> JWT signing and validation
    scopes      -> scope -> tool authorization
    authorize   -> authorization request validation, code minting
    consent     -> CSRF-checked consent decisions
    issuer      -> token endpoint grants, rotation, replay defense
    dispatcher  -> credential detection and AuthContext construction
    core        -> wires everything together from Settings
    server      -> FastMCP server and HTTP routes
"""

__version__ = "0.2.0"

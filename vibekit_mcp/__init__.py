"""
vibekit_mcp: FastMCP stdio server bridging MCP clients to a VibeCodersKit account.

This package provides the authenticated API client (with transparent token refresh),
the device-flow login, and the server entrypoint.
"""

__version__: str = "1.2.0"


def version() -> str:
    return __version__


__all__: list[str] = ["__version__", "version"]

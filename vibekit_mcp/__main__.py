"""
Package entry point for the vibekit_mcp command line.

This allows running:
  - python -m vibekit_mcp           -> starts the stdio MCP server
  - python -m vibekit_mcp login     -> connects an account via device flow

The entry point delegates to vibekit_mcp.server.cli_main().
"""

import sys

from vibekit_mcp.server import cli_main


def main() -> None:
    sys.exit(cli_main())


if __name__ == "__main__":
    main()

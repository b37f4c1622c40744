"""
vibekit_mcp.server

FastMCP stdio server connecting an AI coding assistant to a VibeCodersKit
account, plus the command line used to log in and out.

Server-level documentation:
- Purpose: give MCP-aware clients authenticated access to the VibeCodersKit
  content library (prompts, agents, skills, UI configs, stacks).
- Authentication: OAuth device flow (`vibekit-mcp login`); the credential is
  stored in ~/.vibekit/token.json and refreshed transparently.
- Transport: STDIO by default (ideal for clients that spawn the server process)
- Logging: stderr console + rotating file logs (stdout carries JSON-RPC only)

Environment (optional):
- VIBEKIT_API_URL: base URL of the remote service (default: https://vibecoderskit.com)
- VIBEKIT_HOME: directory for token.json and logs (default: ~/.vibekit)
- LOG_FILE: override log file path (default: <VIBEKIT_HOME>/logs/vibekit_mcp.log)

Usage:
  python -m vibekit_mcp              # starts stdio server
  python -m vibekit_mcp login        # connect your account
  python -m vibekit_mcp status       # show connection status
  python -m vibekit_mcp logout       # disconnect (revokes server-side by default)

Package: vibekit_mcp
Entry point: python -m vibekit_mcp
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any
from urllib.parse import quote

import httpx
from fastmcp import FastMCP

from vibekit_mcp import __version__
from vibekit_mcp.api import api_request
from vibekit_mcp.auth import CredentialStore, logout, utcnow
from vibekit_mcp.config import LOGIN_COMMAND, SERVER_NAME, Settings
from vibekit_mcp.errors import VibekitError
from vibekit_mcp.login import DeviceCode, DeviceFlow


PACKAGE_LOGGER = "vibekit_mcp"
RULE = "━" * 62
PROMPTS_PATH = "/api/mcp/prompts"
PROMPT_URI_PREFIX = "vibekit://prompt/"
PROMPT_RESOURCE_LIMIT = 50

logger = logging.getLogger(__name__)


# --- Logging setup ---
def configure_logging(settings: Settings | None = None) -> logging.Logger:
    """
    function_purpose: Configure package-wide logging to both stderr and a rotating file.

    - Creates the log directory if needed.
    - Console output goes to stderr so the stdio transport stays clean.
    - Safe to call more than once; handlers are only attached the first time.
    """
    settings = settings or Settings.from_env()
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger

    log_file = settings.resolved_log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"
    )

    # Console handler
    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(logging.WARNING)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    # Rotating file handler (5 files, 5MB each)
    fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    logger.info("Logging initialized. File: %s", str(log_file))
    return logger


# --- Status helpers ---
def describe_status(store: CredentialStore, now: datetime | None = None) -> str:
    """
    function_purpose: Human-readable connection status for the stored credential.
    """
    token = store.load()
    if token is None:
        return f"Not connected. Run `{LOGIN_COMMAND}` to connect your account."

    now = now or utcnow()
    expired = token.is_expired(now)
    validity = (
        "EXPIRED"
        if expired
        else f"valid for {round(token.seconds_remaining(now) / 60)} minutes"
    )
    lines = [
        "Connected to VibeCodersKit",
        "",
        f"  Account: {token.user.name} ({token.user.email})",
        f"  Token:   {validity}",
    ]
    if expired:
        lines.append(
            f"\nYour token has expired. Run `{LOGIN_COMMAND}` to reconnect."
        )
    return "\n".join(lines)


def disconnect(
    settings: Settings, revoke: bool = True, http: httpx.Client | None = None
) -> str:
    """
    function_purpose: Log out and describe the outcome.

    Local credentials are removed even if server-side revocation fails.
    """
    store = CredentialStore.from_settings(settings)
    owns_http = http is None
    http = http or httpx.Client(timeout=settings.timeout)
    try:
        result = logout(settings=settings, store=store, http=http, revoke=revoke)
    finally:
        if owns_http:
            http.close()
    if result is None:
        return "Already disconnected. No stored credentials found."
    message = f"Disconnected {result.record.user.email} from VibeCodersKit."
    if result.revoked:
        message += " Token revoked server-side."
    elif result.revoke_requested:
        message += " Server-side revocation failed; local credentials were removed anyway."
    return message


# --- Prompt resources ---
def list_prompt_resources(
    request: Callable[..., Any] = api_request,
) -> list[dict[str, Any]]:
    """
    function_purpose: Describe the user's saved prompts as MCP resource entries.

    Uses the authenticated request client. Any failure (not logged in, expired,
    network, API error or an unexpected body) yields an empty list so resource
    discovery never breaks the client.
    """
    try:
        data = request(PROMPTS_PATH, params={"limit": PROMPT_RESOURCE_LIMIT})
    except (VibekitError, ValueError) as exc:
        logger.warning("Could not list prompt resources: %s", exc)
        return []

    prompts = data.get("prompts") if isinstance(data, dict) else None
    if not isinstance(prompts, list):
        logger.warning("Prompt listing returned an unexpected body")
        return []

    resources: list[dict[str, Any]] = []
    for prompt in prompts:
        if not isinstance(prompt, dict) or not prompt.get("id"):
            continue
        resources.append(
            {
                "uri": f"{PROMPT_URI_PREFIX}{prompt['id']}",
                "name": prompt.get("name") or str(prompt["id"]),
                "description": prompt.get("description") or None,
                "mimeType": "text/plain",
            }
        )
    return resources


def read_prompt_content(
    prompt_id: str, request: Callable[..., Any] = api_request
) -> str:
    """
    function_purpose: Fetch the text of one saved prompt.

    Errors from the request client propagate unchanged so the caller sees the
    login hint; a prompt without text content raises ValueError.
    """
    prompt = request(f"{PROMPTS_PATH}/{quote(prompt_id, safe='')}")
    content = prompt.get("content") if isinstance(prompt, dict) else None
    if not isinstance(content, str):
        raise ValueError(f"prompt '{prompt_id}' has no text content")
    return content


# --- FastMCP server and tools ---
mcp = FastMCP(
    SERVER_NAME,
    instructions=(
        "VibeCodersKit MCP Server\n"
        "\n"
        "Purpose:\n"
        "- Give agents access to the user's VibeCodersKit library: prompts, agents, skills,\n"
        "  UI configurations and tech stacks.\n"
        "\n"
        "Authentication:\n"
        f"- The user connects once with `{LOGIN_COMMAND}` (browser + short code).\n"
        "- Access tokens are refreshed automatically; if a tool reports that authentication\n"
        f"  expired, ask the user to run `{LOGIN_COMMAND}` again.\n"
        "\n"
        "Exposed tools:\n"
        "- vck_status(): whether an account is connected, which one, and token validity\n"
        "- vck_logout(revoke?): remove stored credentials, revoking server-side by default\n"
        "\n"
        "Resources:\n"
        "- vibekit://prompts: index of saved prompts (empty when not connected)\n"
        "- vibekit://prompt/{id}: text of one saved prompt\n"
    ),
)


@mcp.tool
def vck_status() -> str:
    """
    Check your VibeCodersKit connection status. Shows whether you're logged in,
    your account info, and token expiry.
    """
    settings = Settings.from_env()
    return describe_status(CredentialStore.from_settings(settings))


@mcp.tool
def vck_logout(revoke: bool = True) -> str:
    """
    Disconnect your VibeCodersKit account. Removes stored credentials and
    optionally revokes the token server-side.

    Args:
    - revoke: bool   Also revoke the token server-side (default: True)
    """
    return disconnect(Settings.from_env(), revoke=revoke)


@mcp.resource(
    "vibekit://prompts",
    name="prompts",
    description="Index of your saved VibeCodersKit prompts (up to 50), with resource URIs.",
    mime_type="application/json",
)
def prompts_index() -> str:
    return json.dumps(list_prompt_resources(), ensure_ascii=False)


@mcp.resource(
    PROMPT_URI_PREFIX + "{prompt_id}",
    name="prompt",
    description="Content of a saved VibeCodersKit prompt by ID.",
    mime_type="text/plain",
)
def prompt_resource(prompt_id: str) -> str:
    return read_prompt_content(prompt_id)


# --- Entry points ---
def run() -> None:
    """
    function_purpose: Entry point to start the MCP stdio server.

    - Configures logging
    - Runs FastMCP stdio server
    """
    settings = Settings.from_env()
    logger = configure_logging(settings)
    logger.info(
        "Server %s starting with api=%s token_file=%s",
        __version__,
        settings.base_url,
        settings.token_file,
    )
    mcp.run()  # stdio transport by default


def _print_prompt(device: DeviceCode) -> None:
    print(RULE)
    print("")
    print("  Open this URL in your browser:")
    print(f"  {device.verification_uri}")
    print("")
    print(f"  Enter this code: {device.user_code}")
    print("")
    print(RULE)
    print("")
    print("Waiting for authorization", end="", flush=True)


def _print_pending() -> None:
    print(".", end="", flush=True)


def login_command(settings: Settings) -> int:
    """
    function_purpose: Interactive login via the device flow. Returns a process exit code.
    """
    print("\nVibeCodersKit Login\n")
    print("Connecting your VibeCodersKit account...\n")

    try:
        with DeviceFlow(settings) as flow:
            token = flow.login(on_prompt=_print_prompt, on_pending=_print_pending)
    except VibekitError as exc:
        print(f"\nError: {exc.message}", file=sys.stderr)
        return 1

    print("\n")
    print(RULE)
    print("")
    print(f"  ✓ Connected as {token.user.name} ({token.user.email})")
    print("")
    print("  You can now use VibeCodersKit tools from your MCP client.")
    print("")
    print(RULE)
    return 0


def cli_main(argv: list[str] | None = None) -> int:
    """
    function_purpose: CLI for account management or starting the MCP server.

    Usage:
      python -m vibekit_mcp [serve]
      python -m vibekit_mcp login
      python -m vibekit_mcp status
      python -m vibekit_mcp logout [--no-revoke]
    """
    import argparse

    parser = argparse.ArgumentParser(
        prog="vibekit-mcp",
        description="VibeCodersKit MCP server and account management.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Start MCP stdio server (default when no command given)")
    sub.add_parser("login", help="Connect your VibeCodersKit account")
    sub.add_parser("status", help="Show connection status")
    logout_parser = sub.add_parser("logout", help="Disconnect your account")
    logout_parser.add_argument(
        "--no-revoke",
        action="store_true",
        help="Only delete local credentials; skip server-side revocation",
    )

    args = parser.parse_args(argv)
    settings = Settings.from_env()

    if args.command == "login":
        configure_logging(settings)
        return login_command(settings)

    if args.command == "status":
        print(describe_status(CredentialStore.from_settings(settings)))
        return 0

    if args.command == "logout":
        configure_logging(settings)
        print(disconnect(settings, revoke=not args.no_revoke))
        return 0

    # Default: start server
    run()
    return 0


if __name__ == "__main__":
    sys.exit(cli_main())

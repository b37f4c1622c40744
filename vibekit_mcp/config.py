"""
vibekit_mcp.config

Runtime settings for the VibeCodersKit bridge.

Environment (optional):
- VIBEKIT_API_URL: base URL of the remote service (default: https://vibecoderskit.com)
- VIBEKIT_HOME: directory holding token.json and logs (default: ~/.vibekit)
- LOG_FILE: override log file path (default: <VIBEKIT_HOME>/logs/vibekit_mcp.log)

The environment is read once, at the server/CLI boundary, via Settings.from_env().
Everything below that boundary receives a Settings instance explicitly.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path


# --- Constants ---
SERVER_NAME = "vibekit"
DEFAULT_API_URL = "https://vibecoderskit.com"
DEFAULT_CONFIG_DIR = Path.home() / ".vibekit"
TOKEN_FILENAME = "token.json"
LOG_FILENAME = "vibekit_mcp.log"

CLIENT_ID = "claude-code"
SCOPE = "prompts:read prompts:write"

DEVICE_CODE_PATH = "/api/mcp/auth/device/code"
DEVICE_TOKEN_PATH = "/api/mcp/auth/device/token"
REFRESH_PATH = "/api/mcp/auth/refresh"
REVOKE_PATH = "/api/mcp/auth/revoke"

LOGIN_COMMAND = "vibekit-mcp login"


@dataclass(frozen=True)
class Settings:
    base_url: str = DEFAULT_API_URL
    config_dir: Path = DEFAULT_CONFIG_DIR
    client_id: str = CLIENT_ID
    scope: str = SCOPE
    timeout: float = 30.0
    refresh_buffer: float = 60.0
    log_file: Path | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    @property
    def token_file(self) -> Path:
        return self.config_dir / TOKEN_FILENAME

    @property
    def resolved_log_file(self) -> Path:
        return self.log_file or (self.config_dir / "logs" / LOG_FILENAME)

    def url(self, endpoint: str) -> str:
        """Join an endpoint path such as '/api/mcp/prompts' onto the base URL."""
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return f"{self.base_url}{endpoint}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        function_purpose: Build Settings from environment variables.

        Empty values are treated as unset.
        """
        env = os.environ if environ is None else environ

        base_url = (env.get("VIBEKIT_API_URL") or "").strip() or DEFAULT_API_URL
        home = (env.get("VIBEKIT_HOME") or "").strip()
        config_dir = Path(home).expanduser() if home else DEFAULT_CONFIG_DIR
        log_env = (env.get("LOG_FILE") or "").strip()
        log_file = Path(log_env).expanduser() if log_env else None

        return cls(base_url=base_url, config_dir=config_dir, log_file=log_file)

"""
vibekit_mcp.auth

Token management: the persisted credential record, the on-disk store, and the
refresh / revoke calls against the remote service.

Storage:
- A single JSON file (default ~/.vibekit/token.json), mode 0600, inside a
  directory created with mode 0700.
- Saving overwrites; there is never more than one record.
- A missing, empty or corrupt file reads back as "not authenticated".

No cross-process locking is done. Two server processes sharing one account may
race on save; the last writer wins.
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx

from vibekit_mcp.config import REFRESH_PATH, REVOKE_PATH, Settings


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """
    function_purpose: Render an aware datetime as ISO-8601 UTC with millisecond precision.

    Example: 2025-01-31T12:00:00.000Z
    """
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def compute_expires_at(expires_in: float, now: datetime | None = None) -> str:
    """
    function_purpose: Derive an absolute expiry from a server-issued lifetime.

    expires_at is always issued_at + expires_in, computed at the moment of
    issuance or refresh. Raises ValueError for a lifetime that is not a finite
    number or that lands outside the representable date range.
    """
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        raise ValueError(f"expires_in must be a number, got {expires_in!r}")
    if not math.isfinite(expires_in):
        raise ValueError(f"expires_in must be finite, got {expires_in!r}")
    issued_at = now or utcnow()
    try:
        return format_timestamp(issued_at + timedelta(seconds=expires_in))
    except OverflowError as exc:
        raise ValueError(f"expires_in out of range: {expires_in!r}") from exc


def require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' is required and must be a string")
    return value


@dataclass(frozen=True)
class UserInfo:
    id: str
    email: str
    name: str

    @classmethod
    def from_dict(cls, data: Any) -> UserInfo:
        if not isinstance(data, dict):
            raise ValueError("field 'user' must be an object")
        return cls(
            id=require_str(data, "id"),
            email=require_str(data, "email"),
            name=require_str(data, "name"),
        )


@dataclass(frozen=True)
class TokenData:
    """The credential record persisted in token.json."""

    access_token: str
    refresh_token: str
    expires_at: str
    user: UserInfo

    @classmethod
    def from_dict(cls, data: Any) -> TokenData:
        """
        function_purpose: Validate and build a record from parsed JSON.

        Raises ValueError when a field is missing, has the wrong type, or
        expires_at is not a parseable timestamp.
        """
        if not isinstance(data, dict):
            raise ValueError("token record must be a JSON object")
        expires_at = require_str(data, "expires_at")
        parse_timestamp(expires_at)
        return cls(
            access_token=require_str(data, "access_token"),
            refresh_token=require_str(data, "refresh_token"),
            expires_at=expires_at,
            user=UserInfo.from_dict(data.get("user")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def expires_at_datetime(self) -> datetime:
        return parse_timestamp(self.expires_at)

    def seconds_remaining(self, now: datetime | None = None) -> float:
        return (self.expires_at_datetime() - (now or utcnow())).total_seconds()

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.seconds_remaining(now) <= 0


class CredentialStore:
    """Loads, saves and deletes the single credential record at `path`."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialStore:
        return cls(settings.token_file)

    @property
    def location(self) -> Path:
        return self._path

    def load(self) -> TokenData | None:
        """
        function_purpose: Read the stored record.

        Never raises. Missing file, unreadable file, empty file, bad encoding,
        invalid JSON and incomplete records all yield None.
        """
        try:
            if not self._path.is_file():
                return None
            text = self._path.read_text(encoding="utf-8")
        except (OSError, ValueError) as exc:
            # UnicodeDecodeError is a ValueError subclass
            logger.warning("Could not read token file %s: %s", self._path, exc)
            return None
        if not text.strip():
            return None
        try:
            return TokenData.from_dict(json.loads(text))
        except ValueError as exc:
            logger.warning("Ignoring unusable token file %s: %s", self._path, exc)
            return None

    def save(self, record: TokenData) -> None:
        """
        function_purpose: Persist the record with owner-only permissions.

        - Creates the parent directory with mode 0700 if missing.
        - Writes a 0600 temp file beside the target and renames it into place,
          so load() never sees a half-written file.
        """
        directory = self._path.parent
        if not directory.exists():
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)

        payload = json.dumps(record.to_dict(), indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(directory)
        )
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                _ = f.write(payload)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved credentials to %s", self._path)

    def delete(self) -> None:
        """Remove the stored record; a missing file is not an error."""
        self._path.unlink(missing_ok=True)


# --- Remote token operations ---
def refresh_access_token(
    record: TokenData,
    *,
    settings: Settings,
    store: CredentialStore,
    http: httpx.Client,
    clock: Clock = utcnow,
) -> TokenData | None:
    """
    function_purpose: Exchange the refresh token for a new access token.

    Behavior:
    - POST {refresh_token} to the refresh endpoint.
    - On success: new access_token and expires_at (now + expires_in); refresh_token
      and user are kept as-is. The result is saved and returned.
    - Network failure, non-2xx status or an unusable body: returns None and leaves
      the stored record untouched. Never raises.
    """
    url = settings.url(REFRESH_PATH)
    try:
        response = http.post(
            url,
            json={"refresh_token": record.refresh_token},
            headers={"Content-Type": "application/json"},
        )
    except httpx.HTTPError as exc:
        logger.warning("Token refresh failed: %s", exc)
        return None

    if not response.is_success:
        logger.warning("Token refresh rejected with status %s", response.status_code)
        return None

    try:
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("body is not a JSON object")
        access_token = require_str(data, "access_token")
        if not access_token:
            raise ValueError("access_token is empty")
        expires_at = compute_expires_at(data.get("expires_in"), clock())
    except ValueError as exc:
        # json.JSONDecodeError is a ValueError subclass
        logger.warning("Token refresh returned an unusable body: %s", exc)
        return None

    updated = TokenData(
        access_token=access_token,
        refresh_token=record.refresh_token,
        expires_at=expires_at,
        user=record.user,
    )
    try:
        store.save(updated)
    except OSError as exc:
        logger.error("Could not persist refreshed token to %s: %s", store.location, exc)
        return None
    logger.info("Access token refreshed; expires at %s", updated.expires_at)
    return updated


def revoke_token(record: TokenData, *, settings: Settings, http: httpx.Client) -> bool:
    """
    function_purpose: Ask the server to revoke the access token.

    Best effort: every failure is logged and swallowed. Returns True only on a
    2xx response.
    """
    try:
        response = http.post(
            settings.url(REVOKE_PATH),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {record.access_token}",
            },
        )
    except httpx.HTTPError as exc:
        logger.warning("Token revocation failed: %s", exc)
        return False
    if not response.is_success:
        logger.warning("Token revocation returned status %s", response.status_code)
        return False
    return True


@dataclass(frozen=True)
class LogoutResult:
    record: TokenData
    revoke_requested: bool
    revoked: bool


def logout(
    *,
    settings: Settings,
    store: CredentialStore,
    http: httpx.Client,
    revoke: bool = True,
) -> LogoutResult | None:
    """
    function_purpose: Disconnect the local account.

    Returns what was removed and whether the server confirmed revocation, or None
    if nothing was stored. Revocation is attempted first when requested; the local
    file is deleted regardless of its outcome.
    """
    record = store.load()
    if record is None:
        # Clear any corrupt leftover as well
        store.delete()
        return None
    revoked = revoke and revoke_token(record, settings=settings, http=http)
    store.delete()
    logger.info("Removed stored credentials for %s", record.user.email)
    return LogoutResult(record=record, revoke_requested=revoke, revoked=revoked)

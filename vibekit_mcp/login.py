"""
vibekit_mcp.login

OAuth device authorization flow (RFC 8628 style) for connecting an account.

Steps:
1. Request a device code with the fixed client id and scope.
2. Show the verification URL and user code to the user.
3. Poll the token endpoint every `interval` seconds until the server answers
   with tokens or a terminal error. `slow_down` adds 5 seconds to the interval.
4. Save the resulting credential record.

The poll loop blocks and has no timeout of its own; it ends only when the
server says so (or the process is killed).
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from vibekit_mcp.auth import (
    Clock,
    CredentialStore,
    TokenData,
    UserInfo,
    compute_expires_at,
    require_str,
    utcnow,
)
from vibekit_mcp.config import DEVICE_CODE_PATH, DEVICE_TOKEN_PATH, Settings
from vibekit_mcp.errors import AuthorizationTimeoutError, DeviceFlowError, NetworkError


logger = logging.getLogger(__name__)

SLOW_DOWN_INCREMENT = 5


@dataclass(frozen=True)
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int

    @classmethod
    def from_dict(cls, data: Any) -> DeviceCode:
        if not isinstance(data, dict):
            raise DeviceFlowError("Device code response was not a JSON object")
        try:
            return cls(
                device_code=_require_text(data, "device_code"),
                user_code=_require_text(data, "user_code"),
                verification_uri=_require_text(data, "verification_uri"),
                expires_in=_require_seconds(data, "expires_in"),
                interval=_require_seconds(data, "interval"),
            )
        except ValueError as exc:
            raise DeviceFlowError(f"Malformed device code response: {exc}") from exc


def _require_text(data: dict[str, Any], key: str) -> str:
    value = require_str(data, key)
    if not value:
        raise ValueError(f"field '{key}' must not be empty")
    return value


def _require_seconds(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field '{key}' is required and must be a number")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"field '{key}' must be a non-negative finite number")
    return int(value)


class DeviceFlow:
    def __init__(
        self,
        settings: Settings,
        store: CredentialStore | None = None,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.store = store or CredentialStore.from_settings(settings)
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=settings.timeout)
        self.sleep = sleep
        self.clock = clock or utcnow

    def __enter__(self) -> DeviceFlow:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = self.settings.url(path)
        try:
            return self.http.post(
                url, json=payload, headers={"Content-Type": "application/json"}
            )
        except httpx.TransportError as exc:
            raise NetworkError(url, exc) from exc

    def request_device_code(self) -> DeviceCode:
        response = self._post(
            DEVICE_CODE_PATH,
            {"client_id": self.settings.client_id, "scope": self.settings.scope},
        )
        if not response.is_success:
            message = None
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("error"):
                    message = str(body["error"])
            except ValueError:
                pass
            raise DeviceFlowError(
                message or f"Failed to get device code: {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise DeviceFlowError(
                f"Unexpected response from device code endpoint: {response.status_code}"
            ) from exc
        return DeviceCode.from_dict(body)

    def poll_for_token(
        self,
        device: DeviceCode,
        on_pending: Callable[[], None] | None = None,
    ) -> dict[str, Any]:
        """
        function_purpose: Poll the token endpoint until authorization completes.

        Returns the raw success payload (access_token, refresh_token, expires_in, user).
        Raises AuthorizationTimeoutError on expired_token and DeviceFlowError for any
        other error code.
        """
        interval = device.interval
        while True:
            self.sleep(interval)

            response = self._post(DEVICE_TOKEN_PATH, {"device_code": device.device_code})
            try:
                data = response.json()
            except ValueError as exc:
                raise DeviceFlowError(
                    f"Unexpected response from token endpoint: {response.status_code}"
                ) from exc
            if not isinstance(data, dict):
                raise DeviceFlowError("Authentication failed")

            if "access_token" in data:
                return data

            error = data.get("error")
            if error == "authorization_pending":
                if on_pending is not None:
                    on_pending()
                continue
            if error == "slow_down":
                interval += SLOW_DOWN_INCREMENT
                logger.info("Server asked to slow down; polling every %ss", interval)
                continue
            if error == "expired_token":
                raise AuthorizationTimeoutError()

            raise DeviceFlowError(
                data.get("error_description") or error or "Authentication failed"
            )

    def build_record(self, payload: dict[str, Any]) -> TokenData:
        try:
            return TokenData(
                access_token=_require_text(payload, "access_token"),
                refresh_token=_require_text(payload, "refresh_token"),
                expires_at=compute_expires_at(payload.get("expires_in"), self.clock()),
                user=UserInfo.from_dict(payload.get("user")),
            )
        except ValueError as exc:
            raise DeviceFlowError(f"Malformed token response: {exc}") from exc

    def login(
        self,
        on_prompt: Callable[[DeviceCode], None] | None = None,
        on_pending: Callable[[], None] | None = None,
    ) -> TokenData:
        """
        function_purpose: Run the whole device flow and persist the credential record.

        - on_prompt(device) is called once with the verification URL and user code.
        - on_pending() is called after each authorization_pending answer.
        """
        device = self.request_device_code()
        logger.info("Device code issued; waiting for user authorization")
        if on_prompt is not None:
            on_prompt(device)

        payload = self.poll_for_token(device, on_pending=on_pending)
        record = self.build_record(payload)
        self.store.save(record)
        logger.info("Connected as %s", record.user.email)
        return record

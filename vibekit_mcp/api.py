"""
vibekit_mcp.api

Authenticated API client with automatic token refresh.

Request lifecycle:
- Load the stored credential; none stored -> NotAuthenticatedError.
- Refresh proactively when the access token expires within the refresh buffer
  (60 s). A failed proactive refresh is ignored; the call itself decides.
- Send with the bearer token. On 401, refresh once more: failure raises
  AuthenticationExpiredError, success retries the call exactly once and that
  outcome is final.
- 204 -> {}. Other 2xx -> parsed JSON, unvalidated. Non-2xx -> ApiError.

The client is synchronous and holds no lock around the token file; callers
are expected to issue one request at a time.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from vibekit_mcp.auth import (
    Clock,
    CredentialStore,
    TokenData,
    refresh_access_token,
    utcnow,
)
from vibekit_mcp.config import Settings
from vibekit_mcp.errors import (
    ApiError,
    AuthenticationExpiredError,
    NetworkError,
    NotAuthenticatedError,
)


logger = logging.getLogger(__name__)


class ApiClient:
    def __init__(
        self,
        settings: Settings,
        store: CredentialStore | None = None,
        http: httpx.Client | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.store = store or CredentialStore.from_settings(settings)
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=settings.timeout)
        self.clock = clock or utcnow

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def refresh(self, record: TokenData) -> TokenData | None:
        return refresh_access_token(
            record,
            settings=self.settings,
            store=self.store,
            http=self.http,
            clock=self.clock,
        )

    def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """
        function_purpose: Perform one authenticated request against the remote service.

        Args:
        - endpoint: str      Path such as "/api/mcp/prompts?limit=50"
        - method: str        HTTP method (default GET)
        - json: Any          Optional JSON body
        - params: Mapping    Optional query parameters
        - headers: Mapping   Extra headers, applied over the defaults

        Returns the decoded JSON body ({} for 204 No Content).
        """
        token = self.store.load()
        if token is None:
            raise NotAuthenticatedError()

        if token.seconds_remaining(self.clock()) <= self.settings.refresh_buffer:
            logger.info("Access token expires soon; refreshing before request")
            refreshed = self.refresh(token)
            if refreshed is not None:
                token = refreshed

        response = self._send(endpoint, token, method, json, params, headers)

        if response.status_code == 401:
            logger.info("Request to %s was rejected (401); refreshing token", endpoint)
            refreshed = self.refresh(token)
            if refreshed is None:
                raise AuthenticationExpiredError()
            response = self._send(endpoint, refreshed, method, json, params, headers)

        return self._decode(response)

    def _send(
        self,
        endpoint: str,
        token: TokenData,
        method: str,
        json: Any,
        params: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
    ) -> httpx.Response:
        url = self.settings.url(endpoint)
        merged = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token.access_token}",
        }
        if headers:
            merged.update(headers)
        try:
            return self.http.request(
                method.upper(), url, json=json, params=params, headers=merged
            )
        except httpx.TransportError as exc:
            raise NetworkError(url, exc) from exc

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.is_success:
            raise ApiError(response.status_code, _error_message(response))
        if response.status_code == 204:
            return {}
        return response.json()


def _error_message(response: httpx.Response) -> str | None:
    """Extract the server-reported 'error' string from a failed response, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str) and error:
            return error
    return None


def api_request(endpoint: str, **options: Any) -> Any:
    """
    function_purpose: One-shot authenticated request using settings from the environment.

    Entry point for tool handlers: accepts the same keyword options as
    ApiClient.request (method, json, params, headers).
    """
    with ApiClient(Settings.from_env()) as client:
        return client.request(endpoint, **options)

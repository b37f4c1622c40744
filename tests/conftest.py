from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from vibekit_mcp.auth import CredentialStore, TokenData, UserInfo, format_timestamp
from vibekit_mcp.config import Settings


BASE_URL = "https://api.example.test"
NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

Handler = Callable[[httpx.Request], httpx.Response]


class ScriptedServer:
    """
    Minimal fake of the remote service for httpx.MockTransport.

    Each path maps to a queue of responses (or callables producing one). The last
    entry of a queue is reused once the queue is drained. Every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response | Handler]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self, method: str, path: str, *responses: httpx.Response | Handler
    ) -> ScriptedServer:
        self.routes.setdefault((method.upper(), path), []).extend(responses)
        return self

    def calls(self, path: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path == path and (method is None or r.method == method.upper())
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "no route"})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, httpx.Response):
            # fresh copy so a reused entry is never bound to two requests
            return httpx.Response(
                entry.status_code, headers=entry.headers, content=entry.content
            )
        return entry(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8")) if request.content else None


def make_record(
    expires_in: float = 3600,
    access_token: str = "A1",
    refresh_token: str = "R1",
    now: datetime = NOW,
) -> TokenData:
    return TokenData(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=format_timestamp(now + timedelta(seconds=expires_in)),
        user=UserInfo(id="u-1", email="ada@example.test", name="Ada"),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        base_url=BASE_URL,
        config_dir=tmp_path / "vibekit",
        log_file=tmp_path / "logs" / "test.log",
    )


@pytest.fixture
def store(settings: Settings) -> CredentialStore:
    return CredentialStore.from_settings(settings)


@pytest.fixture
def server() -> ScriptedServer:
    return ScriptedServer()


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW

"""Shared fixtures for repository tests.

Requests go through a real ``httpx.AsyncClient`` backed by
``httpx.MockTransport`` so URL, query and header construction are exercised.
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"
BASE_URL = "https://project.supabase.test"
ANON_KEY = "anon-test-key"


class RecordingBackend:
    """Serves canned responses and records every request it receives."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._responses: list[httpx.Response | Callable[[httpx.Request], httpx.Response]] = []

    def respond(
        self,
        status: int = 200,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if json is None:
            self._responses.append(httpx.Response(status, headers=headers))
        else:
            self._responses.append(httpx.Response(status, json=json, headers=headers))

    def fail_with(self, exc: Exception) -> None:
        def raise_it(request: httpx.Request) -> httpx.Response:
            raise exc

        self._responses.append(raise_it)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            return httpx.Response(500, json={"message": "no canned response"})
        response = self._responses.pop(0)
        if callable(response):
            return response(request)
        return response

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def http_client(backend: RecordingBackend) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(backend))


@pytest.fixture
def repo_kwargs(http_client: httpx.AsyncClient) -> dict:
    return {
        "base_url": BASE_URL,
        "anon_key": ANON_KEY,
        "access_token": "user-jwt",
        "http_client": http_client,
    }

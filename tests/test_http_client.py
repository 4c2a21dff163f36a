from __future__ import annotations

import unittest
from typing import Any
from unittest.mock import patch

import aiohttp

import config
from utils.http_client import ResilientHttpClient


class _FakeResponse:
    def __init__(self, status: int, payload: Any = None, headers: dict[str, str] | None = None) -> None:
        self.status = status
        self._payload = payload
        self.headers = headers or {}

    async def json(self, content_type: str | None = None) -> Any:  # noqa: ARG002
        return self._payload

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0
        self.closed = False

    def get(self, url: str, params: Any = None, headers: Any = None) -> _FakeResponse:  # noqa: ARG002
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


class ResilientHttpClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, session: _FakeSession) -> ResilientHttpClient:
        client = ResilientHttpClient(timeout_seconds=5, source_limits={"dex_price": 2})
        client._session = session  # type: ignore[assignment]
        return client

    def _fast_retry_cfg(self):
        return patch.multiple(
            config,
            HTTP_BACKOFF_BASE_SECONDS=0.01,
            HTTP_BACKOFF_MAX_SECONDS=0.01,
            HTTP_JITTER_SECONDS=0.0,
            HTTP_429_COOLDOWN_SECONDS=0.0,
        )

    async def test_retries_server_errors_then_succeeds(self) -> None:
        session = _FakeSession([_FakeResponse(503), aiohttp.ClientError("reset"), _FakeResponse(200, {"pairs": []})])
        client = self._client(session)
        with self._fast_retry_cfg():
            result = await client.get_json("https://api.test/x", source="dex_discovery", max_attempts=3)
        self.assertTrue(result.ok)
        self.assertEqual(result.data, {"pairs": []})
        self.assertEqual(session.calls, 3)
        stats = client.snapshot_stats()["dex_discovery"]
        self.assertEqual(stats["ok"], 1)
        self.assertEqual(stats["retries"], 2)

    async def test_client_errors_are_not_retried(self) -> None:
        session = _FakeSession([_FakeResponse(404), _FakeResponse(200, {})])
        client = self._client(session)
        with self._fast_retry_cfg():
            result = await client.get_json("https://api.test/x", max_attempts=3)
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 404)
        self.assertEqual(session.calls, 1)

    async def test_single_attempt_returns_failure_without_retry(self) -> None:
        session = _FakeSession([_FakeResponse(429), _FakeResponse(200, {})])
        client = self._client(session)
        with self._fast_retry_cfg():
            result = await client.get_json("https://api.test/x", source="dex_price", max_attempts=1)
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 429)
        self.assertEqual(session.calls, 1)
        self.assertEqual(client.snapshot_stats()["dex_price"]["rate_limited"], 1)

    async def test_rate_limit_sets_cooldown_from_retry_after(self) -> None:
        session = _FakeSession([_FakeResponse(429, headers={"Retry-After": "12"})])
        client = self._client(session)
        with self._fast_retry_cfg():
            await client.get_json("https://api.test/x", source="dex_price", max_attempts=1)
        self.assertIn("dex_price", client._cooldown_until)

    async def test_close_closes_session(self) -> None:
        session = _FakeSession([])
        client = self._client(session)
        await client.close()
        self.assertTrue(session.closed)


if __name__ == "__main__":
    unittest.main()

"""Shared aiohttp client with retry/backoff, 429 cooldowns and per-source limits."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_count: int = 0

    def observe(self, started: float) -> None:
        self.latency_total_ms += max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_count += 1


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = {self._source_key(k): int(v) for k, v in (source_limits or {}).items()}
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
            sem = asyncio.Semaphore(max(1, self._source_limits.get(key, default_limit)))
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        return self._stats.setdefault(key, HttpSourceStats())

    async def _wait_cooldown(self, key: str) -> None:
        wait_for = self._cooldown_until.get(key, 0.0) - time.monotonic()
        if wait_for > 0:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", key, wait_for)
            await asyncio.sleep(wait_for)

    def _apply_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        retry_after = 0.0
        raw = (response.headers or {}).get("Retry-After", "")
        if raw:
            try:
                retry_after = max(0.0, float(raw))
            except ValueError:
                retry_after = 0.0
        cooldown = max(float(getattr(config, "HTTP_429_COOLDOWN_SECONDS", 30.0) or 0.0), retry_after)
        if cooldown > 0:
            until = time.monotonic() + cooldown
            self._cooldown_until[key] = max(self._cooldown_until.get(key, 0.0), until)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for key, row in self._stats.items():
            total = row.ok + row.fail
            out[key] = {
                "ok": row.ok,
                "fail": row.fail,
                "total": total,
                "rate_limited": row.rate_limited,
                "retries": row.retries,
                "error_percent": round(row.fail / total * 100.0, 2) if total else 0.0,
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
            }
        if reset:
            self._stats = {}
        return out

    @staticmethod
    def _compute_delay(attempt: int) -> float:
        base = float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5)
        cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
        jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.0))
        return min(cap, base * (2 ** max(0, attempt - 1))) + random.uniform(0.0, jitter)

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3))
        key = self._source_key(source)
        sem = self._get_semaphore(key)
        stats = self._stats_row(key)
        result = HttpResult(ok=False, status=0, data=None, error="http_exhausted")
        for attempt in range(1, attempts + 1):
            await self._wait_cooldown(key)
            async with sem:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.get(url, params=params, headers=self._headers) as response:
                        stats.observe(started)
                        status = int(response.status or 0)
                        if status == 200:
                            payload = await response.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)
                        if status == 429:
                            stats.rate_limited += 1
                            self._apply_cooldown(key, response)
                        result = HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                        if not (status == 429 or 500 <= status <= 599):
                            break
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    stats.observe(started)
                    result = HttpResult(ok=False, status=0, data=None, error=f"http_error:{exc}")
            if attempt >= attempts:
                break
            stats.retries += 1
            delay = self._compute_delay(attempt)
            logger.debug("HTTP_RETRY source=%s attempt=%s/%s delay=%.2fs url=%s", key, attempt, attempts, delay, url)
            await asyncio.sleep(delay)
        stats.fail += 1
        return result

"""DexScreener-backed market data source: candidate discovery and pair prices."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import config
from trading.models import Candidate
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class DexScreenerSource:
    def __init__(self) -> None:
        self._headers = {
            "User-Agent": (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                "AppleWebKit/537.36 (KHTML, like Gecko) "
                "Chrome/122.0.0.0 Safari/537.36"
            ),
            "Accept": "application/json, text/plain, */*",
        }
        self._http = ResilientHttpClient(
            timeout_seconds=float(config.DEX_TIMEOUT),
            headers=self._headers,
            source_limits={
                "dex_discovery": 4,
                "dex_price": 8,
            },
        )

    async def close(self) -> None:
        await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats(reset=reset)

    async def _fetch_json(self, url: str, source: str, retries: int | None = None) -> Any | None:
        result = await self._http.get_json(
            url,
            source=source,
            max_attempts=(retries if retries is not None else int(config.DEX_RETRIES)),
        )
        if result.ok:
            return result.data
        if result.status == 429:
            logger.warning("RATE_LIMIT source=%s status=429 url=%s", source, url)
        else:
            logger.debug("DEX fetch failed source=%s url=%s error=%s", source, url, result.error)
        return None

    async def discover(self) -> list[Candidate]:
        """Latest chain candidates, newest first, deduplicated by token address.

        Any failure yields an empty list: no candidates this tick.
        """
        try:
            addresses = await self._collect_addresses()
            if not addresses:
                return []
            batch = ",".join(addresses[: int(config.DEX_TOKENS_BATCH_MAX)])
            data = await self._fetch_json(f"{config.DEXSCREENER_API}/tokens/{batch}", source="dex_discovery")
            if not isinstance(data, dict):
                return []
            return self._candidates_from_pairs(data.get("pairs") or [])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("DexScreener discovery failed")
            return []

    async def _collect_addresses(self) -> list[str]:
        profiles, boosts = await asyncio.gather(
            self._fetch_feed_addresses(str(config.DEX_PROFILES_URL)),
            self._fetch_feed_addresses(str(config.DEX_BOOSTS_URL)),
        )
        ordered: dict[str, None] = {}
        for address in [*profiles, *boosts]:
            ordered.setdefault(address, None)
        if len(ordered) < int(config.DEX_SEARCH_FALLBACK_MIN_ADDRESSES):
            for address in await self._search_addresses():
                ordered.setdefault(address, None)
        return list(ordered)

    async def _fetch_feed_addresses(self, url: str) -> list[str]:
        data = await self._fetch_json(url, source="dex_discovery", retries=1)
        if not isinstance(data, list):
            return []
        out: list[str] = []
        for row in data:
            if not isinstance(row, dict):
                continue
            if str(row.get("chainId", "")).lower() != config.CHAIN_ID:
                continue
            address = normalize_address(row.get("tokenAddress"))
            if address:
                out.append(address)
        return out

    async def _search_addresses(self) -> list[str]:
        data = await self._fetch_json(
            f"{config.DEXSCREENER_API}/search?q={config.DEX_SEARCH_QUERY}",
            source="dex_discovery",
            retries=1,
        )
        if not isinstance(data, dict):
            return []
        out: list[str] = []
        for pair in (data.get("pairs") or [])[: int(config.DEX_SEARCH_FALLBACK_MAX_PAIRS)]:
            if str(pair.get("chainId", "")).lower() != config.CHAIN_ID:
                continue
            address = normalize_address((pair.get("baseToken") or {}).get("address"))
            if address:
                out.append(address)
        return out

    def _candidates_from_pairs(self, pairs: list[dict[str, Any]], now: datetime | None = None) -> list[Candidate]:
        now = now or datetime.now(timezone.utc)
        rows: list[Candidate] = []
        for pair in pairs:
            if not isinstance(pair, dict) or str(pair.get("chainId", "")).lower() != config.CHAIN_ID:
                continue
            candidate = self._format_candidate(pair, now)
            if candidate is not None:
                rows.append(candidate)
        rows.sort(key=lambda c: c.age_minutes)
        seen: set[str] = set()
        unique: list[Candidate] = []
        for candidate in rows:
            if candidate.token_address in seen:
                continue
            seen.add(candidate.token_address)
            unique.append(candidate)
        return unique

    @staticmethod
    def _format_candidate(pair: dict[str, Any], now: datetime) -> Candidate | None:
        base = pair.get("baseToken") or {}
        pair_address = normalize_address(pair.get("pairAddress"))
        token_address = normalize_address(base.get("address"))
        if not pair_address or not token_address:
            return None
        created_ms = pair.get("pairCreatedAt")
        # Unknown creation time is treated as brand new.
        age_minutes = 0.0
        if created_ms:
            age_minutes = max(0.0, float((now.timestamp() * 1000 - float(created_ms)) // 60000))
        info = pair.get("info") or {}
        socials = {str(s.get("type", "")).lower() for s in (info.get("socials") or []) if isinstance(s, dict)}
        try:
            price_usd = float(pair.get("priceUsd") or 0)
        except (TypeError, ValueError):
            price_usd = 0.0
        return Candidate(
            address=pair_address,
            token_address=token_address,
            ticker=f"${base.get('symbol', 'N/A')}",
            name=str(base.get("name", "Unknown")),
            liquidity_usd=float((pair.get("liquidity") or {}).get("usd") or 0),
            market_cap_usd=float(pair.get("marketCap") or pair.get("fdv") or 0),
            age_minutes=age_minutes,
            has_twitter="twitter" in socials,
            has_telegram="telegram" in socials,
            price_usd=price_usd,
            image_url=str(info.get("imageUrl") or config.PLACEHOLDER_IMAGE_URL),
            url=str(pair.get("url") or ""),
            price_change_5m=float((pair.get("priceChange") or {}).get("m5") or 0),
        )

    async def price_of(self, address: str) -> float | None:
        """Current USD price of a pair, or None when unavailable. Single attempt."""
        address = normalize_address(address)
        if not address:
            return None
        data = await self._fetch_json(
            f"{config.DEXSCREENER_API}/pairs/{config.CHAIN_ID}/{address}",
            source="dex_price",
            retries=1,
        )
        if not isinstance(data, dict):
            return None
        pairs = data.get("pairs") or []
        if not pairs or not isinstance(pairs[0], dict):
            return None
        try:
            price = float(pairs[0].get("priceUsd") or 0)
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None

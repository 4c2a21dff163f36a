from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

import config
from monitor.dexscreener import DexScreenerSource

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
NOW_MS = NOW.timestamp() * 1000


def _pair(pair_address: str, token_address: str, *, minutes_old: float, chain: str = "solana", **extra) -> dict:
    row = {
        "chainId": chain,
        "pairAddress": pair_address,
        "url": f"https://dexscreener.com/{chain}/{pair_address}",
        "baseToken": {"address": token_address, "name": f"Token {token_address}", "symbol": token_address[:4]},
        "priceUsd": "0.00042",
        "liquidity": {"usd": 12_500.0},
        "fdv": 80_000.0,
        "pairCreatedAt": NOW_MS - minutes_old * 60_000,
        "priceChange": {"m5": 12.5},
        "info": {
            "imageUrl": f"https://dd.dexscreener.com/{token_address}.png",
            "socials": [{"type": "twitter", "url": "https://x.com/t"}],
        },
    }
    row.update(extra)
    return row


class DexScreenerSourceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.source = DexScreenerSource()

    async def asyncTearDown(self) -> None:
        await self.source.close()

    def test_pairs_are_formatted_sorted_and_deduplicated(self) -> None:
        pairs = [
            _pair("PairOld", "MintA", minutes_old=30.5),
            _pair("PairNew", "MintA", minutes_old=2.2),
            _pair("PairB", "MintB", minutes_old=10.0, marketCap=55_000.0),
            _pair("PairEth", "MintC", minutes_old=1.0, chain="ethereum"),
        ]
        with patch.object(config, "CHAIN_ID", "solana"):
            rows = self.source._candidates_from_pairs(pairs, now=NOW)

        self.assertEqual([c.address for c in rows], ["PairNew", "PairB"])
        first = rows[0]
        self.assertEqual(first.ticker, "$Mint")
        self.assertEqual(first.age_minutes, 2.0)
        self.assertEqual(first.market_cap_usd, 80_000.0)
        self.assertEqual(rows[1].market_cap_usd, 55_000.0)
        self.assertTrue(first.has_twitter)
        self.assertFalse(first.has_telegram)
        self.assertAlmostEqual(first.price_usd, 0.00042)
        self.assertEqual(first.price_change_5m, 12.5)

    def test_missing_image_and_creation_time_use_fallbacks(self) -> None:
        pair = _pair("PairX", "MintX", minutes_old=0.0, info={})
        pair.pop("pairCreatedAt")
        with patch.object(config, "CHAIN_ID", "solana"), patch.object(
            config, "PLACEHOLDER_IMAGE_URL", "https://via.placeholder.com/48"
        ):
            rows = self.source._candidates_from_pairs([pair], now=NOW)
        self.assertEqual(rows[0].age_minutes, 0.0)
        self.assertEqual(rows[0].image_url, "https://via.placeholder.com/48")

    async def test_discover_batches_feed_addresses_into_tokens_call(self) -> None:
        calls: list[str] = []

        async def fake_fetch_json(url: str, source: str, retries: int | None = None):  # noqa: ARG001
            calls.append(url)
            if url == "https://feeds.test/profiles":
                return [
                    {"chainId": "solana", "tokenAddress": "MintA"},
                    {"chainId": "base", "tokenAddress": "0xdead"},
                ]
            if url == "https://feeds.test/boosts":
                return [{"chainId": "solana", "tokenAddress": "MintB"}, {"chainId": "solana", "tokenAddress": "MintA"}]
            if url.startswith("https://api.test/tokens/"):
                return {"pairs": [_pair("PairA", "MintA", minutes_old=1.0), _pair("PairB", "MintB", minutes_old=3.0)]}
            return None

        self.source._fetch_json = fake_fetch_json  # type: ignore[assignment]
        with patch.object(config, "CHAIN_ID", "solana"), patch.object(
            config, "DEX_PROFILES_URL", "https://feeds.test/profiles"
        ), patch.object(config, "DEX_BOOSTS_URL", "https://feeds.test/boosts"), patch.object(
            config, "DEXSCREENER_API", "https://api.test"
        ), patch.object(
            config, "DEX_SEARCH_FALLBACK_MIN_ADDRESSES", 0
        ):
            rows = await self.source.discover()

        self.assertEqual([c.address for c in rows], ["PairA", "PairB"])
        self.assertIn("https://api.test/tokens/MintA,MintB", calls)
        self.assertFalse(any("/search" in url for url in calls))

    async def test_discover_falls_back_to_search_when_feeds_are_thin(self) -> None:
        calls: list[str] = []

        async def fake_fetch_json(url: str, source: str, retries: int | None = None):  # noqa: ARG001
            calls.append(url)
            if "/search" in url:
                return {"pairs": [{"chainId": "solana", "baseToken": {"address": "MintS"}}]}
            if url.startswith("https://api.test/tokens/"):
                return {"pairs": [_pair("PairS", "MintS", minutes_old=4.0)]}
            return []

        self.source._fetch_json = fake_fetch_json  # type: ignore[assignment]
        with patch.object(config, "CHAIN_ID", "solana"), patch.object(
            config, "DEXSCREENER_API", "https://api.test"
        ), patch.object(config, "DEX_SEARCH_FALLBACK_MIN_ADDRESSES", 5):
            rows = await self.source.discover()

        self.assertEqual([c.address for c in rows], ["PairS"])
        self.assertIn("https://api.test/tokens/MintS", calls)

    async def test_discover_returns_empty_list_when_upstream_fails(self) -> None:
        async def failing_fetch_json(url: str, source: str, retries: int | None = None):  # noqa: ARG001
            raise RuntimeError("boom")

        self.source._fetch_json = failing_fetch_json  # type: ignore[assignment]
        self.assertEqual(await self.source.discover(), [])

    async def test_price_of_reads_first_pair_with_single_attempt(self) -> None:
        seen: list[tuple[str, int | None]] = []

        async def fake_fetch_json(url: str, source: str, retries: int | None = None):
            seen.append((source, retries))
            return {"pairs": [{"priceUsd": "0.0031"}]}

        self.source._fetch_json = fake_fetch_json  # type: ignore[assignment]
        self.assertAlmostEqual(await self.source.price_of("PairA"), 0.0031)
        self.assertEqual(seen, [("dex_price", 1)])

    async def test_price_of_returns_none_for_missing_or_zero_price(self) -> None:
        responses = [None, {"pairs": []}, {"pairs": [{"priceUsd": "0"}]}]

        async def fake_fetch_json(url: str, source: str, retries: int | None = None):  # noqa: ARG001
            return responses.pop(0)

        self.source._fetch_json = fake_fetch_json  # type: ignore[assignment]
        for _ in range(3):
            self.assertIsNone(await self.source.price_of("PairA"))
        self.assertIsNone(await self.source.price_of(""))

    async def test_runtime_stats_count_requests_per_source(self) -> None:
        class _Response:
            status = 200
            headers: dict = {}

            async def json(self, content_type=None):  # noqa: ARG002
                return {"pairs": [{"priceUsd": "0.5"}]}

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return None

        class _Session:
            closed = False

            def get(self, url, params=None, headers=None):  # noqa: ARG002
                return _Response()

            async def close(self) -> None:
                self.closed = True

        self.source._http._session = _Session()  # type: ignore[assignment]
        self.assertEqual(self.source.runtime_stats(), {})
        self.assertAlmostEqual(await self.source.price_of("PairA"), 0.5)
        stats = self.source.runtime_stats(reset=True)
        self.assertEqual(stats["dex_price"]["ok"], 1)
        self.assertEqual(stats["dex_price"]["total"], 1)
        self.assertEqual(self.source.runtime_stats(), {})


if __name__ == "__main__":
    unittest.main()

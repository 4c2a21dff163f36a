"""Append-only record of realized exits."""

from __future__ import annotations

from typing import Iterable

from trading.models import TradeRecord
from utils.addressing import normalize_address


class TradeHistory:
    def __init__(self, records: Iterable[TradeRecord] = ()) -> None:
        self._records: list[TradeRecord] = sorted(records, key=lambda r: r.closed_at, reverse=True)
        self._traded: set[str] = set()
        self._traded_tokens: set[str] = set()
        for record in self._records:
            self._remember(record)

    def __len__(self) -> int:
        return len(self._records)

    def _remember(self, record: TradeRecord) -> None:
        self._traded.add(normalize_address(record.address))
        token = normalize_address(record.token_address)
        if token:
            self._traded_tokens.add(token)

    def append(self, record: TradeRecord) -> None:
        # Newest first for reporting.
        self._records.insert(0, record)
        self._remember(record)

    def has_traded(self, address: str, token_address: str = "") -> bool:
        """True when the pair, or any pair of the same token, was traded before."""
        if normalize_address(address) in self._traded:
            return True
        token = normalize_address(token_address)
        return bool(token) and token in self._traded_tokens

    def records(self) -> tuple[TradeRecord, ...]:
        return tuple(self._records)

    def clear(self) -> None:
        self._records.clear()
        self._traded.clear()
        self._traded_tokens.clear()

    def summary(self) -> dict[str, float]:
        total = len(self._records)
        wins = sum(1 for r in self._records if r.pnl_usd > 0)
        return {
            "trades": total,
            "wins": wins,
            "win_rate_percent": round(wins / total * 100, 2) if total else 0.0,
            "realized_pnl_usd": round(sum(r.pnl_usd for r in self._records), 2),
        }

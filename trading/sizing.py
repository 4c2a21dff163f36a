"""Bet sizing from account equity."""

from __future__ import annotations

from typing import Iterable

from trading.models import Position
from trading.strategy import Strategy


def equity_usd(free_cash_usd: float, positions: Iterable[Position]) -> float:
    return free_cash_usd + sum(p.token_amount * p.current_price_usd for p in positions)


def size_for(equity: float, strategy: Strategy) -> float:
    # Raw amount; affordability is checked by the ledger.
    return equity * strategy.position_sizing.bet_percent / 100.0

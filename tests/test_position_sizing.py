from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import datetime, timezone

import config
from trading.history import TradeHistory
from trading.ledger import (
    REJECT_ALREADY_OPEN,
    REJECT_ALREADY_TRADED,
    REJECT_BAD_PRICE,
    REJECT_DUST,
    REJECT_MAX_OPEN,
    REJECT_NO_CASH,
    entry_rejection,
)
from trading.models import EXIT_STOP_LOSS, Candidate, Position, TradeRecord
from trading.sizing import equity_usd, size_for
from trading.strategy import Strategy

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


def _position(address: str, tokens: float, price: float) -> Position:
    return Position(
        id=f"pos-{address}",
        address=address,
        token_address=f"mint-{address}",
        symbol=f"${address}",
        url="",
        entry_price_usd=price,
        current_price_usd=price,
        token_amount=tokens,
        initial_token_amount=tokens,
        cost_usd=tokens * price,
        opened_at=NOW,
        peak_price_usd=price,
    )


def _candidate(address: str = "PairNEW", price: float = 0.5) -> Candidate:
    return Candidate(
        address=address,
        token_address=f"mint-{address}",
        ticker="$NEW",
        name="New",
        liquidity_usd=10_000.0,
        market_cap_usd=50_000.0,
        age_minutes=3.0,
        has_twitter=True,
        has_telegram=True,
        price_usd=price,
        image_url="https://cdn.example/new.png",
    )


def _strategy(bet_percent: float = 10.0, max_open: int = 5) -> Strategy:
    base = Strategy()
    return replace(
        base,
        position_sizing=replace(base.position_sizing, bet_percent=bet_percent, max_open_positions=max_open),
    )


class PositionSizerTests(unittest.TestCase):
    def test_equity_is_cash_plus_marked_positions(self) -> None:
        positions = [_position("A", 100.0, 0.2), _position("B", 10.0, 3.0)]
        self.assertAlmostEqual(equity_usd(50.0, positions), 50.0 + 20.0 + 30.0)

    def test_bet_depends_only_on_total_equity(self) -> None:
        strategy = _strategy(bet_percent=2.0)
        all_cash = equity_usd(100.0, [])
        mixed = equity_usd(40.0, [_position("A", 60.0, 1.0)])
        self.assertAlmostEqual(size_for(all_cash, strategy), 2.0)
        self.assertAlmostEqual(size_for(mixed, strategy), size_for(all_cash, strategy))

    def test_size_is_not_capped_by_cash(self) -> None:
        self.assertAlmostEqual(size_for(1000.0, _strategy(bet_percent=100.0)), 1000.0)


class EntryGuardTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(MIN_BET_USD=1.0)
        self.history = TradeHistory()

    def _reason(self, candidate: Candidate, *, cash: float = 100.0, positions=(), bet: float = 10.0, strategy=None) -> str:
        return entry_rejection(
            candidate,
            strategy or _strategy(),
            history=self.history,
            free_cash_usd=cash,
            open_positions=list(positions),
            bet_usd=bet,
        )

    def test_accepts_affordable_new_instrument(self) -> None:
        self.assertEqual(self._reason(_candidate()), "")

    def test_rejects_instrument_already_open(self) -> None:
        self.assertEqual(self._reason(_candidate("PairA"), positions=[_position("PairA", 1.0, 1.0)]), REJECT_ALREADY_OPEN)

    def test_rejects_instrument_with_closed_trade(self) -> None:
        self.history.append(
            TradeRecord(
                id="t1",
                position_id="pos-old",
                address="PairOLD",
                ticker="$OLD",
                url="",
                entry_price_usd=1.0,
                exit_price_usd=0.8,
                sell_value_usd=8.0,
                sell_percent=100.0,
                pnl_usd=-2.0,
                pnl_percent=-20.0,
                reason=EXIT_STOP_LOSS,
                closed_at=NOW,
            )
        )
        self.assertEqual(self._reason(_candidate("PairOLD")), REJECT_ALREADY_TRADED)

    def test_rejects_at_max_open_positions(self) -> None:
        positions = [_position("A", 1.0, 1.0), _position("B", 1.0, 1.0)]
        self.assertEqual(self._reason(_candidate(), positions=positions, strategy=_strategy(max_open=2)), REJECT_MAX_OPEN)

    def test_rejects_dust_bet(self) -> None:
        self.assertEqual(self._reason(_candidate(), bet=0.99), REJECT_DUST)
        self.assertEqual(self._reason(_candidate(), bet=1.0), "")

    def test_rejects_bet_above_free_cash(self) -> None:
        self.assertEqual(self._reason(_candidate(), cash=9.99, bet=10.0), REJECT_NO_CASH)
        self.assertEqual(self._reason(_candidate(), cash=10.0, bet=10.0), "")

    def test_rejects_non_positive_entry_price(self) -> None:
        self.assertEqual(self._reason(_candidate(price=0.0)), REJECT_BAD_PRICE)


if __name__ == "__main__":
    unittest.main()

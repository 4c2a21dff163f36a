"""Per-tick exit rules for one open position.

The evaluator is pure: it reads a position snapshot and proposes
`ExitEvent`s in the order they must be applied. The ledger owns the
position and performs the actual sales.

Order within a tick:

1. take-profit ladder, in configured order, each step against the
   balance left by the previous one;
2. hard stop-loss on whatever remains;
3. time stop, for positions that never reached a ladder step;
4. moonbag trailing stop, once every ladder step has fired.

The first full-exit rule that fires ends the evaluation.
"""

from __future__ import annotations

from datetime import datetime

from trading.models import (
    EXIT_STOP_LOSS,
    EXIT_TAKE_PROFIT,
    EXIT_TIME_STOP,
    EXIT_TRAILING,
    ExitEvent,
    Position,
    pnl_percent,
    utc_now,
)
from trading.strategy import Strategy


def _full_exit(reason: str, price_usd: float) -> ExitEvent:
    return ExitEvent(reason=reason, sell_fraction=1.0, sell_percent=100.0, price_usd=price_usd, closes=True)


def hard_stop_hit(pnl: float, strategy: Strategy) -> bool:
    stop = float(strategy.stop_loss.hard_stop_percent)
    # 0 disables the hard stop instead of firing on any non-positive move.
    return stop > 0 and pnl <= -stop


def time_stop_hit(position: Position, fired_steps: set[str], strategy: Strategy, now: datetime) -> bool:
    minutes = float(strategy.stop_loss.time_stop_minutes)
    if minutes <= 0 or fired_steps:
        return False
    return position.age_minutes(now) >= minutes


def trailing_stop_hit(peak_price_usd: float, price_usd: float, fired_steps: set[str], strategy: Strategy) -> bool:
    trail = float(strategy.take_profit.moonbag_trailing_stop_percent)
    if trail <= 0 or peak_price_usd <= 0:
        return False
    if any(step.step_id not in fired_steps for step in strategy.take_profit.scale_out):
        return False
    return price_usd <= peak_price_usd * (1 - trail / 100.0)


def evaluate_exits(
    position: Position,
    price_usd: float,
    strategy: Strategy,
    now: datetime | None = None,
) -> list[ExitEvent]:
    if not position.is_open or price_usd <= 0:
        return []
    now = now or utc_now()
    pnl = pnl_percent(price_usd, position.entry_price_usd)
    events: list[ExitEvent] = []
    fired = set(position.triggered_steps)
    remaining = float(position.token_amount)

    for step in strategy.take_profit.scale_out:
        if step.step_id in fired or pnl < step.profit_percent:
            continue
        fraction = step.sell_fraction
        remaining -= remaining * fraction
        fired.add(step.step_id)
        closes = remaining <= 0
        events.append(
            ExitEvent(
                reason=EXIT_TAKE_PROFIT,
                sell_fraction=fraction,
                sell_percent=step.sell_percent,
                price_usd=price_usd,
                closes=closes,
                step_id=step.step_id,
            )
        )
        if closes:
            return events

    if hard_stop_hit(pnl, strategy):
        events.append(_full_exit(EXIT_STOP_LOSS, price_usd))
    elif time_stop_hit(position, fired, strategy, now):
        events.append(_full_exit(EXIT_TIME_STOP, price_usd))
    elif trailing_stop_hit(max(position.peak_price_usd, price_usd), price_usd, fired, strategy):
        events.append(_full_exit(EXIT_TRAILING, price_usd))
    return events

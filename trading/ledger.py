"""Open positions and free cash, with entry guards and exit accounting."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

import config
from trading.history import TradeHistory
from trading.models import (
    EXIT_MANUAL,
    EXIT_TAKE_PROFIT,
    STATUS_CLOSED,
    STATUS_OPEN,
    Candidate,
    ExitEvent,
    Position,
    TradeRecord,
    new_id,
    pnl_percent,
    utc_now,
)
from trading.sizing import equity_usd, size_for
from trading.strategy import Strategy
from utils.addressing import normalize_address, same_address

logger = logging.getLogger(__name__)

REJECT_ALREADY_OPEN = "already_open"
REJECT_ALREADY_TRADED = "already_traded"
REJECT_MAX_OPEN = "max_open_positions"
REJECT_DUST = "bet_below_dust"
REJECT_NO_CASH = "insufficient_cash"
REJECT_BAD_PRICE = "bad_entry_price"
# Repeat every scan for the same instruments.
QUIET_REJECTIONS = frozenset({REJECT_ALREADY_OPEN, REJECT_ALREADY_TRADED})


class LedgerInvariantError(RuntimeError):
    """Raised on a programming-contract violation inside the ledger."""


class PositionNotFoundError(LookupError):
    """Raised when an operation names an unknown or already-closed position."""

    def __init__(self, position_id: str) -> None:
        super().__init__(f"position not found: {position_id}")
        self.position_id = position_id


def entry_rejection(
    candidate: Candidate,
    strategy: Strategy,
    *,
    history: TradeHistory,
    free_cash_usd: float,
    open_positions: Iterable[Position],
    bet_usd: float,
) -> str:
    """Return why `candidate` must not be opened, or "" when it may be."""
    positions = list(open_positions)
    address = normalize_address(candidate.address)
    token = normalize_address(candidate.token_address)
    # A token can list several pools; one position per token.
    if any(same_address(p.address, address) or same_address(p.token_address, token) for p in positions):
        return REJECT_ALREADY_OPEN
    if history.has_traded(address, token):
        return REJECT_ALREADY_TRADED
    if len(positions) >= int(strategy.position_sizing.max_open_positions):
        return REJECT_MAX_OPEN
    if bet_usd < float(config.MIN_BET_USD):
        return REJECT_DUST
    if bet_usd > free_cash_usd:
        return REJECT_NO_CASH
    if candidate.price_usd <= 0:
        return REJECT_BAD_PRICE
    return ""


class PositionLedger:
    def __init__(self, initial_balance_usd: float, history: TradeHistory | None = None) -> None:
        self.initial_balance_usd = float(initial_balance_usd)
        self.free_cash_usd = float(initial_balance_usd)
        self.history = history if history is not None else TradeHistory()
        self.open_positions: dict[str, Position] = {}
        self.last_rejection = ""

    def positions(self) -> list[Position]:
        return list(self.open_positions.values())

    def equity_usd(self) -> float:
        return equity_usd(self.free_cash_usd, self.open_positions.values())

    def get(self, position_id: str) -> Position | None:
        return self.open_positions.get(position_id)

    def try_open(self, candidate: Candidate, strategy: Strategy, now: datetime | None = None) -> Position | None:
        bet_usd = size_for(self.equity_usd(), strategy)
        reason = entry_rejection(
            candidate,
            strategy,
            history=self.history,
            free_cash_usd=self.free_cash_usd,
            open_positions=self.open_positions.values(),
            bet_usd=bet_usd,
        )
        self.last_rejection = reason
        if reason:
            logger.log(
                logging.DEBUG if reason in QUIET_REJECTIONS else logging.INFO,
                "AutoTrade skip token=%s reason=%s bet=$%.2f cash=$%.2f open=%s",
                candidate.ticker,
                reason,
                bet_usd,
                self.free_cash_usd,
                len(self.open_positions),
            )
            return None
        return self._open(candidate, bet_usd, now or utc_now())

    def _open(self, candidate: Candidate, bet_usd: float, now: datetime) -> Position:
        entry_price = float(candidate.price_usd)
        if entry_price <= 0:
            raise LedgerInvariantError(f"cannot open {candidate.address} at non-positive price {entry_price}")
        if bet_usd > self.free_cash_usd:
            raise LedgerInvariantError(f"bet ${bet_usd:.2f} exceeds free cash ${self.free_cash_usd:.2f}")
        tokens = bet_usd / entry_price
        position = Position(
            id=new_id(),
            address=normalize_address(candidate.address),
            token_address=normalize_address(candidate.token_address),
            symbol=candidate.ticker,
            url=candidate.url,
            entry_price_usd=entry_price,
            current_price_usd=entry_price,
            token_amount=tokens,
            initial_token_amount=tokens,
            cost_usd=bet_usd,
            opened_at=now,
            peak_price_usd=entry_price,
            price_updated_at=now,
        )
        self.free_cash_usd -= bet_usd
        self.open_positions[position.id] = position
        logger.info(
            "AUTO_BUY Paper BUY token=%s address=%s entry=$%.10f size=$%.2f tokens=%.4f cash=$%.2f",
            position.symbol,
            position.address,
            entry_price,
            bet_usd,
            tokens,
            self.free_cash_usd,
        )
        return position

    def mark_price(self, position_id: str, price_usd: float, now: datetime | None = None) -> Position | None:
        position = self.open_positions.get(position_id)
        if position is None or price_usd <= 0:
            return position
        position.current_price_usd = float(price_usd)
        position.peak_price_usd = max(position.peak_price_usd, float(price_usd))
        position.price_updated_at = now or utc_now()
        return position

    def apply_exits(
        self,
        position_id: str,
        events: Iterable[ExitEvent],
        now: datetime | None = None,
    ) -> list[TradeRecord]:
        """Apply proposed exit events in order; unknown ids are a no-op."""
        position = self.open_positions.get(position_id)
        if position is None:
            return []
        now = now or utc_now()
        records: list[TradeRecord] = []
        for event in events:
            if not position.is_open:
                break
            tokens = position.token_amount if event.closes else position.token_amount * event.sell_fraction
            if event.step_id:
                position.triggered_steps.add(event.step_id)
            if tokens <= 0:
                continue
            records.append(self._realize(position, tokens, event.price_usd, event.sell_percent, event.reason, now))
            if event.closes or position.token_amount <= 0:
                self._close(position, event.reason, now)
        return records

    def panic_sell(self, position_id: str, now: datetime | None = None) -> TradeRecord:
        position = self.open_positions.get(position_id)
        if position is None or not position.is_open:
            raise PositionNotFoundError(position_id)
        now = now or utc_now()
        record = self._realize(position, position.token_amount, position.current_price_usd, 100.0, EXIT_MANUAL, now)
        self._close(position, EXIT_MANUAL, now)
        return record

    def _realize(
        self,
        position: Position,
        tokens: float,
        price_usd: float,
        sell_percent: float,
        reason: str,
        now: datetime,
    ) -> TradeRecord:
        tokens = min(tokens, position.token_amount)
        proceeds = tokens * price_usd
        cost_basis = tokens * position.entry_price_usd
        position.token_amount -= tokens
        if position.token_amount < 0:
            position.token_amount = 0.0
        self.free_cash_usd += proceeds
        record = TradeRecord(
            id=new_id(),
            position_id=position.id,
            address=position.address,
            ticker=position.symbol,
            url=position.url,
            entry_price_usd=position.entry_price_usd,
            exit_price_usd=price_usd,
            sell_value_usd=proceeds,
            sell_percent=float(sell_percent),
            pnl_usd=proceeds - cost_basis,
            pnl_percent=pnl_percent(price_usd, position.entry_price_usd),
            reason=reason,
            closed_at=now,
            token_address=position.token_address,
        )
        self.history.append(record)
        logger.info(
            "AUTO_SELL Paper SELL token=%s reason=%s chunk=%.0f%% exit=$%.10f value=$%.2f pnl=%.2f%% ($%.2f) left=%.4f cash=$%.2f",
            position.symbol,
            reason,
            sell_percent,
            price_usd,
            proceeds,
            record.pnl_percent,
            record.pnl_usd,
            position.token_amount,
            self.free_cash_usd,
        )
        return record

    def _close(self, position: Position, reason: str, now: datetime) -> None:
        if position.status != STATUS_OPEN:
            raise LedgerInvariantError(f"position {position.id} closed twice")
        position.status = STATUS_CLOSED
        position.close_reason = reason or EXIT_TAKE_PROFIT
        position.closed_at = now
        position.token_amount = 0.0
        self.open_positions.pop(position.id, None)

    def restore(self, free_cash_usd: float, positions: Iterable[Position]) -> None:
        self.free_cash_usd = float(free_cash_usd)
        self.open_positions = {p.id: p for p in positions if p.status == STATUS_OPEN and p.token_amount > 0}

    def reset(self, initial_balance_usd: float | None = None) -> None:
        if initial_balance_usd is not None:
            self.initial_balance_usd = float(initial_balance_usd)
        self.free_cash_usd = self.initial_balance_usd
        self.open_positions.clear()
        self.history.clear()
        self.last_rejection = ""

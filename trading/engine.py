"""Paper trading engine: scan and monitor loops over one shared ledger.

Concurrency model: fetches (candidate discovery, per-position prices) run
concurrently and outside the state lock; every mutation of cash, positions
and history happens inside `_state_lock` in a block with no awaits, so a
tick applies its whole batch atomically with respect to the other loop.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

import config
from trading.candidate_filter import filter_candidates
from trading.exit_rules import evaluate_exits
from trading.history import TradeHistory
from trading.ledger import (
    QUIET_REJECTIONS,
    REJECT_DUST,
    REJECT_MAX_OPEN,
    REJECT_NO_CASH,
    LedgerInvariantError,
    PositionLedger,
)
from trading.models import Candidate, Position, TradeRecord, utc_now
from trading.state_store import StateStore
from trading.strategy import (
    Strategy,
    coerce_strategy,
    default_strategy,
    export_strategy_file,
    load_strategy_file,
)
from utils.log_contracts import TradeDecisionLog

logger = logging.getLogger(__name__)

# Rejections that hold for every candidate in the tick, not just the current one.
_TICK_WIDE_REJECTIONS = {REJECT_MAX_OPEN, REJECT_DUST, REJECT_NO_CASH}


class TradingEngine:
    def __init__(
        self,
        source: Any,
        *,
        store: StateStore | None = None,
        strategy: Strategy | None = None,
        initial_balance_usd: float | None = None,
        decision_log: TradeDecisionLog | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.initial_balance_usd = float(
            config.INITIAL_BALANCE_USD if initial_balance_usd is None else initial_balance_usd
        )
        self.strategy: Strategy = strategy or default_strategy()
        self.history = TradeHistory()
        self.ledger = PositionLedger(self.initial_balance_usd, self.history)
        self.scanned: list[Candidate] = []
        self.running = False
        self.scan_cycles = 0
        self.monitor_cycles = 0
        self.failed_cycles = 0
        self.stale_price_hits = 0
        self.fatal_error: Exception | None = None
        self._state_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []
        if decision_log is None:
            decision_log = TradeDecisionLog(
                str(config.TRADE_DECISIONS_LOG_FILE),
                enabled=bool(config.TRADE_DECISIONS_LOG_ENABLED),
                run_tag=str(config.RUN_TAG),
            )
        self._decisions = decision_log
        if self.store is not None:
            self._load_state(keep_strategy=strategy is not None)

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Start both loops on the running event loop. No-op when already running."""
        if self.running:
            return
        self.running = True
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                self._run_loop("scan", float(config.SCAN_INTERVAL_SECONDS), self.scan_once),
                name="engine_scan_loop",
            ),
            asyncio.create_task(
                self._run_loop("monitor", float(config.MONITOR_INTERVAL_SECONDS), self.monitor_once),
                name="engine_monitor_loop",
            ),
        ]
        logger.info(
            "ENGINE_START strategy=%s cash=$%.2f open=%s scan=%ss monitor=%ss",
            self.strategy.strategy_name,
            self.ledger.free_cash_usd,
            len(self.ledger.open_positions),
            config.SCAN_INTERVAL_SECONDS,
            config.MONITOR_INTERVAL_SECONDS,
        )

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        # In-flight fetches are discarded; their apply step never runs.
        await asyncio.gather(*tasks, return_exceptions=True)
        self._persist()
        logger.info("ENGINE_STOP open=%s cash=$%.2f", len(self.ledger.open_positions), self.ledger.free_cash_usd)

    async def shutdown(self) -> None:
        await self.stop()
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()

    def request_stop(self) -> None:
        """Ask both loops to finish after their current tick."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        if self._stop_event is not None:
            await self._stop_event.wait()

    async def _run_loop(self, name: str, interval: float, tick: Any) -> None:
        stop_event = self._stop_event
        while stop_event is not None and not stop_event.is_set():
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except LedgerInvariantError as exc:
                # Ledger state can no longer be trusted: halt both loops.
                self.fatal_error = exc
                logger.critical("ENGINE %s loop halted on ledger invariant: %s", name, exc)
                stop_event.set()
                raise
            except Exception:
                self.failed_cycles += 1
                logger.exception("ENGINE %s tick failed", name)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    # -- ticks ---------------------------------------------------------------

    async def scan_once(self) -> Position | None:
        """Discover, filter and open at most one position."""
        strategy = self.strategy
        self.scan_cycles += 1
        try:
            candidates = list(await self.source.discover())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("ENGINE scan discovery unavailable: %s", exc)
            candidates = []
        self.scanned = candidates
        eligible = filter_candidates(candidates, strategy)
        logger.info("ENGINE scan discovered=%s eligible=%s", len(candidates), len(eligible))

        async with self._state_lock:
            for candidate in eligible:
                position = self.ledger.try_open(candidate, strategy)
                if position is not None:
                    self._decisions.write(
                        {
                            "decision_stage": "trade_open",
                            "decision": "open",
                            "reason": "buy_paper",
                            "symbol": position.symbol,
                            "address": position.address,
                            "position_id": position.id,
                            "price_usd": position.entry_price_usd,
                            "value_usd": position.cost_usd,
                        }
                    )
                    self._persist(strategy=False, history=False)
                    return position
                reason = self.ledger.last_rejection
                if reason not in QUIET_REJECTIONS:
                    self._decisions.write(
                        {
                            "decision_stage": "entry_skip",
                            "decision": "skip",
                            "reason": reason,
                            "symbol": candidate.ticker,
                            "address": candidate.address,
                        }
                    )
                if reason in _TICK_WIDE_REJECTIONS:
                    break
        return None

    async def _price_or_none(self, address: str) -> float | None:
        try:
            price = await self.source.price_of(address)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("ENGINE price lookup failed address=%s error=%s", address, exc)
            return None
        if price is None or float(price) <= 0:
            return None
        return float(price)

    async def monitor_once(self) -> list[TradeRecord]:
        """Refresh prices for every open position and apply the exit rules."""
        self.monitor_cycles += 1
        snapshot = [(p.id, p.address) for p in self.ledger.positions()]
        if not snapshot:
            return []
        prices = await asyncio.gather(*[self._price_or_none(address) for _, address in snapshot])
        strategy = self.strategy
        now = utc_now()
        realized: list[TradeRecord] = []

        async with self._state_lock:
            for (position_id, address), price in zip(snapshot, prices):
                position = self.ledger.get(position_id)
                if position is None:
                    # Sold or reset while the fetch was in flight.
                    continue
                if price is None:
                    self.stale_price_hits += 1
                    logger.debug("ENGINE stale price token=%s last=$%.10f", position.symbol, position.current_price_usd)
                else:
                    self.ledger.mark_price(position_id, price, now)
                events = evaluate_exits(position, position.current_price_usd, strategy, now)
                records = self.ledger.apply_exits(position_id, events, now)
                for record in records:
                    self._log_exit(record, closed=self.ledger.get(position_id) is None)
                realized.extend(records)
            self._persist(strategy=False, history=bool(realized))
        return realized

    # -- operator surface ----------------------------------------------------

    async def panic_sell(self, position_id: str) -> TradeRecord:
        """Sell the whole position now at its last known price.

        Raises `PositionNotFoundError` for unknown or closed ids.
        """
        async with self._state_lock:
            record = self.ledger.panic_sell(position_id)
            self._log_exit(record, closed=True)
            self._persist(strategy=False)
        return record

    async def reset(self, *, restore_default_strategy: bool = False) -> None:
        async with self._state_lock:
            self.ledger.reset(self.initial_balance_usd)
            self.scanned = []
            self.stale_price_hits = 0
            if restore_default_strategy:
                self.strategy = default_strategy()
            self._persist()
        logger.info("ENGINE_RESET cash=$%.2f strategy=%s", self.ledger.free_cash_usd, self.strategy.strategy_name)

    def set_strategy(self, value: Strategy | dict[str, Any]) -> Strategy:
        """Swap the strategy for following ticks.

        Raises `StrategyConfigError` and keeps the current strategy when the
        new one is malformed.
        """
        strategy = coerce_strategy(value)
        self.strategy = strategy
        self._persist(cash=False, positions=False, history=False)
        logger.info("STRATEGY_SET name=%s version=%s", strategy.strategy_name, strategy.version)
        return strategy

    def import_strategy(self, path: str) -> Strategy:
        return self.set_strategy(load_strategy_file(path))

    def export_strategy(self, path: str) -> None:
        export_strategy_file(self.strategy, path)

    def open_positions_view(self) -> tuple[Position, ...]:
        return tuple(copy.deepcopy(p) for p in self.ledger.positions())

    def history_view(self) -> tuple[TradeRecord, ...]:
        return self.history.records()

    def scanned_candidates_view(self) -> tuple[Candidate, ...]:
        return tuple(self.scanned)

    def get_stats(self) -> dict[str, Any]:
        summary = self.history.summary()
        unrealized = sum((p.current_price_usd - p.entry_price_usd) * p.token_amount for p in self.ledger.positions())
        runtime_stats = getattr(self.source, "runtime_stats", None)
        return {
            "running": self.running,
            "strategy": self.strategy.strategy_name,
            "open_trades": len(self.ledger.open_positions),
            "free_cash_usd": round(self.ledger.free_cash_usd, 2),
            "equity_usd": round(self.ledger.equity_usd(), 2),
            "initial_balance_usd": round(self.initial_balance_usd, 2),
            "unrealized_pnl_usd": round(unrealized, 2),
            "scan_cycles": self.scan_cycles,
            "monitor_cycles": self.monitor_cycles,
            "failed_cycles": self.failed_cycles,
            "stale_price_hits": self.stale_price_hits,
            **summary,
            "source_stats": runtime_stats() if runtime_stats is not None else {},
        }

    # -- persistence ---------------------------------------------------------

    def _log_exit(self, record: TradeRecord, *, closed: bool) -> None:
        self._decisions.write(
            {
                "decision_stage": "trade_close" if closed else "trade_partial",
                "decision": "sell",
                "reason": record.reason,
                "symbol": record.ticker,
                "address": record.address,
                "position_id": record.position_id,
                "price_usd": record.exit_price_usd,
                "value_usd": record.sell_value_usd,
                "sell_percent": record.sell_percent,
                "pnl_usd": record.pnl_usd,
                "pnl_percent": record.pnl_percent,
                "ts": record.closed_at.timestamp(),
            }
        )

    def _persist(
        self,
        *,
        strategy: bool = True,
        cash: bool = True,
        positions: bool = True,
        history: bool = True,
    ) -> None:
        if self.store is None or not bool(getattr(config, "STATE_PERSIST_ENABLED", True)):
            return
        if strategy:
            self.store.save_strategy(self.strategy)
        if cash:
            self.store.save_cash(self.ledger.free_cash_usd)
        if positions:
            self.store.save_positions(self.ledger.positions())
        if history:
            self.store.save_history(self.history.records())

    def _load_state(self, *, keep_strategy: bool = False) -> None:
        assert self.store is not None
        loaded = self.store.load()
        if loaded.strategy is not None and not keep_strategy:
            self.strategy = loaded.strategy
        else:
            # An explicit or default strategy becomes the persisted one.
            self._persist(cash=False, positions=False, history=False)
        if loaded.history is not None:
            self.history = TradeHistory(loaded.history)
            self.ledger.history = self.history
        self.ledger.restore(self.initial_balance_usd, loaded.positions or [])
        if loaded.free_cash_usd is not None:
            self.ledger.free_cash_usd = loaded.free_cash_usd
        elif self.ledger.open_positions or len(self.history):
            self.ledger.free_cash_usd = self._rebuild_cash()
            logger.warning(
                "STATE_LOAD cash missing, rebuilt from positions and history cash=$%.2f open=%s trades=%s",
                self.ledger.free_cash_usd,
                len(self.ledger.open_positions),
                len(self.history),
            )

    def _rebuild_cash(self) -> float:
        """Free cash implied by the open positions and realized history.

        Open positions paid their full cost and got back what their partial
        sales returned; fully closed positions only left their realized PnL.
        """
        open_ids = set(self.ledger.open_positions)
        cash = self.initial_balance_usd - sum(p.cost_usd for p in self.ledger.positions())
        for record in self.history.records():
            cash += record.sell_value_usd if record.position_id in open_ids else record.pnl_usd
        return max(0.0, cash)

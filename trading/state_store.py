"""Persistence for engine state as four independent JSON documents.

Strategy, cash, open positions and trade history each live in their own
file so a corrupt or missing document only resets that part of the state.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import config
from trading.models import Position, TradeRecord
from trading.strategy import Strategy, StrategyConfigError
from utils.state_file import E_STATE_MISSING, StateFileLockError, read_json_locked, write_json_atomic_locked

logger = logging.getLogger(__name__)

STRATEGY_FILE = "strategy.json"
CASH_FILE = "cash.json"
POSITIONS_FILE = "positions.json"
HISTORY_FILE = "history.json"


@dataclass
class LoadedState:
    strategy: Strategy | None = None
    free_cash_usd: float | None = None
    positions: list[Position] | None = None
    history: list[TradeRecord] | None = None
    errors: dict[str, str] = field(default_factory=dict)


class StateStore:
    def __init__(self, state_dir: str | None = None) -> None:
        self.state_dir = state_dir or str(config.STATE_DIR)

    def _path(self, name: str) -> str:
        return os.path.join(self.state_dir, name)

    def _lock_timeout(self) -> float:
        return float(getattr(config, "STATE_LOCK_TIMEOUT_SECONDS", 2.0))

    def _read(self, name: str, errors: dict[str, str]) -> Any | None:
        result = read_json_locked(self._path(name), timeout_seconds=self._lock_timeout())
        if result.ok:
            return result.data
        if result.error != E_STATE_MISSING:
            errors[name] = result.error
            logger.warning("STATE_LOAD failed file=%s code=%s detail=%s", name, result.error, result.detail)
        return None

    def _write(self, name: str, payload: Any) -> bool:
        try:
            write_json_atomic_locked(self._path(name), payload, timeout_seconds=self._lock_timeout())
            return True
        except (StateFileLockError, OSError, TypeError, ValueError) as exc:
            logger.warning("STATE_SAVE failed file=%s error=%s", name, exc)
            return False

    def load(self) -> LoadedState:
        state = LoadedState()

        raw_strategy = self._read(STRATEGY_FILE, state.errors)
        if raw_strategy is not None:
            try:
                state.strategy = Strategy.from_dict(raw_strategy)
            except StrategyConfigError as exc:
                state.errors[STRATEGY_FILE] = "invalid_strategy"
                logger.warning("STATE_LOAD strategy rejected: %s", exc)

        raw_cash = self._read(CASH_FILE, state.errors)
        if raw_cash is not None:
            try:
                cash = float((raw_cash or {}).get("free_cash_usd"))
                if cash < 0:
                    raise ValueError(f"negative cash {cash}")
                state.free_cash_usd = cash
            except (AttributeError, TypeError, ValueError) as exc:
                state.errors[CASH_FILE] = "invalid_cash"
                logger.warning("STATE_LOAD cash rejected: %s", exc)

        raw_positions = self._read(POSITIONS_FILE, state.errors)
        if raw_positions is not None:
            state.positions = self._parse_rows(raw_positions, Position.from_dict, POSITIONS_FILE, state.errors)

        raw_history = self._read(HISTORY_FILE, state.errors)
        if raw_history is not None:
            state.history = self._parse_rows(raw_history, TradeRecord.from_dict, HISTORY_FILE, state.errors)

        logger.info(
            "STATE_LOAD dir=%s strategy=%s cash=%s positions=%s history=%s errors=%s",
            self.state_dir,
            "yes" if state.strategy else "default",
            "default" if state.free_cash_usd is None else f"${state.free_cash_usd:.2f}",
            len(state.positions or []),
            len(state.history or []),
            ",".join(sorted(state.errors)) or "none",
        )
        return state

    @staticmethod
    def _parse_rows(raw: Any, parse: Any, name: str, errors: dict[str, str]) -> list[Any] | None:
        if not isinstance(raw, list):
            errors[name] = "invalid_rows"
            logger.warning("STATE_LOAD %s is not a list", name)
            return None
        out = []
        for row in raw:
            try:
                out.append(parse(row))
            except (KeyError, TypeError, ValueError) as exc:
                errors[name] = "invalid_row"
                logger.warning("STATE_LOAD dropped row file=%s error=%s", name, exc)
        return out

    def save_strategy(self, strategy: Strategy) -> bool:
        return self._write(STRATEGY_FILE, strategy.to_dict())

    def save_cash(self, free_cash_usd: float) -> bool:
        return self._write(CASH_FILE, {"free_cash_usd": free_cash_usd})

    def save_positions(self, positions: list[Position]) -> bool:
        return self._write(POSITIONS_FILE, [p.to_dict() for p in positions])

    def save_history(self, records: tuple[TradeRecord, ...] | list[TradeRecord]) -> bool:
        return self._write(HISTORY_FILE, [r.to_dict() for r in records])

"""Strategy parameter bundle: parsing, validation and JSON import/export."""

from __future__ import annotations

import copy
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from utils.state_file import atomic_write_json

logger = logging.getLogger(__name__)

STRATEGY_SCHEMA_VERSION = 1
SIZING_MODES = {"percent_equity"}

# Top-level keys modeled below; anything else is carried verbatim in `extras`.
_MODELED_KEYS = {
    "strategy_name",
    "version",
    "filters",
    "social_filters",
    "position_sizing",
    "stop_loss",
    "take_profit",
    "exit_conditions",
}
_FILTER_KEYS = {"liquidity_usd", "market_cap_usd", "token_age_minutes", "volume_first_10m_usd"}


class StrategyConfigError(ValueError):
    """Raised when a strategy document is malformed."""


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise StrategyConfigError(f"{key}: expected object, got {type(value).__name__}")
    return value


def _number(section: dict[str, Any], key: str, default: float, *, path: str, minimum: float | None = None) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise StrategyConfigError(f"{path}.{key}: expected number, got bool")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise StrategyConfigError(f"{path}.{key}: expected number, got {raw!r}") from exc
    if not math.isfinite(value):
        raise StrategyConfigError(f"{path}.{key}: must be finite")
    if minimum is not None and value < minimum:
        raise StrategyConfigError(f"{path}.{key}: must be >= {minimum:g}, got {value:g}")
    return value


def _flag(section: dict[str, Any], key: str, default: bool, *, path: str) -> bool:
    raw = section.get(key, default)
    if not isinstance(raw, bool):
        raise StrategyConfigError(f"{path}.{key}: expected true/false, got {raw!r}")
    return raw


@dataclass(frozen=True)
class Range:
    min: float
    max: float

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    @classmethod
    def parse(cls, raw: Any, *, path: str, default: "Range") -> "Range":
        if raw is None:
            return default
        if not isinstance(raw, dict):
            raise StrategyConfigError(f"{path}: expected {{min, max}} object")
        low = _number(raw, "min", default.min, path=path)
        high = _number(raw, "max", default.max, path=path)
        if low > high:
            raise StrategyConfigError(f"{path}: min {low:g} is greater than max {high:g}")
        return cls(min=low, max=high)


@dataclass(frozen=True)
class TakeProfitStep:
    profit_percent: float
    sell_percent: float

    @property
    def step_id(self) -> str:
        # Keyed by threshold so reordering the ladder never re-fires a step.
        return f"tp_{self.profit_percent:.10g}"

    @property
    def sell_fraction(self) -> float:
        return max(0.0, min(1.0, self.sell_percent / 100.0))


@dataclass(frozen=True)
class Filters:
    liquidity_usd: Range = Range(1000.0, 500000.0)
    market_cap_usd: Range = Range(5000.0, 5000000.0)
    token_age_minutes: Range = Range(0.0, 2880.0)
    volume_first_10m_usd_min: float = 5000.0


@dataclass(frozen=True)
class SocialFilters:
    require_twitter: bool = False
    require_telegram: bool = False
    require_image: bool = True
    keywords: str = ""

    @property
    def keyword_list(self) -> list[str]:
        return [k.strip().lower() for k in self.keywords.split(",") if k.strip()]


@dataclass(frozen=True)
class PositionSizing:
    mode: str = "percent_equity"
    bet_percent: float = 2.0
    max_open_positions: int = 5


@dataclass(frozen=True)
class StopLoss:
    type: str = "soft"
    hard_stop_percent: float = 10.0
    # 0 disables the time stop.
    time_stop_minutes: float = 5.0


@dataclass(frozen=True)
class TakeProfit:
    scale_out: tuple[TakeProfitStep, ...] = (
        TakeProfitStep(profit_percent=30.0, sell_percent=50.0),
        TakeProfitStep(profit_percent=60.0, sell_percent=50.0),
    )
    # 0 disables the moonbag trailing stop.
    moonbag_trailing_stop_percent: float = 30.0


@dataclass(frozen=True)
class ExitConditions:
    no_new_buys_seconds: int = 120
    large_wallet_dump: bool = True
    lp_moved: bool = True
    volume_collapse: bool = True


@dataclass(frozen=True)
class Strategy:
    strategy_name: str = "SolanaUltraEarlyMemeScalp"
    version: int = STRATEGY_SCHEMA_VERSION
    filters: Filters = Filters()
    social_filters: SocialFilters = SocialFilters()
    position_sizing: PositionSizing = PositionSizing()
    stop_loss: StopLoss = StopLoss()
    take_profit: TakeProfit = TakeProfit()
    exit_conditions: ExitConditions = ExitConditions()
    extras: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, payload: Any) -> "Strategy":
        """Parse and validate a strategy document.

        Missing sections fall back to defaults; present-but-malformed values
        raise `StrategyConfigError`.
        """
        if not isinstance(payload, dict):
            raise StrategyConfigError("strategy document must be a JSON object")
        base = cls()

        name = str(payload.get("strategy_name", base.strategy_name) or "").strip()
        if not name:
            raise StrategyConfigError("strategy_name: must not be empty")
        version = int(_number(payload, "version", base.version, path="strategy", minimum=1))

        raw_filters = _section(payload, "filters")
        volume_section = raw_filters.get("volume_first_10m_usd") or {}
        if not isinstance(volume_section, dict):
            raise StrategyConfigError("filters.volume_first_10m_usd: expected {min} object")
        filters = Filters(
            liquidity_usd=Range.parse(
                raw_filters.get("liquidity_usd"), path="filters.liquidity_usd", default=base.filters.liquidity_usd
            ),
            market_cap_usd=Range.parse(
                raw_filters.get("market_cap_usd"), path="filters.market_cap_usd", default=base.filters.market_cap_usd
            ),
            token_age_minutes=Range.parse(
                raw_filters.get("token_age_minutes"),
                path="filters.token_age_minutes",
                default=base.filters.token_age_minutes,
            ),
            volume_first_10m_usd_min=_number(
                volume_section,
                "min",
                base.filters.volume_first_10m_usd_min,
                path="filters.volume_first_10m_usd",
                minimum=0.0,
            ),
        )

        raw_social = _section(payload, "social_filters")
        keywords = raw_social.get("keywords", base.social_filters.keywords)
        if not isinstance(keywords, str):
            raise StrategyConfigError("social_filters.keywords: expected string")
        social = SocialFilters(
            require_twitter=_flag(raw_social, "require_twitter", False, path="social_filters"),
            require_telegram=_flag(raw_social, "require_telegram", False, path="social_filters"),
            require_image=_flag(raw_social, "require_image", base.social_filters.require_image, path="social_filters"),
            keywords=keywords,
        )

        raw_sizing = _section(payload, "position_sizing")
        mode = str(raw_sizing.get("mode", base.position_sizing.mode) or "").strip().lower()
        if mode not in SIZING_MODES:
            raise StrategyConfigError(f"position_sizing.mode: unsupported mode {mode!r}")
        bet_percent = _number(
            raw_sizing, "bet_percent", base.position_sizing.bet_percent, path="position_sizing", minimum=0.0
        )
        if bet_percent > 100.0:
            raise StrategyConfigError(f"position_sizing.bet_percent: must be <= 100, got {bet_percent:g}")
        max_open = _number(
            raw_sizing, "max_open_positions", base.position_sizing.max_open_positions, path="position_sizing", minimum=0
        )
        if not max_open.is_integer():
            raise StrategyConfigError("position_sizing.max_open_positions: must be an integer")
        sizing = PositionSizing(mode=mode, bet_percent=bet_percent, max_open_positions=int(max_open))

        raw_stop = _section(payload, "stop_loss")
        stop_loss = StopLoss(
            type=str(raw_stop.get("type", base.stop_loss.type) or base.stop_loss.type),
            hard_stop_percent=_number(
                raw_stop, "hard_stop_percent", base.stop_loss.hard_stop_percent, path="stop_loss", minimum=0.0
            ),
            time_stop_minutes=_number(
                raw_stop, "time_stop_minutes", base.stop_loss.time_stop_minutes, path="stop_loss", minimum=0.0
            ),
        )

        raw_tp = _section(payload, "take_profit")
        raw_steps = raw_tp.get("scale_out")
        if raw_steps is None:
            steps = base.take_profit.scale_out
        else:
            if not isinstance(raw_steps, list):
                raise StrategyConfigError("take_profit.scale_out: expected list")
            parsed: list[TakeProfitStep] = []
            seen_ids: set[str] = set()
            for index, row in enumerate(raw_steps):
                path = f"take_profit.scale_out[{index}]"
                if not isinstance(row, dict):
                    raise StrategyConfigError(f"{path}: expected object")
                step = TakeProfitStep(
                    profit_percent=_number(row, "profit_percent", 0.0, path=path),
                    sell_percent=_number(row, "sell_percent", 0.0, path=path, minimum=0.0),
                )
                if step.sell_percent > 100.0:
                    raise StrategyConfigError(f"{path}.sell_percent: must be <= 100")
                if step.step_id in seen_ids:
                    raise StrategyConfigError(f"{path}: duplicate profit_percent {step.profit_percent:.10g}")
                seen_ids.add(step.step_id)
                parsed.append(step)
            steps = tuple(parsed)
        take_profit = TakeProfit(
            scale_out=steps,
            moonbag_trailing_stop_percent=_number(
                raw_tp,
                "moonbag_trailing_stop_percent",
                base.take_profit.moonbag_trailing_stop_percent,
                path="take_profit",
                minimum=0.0,
            ),
        )
        if take_profit.moonbag_trailing_stop_percent >= 100.0:
            raise StrategyConfigError("take_profit.moonbag_trailing_stop_percent: must be < 100")

        raw_exit = _section(payload, "exit_conditions")
        exit_conditions = ExitConditions(
            no_new_buys_seconds=int(
                _number(
                    raw_exit,
                    "no_new_buys_seconds",
                    base.exit_conditions.no_new_buys_seconds,
                    path="exit_conditions",
                    minimum=0.0,
                )
            ),
            large_wallet_dump=_flag(raw_exit, "large_wallet_dump", True, path="exit_conditions"),
            lp_moved=_flag(raw_exit, "lp_moved", True, path="exit_conditions"),
            volume_collapse=_flag(raw_exit, "volume_collapse", True, path="exit_conditions"),
        )

        extras = {k: copy.deepcopy(v) for k, v in payload.items() if k not in _MODELED_KEYS}
        filter_extras = {k: copy.deepcopy(v) for k, v in raw_filters.items() if k not in _FILTER_KEYS}
        if filter_extras:
            extras["_filters"] = filter_extras

        return cls(
            strategy_name=name,
            version=version,
            filters=filters,
            social_filters=social,
            position_sizing=sizing,
            stop_loss=stop_loss,
            take_profit=take_profit,
            exit_conditions=exit_conditions,
            extras=extras,
        )

    def to_dict(self) -> dict[str, Any]:
        extras = copy.deepcopy(self.extras)
        filters: dict[str, Any] = extras.pop("_filters", {})
        filters.update(
            {
                "liquidity_usd": {"min": self.filters.liquidity_usd.min, "max": self.filters.liquidity_usd.max},
                "market_cap_usd": {"min": self.filters.market_cap_usd.min, "max": self.filters.market_cap_usd.max},
                "token_age_minutes": {
                    "min": self.filters.token_age_minutes.min,
                    "max": self.filters.token_age_minutes.max,
                },
                "volume_first_10m_usd": {"min": self.filters.volume_first_10m_usd_min},
            }
        )
        payload: dict[str, Any] = {
            "strategy_name": self.strategy_name,
            "version": self.version,
            "filters": filters,
            "social_filters": {
                "require_twitter": self.social_filters.require_twitter,
                "require_telegram": self.social_filters.require_telegram,
                "require_image": self.social_filters.require_image,
                "keywords": self.social_filters.keywords,
            },
            "position_sizing": {
                "mode": self.position_sizing.mode,
                "bet_percent": self.position_sizing.bet_percent,
                "max_open_positions": self.position_sizing.max_open_positions,
            },
            "stop_loss": {
                "type": self.stop_loss.type,
                "hard_stop_percent": self.stop_loss.hard_stop_percent,
                "time_stop_minutes": self.stop_loss.time_stop_minutes,
            },
            "take_profit": {
                "scale_out": [
                    {"profit_percent": s.profit_percent, "sell_percent": s.sell_percent}
                    for s in self.take_profit.scale_out
                ],
                "moonbag_trailing_stop_percent": self.take_profit.moonbag_trailing_stop_percent,
            },
            "exit_conditions": {
                "no_new_buys_seconds": self.exit_conditions.no_new_buys_seconds,
                "large_wallet_dump": self.exit_conditions.large_wallet_dump,
                "lp_moved": self.exit_conditions.lp_moved,
                "volume_collapse": self.exit_conditions.volume_collapse,
            },
        }
        payload.update(extras)
        return payload


# Fields of the original strategy document that no engine rule reads yet.
_DEFAULT_EXTRAS: dict[str, Any] = {
    "time_window_minutes": [2, 60],
    "chain": "Solana",
    "discovery_sources": ["DexScreener_NewPairs"],
    "entry": {
        "type": "first_pullback",
        "min_pump_percent": 30,
        "max_pump_percent": 150,
        "pullback_percent": [20, 40],
        "confirm_new_volume": True,
    },
    "risk_profile": "ultra_high",
    "_filters": {
        "lp_locked_required": False,
        "mint_authority": "revoked",
        "freeze_authority": "revoked",
        "max_single_wallet_percent": 25,
        "max_dev_wallet_percent": 20,
    },
}


def default_strategy() -> Strategy:
    return Strategy(extras=copy.deepcopy(_DEFAULT_EXTRAS))


def coerce_strategy(value: Strategy | dict[str, Any]) -> Strategy:
    if isinstance(value, Strategy):
        return value
    return Strategy.from_dict(value)


def load_strategy_file(path: str) -> Strategy:
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            payload = json.load(f)
    except json.JSONDecodeError as exc:
        raise StrategyConfigError(f"{path}: invalid JSON: {exc}") from exc
    except OSError as exc:
        raise StrategyConfigError(f"{path}: cannot read strategy file: {exc}") from exc
    return Strategy.from_dict(payload)


def export_strategy_file(strategy: Strategy, path: str) -> None:
    atomic_write_json(path, strategy.to_dict())
    logger.info("STRATEGY_EXPORT name=%s path=%s", strategy.strategy_name, path)

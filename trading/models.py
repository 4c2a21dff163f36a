"""Core records shared by the filter, ledger, exit rules and history."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"

EXIT_TAKE_PROFIT = "TAKE_PROFIT"
EXIT_STOP_LOSS = "STOP_LOSS"
EXIT_TIME_STOP = "TIME_STOP"
EXIT_TRAILING = "TRAILING"
EXIT_MANUAL = "MANUAL"
EXIT_REASONS = (EXIT_TAKE_PROFIT, EXIT_STOP_LOSS, EXIT_TIME_STOP, EXIT_TRAILING, EXIT_MANUAL)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def pnl_percent(price_usd: float, entry_price_usd: float) -> float:
    """Price move against entry, in percent. Partial exits never change it."""
    if entry_price_usd <= 0:
        return 0.0
    return (price_usd - entry_price_usd) / entry_price_usd * 100.0


@dataclass(frozen=True)
class Candidate:
    address: str
    token_address: str
    ticker: str
    name: str
    liquidity_usd: float
    market_cap_usd: float
    age_minutes: float
    has_twitter: bool
    has_telegram: bool
    price_usd: float
    image_url: str
    url: str = ""
    price_change_5m: float = 0.0


@dataclass
class Position:
    id: str
    address: str
    token_address: str
    symbol: str
    url: str
    entry_price_usd: float
    current_price_usd: float
    token_amount: float
    initial_token_amount: float
    cost_usd: float
    opened_at: datetime
    triggered_steps: set[str] = field(default_factory=set)
    peak_price_usd: float = 0.0
    status: str = STATUS_OPEN
    close_reason: str = ""
    closed_at: datetime | None = None
    price_updated_at: datetime | None = None

    @property
    def pnl_percent(self) -> float:
        return pnl_percent(self.current_price_usd, self.entry_price_usd)

    @property
    def value_usd(self) -> float:
        return self.token_amount * self.current_price_usd

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN and self.token_amount > 0

    def age_minutes(self, now: datetime | None = None) -> float:
        now = now or utc_now()
        return max(0.0, (now - self.opened_at).total_seconds() / 60.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "token_address": self.token_address,
            "symbol": self.symbol,
            "url": self.url,
            "entry_price_usd": self.entry_price_usd,
            "current_price_usd": self.current_price_usd,
            "token_amount": self.token_amount,
            "initial_token_amount": self.initial_token_amount,
            "cost_usd": self.cost_usd,
            "opened_at": self.opened_at.isoformat(),
            "triggered_steps": sorted(self.triggered_steps),
            "peak_price_usd": self.peak_price_usd,
            "status": self.status,
            "close_reason": self.close_reason,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "price_updated_at": self.price_updated_at.isoformat() if self.price_updated_at else None,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Position":
        opened_at = _parse_dt(row.get("opened_at"))
        if opened_at is None:
            raise ValueError("position row has no opened_at")
        entry = float(row["entry_price_usd"])
        return cls(
            id=str(row["id"]),
            address=str(row["address"]),
            token_address=str(row.get("token_address", "")),
            symbol=str(row.get("symbol", "N/A")),
            url=str(row.get("url", "")),
            entry_price_usd=entry,
            current_price_usd=float(row.get("current_price_usd", entry)),
            token_amount=float(row["token_amount"]),
            initial_token_amount=float(row.get("initial_token_amount", row["token_amount"])),
            cost_usd=float(row.get("cost_usd", 0.0)),
            opened_at=opened_at,
            triggered_steps={str(s) for s in row.get("triggered_steps", []) or []},
            peak_price_usd=float(row.get("peak_price_usd", entry)),
            status=str(row.get("status", STATUS_OPEN)),
            close_reason=str(row.get("close_reason", "")),
            closed_at=_parse_dt(row.get("closed_at")),
            price_updated_at=_parse_dt(row.get("price_updated_at")),
        )


@dataclass(frozen=True)
class TradeRecord:
    id: str
    position_id: str
    address: str
    ticker: str
    url: str
    entry_price_usd: float
    exit_price_usd: float
    sell_value_usd: float
    sell_percent: float
    pnl_usd: float
    pnl_percent: float
    reason: str
    closed_at: datetime
    token_address: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "position_id": self.position_id,
            "address": self.address,
            "ticker": self.ticker,
            "url": self.url,
            "entry_price_usd": self.entry_price_usd,
            "exit_price_usd": self.exit_price_usd,
            "sell_value_usd": self.sell_value_usd,
            "sell_percent": self.sell_percent,
            "pnl_usd": self.pnl_usd,
            "pnl_percent": self.pnl_percent,
            "reason": self.reason,
            "closed_at": self.closed_at.isoformat(),
            "token_address": self.token_address,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "TradeRecord":
        closed_at = _parse_dt(row.get("closed_at"))
        if closed_at is None:
            raise ValueError("trade row has no closed_at")
        reason = str(row.get("reason", ""))
        if reason not in EXIT_REASONS:
            raise ValueError(f"unknown exit reason {reason!r}")
        return cls(
            id=str(row["id"]),
            position_id=str(row.get("position_id", "")),
            address=str(row["address"]),
            ticker=str(row.get("ticker", "")),
            url=str(row.get("url", "")),
            entry_price_usd=float(row["entry_price_usd"]),
            exit_price_usd=float(row["exit_price_usd"]),
            sell_value_usd=float(row.get("sell_value_usd", 0.0)),
            sell_percent=float(row.get("sell_percent", 100.0)),
            pnl_usd=float(row.get("pnl_usd", 0.0)),
            pnl_percent=float(row.get("pnl_percent", 0.0)),
            reason=reason,
            closed_at=closed_at,
            token_address=str(row.get("token_address", "")),
        )


@dataclass(frozen=True)
class ExitEvent:
    """A proposed sale produced by the exit rules and applied by the ledger.

    `sell_fraction` is taken against the remaining balance at the moment the
    event is applied; `closes` marks a full liquidation.
    """

    reason: str
    sell_fraction: float
    sell_percent: float
    price_usd: float
    closes: bool = False
    step_id: str = ""

"""Stable JSONL contract for trade decision events."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

LOG_SCHEMA_VERSION = "2026-10-01.v1"
SCHEMA_TRADE_DECISION = "trade_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "entry_skip": "PLAN",
    "trade_open": "EXEC",
    "trade_partial": "EXIT",
    "trade_close": "EXIT",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "already_open": "PLAN_ALREADY_OPEN",
    "already_traded": "PLAN_ALREADY_TRADED",
    "max_open_positions": "PLAN_MAX_OPEN_POSITIONS",
    "bet_below_dust": "PLAN_BET_BELOW_DUST",
    "insufficient_cash": "PLAN_INSUFFICIENT_CASH",
    "bad_entry_price": "PLAN_BAD_ENTRY_PRICE",
    "buy_paper": "EXEC_BUY_PAPER",
    "take_profit": "EXIT_TAKE_PROFIT",
    "stop_loss": "EXIT_STOP_LOSS",
    "time_stop": "EXIT_TIME_STOP",
    "trailing": "EXIT_TRAILING",
    "manual": "EXIT_MANUAL",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "PLAN_ALREADY_OPEN": {"severity": "INFO", "category": "plan", "title": "Instrument already open"},
    "PLAN_ALREADY_TRADED": {"severity": "INFO", "category": "plan", "title": "Instrument traded before"},
    "PLAN_MAX_OPEN_POSITIONS": {"severity": "INFO", "category": "plan", "title": "Open position limit reached"},
    "PLAN_BET_BELOW_DUST": {"severity": "WARN", "category": "plan", "title": "Bet below dust threshold"},
    "PLAN_INSUFFICIENT_CASH": {"severity": "WARN", "category": "plan", "title": "Bet exceeds free cash"},
    "PLAN_BAD_ENTRY_PRICE": {"severity": "WARN", "category": "plan", "title": "No usable entry price"},
    "EXEC_BUY_PAPER": {"severity": "INFO", "category": "execute", "title": "Paper buy opened"},
    "EXIT_TAKE_PROFIT": {"severity": "INFO", "category": "exit", "title": "Take-profit step sold"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by hard stop"},
    "EXIT_TIME_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by time stop"},
    "EXIT_TRAILING": {"severity": "INFO", "category": "exit", "title": "Closed by moonbag trailing stop"},
    "EXIT_MANUAL": {"severity": "INFO", "category": "exit", "title": "Closed manually"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    text = str(value or "").strip()
    if text:
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
        except ValueError:
            pass
    return datetime.now(timezone.utc).timestamp()


def _normalize_reason_text(value: Any) -> str:
    text = re.sub(r"[^a-z0-9]+", "_", str(value or "").strip().lower())
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    return re.sub(r"_+", "_", text).strip("_") or "UNKNOWN"


def reason_code_for_event(*, reason: Any, decision_stage: Any = "") -> str:
    normalized = _normalize_reason_text(reason)
    if not normalized:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized)
    if override:
        return override
    stage = _normalize_reason_text(decision_stage) or "unknown"
    return f"{_STAGE_PREFIX.get(stage, 'UNKNOWN')}_{_sanitize_code_token(normalized)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _digest(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    """Stamp schema, ids and reason code onto a raw trade decision dict."""
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = ts
    payload["timestamp"] = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", SCHEMA_TRADE_DECISION)
    payload.setdefault("event_type", "trade_decision")
    if run_tag:
        payload.setdefault("run_tag", run_tag)
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["symbol"] = str(payload.get("symbol", "N/A") or "N/A")
    payload["address"] = str(payload.get("address", "") or "").strip()
    payload["position_id"] = str(payload.get("position_id", "") or "")
    payload["trace_id"] = str(payload.get("trace_id", "") or "") or f"tr_{_digest(payload['address'], payload['position_id'])}"
    payload["decision_id"] = str(payload.get("decision_id", "") or "") or "dec_" + _digest(
        payload.get("run_tag", ""),
        payload["trace_id"],
        payload["decision_stage"],
        payload["reason"],
        f"{ts:.6f}",
    )
    for key in ("price_usd", "value_usd", "pnl_usd", "pnl_percent", "sell_percent"):
        if key in payload:
            payload[key] = _safe_float(payload[key])
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(reason=payload["reason"], decision_stage=payload["decision_stage"])
    ).upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    return payload


class TradeDecisionLog:
    """Appends stamped trade decisions as JSON lines; write failures are logged only."""

    def __init__(self, path: str, *, enabled: bool = True, run_tag: str = "") -> None:
        self.path = path
        self.enabled = bool(enabled and path)
        self.run_tag = run_tag

    def write(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            row = trade_decision_event(event, run_tag=self.run_tag)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False) + "\n")
        except (OSError, TypeError, ValueError):
            logger.exception("TRADE_DECISION_LOG write failed path=%s", self.path)

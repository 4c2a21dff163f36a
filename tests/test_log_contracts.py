from __future__ import annotations

import json
import os
import tempfile
import unittest

from utils import log_contracts


class LogContractsTests(unittest.TestCase):
    def test_trade_open_event_gets_ids_and_reason_code(self) -> None:
        row = log_contracts.trade_decision_event(
            {
                "decision_stage": "trade_open",
                "decision": "open",
                "reason": "buy_paper",
                "symbol": "$BBB",
                "address": "PairBBB",
                "position_id": "pos-1",
                "price_usd": "0.0012",
            },
            run_tag="paper_a",
        )
        self.assertEqual(row["schema_name"], log_contracts.SCHEMA_TRADE_DECISION)
        self.assertEqual(row["run_tag"], "paper_a")
        self.assertTrue(row["trace_id"].startswith("tr_"))
        self.assertTrue(row["decision_id"].startswith("dec_"))
        self.assertEqual(row["reason_code"], "EXEC_BUY_PAPER")
        self.assertEqual(row["reason_category"], "execute")
        self.assertAlmostEqual(row["price_usd"], 0.0012)

    def test_trace_id_is_stable_per_position(self) -> None:
        base = {"address": "PairCCC", "position_id": "pos-9", "ts": 1_700_000_000.0}
        opened = log_contracts.trade_decision_event({**base, "decision_stage": "trade_open", "reason": "buy_paper"})
        closed = log_contracts.trade_decision_event({**base, "decision_stage": "trade_close", "reason": "stop_loss"})
        self.assertEqual(opened["trace_id"], closed["trace_id"])
        self.assertNotEqual(opened["decision_id"], closed["decision_id"])
        self.assertEqual(closed["reason_code"], "EXIT_STOP_LOSS")
        self.assertEqual(closed["reason_severity"], "WARN")

    def test_unknown_reason_is_prefixed_by_stage(self) -> None:
        self.assertEqual(
            log_contracts.reason_code_for_event(reason="cool down", decision_stage="entry_skip"),
            "PLAN_COOL_DOWN",
        )
        self.assertEqual(log_contracts.reason_code_for_event(reason=""), "UNKNOWN")
        self.assertEqual(log_contracts.reason_code_meta("PLAN_COOL_DOWN")["category"], "unknown")

    def test_decision_log_appends_json_lines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "logs", "trade_decisions.jsonl")
            sink = log_contracts.TradeDecisionLog(path, run_tag="paper_b")
            sink.write({"decision_stage": "entry_skip", "reason": "max_open_positions", "address": "PairD"})
            sink.write({"decision_stage": "trade_partial", "reason": "take_profit", "address": "PairD"})
            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f]
        self.assertEqual([r["reason_code"] for r in rows], ["PLAN_MAX_OPEN_POSITIONS", "EXIT_TAKE_PROFIT"])
        self.assertTrue(all(r["run_tag"] == "paper_b" for r in rows))

    def test_disabled_log_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "decisions.jsonl")
            log_contracts.TradeDecisionLog(path, enabled=False).write({"reason": "buy_paper"})
            self.assertFalse(os.path.exists(path))


if __name__ == "__main__":
    unittest.main()

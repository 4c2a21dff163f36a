from __future__ import annotations

import json
import os
import tempfile
import unittest

from trading.strategy import (
    Strategy,
    StrategyConfigError,
    default_strategy,
    export_strategy_file,
    load_strategy_file,
)


class StrategyConfigTests(unittest.TestCase):
    def test_default_strategy_matches_documented_values(self) -> None:
        strategy = default_strategy()
        self.assertEqual(strategy.strategy_name, "SolanaUltraEarlyMemeScalp")
        self.assertEqual(strategy.position_sizing.bet_percent, 2.0)
        self.assertEqual(strategy.position_sizing.max_open_positions, 5)
        self.assertEqual(strategy.stop_loss.hard_stop_percent, 10.0)
        self.assertEqual(
            [(s.profit_percent, s.sell_percent) for s in strategy.take_profit.scale_out],
            [(30.0, 50.0), (60.0, 50.0)],
        )
        self.assertEqual(strategy.extras["chain"], "Solana")

    def test_missing_sections_fall_back_to_defaults(self) -> None:
        strategy = Strategy.from_dict({"strategy_name": "Tiny"})
        self.assertEqual(strategy.strategy_name, "Tiny")
        self.assertEqual(strategy.filters, Strategy().filters)
        self.assertEqual(strategy.take_profit, Strategy().take_profit)

    def test_round_trip_keeps_unmodeled_fields(self) -> None:
        payload = default_strategy().to_dict()
        payload["custom_note"] = {"owner": "desk"}
        payload["filters"]["lp_locked_required"] = True
        parsed = Strategy.from_dict(payload)
        self.assertEqual(parsed.extras["custom_note"], {"owner": "desk"})
        self.assertEqual(parsed.to_dict(), payload)

    def test_malformed_documents_are_rejected(self) -> None:
        bad_payloads = [
            [],
            {"strategy_name": ""},
            {"position_sizing": {"bet_percent": "lots"}},
            {"position_sizing": {"bet_percent": 150}},
            {"position_sizing": {"bet_percent": -1}},
            {"position_sizing": {"mode": "fixed_usd"}},
            {"position_sizing": {"max_open_positions": 2.5}},
            {"filters": {"liquidity_usd": {"min": 10, "max": 1}}},
            {"filters": "none"},
            {"social_filters": {"require_twitter": "yes"}},
            {"take_profit": {"scale_out": [{"profit_percent": 30, "sell_percent": 120}]}},
            {
                "take_profit": {
                    "scale_out": [
                        {"profit_percent": 30, "sell_percent": 50},
                        {"profit_percent": 30, "sell_percent": 20},
                    ]
                }
            },
            {"take_profit": {"moonbag_trailing_stop_percent": 100}},
            {"stop_loss": {"hard_stop_percent": True}},
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(StrategyConfigError):
                    Strategy.from_dict(payload)

    def test_step_ids_follow_profit_threshold(self) -> None:
        strategy = Strategy.from_dict(
            {
                "take_profit": {
                    "scale_out": [
                        {"profit_percent": 60, "sell_percent": 25},
                        {"profit_percent": 30, "sell_percent": 50},
                    ]
                }
            }
        )
        self.assertEqual([s.step_id for s in strategy.take_profit.scale_out], ["tp_60", "tp_30"])

    def test_close_thresholds_get_distinct_step_ids(self) -> None:
        strategy = Strategy.from_dict(
            {
                "take_profit": {
                    "scale_out": [
                        {"profit_percent": 100.0001, "sell_percent": 25},
                        {"profit_percent": 100.0004, "sell_percent": 25},
                    ]
                }
            }
        )
        self.assertEqual(
            [s.step_id for s in strategy.take_profit.scale_out], ["tp_100.0001", "tp_100.0004"]
        )

    def test_export_then_import_file(self) -> None:
        strategy = Strategy.from_dict({"strategy_name": "Exported", "position_sizing": {"bet_percent": 5}})
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "nested", "strategy.json")
            export_strategy_file(strategy, path)
            with open(path, "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f)["strategy_name"], "Exported")
            self.assertEqual(load_strategy_file(path), strategy)

    def test_import_reports_bad_json_and_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            broken = os.path.join(tmp_dir, "broken.json")
            with open(broken, "w", encoding="utf-8") as f:
                f.write("{not json")
            with self.assertRaises(StrategyConfigError):
                load_strategy_file(broken)
            with self.assertRaises(StrategyConfigError):
                load_strategy_file(os.path.join(tmp_dir, "missing.json"))


if __name__ == "__main__":
    unittest.main()

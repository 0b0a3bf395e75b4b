from __future__ import annotations

import unittest

from utils import log_contracts

MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"


class LogContractsTests(unittest.TestCase):
    def test_gate_reasons_map_to_filter_codes(self) -> None:
        row = log_contracts.candidate_decision_event(
            {
                "bot_id": "sniper-1",
                "mint": MINT,
                "decision_stage": "gate",
                "decision": "skip",
                "reason": "pump-fail",
            },
            run_tag="run_a",
        )
        self.assertTrue(row["trace_id"].startswith("tr_"))
        self.assertTrue(row["decision_id"].startswith("dec_"))
        self.assertEqual(row["reason_code"], "FILTER_PUMP_BELOW_ENTRY")
        self.assertEqual(row["reason_category"], "filter")
        self.assertEqual(row["symbol"], "N/A")
        self.assertEqual(row["run_tag"], "run_a")

    def test_quote_and_cap_reasons(self) -> None:
        self.assertEqual(log_contracts.reason_code_for_event(reason="quoteError", decision_stage="quote"), "QUOTE_ERROR")
        self.assertEqual(log_contracts.reason_code_for_event(reason="openTrades", decision_stage="guard"), "CAP_OPEN_TRADES")
        self.assertEqual(log_contracts.reason_code_for_event(reason="insufficient-balance", decision_stage="halt"), "HALT_INSUFFICIENT_BALANCE")
        self.assertEqual(log_contracts.reason_code_for_event(reason="brand new", decision_stage="safety"), "SAFETY_BRAND_NEW")
        self.assertEqual(log_contracts.reason_code_for_event(reason="", decision_stage="trade", decision="open"), "EXEC_OPEN")
        self.assertEqual(log_contracts.reason_code_for_event(reason=""), "UNKNOWN")

    def test_unknown_codes_get_default_meta(self) -> None:
        meta = log_contracts.reason_code_meta("filter_something_new")
        self.assertEqual(meta["category"], "unknown")
        self.assertEqual(meta["title"], "Filter Something New")
        self.assertEqual(log_contracts.reason_code_meta("QUOTE_ERROR")["severity"], "ERROR")

    def test_trade_event_generates_position_id_only_with_signature(self) -> None:
        row = log_contracts.trade_decision_event(
            {
                "bot_id": "sniper-1",
                "mint": MINT,
                "decision_stage": "trade",
                "decision": "open",
                "reason": "buy_dry_run",
                "spent": "0.1",
                "signature": "dryrun-abc",
            }
        )
        self.assertTrue(row["position_id"].startswith("pos_"))
        self.assertEqual(row["spent"], 0.1)
        self.assertEqual(row["reason_code"], "EXEC_BUY_DRY_RUN")
        self.assertEqual(row["reason_category"], "execute")

        unsigned = log_contracts.trade_decision_event({"decision_stage": "trade", "reason": "trade_error"})
        self.assertNotIn("position_id", unsigned)
        self.assertEqual(unsigned["reason_severity"], "ERROR")

    def test_explicit_timestamps_are_kept(self) -> None:
        row = log_contracts.stamp_event({"ts": 1767225600}, schema_name="x", event_type="y")
        self.assertEqual(row["timestamp"], "2026-01-01T00:00:00+00:00")
        self.assertEqual(row["schema_version"], log_contracts.LOG_SCHEMA_VERSION)


if __name__ == "__main__":
    unittest.main()

import json
import math
import unittest
from datetime import datetime, timezone

from tradecouncil.evidence import EvidenceIndex, load_evidence
from tradecouncil.recovery import (
    TRUNCATED_URL_PLACEHOLDER,
    extract_claims,
    extract_claims_from_text,
    recover_structured_output,
    repair_block,
    scan_block,
    strip_noise,
)

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

WELL_FORMED = (
    '{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.8, "evidence": ["b1"], '
    '"rationale": "Deep liquidity"}, {"ticker": "ETH", "action": "SELL", "confidence": 0.55, '
    '"evidence": ["e1"], "riskFlags": ["thin_book"]}]}'
)


def _content(claims):
    return [(c.ticker, c.action, c.confidence, c.evidence, c.rationale, c.risk_flags) for c in claims]


class RecoverStructuredOutputTests(unittest.TestCase):
    def test_narrative_precedes_block(self):
        result = recover_structured_output("BTC looks strong.\n" + WELL_FORMED + "\ntrailing chatter")
        self.assertTrue(result.valid)
        self.assertEqual(result.narrative, "BTC looks strong.")
        self.assertEqual(len(result.block["claims"]), 2)
        self.assertEqual(result.errors, [])

    def test_code_fences_and_comments_are_stripped(self):
        text = (
            "Analysis below.\n```json\n"
            '{"claims": [ // primary call\n'
            '  {"ticker": "BTC", /* strong */ "action": "BUY", "confidence": 0.7,\n'
            '   "evidence": ["b1"], "source": "https://example.org/a"}\n'
            "]}\n```"
        )
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        entry = result.block["claims"][0]
        self.assertEqual(entry["action"], "BUY")
        self.assertEqual(entry["source"], "https://example.org/a")

    def test_comment_markers_inside_strings_are_kept(self):
        text = (
            '{"claims": [{"ticker": "BTC", "action": "SELL", "confidence": 0.6, // desk view\n'
            '  "rationale": "RSI 70 // overbought soon /* maybe */"}]}'
        )
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        self.assertFalse(result.repaired)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.block["claims"][0]["rationale"], "RSI 70 // overbought soon /* maybe */")

    def test_braces_inside_strings_do_not_end_the_block(self):
        text = '{"claims": [{"ticker": "BTC", "action": "HOLD", "rationale": "range {low} \\"}\\" high"}]} after'
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        self.assertEqual(result.block["claims"][0]["rationale"], 'range {low} "}" high')

    def test_missing_closer_round_trip(self):
        intact = extract_claims(recover_structured_output(WELL_FORMED), "fundamental", [], T0)
        broken_result = recover_structured_output(WELL_FORMED[:-1])
        self.assertTrue(broken_result.valid)
        self.assertTrue(broken_result.repaired)
        broken = extract_claims(broken_result, "fundamental", [], T0)
        self.assertEqual(_content(broken.claims), _content(intact.claims))
        self.assertEqual([c.id for c in broken.claims], [c.id for c in intact.claims])

    def test_truncated_mid_object(self):
        text = '{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.8,'
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        self.assertEqual(result.block, {"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.8}]})

    def test_trailing_separators_removed(self):
        text = '{"claims": [{"ticker": "ETH", "action": "SELL", "confidence": 0.6,},]}'
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        self.assertEqual(result.block["claims"][0]["ticker"], "ETH")

    def test_truncated_url_replaced(self):
        text = '{"claims": [{"ticker": "BTC", "action": "BUY", "url": "https://www.coindesk.com/mark'
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        self.assertEqual(result.block["claims"][0]["url"], TRUNCATED_URL_PLACEHOLDER)

    def test_unquoted_keys_normalized(self):
        text = '{claims: [{ticker: "SOL", action: "HOLD", confidence: 0.5, rationale: "wait, see: later"}]}'
        result = recover_structured_output(text)
        self.assertTrue(result.valid)
        self.assertEqual(result.block["claims"][0]["rationale"], "wait, see: later")

    def test_top_level_list_accepted(self):
        text = 'Calls: [{"ticker": "BTC", "action": "BUY", "confidence": 0.6}]'
        result = recover_structured_output(text)
        extraction = extract_claims(result, "sentiment", ["BTC"], T0)
        self.assertEqual(extraction.source, "structured")
        self.assertEqual(extraction.claims[0].action, "BUY")

    def test_no_block_is_invalid_not_an_error(self):
        result = recover_structured_output("Markets are quiet today.")
        self.assertFalse(result.valid)
        self.assertIsNone(result.block)
        self.assertEqual(result.narrative, "Markets are quiet today.")
        self.assertTrue(result.errors)

    def test_unrepairable_block_keeps_full_narrative(self):
        text = 'BTC: BUY with conviction. {"claims": [{"ticker" "BTC" "action"}]}'
        result = recover_structured_output(text)
        self.assertFalse(result.valid)
        self.assertIn("BTC: BUY", result.narrative)
        self.assertEqual(len(result.errors), 2)

    def test_never_raises_on_garbage(self):
        for text in [None, "", "{", "[[[[", '{"claims": "', "}}}}", "\x00\x01", '{"a": [1, 2}', "``````"]:
            result = recover_structured_output(text)
            self.assertIsInstance(result.errors, list)


class RepairHelpersTests(unittest.TestCase):
    def test_strip_noise_keeps_urls(self):
        self.assertEqual(strip_noise('"u": "https://a.b/c" // note'), '"u": "https://a.b/c" ')

    def test_scan_block_reports_closure(self):
        block, closed = scan_block('x {"a": [1, {"b": 2}]} y', 2)
        self.assertEqual(block, '{"a": [1, {"b": 2}]}')
        self.assertTrue(closed)
        block, closed = scan_block('{"a": [1, 2', 0)
        self.assertFalse(closed)

    def test_closers_appended_in_nesting_order(self):
        self.assertEqual(json.loads(repair_block('{"a": [{"b": [1, 2')), {"a": [{"b": [1, 2]}]})


class ExtractClaimsTests(unittest.TestCase):
    def setUp(self):
        items, _ = load_evidence([
            {"id": "b1", "kind": "market", "ticker": "BTC", "metric": "vol24h", "value": 1e6,
             "observedAt": "2025-03-01T11:00:00Z", "relevance": 1},
            {"id": "b2", "kind": "tech", "ticker": "BTC", "source": "indicators", "metric": "RSI",
             "value": 60, "observedAt": "2025-03-01T11:00:00Z", "relevance": 1},
        ])
        self.index = EvidenceIndex(items)

    def test_block_entries_build_claims(self):
        block = {"claims": [
            {"ticker": "btc", "claim": "buy", "confidence": "0.7", "direction": "Bullish", "magnitude": 0.3,
             "signals": [{"name": "rsi", "value": 61}], "thesis": "Trend intact", "agentRole": "sentiment"},
        ]}
        result = extract_claims(recover_structured_output(json.dumps(block)), "technical", ["BTC"], T0, self.index)
        claim = result.claims[0]
        self.assertEqual(claim.ticker, "BTC")
        self.assertEqual(claim.role, "technical")
        self.assertEqual(claim.action, "BUY")
        self.assertAlmostEqual(claim.confidence, 0.7)
        self.assertEqual(claim.direction, "bullish")
        self.assertEqual(claim.signals, {"rsi": 61.0})
        self.assertEqual(claim.rationale, "Trend intact")
        self.assertEqual(claim.evidence, ("b1", "b2"))
        self.assertEqual(claim.id, f"BTC_technical_{int(T0.timestamp() * 1000)}_0")

    def test_entries_missing_fields_are_skipped(self):
        block = {"claims": [{"ticker": "BTC"}, {"action": "BUY"}, "nope", {"ticker": "ETH", "action": "HOLD"}]}
        result = extract_claims(recover_structured_output(json.dumps(block)), "fundamental", [], T0, self.index)
        self.assertEqual([c.ticker for c in result.claims], ["ETH"])
        self.assertEqual(len(result.errors), 3)
        self.assertEqual(result.claims[0].confidence, 0.5)
        self.assertTrue(result.claims[0].evidence[0].startswith("ETH_market_data_"))

    def test_non_numeric_confidence_becomes_nan(self):
        block = {"claims": [{"ticker": "BTC", "action": "BUY", "confidence": "high"}]}
        result = extract_claims(recover_structured_output(json.dumps(block)), "fundamental", [], T0)
        self.assertTrue(math.isnan(result.claims[0].confidence))

    def test_out_of_range_confidence_is_not_clamped(self):
        block = {"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 1.4}]}
        result = extract_claims(recover_structured_output(json.dumps(block)), "fundamental", [], T0)
        self.assertEqual(result.claims[0].confidence, 1.4)

    def test_non_text_rationale_is_coerced_or_dropped(self):
        block = {"claims": [
            {"ticker": "BTC", "action": "BUY", "rationale": 42},
            {"ticker": "ETH", "action": "SELL", "rationale": ["too", "many"]},
            {"ticker": "SOL", "action": "HOLD", "thesis": {"why": "flat"}},
        ]}
        result = extract_claims(recover_structured_output(json.dumps(block)), "fundamental", [], T0)
        by_ticker = {c.ticker: c for c in result.claims}
        self.assertEqual(by_ticker["BTC"].rationale, "42")
        self.assertIsNone(by_ticker["ETH"].rationale)
        self.assertIsNone(by_ticker["SOL"].rationale)
        self.assertEqual(len(result.errors), 2)

    def test_entry_timestamp_is_kept(self):
        block = {"claims": [{"ticker": "BTC", "action": "BUY", "timestamp": "2025-03-02T00:00:00Z"}]}
        result = extract_claims(recover_structured_output(json.dumps(block)), "fundamental", [], T0)
        self.assertEqual(result.claims[0].timestamp.day, 2)

    def test_text_fallback_last_match_wins(self):
        narrative = "Early on BTC looked like a BUY.\nOn reflection BTC is a sell here.\nETH: hold.\nETHW irrelevant BUY"
        result = extract_claims_from_text(narrative, ["BTC", "ETH", "SOL"], "sentiment", T0, self.index)
        by_ticker = {c.ticker: c for c in result.claims}
        self.assertEqual(by_ticker["BTC"].action, "SELL")
        self.assertEqual(by_ticker["ETH"].action, "HOLD")
        self.assertNotIn("SOL", by_ticker)
        self.assertEqual(by_ticker["BTC"].confidence, 0.5)
        self.assertEqual(by_ticker["BTC"].evidence, ("b1", "b2"))
        self.assertEqual(len(by_ticker["ETH"].evidence), 1)

    def test_invalid_block_falls_back_to_text(self):
        result = extract_claims(recover_structured_output("I say SOL: BUY."), "technical", ["SOL"], T0)
        self.assertEqual(result.source, "text")
        self.assertEqual(result.claims[0].action, "BUY")
        self.assertTrue(result.errors)

    def test_nothing_recoverable_yields_empty(self):
        result = extract_claims(recover_structured_output("No opinion."), "technical", ["SOL"], T0)
        self.assertEqual(result.source, "none")
        self.assertEqual(result.claims, [])


if __name__ == "__main__":
    unittest.main()

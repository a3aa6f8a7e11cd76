import json
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from tradecouncil.audit import AuditLog
from tradecouncil.config import Config
from tradecouncil.consensus import MarketStats
from tradecouncil.evidence import load_evidence
from tradecouncil.models.ollama import ModelCallError
from tradecouncil.pipeline import RoundAbortedError, RoundCoordinator, RoundInput
from tradecouncil.roles import AnalysisRole, build_prompt, replay_model
from tradecouncil.verification import ViolationKind

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

EVIDENCE = [
    {"id": "b1", "kind": "market", "ticker": "BTC", "source": "binance", "metric": "vol24h", "value": 2e6,
     "observedAt": "2025-03-01T11:50:00Z", "relevance": 0.9},
    {"id": "b2", "kind": "tech", "ticker": "BTC", "source": "indicators", "metric": "RSI(14,1h)", "value": 72,
     "observedAt": "2025-03-01T11:50:00Z", "relevance": 0.8},
    {"id": "e1", "kind": "market", "ticker": "ETH", "source": "binance", "metric": "vol24h", "value": 9e5,
     "observedAt": "2025-03-01T11:50:00Z", "relevance": 0.9},
    {"id": "fng", "kind": "index", "name": "fear_greed", "value": 70,
     "observedAt": "2025-03-01T09:00:00Z", "relevance": 0.5},
]

FUNDAMENTAL = (
    "Deep BTC book.\n"
    '{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.8, "evidence": ["b1"], "rationale": "Deep liquidity"},'
    ' {"ticker": "ETH", "action": "BUY", "confidence": 0.7, "evidence": ["e1"], "rationale": "Healthy volume"}]}'
)
SENTIMENT = (
    '```json\n{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.6, "evidence": ["fng"], '
    '"rationale": "Greedy market mood"}, {"ticker": "ETH", "action": "BUY", "confidence": 0.75, '
    '"evidence": ["e1"], "rationale": "Upgrade chatter is positive"'
)
TECHNICAL = "RSI is stretched, BTC: SELL. ETH trend fine, ETH: BUY."


def base_config(**pipeline):
    raw = {
        "pipeline": {"role_timeout_seconds": 5, **pipeline},
        "verification": {"trusted_sources": {}},
    }
    return Config(raw)


def round_input(**overrides):
    evidence, errors = load_evidence(EVIDENCE)
    assert not errors
    values = dict(
        universe=["BTC", "ETH"],
        evidence=evidence,
        market_stats={
            "BTC": MarketStats("BTC", 2_000_000, 2),
            "ETH": MarketStats("ETH", 900_000, 5),
        },
        timestamp=NOW,
        round_id="r1",
    )
    values.update(overrides)
    return RoundInput(**values)


def roles(**texts):
    return [AnalysisRole(name=name, model=replay_model(text)) for name, text in texts.items()]


class RoundCoordinatorTests(unittest.TestCase):
    def test_full_round(self):
        coordinator = RoundCoordinator(
            base_config(),
            roles(fundamental=FUNDAMENTAL, sentiment=SENTIMENT, technical=TECHNICAL),
        )
        artifact = coordinator.run_round(round_input())

        self.assertEqual(artifact.round_id, "r1")
        self.assertEqual(artifact.cutoff, NOW - timedelta(seconds=60))
        self.assertEqual(artifact.errors, [])
        sources = {r.role: r.source for r in artifact.role_reports}
        self.assertEqual(sources, {"fundamental": "structured", "sentiment": "structured", "technical": "text"})

        # BTC disagreed (BUY/BUY/SELL) and was collapsed to HOLD by the debate
        btc = [c for c in artifact.claims if c.ticker == "BTC"]
        self.assertEqual({c.action for c in btc}, {"HOLD"})
        self.assertEqual(artifact.debate.state.value, "converged")
        self.assertEqual(len(artifact.debate_log), 1)

        tickers = [r.ticker for r in artifact.consensus]
        self.assertEqual(sorted(tickers), ["BTC", "ETH"])
        eth = next(r for r in artifact.consensus if r.ticker == "ETH")
        self.assertAlmostEqual(eth.coverage, 1.0)

        votes = {v.ticker: v.action for v in artifact.action_consensus}
        self.assertEqual(votes, {"BTC": "HOLD", "ETH": "BUY"})
        decisions = {d.ticker: d.action for d in artifact.decisions}
        self.assertEqual(decisions["BTC"], "HOLD")
        self.assertEqual(artifact.target_weights, {"ETH": 1.0} if decisions["ETH"] == "BUY" else {})

        kinds = {v.kind for v in artifact.violations}
        self.assertIn(ViolationKind.EXTRACTION_FAILURE, kinds)
        json.dumps(artifact.to_dict())

    def test_role_failure_does_not_abort_round(self):
        def broken(prompt, system=None, timeout=120.0):
            raise ModelCallError("upstream 500")

        coordinator = RoundCoordinator(
            base_config(),
            [AnalysisRole("fundamental", replay_model(FUNDAMENTAL)), AnalysisRole("technical", broken)],
        )
        artifact = coordinator.run_round(round_input())
        self.assertEqual(len(artifact.errors), 1)
        self.assertIn("technical", artifact.errors[0])
        failures = [v for v in artifact.violations if v.kind == ViolationKind.ROLE_FAILURE]
        self.assertEqual(len(failures), 1)
        self.assertEqual({c.role for c in artifact.claims}, {"fundamental"})
        self.assertEqual(len(artifact.consensus), 2)

    def test_role_timeout_is_a_role_failure(self):
        release = threading.Event()

        def slow(prompt, system=None, timeout=120.0):
            release.wait(5)
            return TECHNICAL

        coordinator = RoundCoordinator(
            base_config(role_timeouts={"technical": 0.2}),
            [AnalysisRole("fundamental", replay_model(FUNDAMENTAL)), AnalysisRole("technical", slow)],
        )
        try:
            artifact = coordinator.run_round(round_input())
        finally:
            release.set()
        self.assertEqual(len(artifact.errors), 1)
        self.assertIn("timed out", artifact.errors[0])
        report = next(r for r in artifact.role_reports if r.role == "technical")
        self.assertFalse(report.ok)
        self.assertTrue(artifact.consensus)

    def test_zero_roles_yields_empty_consensus(self):
        artifact = RoundCoordinator(base_config(), []).run_round(round_input())
        self.assertEqual(artifact.claims, [])
        self.assertEqual(artifact.consensus, [])
        self.assertEqual(artifact.decisions, [])

    def test_all_roles_failing_yields_empty_consensus(self):
        def broken(prompt, system=None, timeout=120.0):
            raise RuntimeError("boom")

        coordinator = RoundCoordinator(base_config(), [AnalysisRole(n, broken) for n in ("fundamental", "sentiment")])
        artifact = coordinator.run_round(round_input())
        self.assertEqual(artifact.consensus, [])
        self.assertEqual(len(artifact.errors), 2)

    def test_claims_after_cutoff_are_rejected(self):
        future = (NOW + timedelta(hours=1)).isoformat()
        text = '{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.9, "evidence": ["b1"], "timestamp": "%s"}]}' % future
        artifact = RoundCoordinator(base_config(), roles(fundamental=text)).run_round(round_input())
        self.assertEqual(artifact.claims, [])
        self.assertEqual(len(artifact.rejected), 1)
        temporal = [v for v in artifact.violations if v.kind == ViolationKind.TEMPORAL]
        self.assertEqual(len(temporal), 1)

    def test_non_text_rationale_does_not_abort_round(self):
        text = '{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.7, "evidence": ["b1"], "rationale": 42}]}'
        artifact = RoundCoordinator(base_config(), roles(fundamental=text)).run_round(round_input())
        self.assertEqual(artifact.errors, [])
        self.assertEqual([c.rationale for c in artifact.claims], ["42"])
        self.assertEqual([r.ticker for r in artifact.consensus], ["BTC"])

    def test_naive_round_timestamp_is_treated_as_utc(self):
        text = ('{"claims": [{"ticker": "BTC", "action": "BUY", "confidence": 0.7, "evidence": ["b1"], '
                '"timestamp": "2025-03-01T10:00:00Z"}]}')
        artifact = RoundCoordinator(base_config(), roles(fundamental=text)).run_round(
            round_input(timestamp=datetime(2025, 3, 1, 12, 0), cutoff=datetime(2025, 3, 1, 11, 59))
        )
        self.assertEqual(artifact.timestamp, NOW)
        self.assertEqual(artifact.cutoff, NOW - timedelta(seconds=60))
        self.assertEqual([c.ticker for c in artifact.claims], ["BTC"])
        self.assertEqual(artifact.rejected, [])

    def test_missing_market_stats_reported(self):
        artifact = RoundCoordinator(base_config(), roles(fundamental=FUNDAMENTAL)).run_round(
            round_input(market_stats={"BTC": MarketStats("BTC", 2_000_000, 2)})
        )
        self.assertEqual([r.ticker for r in artifact.consensus], ["BTC"])
        insufficient = [v for v in artifact.violations if v.kind == ViolationKind.INSUFFICIENT_MARKET_DATA]
        self.assertEqual([v.ticker for v in insufficient], ["ETH"])

    def test_kill_switch(self):
        switch = threading.Event()
        switch.set()
        coordinator = RoundCoordinator(base_config(), roles(fundamental=FUNDAMENTAL))
        with self.assertRaises(RoundAbortedError):
            coordinator.run_round(round_input(), kill_switch=switch)

    def test_max_positions_follows_risk_profile(self):
        coordinator = RoundCoordinator(base_config(), roles(fundamental=FUNDAMENTAL))
        artifact = coordinator.run_round(round_input(risk_profile="averse"))
        self.assertLessEqual(len(artifact.consensus), 5)
        limited = RoundCoordinator(base_config(max_positions=1), roles(fundamental=FUNDAMENTAL))
        self.assertEqual(len(limited.run_round(round_input()).consensus), 1)

    def test_audit_log_written(self):
        with tempfile.TemporaryDirectory() as tmp:
            audit = AuditLog(Path(tmp) / "audit.jsonl")
            coordinator = RoundCoordinator(base_config(), roles(fundamental=FUNDAMENTAL, technical=TECHNICAL), audit=audit)
            coordinator.run_round(round_input())
            events = [entry["event"] for entry in audit.read()]
        self.assertEqual(events[0], "round_start")
        self.assertEqual(events[-1], "round_complete")
        self.assertIn("violation", events)


class PromptTests(unittest.TestCase):
    def test_prompt_lists_role_relevant_evidence(self):
        coordinator = RoundCoordinator(base_config(), [])
        ctx = coordinator._context(round_input())
        technical = build_prompt("technical", ctx)
        sentiment = build_prompt("sentiment", ctx)
        self.assertIn("RSI(14,1h)", technical)
        self.assertNotIn("fear_greed", technical)
        self.assertIn("fear_greed", sentiment)
        self.assertIn('"claims"', technical)


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3
"""
TradeCouncil demo: replay one recorded decision round.

Run:
    python examples/replay_round.py [path/to/bundle.json]

Uses the role responses stored in the bundle, so no model server is needed.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path

from tradecouncil.cli import _replay_roles, _round_input
from tradecouncil.config import get_config
from tradecouncil.pipeline import RoundCoordinator

DEFAULT_BUNDLE = Path(__file__).resolve().parent / "bundles" / "btc_eth_round.json"


def main() -> None:
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_BUNDLE
    bundle = json.loads(path.read_text())
    errors: list[str] = []
    round_input = _round_input(bundle, errors)
    config = get_config()
    coordinator = RoundCoordinator(config, _replay_roles(config, bundle.get("responses") or {}))
    artifact = coordinator.run_round(round_input)

    print(f"Round {artifact.round_id} (cutoff {artifact.cutoff.isoformat()})")
    for report in artifact.role_reports:
        print(f"  {report.role:<12} ok={report.ok} claims={report.claims} via {report.source}")
    print(f"  debate: {artifact.debate.state.value} after {len(artifact.debate_log)} round(s)")
    for record, decision in zip(artifact.consensus, artifact.decisions):
        print(
            f"  {record.ticker:<5} score={record.final_score:.3f} coverage={record.coverage:.2f} "
            f"liquidity={record.liquidity:.2f} -> {decision.action}"
        )
    for violation in artifact.violations:
        print(f"  [{violation.severity}] {violation.kind.value} {violation.ticker}: {violation.detail}")
    if errors:
        print("  input errors: " + "; ".join(errors))


if __name__ == "__main__":
    main()

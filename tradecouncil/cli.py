"""Command line interface for TradeCouncil."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from tradecouncil.config import Config, get_config
from tradecouncil.consensus import load_market_stats
from tradecouncil.evidence import EvidenceIndex, load_evidence, parse_timestamp
from tradecouncil.models.ollama import OllamaClient, OllamaModel
from tradecouncil.pipeline import RoundCoordinator, RoundInput
from tradecouncil.recovery import extract_claims, recover_structured_output
from tradecouncil.roles import AnalysisRole, build_roles, replay_model


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _read_json(path: str) -> Dict[str, Any]:
    return json.loads(Path(path).read_text())


def _ollama_roles(config: Config) -> List[AnalysisRole]:
    client = OllamaClient(config.models.get("ollama_url", "http://localhost:11434"))
    temperature = float(config.models.get("temperature", 0.2))
    per_role = config.models.get("roles") or {}
    models = {
        name: OllamaModel(client, model_name, temperature)
        for name, model_name in per_role.items()
        if model_name
    }
    return build_roles(config.roles, models)


def _replay_roles(config: Config, responses: Dict[str, str]) -> List[AnalysisRole]:
    return build_roles(config.roles, {name: replay_model(str(text)) for name, text in responses.items()})


def _round_input(bundle: Dict[str, Any], errors: List[str]) -> RoundInput:
    evidence, evidence_errors = load_evidence(bundle.get("evidence") or [])
    stats, stats_errors = load_market_stats(bundle.get("market_stats") or [])
    errors.extend(evidence_errors)
    errors.extend(stats_errors)
    universe = bundle.get("universe") or sorted(stats)
    return RoundInput(
        universe=[str(t) for t in universe],
        evidence=evidence,
        market_stats=stats,
        timestamp=parse_timestamp(bundle["timestamp"]) if bundle.get("timestamp") else None,
        cutoff=parse_timestamp(bundle["cutoff"]) if bundle.get("cutoff") else None,
        round_id=bundle.get("round_id"),
        risk_profile=bundle.get("risk_profile"),
    )


def cmd_run(args: argparse.Namespace) -> int:
    config = get_config(Path(args.config) if args.config else None)
    bundle = _read_json(args.bundle)
    input_errors: List[str] = []
    round_input = _round_input(bundle, input_errors)
    responses = bundle.get("responses") or {}
    if args.offline or responses:
        roles = _replay_roles(config, responses)
    else:
        roles = _ollama_roles(config)
    coordinator = RoundCoordinator(config, roles)
    artifact = coordinator.run_round(round_input)
    payload = artifact.to_dict()
    payload["input_errors"] = input_errors
    _print(payload)
    return 0


def cmd_recover(args: argparse.Namespace) -> int:
    text = Path(args.file).read_text() if args.file else sys.stdin.read()
    universe = [t.strip().upper() for t in (args.universe or "").split(",") if t.strip()]
    evidence = EvidenceIndex()
    if args.evidence:
        items, _ = load_evidence(_read_json(args.evidence).get("evidence") or [])
        evidence = EvidenceIndex(items)
    result = recover_structured_output(text)
    extraction = extract_claims(
        result,
        role=args.role,
        universe=universe,
        timestamp=datetime.now(timezone.utc),
        evidence=evidence,
    )
    _print({
        "recovery": result.to_dict(),
        "source": extraction.source,
        "claims": [c.to_dict() for c in extraction.claims],
        "errors": extraction.errors,
    })
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    config = get_config(Path(args.config) if args.config else None)
    _print({
        "roles": config.roles,
        "role_weights": config.role_weights,
        "risk_profile": config.risk_profile,
        "max_positions": config.max_positions,
        "decision_bands": config.active_bands,
        "max_debate_rounds": config.max_debate_rounds,
        "neutral_confidence_ceiling": config.neutral_confidence_ceiling,
        "role_timeout_seconds": config.role_timeout_seconds(),
        "raw": config.raw,
    })
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tradecouncil")
    parser.add_argument("--log-level", default="WARNING")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run one decision round over a JSON bundle")
    run.add_argument("--bundle", required=True)
    run.add_argument("--config")
    run.add_argument("--offline", action="store_true", help="Use recorded responses only")

    recover = sub.add_parser("recover", help="Show claim recovery for a raw model response")
    recover.add_argument("--file")
    recover.add_argument("--universe", default="")
    recover.add_argument("--role", default="technical")
    recover.add_argument("--evidence")

    cfg = sub.add_parser("config", help="Print the effective configuration")
    cfg.add_argument("--config")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if args.command == "run":
        return cmd_run(args)
    if args.command == "recover":
        return cmd_recover(args)
    if args.command == "config":
        return cmd_config(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())

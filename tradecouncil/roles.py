"""Analysis roles and the per-round context they are prompted with."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from tradecouncil.consensus import MarketStats, describe_stats
from tradecouncil.evidence import (
    Evidence,
    EvidenceIndex,
    IndexEvidence,
    MarketEvidence,
    MetricEvidence,
    NewsEvidence,
    describe_evidence,
    format_timestamp,
)

# prompt, system, timeout -> raw text
ModelFn = Callable[..., str]


@dataclass(frozen=True)
class RoundContext:
    """Everything a role may see in one round. Built fresh per round and never shared."""

    round_id: str
    timestamp: datetime
    cutoff: datetime
    universe: tuple
    evidence: EvidenceIndex
    market_stats: Mapping[str, MarketStats] = field(default_factory=dict)
    risk_profile: str = "neutral"


ROLE_BRIEFS: Dict[str, str] = {
    "fundamental": (
        "You are the fundamental analyst on a crypto investment committee. "
        "Judge each asset on liquidity, trading volume, spread and market structure. "
        "Prefer deep, tight markets; flag thin or widening ones."
    ),
    "sentiment": (
        "You are the sentiment analyst on a crypto investment committee. "
        "Judge each asset on news flow, social chatter and market-wide mood such as the fear-greed index. "
        "Discount stale or low-relevance headlines."
    ),
    "technical": (
        "You are the technical analyst on a crypto investment committee. "
        "Judge each asset on indicators such as RSI, MACD, moving averages and VWAP versus close. "
        "State the signal values you relied on."
    ),
}


def _relevant(role: str, item: Evidence) -> bool:
    if isinstance(item, NewsEvidence):
        return role in ("sentiment", "fundamental")
    if isinstance(item, MarketEvidence):
        return True
    if isinstance(item, MetricEvidence):
        if item.kind == "tech":
            return role == "technical"
        if item.kind == "social":
            return role == "sentiment"
        return role == "fundamental"
    if isinstance(item, IndexEvidence):
        return role == "sentiment"
    raise TypeError(f"unsupported evidence type {type(item).__name__}")


def build_prompt(role: str, context: RoundContext) -> str:
    lines: List[str] = [
        f"Round {context.round_id} at {format_timestamp(context.timestamp)} (risk profile: {context.risk_profile}).",
        f"Only use information observed at or before {format_timestamp(context.cutoff)}.",
        f"Universe: {', '.join(context.universe)}",
        "",
        "Market stats:",
    ]
    for ticker in context.universe:
        stats = context.market_stats.get(ticker)
        lines.append(f"- {describe_stats(stats)}" if stats else f"- {ticker}: no market stats")
    lines.append("")
    lines.append("Evidence:")
    shown = 0
    for ticker in list(context.universe) + ["GLOBAL"]:
        for item in context.evidence.for_ticker(ticker):
            if _relevant(role, item):
                lines.append(f"- {describe_evidence(item)}")
                shown += 1
    if not shown:
        lines.append("- none")
    lines.extend(
        [
            "",
            "Write a short analysis, then a JSON object exactly like:",
            '{"claims": [{"ticker": "BTC", "action": "BUY|SELL|HOLD", "confidence": 0.0-1.0, '
            '"evidence": ["<evidence id>"], "direction": "bullish|bearish|neutral", "magnitude": -1..1, '
            '"riskFlags": [], "signals": {"name": 0.0}, "rationale": "..."}]}',
            "Cite only evidence ids listed above. Include one claim per asset you have a view on.",
        ]
    )
    return "\n".join(lines)


@dataclass
class AnalysisRole:
    name: str
    model: ModelFn
    brief: Optional[str] = None

    @property
    def system(self) -> str:
        return self.brief or ROLE_BRIEFS.get(self.name, f"You are the {self.name} analyst.")

    def run(self, context: RoundContext, timeout: float = 120.0) -> str:
        return self.model(build_prompt(self.name, context), system=self.system, timeout=timeout)

    def ask(self, prompt: str, timeout: float = 120.0) -> str:
        return self.model(prompt, system=self.system, timeout=timeout)


def replay_model(text: str) -> ModelFn:
    """Model stand-in that returns a recorded response, for offline rounds."""

    def _model(prompt: str, system: str | None = None, timeout: float = 120.0) -> str:
        return text

    return _model


def build_roles(names: Sequence[str], models: Mapping[str, ModelFn]) -> List[AnalysisRole]:
    return [AnalysisRole(name=name, model=models[name]) for name in names if name in models]

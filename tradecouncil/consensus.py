"""Consensus scoring, weighted action votes and decision banding."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from statistics import fmean
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import math

from tradecouncil.claims import NEUTRAL_ACTION, ROLES, Claim, group_by_ticker, latest_per_role
from tradecouncil.evidence import EvidenceError, format_timestamp, parse_timestamp
from tradecouncil.verification import CRITICAL, Violation, ViolationKind

logger = logging.getLogger(__name__)

DEFAULT_ROLE_WEIGHTS = {"fundamental": 0.3, "sentiment": 0.3, "technical": 0.4}
DEFAULT_BANDS = {
    "averse": {"buy": 0.4, "sell": -0.4, "min_confidence": 0.7},
    "neutral": {"buy": 0.3, "sell": -0.3, "min_confidence": 0.6},
    "bold": {"buy": 0.2, "sell": -0.2, "min_confidence": 0.5},
}


@dataclass(frozen=True)
class MarketStats:
    symbol: str
    volume_24h: float
    spread: float
    timestamp: Optional[datetime] = None
    close: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MarketStats":
        volume = payload.get("volume24h", payload.get("volume_24h", payload.get("vol24h")))
        spread = payload.get("spread", payload.get("spread_bps"))
        if volume is None or spread is None:
            raise ValueError(f"market stats for {payload.get('symbol')!r} need volume24h and spread")
        stamp = payload.get("timestamp")
        close = payload.get("close")
        stats = cls(
            symbol=str(payload.get("symbol") or payload.get("ticker") or "").strip(),
            volume_24h=float(volume),
            spread=float(spread),
            timestamp=parse_timestamp(stamp) if stamp is not None else None,
            close=float(close) if close is not None else None,
        )
        if not stats.symbol:
            raise ValueError("market stats need a symbol")
        if not (math.isfinite(stats.volume_24h) and math.isfinite(stats.spread)):
            raise ValueError(f"market stats for {stats.symbol} must be finite")
        return stats


def load_market_stats(records: Iterable[Mapping[str, Any]] | Mapping[str, Mapping[str, Any]]) -> Tuple[Dict[str, MarketStats], List[str]]:
    if isinstance(records, Mapping):
        items = [dict(value, symbol=value.get("symbol", key)) for key, value in records.items()]
    else:
        items = list(records)
    stats: Dict[str, MarketStats] = {}
    errors: List[str] = []
    for raw in items:
        try:
            entry = MarketStats.from_dict(raw)
        except (EvidenceError, ValueError, TypeError) as exc:
            errors.append(f"market stats: {exc}")
            logger.warning(f"Skipping market stats record: {exc}")
            continue
        stats[entry.symbol] = entry
    return stats, errors


@dataclass(frozen=True)
class ConsensusRecord:
    ticker: str
    avg_confidence: float
    coverage: float
    liquidity: float
    final_score: float
    claims: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "avg_confidence": self.avg_confidence,
            "coverage": self.coverage,
            "liquidity": self.liquidity,
            "final_score": self.final_score,
            "claims": list(self.claims),
        }


@dataclass
class ScoringResult:
    records: List[ConsensusRecord] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)


class ConsensusEngine:
    def __init__(
        self,
        roles: Sequence[str] = ROLES,
        volume_norm: float = 1_000_000.0,
        volume_weight: float = 0.7,
        spread_weight: float = 0.3,
    ) -> None:
        self.roles = tuple(roles)
        self.volume_norm = volume_norm
        self.volume_weight = volume_weight
        self.spread_weight = spread_weight

    @classmethod
    def from_config(cls, roles: Sequence[str], settings: Mapping[str, Any]) -> "ConsensusEngine":
        return cls(
            roles=roles,
            volume_norm=float(settings.get("volume_norm", 1_000_000)),
            volume_weight=float(settings.get("volume_weight", 0.7)),
            spread_weight=float(settings.get("spread_weight", 0.3)),
        )

    def liquidity(self, stats: MarketStats) -> float:
        volume = min(max(stats.volume_24h, 0.0) / self.volume_norm, 1.0)
        spread = max(0.0, 1.0 - stats.spread / 100.0)
        return self.volume_weight * volume + self.spread_weight * spread

    def score(
        self,
        claims: Sequence[Claim],
        market_stats: Mapping[str, MarketStats],
        max_positions: int,
    ) -> ScoringResult:
        result = ScoringResult()
        if not claims:
            return result
        total_roles = len(self.roles) or 1
        for ticker, group in group_by_ticker(claims).items():
            stats = market_stats.get(ticker)
            if stats is None:
                result.violations.append(
                    Violation(
                        ViolationKind.INSUFFICIENT_MARKET_DATA,
                        ticker,
                        f"{len(group)} claim(s) but no market stats; excluded from consensus",
                        severity=CRITICAL,
                    )
                )
                continue
            avg_confidence = fmean(c.confidence for c in group)
            coverage = len({c.role for c in group}) / total_roles
            liquidity = self.liquidity(stats)
            result.records.append(
                ConsensusRecord(
                    ticker=ticker,
                    avg_confidence=avg_confidence,
                    coverage=coverage,
                    liquidity=liquidity,
                    final_score=avg_confidence * coverage * liquidity,
                    claims=tuple(c.id for c in group),
                )
            )
        result.records.sort(key=lambda r: (-r.final_score, -r.coverage, -r.avg_confidence, r.ticker))
        result.records = result.records[: max(0, int(max_positions))]
        logger.info(f"Consensus built for {len(result.records)} ticker(s), {len(result.violations)} skipped")
        return result


def build_consensus(
    claims: Sequence[Claim],
    market_stats: Mapping[str, MarketStats],
    max_positions: int,
    engine: ConsensusEngine | None = None,
) -> List[ConsensusRecord]:
    return (engine or ConsensusEngine()).score(claims, market_stats, max_positions).records


@dataclass(frozen=True)
class ActionConsensus:
    ticker: str
    action: str
    buy_score: float
    sell_score: float
    hold_score: float
    confidence: float
    roles: Tuple[str, ...]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "action": self.action,
            "buy_score": self.buy_score,
            "sell_score": self.sell_score,
            "hold_score": self.hold_score,
            "confidence": self.confidence,
            "roles": list(self.roles),
            "reason": self.reason,
        }


def weighted_action(
    ticker: str,
    claims: Sequence[Claim],
    role_weights: Mapping[str, float],
    action_threshold: float = 0.3,
    min_confidence: float = 0.4,
    default_weight: float | None = None,
) -> ActionConsensus:
    """Role-weighted vote for one ticker.

    BUY or SELL wins only with a margin above ``action_threshold`` over both
    other buckets, and only when the weighted confidence reaches
    ``min_confidence``.
    """
    latest = latest_per_role(claims)
    fallback = default_weight if default_weight is not None else 1.0 / max(len(role_weights), 1)
    mass = {"BUY": 0.0, "SELL": 0.0, NEUTRAL_ACTION: 0.0}
    total_weight = 0.0
    for role, claim in sorted(latest.items()):
        weight = float(role_weights.get(role, fallback))
        total_weight += weight
        bucket = claim.action if claim.action in ("BUY", "SELL") else NEUTRAL_ACTION
        mass[bucket] += weight * claim.confidence
    if total_weight <= 0:
        return ActionConsensus(ticker, NEUTRAL_ACTION, 0.0, 0.0, 0.0, 0.0, tuple(sorted(latest)), "no weighted roles")
    buy = mass["BUY"] / total_weight
    sell = mass["SELL"] / total_weight
    hold = mass[NEUTRAL_ACTION] / total_weight
    confidence = buy + sell + hold

    action = NEUTRAL_ACTION
    if buy > sell and buy > hold and buy - max(sell, hold) > action_threshold:
        action = "BUY"
    elif sell > buy and sell > hold and sell - max(buy, hold) > action_threshold:
        action = "SELL"
    reason = f"buy {buy:.2f} / sell {sell:.2f} / hold {hold:.2f}"
    if action != NEUTRAL_ACTION and confidence < min_confidence:
        reason += f"; confidence {confidence:.2f} below {min_confidence:.2f}"
        action = NEUTRAL_ACTION
    return ActionConsensus(ticker, action, buy, sell, hold, confidence, tuple(sorted(latest)), reason)


def decide_actions(
    claims: Sequence[Claim],
    role_weights: Mapping[str, float],
    action_threshold: float = 0.3,
    min_confidence: float = 0.4,
) -> List[ActionConsensus]:
    return [
        weighted_action(ticker, group, role_weights, action_threshold, min_confidence)
        for ticker, group in sorted(group_by_ticker(claims).items())
    ]


def band(score: float, buy: float = 0.3, sell: float = -0.3) -> str:
    if score > buy:
        return "BUY"
    if score < sell:
        return "SELL"
    return NEUTRAL_ACTION


@dataclass(frozen=True)
class Decision:
    ticker: str
    action: str
    score: float
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "action": self.action,
            "score": self.score,
            "confidence": self.confidence,
            "reason": self.reason,
        }


def signed_score(record: ConsensusRecord, vote: ActionConsensus | None) -> float:
    """Orient the unsigned consensus score by the weighted buy/sell balance."""
    if vote is None:
        return record.final_score
    if vote.buy_score > vote.sell_score:
        return record.final_score
    if vote.sell_score > vote.buy_score:
        return -record.final_score
    return 0.0


def band_decisions(
    records: Sequence[ConsensusRecord],
    bands: Mapping[str, float],
    votes: Mapping[str, ActionConsensus] | None = None,
) -> List[Decision]:
    buy = float(bands.get("buy", 0.3))
    sell = float(bands.get("sell", -0.3))
    min_confidence = float(bands.get("min_confidence", 0.0))
    decisions: List[Decision] = []
    for record in records:
        score = signed_score(record, (votes or {}).get(record.ticker))
        action = band(score, buy, sell)
        reason = f"score {score:+.3f} against bands {sell:+.2f}/{buy:+.2f}"
        if action != NEUTRAL_ACTION and record.avg_confidence < min_confidence:
            reason += f"; confidence {record.avg_confidence:.2f} below {min_confidence:.2f}"
            action = NEUTRAL_ACTION
        decisions.append(Decision(record.ticker, action, score, record.avg_confidence, reason))
    return decisions


def target_weights(decisions: Sequence[Decision]) -> Dict[str, float]:
    """Equal weight across actionable decisions, signed by side."""
    active = [d for d in decisions if d.action in ("BUY", "SELL")]
    if not active:
        return {}
    share = 1.0 / len(active)
    return {d.ticker: share if d.action == "BUY" else -share for d in sorted(active, key=lambda d: d.ticker)}


def describe_stats(stats: MarketStats) -> str:
    stamp = f" @ {format_timestamp(stats.timestamp)}" if stats.timestamp else ""
    return f"{stats.symbol}: 24h volume {stats.volume_24h:,.0f}, spread {stats.spread:g} bps{stamp}"

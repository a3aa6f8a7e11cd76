"""Claim record shared by recovery, verification, debate and scoring."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tradecouncil.evidence import format_timestamp, parse_timestamp

ROLES = ("fundamental", "sentiment", "technical")
ACTIONS = ("BUY", "HOLD", "SELL")
DIRECTIONS = ("bullish", "bearish", "neutral")
NEUTRAL_ACTION = "HOLD"


def normalize_action(label: Any) -> str:
    return str(label or "").strip().upper()


@dataclass(frozen=True)
class Claim:
    id: str
    ticker: str
    role: str
    action: str
    confidence: float
    evidence: Tuple[str, ...]
    timestamp: datetime
    risk_flags: Tuple[str, ...] = ()
    signals: Mapping[str, float] = field(default_factory=dict, hash=False, compare=True)
    direction: Optional[str] = None
    magnitude: Optional[float] = None
    rationale: Optional[str] = None
    revised_from: Tuple[str, ...] = ()

    def revise(self, **changes: Any) -> "Claim":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "ticker": self.ticker,
            "role": self.role,
            "action": self.action,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.risk_flags:
            data["risk_flags"] = list(self.risk_flags)
        if self.signals:
            data["signals"] = dict(self.signals)
        if self.direction is not None:
            data["direction"] = self.direction
        if self.magnitude is not None:
            data["magnitude"] = self.magnitude
        if self.rationale:
            data["rationale"] = self.rationale
        if self.revised_from:
            data["revised_from"] = list(self.revised_from)
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Claim":
        magnitude = payload.get("magnitude")
        return cls(
            id=str(payload.get("id") or ""),
            ticker=str(payload.get("ticker") or ""),
            role=str(payload.get("role") or ""),
            action=normalize_action(payload.get("action")),
            confidence=float(payload.get("confidence", 0.0)),
            evidence=tuple(str(e) for e in payload.get("evidence") or ()),
            timestamp=parse_timestamp(payload.get("timestamp")),
            risk_flags=tuple(str(f) for f in payload.get("risk_flags") or ()),
            signals={str(k): float(v) for k, v in (payload.get("signals") or {}).items()},
            direction=payload.get("direction"),
            magnitude=float(magnitude) if magnitude is not None else None,
            rationale=payload.get("rationale"),
            revised_from=tuple(payload.get("revised_from") or ()),
        )


def group_by_ticker(claims: Iterable[Claim]) -> Dict[str, List[Claim]]:
    """Group claims per ticker, keeping first-seen ticker order and input order within a ticker."""
    grouped: Dict[str, List[Claim]] = {}
    for claim in claims:
        grouped.setdefault(claim.ticker, []).append(claim)
    return grouped


def latest_per_role(claims: Iterable[Claim]) -> Dict[str, Claim]:
    latest: Dict[str, Claim] = {}
    for claim in claims:
        latest[claim.role] = claim
    return latest


def merge_refs(claims: Iterable[Claim]) -> Tuple[str, ...]:
    seen: List[str] = []
    for claim in claims:
        for ref in claim.evidence:
            if ref not in seen:
                seen.append(ref)
    return tuple(seen)

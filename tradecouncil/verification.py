"""Claim verification: anti-lookahead, schema and evidence binding checks."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import logging
import math

from tradecouncil.claims import DIRECTIONS, ROLES, Claim
from tradecouncil.evidence import Evidence, EvidenceIndex, evidence_source, format_timestamp

logger = logging.getLogger(__name__)

CRITICAL = "critical"
WARNING = "warning"


class ViolationKind(str, Enum):
    EXTRACTION_FAILURE = "ExtractionFailure"
    SCHEMA = "SchemaViolation"
    TEMPORAL = "TemporalViolation"
    EVIDENCE_UNRESOLVED = "EvidenceUnresolved"
    ROLE_FAILURE = "RoleFailure"
    CONFLICT_UNRESOLVED = "ConflictUnresolved"
    INSUFFICIENT_MARKET_DATA = "InsufficientMarketData"
    SUSPICIOUS_CLAIM = "SuspiciousClaim"


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    ticker: str
    detail: str
    claim_id: Optional[str] = None
    severity: str = CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "ticker": self.ticker,
            "detail": self.detail,
            "severity": self.severity,
        }
        if self.claim_id:
            data["claim_id"] = self.claim_id
        return data


@dataclass
class VerificationResult:
    verified: List[Claim] = field(default_factory=list)
    rejected: List[Claim] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)

    @property
    def warnings(self) -> List[Violation]:
        return [v for v in self.violations if v.severity == WARNING]

    def flagged(self, kind: ViolationKind) -> List[str]:
        return [v.claim_id for v in self.violations if v.kind == kind and v.claim_id]


def _in_unit(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and 0.0 <= value <= 1.0


def within_bounds(claim: Claim) -> bool:
    """Confidence in [0, 1] and, when given, magnitude in [-1, 1]."""
    if not _in_unit(claim.confidence):
        return False
    if claim.magnitude is None:
        return True
    return math.isfinite(claim.magnitude) and -1.0 <= claim.magnitude <= 1.0


class ClaimVerifier:
    """Splits candidate claims into verified and rejected sets.

    Critical violations reject a claim. Warnings are logged alongside the
    verified claim and never change the partition.
    """

    def __init__(
        self,
        roles: Sequence[str] = ROLES,
        overconfidence: float = 0.95,
        max_risk_flags: int = 3,
        min_claim_chars: int = 10,
        trusted_sources: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self.roles = tuple(roles)
        self.overconfidence = overconfidence
        self.max_risk_flags = max_risk_flags
        self.min_claim_chars = min_claim_chars
        self.trusted_sources = {
            kind: tuple(s.lower() for s in sources) for kind, sources in (trusted_sources or {}).items()
        }

    @classmethod
    def from_config(cls, roles: Sequence[str], settings: Mapping[str, Any]) -> "ClaimVerifier":
        return cls(
            roles=roles,
            overconfidence=float(settings.get("overconfidence", 0.95)),
            max_risk_flags=int(settings.get("max_risk_flags", 3)),
            min_claim_chars=int(settings.get("min_claim_chars", 10)),
            trusted_sources=settings.get("trusted_sources") or {},
        )

    def verify(self, claims: Iterable[Claim], evidence: EvidenceIndex, cutoff: datetime) -> VerificationResult:
        result = VerificationResult()
        for claim in claims:
            resolved = self._resolve(claim, evidence)
            critical = [v for v in (self._check_schema(claim), self._check_temporal(claim, resolved, cutoff)) if v]
            warnings = self._check_binding(claim, resolved) + self._check_patterns(claim, resolved)
            result.violations.extend(critical)
            result.violations.extend(warnings)
            if critical:
                result.rejected.append(claim)
            else:
                result.verified.append(claim)
        logger.info(
            f"Verified {len(result.verified)} claims, rejected {len(result.rejected)}, "
            f"{len(result.warnings)} warnings (cutoff {format_timestamp(cutoff)})"
        )
        return result

    def _resolve(self, claim: Claim, evidence: EvidenceIndex) -> Dict[str, Evidence | None]:
        return {ref: evidence.resolve(ref, claim.ticker) for ref in claim.evidence}

    def _check_schema(self, claim: Claim) -> Violation | None:
        problems: List[str] = []
        if not _in_unit(claim.confidence):
            problems.append(f"confidence {claim.confidence!r} outside [0, 1]")
        if not claim.ticker or not claim.ticker.strip():
            problems.append("ticker is empty")
        if not claim.action or not claim.action.strip():
            problems.append("action is empty")
        if claim.role not in self.roles:
            problems.append(f"unknown role {claim.role!r}")
        if claim.direction is not None and claim.direction not in DIRECTIONS:
            problems.append(f"unknown direction {claim.direction!r}")
        if claim.magnitude is not None and not (math.isfinite(claim.magnitude) and -1.0 <= claim.magnitude <= 1.0):
            problems.append(f"magnitude {claim.magnitude!r} outside [-1, 1]")
        if not problems:
            return None
        return Violation(ViolationKind.SCHEMA, claim.ticker, "; ".join(problems), claim.id)

    def _check_temporal(self, claim: Claim, resolved: Mapping[str, Evidence | None], cutoff: datetime) -> Violation | None:
        if claim.timestamp > cutoff:
            detail = f"claim timestamp {format_timestamp(claim.timestamp)} is after cutoff {format_timestamp(cutoff)}"
            return Violation(ViolationKind.TEMPORAL, claim.ticker, detail, claim.id)
        late = [ref for ref, item in resolved.items() if item is not None and item.observed_at > cutoff]
        if late:
            detail = f"evidence {', '.join(late)} observed after cutoff {format_timestamp(cutoff)}"
            return Violation(ViolationKind.TEMPORAL, claim.ticker, detail, claim.id)
        return None

    def _check_binding(self, claim: Claim, resolved: Mapping[str, Evidence | None]) -> List[Violation]:
        if not claim.evidence:
            return [Violation(ViolationKind.EVIDENCE_UNRESOLVED, claim.ticker, "claim has no evidence references", claim.id, WARNING)]
        missing = [ref for ref, item in resolved.items() if item is None]
        if not missing:
            return []
        return [
            Violation(
                ViolationKind.EVIDENCE_UNRESOLVED,
                claim.ticker,
                f"unresolved evidence for {claim.ticker}: {', '.join(missing)}",
                claim.id,
                WARNING,
            )
        ]

    def _check_patterns(self, claim: Claim, resolved: Mapping[str, Evidence | None]) -> List[Violation]:
        notes: List[str] = []
        if _in_unit(claim.confidence) and claim.confidence > self.overconfidence:
            notes.append(f"confidence {claim.confidence:.2f} above {self.overconfidence:.2f}")
        if len(claim.risk_flags) > self.max_risk_flags:
            notes.append(f"{len(claim.risk_flags)} risk flags")
        if isinstance(claim.rationale, str) and len(claim.rationale.strip()) < self.min_claim_chars:
            notes.append("rationale too short")
        for ref, item in resolved.items():
            if item is None:
                continue
            allowed = self.trusted_sources.get(item.kind)
            source = evidence_source(item)
            if allowed and source is not None and not any(name in source.lower() for name in allowed):
                notes.append(f"untrusted {item.kind} source {source!r} for {ref}")
        return [
            Violation(ViolationKind.SUSPICIOUS_CLAIM, claim.ticker, note, claim.id, WARNING)
            for note in notes
        ]


def verify_claims(
    claims: Iterable[Claim],
    evidence: EvidenceIndex,
    cutoff: datetime,
    verifier: ClaimVerifier | None = None,
) -> VerificationResult:
    return (verifier or ClaimVerifier()).verify(claims, evidence, cutoff)

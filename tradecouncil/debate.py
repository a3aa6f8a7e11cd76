"""Conflict detection and bounded debate between analysis roles."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from statistics import fmean
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple
import logging

from tradecouncil.claims import NEUTRAL_ACTION, Claim, group_by_ticker, merge_refs
from tradecouncil.recovery import extract_claims, recover_structured_output
from tradecouncil.verification import WARNING, Violation, ViolationKind, within_bounds

logger = logging.getLogger(__name__)

HIGH = "high"
MEDIUM = "medium"
LOW = "low"


class DebateState(str, Enum):
    INITIAL = "initial"
    ANALYZING = "analyzing"
    CONVERGED = "converged"
    ROUND_EXHAUSTED = "round_exhausted"


@dataclass(frozen=True)
class Conflict:
    ticker: str
    actions: Tuple[str, ...]
    severity: str
    gap: float
    claim_ids: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "actions": list(self.actions),
            "severity": self.severity,
            "gap": round(self.gap, 6),
            "claim_ids": list(self.claim_ids),
        }


def severity_for_gap(gap: float) -> str:
    if gap < 0.2:
        return HIGH
    if gap < 0.4:
        return MEDIUM
    return LOW


def _action_strength(claims: Sequence[Claim]) -> Dict[str, float]:
    strength: Dict[str, float] = {}
    for claim in claims:
        strength[claim.action] = max(strength.get(claim.action, 0.0), claim.confidence)
    return strength


def detect_conflicts(claims: Sequence[Claim]) -> List[Conflict]:
    """Return one conflict per ticker whose claims carry more than one distinct action."""
    conflicts: List[Conflict] = []
    for ticker, group in sorted(group_by_ticker(claims).items()):
        strength = _action_strength(group)
        if len(strength) < 2:
            continue
        ranked = sorted(strength.values(), reverse=True)
        gap = ranked[0] - ranked[1]
        conflicts.append(
            Conflict(
                ticker=ticker,
                actions=tuple(sorted(strength)),
                severity=severity_for_gap(gap),
                gap=gap,
                claim_ids=tuple(c.id for c in group),
            )
        )
    return conflicts


Strategy = Callable[[Conflict, Sequence[Claim], int], Sequence[Claim]]


def _per_role(claims: Sequence[Claim]) -> Dict[str, List[Claim]]:
    roles: Dict[str, List[Claim]] = {}
    for claim in claims:
        roles.setdefault(claim.role, []).append(claim)
    return roles


def _collapse(
    claims: Sequence[Claim],
    action: str,
    confidence: float,
    id_prefix: str,
    flag: str,
    rationale: str,
) -> List[Claim]:
    revised: List[Claim] = []
    for role, group in _per_role(claims).items():
        base = group[-1]
        revised.append(
            base.revise(
                id=f"{id_prefix}-{base.ticker}-{role}",
                action=action,
                confidence=confidence,
                evidence=merge_refs(group),
                timestamp=max(c.timestamp for c in group),
                risk_flags=tuple(dict.fromkeys(base.risk_flags + (flag,))),
                direction="neutral" if action == NEUTRAL_ACTION else base.direction,
                rationale=rationale,
                revised_from=tuple(c.id for c in group),
            )
        )
    return revised


def hold_strategy(conflict: Conflict, claims: Sequence[Claim], round_no: int) -> List[Claim]:
    """Collapse every contributing role to HOLD at the average confidence."""
    confidence = fmean(c.confidence for c in claims)
    return _collapse(
        claims,
        NEUTRAL_ACTION,
        confidence,
        f"debate{round_no}",
        "debate_hold",
        f"Collapsed to {NEUTRAL_ACTION} after disagreement on {', '.join(conflict.actions)}",
    )


def dominant_strategy(conflict: Conflict, claims: Sequence[Claim], round_no: int) -> List[Claim]:
    """Adopt the most confident action when one side clearly leads, else hold."""
    if conflict.severity != LOW:
        return hold_strategy(conflict, claims, round_no)
    strength = _action_strength(claims)
    action = sorted(strength.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]
    backers = [c for c in claims if c.action == action]
    return _collapse(
        claims,
        action,
        fmean(c.confidence for c in backers),
        f"debate{round_no}",
        "debate_adopted",
        f"Adopted dominant {action} (gap {conflict.gap:.2f})",
    )


@dataclass(frozen=True)
class DebateRound:
    round: int
    conflicts: Tuple[Conflict, ...]
    revisions: Tuple[Claim, ...]
    remaining: Tuple[Conflict, ...]
    state: DebateState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "revisions": [c.to_dict() for c in self.revisions],
            "remaining": [c.to_dict() for c in self.remaining],
            "state": self.state.value,
        }


@dataclass(frozen=True)
class DebateOutcome:
    claims: Tuple[Claim, ...]
    rounds: Tuple[DebateRound, ...] = ()
    state: DebateState = DebateState.CONVERGED
    initial_conflicts: Tuple[Conflict, ...] = ()
    unresolved: Tuple[Conflict, ...] = ()
    violations: Tuple[Violation, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "initial_conflicts": [c.to_dict() for c in self.initial_conflicts],
            "rounds": [r.to_dict() for r in self.rounds],
            "unresolved": [c.to_dict() for c in self.unresolved],
        }


@dataclass(frozen=True)
class _RoundState:
    claims: Tuple[Claim, ...]
    conflicts: Tuple[Conflict, ...]


class DebateResolver:
    """Runs at most ``max_rounds`` revision rounds over conflicted tickers.

    Tickers still in conflict afterwards are forced to HOLD with confidence
    capped at ``neutral_ceiling`` and reported as ``ConflictUnresolved``.
    """

    def __init__(
        self,
        max_rounds: int = 3,
        neutral_ceiling: float = 0.5,
        strategy: Strategy | None = None,
    ) -> None:
        self.max_rounds = max(0, int(max_rounds))
        self.neutral_ceiling = neutral_ceiling
        self.strategy = strategy or hold_strategy

    def resolve(self, claims: Sequence[Claim], conflicts: Sequence[Conflict] | None = None) -> DebateOutcome:
        initial = tuple(conflicts if conflicts is not None else detect_conflicts(claims))
        state = _RoundState(claims=tuple(claims), conflicts=initial)
        if not initial:
            return DebateOutcome(claims=state.claims)

        rounds: List[DebateRound] = []
        for round_no in range(1, self.max_rounds + 1):
            next_state, revisions = self._step(state, round_no)
            converged = not next_state.conflicts
            rounds.append(
                DebateRound(
                    round=round_no,
                    conflicts=state.conflicts,
                    revisions=tuple(revisions),
                    remaining=next_state.conflicts,
                    state=DebateState.CONVERGED if converged else DebateState.ANALYZING,
                )
            )
            state = next_state
            if converged:
                logger.info(f"Debate converged after {round_no} round(s) on {len(initial)} conflicted ticker(s)")
                return DebateOutcome(
                    claims=state.claims,
                    rounds=tuple(rounds),
                    state=DebateState.CONVERGED,
                    initial_conflicts=initial,
                )

        forced_claims, violations = self._force_hold(state)
        logger.warning(
            f"Debate exhausted {self.max_rounds} round(s); forcing {NEUTRAL_ACTION} on "
            f"{', '.join(c.ticker for c in state.conflicts)}"
        )
        return DebateOutcome(
            claims=forced_claims,
            rounds=tuple(rounds),
            state=DebateState.ROUND_EXHAUSTED,
            initial_conflicts=initial,
            unresolved=state.conflicts,
            violations=tuple(violations),
        )

    def _step(self, state: _RoundState, round_no: int) -> Tuple[_RoundState, List[Claim]]:
        grouped = group_by_ticker(state.claims)
        replaced: Dict[str, List[Claim]] = {}
        revisions: List[Claim] = []
        for conflict in state.conflicts:
            current = grouped.get(conflict.ticker, [])
            if not current:
                continue
            try:
                proposed = list(self.strategy(conflict, tuple(current), round_no))
            except Exception as exc:
                logger.warning(f"Debate strategy failed for {conflict.ticker} in round {round_no}: {exc}")
                continue
            proposed = [c for c in proposed if c.ticker == conflict.ticker]
            if not proposed:
                continue
            replaced[conflict.ticker] = proposed
            revisions.extend(c for c in proposed if c not in current)
        claims = self._rebuild(state.claims, replaced)
        return _RoundState(claims=claims, conflicts=tuple(detect_conflicts(claims))), revisions

    def _force_hold(self, state: _RoundState) -> Tuple[Tuple[Claim, ...], List[Violation]]:
        grouped = group_by_ticker(state.claims)
        replaced: Dict[str, List[Claim]] = {}
        violations: List[Violation] = []
        for conflict in state.conflicts:
            current = grouped.get(conflict.ticker, [])
            if not current:
                continue
            confidence = min(fmean(c.confidence for c in current), self.neutral_ceiling)
            replaced[conflict.ticker] = _collapse(
                current,
                NEUTRAL_ACTION,
                confidence,
                "forced",
                "unresolved_conflict",
                f"Forced {NEUTRAL_ACTION} after {self.max_rounds} debate round(s)",
            )
            violations.append(
                Violation(
                    ViolationKind.CONFLICT_UNRESOLVED,
                    conflict.ticker,
                    f"{conflict.severity} conflict between {', '.join(conflict.actions)} "
                    f"unresolved after {self.max_rounds} round(s); forced {NEUTRAL_ACTION} at {confidence:.2f}",
                    severity=WARNING,
                )
            )
        return self._rebuild(state.claims, replaced), violations

    @staticmethod
    def _rebuild(claims: Sequence[Claim], replaced: Mapping[str, List[Claim]]) -> Tuple[Claim, ...]:
        rebuilt: List[Claim] = []
        emitted: set[str] = set()
        for claim in claims:
            if claim.ticker not in replaced:
                rebuilt.append(claim)
            elif claim.ticker not in emitted:
                rebuilt.extend(replaced[claim.ticker])
                emitted.add(claim.ticker)
        return tuple(rebuilt)


class ModelNegotiator:
    """Debate strategy that asks each disagreeing role to reconsider.

    ``ask`` takes ``(role, prompt)`` and returns the role model's raw reply,
    which is parsed through the same recovery path as a normal round. A role
    whose reply yields no claim for the ticker keeps its previous position.
    """

    def __init__(self, ask: Callable[[str, str], str]) -> None:
        self.ask = ask

    def __call__(self, conflict: Conflict, claims: Sequence[Claim], round_no: int) -> List[Claim]:
        revised: List[Claim] = []
        for role, group in _per_role(claims).items():
            own = group[-1]
            others = [c for c in claims if c.role != role]
            prompt = self._prompt(conflict, own, others, round_no)
            try:
                reply = self.ask(role, prompt)
            except Exception as exc:
                logger.warning(f"Negotiation call failed for {role} on {conflict.ticker}: {exc}")
                revised.append(own)
                continue
            extraction = extract_claims(
                recover_structured_output(reply),
                role=role,
                universe=[conflict.ticker],
                timestamp=own.timestamp,
            )
            matches = [c for c in extraction.claims if c.ticker == conflict.ticker]
            if not matches:
                revised.append(own)
                continue
            answer = matches[-1]
            if not within_bounds(answer):
                logger.warning(
                    f"Discarding out-of-range reply from {role} on {conflict.ticker}: "
                    f"confidence {answer.confidence!r}, magnitude {answer.magnitude!r}"
                )
                revised.append(own)
                continue
            revised.append(
                answer.revise(
                    id=f"debate{round_no}-{conflict.ticker}-{role}",
                    evidence=answer.evidence if set(answer.evidence) <= set(own.evidence) else own.evidence,
                    timestamp=own.timestamp,
                    revised_from=tuple(c.id for c in group),
                )
            )
        return revised

    @staticmethod
    def _prompt(conflict: Conflict, own: Claim, others: Sequence[Claim], round_no: int) -> str:
        lines = [
            f"Debate round {round_no} on {conflict.ticker} ({conflict.severity} severity disagreement).",
            f"Your current position ({own.role}): {own.action} at confidence {own.confidence:.2f}.",
        ]
        if own.rationale:
            lines.append(f"Your rationale: {own.rationale}")
        lines.append("Other analysts:")
        for other in others:
            reason = f" - {other.rationale}" if other.rationale else ""
            lines.append(f"- {other.role}: {other.action} at {other.confidence:.2f}{reason}")
        lines.append(
            "Negotiate toward consensus. Address the strongest opposing argument, then restate your position. "
            "Only cite evidence ids you already used."
        )
        lines.append(
            f'Respond with JSON: {{"claims": [{{"ticker": "{conflict.ticker}", "action": "BUY|SELL|HOLD", '
            '"confidence": 0.0, "rationale": "..."}]}'
        )
        return "\n".join(lines)

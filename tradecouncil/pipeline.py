"""Round coordinator: roles -> recovery -> verification -> debate -> consensus."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence
import logging
import threading
import time
import uuid

from tradecouncil.audit import AuditLog
from tradecouncil.claims import Claim
from tradecouncil.config import MAX_POSITIONS_BY_PROFILE, Config
from tradecouncil.consensus import (
    ActionConsensus,
    ConsensusEngine,
    ConsensusRecord,
    Decision,
    MarketStats,
    band_decisions,
    decide_actions,
    target_weights,
)
from tradecouncil.debate import DebateOutcome, DebateResolver, ModelNegotiator, dominant_strategy, hold_strategy
from tradecouncil.evidence import Evidence, EvidenceIndex, format_timestamp, parse_timestamp
from tradecouncil.recovery import extract_claims, recover_structured_output
from tradecouncil.roles import AnalysisRole, RoundContext
from tradecouncil.verification import WARNING, ClaimVerifier, Violation, ViolationKind


class RoundAbortedError(Exception):
    """Raised when the kill-switch is set between pipeline stages."""
    pass


@dataclass
class RoundInput:
    universe: Sequence[str]
    evidence: Sequence[Evidence] = ()
    market_stats: Mapping[str, MarketStats] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    cutoff: Optional[datetime] = None
    round_id: Optional[str] = None
    risk_profile: Optional[str] = None


@dataclass
class RoleReport:
    role: str
    ok: bool
    claims: int = 0
    source: str = "none"
    duration_ms: float = 0.0
    errors: List[str] = field(default_factory=list)
    narrative: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "ok": self.ok,
            "claims": self.claims,
            "source": self.source,
            "duration_ms": round(self.duration_ms, 1),
            "errors": list(self.errors),
        }


@dataclass
class PipelineArtifact:
    round_id: str
    timestamp: datetime
    cutoff: datetime
    claims: List[Claim]
    rejected: List[Claim]
    consensus: List[ConsensusRecord]
    action_consensus: List[ActionConsensus]
    decisions: List[Decision]
    target_weights: Dict[str, float]
    debate: DebateOutcome
    violations: List[Violation]
    errors: List[str]
    role_reports: List[RoleReport]

    @property
    def debate_log(self) -> List[Any]:
        return list(self.debate.rounds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "timestamp": format_timestamp(self.timestamp),
            "cutoff": format_timestamp(self.cutoff),
            "claims": [c.to_dict() for c in self.claims],
            "rejected": [c.to_dict() for c in self.rejected],
            "consensus": [r.to_dict() for r in self.consensus],
            "action_consensus": [a.to_dict() for a in self.action_consensus],
            "decisions": [d.to_dict() for d in self.decisions],
            "target_weights": dict(self.target_weights),
            "debate": self.debate.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
            "errors": list(self.errors),
            "roles": [r.to_dict() for r in self.role_reports],
        }


class RoundCoordinator:
    def __init__(
        self,
        config: Config,
        roles: Sequence[AnalysisRole],
        verifier: ClaimVerifier | None = None,
        resolver: DebateResolver | None = None,
        engine: ConsensusEngine | None = None,
        audit: AuditLog | None = None,
    ) -> None:
        self.config = config
        self.roles = list(roles)
        self.verifier = verifier or ClaimVerifier.from_config(config.roles, config.verification)
        self.resolver = resolver or DebateResolver(
            max_rounds=config.max_debate_rounds,
            neutral_ceiling=config.neutral_confidence_ceiling,
            strategy=self._strategy(),
        )
        self.engine = engine or ConsensusEngine.from_config(config.roles, config.liquidity)
        if audit is None and config.audit_path:
            audit = AuditLog(config.audit_path)
        self.audit = audit
        self.logger = logging.getLogger(__name__)

    def _strategy(self):
        name = self.config.debate_strategy
        if name == "dominant":
            return dominant_strategy
        if name == "negotiate":
            by_name = {role.name: role for role in self.roles}
            timeout = self.config.role_timeout_seconds()
            return ModelNegotiator(lambda role, prompt: by_name[role].ask(prompt, timeout=timeout))
        return hold_strategy

    def _context(self, round_input: RoundInput) -> RoundContext:
        timestamp = parse_timestamp(round_input.timestamp or datetime.now(timezone.utc))
        if round_input.cutoff is not None:
            cutoff = parse_timestamp(round_input.cutoff)
        else:
            cutoff = timestamp - timedelta(seconds=self.config.cutoff_offset_seconds)
        return RoundContext(
            round_id=round_input.round_id or f"round-{uuid.uuid4().hex[:12]}",
            timestamp=timestamp,
            cutoff=cutoff,
            universe=tuple(round_input.universe),
            evidence=EvidenceIndex(round_input.evidence),
            market_stats=dict(round_input.market_stats),
            risk_profile=round_input.risk_profile or self.config.risk_profile,
        )

    def _audit(self, event: str, data: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            self.audit.log(event, data)
        except OSError as exc:
            self.logger.warning(f"Audit write failed for {event}: {exc}")

    @staticmethod
    def _check_abort(kill_switch: threading.Event | None, stage: str) -> None:
        if kill_switch is not None and kill_switch.is_set():
            raise RoundAbortedError(f"round aborted before {stage}")

    def run_round(self, round_input: RoundInput, kill_switch: threading.Event | None = None) -> PipelineArtifact:
        ctx = self._context(round_input)
        self._check_abort(kill_switch, "role dispatch")
        self.logger.info(
            f"Round {ctx.round_id}: dispatching {len(self.roles)} role(s) over {len(ctx.universe)} ticker(s), "
            f"cutoff {format_timestamp(ctx.cutoff)}"
        )
        self._audit("round_start", {
            "round_id": ctx.round_id,
            "universe": list(ctx.universe),
            "cutoff": format_timestamp(ctx.cutoff),
            "roles": [r.name for r in self.roles],
        })

        candidates, reports, violations, errors = self._invoke_roles(ctx)

        verification = self.verifier.verify(candidates, ctx.evidence, ctx.cutoff)
        violations.extend(verification.violations)

        outcome = self.resolver.resolve(verification.verified)
        violations.extend(outcome.violations)

        scoring = self.engine.score(outcome.claims, ctx.market_stats, self._max_positions(ctx))
        violations.extend(scoring.violations)

        self._check_abort(kill_switch, "decisions")
        votes = decide_actions(
            outcome.claims,
            self.config.role_weights,
            self.config.action_threshold,
            self.config.min_action_confidence,
        )
        bands = self.config.decision_bands.get(ctx.risk_profile, self.config.active_bands)
        decisions = band_decisions(scoring.records, bands, {v.ticker: v for v in votes})
        weights = target_weights(decisions)

        artifact = PipelineArtifact(
            round_id=ctx.round_id,
            timestamp=ctx.timestamp,
            cutoff=ctx.cutoff,
            claims=list(outcome.claims),
            rejected=list(verification.rejected),
            consensus=scoring.records,
            action_consensus=votes,
            decisions=decisions,
            target_weights=weights,
            debate=outcome,
            violations=violations,
            errors=errors,
            role_reports=reports,
        )
        self.logger.info(
            f"Round {ctx.round_id}: {len(artifact.claims)} claim(s), {len(artifact.consensus)} consensus record(s), "
            f"debate {outcome.state.value}, {len(errors)} error(s)"
        )
        if self.audit is not None:
            try:
                self.audit.log_violations(ctx.round_id, violations)
            except OSError as exc:
                self.logger.warning(f"Audit write failed for violations: {exc}")
        self._audit("round_complete", {
            "round_id": ctx.round_id,
            "claims": len(artifact.claims),
            "rejected": len(artifact.rejected),
            "consensus": [r.to_dict() for r in artifact.consensus],
            "decisions": [d.to_dict() for d in artifact.decisions],
            "debate_state": outcome.state.value,
            "errors": errors,
        })
        return artifact

    def _max_positions(self, ctx: RoundContext) -> int:
        if self.config.pipeline.get("max_positions") is not None:
            return self.config.max_positions
        return MAX_POSITIONS_BY_PROFILE.get(ctx.risk_profile, self.config.max_positions)

    def _invoke_roles(self, ctx: RoundContext):
        candidates: List[Claim] = []
        reports: List[RoleReport] = []
        violations: List[Violation] = []
        errors: List[str] = []
        if not self.roles:
            return candidates, reports, violations, errors

        executor = ThreadPoolExecutor(max_workers=len(self.roles), thread_name_prefix="role")
        started = time.perf_counter()
        futures = {}
        for role in self.roles:
            timeout = self.config.role_timeout_seconds(role.name)
            futures[role.name] = (role, timeout, executor.submit(self._call_role, role, ctx, timeout))
        try:
            for name, (role, timeout, future) in futures.items():
                remaining = max(0.0, timeout - (time.perf_counter() - started))
                try:
                    text, duration = future.result(timeout=remaining)
                except FutureTimeout:
                    message = f"{name}: timed out after {timeout:g}s"
                    self._role_failed(name, message, reports, violations, errors, timeout * 1000)
                    continue
                except Exception as exc:
                    message = f"{name}: {type(exc).__name__}: {exc}"
                    self._role_failed(name, message, reports, violations, errors, 0.0)
                    continue
                reports.append(self._collect(name, text, duration, ctx, candidates, violations))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return candidates, reports, violations, errors

    @staticmethod
    def _call_role(role: AnalysisRole, ctx: RoundContext, timeout: float):
        start = time.perf_counter()
        text = role.run(ctx, timeout=timeout)
        return text, (time.perf_counter() - start) * 1000

    def _role_failed(
        self,
        name: str,
        message: str,
        reports: List[RoleReport],
        violations: List[Violation],
        errors: List[str],
        duration_ms: float,
    ) -> None:
        self.logger.warning(f"Role failed: {message}")
        errors.append(message)
        violations.append(Violation(ViolationKind.ROLE_FAILURE, "", message))
        reports.append(RoleReport(role=name, ok=False, duration_ms=duration_ms, errors=[message]))

    def _collect(
        self,
        name: str,
        text: str,
        duration_ms: float,
        ctx: RoundContext,
        candidates: List[Claim],
        violations: List[Violation],
    ) -> RoleReport:
        recovery = recover_structured_output(text)
        extraction = extract_claims(
            recovery,
            role=name,
            universe=ctx.universe,
            timestamp=ctx.timestamp if ctx.timestamp <= ctx.cutoff else ctx.cutoff,
            evidence=ctx.evidence,
            fallback_confidence=self.config.fallback_confidence,
        )
        if not recovery.valid:
            detail = f"{name}: {'; '.join(recovery.errors) or 'no structured block'}"
            if extraction.claims:
                detail += f"; recovered {len(extraction.claims)} claim(s) from narrative"
            self.logger.warning(f"Extraction failure for {detail}")
            violations.append(Violation(ViolationKind.EXTRACTION_FAILURE, "", detail, severity=WARNING))
        candidates.extend(extraction.claims)
        return RoleReport(
            role=name,
            ok=True,
            claims=len(extraction.claims),
            source=extraction.source,
            duration_ms=duration_ms,
            errors=extraction.errors,
            narrative=recovery.narrative,
        )

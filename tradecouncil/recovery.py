"""Best-effort recovery of structured claims from free-form model output.

Role models are asked to answer with a short narrative followed by a JSON
object of the form ``{"claims": [...]}``. In practice the object arrives
wrapped in code fences, sprinkled with comments, cut off mid-string or
missing its closing braces. This module pulls the object out, repairs the
common breakages and turns it into :class:`~tradecouncil.claims.Claim`
records. When no structured block survives, a keyword scan over the
narrative recovers whatever BUY/SELL/HOLD calls it can.

Nothing in here raises. The worst outcome for a role is an empty claim list
together with the extraction errors that explain why.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence, Tuple
import json
import logging
import math
import re

from tradecouncil.claims import DIRECTIONS, Claim, normalize_action
from tradecouncil.evidence import EvidenceIndex, EvidenceError, parse_timestamp

logger = logging.getLogger(__name__)

CLAIMS_MARKER = re.compile(r'\{\s*"claims"\s*:')
FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*")
LINE_COMMENT_RE = re.compile(r"(?<![:\"'\w])//[^\n]*")
BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
TRUNCATED_URL_RE = re.compile(r'("[\w-]+"\s*:\s*)"(?:https?:)?//[^"\n]*(?=\n|$)')
TRAILING_SEPARATOR_RE = re.compile(r",(\s*[}\]])")
DANGLING_SEPARATOR_RE = re.compile(r",\s*$")
UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w-]*)(\s*:)")
STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"')

TRUNCATED_URL_PLACEHOLDER = "https://truncated.invalid"
FALLBACK_CONFIDENCE = 0.5
DEFAULT_CONFIDENCE = 0.5
MAX_DEFAULT_REFS = 3

_CLOSERS = {"{": "}", "[": "]"}


@dataclass
class RecoveryResult:
    narrative: str
    block: Any = None
    valid: bool = False
    errors: List[str] = field(default_factory=list)
    raw_block: str = ""
    repaired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "narrative": self.narrative,
            "structured_block": self.block,
            "is_structured_valid": self.valid,
            "extraction_errors": list(self.errors),
            "repaired": self.repaired,
        }


@dataclass
class ClaimExtraction:
    claims: List[Claim]
    errors: List[str]
    source: str

    @property
    def empty(self) -> bool:
        return not self.claims


def strip_noise(text: str) -> str:
    cleaned = FENCE_RE.sub("", text)
    cleaned = _outside_strings(cleaned, BLOCK_COMMENT_RE, "")
    cleaned = _outside_strings(cleaned, LINE_COMMENT_RE, "")
    return cleaned


def locate_block(text: str) -> int:
    match = CLAIMS_MARKER.search(text)
    if match:
        return match.start()
    candidates = [idx for idx in (text.find("{"), text.find("[")) if idx != -1]
    return min(candidates) if candidates else -1


def _scan(text: str, start: int) -> Tuple[int, List[str], bool]:
    """Walk from ``start`` and return (end, open_stack, in_string).

    ``end`` is one past the closer that balances the opening delimiter, or
    ``len(text)`` when the text runs out first.
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(char)
        elif char in ("}", "]"):
            if stack and _CLOSERS[stack[-1]] == char:
                stack.pop()
            if not stack:
                return idx + 1, [], False
    return len(text), stack, in_string


def scan_block(text: str, start: int) -> Tuple[str, bool]:
    """Return the block text starting at ``start`` and whether it closed cleanly."""
    end, stack, in_string = _scan(text, start)
    return text[start:end], not stack and not in_string


def _balance(raw: str) -> str:
    _, stack, in_string = _scan(raw, 0)
    if in_string:
        raw += '"'
    if stack:
        raw = DANGLING_SEPARATOR_RE.sub("", raw.rstrip())
        raw += "".join(_CLOSERS[opener] for opener in reversed(stack))
    return raw


def _outside_strings(raw: str, pattern: re.Pattern, replacement: str) -> str:
    """Apply a substitution only to the text between string literals."""
    parts: List[str] = []
    last = 0
    for match in STRING_RE.finditer(raw):
        parts.append(pattern.sub(replacement, raw[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(pattern.sub(replacement, raw[last:]))
    return "".join(parts)


def repair_block(raw: str) -> str:
    """Apply the bounded repair heuristics in order."""
    repaired = TRUNCATED_URL_RE.sub(lambda m: f'{m.group(1)}"{TRUNCATED_URL_PLACEHOLDER}"', raw)
    repaired = _balance(DANGLING_SEPARATOR_RE.sub("", repaired.rstrip()))
    repaired = _outside_strings(repaired, TRAILING_SEPARATOR_RE, r"\1")
    repaired = _outside_strings(repaired, UNQUOTED_KEY_RE, r'\1"\2"\3')
    return repaired


def recover_structured_output(text: str | None) -> RecoveryResult:
    """Split raw role output into narrative text and a decoded structured block."""
    try:
        return _recover(text or "")
    except Exception as exc:  # the pipeline must stay total
        logger.warning(f"Structured output recovery failed unexpectedly: {exc}")
        return RecoveryResult(narrative=text or "", errors=[f"recovery failed: {exc}"])


def _recover(text: str) -> RecoveryResult:
    cleaned = strip_noise(text)
    start = locate_block(cleaned)
    if start == -1:
        return RecoveryResult(narrative=cleaned.strip(), errors=["No structured block found in response"])

    raw, closed = scan_block(cleaned, start)
    narrative = cleaned[:start].strip()
    try:
        block = json.loads(raw)
        return RecoveryResult(narrative=narrative, block=block, valid=True, raw_block=raw)
    except json.JSONDecodeError as exc:
        first_error = f"decode failed: {exc.msg} at position {exc.pos}"

    repaired = repair_block(raw)
    logger.debug(f"Repaired structured block (closed={closed}): {len(raw)} -> {len(repaired)} chars")
    try:
        block = json.loads(repaired)
    except json.JSONDecodeError as exc:
        return RecoveryResult(
            narrative=cleaned.strip(),
            errors=[first_error, f"decode failed after repair: {exc.msg} at position {exc.pos}"],
            raw_block=raw,
        )
    return RecoveryResult(
        narrative=narrative,
        block=block,
        valid=True,
        errors=[first_error],
        raw_block=raw,
        repaired=True,
    )


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _as_float(value: Any, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _string_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if not isinstance(value, (list, tuple)):
        return ()
    out: List[str] = []
    for item in value:
        if isinstance(item, Mapping):
            item = item.get("id")
        if item is None:
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return tuple(out)


def _signals(value: Any) -> Dict[str, float]:
    pairs: List[Tuple[Any, Any]] = []
    if isinstance(value, Mapping):
        pairs = list(value.items())
    elif isinstance(value, list):
        pairs = [(item.get("name"), item.get("value")) for item in value if isinstance(item, Mapping)]
    signals: Dict[str, float] = {}
    for name, raw in pairs:
        if not name or isinstance(raw, bool):
            continue
        try:
            number = float(raw)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            signals[str(name)] = number
    return signals


def _default_refs(ticker: str, evidence: EvidenceIndex | None, timestamp: datetime) -> Tuple[str, ...]:
    if evidence is not None:
        matched = [item.id for item in evidence.for_ticker(ticker)][:MAX_DEFAULT_REFS]
        if matched:
            return tuple(matched)
    return (f"{ticker}_market_data_{_epoch_ms(timestamp)}",)


def _claim_entries(block: Any) -> Tuple[List[Any], List[str]]:
    if isinstance(block, list):
        return block, []
    if isinstance(block, Mapping):
        entries = block.get("claims")
        if isinstance(entries, list):
            return entries, []
        return [], ["structured block has no claims list"]
    return [], [f"structured block is a {type(block).__name__}, not an object"]


def extract_claims_from_block(
    block: Any,
    role: str,
    timestamp: datetime,
    evidence: EvidenceIndex | None = None,
) -> ClaimExtraction:
    entries, errors = _claim_entries(block)
    claims: List[Claim] = []
    stamp = _epoch_ms(timestamp)
    for idx, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            errors.append(f"claims[{idx}] is not an object")
            continue
        ticker = str(entry.get("ticker") or "").strip().upper()
        action = normalize_action(entry.get("action") or entry.get("claim"))
        if not ticker or not action:
            errors.append(f"claims[{idx}] missing ticker or action")
            continue
        claim_time = timestamp
        if entry.get("timestamp") is not None:
            try:
                claim_time = parse_timestamp(entry.get("timestamp"))
            except EvidenceError as exc:
                errors.append(f"claims[{idx}] {exc}; using round timestamp")
        refs = _string_list(entry.get("evidence"))
        if not refs:
            refs = _default_refs(ticker, evidence, timestamp)
        direction = str(entry.get("direction") or "").strip().lower() or None
        magnitude = entry.get("magnitude")
        rationale = entry.get("rationale") or entry.get("thesis")
        if rationale is not None and not isinstance(rationale, str):
            if isinstance(rationale, (int, float)):
                rationale = str(rationale)
            else:
                errors.append(f"claims[{idx}] rationale is not text; dropped")
                rationale = None
        claims.append(
            Claim(
                id=f"{ticker}_{role}_{stamp}_{idx}",
                ticker=ticker,
                role=role,
                action=action,
                confidence=_as_float(entry.get("confidence"), DEFAULT_CONFIDENCE),
                evidence=refs,
                timestamp=claim_time,
                risk_flags=_string_list(entry.get("riskFlags", entry.get("risk_flags"))),
                signals=_signals(entry.get("signals")),
                direction=direction if direction in DIRECTIONS else None,
                magnitude=_as_float(magnitude, math.nan) if magnitude is not None else None,
                rationale=rationale,
            )
        )
    return ClaimExtraction(claims=claims, errors=errors, source="structured")


def extract_claims_from_text(
    narrative: str,
    universe: Sequence[str],
    role: str,
    timestamp: datetime,
    evidence: EvidenceIndex | None = None,
    confidence: float = FALLBACK_CONFIDENCE,
) -> ClaimExtraction:
    """Keyword scan: ``<TICKER> ... BUY|SELL|HOLD`` on one line, last match per ticker wins."""
    claims: List[Claim] = []
    stamp = _epoch_ms(timestamp)
    for ticker in universe:
        pattern = re.compile(rf"(?<![\w]){re.escape(ticker)}(?![\w])[^\n]*?\b((?i:BUY|SELL|HOLD))\b")
        matches = list(pattern.finditer(narrative))
        if not matches:
            continue
        action = matches[-1].group(1).upper()
        claims.append(
            Claim(
                id=f"{ticker}_{role}_{stamp}_text",
                ticker=ticker,
                role=role,
                action=action,
                confidence=confidence,
                evidence=_default_refs(ticker, evidence, timestamp),
                timestamp=timestamp,
                rationale=f"Recovered from narrative: {matches[-1].group(0).strip()[:200]}",
            )
        )
    return ClaimExtraction(claims=claims, errors=[], source="text")


def extract_claims(
    result: RecoveryResult,
    role: str,
    universe: Sequence[str],
    timestamp: datetime,
    evidence: EvidenceIndex | None = None,
    fallback_confidence: float = FALLBACK_CONFIDENCE,
) -> ClaimExtraction:
    """Turn a recovery result into claims, falling back to the narrative when the block is unusable."""
    if result.valid:
        extraction = extract_claims_from_block(result.block, role, timestamp, evidence)
        extraction.errors = list(result.errors) + extraction.errors
        return extraction
    errors = list(result.errors)
    if result.narrative:
        fallback = extract_claims_from_text(
            result.narrative, universe, role, timestamp, evidence, fallback_confidence
        )
        if fallback.claims:
            return ClaimExtraction(claims=fallback.claims, errors=errors, source="text")
    return ClaimExtraction(claims=[], errors=errors, source="none")

"""Evidence records backing analyst claims."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import logging
import math

logger = logging.getLogger(__name__)

GLOBAL_TICKER = "GLOBAL"
EVIDENCE_KINDS = ("news", "market", "tech", "onchain", "social", "index")
MARKET_METRICS = ("vol24h", "spread_bps", "close", "vwap", "liquidity_score")
METRIC_KINDS = ("tech", "onchain", "social")


class EvidenceError(ValueError):
    """Raised when an evidence record violates its shape."""


def parse_timestamp(value: Any) -> datetime:
    """Accept ISO strings, epoch milliseconds or datetimes and return an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise EvidenceError(f"invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise EvidenceError(f"invalid timestamp: {value!r}")
        parsed = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise EvidenceError(f"invalid timestamp: {value!r}") from exc
    else:
        raise EvidenceError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _check_unit(name: str, value: Optional[float], low: float = 0.0, high: float = 1.0) -> None:
    if value is None:
        return
    if not isinstance(value, (int, float)) or not math.isfinite(value) or not low <= value <= high:
        raise EvidenceError(f"{name} must lie in [{low}, {high}], got {value!r}")


def _check_common(item: Any) -> None:
    if not item.id:
        raise EvidenceError("evidence id is required")
    if not item.ticker:
        raise EvidenceError(f"evidence {item.id} has no ticker")
    _check_unit("relevance", item.relevance)
    _check_unit("confidence", item.confidence)
    _check_unit("impact", item.impact, -1.0, 1.0)


def _check_value(item: Any) -> None:
    if isinstance(item.value, bool) or not isinstance(item.value, (int, float)) or not math.isfinite(item.value):
        raise EvidenceError(f"evidence {item.id} value must be finite, got {item.value!r}")


@dataclass(frozen=True)
class NewsEvidence:
    id: str
    ticker: str
    observed_at: datetime
    relevance: float
    source: str
    url: str
    snippet: str
    impact: Optional[float] = None
    confidence: Optional[float] = None

    kind = "news"

    def __post_init__(self) -> None:
        _check_common(self)


@dataclass(frozen=True)
class MarketEvidence:
    id: str
    ticker: str
    observed_at: datetime
    relevance: float
    source: str
    metric: str
    value: float
    impact: Optional[float] = None
    confidence: Optional[float] = None

    kind = "market"

    def __post_init__(self) -> None:
        _check_common(self)
        if self.metric not in MARKET_METRICS:
            raise EvidenceError(f"unknown market metric {self.metric!r}")
        _check_value(self)


@dataclass(frozen=True)
class MetricEvidence:
    """Indicator-style evidence from technical, on-chain or social providers."""

    id: str
    ticker: str
    observed_at: datetime
    relevance: float
    kind: str
    source: str
    metric: str
    value: float
    impact: Optional[float] = None
    confidence: Optional[float] = None

    def __post_init__(self) -> None:
        _check_common(self)
        if self.kind not in METRIC_KINDS:
            raise EvidenceError(f"metric evidence kind must be one of {METRIC_KINDS}, got {self.kind!r}")
        if not self.metric or not self.metric.strip():
            raise EvidenceError(f"evidence {self.id} has an empty metric name")
        _check_value(self)


@dataclass(frozen=True)
class IndexEvidence:
    id: str
    observed_at: datetime
    relevance: float
    name: str
    value: float
    ticker: str = GLOBAL_TICKER
    impact: Optional[float] = None
    confidence: Optional[float] = None

    kind = "index"

    def __post_init__(self) -> None:
        _check_common(self)
        if self.ticker != GLOBAL_TICKER:
            raise EvidenceError(f"index evidence {self.id} must use ticker {GLOBAL_TICKER}")
        if not self.name:
            raise EvidenceError(f"index evidence {self.id} has no name")
        _check_value(self)


Evidence = Union[NewsEvidence, MarketEvidence, MetricEvidence, IndexEvidence]


def _optional_float(payload: Mapping[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise EvidenceError(f"{key} must be numeric, got {value!r}") from exc


def _number(payload: Mapping[str, Any], key: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool):
        raise EvidenceError(f"{key} must be numeric, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise EvidenceError(f"{key} must be numeric, got {value!r}") from exc


def parse_evidence(payload: Mapping[str, Any]) -> Evidence:
    """Build the evidence variant selected by the payload's ``kind`` tag."""
    kind = str(payload.get("kind") or payload.get("type") or "").strip().lower()
    observed = payload.get("observed_at") or payload.get("observedAt") or payload.get("publishedAt") or payload.get("timestamp")
    common: Dict[str, Any] = {
        "id": str(payload.get("id") or ""),
        "observed_at": parse_timestamp(observed),
        "relevance": _number({"relevance": payload.get("relevance", 0.5)}, "relevance"),
        "impact": _optional_float(payload, "impact"),
        "confidence": _optional_float(payload, "confidence"),
    }
    ticker = str(payload.get("ticker") or "").strip()
    if kind == "news":
        return NewsEvidence(
            ticker=ticker,
            source=str(payload.get("source") or ""),
            url=str(payload.get("url") or ""),
            snippet=str(payload.get("snippet") or ""),
            **common,
        )
    if kind == "market":
        return MarketEvidence(
            ticker=ticker,
            source=str(payload.get("source") or "exchange"),
            metric=str(payload.get("metric") or ""),
            value=_number(payload, "value"),
            **common,
        )
    if kind in METRIC_KINDS:
        return MetricEvidence(
            ticker=ticker,
            kind=kind,
            source=str(payload.get("source") or ""),
            metric=str(payload.get("metric") or ""),
            value=_number(payload, "value"),
            **common,
        )
    if kind == "index":
        return IndexEvidence(
            ticker=ticker or GLOBAL_TICKER,
            name=str(payload.get("name") or payload.get("metric") or ""),
            value=_number(payload, "value"),
            **common,
        )
    raise EvidenceError(f"unknown evidence kind {kind!r}")


def evidence_to_dict(item: Evidence) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": item.id,
        "kind": item.kind,
        "ticker": item.ticker,
        "observed_at": format_timestamp(item.observed_at),
        "relevance": item.relevance,
    }
    if item.impact is not None:
        data["impact"] = item.impact
    if item.confidence is not None:
        data["confidence"] = item.confidence
    if isinstance(item, NewsEvidence):
        data.update({"source": item.source, "url": item.url, "snippet": item.snippet})
    elif isinstance(item, (MarketEvidence, MetricEvidence)):
        data.update({"source": item.source, "metric": item.metric, "value": item.value})
    elif isinstance(item, IndexEvidence):
        data.update({"name": item.name, "value": item.value})
    else:
        raise EvidenceError(f"unsupported evidence type {type(item).__name__}")
    return data


def describe_evidence(item: Evidence) -> str:
    """One-line summary used in role prompts."""
    stamp = format_timestamp(item.observed_at)
    if isinstance(item, NewsEvidence):
        return f"[{item.id}] news {item.ticker} ({item.source}, {stamp}): {item.snippet}"
    if isinstance(item, MarketEvidence):
        return f"[{item.id}] market {item.ticker} {item.metric}={item.value:g} ({item.source}, {stamp})"
    if isinstance(item, MetricEvidence):
        return f"[{item.id}] {item.kind} {item.ticker} {item.metric}={item.value:g} ({item.source}, {stamp})"
    if isinstance(item, IndexEvidence):
        return f"[{item.id}] index {item.name}={item.value:g} ({stamp})"
    raise EvidenceError(f"unsupported evidence type {type(item).__name__}")


def evidence_source(item: Evidence) -> str | None:
    if isinstance(item, (NewsEvidence, MarketEvidence, MetricEvidence)):
        return item.source
    if isinstance(item, IndexEvidence):
        return None
    raise EvidenceError(f"unsupported evidence type {type(item).__name__}")


def load_evidence(records: Iterable[Mapping[str, Any]] | Mapping[str, Iterable[Mapping[str, Any]]]) -> Tuple[List[Evidence], List[str]]:
    """Parse raw evidence, either a flat list or keyed by ticker. Bad records are skipped and reported."""
    if isinstance(records, Mapping):
        flat: List[Any] = []
        for ticker, items in records.items():
            for item in items or []:
                if isinstance(item, Mapping):
                    item = dict(item)
                    item.setdefault("ticker", ticker)
                flat.append(item)
    else:
        flat = list(records or [])
    parsed: List[Evidence] = []
    errors: List[str] = []
    for idx, raw in enumerate(flat):
        if not isinstance(raw, Mapping):
            errors.append(f"evidence[{idx}] ?: expected an object, got {type(raw).__name__}")
            logger.warning(f"Skipping evidence record {idx}: not an object")
            continue
        try:
            parsed.append(parse_evidence(raw))
        except EvidenceError as exc:
            label = raw.get("id") if isinstance(raw, Mapping) else None
            errors.append(f"evidence[{idx}] {label or '?'}: {exc}")
            logger.warning(f"Skipping evidence record {label or idx}: {exc}")
    return parsed, errors


class EvidenceIndex:
    """Read-only lookup of one round's evidence by id and ticker."""

    def __init__(self, items: Iterable[Evidence] = ()) -> None:
        by_id: Dict[str, Evidence] = {}
        by_ticker: Dict[str, List[Evidence]] = {}
        for item in items:
            if item.id in by_id:
                logger.warning(f"Duplicate evidence id {item.id}; keeping the first record")
                continue
            by_id[item.id] = item
            by_ticker.setdefault(item.ticker, []).append(item)
        self._by_id = MappingProxyType(by_id)
        self._by_ticker = MappingProxyType({k: tuple(v) for k, v in by_ticker.items()})

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, evidence_id: object) -> bool:
        return evidence_id in self._by_id

    def get(self, evidence_id: str) -> Evidence | None:
        return self._by_id.get(evidence_id)

    def resolve(self, evidence_id: str, ticker: str) -> Evidence | None:
        item = self._by_id.get(evidence_id)
        if item is None:
            return None
        if item.ticker == ticker or item.ticker == GLOBAL_TICKER:
            return item
        return None

    def for_ticker(self, ticker: str, include_global: bool = False) -> Tuple[Evidence, ...]:
        items = self._by_ticker.get(ticker, ())
        if include_global and ticker != GLOBAL_TICKER:
            items = items + self._by_ticker.get(GLOBAL_TICKER, ())
        return items

    def __iter__(self):
        return iter(self._by_id.values())

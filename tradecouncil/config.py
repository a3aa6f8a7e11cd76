"""Configuration loader for TradeCouncil."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import os
import yaml

from tradecouncil.claims import ROLES
from tradecouncil.consensus import DEFAULT_BANDS, DEFAULT_ROLE_WEIGHTS

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "tradecouncil" / "config.yaml"

MAX_POSITIONS_BY_PROFILE = {"averse": 5, "neutral": 8, "bold": 12}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text()) or {}


def load_config(path: Path | None = None) -> Dict[str, Any]:
    data = _read_yaml(DEFAULT_CONFIG_PATH)
    data = _deep_merge(data, _read_yaml(USER_CONFIG_PATH))
    if path is not None:
        data = _deep_merge(data, _read_yaml(Path(path)))

    # Environment overrides - Pipeline
    profile = os.getenv("TRADECOUNCIL_RISK_PROFILE")
    if profile:
        data.setdefault("pipeline", {})["risk_profile"] = profile.strip().lower()

    max_positions = os.getenv("TRADECOUNCIL_MAX_POSITIONS")
    if max_positions:
        try:
            data.setdefault("pipeline", {})["max_positions"] = int(max_positions)
        except ValueError:
            pass

    role_timeout = os.getenv("TRADECOUNCIL_ROLE_TIMEOUT")
    if role_timeout:
        try:
            data.setdefault("pipeline", {})["role_timeout_seconds"] = float(role_timeout)
        except ValueError:
            pass

    # Environment overrides - Debate
    debate_rounds = os.getenv("TRADECOUNCIL_DEBATE_ROUNDS")
    if debate_rounds:
        try:
            data.setdefault("debate", {})["max_rounds"] = int(debate_rounds)
        except ValueError:
            pass

    # Environment overrides - Models
    ollama_url = os.getenv("TRADECOUNCIL_OLLAMA_URL")
    if ollama_url:
        data.setdefault("models", {})["ollama_url"] = ollama_url

    audit_path = os.getenv("TRADECOUNCIL_AUDIT_PATH")
    if audit_path:
        data["audit_path"] = audit_path

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def pipeline(self) -> Dict[str, Any]:
        return self.raw.get("pipeline", {})

    @property
    def debate(self) -> Dict[str, Any]:
        return self.raw.get("debate", {})

    @property
    def scoring(self) -> Dict[str, Any]:
        return self.raw.get("scoring", {})

    @property
    def verification(self) -> Dict[str, Any]:
        return self.raw.get("verification", {})

    @property
    def models(self) -> Dict[str, Any]:
        return self.raw.get("models", {})

    @property
    def roles(self) -> List[str]:
        return list(self.raw.get("roles") or ROLES)

    @property
    def role_weights(self) -> Dict[str, float]:
        weights = self.scoring.get("role_weights") or DEFAULT_ROLE_WEIGHTS
        return {str(role): float(weight) for role, weight in weights.items()}

    @property
    def risk_profile(self) -> str:
        profile = str(self.pipeline.get("risk_profile", "neutral")).lower()
        return profile if profile in self.decision_bands else "neutral"

    @property
    def max_positions(self) -> int:
        explicit = self.pipeline.get("max_positions")
        if explicit is not None:
            return int(explicit)
        return MAX_POSITIONS_BY_PROFILE.get(self.risk_profile, 8)

    @property
    def decision_bands(self) -> Dict[str, Dict[str, float]]:
        bands = {name: dict(values) for name, values in DEFAULT_BANDS.items()}
        for name, values in (self.scoring.get("decision_bands") or {}).items():
            bands[name] = _deep_merge(bands.get(name, {}), values or {})
        return bands

    @property
    def active_bands(self) -> Dict[str, float]:
        return self.decision_bands[self.risk_profile]

    @property
    def action_threshold(self) -> float:
        return float(self.scoring.get("action_threshold", 0.3))

    @property
    def min_action_confidence(self) -> float:
        return float(self.scoring.get("min_action_confidence", 0.4))

    @property
    def consensus_threshold(self) -> float:
        """Reserved. Loaded for compatibility; no scoring path consults it."""
        return float(self.scoring.get("consensus_threshold", 0.7))

    @property
    def liquidity(self) -> Dict[str, Any]:
        return self.scoring.get("liquidity", {})

    @property
    def max_debate_rounds(self) -> int:
        return int(self.debate.get("max_rounds", 3))

    @property
    def neutral_confidence_ceiling(self) -> float:
        return float(self.debate.get("neutral_confidence_ceiling", 0.5))

    @property
    def debate_strategy(self) -> str:
        return str(self.debate.get("strategy", "hold"))

    @property
    def cutoff_offset_seconds(self) -> float:
        return float(self.pipeline.get("cutoff_offset_seconds", 60))

    @property
    def fallback_confidence(self) -> float:
        return float(self.pipeline.get("fallback_confidence", 0.5))

    def role_timeout_seconds(self, role: str | None = None) -> float:
        """Per-role timeout, falling back to the global value. Default 2 minutes."""
        per_role = (self.pipeline.get("role_timeouts") or {}).get(role) if role else None
        if per_role is not None:
            return float(per_role)
        return float(self.pipeline.get("role_timeout_seconds", 120))

    @property
    def audit_path(self) -> Path | None:
        path = self.raw.get("audit_path")
        return Path(path).expanduser() if path else None


def get_config(path: Path | None = None) -> Config:
    return Config(load_config(path))

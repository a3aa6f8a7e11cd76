"""Minimal Ollama client used as the role model backend."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
import httpx
import time


class ModelCallError(RuntimeError):
    """Raised by model adapters when the backend reports a failed generation."""


@dataclass
class OllamaResult:
    text: str
    duration_ms: float
    ok: bool
    error: Optional[str] = None


class OllamaClient:
    def __init__(self, base_url: str = "http://localhost:11434") -> None:
        self.base_url = base_url.rstrip("/")

    def list_models(self) -> list[dict]:
        try:
            with httpx.Client(timeout=5.0) as client:
                resp = client.get(f"{self.base_url}/api/tags")
                resp.raise_for_status()
                return resp.json().get("models", [])
        except httpx.HTTPError:
            return []

    def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        temperature: float = 0.2,
        timeout: float = 120.0,
        json_mode: bool = False,
    ) -> OllamaResult:
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if system:
            payload["system"] = system
        if json_mode:
            payload["format"] = "json"

        start = time.perf_counter()
        try:
            with httpx.Client(timeout=timeout) as client:
                resp = client.post(f"{self.base_url}/api/generate", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            duration = (time.perf_counter() - start) * 1000
            return OllamaResult(text="", duration_ms=duration, ok=False, error=str(exc))
        duration = (time.perf_counter() - start) * 1000
        return OllamaResult(text=data.get("response", ""), duration_ms=duration, ok=True)


class OllamaModel:
    """Prompt-in, text-out callable bound to one Ollama model."""

    def __init__(self, client: OllamaClient, model: str, temperature: float = 0.2) -> None:
        self.client = client
        self.model = model
        self.temperature = temperature

    def __call__(self, prompt: str, system: str | None = None, timeout: float = 120.0) -> str:
        result = self.client.generate(
            self.model,
            prompt,
            system=system,
            temperature=self.temperature,
            timeout=timeout,
        )
        if not result.ok:
            raise ModelCallError(f"ollama:{self.model} failed after {result.duration_ms:.0f}ms: {result.error}")
        return result.text

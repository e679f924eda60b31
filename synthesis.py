"""Client for the external text/JSON generation service.

The service is treated as a black box: callers describe what they need in a
:class:`PromptSpec` (tier behaviour, topic mastery, synthesis toggles and the
content to work on) and receive either text or parsed JSON back.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import requests
from pydantic import BaseModel, Field, ValidationError

from evolution_tiers import TIER_REGISTRY, EvolutionTier, TierRegistry
from schemas import TopicSuggestion, UserKnowledgeProfile

logger = logging.getLogger(__name__)

# --------- Model/endpoint from environment ---------
MODEL_ID = os.getenv("MODEL_ID", "gemini-3-flash-preview")
GENERATION_URL = os.getenv("GENERATION_URL", "http://localhost:4891/v1/chat/completions")

SYSTEM_INSTRUCTION = (
    "You are a personalized learning engine. Speak with calm authority. Prefer precision over "
    "verbosity. Distinguish facts, interpretations, and assumptions."
)


def _safe_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class GenerationError(RuntimeError):
    """Raised when the generation service fails or answers in an unknown shape."""


class SynthesisLenses(BaseModel):
    analogies: bool = False
    mechanics: bool = False
    tradeoffs: bool = False
    pitfalls: bool = False


class SynthesisConfig(BaseModel):
    mode: Literal["teach", "assess"] = "teach"
    depth: Literal["Quick", "Standard", "Deep", "Masterclass"] = "Standard"
    density: Literal["Concise", "Balanced", "Elaborate"] = "Balanced"
    precision_mode: bool = False
    lenses: SynthesisLenses = Field(default_factory=SynthesisLenses)
    reasoning_style: Literal["Guided", "Socratic", "Challenge"] = "Guided"


class PromptSpec(BaseModel):
    tier: EvolutionTier
    instruction: str
    response_format: Tuple[str, ...]
    topic: str
    mastery: float
    mastery_band: str
    strategy: str
    config: SynthesisConfig = Field(default_factory=SynthesisConfig)
    content: str
    history: List[Dict[str, str]] = Field(default_factory=list)
    expect_json: bool = False


def mastery_band(mastery: float) -> str:
    if mastery < 0.3:
        return "Early Acquisition"
    if mastery < 0.7:
        return "Structural Development"
    return "Advanced Mastery"


def suggestion_strategy(mastery: float) -> str:
    """Pick the follow-up topic strategy for a mastery level."""
    if mastery < 0.4:
        return "reinforcement"
    if mastery > 0.7:
        return "expansion"
    return "strengthening"


def build_prompt_spec(
    profile: UserKnowledgeProfile,
    topic: str,
    content: str,
    config: Optional[SynthesisConfig] = None,
    *,
    history: Optional[List[Dict[str, str]]] = None,
    expect_json: bool = False,
    registry: TierRegistry = TIER_REGISTRY,
) -> PromptSpec:
    item = profile.find_topic(topic)
    mastery = item.mastery if item is not None else 0.0
    instruction, response_format = registry.behavior(profile.evolution_tier)
    return PromptSpec(
        tier=profile.evolution_tier,
        instruction=instruction,
        response_format=response_format,
        topic=topic,
        mastery=mastery,
        mastery_band=mastery_band(mastery),
        strategy=suggestion_strategy(mastery),
        config=config or SynthesisConfig(),
        content=content,
        history=list(history or [])[-5:],
        expect_json=expect_json,
    )


def extract_json(text: str) -> Any:
    """Return the first JSON object or array embedded in ``text`` (``None`` if absent)."""
    decoder = json.JSONDecoder()
    for idx, char in enumerate(text or ""):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(text, idx)
        except ValueError:
            continue
        return value
    return None


def parse_suggestions(payload: Any) -> List[TopicSuggestion]:
    """Keep the well-formed entries of a generated suggestion list."""
    if isinstance(payload, dict):
        payload = payload.get("suggestions")
    if not isinstance(payload, list):
        return []
    suggestions = []
    for entry in payload:
        try:
            suggestions.append(TopicSuggestion.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Dropping malformed suggestion %r: %s", entry, exc)
    return suggestions


class GenerationClient:
    """OpenAI-style chat completion client."""

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.url = url or GENERATION_URL
        self.model = model or MODEL_ID
        self.timeout = timeout if timeout is not None else _safe_int("LLM_TIMEOUT", 120)

    def _messages(self, spec: PromptSpec) -> List[Dict[str, str]]:
        context = {
            "tier": spec.tier.value,
            "instruction": spec.instruction,
            "response_format": list(spec.response_format),
            "topic": spec.topic,
            "mastery": round(spec.mastery, 2),
            "mastery_band": spec.mastery_band,
            "strategy": spec.strategy,
            "config": spec.config.model_dump(),
            "expect_json": spec.expect_json,
        }
        messages = [
            {"role": "system", "content": SYSTEM_INSTRUCTION},
            {"role": "system", "content": json.dumps(context, ensure_ascii=False)},
        ]
        messages.extend(spec.history)
        messages.append({"role": "user", "content": spec.content})
        return messages

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        return requests.post(self.url, json=payload, timeout=self.timeout)

    def generate(self, spec: PromptSpec) -> Union[str, Any]:
        messages = self._messages(spec)
        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": 0.2}
        start = time.perf_counter()
        try:
            response = self._post(payload)
            if response.status_code == 400:
                # Some local servers reject optional sampling fields.
                response = self._post({"model": self.model, "messages": messages})
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as exc:
            detail = exc.response.text[:300] if exc.response is not None else ""
            status = exc.response.status_code if exc.response is not None else "?"
            raise GenerationError(f"Generation HTTP {status}: {detail}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise GenerationError(f"Generation error: {exc}") from exc
        finally:
            logger.info(
                "generation call model=%s tier=%s latency_ms=%d",
                self.model,
                spec.tier.value,
                int((time.perf_counter() - start) * 1000),
            )

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                text = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError) as exc:
                raise GenerationError(f"Unexpected generation response: {str(data)[:300]}") from exc

        if spec.expect_json:
            return extract_json(text)
        return text

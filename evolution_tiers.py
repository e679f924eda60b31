"""Evolution tier ladder configuration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple


class TierConfigError(ValueError):
    """Raised when the tier ladder definition is inconsistent."""


class EvolutionTier(str, Enum):
    EXPLORER = "Explorer"
    STRUCTURED_LEARNER = "Structured Learner"
    SOCRATIC_THINKER = "Socratic Thinker"
    SYSTEMS_MASTER = "Systems Master"


@dataclass(frozen=True)
class TierRequirement:
    """Counters a learner must reach on one topic before the next tier unlocks."""

    inquiry_threshold: int
    vault_threshold: int
    inquiry_weight: float
    vault_weight: float


@dataclass(frozen=True)
class TierDefinition:
    """Immutable representation of a rung on the evolution ladder."""

    tier: EvolutionTier
    rank: int
    instruction: str
    response_format: Tuple[str, ...]
    requirement: Optional[TierRequirement] = None

    @property
    def label(self) -> str:
        return self.tier.value


DEFAULT_TIERS: Tuple[TierDefinition, ...] = (
    TierDefinition(
        tier=EvolutionTier.EXPLORER,
        rank=0,
        instruction=(
            "Focus on intuitive, clear explanations. Use mental models for beginners. "
            "Give direct answers."
        ),
        response_format=("Quick Answer", "Deep Dive", "Key Takeaways"),
        requirement=TierRequirement(3, 1, 70.0, 30.0),
    ),
    TierDefinition(
        tier=EvolutionTier.STRUCTURED_LEARNER,
        rank=1,
        instruction=(
            "Provide comprehensive structural context. Explain tradeoffs and historical "
            "context. Be thorough but direct."
        ),
        response_format=("Structural Context", "Mechanism", "Tradeoffs", "Key Takeaways"),
        requirement=TierRequirement(5, 2, 60.0, 40.0),
    ),
    TierDefinition(
        tier=EvolutionTier.SOCRATIC_THINKER,
        rank=2,
        instruction=(
            "Do not provide immediate direct answers. Ask probing questions that guide the "
            "learner to their own conclusions, reveal the answer progressively and test "
            "their assumptions."
        ),
        response_format=(
            "Intuition Nudge",
            "Probing Question",
            "Mechanism Hint",
            "Potential Failure Modes",
        ),
        requirement=TierRequirement(8, 4, 50.0, 50.0),
    ),
    TierDefinition(
        tier=EvolutionTier.SYSTEMS_MASTER,
        rank=3,
        instruction=(
            "Link concepts across domains. Discuss emergent properties, feedback loops and "
            "multi-domain implications. Use high-level abstractions."
        ),
        response_format=(
            "System Architecture",
            "Emergent Properties",
            "Multi-Domain Link",
            "Socratic Probe",
        ),
    ),
)


class TierRegistry:
    """Ordered tier ladder keyed by explicit integer rank."""

    def __init__(self, definitions: Iterable[TierDefinition] = DEFAULT_TIERS) -> None:
        self._tiers: List[TierDefinition] = []
        self.load(definitions)

    # ------------------------------------------------------------------
    def load(self, definitions: Iterable[TierDefinition]) -> None:
        """Validate ``definitions`` and replace the current ladder."""

        tiers = sorted(definitions, key=lambda definition: definition.rank)
        if not tiers:
            raise TierConfigError("Tier ladder may not be empty")

        seen: set[EvolutionTier] = set()
        for expected_rank, definition in enumerate(tiers):
            if definition.rank != expected_rank:
                raise TierConfigError(
                    f"Tier ranks must be contiguous from 0 (expected {expected_rank}, "
                    f"got {definition.rank} for {definition.label})"
                )
            if definition.tier in seen:
                raise TierConfigError(f"Duplicate tier detected: {definition.label}")
            seen.add(definition.tier)

            requirement = definition.requirement
            is_last = expected_rank == len(tiers) - 1
            if requirement is None and not is_last:
                raise TierConfigError(
                    f"Only the highest tier may be terminal ({definition.label} has no requirement)"
                )
            if requirement is not None and is_last:
                raise TierConfigError(
                    f"Highest tier {definition.label} must not define a requirement"
                )
            if requirement is not None:
                if requirement.inquiry_threshold <= 0 or requirement.vault_threshold <= 0:
                    raise TierConfigError(f"Thresholds for {definition.label} must be positive")
                if abs(requirement.inquiry_weight + requirement.vault_weight - 100.0) > 1e-9:
                    raise TierConfigError(f"Weights for {definition.label} must sum to 100")

        self._tiers = tiers

    # ------------------------------------------------------------------
    @property
    def tiers(self) -> List[TierDefinition]:
        """Return a shallow copy of the known tier definitions."""

        return list(self._tiers)

    def sequence(self) -> Sequence[EvolutionTier]:
        """Return the tiers in ascending rank."""

        return tuple(definition.tier for definition in self._tiers)

    def coerce(self, value: EvolutionTier | str) -> EvolutionTier:
        """Map a stored tier label onto :class:`EvolutionTier`."""

        try:
            tier = EvolutionTier(value)
        except ValueError as exc:
            raise TierConfigError(f"Unknown evolution tier: {value!r}") from exc
        if tier not in self.sequence():
            raise TierConfigError(f"Tier {tier.value} is not part of this ladder")
        return tier

    def get(self, tier: EvolutionTier | str) -> TierDefinition:
        coerced = self.coerce(tier)
        for definition in self._tiers:
            if definition.tier == coerced:
                return definition
        raise TierConfigError(f"Unknown evolution tier: {tier!r}")

    def rank(self, tier: EvolutionTier | str) -> int:
        return self.get(tier).rank

    def lowest_tier(self) -> EvolutionTier:
        return self._tiers[0].tier

    def is_terminal(self, tier: EvolutionTier | str) -> bool:
        return self.get(tier).requirement is None

    def next_tier(self, tier: EvolutionTier | str) -> Optional[EvolutionTier]:
        """Return the tier one rank above ``tier`` or ``None`` at the top."""

        rank = self.rank(tier)
        if rank + 1 >= len(self._tiers):
            return None
        return self._tiers[rank + 1].tier

    def requirement_for(self, tier: EvolutionTier | str) -> Optional[TierRequirement]:
        return self.get(tier).requirement

    def behavior(self, tier: EvolutionTier | str) -> Tuple[str, Tuple[str, ...]]:
        """Return ``(instruction, response_format)`` for downstream generation."""

        definition = self.get(tier)
        return definition.instruction, definition.response_format

    # ------------------------------------------------------------------
    def __iter__(self):
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)


TIER_REGISTRY = TierRegistry()
"""Singleton registry used throughout the application."""

"""Pydantic schemas for learner profiles, evolution signals and vault content."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from evolution_tiers import EvolutionTier

__all__ = [
    "InteractionKind",
    "TopicProgress",
    "TopicSuggestion",
    "EvolutionProgress",
    "UserKnowledgeProfile",
    "SignalReport",
    "KnowledgeItemType",
    "KnowledgeSource",
    "Vault",
    "KnowledgeItem",
    "SaveIntent",
    "ImportSummary",
    "ExportBundle",
]


class InteractionKind(str, Enum):
    """Learner actions that move mastery and evolution counters."""

    VIEW = "view"
    SAVE = "save"
    FOLLOW_UP = "followUp"
    EXPAND_DEEP_DIVE = "expandDeepDive"


class _CamelModel(BaseModel):
    """Stored records keep their camelCase keys; attributes stay snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TopicProgress(_CamelModel):
    topic: str
    mastery: float = Field(default=0.0, ge=0.0, le=1.0)
    last_reviewed: int = Field(description="Epoch milliseconds of the last interaction.")
    interactions: int = Field(default=0, ge=0)


class TopicSuggestion(_CamelModel):
    topic: str
    reason: str
    target_mastery: float


class EvolutionProgress(_CamelModel):
    current_topic: str = ""
    inquiry_count: int = Field(default=0, ge=0)
    vault_save_count: int = Field(default=0, ge=0)
    sessions_completed: int = Field(default=0, ge=0)


class UserKnowledgeProfile(_CamelModel):
    user_id: str
    items: List[TopicProgress] = Field(default_factory=list)
    suggestions: List[TopicSuggestion] | None = None
    evolution_tier: EvolutionTier = EvolutionTier.EXPLORER
    total_saves: int = Field(default=0, ge=0)
    total_follow_ups: int = Field(default=0, ge=0)
    total_deep_dives: int = Field(default=0, ge=0)
    evolution_progress: EvolutionProgress = Field(default_factory=EvolutionProgress)

    def find_topic(self, topic: str) -> TopicProgress | None:
        for item in self.items:
            if item.topic == topic:
                return item
        return None


class SignalReport(_CamelModel):
    """Read-only metrics derived from a profile."""

    tier: EvolutionTier
    next_tier: EvolutionTier | None = None
    avg_depth: float
    mastery_velocity: float
    vault_usage_rate: float
    next_tier_ready: bool
    progress_percent: float
    inquiry_count: int
    vault_save_count: int
    current_topic: str
    inquiry_threshold: int | None = None
    vault_threshold: int | None = None


KnowledgeItemType = Literal["highlight", "block", "note", "snapshot"]
KnowledgeSource = Literal["lesson", "chat", "article", "manual"]


class Vault(_CamelModel):
    id: str
    user_id: str
    name: str
    description: str | None = None
    topic_hints: List[str] = Field(default_factory=list)
    created_at: int
    updated_at: int


class SaveIntent(_CamelModel):
    user_id: str = ""
    vault_id: str = ""
    type: KnowledgeItemType = "highlight"
    content: str = ""
    topic: str | None = None
    source: KnowledgeSource = "manual"
    context: Dict[str, Any] | None = None
    tags: List[str] = Field(default_factory=list)
    folder: str | None = None


class KnowledgeItem(_CamelModel):
    id: str
    user_id: str
    vault_id: str
    type: KnowledgeItemType
    content: str
    topic: str | None = None
    source: KnowledgeSource
    context: Dict[str, Any] | None = None
    created_at: int
    updated_at: int | None = None
    edited: bool | None = None
    tags: List[str] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)
    folder: str | None = None


class ImportSummary(_CamelModel):
    added: int
    skipped: int
    total: int


class ExportBundle(_CamelModel):
    data: str
    mime_type: str
    filename: str

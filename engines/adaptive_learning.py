"""Adaptive learning engine: per-topic mastery and evolution tier progression.

Every learner action (viewing a lesson, saving a fragment to a vault, asking a
follow-up, expanding a deep dive) nudges the mastery of the active topic and
feeds the evolution counters that gate the next tier. The counters are scoped
to the topic the learner is focused on: switching topics starts a new session
and clears the partial inquiry and vault progress.

The pure helpers (:func:`apply_interaction`, :func:`advance_tier`) operate on
profile copies; :class:`AdaptiveLearningEngine` wraps them in a per-user
read-modify-write cycle against a :class:`~profile_store.ProfileRepository`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import warnings
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from engines.evolution_signals import compute_evolution_signals
from evolution_tiers import TIER_REGISTRY, TierRegistry
from profile_store import ProfileRepository, ProfileStoreError
from schemas import (
    EvolutionProgress,
    InteractionKind,
    SignalReport,
    TopicProgress,
    UserKnowledgeProfile,
)

_LOGGER = logging.getLogger(__name__)

LOCK_STRIPES = 64

MASTERY_DELTAS: Mapping[InteractionKind, float] = {
    InteractionKind.VIEW: 0.04,
    InteractionKind.SAVE: 0.12,
    InteractionKind.FOLLOW_UP: 0.15,
    InteractionKind.EXPAND_DEEP_DIVE: 0.08,
}


class ProfilePersistenceWarning(RuntimeWarning):
    """Issued when an updated profile could not be written back."""


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    _LOGGER.info(message)


def _now_ms() -> int:
    return int(time.time() * 1000)


def coerce_interaction(action: InteractionKind | str) -> InteractionKind:
    try:
        return InteractionKind(action)
    except ValueError as exc:
        allowed = ", ".join(kind.value for kind in InteractionKind)
        raise ValueError(f"Unknown interaction kind {action!r}; expected one of: {allowed}") from exc


def default_profile(user_id: str, registry: TierRegistry = TIER_REGISTRY) -> UserKnowledgeProfile:
    return UserKnowledgeProfile(user_id=user_id, evolution_tier=registry.lowest_tier())


def apply_interaction(
    profile: UserKnowledgeProfile,
    topic: str,
    action: InteractionKind | str,
    *,
    now_ms: Optional[int] = None,
) -> UserKnowledgeProfile:
    """Return a copy of ``profile`` with ``action`` on ``topic`` applied."""

    kind = coerce_interaction(action)
    timestamp = _now_ms() if now_ms is None else now_ms
    updated = profile.model_copy(deep=True)

    item = updated.find_topic(topic)
    if item is None:
        item = TopicProgress(topic=topic, mastery=0.0, last_reviewed=timestamp, interactions=0)
        updated.items.append(item)
    item.interactions += 1
    item.last_reviewed = timestamp

    progress = updated.evolution_progress
    if progress.current_topic != topic:
        progress.current_topic = topic
        progress.inquiry_count = 0
        progress.vault_save_count = 0
        progress.sessions_completed += 1

    item.mastery = min(item.mastery + MASTERY_DELTAS[kind], 1.0)

    if kind is InteractionKind.SAVE:
        updated.total_saves += 1
        progress.vault_save_count += 1
    elif kind is InteractionKind.FOLLOW_UP:
        updated.total_follow_ups += 1
        progress.inquiry_count += 1
    elif kind is InteractionKind.EXPAND_DEEP_DIVE:
        updated.total_deep_dives += 1
        progress.inquiry_count += 1

    return updated


def advance_tier(
    profile: UserKnowledgeProfile, registry: TierRegistry = TIER_REGISTRY
) -> UserKnowledgeProfile:
    """Move one rank up and clear the evolution counters; unchanged at the top."""

    updated = profile.model_copy(deep=True)
    next_tier = registry.next_tier(profile.evolution_tier)
    if next_tier is None:
        return updated
    updated.evolution_tier = next_tier
    updated.evolution_progress = EvolutionProgress()
    return updated


class AdaptiveLearningEngine:
    """Persisted mastery tracking and tier upgrades for many learners."""

    def __init__(
        self,
        repository: ProfileRepository,
        *,
        registry: TierRegistry = TIER_REGISTRY,
        enforce_readiness: bool = True,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.enforce_readiness = enforce_readiness
        self._clock = clock or _now_ms
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]

    # ------------------------------------------------------------------
    def _lock_for(self, user_id: str) -> threading.Lock:
        # users sharing a stripe serialise against each other; the set never grows
        return self._locks[hash(user_id) % len(self._locks)]

    def _load(self, user_id: str) -> Tuple[UserKnowledgeProfile, bool]:
        """Return the profile and whether it may be written back.

        A failed read yields a transient default that must never replace the
        stored record.
        """
        try:
            profile = self.repository.get(user_id)
        except ProfileStoreError as exc:
            _LOGGER.warning("Profile read failed for %s, using defaults: %s", user_id, exc)
            return default_profile(user_id, self.registry), False
        if profile is not None:
            return profile, True

        profile = default_profile(user_id, self.registry)
        _json_log("profile_created", {"user_id": user_id, "tier": profile.evolution_tier.value})
        self._store(profile)
        return profile, True

    def _store(self, profile: UserKnowledgeProfile, writable: bool = True) -> bool:
        if not writable:
            _LOGGER.warning("Skipping write for %s after a failed read", profile.user_id)
            warnings.warn(
                f"Profile for {profile.user_id} could not be read; the update was not persisted",
                ProfilePersistenceWarning,
                stacklevel=3,
            )
            return False
        try:
            self.repository.put(profile)
        except ProfileStoreError as exc:
            _LOGGER.warning("Profile write failed for %s: %s", profile.user_id, exc)
            warnings.warn(
                f"Profile for {profile.user_id} was updated but not persisted: {exc}",
                ProfilePersistenceWarning,
                stacklevel=3,
            )
            return False
        return True

    # ------------------------------------------------------------------
    def get_profile(self, user_id: str) -> UserKnowledgeProfile:
        """Return the stored profile, creating a default one when absent or corrupt.

        When the store cannot be read a default is returned but not persisted.
        """

        with self._lock_for(user_id):
            profile, _ = self._load(user_id)
            return profile

    def record_interaction(
        self, user_id: str, topic: str, action: InteractionKind | str
    ) -> UserKnowledgeProfile:
        kind = coerce_interaction(action)
        with self._lock_for(user_id):
            before, writable = self._load(user_id)
            profile = apply_interaction(before, topic, kind, now_ms=self._clock())
            self._store(profile, writable)

        progress = profile.evolution_progress
        _json_log(
            "interaction_recorded",
            {
                "user_id": user_id,
                "topic": topic,
                "action": kind.value,
                "mastery": profile.find_topic(topic).mastery,
                "inquiry_count": progress.inquiry_count,
                "vault_save_count": progress.vault_save_count,
                "topic_switched": before.evolution_progress.current_topic != topic,
            },
        )
        return profile

    def upgrade_tier(self, user_id: str) -> UserKnowledgeProfile:
        """Advance ``user_id`` one tier.

        With ``enforce_readiness`` the upgrade only happens when the current
        signals report ``next_tier_ready``; otherwise the stored profile is
        returned unchanged. At the terminal tier this is always a no-op.
        """

        with self._lock_for(user_id):
            profile, writable = self._load(user_id)
            if self.registry.is_terminal(profile.evolution_tier):
                return profile

            if self.enforce_readiness:
                signals = compute_evolution_signals(profile, self.registry)
                if not signals.next_tier_ready:
                    _json_log(
                        "tier_upgrade_blocked",
                        {
                            "user_id": user_id,
                            "tier": profile.evolution_tier.value,
                            "inquiry_count": signals.inquiry_count,
                            "vault_save_count": signals.vault_save_count,
                            "progress_percent": round(signals.progress_percent, 2),
                        },
                    )
                    return profile

            upgraded = advance_tier(profile, self.registry)
            self._store(upgraded, writable)

        _json_log(
            "tier_upgraded",
            {
                "user_id": user_id,
                "previous_tier": profile.evolution_tier.value,
                "tier": upgraded.evolution_tier.value,
            },
        )
        return upgraded

    def evolution_signals(self, user_id: str) -> SignalReport:
        return compute_evolution_signals(self.get_profile(user_id), self.registry)

    def get_mastery_for_topic(self, user_id: str, topic: str) -> float:
        item = self.get_profile(user_id).find_topic(topic)
        return item.mastery if item is not None else 0.0

"""Derived evolution metrics for a learner profile."""

from __future__ import annotations

from evolution_tiers import TIER_REGISTRY, TierRegistry
from schemas import SignalReport, UserKnowledgeProfile


def _ratio(count: int, threshold: int) -> float:
    return min(count / threshold, 1.0)


def compute_evolution_signals(
    profile: UserKnowledgeProfile, registry: TierRegistry = TIER_REGISTRY
) -> SignalReport:
    """Summarise depth, velocity and vault usage and check tier readiness.

    ``progress_percent`` blends the inquiry and vault ratios with the weights
    of the current tier; each ratio is capped at 1 before weighting. At the
    terminal tier there is nothing left to unlock, so readiness is ``False``
    and the thresholds are ``None``.
    """

    topics = len(profile.items)
    depth_total = profile.total_follow_ups + profile.total_deep_dives
    avg_depth = depth_total / topics if topics else 0.0
    mastery_velocity = sum(item.mastery for item in profile.items) / topics if topics else 0.0
    vault_usage_rate = profile.total_saves / topics if topics and profile.total_saves else 0.0

    progress = profile.evolution_progress
    tier = registry.coerce(profile.evolution_tier)
    requirement = registry.requirement_for(tier)

    next_tier_ready = False
    progress_percent = 0.0
    inquiry_threshold = None
    vault_threshold = None
    if requirement is not None:
        inquiry_threshold = requirement.inquiry_threshold
        vault_threshold = requirement.vault_threshold
        progress_percent = (
            _ratio(progress.inquiry_count, inquiry_threshold) * requirement.inquiry_weight
            + _ratio(progress.vault_save_count, vault_threshold) * requirement.vault_weight
        )
        next_tier_ready = (
            progress.inquiry_count >= inquiry_threshold
            and progress.vault_save_count >= vault_threshold
        )

    return SignalReport(
        tier=tier,
        next_tier=registry.next_tier(tier),
        avg_depth=avg_depth,
        mastery_velocity=mastery_velocity,
        vault_usage_rate=vault_usage_rate,
        next_tier_ready=next_tier_ready,
        progress_percent=progress_percent,
        inquiry_count=progress.inquiry_count,
        vault_save_count=progress.vault_save_count,
        current_topic=progress.current_topic,
        inquiry_threshold=inquiry_threshold,
        vault_threshold=vault_threshold,
    )

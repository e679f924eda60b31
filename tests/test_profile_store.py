import json
import sqlite3

import pytest

import db
from engines.adaptive_learning import apply_interaction, default_profile
from evolution_tiers import EvolutionTier
from profile_store import (
    InMemoryProfileRepository,
    ProfileStoreError,
    SQLiteProfileRepository,
    deserialize_profile,
    serialize_profile,
)
from schemas import TopicSuggestion


def _busy_profile():
    profile = default_profile("alice")
    for action in ("followUp", "save", "expandDeepDive", "view"):
        profile = apply_interaction(profile, "Recursion", action, now_ms=1_700_000_000_000)
    profile = apply_interaction(profile, "Sorting", "followUp", now_ms=1_700_000_050_000)
    profile.evolution_tier = EvolutionTier.SOCRATIC_THINKER
    return profile


def test_serialized_record_keeps_camel_case_shape():
    record = json.loads(serialize_profile(_busy_profile()))

    assert set(record) == {
        "userId",
        "items",
        "evolutionTier",
        "totalSaves",
        "totalFollowUps",
        "totalDeepDives",
        "evolutionProgress",
    }
    assert record["evolutionTier"] == "Socratic Thinker"
    assert set(record["items"][0]) == {"topic", "mastery", "lastReviewed", "interactions"}
    assert set(record["evolutionProgress"]) == {
        "currentTopic",
        "inquiryCount",
        "vaultSaveCount",
        "sessionsCompleted",
    }


def test_round_trip_preserves_every_field():
    profile = _busy_profile()
    profile.suggestions = [TopicSuggestion(topic="Trees", reason="next step", target_mastery=0.6)]

    restored = deserialize_profile(serialize_profile(profile))

    assert restored == profile
    assert restored.to_record() == profile.to_record()


def test_existing_client_record_loads_unchanged():
    stored = {
        "userId": "alice",
        "items": [{"topic": "Recursion", "mastery": 0.42, "lastReviewed": 1700000000000, "interactions": 5}],
        "evolutionTier": "Structured Learner",
        "totalSaves": 2,
        "totalFollowUps": 3,
        "totalDeepDives": 1,
        "evolutionProgress": {
            "currentTopic": "Recursion",
            "inquiryCount": 4,
            "vaultSaveCount": 2,
            "sessionsCompleted": 3,
        },
    }
    profile = deserialize_profile(json.dumps(stored))

    assert profile.evolution_tier == EvolutionTier.STRUCTURED_LEARNER
    assert profile.find_topic("Recursion").mastery == pytest.approx(0.42)
    assert profile.to_record() == stored


def test_sqlite_repository_round_trip(temp_db):
    repository = SQLiteProfileRepository()
    profile = _busy_profile()

    assert repository.get("alice") is None
    repository.put(profile)
    assert repository.get("alice") == profile

    profile.total_saves = 10
    repository.put(profile)
    assert repository.get("alice").total_saves == 10


def test_sqlite_repository_treats_corrupt_rows_as_missing(temp_db):
    db.put_profile_payload("alice", "[1, 2")
    db.put_profile_payload("bob", json.dumps({"userId": "bob", "evolutionTier": "Wizard"}))
    repository = SQLiteProfileRepository()

    assert repository.get("alice") is None
    assert repository.get("bob") is None


def test_sqlite_errors_are_wrapped(temp_db, monkeypatch):
    def _boom(*_args, **_kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "get_profile_payload", _boom)
    monkeypatch.setattr(db, "put_profile_payload", _boom)
    repository = SQLiteProfileRepository()

    with pytest.raises(ProfileStoreError):
        repository.get("alice")
    with pytest.raises(ProfileStoreError):
        repository.put(default_profile("alice"))


def test_in_memory_repository_returns_copies():
    repository = InMemoryProfileRepository()
    profile = default_profile("alice")
    repository.put(profile)

    loaded = repository.get("alice")
    loaded.total_saves = 99

    assert repository.get("alice").total_saves == 0


def test_record_stored_under_wrong_user_is_ignored():
    repository = InMemoryProfileRepository()
    repository.store_raw("alice", serialize_profile(default_profile("mallory")))
    assert repository.get("alice") is None

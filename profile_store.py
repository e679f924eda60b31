"""Profile repositories used by the adaptive learning engine.

Profiles are persisted as one JSON document per user, using the camelCase
record shape the web client has always stored::

    {userId, items: [{topic, mastery, lastReviewed, interactions}], evolutionTier,
     totalSaves, totalFollowUps, totalDeepDives,
     evolutionProgress: {currentTopic, inquiryCount, vaultSaveCount, sessionsCompleted}}
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from typing import Dict, Optional

from pydantic import ValidationError

import db
from schemas import UserKnowledgeProfile

_LOGGER = logging.getLogger(__name__)


class ProfileStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


def serialize_profile(profile: UserKnowledgeProfile) -> str:
    return json.dumps(profile.to_record(), ensure_ascii=False, sort_keys=True)


def deserialize_profile(payload: str) -> UserKnowledgeProfile:
    """Parse a stored record; raises ``ValueError`` when it is corrupt."""

    try:
        return UserKnowledgeProfile.model_validate_json(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid profile record: {exc.error_count()} error(s)") from exc


def _load_or_none(user_id: str, payload: Optional[str]) -> Optional[UserKnowledgeProfile]:
    if payload is None:
        return None
    try:
        profile = deserialize_profile(payload)
    except ValueError as exc:
        _LOGGER.warning("Discarding corrupt profile for %s: %s", user_id, exc)
        return None
    if profile.user_id != user_id:
        _LOGGER.warning(
            "Discarding profile stored under %s for a different user (%s)",
            user_id,
            profile.user_id,
        )
        return None
    return profile


class ProfileRepository:
    """Get/put access to learner profiles keyed by user id."""

    def get(self, user_id: str) -> Optional[UserKnowledgeProfile]:
        raise NotImplementedError

    def put(self, profile: UserKnowledgeProfile) -> None:
        raise NotImplementedError


class SQLiteProfileRepository(ProfileRepository):
    def get(self, user_id: str) -> Optional[UserKnowledgeProfile]:
        try:
            payload = db.get_profile_payload(user_id)
        except sqlite3.Error as exc:
            raise ProfileStoreError(f"Failed to read profile for {user_id}: {exc}") from exc
        return _load_or_none(user_id, payload)

    def put(self, profile: UserKnowledgeProfile) -> None:
        try:
            db.put_profile_payload(profile.user_id, serialize_profile(profile))
        except sqlite3.Error as exc:
            raise ProfileStoreError(
                f"Failed to persist profile for {profile.user_id}: {exc}"
            ) from exc


class InMemoryProfileRepository(ProfileRepository):
    """Stores serialized records so callers never share mutable state."""

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[UserKnowledgeProfile]:
        with self._lock:
            payload = self._records.get(user_id)
        return _load_or_none(user_id, payload)

    def put(self, profile: UserKnowledgeProfile) -> None:
        payload = serialize_profile(profile)
        with self._lock:
            self._records[profile.user_id] = payload

    def raw(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._records.get(user_id)

    def store_raw(self, user_id: str, payload: str) -> None:
        with self._lock:
            self._records[user_id] = payload

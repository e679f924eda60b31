"""Vaults and saved knowledge fragments."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

import db
from schemas import ExportBundle, ImportSummary, KnowledgeItem, SaveIntent, Vault

logger = logging.getLogger(__name__)

DEFAULT_VAULT_NAME = "General Knowledge"
DEFAULT_VAULT_DESCRIPTION = "Your primary learning domain."

# Fields a caller may change on an existing item.
_EDITABLE_FIELDS = {"type", "content", "topic", "source", "context", "tags", "links", "folder", "vault_id"}
_CAMEL_TO_FIELD = {to_camel(name): name for name in KnowledgeItem.model_fields}


class KnowledgeValidationError(ValueError):
    """Raised when a save, update or import request is malformed."""


class KnowledgeItemNotFound(LookupError):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def generate_user_id() -> str:
    return f"user_{secrets.token_hex(5)}"


class KnowledgeEngine:
    def __init__(self, clock=None) -> None:
        self._clock = clock or _now_ms

    # ---------- vaults ----------
    def fetch_vaults(self, user_id: str) -> List[Vault]:
        """List the user's vaults, creating the default vault on first use."""
        vaults = [Vault.model_validate(row) for row in db.list_vaults(user_id)]
        if vaults:
            return vaults
        logger.info("Creating default vault for %s", user_id)
        return [self.save_vault(user_id, DEFAULT_VAULT_NAME, DEFAULT_VAULT_DESCRIPTION)]

    def save_vault(
        self,
        user_id: str,
        name: str,
        description: Optional[str] = None,
        topic_hints: Optional[Iterable[str]] = None,
    ) -> Vault:
        if not user_id:
            raise KnowledgeValidationError("Missing user id")
        if not name or not name.strip():
            raise KnowledgeValidationError("Vault name must not be empty")
        now = self._clock()
        vault = Vault(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name.strip(),
            description=description,
            topic_hints=list(topic_hints or []),
            created_at=now,
            updated_at=now,
        )
        db.insert_vault(vault.to_record())
        return vault

    def delete_vault(self, vault_id: str) -> int:
        removed = db.delete_vault(vault_id)
        logger.info("Deleted vault %s with %d item(s)", vault_id, removed)
        return removed

    # ---------- items ----------
    def save_knowledge(self, intent: SaveIntent) -> KnowledgeItem:
        if not intent.user_id:
            raise KnowledgeValidationError("Missing user id")
        if not intent.vault_id:
            raise KnowledgeValidationError("Missing vault id")
        if not intent.content or not intent.content.strip():
            raise KnowledgeValidationError("Empty content")

        item = KnowledgeItem(
            id=str(uuid.uuid4()),
            **intent.model_dump(exclude={"tags"}),
            tags=list(intent.tags),
            links=[],
            created_at=self._clock(),
        )
        db.insert_knowledge_items([(item.to_record(), content_hash(item.content))])
        return item

    def update_item(self, item_id: str, updates: Mapping[str, Any]) -> KnowledgeItem:
        current = self.get_item(item_id)
        if current is None:
            raise KnowledgeItemNotFound(f"Item not found: {item_id}")

        # Accept camelCase record keys as well as attribute names.
        normalized: Dict[str, Any] = {}
        for key, value in updates.items():
            field_name = _CAMEL_TO_FIELD.get(key, key)
            if field_name not in _EDITABLE_FIELDS:
                raise KnowledgeValidationError(f"Field cannot be updated: {key}")
            normalized[field_name] = value

        if "content" in normalized and not str(normalized["content"] or "").strip():
            raise KnowledgeValidationError("Empty content")

        merged = {**current.model_dump(), **normalized, "updated_at": self._clock(), "edited": True}
        try:
            item = KnowledgeItem.model_validate(merged)
        except ValidationError as exc:
            raise KnowledgeValidationError(str(exc)) from exc
        db.replace_knowledge_item(item.to_record(), content_hash(item.content))
        return item

    def fetch_knowledge(self, user_id: str, vault_id: Optional[str] = None) -> List[KnowledgeItem]:
        return [KnowledgeItem.model_validate(row) for row in db.list_knowledge(user_id, vault_id)]

    def get_item(self, item_id: str) -> Optional[KnowledgeItem]:
        row = db.get_knowledge_item(item_id)
        return KnowledgeItem.model_validate(row) if row else None

    def delete_item(self, item_id: str) -> bool:
        return db.delete_knowledge_item(item_id) > 0

    # ---------- export / import ----------
    def generate_export(self, fmt: str, user_id: str, vault_id: Optional[str] = None) -> ExportBundle:
        items = self.fetch_knowledge(user_id, vault_id)
        stamp = self._clock()
        scope = vault_id or "all"
        if fmt == "json":
            payload = {
                "meta": {"exportedAt": datetime.now(timezone.utc).isoformat(), "userId": user_id},
                "items": [item.to_record() for item in items],
            }
            return ExportBundle(
                data=json.dumps(payload, indent=2, ensure_ascii=False),
                mime_type="application/json",
                filename=f"vault-{scope}-{stamp}.json",
            )
        if fmt == "markdown":
            parts = ["# Vault Export\n\n"]
            for item in items:
                parts.append(f"## {item.topic or 'Fragment'}\n{item.content}\n\n---\n\n")
            return ExportBundle(
                data="".join(parts),
                mime_type="text/markdown",
                filename=f"vault-{scope}-{stamp}.md",
            )
        raise KnowledgeValidationError(f"Unsupported export format: {fmt}")

    def import_json(self, payload: str, user_id: str, vault_id: str) -> ImportSummary:
        """Import exported items into ``vault_id``, skipping content the user already has."""
        if not user_id or not vault_id:
            raise KnowledgeValidationError("Import requires a user id and a vault id")
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise KnowledgeValidationError(f"Import payload is not valid JSON: {exc}") from exc
        entries = data.get("items") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise KnowledgeValidationError("Import payload must contain an 'items' list")

        known = db.list_content_hashes(user_id)
        fresh: list[tuple[Dict[str, Any], str]] = []
        skipped = 0
        for entry in entries:
            content = entry.get("content") if isinstance(entry, dict) else None
            if not isinstance(content, str) or not content.strip():
                skipped += 1
                continue
            digest = content_hash(content)
            if digest in known:
                skipped += 1
                continue
            record = {
                **entry,
                "id": str(uuid.uuid4()),
                "userId": user_id,
                "vaultId": vault_id,
                "createdAt": entry.get("createdAt") or self._clock(),
            }
            record.setdefault("type", "highlight")
            record.setdefault("source", "manual")
            try:
                item = KnowledgeItem.model_validate(record)
            except ValidationError as exc:
                logger.warning("Skipping malformed import entry: %s", exc.errors()[:1])
                skipped += 1
                continue
            known.add(digest)
            fresh.append((item.to_record(), digest))

        if fresh:
            db.insert_knowledge_items(fresh)
        summary = ImportSummary(added=len(fresh), skipped=skipped, total=len(entries))
        logger.info(
            "Imported %d/%d item(s) into vault %s for %s",
            summary.added,
            summary.total,
            vault_id,
            user_id,
        )
        return summary

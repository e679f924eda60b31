import json
import re

import pytest

from knowledge_engine import (
    DEFAULT_VAULT_NAME,
    KnowledgeEngine,
    KnowledgeItemNotFound,
    KnowledgeValidationError,
    content_hash,
    generate_user_id,
)
from schemas import SaveIntent


class _Clock:
    def __init__(self):
        self.now = 1_700_000_000_000

    def __call__(self):
        self.now += 1
        return self.now


@pytest.fixture
def engine(temp_db):
    return KnowledgeEngine(clock=_Clock())


@pytest.fixture
def vault(engine):
    return engine.save_vault("alice", "Algorithms", description="CS basics", topic_hints=["recursion"])


def _save(engine, vault_id, content, topic=None, user_id="alice"):
    return engine.save_knowledge(
        SaveIntent(user_id=user_id, vault_id=vault_id, content=content, topic=topic, source="lesson")
    )


def test_default_vault_created_once(engine):
    first = engine.fetch_vaults("alice")
    second = engine.fetch_vaults("alice")

    assert [v.name for v in first] == [DEFAULT_VAULT_NAME]
    assert [v.id for v in second] == [first[0].id]
    assert engine.fetch_vaults("bob")[0].id != first[0].id


def test_save_vault_requires_name(engine):
    with pytest.raises(KnowledgeValidationError):
        engine.save_vault("alice", "   ")


def test_vaults_are_scoped_per_user(engine, vault):
    assert [v.id for v in engine.fetch_vaults("alice")] == [vault.id]
    assert vault.topic_hints == ["recursion"]
    assert engine.fetch_vaults("alice")[0].description == "CS basics"


@pytest.mark.parametrize(
    "intent",
    [
        SaveIntent(user_id="", vault_id="v", content="x"),
        SaveIntent(user_id="alice", vault_id="", content="x"),
        SaveIntent(user_id="alice", vault_id="v", content="   "),
    ],
)
def test_save_knowledge_rejects_incomplete_intents(engine, intent):
    with pytest.raises(KnowledgeValidationError):
        engine.save_knowledge(intent)


def test_saved_items_are_listed_newest_first(engine, vault):
    older = _save(engine, vault.id, "Base case stops recursion", topic="Recursion")
    newer = _save(engine, vault.id, "Each call gets its own frame", topic="Recursion")
    other_vault = engine.save_vault("alice", "Misc")
    _save(engine, other_vault.id, "Unrelated")

    items = engine.fetch_knowledge("alice", vault.id)

    assert [item.id for item in items] == [newer.id, older.id]
    assert len(engine.fetch_knowledge("alice")) == 3
    assert engine.fetch_knowledge("bob") == []
    assert older.tags == [] and older.links == []


def test_update_item_marks_edit(engine, vault):
    item = _save(engine, vault.id, "Draft note")

    updated = engine.update_item(item.id, {"content": "Final note", "tags": ["exam"]})

    assert updated.content == "Final note"
    assert updated.tags == ["exam"]
    assert updated.edited is True
    assert updated.updated_at is not None and updated.updated_at > item.created_at
    assert engine.get_item(item.id) == updated


def test_update_item_accepts_record_keys_and_rejects_identity_fields(engine, vault):
    item = _save(engine, vault.id, "Move me")
    target = engine.save_vault("alice", "Archive")

    moved = engine.update_item(item.id, {"vaultId": target.id})
    assert moved.vault_id == target.id

    with pytest.raises(KnowledgeValidationError):
        engine.update_item(item.id, {"userId": "mallory"})
    with pytest.raises(KnowledgeValidationError):
        engine.update_item(item.id, {"content": ""})


def test_update_missing_item(engine):
    with pytest.raises(KnowledgeItemNotFound):
        engine.update_item("missing", {"content": "x"})


def test_delete_item(engine, vault):
    item = _save(engine, vault.id, "Temporary")
    assert engine.delete_item(item.id) is True
    assert engine.get_item(item.id) is None
    assert engine.delete_item(item.id) is False


def test_delete_vault_removes_only_its_items(engine, vault):
    keep = engine.save_vault("alice", "Keep")
    _save(engine, vault.id, "gone 1")
    _save(engine, vault.id, "gone 2")
    kept = _save(engine, keep.id, "stays")

    assert engine.delete_vault(vault.id) == 2

    assert [v.id for v in engine.fetch_vaults("alice")] == [keep.id]
    assert [item.id for item in engine.fetch_knowledge("alice")] == [kept.id]


def test_json_export(engine, vault):
    _save(engine, vault.id, "Base case stops recursion", topic="Recursion")

    bundle = engine.generate_export("json", "alice", vault.id)
    payload = json.loads(bundle.data)

    assert bundle.mime_type == "application/json"
    assert re.fullmatch(rf"vault-{vault.id}-\d+\.json", bundle.filename)
    assert payload["meta"]["userId"] == "alice"
    assert "exportedAt" in payload["meta"]
    assert payload["items"][0]["content"] == "Base case stops recursion"
    assert payload["items"][0]["vaultId"] == vault.id


def test_markdown_export(engine, vault):
    _save(engine, vault.id, "Base case stops recursion", topic="Recursion")
    _save(engine, vault.id, "Loose thought")

    bundle = engine.generate_export("markdown", "alice")

    assert bundle.mime_type == "text/markdown"
    assert bundle.filename.startswith("vault-all-") and bundle.filename.endswith(".md")
    assert bundle.data.startswith("# Vault Export\n\n")
    assert "## Recursion\nBase case stops recursion\n\n---\n\n" in bundle.data
    assert "## Fragment\nLoose thought" in bundle.data


def test_export_rejects_unknown_format(engine):
    with pytest.raises(KnowledgeValidationError):
        engine.generate_export("pdf", "alice")


def test_import_skips_known_and_duplicate_content(engine, vault):
    _save(engine, vault.id, "Already saved")
    target = engine.save_vault("alice", "Imported")
    payload = json.dumps(
        {
            "meta": {"userId": "someone-else"},
            "items": [
                {"content": "Already saved", "type": "note", "source": "chat"},
                {"content": "Fresh idea", "type": "note", "source": "chat", "createdAt": 42, "topic": "Graphs"},
                {"content": "Fresh idea", "type": "note", "source": "chat"},
                {"content": "   "},
                {"content": "Another one", "userId": "someone-else", "vaultId": "elsewhere"},
            ],
        }
    )

    summary = engine.import_json(payload, "alice", target.id)

    assert (summary.added, summary.skipped, summary.total) == (2, 3, 5)
    imported = engine.fetch_knowledge("alice", target.id)
    assert {item.content for item in imported} == {"Fresh idea", "Another one"}
    assert all(item.user_id == "alice" and item.vault_id == target.id for item in imported)
    fresh = next(item for item in imported if item.content == "Fresh idea")
    assert fresh.created_at == 42
    assert fresh.topic == "Graphs"


def test_import_round_trips_an_export(engine, vault):
    _save(engine, vault.id, "One")
    _save(engine, vault.id, "Two")
    exported = engine.generate_export("json", "alice", vault.id).data

    again = engine.import_json(exported, "alice", vault.id)
    elsewhere = engine.import_json(exported, "bob", "bob-vault")

    assert (again.added, again.skipped) == (0, 2)
    assert (elsewhere.added, elsewhere.skipped) == (2, 0)


@pytest.mark.parametrize("payload", ["{broken", json.dumps({"items": "nope"}), json.dumps([1, 2])])
def test_import_rejects_malformed_payloads(engine, payload):
    with pytest.raises(KnowledgeValidationError):
        engine.import_json(payload, "alice", "vault-1")


def test_content_hash_is_stable():
    assert content_hash("abc") == content_hash("abc")
    assert content_hash("abc") != content_hash("abd")


def test_generated_user_ids_are_unique():
    ids = {generate_user_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(re.fullmatch(r"user_[0-9a-f]{10}", value) for value in ids)

# app.py - LearnMate companion API v1.0.0
# - Adaptive learning: mastery tracking and evolution tier upgrades
# - Vaults and knowledge fragments with JSON/Markdown export and deduplicated import
# - Chat relayed to the external generation service with the learner's tier behaviour
# - Next-topic suggestions requested as JSON, chosen by a mastery-based strategy

import json
import logging
import warnings
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from fastapi import FastAPI, HTTPException, Query, Response
from pydantic import BaseModel, Field

import db
from engines.adaptive_learning import AdaptiveLearningEngine, ProfilePersistenceWarning
from env_validation import get_env_bool
from knowledge_engine import (
    KnowledgeEngine,
    KnowledgeItemNotFound,
    KnowledgeValidationError,
    generate_user_id,
)
from profile_store import SQLiteProfileRepository
from schemas import InteractionKind, SaveIntent
from synthesis import (
    GenerationClient,
    GenerationError,
    SynthesisConfig,
    build_prompt_spec,
    parse_suggestions,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info(
            "LearnMate ready (db=%s, enforce_tier_readiness=%s)",
            db.DB_PATH,
            LEARNING_ENGINE.enforce_readiness,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="LearnMate", version="1.0.0", lifespan=_lifespan)

PROFILE_REPOSITORY = SQLiteProfileRepository()
LEARNING_ENGINE = AdaptiveLearningEngine(
    PROFILE_REPOSITORY,
    enforce_readiness=get_env_bool("ENFORCE_TIER_READINESS", True),
)
KNOWLEDGE_ENGINE = KnowledgeEngine()
GENERATION_CLIENT = GenerationClient()

PERSISTENCE_WARNING_HEADER = "X-Persistence-Warning"

_T = TypeVar("_T")


def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=400, detail="user_id required")
    return user_id.strip()


def _capture_persistence_warnings(call: Callable[[], _T]) -> Tuple[_T, List[str]]:
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ProfilePersistenceWarning)
        result = call()
    messages = [
        str(entry.message) for entry in caught if issubclass(entry.category, ProfilePersistenceWarning)
    ]
    return result, messages


def _flag_warnings(response: Response, messages: List[str]) -> None:
    if messages:
        response.headers[PERSISTENCE_WARNING_HEADER] = "; ".join(messages)


# ---------- Request models ----------
class InteractionRequest(BaseModel):
    user_id: str
    topic: str = Field(min_length=1)
    action: InteractionKind


class UpgradeRequest(BaseModel):
    user_id: str


class VaultRequest(BaseModel):
    user_id: str
    name: str
    description: Optional[str] = None
    topic_hints: List[str] = Field(default_factory=list)


class ImportRequest(BaseModel):
    user_id: str
    vault_id: str
    payload: Any


class ChatRequest(BaseModel):
    user_id: str
    topic: str = Field(min_length=1)
    message: str = Field(min_length=1)
    history: List[Dict[str, str]] = Field(default_factory=list)
    config: Optional[SynthesisConfig] = None


class SuggestionRequest(BaseModel):
    user_id: str
    topic: str = Field(min_length=1)


# ---------- Profile & evolution ----------
@app.post("/users")
def create_user():
    user_id = generate_user_id()
    profile = LEARNING_ENGINE.get_profile(user_id)
    return {"user_id": user_id, "profile": profile.to_record()}


@app.get("/profile")
def profile(user_id: str = ""):
    user_id = _require_user(user_id)
    return LEARNING_ENGINE.get_profile(user_id).to_record()


@app.post("/interactions")
def record_interaction(req: InteractionRequest, response: Response):
    user_id = _require_user(req.user_id)
    profile, messages = _capture_persistence_warnings(
        lambda: LEARNING_ENGINE.record_interaction(user_id, req.topic, req.action)
    )
    _flag_warnings(response, messages)
    return profile.to_record()


@app.post("/evolution/upgrade")
def upgrade_tier(req: UpgradeRequest, response: Response):
    user_id = _require_user(req.user_id)
    profile, messages = _capture_persistence_warnings(lambda: LEARNING_ENGINE.upgrade_tier(user_id))
    _flag_warnings(response, messages)
    return profile.to_record()


@app.get("/evolution/signals")
def evolution_signals(user_id: str = ""):
    user_id = _require_user(user_id)
    return LEARNING_ENGINE.evolution_signals(user_id).to_record()


@app.get("/mastery")
def mastery(user_id: str = "", topic: str = ""):
    user_id = _require_user(user_id)
    if not topic:
        raise HTTPException(status_code=400, detail="topic required")
    return {"topic": topic, "mastery": LEARNING_ENGINE.get_mastery_for_topic(user_id, topic)}


# ---------- Vaults ----------
@app.get("/vaults")
def list_vaults(user_id: str = ""):
    user_id = _require_user(user_id)
    return [vault.to_record() for vault in KNOWLEDGE_ENGINE.fetch_vaults(user_id)]


@app.post("/vaults")
def create_vault(req: VaultRequest):
    try:
        vault = KNOWLEDGE_ENGINE.save_vault(
            req.user_id, req.name, description=req.description, topic_hints=req.topic_hints
        )
    except KnowledgeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return vault.to_record()


@app.delete("/vaults/{vault_id}")
def delete_vault(vault_id: str):
    removed = KNOWLEDGE_ENGINE.delete_vault(vault_id)
    return {"vault_id": vault_id, "items_removed": removed}


# ---------- Knowledge items ----------
@app.post("/knowledge")
def save_knowledge(intent: SaveIntent, response: Response):
    try:
        item = KNOWLEDGE_ENGINE.save_knowledge(intent)
    except KnowledgeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    profile_record = None
    if item.topic:
        profile, messages = _capture_persistence_warnings(
            lambda: LEARNING_ENGINE.record_interaction(item.user_id, item.topic, InteractionKind.SAVE)
        )
        _flag_warnings(response, messages)
        profile_record = profile.to_record()
    return {"item": item.to_record(), "profile": profile_record}


@app.get("/knowledge")
def list_knowledge(user_id: str = "", vault_id: Optional[str] = None):
    user_id = _require_user(user_id)
    return [item.to_record() for item in KNOWLEDGE_ENGINE.fetch_knowledge(user_id, vault_id)]


@app.get("/knowledge/export")
def export_knowledge(
    user_id: str = "",
    vault_id: Optional[str] = None,
    fmt: str = Query("json", alias="format"),
):
    user_id = _require_user(user_id)
    try:
        bundle = KNOWLEDGE_ENGINE.generate_export(fmt, user_id, vault_id)
    except KnowledgeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return Response(
        content=bundle.data,
        media_type=bundle.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{bundle.filename}"'},
    )


@app.post("/knowledge/import")
def import_knowledge(req: ImportRequest):
    raw = req.payload if isinstance(req.payload, str) else json.dumps(req.payload)
    try:
        summary = KNOWLEDGE_ENGINE.import_json(raw, req.user_id, req.vault_id)
    except KnowledgeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return summary.to_record()


@app.get("/knowledge/{item_id}")
def get_knowledge_item(item_id: str):
    item = KNOWLEDGE_ENGINE.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="item not found")
    return item.to_record()


@app.patch("/knowledge/{item_id}")
def update_knowledge_item(item_id: str, updates: Dict[str, Any]):
    try:
        item = KNOWLEDGE_ENGINE.update_item(item_id, updates)
    except KnowledgeItemNotFound:
        raise HTTPException(status_code=404, detail="item not found")
    except KnowledgeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return item.to_record()


@app.delete("/knowledge/{item_id}")
def delete_knowledge_item(item_id: str):
    if not KNOWLEDGE_ENGINE.delete_item(item_id):
        raise HTTPException(status_code=404, detail="item not found")
    return {"deleted": item_id}


# ---------- Chat ----------
@app.post("/chat")
def chat(req: ChatRequest, response: Response):
    user_id = _require_user(req.user_id)
    profile = LEARNING_ENGINE.get_profile(user_id)
    spec = build_prompt_spec(profile, req.topic, req.message, req.config, history=req.history)
    try:
        reply = GENERATION_CLIENT.generate(spec)
    except GenerationError as exc:
        logger.warning("Chat generation failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=502, detail=str(exc))

    updated, messages = _capture_persistence_warnings(
        lambda: LEARNING_ENGINE.record_interaction(user_id, req.topic, InteractionKind.FOLLOW_UP)
    )
    _flag_warnings(response, messages)
    return {
        "reply": reply,
        "tier": spec.tier.value,
        "mastery_band": spec.mastery_band,
        "profile": updated.to_record(),
    }


@app.post("/suggestions")
def suggestions(req: SuggestionRequest):
    user_id = _require_user(req.user_id)
    profile = LEARNING_ENGINE.get_profile(user_id)
    spec = build_prompt_spec(
        profile,
        req.topic,
        f"Suggest up to three topics to study after {req.topic}. Answer with a JSON array of "
        '{"topic", "reason", "targetMastery"} objects.',
        expect_json=True,
    )
    try:
        payload = GENERATION_CLIENT.generate(spec)
    except GenerationError as exc:
        logger.warning("Suggestion generation failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=502, detail=str(exc))
    return {
        "topic": req.topic,
        "strategy": spec.strategy,
        "suggestions": [entry.to_record() for entry in parse_suggestions(payload)],
    }

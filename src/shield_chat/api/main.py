"""FastAPI entrypoint for scan/session/chat/source/trace endpoints."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from shield_chat.agent.local import ChatModelLocalAdapter, openai_compatible_factory
from shield_chat.agent.orchestrator import ResolutionOrchestrator
from shield_chat.agent.remote import RemoteInferenceClient
from shield_chat.agent.session import ChatSession
from shield_chat.config import (
    LocalModelConfig,
    OrchestratorConfig,
    RemoteConfig,
    RetrievalConfig,
)
from shield_chat.obs.log import configure_logging
from shield_chat.obs.tracing import TraceStore
from shield_chat.retrieval.corpus import CorpusIndex, CorpusUnavailableError
from shield_chat.retrieval.drafter import ExtractiveDrafter
from shield_chat.safety.scanner import ContentSafetyScanner
from shield_chat.safety.session import honeypot_tripped, tokens_match
from shield_chat.stream.decoder import encode_end, encode_event
from shield_chat.types import GuardrailSignal, Resolution, ResolutionUpdate

logger = logging.getLogger(__name__)


def _create_local_adapter(config: LocalModelConfig) -> ChatModelLocalAdapter:
    base_url = os.getenv("SHIELD_CHAT_LOCAL_URL")
    if not base_url:
        return ChatModelLocalAdapter(None, config)
    return ChatModelLocalAdapter(
        openai_compatible_factory(base_url, temperature=config.temperature), config
    )


def _create_remote_client(config: RemoteConfig) -> RemoteInferenceClient | None:
    if not os.getenv("SHIELD_CHAT_REMOTE_URL"):
        return None
    return RemoteInferenceClient(config)


class ScanRequest(BaseModel):
    text: str
    max_length: int | None = Field(default=None, ge=1)
    risk_threshold: int | None = Field(default=None, ge=1)


class SessionRequest(BaseModel):
    language: str | None = None


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)
    mode: str | None = None
    hp: str = ""


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    language: str | None = None
    top_k: int = Field(default=5, ge=1, le=20)


configure_logging(os.getenv("SHIELD_CHAT_LOG_LEVEL", "INFO"))

_config = OrchestratorConfig(
    retrieval=RetrievalConfig(
        corpus_path=os.getenv("SHIELD_CHAT_CORPUS", RetrievalConfig().corpus_path)
    ),
    local=LocalModelConfig(
        model_identifier=os.getenv(
            "SHIELD_CHAT_LOCAL_MODEL", LocalModelConfig().model_identifier
        )
    ),
    remote=RemoteConfig(
        base_url=os.getenv("SHIELD_CHAT_REMOTE_URL", RemoteConfig().base_url)
    ),
)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    if _remote is not None:
        logger.info("Closing remote inference client")
        await _remote.aclose()


app = FastAPI(title="Shield Chat", version="0.1.0", lifespan=_lifespan)

_scanner = ContentSafetyScanner(_config.scanner)
_corpus = CorpusIndex.from_path(_config.retrieval.corpus_path, _config.retrieval)
_drafter = ExtractiveDrafter(_corpus, _config.retrieval)
_local = _create_local_adapter(_config.local)
_remote = _create_remote_client(_config.remote)
_trace_store = TraceStore()
_orchestrator = ResolutionOrchestrator(
    drafter=_drafter,
    scanner=_scanner,
    local=_local,
    remote=_remote,
    trace_store=_trace_store,
    config=_config,
)
_sessions: dict[str, ChatSession] = {}


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "corpus_loaded": _corpus.loaded,
        "accelerator_available": _local.available,
        "remote_configured": _remote is not None,
        "trace_count": len(_trace_store),
    }


@app.post("/scan")
def scan(request: ScanRequest) -> dict[str, Any]:
    result = _scanner.scan(request.text, request.max_length, request.risk_threshold)
    return asdict(result)


@app.post("/sessions")
def create_session(request: SessionRequest) -> dict[str, Any]:
    session = ChatSession.start(request.language, _config.budget)
    _sessions[session.session_id] = session
    return {
        "session_id": session.session_id,
        "csrf_token": session.csrf_token,
        "language": session.language,
        "headroom": session.headroom,
    }


@app.post("/sessions/{session_id}/messages")
async def post_message(
    session_id: str,
    request: MessageRequest,
    x_csrf: str | None = Header(default=None),
) -> dict[str, Any]:
    session = _authorized_session(session_id, x_csrf)
    _note_honeypot(session, request.hp)
    resolution = await _orchestrator.resolve(
        session, request.message, mode=request.mode, honeypot_value=request.hp
    )
    return _resolution_payload(resolution, session)


@app.post("/sessions/{session_id}/messages/stream")
async def stream_message(
    session_id: str,
    request: MessageRequest,
    x_csrf: str | None = Header(default=None),
) -> StreamingResponse:
    session = _authorized_session(session_id, x_csrf)
    _note_honeypot(session, request.hp)
    updates = _orchestrator.stream(
        session, request.message, mode=request.mode, honeypot_value=request.hp
    )
    return StreamingResponse(_encode_updates(updates, session), media_type="text/event-stream")


@app.post("/sources/search")
def source_search(request: SourceSearchRequest) -> dict[str, Any]:
    try:
        index = _corpus.get()
    except CorpusUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    hits = index.score(request.query, request.language)[: request.top_k]
    return {
        "items": [
            {
                "passage_id": hit.passage.passage_id,
                "score": hit.score,
                "rank": hit.rank,
                "text": hit.passage.text,
                "language": hit.passage.language,
                "title": hit.passage.source_title,
                "url": hit.passage.source_url,
            }
            for hit in hits
        ]
    }


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()


def _authorized_session(session_id: str, csrf: str | None) -> ChatSession:
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    if not tokens_match(session.csrf_token, csrf):
        raise HTTPException(status_code=403, detail="Anti-forgery token mismatch")
    return session


def _note_honeypot(session: ChatSession, value: str) -> None:
    if honeypot_tripped(value):
        logger.warning("Honeypot field filled on session %s", session.session_id)


def _signal_payload(signal: GuardrailSignal) -> dict[str, str]:
    return {"level": signal.severity.value, "code": signal.code, "message": signal.message}


def _resolution_payload(resolution: Resolution, session: ChatSession) -> dict[str, Any]:
    return {
        "source": resolution.source.value,
        "answer": resolution.answer,
        "status": resolution.status,
        "citations": resolution.citations,
        "guardrails": [_signal_payload(signal) for signal in resolution.guardrails],
        "cost": resolution.cost,
        "headroom": session.headroom,
        "trace_id": resolution.trace_id,
    }


async def _encode_updates(
    updates: AsyncIterator[ResolutionUpdate], session: ChatSession
) -> AsyncIterator[str]:
    async for update in updates:
        if update.kind == "token":
            yield encode_event(update.text)
        elif update.kind == "guardrail" and update.signal is not None:
            yield encode_event(json.dumps(_signal_payload(update.signal)), event="control")
        elif update.kind == "status":
            meta: dict[str, Any] = {"status": update.status}
            if update.progress is not None:
                meta["progress"] = update.progress
            yield encode_event(json.dumps(meta), event="meta")
        elif update.kind == "settled" and update.resolution is not None:
            settled = _resolution_payload(update.resolution, session)
            settled["tokens_used"] = session.budget.spent
            settled["tokens_limit"] = session.budget.hard
            yield encode_event(json.dumps(settled), event="meta")
    yield encode_end()

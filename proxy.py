"""
NG-Gate — Moderating proxy for chat-completion APIs (v1.0.0)

Pipeline per request under /proxy:
  Audit(open) → Extract latest user text → NG-word match → [classifier]
      → blocked:  synthesized chat completion (JSON or SSE), upstream untouched
      → allowed:  forward to NGGATE_UPSTREAM_URL, stream back while mirroring
  → Audit(complete)

Side endpoints:
  GET    /health                 liveness + configured upstream target
  GET    /metrics                Prometheus scrape
  GET    /api/requests           paginated audit records (newest first)
  GET    /api/requests/{id}      one audit record
  DELETE /api/requests           prune records older than N days
  GET    /api/ng-words           current NG word list
  POST   /api/ng-words           add a word        (reloads the cache)
  PUT    /api/ng-words/{id}      change a word     (reloads the cache)
  DELETE /api/ng-words/{id}      remove a word     (reloads the cache)
  POST   /api/ng-words/reload    re-read the word list from the database
  GET    /api/classifier-logs    semantic classifier activity

Configuration is read from NGGATE_* environment variables; see config.py.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from classifier import LLMClassifier
from config import Settings
from db import AuditDB
from guard import ModerationGuard, PolicyWordCache
from interceptor import MOUNT_PREFIX, Interceptor

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger("nggate")

# ---------------------------------------------------------------------------
# Rate limiter (must be created before app)
# ---------------------------------------------------------------------------
limiter = Limiter(key_func=get_remote_address)


def _rate_limit() -> str:
    """Read rate limit from env at request time so tests can override it."""
    return Settings.from_env().rate_limit


async def _handle_rate_limit(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "type": "rate_limit_exceeded",
                "message": str(exc),
                "code": "rate_limit_exceeded",
            }
        },
    )


# ---------------------------------------------------------------------------
# Lifespan — open / close DB, load NG words, build the pipeline
# ---------------------------------------------------------------------------
_db: AuditDB | None = None
_words: PolicyWordCache | None = None
_guard: ModerationGuard | None = None
_interceptor: Interceptor | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _db, _words, _guard, _interceptor
    settings = Settings.from_env()
    _db = AuditDB(path=settings.db_path)

    if settings.retention_days is not None:
        _db.prune_older_than(settings.retention_days)

    _words = PolicyWordCache(_db.list_words)
    _words.reload()

    classifier = None
    if settings.classifier_enabled:
        classifier = LLMClassifier(
            url=settings.classifier_url,
            api_key=settings.classifier_api_key,
            model=settings.classifier_model,
            timeout=settings.classifier_timeout,
        )
        if not classifier.available:
            logger.warning("Classifier enabled but NGGATE_CLASSIFIER_API_KEY is not set; skipping it")

    _guard = ModerationGuard(_words, classifier, recorder=_db.record_classifier_call)
    _interceptor = Interceptor(_db, _guard)

    words = [w.word for w in _words.snapshot()]
    logger.info("NG-Gate %s | proxy=%s target=%s", __version__, MOUNT_PREFIX, settings.upstream_url)
    logger.info(
        "NG words: %d configured%s",
        len(words),
        f" ({', '.join(words)})" if words else "",
    )
    yield
    _db.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="NG-Gate",
    version=__version__,
    description="Moderating proxy — block NG-word requests, forward the rest, audit everything.",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _handle_rate_limit)  # type: ignore[arg-type]


def _store() -> AuditDB:
    assert _db is not None, "AuditDB not initialised"
    return _db


def _cache() -> PolicyWordCache:
    assert _words is not None, "NG word cache not initialised"
    return _words


# ---------------------------------------------------------------------------
# Health + metrics
# ---------------------------------------------------------------------------

async def _check_db() -> dict[str, str]:
    """Verify the AuditDB is open and responding."""
    if _db is None:
        return {"status": "error", "detail": "not initialized"}
    try:
        await asyncio.to_thread(_db.ping)
        return {"status": "ok"}
    except Exception as exc:  # noqa: BLE001
        return {"status": "error", "detail": str(exc)}


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness check. Returns 503 if the database is unavailable."""
    settings = Settings.from_env()
    db_status = await _check_db()
    classifier = _guard.classifier if _guard is not None else None

    overall = "ok" if db_status["status"] == "ok" else "degraded"
    return JSONResponse(
        status_code=200 if overall == "ok" else 503,
        content={
            "status": overall,
            "service": "nggate",
            "version": __version__,
            "proxy_target": settings.upstream_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "database": db_status,
                "ng_words": {
                    "status": "ok",
                    "count": len(_words.snapshot()) if _words is not None else 0,
                },
                "classifier": {
                    "status": (
                        "unconfigured" if classifier is None
                        else "ok" if classifier.available
                        else "missing_credentials"
                    ),
                },
            },
        },
    )


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics scrape endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Proxy mount
# ---------------------------------------------------------------------------

@app.api_route(
    MOUNT_PREFIX + "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
    include_in_schema=False,
)
@limiter.limit(_rate_limit)
async def proxy(request: Request, path: str) -> Response:
    """Moderate and forward any request under the proxy prefix."""
    assert _interceptor is not None, "Interceptor not initialised"
    return await _interceptor.handle(request, path)


@app.websocket(MOUNT_PREFIX + "/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str) -> None:
    assert _interceptor is not None, "Interceptor not initialised"
    await _interceptor.relay_websocket(websocket, path)


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------

@app.get("/api/requests")
async def list_requests(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    blocked: bool | None = None,
) -> dict[str, Any]:
    """Paginated audit records, newest first.

    Query params:
      page    — 1-based page number
      limit   — rows per page
      blocked — true/false to filter by blocked status
    """
    offset = (page - 1) * limit
    records, total = await asyncio.to_thread(
        _store().list_page, limit=limit, offset=offset, blocked=blocked
    )
    return {
        "requests": records,
        "pagination": {
            "page": page,
            "limit": limit,
            "totalCount": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }


@app.get("/api/requests/{record_id}")
async def get_request(record_id: int) -> dict[str, Any]:
    record = await asyncio.to_thread(_store().get_by_id, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return record


@app.delete("/api/requests")
async def prune_requests(older_than_days: int = Query(30, ge=0)) -> dict[str, int]:
    deleted = await asyncio.to_thread(_store().prune_older_than, older_than_days)
    return {"deleted": deleted}


# ---------------------------------------------------------------------------
# NG words
# ---------------------------------------------------------------------------

class WordIn(BaseModel):
    word: str


def _clean_word(payload: WordIn) -> str:
    word = payload.word.strip()
    if not word:
        raise HTTPException(status_code=422, detail="word must not be blank")
    return word


def _word_list() -> dict[str, Any]:
    words = _cache().snapshot()
    return {"count": len(words), "words": [{"id": w.id, "word": w.word} for w in words]}


@app.get("/api/ng-words")
async def list_ng_words() -> dict[str, Any]:
    return _word_list()


@app.post("/api/ng-words", status_code=201)
async def add_ng_word(payload: WordIn) -> dict[str, Any]:
    word = _clean_word(payload)
    try:
        word_id = await asyncio.to_thread(_store().add_word, word)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"NG word already exists: {word}")
    await asyncio.to_thread(_cache().reload)
    return {"id": word_id, "word": word}


@app.put("/api/ng-words/{word_id}")
async def update_ng_word(word_id: int, payload: WordIn) -> dict[str, Any]:
    word = _clean_word(payload)
    try:
        updated = await asyncio.to_thread(_store().update_word, word_id, word)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"NG word already exists: {word}")
    if not updated:
        raise HTTPException(status_code=404, detail="NG word not found")
    await asyncio.to_thread(_cache().reload)
    return {"id": word_id, "word": word}


@app.delete("/api/ng-words/{word_id}")
async def remove_ng_word(word_id: int) -> dict[str, Any]:
    removed = await asyncio.to_thread(_store().remove_word, word_id)
    if not removed:
        raise HTTPException(status_code=404, detail="NG word not found")
    await asyncio.to_thread(_cache().reload)
    return {"id": word_id, "deleted": True}


@app.post("/api/ng-words/reload")
async def reload_ng_words() -> dict[str, Any]:
    await asyncio.to_thread(_cache().reload)
    return _word_list()


# ---------------------------------------------------------------------------
# Classifier activity
# ---------------------------------------------------------------------------

@app.get("/api/classifier-logs")
async def list_classifier_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[dict[str, Any]]:
    return await asyncio.to_thread(_store().list_classifier_calls, limit=limit, offset=offset)

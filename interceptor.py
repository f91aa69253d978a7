"""
NG-Gate — Interceptor

Per-request pipeline:

  received ─┬─ extracted ── decided ─┬─ blocked     (synthesized refusal, upstream untouched)
            └─ skip_moderation ──────┴─ forwarding ─┬─ completed
                                                    └─ error (500, not retried)

A RequestContext carries the correlation id and every intermediate value
through the stages; nothing request-scoped lives in module globals. Each
request gets exactly one audit record: inserted when received, completed
once when the pipeline reaches a terminal state. Audit failures are logged
and never change what the client receives.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

import aiohttp
import anyio
import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketState

import metrics
from config import Settings
from db import AuditDB
from extractor import extract_text
from guard import ModerationGuard, ModerationResult
from synthesizer import build_blocked_response

logger = logging.getLogger("nggate.interceptor")

MOUNT_PREFIX = "/proxy"

# Headers that describe a single hop and are never relayed.
_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
_REQUEST_DROP = _HOP_BY_HOP | {"host", "content-length"}
# The relayed body is already decoded by httpx.
_RESPONSE_DROP = _HOP_BY_HOP | {"content-encoding", "content-length"}
_WS_DROP = _REQUEST_DROP | {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
}
_SECRET_HEADERS = {"authorization", "proxy-authorization", "x-api-key", "api-key", "cookie"}

_CLIENT_GONE = "client disconnected before the response completed"


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

class PipelineState(str, Enum):
    RECEIVED = "received"
    EXTRACTED = "extracted"
    SKIP_MODERATION = "skip_moderation"
    DECIDED = "decided"
    BLOCKED = "blocked"
    FORWARDING = "forwarding"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class RequestContext:
    method: str
    path: str
    upstream_path: str
    query: str
    headers: list[tuple[str, str]]
    client_host: str | None
    scheme: str
    raw_body: bytes = b""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    started: float = field(default_factory=time.monotonic)
    audit_id: int | None = None
    body: Any = None
    text: str | None = None
    decision: ModerationResult | None = None
    state: PipelineState = PipelineState.RECEIVED
    completed: bool = False

    @classmethod
    def from_connection(
        cls, conn: Request | WebSocket, path: str, method: str, raw_body: bytes = b""
    ) -> "RequestContext":
        return cls(
            method=method,
            path=conn.url.path,
            upstream_path="/" + path.lstrip("/"),
            query=conn.url.query,
            headers=list(conn.headers.items()),
            client_host=conn.client.host if conn.client else None,
            scheme=conn.url.scheme,
            raw_body=raw_body,
        )

    def header(self, name: str) -> str | None:
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    def advance(self, state: PipelineState) -> None:
        logger.debug("STATE | id=%s %s -> %s", self.request_id, self.state.value, state.value)
        self.state = state

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _audit_headers(headers: list[tuple[str, str]]) -> dict[str, str]:
    """Request headers as stored in the audit log, credentials masked."""
    return {k: ("***" if k.lower() in _SECRET_HEADERS else v) for k, v in headers}


def _parse_json(raw_body: bytes) -> Any:
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

# Strong references to in-flight webhook tasks so they aren't garbage-collected
# before completion.  The done callback removes each task from the set.
_webhook_tasks: set[asyncio.Task] = set()


def _schedule_webhook(url: str, payload: dict[str, Any]) -> None:
    """Schedule _fire_webhook as a fire-and-forget background task."""
    if not url:
        return
    task = asyncio.create_task(_fire_webhook(url, payload))
    _webhook_tasks.add(task)
    task.add_done_callback(_webhook_tasks.discard)


async def _fire_webhook(url: str, payload: dict[str, Any]) -> None:
    """POST a JSON alert payload; a broken webhook never affects the response."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as http_client:
            await http_client.post(url, json=payload)
        logger.info(
            "WEBHOOK_SENT | event=%s request_id=%s",
            payload.get("event"),
            payload.get("request_id"),
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("WEBHOOK_ERROR | %s", exc)


# ---------------------------------------------------------------------------
# Relayed response
# ---------------------------------------------------------------------------

class RelayResponse(StreamingResponse):
    """StreamingResponse that always runs ``on_close`` once the ASGI call ends.

    The relay generator completes the audit record from its own ``finally``,
    but only once iteration has started. When the client is gone before the
    first body chunk (the ``http.response.start`` send fails, or the request
    is cancelled) the generator never runs, so ``on_close`` finishes the
    record and releases the upstream connection instead.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        *,
        on_close: Callable[[], Awaitable[None]],
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.body_iterator.aclose()  # type: ignore[attr-defined]
                await self._on_close()


# ---------------------------------------------------------------------------
# Interceptor
# ---------------------------------------------------------------------------

class Interceptor:
    """Moderate, then either synthesize a refusal or relay to the upstream."""

    def __init__(
        self,
        db: AuditDB,
        guard: ModerationGuard,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.db = db
        self.guard = guard
        self.transport = transport

    # ------------------------------------------------------------------
    # HTTP entry point
    # ------------------------------------------------------------------

    async def handle(self, request: Request, path: str) -> Response:
        settings = Settings.from_env()

        content_length = request.headers.get("content-length")
        too_large = bool(
            content_length and content_length.isdigit()
            and int(content_length) > settings.max_body_bytes
        )
        raw_body = b"" if too_large else await request.body()
        too_large = too_large or len(raw_body) > settings.max_body_bytes

        ctx = RequestContext.from_connection(request, path, request.method, raw_body)
        await self._open(ctx, store_body=not too_large)

        if too_large:
            return await self._reject_too_large(ctx, settings)

        ctx.body = _parse_json(raw_body)
        logger.info(
            "INCOMING | id=%s %s %s model=%s stream=%s",
            ctx.request_id,
            ctx.method,
            ctx.path,
            ctx.body.get("model", "-") if isinstance(ctx.body, dict) else "-",
            ctx.body.get("stream") is True if isinstance(ctx.body, dict) else False,
        )

        ctx.text = extract_text(ctx.body)
        if ctx.text is None:
            ctx.advance(PipelineState.SKIP_MODERATION)
        else:
            ctx.advance(PipelineState.EXTRACTED)
            ctx.decision = await self.guard.decide(ctx.text, ctx.request_id)
            ctx.advance(PipelineState.DECIDED)
            if ctx.decision.blocked:
                return await self._block(ctx, settings)

        return await self._forward(ctx, settings)

    # ------------------------------------------------------------------
    # Audit record lifecycle
    # ------------------------------------------------------------------

    async def _open(self, ctx: RequestContext, *, store_body: bool = True) -> None:
        record = {
            "request_id": ctx.request_id,
            "timestamp": ctx.timestamp,
            "method": ctx.method,
            "path": ctx.path,
            "headers": _audit_headers(ctx.headers),
            "query": dict(httpx.QueryParams(ctx.query)),
            "request_body": (
                ctx.raw_body.decode("utf-8", errors="replace") if store_body else None
            ),
        }
        try:
            ctx.audit_id = await asyncio.to_thread(self.db.insert, record)
        except Exception:  # noqa: BLE001
            logger.exception("AUDIT_ERROR | insert failed for id=%s", ctx.request_id)

    async def _complete(self, ctx: RequestContext, outcome: dict[str, Any], label: str) -> None:
        """Write the outcome once; later calls for the same request are ignored."""
        if ctx.completed:
            return
        ctx.completed = True
        outcome.setdefault("duration_ms", ctx.elapsed_ms())
        metrics.requests_total.labels(outcome=label).inc()
        metrics.request_duration.observe(time.monotonic() - ctx.started)
        if ctx.audit_id is None:
            return
        try:
            await asyncio.to_thread(self.db.update_by_id, ctx.audit_id, outcome)
        except Exception:  # noqa: BLE001
            logger.exception("AUDIT_ERROR | update failed for id=%s", ctx.request_id)

    # ------------------------------------------------------------------
    # Terminal: rejected / blocked
    # ------------------------------------------------------------------

    async def _reject_too_large(self, ctx: RequestContext, settings: Settings) -> Response:
        message = f"Request body exceeds {settings.max_body_bytes} bytes"
        logger.warning("TOO_LARGE | id=%s %s", ctx.request_id, message)
        ctx.advance(PipelineState.ERROR)
        await self._complete(ctx, {"status_code": 413, "error": message}, "rejected")
        return JSONResponse(
            status_code=413,
            content={"error": {"type": "request_too_large",
                               "message": message,
                               "code": "request_too_large"}},
        )

    async def _block(self, ctx: RequestContext, settings: Settings) -> Response:
        assert ctx.decision is not None
        decision = ctx.decision
        blocked = build_blocked_response(decision, ctx.body)
        ctx.advance(PipelineState.BLOCKED)
        logger.warning(
            "BLOCKED | id=%s source=%s term=%r stream=%s",
            ctx.request_id, decision.source, decision.term, ctx.body.get("stream") is True,
        )
        metrics.blocks_total.labels(source=decision.source).inc()
        await self._complete(ctx, blocked.outcome, "blocked")
        _schedule_webhook(settings.webhook_url, {
            "event": "request_blocked",
            "request_id": ctx.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": ctx.path,
            "source": decision.source,
            "term": decision.term,
            "reason": decision.reason,
        })
        return blocked.response

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    def upstream_url(self, settings: Settings, ctx: RequestContext) -> str:
        url = settings.upstream_url.rstrip("/") + ctx.upstream_path
        return f"{url}?{ctx.query}" if ctx.query else url

    def _forward_headers(self, ctx: RequestContext, drop: set[str]) -> list[tuple[str, str]]:
        headers = [(k, v) for k, v in ctx.headers if k.lower() not in drop]
        headers = [(k, v) for k, v in headers if not k.lower().startswith("x-forwarded-")]

        prior = ctx.header("x-forwarded-for")
        client_ip = ctx.client_host or ""
        forwarded_for = f"{prior}, {client_ip}" if prior and client_ip else (prior or client_ip)
        if forwarded_for:
            headers.append(("x-forwarded-for", forwarded_for))
        headers.append(("x-forwarded-proto", ctx.header("x-forwarded-proto") or ctx.scheme))
        original_host = ctx.header("x-forwarded-host") or ctx.header("host")
        if original_host:
            headers.append(("x-forwarded-host", original_host))
        return headers

    async def _forward(self, ctx: RequestContext, settings: Settings) -> Response:
        url = self.upstream_url(settings, ctx)
        ctx.advance(PipelineState.FORWARDING)

        client = httpx.AsyncClient(timeout=settings.upstream_timeout, transport=self.transport)
        upstream_request = client.build_request(
            ctx.method,
            url,
            headers=self._forward_headers(ctx, _REQUEST_DROP),
            content=ctx.raw_body,
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            return await self._fail(ctx, exc)

        logger.info(
            "UPSTREAM | id=%s status=%d after %dms",
            ctx.request_id, upstream.status_code, ctx.elapsed_ms(),
        )
        response = RelayResponse(
            self._relay(ctx, client, upstream, settings.max_capture_bytes),
            status_code=upstream.status_code,
            on_close=lambda: self._abandon(ctx, client, upstream),
        )
        response.raw_headers = [
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in upstream.headers.multi_items()
            if k.lower() not in _RESPONSE_DROP
        ]
        return response

    async def _relay(
        self,
        ctx: RequestContext,
        client: httpx.AsyncClient,
        upstream: httpx.Response,
        capture_limit: int,
    ) -> AsyncIterator[bytes]:
        """Yield the upstream body to the caller while mirroring it for the audit log."""
        captured = bytearray()
        truncated = False
        finished = False
        error: str | None = None
        try:
            async for chunk in upstream.aiter_bytes():
                room = capture_limit - len(captured)
                if room > 0:
                    captured.extend(chunk[:room])
                if len(chunk) > room:
                    truncated = True
                yield chunk
            finished = True
        except httpx.HTTPError as exc:
            error = f"upstream stream interrupted: {exc.__class__.__name__}: {exc}"
            logger.error("UPSTREAM_ERROR | id=%s %s", ctx.request_id, error)
            metrics.upstream_errors_total.inc()
        finally:
            if not finished and error is None:
                error = _CLIENT_GONE
                logger.warning("CLIENT_DISCONNECT | id=%s", ctx.request_id)
            if truncated:
                logger.info("CAPTURE_TRUNCATED | id=%s limit=%d", ctx.request_id, capture_limit)
            ctx.advance(PipelineState.COMPLETED if error is None else PipelineState.ERROR)
            with anyio.CancelScope(shield=True):
                await upstream.aclose()
                await client.aclose()
                await self._complete(ctx, {
                    "status_code": upstream.status_code,
                    "response_headers": dict(upstream.headers),
                    "response_body": captured.decode("utf-8", errors="replace"),
                    "error": error,
                }, "forwarded" if error is None else "error")

    async def _abandon(
        self, ctx: RequestContext, client: httpx.AsyncClient, upstream: httpx.Response
    ) -> None:
        """Finish a forwarded request whose body was never relayed."""
        if ctx.completed:
            return
        logger.warning("CLIENT_DISCONNECT | id=%s before the response body", ctx.request_id)
        ctx.advance(PipelineState.ERROR)
        await upstream.aclose()
        await client.aclose()
        await self._complete(ctx, {
            "status_code": upstream.status_code,
            "response_headers": dict(upstream.headers),
            "response_body": "",
            "error": _CLIENT_GONE,
        }, "error")

    async def _fail(self, ctx: RequestContext, exc: Exception) -> Response:
        message = str(exc) or exc.__class__.__name__
        logger.error("UPSTREAM_ERROR | id=%s %s: %s", ctx.request_id, exc.__class__.__name__, message)
        metrics.upstream_errors_total.inc()
        ctx.advance(PipelineState.ERROR)
        await self._complete(ctx, {"error": message}, "error")
        return JSONResponse(
            status_code=500,
            content={"error": "Proxy Error", "message": message},
        )

    # ------------------------------------------------------------------
    # WebSocket relay
    # ------------------------------------------------------------------

    async def relay_websocket(self, websocket: WebSocket, path: str) -> None:
        """Relay a WebSocket session to the upstream; frames are not moderated."""
        settings = Settings.from_env()
        ctx = RequestContext.from_connection(websocket, path, "WEBSOCKET")
        await self._open(ctx)

        url = self.upstream_url(settings, ctx)
        if url.startswith("https://"):
            url = "wss://" + url[len("https://"):]
        elif url.startswith("http://"):
            url = "ws://" + url[len("http://"):]
        protocols = [
            p.strip()
            for p in (ctx.header("sec-websocket-protocol") or "").split(",")
            if p.strip()
        ]

        ctx.advance(PipelineState.FORWARDING)
        error: str | None = "websocket relay aborted"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(
                    url,
                    headers=self._forward_headers(ctx, _WS_DROP),
                    protocols=protocols,
                    heartbeat=30,
                ) as upstream_ws:
                    await websocket.accept(subprotocol=upstream_ws.protocol)
                    logger.info("WEBSOCKET | id=%s connected to %s", ctx.request_id, url)
                    await self._pump_websocket(websocket, upstream_ws)
            error = None
        except aiohttp.ClientError as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error("UPSTREAM_ERROR | id=%s websocket %s", ctx.request_id, error)
            metrics.upstream_errors_total.inc()
        finally:
            if (
                websocket.application_state != WebSocketState.DISCONNECTED
                and websocket.client_state != WebSocketState.DISCONNECTED
            ):
                await websocket.close(code=1000 if error is None else 1011)
            ctx.advance(PipelineState.COMPLETED if error is None else PipelineState.ERROR)
            with anyio.CancelScope(shield=True):
                await self._complete(
                    ctx,
                    {"status_code": 101} if error is None else {"error": error},
                    "forwarded" if error is None else "error",
                )

    async def _pump_websocket(self, websocket: WebSocket, upstream_ws: Any) -> None:
        async def client_to_upstream() -> None:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream_ws.send_str(message["text"])
                elif message.get("bytes") is not None:
                    await upstream_ws.send_bytes(message["bytes"])

        async def upstream_to_client() -> None:
            async for msg in upstream_ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await websocket.send_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    await websocket.send_bytes(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.ERROR):
                    return

        tasks = [
            asyncio.create_task(client_to_upstream()),
            asyncio.create_task(upstream_to_client()),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for task in done:
            task.result()

"""
NG-Gate — Response Synthesizer

Builds the refusal returned for a blocked request. The reply is shaped
exactly like a normal chat completion from the upstream API, streamed or not,
so clients treat it as an ordinary answer:

  non-streaming  one chat.completion object, finish_reason "stop", zero usage
  streaming      chunk(role + full text) → chunk(empty delta, "stop") → [DONE]
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Iterator

from fastapi.responses import JSONResponse, Response, StreamingResponse

from guard import ModerationResult

_REFUSAL = (
    "申し訳ございません。このリクエストには不適切な表現（「{term}」）が含まれているため、"
    "処理できませんでした。\n\n別の表現で質問していただけますか？"
)
_REASON_SUFFIX = "\n\n（判定理由: {reason}）"

STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
JSON_HEADERS = {"content-type": "application/json"}


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def refusal_message(result: ModerationResult) -> str:
    message = _REFUSAL.format(term=result.term)
    if result.source == "classifier" and result.reason:
        message += _REASON_SUFFIX.format(reason=result.reason)
    return message


def new_completion_id() -> str:
    return f"blocked-{int(time.time() * 1000)}"


def synthesize_completion(
    content: str, model: Any, created: int, completion_id: str
) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def synthesize_stream_chunks(
    content: str, model: Any, created: int, completion_id: str
) -> list[dict[str, Any]]:
    def chunk(delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
        return {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    return [
        chunk({"role": "assistant", "content": content}, None),
        chunk({}, "stop"),
    ]


def encode_json(payload: Any) -> str:
    """Compact, non-ASCII-preserving JSON as emitted by the upstream."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def sse_frame(data: str) -> str:
    return f"data: {data}\n\n"


def synthesize_stream_frames(
    content: str, model: Any, created: int, completion_id: str
) -> list[str]:
    frames = [
        sse_frame(encode_json(c))
        for c in synthesize_stream_chunks(content, model, created, completion_id)
    ]
    frames.append(sse_frame("[DONE]"))
    return frames


# ---------------------------------------------------------------------------
# HTTP response + audit outcome
# ---------------------------------------------------------------------------

@dataclass
class BlockedResponse:
    response: Response
    outcome: dict[str, Any]


def block_annotation(result: ModerationResult) -> str:
    if result.source == "classifier":
        note = f"Blocked by classifier: {result.term}"
        return f"{note} ({result.reason})" if result.reason else note
    return f"Blocked by NG word: {result.term}"


def build_blocked_response(result: ModerationResult, body: dict[str, Any]) -> BlockedResponse:
    """Return the refusal for *body* plus the outcome to write to its audit record."""
    content = refusal_message(result)
    model = body.get("model") or "unknown"
    created = int(time.time())
    completion_id = new_completion_id()

    outcome: dict[str, Any] = {
        "status_code": 200,
        "error": block_annotation(result),
        "blocked": True,
    }

    if body.get("stream") is True:
        frames = synthesize_stream_frames(content, model, created, completion_id)

        def _generate() -> Iterator[str]:
            yield from frames

        outcome["response_headers"] = {k.lower(): v for k, v in STREAM_HEADERS.items()}
        outcome["response_body"] = content
        return BlockedResponse(
            response=StreamingResponse(_generate(), headers=STREAM_HEADERS),
            outcome=outcome,
        )

    completion = synthesize_completion(content, model, created, completion_id)
    outcome["response_headers"] = JSON_HEADERS
    outcome["response_body"] = encode_json(completion)
    return BlockedResponse(response=JSONResponse(content=completion), outcome=outcome)

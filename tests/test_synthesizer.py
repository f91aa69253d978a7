"""Tests for the refusal synthesizer (wire format of blocked responses)."""

import json

from fastapi.responses import JSONResponse, StreamingResponse

from guard import ModerationResult
from synthesizer import (
    block_annotation,
    build_blocked_response,
    refusal_message,
    synthesize_completion,
    synthesize_stream_frames,
)

KEYWORD_BLOCK = ModerationResult(blocked=True, term="暴力", source="keyword")
CLASSIFIER_BLOCK = ModerationResult(blocked=True, term="spam", source="classifier", reason="advertising")


# ---------------------------------------------------------------------------
# Refusal text
# ---------------------------------------------------------------------------

def test_refusal_names_term():
    message = refusal_message(KEYWORD_BLOCK)
    assert "「暴力」" in message
    assert "判定理由" not in message


def test_classifier_refusal_includes_reason():
    message = refusal_message(CLASSIFIER_BLOCK)
    assert "「spam」" in message
    assert "advertising" in message


def test_block_annotation():
    assert block_annotation(KEYWORD_BLOCK) == "Blocked by NG word: 暴力"
    assert block_annotation(CLASSIFIER_BLOCK) == "Blocked by classifier: spam (advertising)"


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

def test_completion_shape():
    completion = synthesize_completion("no", "gpt-4", 1700000000, "blocked-1")
    assert completion == {
        "id": "blocked-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "no"},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def test_stream_frames_exact():
    frames = synthesize_stream_frames("拒否", "m", 1, "blocked-1")
    assert frames == [
        'data: {"id":"blocked-1","object":"chat.completion.chunk","created":1,"model":"m",'
        '"choices":[{"index":0,"delta":{"role":"assistant","content":"拒否"},"finish_reason":null}]}\n\n',
        'data: {"id":"blocked-1","object":"chat.completion.chunk","created":1,"model":"m",'
        '"choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}\n\n',
        "data: [DONE]\n\n",
    ]


# ---------------------------------------------------------------------------
# HTTP response + audit outcome
# ---------------------------------------------------------------------------

def test_non_streaming_response_and_outcome():
    blocked = build_blocked_response(KEYWORD_BLOCK, {"model": "gpt-4", "messages": []})
    assert isinstance(blocked.response, JSONResponse)
    assert blocked.response.status_code == 200

    body = json.loads(blocked.response.body)
    assert body["model"] == "gpt-4"
    assert body["id"].startswith("blocked-")
    assert "暴力" in body["choices"][0]["message"]["content"]

    outcome = blocked.outcome
    assert outcome["status_code"] == 200
    assert outcome["blocked"] is True
    assert outcome["error"] == "Blocked by NG word: 暴力"
    assert json.loads(outcome["response_body"]) == body


def test_missing_model_echoes_unknown():
    blocked = build_blocked_response(KEYWORD_BLOCK, {"messages": []})
    assert json.loads(blocked.response.body)["model"] == "unknown"


def test_streaming_response_headers():
    blocked = build_blocked_response(KEYWORD_BLOCK, {"model": "m", "stream": True})
    assert isinstance(blocked.response, StreamingResponse)
    headers = blocked.response.headers
    assert headers["content-type"] == "text/event-stream"
    assert headers["cache-control"] == "no-cache"
    assert headers["connection"] == "keep-alive"
    assert blocked.outcome["response_body"] == refusal_message(KEYWORD_BLOCK)


def test_stream_flag_must_be_true():
    blocked = build_blocked_response(KEYWORD_BLOCK, {"model": "m", "stream": "yes"})
    assert isinstance(blocked.response, JSONResponse)

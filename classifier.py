"""
NG-Gate — Semantic Classifier

Second-tier check run only when the keyword tier found nothing. Asks an
OpenAI-compatible chat-completion model whether the text refers to any of
the NG words, including euphemisms, abbreviations and related topics.

The classifier always fails open: network errors, non-2xx statuses and
unparsable answers produce a non-blocking verdict whose reason describes the
failure. ``classify`` never raises for these.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx

logger = logging.getLogger("nggate.classifier")


# ---------------------------------------------------------------------------
# Verdict + port
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassifierVerdict:
    blocked: bool
    matched_word: str | None = None
    reason: str = ""


class Classifier(Protocol):
    @property
    def available(self) -> bool: ...

    async def classify(self, text: str, words: Sequence[str]) -> ClassifierVerdict: ...


# ---------------------------------------------------------------------------
# Prompt + answer parsing
# ---------------------------------------------------------------------------

_PROMPT = """You are a content moderation classifier.

Decide whether the USER TEXT below mentions or refers to any entry of the
NG WORD LIST. Flag not only literal matches but also euphemisms,
abbreviations, alternative spellings, and references to the same topic.

NG WORD LIST: {words}

USER TEXT:
\"\"\"
{text}
\"\"\"

Answer with a single JSON object and nothing else:
{{"blocked": true or false, "matched_word": "<the NG word that applies, or null>", "reason": "<short explanation>"}}"""


def build_prompt(text: str, words: Sequence[str]) -> str:
    return _PROMPT.format(words=json.dumps(list(words), ensure_ascii=False), text=text)


def find_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring of *text*.

    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace; try the next one.
        start = text.find("{", start + 1)
    return None


def parse_verdict(text: str) -> ClassifierVerdict:
    """Parse the model's answer; any problem yields a non-blocking verdict."""
    candidate = find_json_object(text)
    if candidate is None:
        return ClassifierVerdict(False, None, "classifier answer contained no JSON object")
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return ClassifierVerdict(False, None, f"classifier answer was not valid JSON: {exc}")
    if not isinstance(data, dict) or not isinstance(data.get("blocked"), bool):
        return ClassifierVerdict(False, None, "classifier answer had no boolean 'blocked'")

    matched = data.get("matched_word")
    reason = data.get("reason")
    return ClassifierVerdict(
        blocked=data["blocked"],
        matched_word=matched if isinstance(matched, str) and matched else None,
        reason=reason if isinstance(reason, str) else "",
    )


def _answer_text(response: httpx.Response) -> str:
    """Assistant message content of a chat completion, else the raw body."""
    try:
        data: Any = response.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError):
        return response.text
    return content if isinstance(content, str) else response.text


# ---------------------------------------------------------------------------
# OpenAI-compatible backend
# ---------------------------------------------------------------------------

class LLMClassifier:
    """Classifier backed by a chat-completions endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout
        self.transport = transport
        self._api_key = api_key

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    async def classify(self, text: str, words: Sequence[str]) -> ClassifierVerdict:
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [{"role": "user", "content": build_prompt(text, words)}],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as http_client:
                response = await http_client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            reason = f"classifier request failed: {exc.__class__.__name__}: {exc}"
            logger.warning("CLASSIFIER_ERROR | %s", reason)
            return ClassifierVerdict(False, None, reason)

        if not response.is_success:
            reason = f"classifier returned HTTP {response.status_code}"
            logger.warning("CLASSIFIER_ERROR | %s", reason)
            return ClassifierVerdict(False, None, reason)

        verdict = parse_verdict(_answer_text(response))
        logger.info(
            "CLASSIFIED | blocked=%s matched=%r reason=%r",
            verdict.blocked, verdict.matched_word, verdict.reason,
        )
        return verdict

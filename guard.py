"""
NG-Gate — Moderation Guard

Two-tier check of the extracted user text against the NG word list:

  1. keyword    case-insensitive substring match, first word in stored order
  2. classifier optional semantic check, only when tier 1 found nothing

Tier 1 always wins. Tier 2 fails open: if the classifier cannot answer, the
text is allowed. Every classifier call is written to the classifier log,
whatever its verdict.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Sequence

import metrics
from classifier import Classifier, ClassifierVerdict

logger = logging.getLogger("nggate.guard")

# Characters of checked text kept in the classifier log.
_AUDIT_CONTENT_CHARS = 500

# Term shown when the classifier blocks without naming a word.
_UNNAMED_TERM = "NG"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyWord:
    id: int
    word: str


@dataclass(frozen=True)
class ModerationResult:
    blocked: bool
    term: str = ""
    source: Literal["keyword", "classifier", ""] = ""
    reason: str = ""

    @classmethod
    def allowed(cls) -> "ModerationResult":
        return cls(blocked=False)


# ---------------------------------------------------------------------------
# Tier 1 — keyword match
# ---------------------------------------------------------------------------

def match_keyword(text: str, words: Sequence[PolicyWord]) -> PolicyWord | None:
    """Return the first word (stored order) contained in *text*, ignoring case."""
    folded = text.lower()
    for candidate in words:
        needle = candidate.word.lower()
        if needle and needle in folded:
            return candidate
    return None


# ---------------------------------------------------------------------------
# Word cache
# ---------------------------------------------------------------------------

class PolicyWordCache:
    """Point-in-time snapshot of the NG word list.

    Readers get an immutable tuple. ``reload`` builds a new tuple and swaps
    the reference, so a reader never sees a half-updated list. Reloads are
    serialized: the last one to read the store is the last one to swap.
    """

    def __init__(self, loader: Callable[[], list[dict[str, Any]]]) -> None:
        self._loader = loader
        self._words: tuple[PolicyWord, ...] = ()
        self._reload_lock = threading.Lock()

    def snapshot(self) -> tuple[PolicyWord, ...]:
        return self._words

    def replace(self, words: Sequence[PolicyWord]) -> None:
        with self._reload_lock:
            self._words = tuple(words)

    def reload(self) -> tuple[PolicyWord, ...]:
        """Re-read the word list from the store and swap it in."""
        with self._reload_lock:
            fresh = tuple(PolicyWord(id=row["id"], word=row["word"]) for row in self._loader())
            self._words = fresh
        logger.info("NG_WORDS_RELOADED | count=%d", len(fresh))
        return fresh


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

class ModerationGuard:
    """Decide whether a piece of user text may be forwarded."""

    def __init__(
        self,
        words: PolicyWordCache,
        classifier: Classifier | None = None,
        recorder: Callable[[dict[str, Any]], Any] | None = None,
    ) -> None:
        self.words = words
        self.classifier = classifier
        self._recorder = recorder

    def classifier_eligible(self, words: Sequence[PolicyWord]) -> bool:
        return bool(words) and self.classifier is not None and self.classifier.available

    async def decide(self, text: str, request_id: str | None = None) -> ModerationResult:
        words = self.words.snapshot()

        hit = match_keyword(text, words)
        if hit is not None:
            logger.warning("NG_WORD | id=%s word=%r", request_id, hit.word)
            return ModerationResult(blocked=True, term=hit.word, source="keyword")

        if not self.classifier_eligible(words):
            return ModerationResult.allowed()

        word_list = [w.word for w in words]
        verdict, latency_ms = await self._classify(text, word_list)
        await self._record_call(request_id, text, word_list, verdict, latency_ms)

        if not verdict.blocked:
            return ModerationResult.allowed()
        logger.warning(
            "CLASSIFIER_BLOCK | id=%s word=%r reason=%r",
            request_id, verdict.matched_word, verdict.reason,
        )
        return ModerationResult(
            blocked=True,
            term=verdict.matched_word or _UNNAMED_TERM,
            source="classifier",
            reason=verdict.reason,
        )

    async def _classify(self, text: str, words: list[str]) -> tuple[ClassifierVerdict, int]:
        assert self.classifier is not None
        t_start = time.monotonic()
        try:
            verdict = await self.classifier.classify(text, words)
        except Exception as exc:  # noqa: BLE001
            logger.warning("CLASSIFIER_ERROR | unexpected %s: %s", exc.__class__.__name__, exc)
            verdict = ClassifierVerdict(False, None, f"classifier raised {exc.__class__.__name__}: {exc}")
        latency_ms = int((time.monotonic() - t_start) * 1000)
        metrics.classifier_calls_total.labels(
            verdict="blocked" if verdict.blocked else "allowed"
        ).inc()
        return verdict, latency_ms

    async def _record_call(
        self,
        request_id: str | None,
        text: str,
        words: list[str],
        verdict: ClassifierVerdict,
        latency_ms: int,
    ) -> None:
        if self._recorder is None:
            return
        entry = {
            "request_id": request_id,
            "content": text[:_AUDIT_CONTENT_CHARS],
            "words": words,
            "blocked": verdict.blocked,
            "matched_word": verdict.matched_word,
            "reason": verdict.reason,
            "latency_ms": latency_ms,
        }
        try:
            await asyncio.to_thread(self._recorder, entry)
        except Exception:  # noqa: BLE001
            logger.exception("AUDIT_ERROR | classifier call for id=%s not recorded", request_id)

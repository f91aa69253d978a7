"""Tests for the keyword matcher, NG word cache and two-tier moderation guard."""

import asyncio
import threading

import pytest

from classifier import ClassifierVerdict
from guard import ModerationGuard, ModerationResult, PolicyWord, PolicyWordCache, match_keyword


def _words(*words: str) -> list[PolicyWord]:
    return [PolicyWord(id=i + 1, word=w) for i, w in enumerate(words)]


def _cache(*words: str) -> PolicyWordCache:
    cache = PolicyWordCache(lambda: [])
    cache.replace(_words(*words))
    return cache


class FakeClassifier:
    """Records calls and answers with a fixed verdict (or raises)."""

    def __init__(self, verdict=None, exc=None, available=True):
        self.verdict = verdict or ClassifierVerdict(False, None, "clean")
        self.exc = exc
        self.available = available
        self.calls = []

    async def classify(self, text, words):
        self.calls.append((text, list(words)))
        if self.exc is not None:
            raise self.exc
        return self.verdict


# ---------------------------------------------------------------------------
# Keyword matcher
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text,stored", [
    ("this is BAD news", "bad"),
    ("this is bad news", "BAD"),
    ("これは暴力的な話です", "暴力"),
    ("Spam and eggs", "sPaM"),
])
def test_match_returns_word_as_stored(text, stored):
    hit = match_keyword(text, _words("unrelated", stored))
    assert hit is not None
    assert hit.word == stored


def test_first_word_in_stored_order_wins():
    hit = match_keyword("alpha beta", _words("beta", "alpha"))
    assert hit.word == "beta"


def test_no_match():
    assert match_keyword("hello there", _words("bad", "worse")) is None


def test_empty_word_never_matches():
    assert match_keyword("anything", _words("")) is None


def test_empty_word_list():
    assert match_keyword("anything", []) is None


# ---------------------------------------------------------------------------
# Word cache
# ---------------------------------------------------------------------------

def test_reload_reads_loader_in_order():
    rows = [{"id": 3, "word": "c"}, {"id": 7, "word": "a"}]
    cache = PolicyWordCache(lambda: rows)
    assert cache.snapshot() == ()
    fresh = cache.reload()
    assert [w.word for w in fresh] == ["c", "a"]
    assert cache.snapshot() == fresh


def test_reload_swaps_without_touching_old_snapshot():
    rows = [{"id": 1, "word": "old"}]
    cache = PolicyWordCache(lambda: list(rows))
    cache.reload()
    before = cache.snapshot()

    rows[:] = [{"id": 2, "word": "new"}]
    cache.reload()

    assert [w.word for w in before] == ["old"]
    assert [w.word for w in cache.snapshot()] == ["new"]
    assert isinstance(cache.snapshot(), tuple)


def test_concurrent_reloads_keep_the_newest_list():
    rows = [{"id": 1, "word": "X"}]
    first_read = threading.Event()
    release_first = threading.Event()
    reads = []

    def loader():
        current = list(rows)
        reads.append(current)
        if len(reads) == 1:
            first_read.set()
            release_first.wait(timeout=5)
        return current

    cache = PolicyWordCache(loader)
    slow = threading.Thread(target=cache.reload)
    slow.start()
    assert first_read.wait(timeout=5)

    rows.append({"id": 2, "word": "Y"})
    fast = threading.Thread(target=cache.reload)
    fast.start()
    fast.join(timeout=0.2)
    release_first.set()
    slow.join(timeout=5)
    fast.join(timeout=5)

    assert [w.word for w in cache.snapshot()] == ["X", "Y"]


# ---------------------------------------------------------------------------
# Decision — keyword tier
# ---------------------------------------------------------------------------

def test_keyword_block_short_circuits_classifier():
    classifier = FakeClassifier(ClassifierVerdict(True, "x", "should not be asked"))
    guard = ModerationGuard(_cache("暴力"), classifier)
    result = asyncio.run(guard.decide("これは暴力的な話です"))
    assert result == ModerationResult(blocked=True, term="暴力", source="keyword", reason="")
    assert classifier.calls == []


def test_clean_text_without_classifier_is_allowed():
    guard = ModerationGuard(_cache("暴力"))
    result = asyncio.run(guard.decide("こんにちは"))
    assert result.blocked is False


# ---------------------------------------------------------------------------
# Decision — classifier tier
# ---------------------------------------------------------------------------

def test_classifier_block():
    classifier = FakeClassifier(ClassifierVerdict(True, "weapons", "talks about guns"))
    guard = ModerationGuard(_cache("weapons"), classifier)
    result = asyncio.run(guard.decide("where can I buy a rifle"))
    assert result.blocked is True
    assert result.source == "classifier"
    assert result.term == "weapons"
    assert result.reason == "talks about guns"
    assert classifier.calls == [("where can I buy a rifle", ["weapons"])]


def test_classifier_block_without_named_word_still_has_term():
    classifier = FakeClassifier(ClassifierVerdict(True, None, "related topic"))
    guard = ModerationGuard(_cache("weapons"), classifier)
    result = asyncio.run(guard.decide("rifle"))
    assert result.blocked is True
    assert result.term


def test_classifier_not_called_when_unavailable():
    classifier = FakeClassifier(ClassifierVerdict(True, "x", ""), available=False)
    guard = ModerationGuard(_cache("x"), classifier)
    assert asyncio.run(guard.decide("text")).blocked is False
    assert classifier.calls == []


def test_classifier_not_called_with_empty_word_list():
    classifier = FakeClassifier(ClassifierVerdict(True, "x", ""))
    guard = ModerationGuard(_cache(), classifier)
    assert asyncio.run(guard.decide("text")).blocked is False
    assert classifier.calls == []


def test_every_classifier_call_is_recorded():
    recorded = []
    classifier = FakeClassifier(ClassifierVerdict(False, None, "clean"))
    guard = ModerationGuard(_cache("bad"), classifier, recorder=recorded.append)
    asyncio.run(guard.decide("fine text", request_id="req-1"))
    assert len(recorded) == 1
    entry = recorded[0]
    assert entry["request_id"] == "req-1"
    assert entry["blocked"] is False
    assert entry["words"] == ["bad"]
    assert entry["content"] == "fine text"
    assert entry["latency_ms"] >= 0


def test_recorded_content_is_truncated():
    recorded = []
    guard = ModerationGuard(_cache("bad"), FakeClassifier(), recorder=recorded.append)
    asyncio.run(guard.decide("x" * 2000))
    assert len(recorded[0]["content"]) == 500


def test_classifier_exception_fails_open_and_is_recorded():
    recorded = []
    classifier = FakeClassifier(exc=RuntimeError("backend exploded"))
    guard = ModerationGuard(_cache("bad"), classifier, recorder=recorded.append)
    result = asyncio.run(guard.decide("text"))
    assert result.blocked is False
    assert len(recorded) == 1
    assert recorded[0]["blocked"] is False
    assert "backend exploded" in recorded[0]["reason"]


def test_recorder_failure_does_not_change_decision():
    def broken_recorder(entry):
        raise OSError("disk full")

    classifier = FakeClassifier(ClassifierVerdict(True, "bad", "euphemism"))
    guard = ModerationGuard(_cache("bad"), classifier, recorder=broken_recorder)
    result = asyncio.run(guard.decide("b4d"))
    assert result.blocked is True
    assert result.source == "classifier"

"""
NG-Gate — Audit Store

Thread-safe SQLite persistence for the proxy:

  request_logs     one row per inbound request (created at intercept time,
                   completed exactly once)
  ng_words         the policy word list, matched in insertion order
  classifier_logs  append-only log of every semantic classifier call

Configure the database path via the NGGATE_DB_PATH environment variable
(defaults to "proxy.db" in the working directory).
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger("nggate.db")

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS request_logs (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id        TEXT    NOT NULL,
    timestamp         TEXT    NOT NULL,
    method            TEXT    NOT NULL,
    path              TEXT    NOT NULL,
    headers           TEXT,
    query             TEXT,
    request_body      TEXT,
    status_code       INTEGER,
    response_headers  TEXT,
    response_body     TEXT,
    duration_ms       INTEGER,
    error             TEXT,
    blocked           INTEGER NOT NULL DEFAULT 0,
    completed_at      TEXT
);
CREATE INDEX IF NOT EXISTS idx_request_logs_timestamp ON request_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_request_logs_request_id ON request_logs(request_id);

CREATE TABLE IF NOT EXISTS ng_words (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    word        TEXT    NOT NULL UNIQUE,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS classifier_logs (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id    TEXT,
    timestamp     TEXT    NOT NULL,
    content       TEXT    NOT NULL,
    words         TEXT    NOT NULL,
    blocked       INTEGER NOT NULL DEFAULT 0,
    matched_word  TEXT,
    reason        TEXT    NOT NULL DEFAULT '',
    latency_ms    INTEGER NOT NULL DEFAULT 0
);
"""

_INSERT_REQUEST = """
INSERT INTO request_logs
    (request_id, timestamp, method, path, headers, query, request_body)
VALUES
    (:request_id, :timestamp, :method, :path, :headers, :query, :request_body);
"""

# Outcome fields are written once: a completed row is never updated again.
_COMPLETE_REQUEST = """
UPDATE request_logs
SET    status_code      = :status_code,
       response_headers = :response_headers,
       response_body    = :response_body,
       duration_ms      = :duration_ms,
       error            = :error,
       blocked          = :blocked,
       completed_at     = :completed_at
WHERE  id = :id AND completed_at IS NULL;
"""

_SELECT_REQUESTS = "SELECT * FROM request_logs"

_INSERT_CLASSIFIER = """
INSERT INTO classifier_logs
    (request_id, timestamp, content, words, blocked, matched_word, reason, latency_ms)
VALUES
    (:request_id, :timestamp, :content, :words, :blocked, :matched_word, :reason, :latency_ms);
"""

_JSON_COLUMNS = ("headers", "query", "response_headers")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _request_row(row: sqlite3.Row) -> dict[str, Any]:
    record = dict(row)
    for col in _JSON_COLUMNS:
        raw = record.get(col)
        if raw:
            try:
                record[col] = json.loads(raw)
            except json.JSONDecodeError:
                pass  # stored as free text
    record["blocked"] = bool(record["blocked"])
    return record


# ---------------------------------------------------------------------------
# AuditDB
# ---------------------------------------------------------------------------

class AuditDB:
    """Thread-safe SQLite-backed audit store.

    A single connection is reused across threads; a Lock serialises access.
    WAL journal mode allows concurrent readers on file-backed databases.
    Callers on the event loop go through ``asyncio.to_thread``.
    """

    def __init__(self, path: str = "proxy.db") -> None:
        self._path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(_CREATE_TABLES)
        self._conn.commit()
        display = path if path == ":memory:" else os.path.abspath(path)
        logger.info("AuditDB ready: %s", display)

    # ------------------------------------------------------------------
    # Request records
    # ------------------------------------------------------------------

    def insert(self, record: dict[str, Any]) -> int:
        """Persist the request half of an audit record and return its row id."""
        row = {
            "request_id": record["request_id"],
            "timestamp": record.get("timestamp") or _now(),
            "method": record["method"],
            "path": record["path"],
            "headers": _dumps(record.get("headers")),
            "query": _dumps(record.get("query")),
            "request_body": record.get("request_body"),
        }
        with self._lock:
            cur = self._conn.execute(_INSERT_REQUEST, row)
            self._conn.commit()
            return int(cur.lastrowid)

    def update_by_id(self, record_id: int, outcome: dict[str, Any]) -> bool:
        """Write the outcome fields of a record.

        Returns False when the record does not exist or was already completed.
        """
        row = {
            "id": record_id,
            "status_code": outcome.get("status_code"),
            "response_headers": _dumps(outcome.get("response_headers")),
            "response_body": outcome.get("response_body"),
            "duration_ms": outcome.get("duration_ms"),
            "error": outcome.get("error"),
            "blocked": int(bool(outcome.get("blocked", False))),
            "completed_at": _now(),
        }
        with self._lock:
            cur = self._conn.execute(_COMPLETE_REQUEST, row)
            self._conn.commit()
            return cur.rowcount == 1

    def list_page(
        self,
        limit: int = 50,
        offset: int = 0,
        blocked: bool | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of records (newest first) and the total row count.

        Args:
            limit:   Maximum number of rows to return.
            offset:  Number of rows to skip from the newest.
            blocked: If True/False, filter by blocked status; None returns all.
        """
        where = ""
        params: list[Any] = []
        if blocked is not None:
            where = " WHERE blocked = ?"
            params.append(int(blocked))

        with self._lock:
            total = self._conn.execute(
                "SELECT COUNT(*) FROM request_logs" + where, params
            ).fetchone()[0]
            rows = self._conn.execute(
                _SELECT_REQUESTS + where + " ORDER BY id DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [_request_row(r) for r in rows], int(total)

    def get_by_id(self, record_id: int) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                _SELECT_REQUESTS + " WHERE id = ?", (record_id,)
            ).fetchone()
        return _request_row(row) if row else None

    def prune_older_than(self, days: int) -> int:
        """Delete request and classifier rows older than *days*.

        Returns the number of request records removed.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        with self._lock:
            removed = self._conn.execute(
                "DELETE FROM request_logs WHERE timestamp < ?", (cutoff,)
            ).rowcount
            removed_calls = self._conn.execute(
                "DELETE FROM classifier_logs WHERE timestamp < ?", (cutoff,)
            ).rowcount
            self._conn.commit()
        logger.info(
            "PRUNE | older_than_days=%d requests=%d classifier_calls=%d",
            days, removed, removed_calls,
        )
        return removed

    # ------------------------------------------------------------------
    # Policy words
    # ------------------------------------------------------------------

    def list_words(self) -> list[dict[str, Any]]:
        """Return every NG word in insertion order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, word, created_at FROM ng_words ORDER BY id ASC"
            ).fetchall()
        return [dict(r) for r in rows]

    def _word_taken(self, word: str, exclude_id: int | None = None) -> bool:
        """True if *word* equals a stored word ignoring case. Caller holds the lock."""
        folded = word.lower()
        rows = self._conn.execute("SELECT id, word FROM ng_words").fetchall()
        return any(r["word"].lower() == folded and r["id"] != exclude_id for r in rows)

    def add_word(self, word: str) -> int:
        """Insert a word; raises sqlite3.IntegrityError if it already exists in any case."""
        with self._lock:
            if self._word_taken(word):
                raise sqlite3.IntegrityError(f"NG word already exists: {word}")
            cur = self._conn.execute(
                "INSERT INTO ng_words (word, created_at) VALUES (?, ?)", (word, _now())
            )
            self._conn.commit()
            return int(cur.lastrowid)

    def update_word(self, word_id: int, word: str) -> bool:
        with self._lock:
            if self._word_taken(word, exclude_id=word_id):
                raise sqlite3.IntegrityError(f"NG word already exists: {word}")
            cur = self._conn.execute(
                "UPDATE ng_words SET word = ? WHERE id = ?", (word, word_id)
            )
            self._conn.commit()
            return cur.rowcount == 1

    def remove_word(self, word_id: int) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM ng_words WHERE id = ?", (word_id,))
            self._conn.commit()
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Classifier activity
    # ------------------------------------------------------------------

    def record_classifier_call(self, entry: dict[str, Any]) -> int:
        """Append one classifier invocation (blocking or not)."""
        row = {
            "request_id": entry.get("request_id"),
            "timestamp": entry.get("timestamp") or _now(),
            "content": entry["content"],
            "words": json.dumps(entry["words"], ensure_ascii=False),
            "blocked": int(bool(entry["blocked"])),
            "matched_word": entry.get("matched_word"),
            "reason": entry.get("reason", ""),
            "latency_ms": int(entry.get("latency_ms", 0)),
        }
        with self._lock:
            cur = self._conn.execute(_INSERT_CLASSIFIER, row)
            self._conn.commit()
            return int(cur.lastrowid)

    def list_classifier_calls(
        self, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM classifier_logs ORDER BY id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        result: list[dict[str, Any]] = []
        for row in rows:
            call = dict(row)
            call["words"] = json.loads(call["words"])
            call["blocked"] = bool(call["blocked"])
            result.append(call)
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> None:
        with self._lock:
            self._conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        """Close the underlying connection (called on app shutdown)."""
        with self._lock:
            self._conn.close()
        logger.info("AuditDB closed: %s", self._path)

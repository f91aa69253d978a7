"""
NG-Gate — Settings

All configuration comes from environment variables. Settings are read at
request time (``Settings.from_env()``) so tests can override them with
monkeypatch without restarting the app. A malformed numeric value is logged
and the default is used instead.

Environment variables:
  NGGATE_DB_PATH             SQLite file path              (default: proxy.db)
  NGGATE_UPSTREAM_URL        Upstream API base URL         (default: https://api.sakura.ai)
  NGGATE_UPSTREAM_TIMEOUT    Upstream timeout in seconds   (default: 120)
  NGGATE_MAX_BODY_BYTES      Max request body in bytes     (default: 10485760 = 10 MB)
  NGGATE_MAX_CAPTURE_BYTES   Max response bytes audited    (default: 10485760 = 10 MB)
  NGGATE_RATE_LIMIT          slowapi limit string          (default: 120/minute)
  NGGATE_RETENTION_DAYS      Prune audit rows at startup   (disabled if unset)
  NGGATE_WEBHOOK_URL         Block alert webhook URL       (disabled if unset)
  NGGATE_CLASSIFIER_ENABLED  Enable the semantic check     (default: false)
  NGGATE_CLASSIFIER_URL      Chat-completions endpoint     (default: OpenAI)
  NGGATE_CLASSIFIER_API_KEY  Bearer key for the classifier (classifier unavailable if unset)
  NGGATE_CLASSIFIER_MODEL    Classifier model name         (default: gpt-4o-mini)
  NGGATE_CLASSIFIER_TIMEOUT  Classifier timeout in seconds (default: 10)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger("nggate.config")

_TEN_MB = 10 * 1024 * 1024
_TRUTHY = {"1", "true", "yes", "on"}


def _env_number(name: str, default, cast):
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("CONFIG | %s=%r is not a valid %s; using %r", name, raw, cast.__name__, default)
        return default


def _env_int(name: str, default: int | None) -> int | None:
    return _env_number(name, default, int)


def _env_float(name: str, default: float) -> float:
    return _env_number(name, default, float)


@dataclass(frozen=True)
class Settings:
    db_path: str = "proxy.db"
    upstream_url: str = "https://api.sakura.ai"
    upstream_timeout: float = 120.0
    max_body_bytes: int = _TEN_MB
    max_capture_bytes: int = _TEN_MB
    rate_limit: str = "120/minute"
    retention_days: int | None = None
    webhook_url: str = ""
    classifier_enabled: bool = False
    classifier_url: str = "https://api.openai.com/v1/chat/completions"
    classifier_api_key: str = ""
    classifier_model: str = "gpt-4o-mini"
    classifier_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("NGGATE_DB_PATH", cls.db_path),
            upstream_url=os.getenv("NGGATE_UPSTREAM_URL", "").strip() or cls.upstream_url,
            upstream_timeout=_env_float("NGGATE_UPSTREAM_TIMEOUT", cls.upstream_timeout),
            max_body_bytes=_env_int("NGGATE_MAX_BODY_BYTES", cls.max_body_bytes),
            max_capture_bytes=_env_int("NGGATE_MAX_CAPTURE_BYTES", cls.max_capture_bytes),
            rate_limit=os.getenv("NGGATE_RATE_LIMIT", cls.rate_limit),
            retention_days=_env_int("NGGATE_RETENTION_DAYS", None),
            webhook_url=os.getenv("NGGATE_WEBHOOK_URL", ""),
            classifier_enabled=(
                os.getenv("NGGATE_CLASSIFIER_ENABLED", "").strip().lower() in _TRUTHY
            ),
            classifier_url=os.getenv("NGGATE_CLASSIFIER_URL", "").strip() or cls.classifier_url,
            classifier_api_key=os.getenv("NGGATE_CLASSIFIER_API_KEY", ""),
            classifier_model=os.getenv("NGGATE_CLASSIFIER_MODEL", "").strip() or cls.classifier_model,
            classifier_timeout=_env_float("NGGATE_CLASSIFIER_TIMEOUT", cls.classifier_timeout),
        )

"""
Pytest configuration — sets env vars before any test module imports proxy.py
so the lifespan always gets an in-memory SQLite DB, a fake upstream host and
no classifier by default.
"""

import os

# Must be set before proxy.py is imported so the lifespan picks it up.
os.environ["NGGATE_DB_PATH"] = ":memory:"
os.environ["NGGATE_UPSTREAM_URL"] = "http://upstream.test"
# Use a very high rate limit in tests so the shared slowapi counter never
# interferes with functional tests.  Individual rate-limit tests override
# this via monkeypatch.
os.environ.setdefault("NGGATE_RATE_LIMIT", "100000/minute")
for _var in (
    "NGGATE_WEBHOOK_URL",
    "NGGATE_RETENTION_DAYS",
    "NGGATE_MAX_BODY_BYTES",
    "NGGATE_CLASSIFIER_ENABLED",
    "NGGATE_CLASSIFIER_API_KEY",
):
    os.environ.pop(_var, None)

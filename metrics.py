"""
NG-Gate — Prometheus metrics

Scraped from GET /metrics.
"""

from prometheus_client import Counter, Histogram

requests_total = Counter(
    "nggate_requests_total",
    "Total proxied requests by terminal outcome",
    ["outcome"],  # forwarded | blocked | error | rejected
)
blocks_total = Counter(
    "nggate_blocks_total",
    "Total blocked requests by moderation tier",
    ["source"],  # keyword | classifier
)
classifier_calls_total = Counter(
    "nggate_classifier_calls_total",
    "Total semantic classifier invocations by verdict",
    ["verdict"],  # blocked | allowed
)
upstream_errors_total = Counter(
    "nggate_upstream_errors_total",
    "Total upstream transport failures",
)
request_duration = Histogram(
    "nggate_request_duration_seconds",
    "End-to-end request processing time in seconds",
)

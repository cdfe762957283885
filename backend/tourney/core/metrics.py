"""Prometheus metrics shared across the API."""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "tourney_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "tourney_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
AUTH_REJECTIONS = Counter(
    "tourney_auth_rejections_total",
    "Requests rejected by the access-token check",
    ["reason"],
)
CSRF_REJECTIONS = Counter(
    "tourney_csrf_rejections_total",
    "State-changing requests rejected by the CSRF guard",
    ["reason"],
)
REFRESH_OUTCOMES = Counter(
    "tourney_refresh_outcomes_total",
    "Refresh token exchange results",
    ["status"],
)

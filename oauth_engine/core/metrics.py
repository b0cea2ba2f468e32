"""Application metrics using the Prometheus client library.

One inventory of everything the service measures.  Other modules import
specific metrics and increment/observe them at the point of action.

WHAT TO WATCH ON AN AUTHORIZATION SERVER
-----------------------------------------
  oauth_token_grants_total{grant_type, result}
      The ratio of result="invalid_grant" to result="ok" is the single
      most useful security signal here.  A sudden jump means somebody is
      replaying codes or guessing them.

  oauth_refresh_reuse_total
      Should be zero.  Each increment is a revoked refresh token that was
      presented again: either a buggy client or a stolen token.

  oauth_sweep_removed_total{kind}
      Storage reclaimed by the background sweep.  If this stays at zero
      while codes are issued, the worker is not running.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# OAuth metrics
# ---------------------------------------------------------------------------

CODES_ISSUED = Counter(
    "oauth_codes_issued_total",
    "Authorization codes issued by /authorize",
    ["client_id"],
)

AUTHORIZE_REJECTIONS = Counter(
    "oauth_authorize_rejections_total",
    "Authorization requests rejected, by OAuth error code",
    ["error"],
)

TOKEN_GRANTS = Counter(
    "oauth_token_grants_total",
    "Token endpoint outcomes by grant type and result",
    ["grant_type", "result"],  # result: "ok" or an OAuth error code
)

REFRESH_REUSE = Counter(
    "oauth_refresh_reuse_total",
    "Revoked refresh tokens presented again (possible token theft)",
)

SWEEP_REMOVED = Counter(
    "oauth_sweep_removed_total",
    "Expired records reclaimed by the background sweep",
    ["kind"],  # "codes" or "tokens"
)

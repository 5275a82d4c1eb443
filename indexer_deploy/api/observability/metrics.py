from __future__ import annotations

import re
from prometheus_client import Counter, Histogram


def normalize_path(path: str) -> str:
    """Reduce high-cardinality paths for metrics labels."""
    p = path or "/"

    # long hex (plan ids, cache keys)
    p = re.sub(r"/[0-9a-fA-F]{16,}", "/:hex", p)
    # ints
    p = re.sub(r"/\d+", "/:id", p)

    p = re.sub(r"^(/api/v1/provision/(?:plan|status))/[^/]+$", r"\1/:family", p)
    p = re.sub(r"^(/api/v1/builds)/[^/]+/latest$", r"\1/:linkage/latest", p)

    return p


HTTP_REQUESTS_TOTAL = Counter(
    "deploy_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "deploy_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

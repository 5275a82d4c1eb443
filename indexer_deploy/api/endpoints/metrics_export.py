"""`GET /metrics`: the default prometheus_client registry in text exposition format.

Exposes the build stage and provisioning family counters next to the
HTTP request metrics.
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
def scrape() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

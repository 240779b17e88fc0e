# avatar_studio/metrics.py
"""
Prometheus metrics and /metrics endpoint for the FastAPI app.
"""

from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# Count /upload calls by final outcome (ok or the error code)
UPLOAD_REQUESTS = Counter(
    "avatar_upload_requests_total",
    "Total number of /upload requests by outcome",
    ["outcome"],
)

# Size of accepted avatar files
UPLOAD_BYTES = Histogram(
    "avatar_upload_bytes",
    "Size in bytes of accepted avatar uploads",
    buckets=(16_384, 65_536, 131_072, 204_800, 524_288, 1_048_576, 5_242_880, 15_728_640),
)

# Time from auth success to session rebind (or rejection)
INGEST_SECONDS = Histogram(
    "avatar_ingest_seconds",
    "Time spent ingesting an avatar upload in seconds",
)

# Files deleted because a step after the disk write failed
ORPHANS_REMOVED = Counter(
    "avatar_orphan_files_removed_total",
    "Total number of partially ingested files removed after a failure",
)

SESSIONS_ACTIVE = Gauge(
    "avatar_sessions_active",
    "Number of live sessions in the session store",
)


@router.get("/metrics")
def metrics() -> Response:
    """
    Expose Prometheus metrics in text format.
    """
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

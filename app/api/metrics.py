"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import QueueStatus
from app.monitoring.metrics import queue_waiting
from app.monitoring.registry import registry
from app.services.store import MatchmakingStore


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics(db: Session = Depends(get_db)) -> Response:
    """Expose matchmaking and realtime metrics for Prometheus scraping.

    The queue depth gauge is refreshed from the store so it stays accurate
    while the scheduler is disabled.
    """

    counts = MatchmakingStore(db).count_queue_by_status()
    queue_waiting.set(counts[QueueStatus.WAITING])
    return Response(content=registry.render(), media_type="text/plain; version=0.0.4")

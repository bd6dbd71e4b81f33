from fastapi import APIRouter, Response

from backend.core.metrics import METRICS


router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics_endpoint():
    """Prometheus text exposition of the in-process registry."""
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")

"""
Prometheus metrics endpoint
"""
from fastapi import APIRouter

from newsletter.obs.metrics import metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    """Expose metrics in Prometheus text format"""
    return metrics.get_metrics_response()

"""
Metrics Endpoint for Prometheus Scraping

Exposes the payment lifecycle metrics at /metrics
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST

from ..fsm.metrics import get_metrics, get_metrics_summary

router = APIRouter(tags=["observability"])


@router.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint

    Returns metrics in Prometheus text format for scraping.

    Example Prometheus scrape config:
    ```yaml
    scrape_configs:
      - job_name: 'consult-payments'
        metrics_path: '/metrics'
        scrape_interval: 15s
    ```
    """
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@router.get("/metrics/summary")
async def metrics_summary():
    """
    Human-readable metrics summary

    Returns JSON totals of the payment counters for quick health checks.
    """
    return {"payments": get_metrics_summary()}

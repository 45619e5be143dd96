"""Health, readiness and metrics endpoints."""

from importlib import metadata as importlib_metadata
from typing import Any

from fastapi import APIRouter, Depends, Request

from backend.core.database import check_connection, get_engine
from backend.core.observability import metrics
from backend.core.security import require_api_key

router = APIRouter()


def get_version() -> str:
    """Installed package version, or ``dev`` when running from a checkout."""
    try:
        return importlib_metadata.version("license-billing-dunning")
    except importlib_metadata.PackageNotFoundError:
        return "dev"


def check_database(request: Request) -> str:
    """Check database connectivity with light query."""
    engine = getattr(request.app.state, "engine", None) or get_engine()
    return "OK" if check_connection(engine) else "FAIL"


@router.get("/health/ready")
def readiness_check(request: Request) -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database(request)
    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}


@router.get("/metrics", dependencies=[Depends(require_api_key)])
def metrics_snapshot() -> dict[str, Any]:
    """In-process metrics snapshot (guarded)."""
    return metrics.get_metrics()

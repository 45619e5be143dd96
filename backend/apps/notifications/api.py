"""Guarded notification job and log endpoints (strict validation)."""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from agents.dunning.job_store import NotificationJobStore
from backend.core.security import require_api_key
from backend.core.services import get_job_store

router = APIRouter(dependencies=[Depends(require_api_key)])


@router.get("/license-notification-jobs")
def list_jobs(
    status_filter: str | None = Query(None, alias="status"),
    limit: int | None = Query(None, ge=1),
    store: NotificationJobStore = Depends(get_job_store),
):
    return [job.to_dict() for job in store.find(status=status_filter, limit=limit)]


@router.post("/license-notification-jobs")
def create_jobs(body: Any = Body(...), store: NotificationJobStore = Depends(get_job_store)):
    """Upsert one job (201 new, 200 duplicate) or an all-or-nothing array (201)."""
    results = store.create_strict(body)
    if isinstance(body, list):
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content={"created": [result.to_dict() for result in results]},
        )
    result = results[0]
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.duplicate else status.HTTP_201_CREATED,
        content=result.to_dict(),
    )


@router.get("/license-notification-jobs/{job_id}")
def get_job(job_id: str, store: NotificationJobStore = Depends(get_job_store)):
    return store.get(job_id).to_dict()


@router.patch("/license-notification-jobs/{job_id}")
def patch_job(
    job_id: str, body: Any = Body(...), store: NotificationJobStore = Depends(get_job_store)
):
    return store.patch(job_id, body).to_dict()


@router.post("/license-notification-logs", status_code=status.HTTP_201_CREATED)
def append_log(body: Any = Body(...), store: NotificationJobStore = Depends(get_job_store)):
    return store.append_log(body).to_dict()

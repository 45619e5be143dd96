"""Internal job endpoints without the shared-secret guard.

Validation is lenient: items are processed one by one and failures are
reported next to the jobs that were created.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse

from agents.dunning.job_store import NotificationJobStore
from backend.core.services import get_job_store

router = APIRouter(prefix="/license-jobs")


@router.get("")
def list_jobs(
    status_filter: str | None = Query(None, alias="status"),
    limit: int | None = Query(None, ge=1),
    store: NotificationJobStore = Depends(get_job_store),
):
    return [job.to_dict() for job in store.find(status=status_filter, limit=limit)]


@router.post("")
def create_jobs(body: Any = Body(...), store: NotificationJobStore = Depends(get_job_store)):
    outcome = store.create_lenient(body)
    code = status.HTTP_200_OK
    if outcome.failed and not outcome.created:
        code = status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=code, content=outcome.to_dict())


@router.get("/{job_id}")
def get_job(job_id: str, store: NotificationJobStore = Depends(get_job_store)):
    return store.get(job_id).to_dict()


@router.patch("/{job_id}")
def patch_job(
    job_id: str, body: Any = Body(...), store: NotificationJobStore = Depends(get_job_store)
):
    return store.patch(job_id, body).to_dict()

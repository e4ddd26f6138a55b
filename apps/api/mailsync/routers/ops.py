from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from mailsync.core.deps import get_scheduler, require_user
from mailsync.db.session import get_session
from mailsync.models.enums import JobStatus, JobType
from mailsync.schemas.ops import JobListResponse, JobOut, JobReplayResponse
from mailsync.worker.errors import JobConflictError
from mailsync.worker.scheduler import JobScheduler

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_user)])


@router.get("/jobs", response_model=JobListResponse)
def jobs_list(
    job_status: JobStatus | None = Query(default=None, alias="status"),
    job_type: JobType | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> JobListResponse:
    jobs = scheduler.list_jobs(session, status=job_status, job_type=job_type, limit=limit)
    return JobListResponse(
        items=[JobOut.model_validate(job) for job in jobs],
        counts=scheduler.job_counts(session),
    )


@router.post("/jobs/{job_id}/replay", response_model=JobReplayResponse)
def job_replay(
    job_id: UUID,
    session: Session = Depends(get_session),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> JobReplayResponse:
    try:
        job = scheduler.replay_job(session, job_id)
    except JobConflictError as e:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failed job not found")
    session.commit()
    return JobReplayResponse(job_id=job.id, status=job.status.value)

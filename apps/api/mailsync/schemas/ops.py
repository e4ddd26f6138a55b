from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    type: str
    status: str
    run_at: datetime
    attempts: int
    max_attempts: int
    locked_by: str | None
    last_error: str | None
    dedupe_key: str | None
    payload: dict
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    items: list[JobOut]
    counts: dict[str, int]


class JobReplayResponse(BaseModel):
    job_id: UUID
    status: str

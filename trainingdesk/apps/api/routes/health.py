from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from trainingdesk.apps.api.response import SuccessEnvelope, success_response
from trainingdesk.services.activity_sync import ACTIVITY_SYNC_LEASE
from trainingdesk.services.removal import ENDORSEMENT_REMOVAL_LEASE
from trainingdesk.services.telemetry import last_job_run


router = APIRouter(tags=["health"])


class JobStatus(BaseModel):
    job: str
    status: str | None
    duration_ms: float | None


class HealthResponse(BaseModel):
    status: str
    jobs: list[JobStatus]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Last run per scheduled job as seen by this process; empty until a job ran here.
    jobs = []
    for job in (ACTIVITY_SYNC_LEASE, ENDORSEMENT_REMOVAL_LEASE):
        sample = last_job_run(job)
        jobs.append(
            JobStatus(
                job=job,
                status=sample.status if sample else None,
                duration_ms=sample.duration_ms if sample else None,
            )
        )
    return success_response(request=request, data=HealthResponse(status="ok", jobs=jobs))

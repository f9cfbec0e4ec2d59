from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.database import get_db
from autoscaler.models import Job, Runner, RunnerStatus
from autoscaler.schemas import JobRead, RunnerRead
from autoscaler.services.ledger import get_job as ledger_get_job, runners_in_states

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

# Runners that could still pick up a waiting job
POTENTIAL_STATES = (RunnerStatus.CREATED, RunnerStatus.PROVISIONED)


@router.get("", response_model=list[JobRead])
async def list_jobs(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Job).order_by(Job.id.desc()).offset(offset).limit(limit))
    return result.scalars().all()


@router.get("/{job_id}", response_model=JobRead)
async def get_job(job_id: int, db: AsyncSession = Depends(get_db)):
    job = await ledger_get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/{job_id}/potential-runners", response_model=list[RunnerRead])
async def get_potential_runners(job_id: int, db: AsyncSession = Depends(get_db)):
    """Runners matching the job's size and profile that are up or coming up."""
    job = await ledger_get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    runners: list[Runner] = await runners_in_states(db, POTENTIAL_STATES)
    profile = job.requested_profile or "default"
    return [
        r for r in runners
        if r.size == job.requested_size
        and r.profile == profile
        and (r.owner == job.owner or r.owner == job.repository)
    ]

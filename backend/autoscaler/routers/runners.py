from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.database import get_db
from autoscaler.models import Runner
from autoscaler.routers.deps import get_context
from autoscaler.schemas import KilledRunner, KillResponse, ProvisionFailure, RunnerRead
from autoscaler.services.context import FleetContext
from autoscaler.services.ledger import get_runner as ledger_get_runner
from autoscaler.services.reconciler import kill_non_processing_runners
from autoscaler.services.task_executor import on_provision_failed, on_runner_provisioned

router = APIRouter(prefix="/api/runners", tags=["runners"])


@router.get("", response_model=list[RunnerRead])
async def list_runners(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Runner).order_by(Runner.id.desc()).offset(offset).limit(limit))
    return result.scalars().all()


@router.get("/{runner_id}", response_model=RunnerRead)
async def get_runner(runner_id: int, db: AsyncSession = Depends(get_db)):
    runner = await ledger_get_runner(db, runner_id)
    if not runner:
        raise HTTPException(status_code=404, detail="Runner not found")
    return runner


@router.post("/kill-non-processing", response_model=KillResponse)
async def kill_non_processing(ctx: FleetContext = Depends(get_context)):
    """Queue deletion of every runner that isn't running a job or already being deleted."""
    killed_ids = await kill_non_processing_runners(ctx)
    killed = []
    if killed_ids:
        async with ctx.session_factory() as db:
            result = await db.execute(select(Runner.id, Runner.hostname).where(Runner.id.in_(killed_ids)))
            killed = [KilledRunner(id=row.id, hostname=row.hostname) for row in result.all()]
    return KillResponse(message=f"Queued {len(killed_ids)} runners for deletion", killed_runners=killed)


@router.post("/{hostname}/provisioned")
async def runner_provisioned(hostname: str, ctx: FleetContext = Depends(get_context)):
    """Called by a runner once it registered with GitHub."""
    if not await on_runner_provisioned(ctx, hostname):
        raise HTTPException(status_code=404, detail="Runner not found")
    return {"status": "ok"}


@router.post("/{hostname}/failed")
async def runner_provision_failed(
    hostname: str,
    failure: ProvisionFailure | None = None,
    ctx: FleetContext = Depends(get_context),
):
    """Called by a runner whose bootstrap failed."""
    if not await on_provision_failed(ctx, hostname, failure.reason if failure else ""):
        raise HTTPException(status_code=404, detail="Runner not found")
    return {"status": "ok"}

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from autoscaler.database import get_db
from autoscaler.models import Runner

router = APIRouter(prefix="/api/provision", tags=["provision"])


@router.get("/{provision_id}", response_class=PlainTextResponse)
async def get_provision_script(provision_id: str, db: AsyncSession = Depends(get_db)):
    """Bootstrap script for machines that pull their configuration."""
    result = await db.execute(
        select(Runner)
        .where(func.lower(Runner.provision_id) == provision_id.lower())
        .order_by(Runner.id.desc())
        .limit(1)
    )
    runner = result.scalar_one_or_none()
    if runner is None or runner.provision_payload is None:
        raise HTTPException(status_code=404, detail="Unknown provision id")
    return runner.provision_payload

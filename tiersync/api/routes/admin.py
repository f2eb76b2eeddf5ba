"""
TierSync - Admin Routes
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.api.deps import get_reconciliation_job
from tiersync.core.database import get_db
from tiersync.schemas.schemas import CronStatusResponse
from tiersync.services.reconciliation import collect_status_counts

router = APIRouter()


@router.get(
    "/cron-status",
    response_model=CronStatusResponse,
    summary="Reconciliation job status",
    description="Whether the reconciliation job is running, with live counts for monitoring.",
)
async def cron_status(db: AsyncSession = Depends(get_db), job=Depends(get_reconciliation_job)):
    counts = await collect_status_counts(db)
    return CronStatusResponse(
        running=job.is_running() if job else False,
        last_run_at=job.last_run_at if job else None,
        last_result=job.last_result if job else None,
        **counts,
    )

"""Manual ingestion triggers."""

from typing import List

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from dealflow.core.exceptions import UnknownSourceError
from dealflow.dependencies import get_scheduler
from dealflow.ingestion.scheduler import IngestionScheduler
from dealflow.ingestion.sources import get_enabled_sources
from dealflow.schemas import TriggerResponse

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("", response_model=List[TriggerResponse], status_code=status.HTTP_202_ACCEPTED)
async def trigger_all(scheduler: IngestionScheduler = Depends(get_scheduler)):
    """Enqueue one manual run for every enabled source."""
    return [
        TriggerResponse(source=source.key, job_id=await scheduler.trigger_ingestion(source.key))
        for source in get_enabled_sources()
    ]


@router.post("/{source_key}", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_source(source_key: str, scheduler: IngestionScheduler = Depends(get_scheduler)):
    try:
        job_id = await scheduler.trigger_ingestion(source_key)
    except UnknownSourceError as e:
        logger.warning("manual_trigger_rejected", source=source_key, reason=e.message)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return TriggerResponse(source=source_key, job_id=job_id)

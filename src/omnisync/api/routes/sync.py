"""Sync trigger and status routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlmodel import Session, select

from omnisync.api.deps import get_user_id
from omnisync.models.connection import PROVIDERS
from omnisync.models.sync import SyncJob
from omnisync.services import Services, get_services

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    providers: Optional[List[str]] = None  # None syncs every connected provider


class ProviderSyncState(BaseModel):
    status: str
    syncing: bool
    last_sync_at: Optional[datetime]
    last_error: Optional[str]


class SyncStatusResponse(BaseModel):
    providers: dict
    queue_length: int
    next_auto_sync_at: datetime


class SyncJobResponse(BaseModel):
    id: int
    provider: str
    trigger: str
    status: str
    items_fetched: int
    items_inserted: int
    items_updated: int
    items_deleted: int
    started_at: datetime
    completed_at: Optional[datetime]
    error_message: Optional[str]
    error_retryable: bool


@router.post("/trigger")
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """
    Queue a manual sync. Returns immediately; the queue drains in the
    background. Identical requests within the dedup window are coalesced.
    """
    orchestrator = services.orchestrator_for(user_id)
    providers = [p for p in (request.providers or PROVIDERS) if p in PROVIDERS]
    queued = orchestrator.request_sync(providers, "manual")
    if queued is None:
        return {"queued": False, "providers": []}
    background_tasks.add_task(orchestrator.process_queue)
    return {"queued": True, "providers": sorted(queued.providers)}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Per-provider syncing flags, queue length and the next auto-sync tick."""
    orchestrator = services.orchestrator_for(user_id)
    session = orchestrator.session
    return SyncStatusResponse(
        providers={
            p: ProviderSyncState(
                status=state.status,
                syncing=state.syncing,
                last_sync_at=state.last_sync_at,
                last_error=state.last_error,
            )
            for p, state in session.providers.items()
        },
        queue_length=len(session.queue),
        next_auto_sync_at=orchestrator.next_auto_sync_at(),
    )


@router.get("/jobs", response_model=List[SyncJobResponse])
def list_jobs(
    limit: int = 20,
    provider: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Recent sync jobs, newest first."""
    stmt = select(SyncJob).where(SyncJob.user_id == user_id)
    if provider:
        stmt = stmt.where(SyncJob.provider == provider)
    with Session(services.engine) as session:
        jobs = session.exec(stmt.order_by(SyncJob.id.desc()).limit(limit)).all()
    return [
        SyncJobResponse(**job.model_dump(include=set(SyncJobResponse.model_fields)))
        for job in jobs
    ]

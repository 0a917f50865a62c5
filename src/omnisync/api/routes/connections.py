"""Provider connection routes: list, connect (OAuth completion), disconnect."""
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from omnisync.api.deps import get_user_id
from omnisync.models.connection import PROVIDERS
from omnisync.services import Services, get_services

router = APIRouter()


class ConnectionInfo(BaseModel):
    status: str
    last_sync_at: Optional[datetime]
    error_reason: Optional[str] = None


class ConnectRequest(BaseModel):
    connection_id: str
    idempotency_key: Optional[str] = None  # e.g. OAuth webhook delivery id


def _check_provider(provider: str) -> None:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")


@router.get("/", response_model=Dict[str, ConnectionInfo])
def list_connections(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Status of every provider the user has connected."""
    return {
        provider: ConnectionInfo(
            status=info["status"],
            last_sync_at=info["last_sync_at"],
            error_reason=info["metadata"].get("error_reason"),
        )
        for provider, info in services.sync.list_connections(user_id).items()
    }


@router.post("/{provider}")
async def connect(
    provider: str,
    request: ConnectRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """
    Record a completed OAuth connection and run the first sync.

    Duplicate deliveries with the same idempotency key return the cached
    outcome without calling the provider again.
    """
    _check_provider(provider)
    result = await services.orchestrator_for(user_id).on_connected(
        provider, request.connection_id, request.idempotency_key
    )
    return {
        "outcome": result.outcomes[provider].to_dict(),
        "briefing_regenerated": result.briefing_regenerated,
    }


@router.delete("/{provider}")
async def disconnect(
    provider: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Remove the connection and everything synced from it."""
    _check_provider(provider)
    counts = await services.orchestrator_for(user_id).on_disconnected(provider)
    return {"disconnected": provider, **counts}

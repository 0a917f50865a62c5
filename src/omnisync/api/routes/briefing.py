"""Daily briefing routes."""
import json
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from omnisync.api.deps import get_user_id
from omnisync.services import Services, get_services
from omnisync.timeutil import utcnow

router = APIRouter()


class BriefingResponse(BaseModel):
    briefing_date: date
    summary: str
    content: dict
    dlp_verified: bool
    generated_at: datetime


def _response(briefing) -> BriefingResponse:
    return BriefingResponse(
        briefing_date=briefing.briefing_date,
        summary=briefing.summary,
        content=json.loads(briefing.content_json),
        dlp_verified=briefing.dlp_verified,
        generated_at=briefing.generated_at,
    )


@router.get("/today", response_model=BriefingResponse)
def today(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Today's stored briefing (UTC day)."""
    briefing = services.briefings.get(user_id, utcnow().date())
    if not briefing:
        raise HTTPException(status_code=404, detail="No briefing for today")
    return _response(briefing)


@router.post("/generate", response_model=BriefingResponse)
async def generate(
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Regenerate today's briefing now."""
    return _response(await services.briefings.generate(user_id, trigger="manual"))

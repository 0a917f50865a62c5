"""Calendar query routes."""
import json
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from omnisync.analysis.conflicts import Interval, conflict_details
from omnisync.api.deps import get_user_id
from omnisync.db.store import RecordStore
from omnisync.services import Services, get_services
from omnisync.timeutil import start_of_day, utcnow

router = APIRouter()


class EventResponse(BaseModel):
    event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    location: Optional[str]
    has_conflict: bool
    conflict_with: List[str]


class ConflictResponse(BaseModel):
    first: str
    second: str
    overlap_start: datetime
    overlap_end: datetime
    overlap_minutes: int


def _window(start: Optional[datetime], end: Optional[datetime], days: int):
    start = start or start_of_day(utcnow())
    return start, end or start + timedelta(days=days)


@router.get("/events", response_model=List[EventResponse])
def list_events(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Stored events in [start, end] (default: today and the next 7 days)."""
    start, end = _window(start, end, 7)
    events = RecordStore(services.engine).list_events(user_id, start, end)
    return [
        EventResponse(
            event_id=e.event_id,
            title=e.title,
            start_time=e.start_time,
            end_time=e.end_time,
            is_all_day=e.is_all_day,
            location=e.location,
            has_conflict=e.has_conflict,
            conflict_with=json.loads(e.conflict_with_json or "[]"),
        )
        for e in events
    ]


@router.get("/conflicts", response_model=List[ConflictResponse])
def list_conflicts(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
):
    """Overlapping event pairs with their shared window."""
    start, end = _window(start, end, 7)
    events = RecordStore(services.engine).list_events(user_id, start, end)
    details = conflict_details(
        Interval(e.event_id, e.start_time, e.end_time) for e in events if e.has_conflict
    )
    return [
        ConflictResponse(
            first=d.first,
            second=d.second,
            overlap_start=d.overlap_start,
            overlap_end=d.overlap_end,
            overlap_minutes=d.overlap_minutes,
        )
        for d in details
    ]

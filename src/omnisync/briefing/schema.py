"""
Typed briefing payload.

The LLM is asked for JSON; parse_briefing() validates it at the boundary so
the rest of the code never handles an untyped dict. Validation failures
raise BriefingParseError, distinct from transport errors.
"""
import json
import re
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from omnisync.errors import BriefingParseError

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class Priority(BaseModel):
    title: str
    description: str = ""
    source: Optional[str] = None


class ScheduleConflict(BaseModel):
    events: List[str] = Field(default_factory=list)
    note: str = ""


class KeyMeeting(BaseModel):
    title: str
    time: Optional[str] = None
    note: Optional[str] = None


class Schedule(BaseModel):
    conflicts: List[ScheduleConflict] = Field(default_factory=list)
    key_meetings: List[KeyMeeting] = Field(default_factory=list)


class ActionItem(BaseModel):
    task: str
    due: Optional[str] = None
    source: Optional[str] = None


class Alert(BaseModel):
    type: str
    message: str
    source: Optional[str] = None


class BriefingContent(BaseModel):
    summary: str
    priorities: List[Priority] = Field(default_factory=list)
    schedule: Schedule = Field(default_factory=Schedule)
    actions: List[ActionItem] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)


def parse_briefing(text: str) -> BriefingContent:
    """
    Parse an LLM response into BriefingContent.

    Markdown code fences around the JSON are tolerated.

    Raises:
        BriefingParseError: not JSON, or JSON that does not match the schema.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise BriefingParseError(f"Briefing response is not JSON: {exc}") from exc
    try:
        return BriefingContent.model_validate(payload)
    except ValidationError as exc:
        raise BriefingParseError(f"Briefing response does not match schema: {exc}") from exc

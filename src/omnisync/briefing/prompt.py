"""
Daily briefing prompt builder.

Renders the user's recent mail, today's schedule (conflicts flagged with the
overlap window) and recently modified documents into a plain-text prompt.
All record text is already DLP-redacted when it reaches this module.
"""
from datetime import date
from typing import List, Sequence

from omnisync.analysis.conflicts import ConflictDetail
from omnisync.models.records import CalendarEvent, DriveDocument, Email

SYSTEM_PROMPT = (
    "You are an executive assistant writing a concise daily strategic briefing. "
    "Tokens such as [PERSON_001] or [EMAIL_002] stand for redacted values; keep "
    "them verbatim. Respond with JSON only."
)

RESPONSE_SCHEMA = """{
  "summary": "One-paragraph executive summary",
  "priorities": [{"title": "", "description": "", "source": ""}],
  "schedule": {
    "conflicts": [{"events": ["", ""], "note": ""}],
    "key_meetings": [{"title": "", "time": "", "note": ""}]
  },
  "actions": [{"task": "", "due": "", "source": ""}],
  "alerts": [{"type": "", "message": "", "source": ""}]
}"""


def _fmt(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "unknown"


def build_briefing_prompt(
    briefing_date: date,
    emails: Sequence[Email],
    events: Sequence[CalendarEvent],
    documents: Sequence[DriveDocument],
    conflicts: Sequence[ConflictDetail] = (),
) -> str:
    """
    Build the user-turn prompt for the daily briefing.

    Args:
        briefing_date: UTC date the briefing is for.
        emails: Mail received in the last 24 hours, newest first.
        events: Today's events in start order.
        documents: Documents modified in the last 48 hours.
        conflicts: Overlapping event pairs among ``events``.

    Returns:
        Prompt text to send as the user message.
    """
    lines: List[str] = [f"Today's date (UTC): {briefing_date.isoformat()}", ""]

    lines.append("## Recent communications (last 24 hours)")
    if emails:
        for e in emails:
            lines.append(f"- From: {e.sender} | Subject: {e.subject} | Time: {_fmt(e.received_at)}")
    else:
        lines.append("(none)")
    lines.append("")

    lines.append("## Today's schedule")
    if events:
        for ev in events:
            when = "all day" if ev.is_all_day else f"{_fmt(ev.start_time)} -> {_fmt(ev.end_time)}"
            flag = " [CONFLICT]" if ev.has_conflict else ""
            where = f" @ {ev.location}" if ev.location else ""
            lines.append(f"- {when}: {ev.title}{flag}{where}")
    else:
        lines.append("(none)")
    lines.append("")

    if conflicts:
        titles = {ev.event_id: ev.title for ev in events}
        lines.append("## Scheduling conflicts")
        for c in conflicts:
            lines.append(
                f"- {titles.get(c.first, c.first)} overlaps {titles.get(c.second, c.second)} "
                f"for {c.overlap_minutes} min starting {_fmt(c.overlap_start)}"
            )
        lines.append("")

    lines.append("## Recently modified documents (last 48 hours)")
    if documents:
        for d in documents:
            folder = f" folder:{d.folder_path}" if d.folder_path else ""
            lines.append(f"- {d.name} (modified: {_fmt(d.modified_at)}){folder}")
    else:
        lines.append("(none)")
    lines.append("")

    lines.append("## Instructions")
    lines.append("1) Top 3 priorities")
    lines.append("2) Schedule overview: conflicts and key meetings")
    lines.append("3) Action items extracted from the emails")
    lines.append("4) Alerts for urgent matters")
    lines.append("")
    lines.append("Return ONLY valid JSON with this schema:")
    lines.append(RESPONSE_SCHEMA)

    return "\n".join(lines)

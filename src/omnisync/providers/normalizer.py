"""
Provider response normalizer.

Converts raw Gmail, Google Calendar and Google Drive JSON objects into clean
field dicts that map directly onto the record models. No DB access here;
the sync state machine handles persistence.

Google uses two date encodings for calendar events:

  timed events:   {"dateTime": "2025-03-01T10:00:00+01:00"}
  all-day events: {"date": "2025-03-01"}   (end date is EXCLUSIVE)

All-day events are normalized so the stored end is 23:59:59.999 of the last
included day.
"""
import html
import json
import re
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from omnisync.analysis.conflicts import normalize_all_day
from omnisync.timeutil import parse_iso, to_naive_utc

_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<\s*(br|/p|/div|/li)\s*/?>", re.IGNORECASE)
_SPACE_RE = re.compile(r"[ \t]+")


def decode_html_entities(text: str) -> str:
    return html.unescape(text or "")


def strip_html(text: str) -> str:
    """Drop tags, keep line breaks, decode entities and squeeze spaces."""
    if not text:
        return ""
    s = _BREAK_RE.sub("\n", text)
    s = _TAG_RE.sub("", s)
    s = html.unescape(s)
    lines = [_SPACE_RE.sub(" ", line).strip() for line in s.splitlines()]
    return "\n".join(line for line in lines if line)


# ── Mail ──────────────────────────────────────────────────────────────────────


def _received_at(message: Dict[str, Any], date_header: str) -> datetime:
    if date_header:
        try:
            return to_naive_utc(parsedate_to_datetime(date_header))
        except (TypeError, ValueError):
            pass  # fall back to internalDate
    millis = int(message.get("internalDate") or 0)
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).replace(tzinfo=None)


def parse_gmail_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Gmail messages.get(format=full) object."""
    payload = message.get("payload") or {}
    headers = {
        (h.get("name") or "").lower(): h.get("value") or ""
        for h in payload.get("headers") or []
    }
    labels: List[str] = message.get("labelIds") or []
    parts = payload.get("parts") or []

    return {
        "message_id": message["id"],
        "thread_id": message.get("threadId"),
        "sender": decode_html_entities(headers.get("from", "")),
        "subject": decode_html_entities(headers.get("subject", "")) or "(No subject)",
        "snippet": decode_html_entities(message.get("snippet") or ""),
        "received_at": _received_at(message, headers.get("date", "")),
        "is_read": "UNREAD" not in labels,
        "has_attachments": any(p.get("filename") for p in parts),
        "labels_json": json.dumps(labels),
    }


# ── Calendar ──────────────────────────────────────────────────────────────────


def is_cancelled_event(event: Dict[str, Any]) -> bool:
    return event.get("status") == "cancelled"


def parse_calendar_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Google Calendar event resource."""
    start = event.get("start") or {}
    end = event.get("end") or {}
    is_all_day = not end.get("dateTime")

    if is_all_day:
        start_time, end_time = normalize_all_day(
            date.fromisoformat(start["date"]), date.fromisoformat(end["date"])
        )
    else:
        start_time = parse_iso(start.get("dateTime"))
        end_time = parse_iso(end.get("dateTime"))

    description = event.get("description")
    return {
        "event_id": event["id"],
        "title": event.get("summary") or "(No title)",
        "description": strip_html(description) if description else None,
        "start_time": start_time,
        "end_time": end_time,
        "is_all_day": is_all_day,
        "location": event.get("location"),
        "attendees_json": json.dumps(event.get("attendees") or []),
        "organizer": (event.get("organizer") or {}).get("email"),
        "status": event.get("status") or "confirmed",
    }


# ── Storage ───────────────────────────────────────────────────────────────────


def is_removed_file(file: Dict[str, Any]) -> bool:
    return bool(file.get("trashed")) or bool(file.get("removed"))


def parse_drive_file(file: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Google Drive files.list entry."""
    parents: Optional[List[str]] = file.get("parents")
    return {
        "document_id": file["id"],
        "name": file.get("name") or "(Untitled)",
        "mime_type": file.get("mimeType") or "application/octet-stream",
        "folder_path": parents[0] if parents else None,
        "modified_at": parse_iso(file.get("modifiedTime")),
        "web_view_link": file.get("webViewLink"),
        "md5_checksum": file.get("md5Checksum"),
        "content_preview": None,
    }

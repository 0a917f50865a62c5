"""
RecordStore: user-scoped persistence of synced provider records.

All writes resolve conflicts by upsert on (user_id, native id). The
persist step runs "count before / delete removals / upsert / count after"
inside one session so insert counts can be derived without a change feed:

    inserted = after - (before - deleted)

Updated rows are counted explicitly: an existing row counts as updated
only when at least one incoming field differs from the stored value.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from sqlalchemy import func
from sqlmodel import Session, SQLModel, select

from omnisync.models.connection import CALENDAR, MAIL, STORAGE
from omnisync.models.records import CalendarEvent, DriveDocument, Email
from omnisync.timeutil import utcnow

logger = logging.getLogger(__name__)

# provider -> (model, natural key column)
RECORD_MODELS: Dict[str, Tuple[Type[SQLModel], str]] = {
    MAIL: (Email, "message_id"),
    CALENDAR: (CalendarEvent, "event_id"),
    STORAGE: (DriveDocument, "document_id"),
}


@dataclass
class PersistResult:
    before: int
    after: int
    inserted: int
    updated: int
    deleted: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "before": self.before,
            "after": self.after,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
        }


class RecordStore:
    """Count / upsert / delete / select over the synced record tables."""

    def __init__(self, engine):
        self.engine = engine

    def count(self, user_id: str, provider: str) -> int:
        model, _ = RECORD_MODELS[provider]
        with Session(self.engine) as s:
            return self._count(s, model, user_id)

    def apply_changes(
        self,
        user_id: str,
        provider: str,
        records: List[Dict[str, Any]],
        removed_ids: Iterable[str] = (),
    ) -> PersistResult:
        """
        Delete provider-reported removals, then upsert ``records``.

        Args:
            user_id: Owner of the rows.
            provider: "mail", "calendar" or "storage".
            records: Column dicts, each containing the natural key.
            removed_ids: Native ids the provider reported as cancelled/removed.

        Returns:
            PersistResult with before/after counts and change counts.
        """
        model, key = RECORD_MODELS[provider]
        removed = sorted(set(removed_ids))

        with Session(self.engine) as s:
            before = self._count(s, model, user_id)

            deleted = 0
            if removed:
                rows = s.exec(
                    select(model).where(
                        model.user_id == user_id, getattr(model, key).in_(removed)
                    )
                ).all()
                for row in rows:
                    s.delete(row)
                deleted = len(rows)
                s.flush()

            updated = 0
            now = utcnow()
            for fields in records:
                existing = s.exec(
                    select(model).where(
                        model.user_id == user_id,
                        getattr(model, key) == fields[key],
                    )
                ).first()
                if existing:
                    changed = False
                    for k, v in fields.items():
                        if getattr(existing, k) != v:
                            setattr(existing, k, v)
                            changed = True
                    if changed:
                        existing.updated_at = now
                        s.add(existing)
                        updated += 1
                else:
                    s.add(model(user_id=user_id, **fields))
            s.flush()

            after = self._count(s, model, user_id)
            s.commit()

        inserted = after - (before - deleted)
        return PersistResult(
            before=before,
            after=after,
            inserted=inserted,
            updated=updated,
            deleted=deleted,
        )

    def delete_all(self, user_id: str, provider: str) -> int:
        """Delete every record of one provider for a user (disconnect)."""
        model, _ = RECORD_MODELS[provider]
        with Session(self.engine) as s:
            rows = s.exec(select(model).where(model.user_id == user_id)).all()
            for row in rows:
                s.delete(row)
            s.commit()
        return len(rows)

    def delete_older_than(self, provider: str, column: str, cutoff: datetime) -> int:
        """Retention sweep across all users."""
        model, _ = RECORD_MODELS[provider]
        with Session(self.engine) as s:
            rows = s.exec(select(model).where(getattr(model, column) < cutoff)).all()
            for row in rows:
                s.delete(row)
            s.commit()
        return len(rows)

    def list_events(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        """Stored, non-cancelled events overlapping [start, end]."""
        with Session(self.engine) as s:
            stmt = select(CalendarEvent).where(
                CalendarEvent.user_id == user_id,
                CalendarEvent.status != "cancelled",
            )
            if start is not None:
                stmt = stmt.where(CalendarEvent.end_time >= start)
            if end is not None:
                stmt = stmt.where(CalendarEvent.start_time <= end)
            return list(s.exec(stmt.order_by(CalendarEvent.start_time)).all())

    def save_conflicts(self, user_id: str, conflicts: Dict[str, List[str]]) -> int:
        """
        Write conflict flags for every stored event of the user.

        Events absent from ``conflicts`` are cleared.

        Returns:
            Number of events flagged as conflicting.
        """
        flagged = 0
        with Session(self.engine) as s:
            events = s.exec(
                select(CalendarEvent).where(CalendarEvent.user_id == user_id)
            ).all()
            for event in events:
                others = sorted(conflicts.get(event.event_id, []))
                has_conflict = bool(others)
                payload = json.dumps(others)
                if event.has_conflict != has_conflict or event.conflict_with_json != payload:
                    event.has_conflict = has_conflict
                    event.conflict_with_json = payload
                    s.add(event)
                if has_conflict:
                    flagged += 1
            s.commit()
        logger.info("User %s: %d conflicting events", user_id, flagged)
        return flagged

    @staticmethod
    def _count(s: Session, model: Type[SQLModel], user_id: str) -> int:
        return s.exec(
            select(func.count()).select_from(model).where(model.user_id == user_id)
        ).one()

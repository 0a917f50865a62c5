"""
BriefingGenerator: builds, redacts, generates and stores the daily briefing.

Flow for generate(user_id):
  1. Load last-24h mail, today's events and last-48h documents
  2. Build the prompt (conflicts annotated)
  3. DLP gate over the prompt (best-effort policy by default: a stale-free
     briefing matters more than blocking on the DLP service)
  4. LLM call, response validated into BriefingContent
  5. Upsert on (user_id, briefing_date)
"""
import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlmodel import Session, select

from omnisync.analysis.conflicts import Interval, conflict_details
from omnisync.briefing.prompt import SYSTEM_PROMPT, build_briefing_prompt
from omnisync.briefing.schema import BriefingContent, parse_briefing
from omnisync.config import Settings, get_settings
from omnisync.dlp.gate import DlpGate, DlpPolicy
from omnisync.models import connection as conn_status
from omnisync.models.briefing import Briefing
from omnisync.models.connection import Connection
from omnisync.models.records import CalendarEvent, DriveDocument, Email
from omnisync.timeutil import start_of_day, utcnow

logger = logging.getLogger(__name__)

MAX_EMAILS = 20
MAX_EVENTS = 50
MAX_DOCUMENTS = 20


class BriefingGenerator:
    def __init__(
        self,
        engine,
        llm,
        gate: DlpGate,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        dlp_policy: Optional[DlpPolicy] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine.
            llm: Object with ``async generate(prompt, system_prompt=...) -> str``
                 (ClaudeClient, or AsyncMock in tests).
            gate: DLP gate applied to the prompt.
            clock: Returns the current naive-UTC time.
            dlp_policy: Defaults to settings.dlp_briefing_policy.
        """
        self.engine = engine
        self.llm = llm
        self.gate = gate
        self.settings = settings or get_settings()
        self.clock = clock
        self.dlp_policy = dlp_policy or DlpPolicy(self.settings.dlp_briefing_policy)

    async def generate(self, user_id: str, trigger: str = "manual") -> Briefing:
        """
        Generate and store today's briefing for a user.

        Raises:
            DlpUnavailableError: DLP down under a mandatory policy.
            BriefingParseError: LLM answered with an invalid payload.
        """
        now = self.clock()
        today = now.date()
        emails, events, documents = self._load_context(user_id, now)
        details = conflict_details(
            Interval(e.event_id, e.start_time, e.end_time) for e in events if e.has_conflict
        )
        prompt = build_briefing_prompt(today, emails, events, documents, details)

        scanned = await self.gate.redact_text(
            user_id, prompt, self.dlp_policy, ref=f"briefing:{today.isoformat()}:prompt"
        )
        text = await self.llm.generate(scanned.redacted, system_prompt=SYSTEM_PROMPT)
        content = parse_briefing(text)

        briefing = self._upsert(user_id, today, content, scanned.verified, now)
        logger.info(
            "Briefing for %s on %s generated (%s, dlp_verified=%s)",
            user_id, today, trigger, scanned.verified,
        )
        return briefing

    def list_briefing_user_ids(self) -> List[str]:
        """Users with at least one connected provider."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(Connection.user_id).where(Connection.status == conn_status.CONNECTED)
            ).all()
        return sorted(set(rows))

    def get(self, user_id: str, briefing_date: date) -> Optional[Briefing]:
        with Session(self.engine) as s:
            return s.exec(
                select(Briefing).where(
                    Briefing.user_id == user_id, Briefing.briefing_date == briefing_date
                )
            ).first()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _load_context(self, user_id: str, now: datetime):
        day_start = start_of_day(now)
        day_end = day_start + timedelta(days=1)
        with Session(self.engine) as s:
            emails = s.exec(
                select(Email)
                .where(Email.user_id == user_id, Email.received_at >= now - timedelta(hours=24))
                .order_by(Email.received_at.desc())
                .limit(MAX_EMAILS)
            ).all()
            events = s.exec(
                select(CalendarEvent)
                .where(
                    CalendarEvent.user_id == user_id,
                    CalendarEvent.start_time >= day_start,
                    CalendarEvent.start_time < day_end,
                )
                .order_by(CalendarEvent.start_time)
                .limit(MAX_EVENTS)
            ).all()
            documents = s.exec(
                select(DriveDocument)
                .where(
                    DriveDocument.user_id == user_id,
                    DriveDocument.modified_at >= now - timedelta(hours=48),
                )
                .order_by(DriveDocument.modified_at.desc())
                .limit(MAX_DOCUMENTS)
            ).all()
        return list(emails), list(events), list(documents)

    def _upsert(
        self,
        user_id: str,
        briefing_date: date,
        content: BriefingContent,
        verified: bool,
        now: datetime,
    ) -> Briefing:
        with Session(self.engine) as s:
            briefing = s.exec(
                select(Briefing).where(
                    Briefing.user_id == user_id, Briefing.briefing_date == briefing_date
                )
            ).first()
            if briefing is None:
                briefing = Briefing(user_id=user_id, briefing_date=briefing_date, content_json="{}")
            briefing.summary = content.summary
            briefing.content_json = content.model_dump_json()
            briefing.dlp_verified = verified
            briefing.generated_at = now
            s.add(briefing)
            s.commit()
            s.refresh(briefing)
            return briefing

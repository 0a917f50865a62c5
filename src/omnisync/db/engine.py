"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from omnisync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        # Import all models so metadata is populated before create_all
        from omnisync.models.briefing import Briefing  # noqa
        from omnisync.models.connection import Connection  # noqa
        from omnisync.models.records import CalendarEvent, DriveDocument, Email  # noqa
        from omnisync.models.sync import SyncJob  # noqa
        from omnisync.models.vault import PiiVaultEntry  # noqa
        SQLModel.metadata.create_all(_engine)
        from omnisync.db.migrations import run_migrations
        run_migrations(_engine)
    return _engine

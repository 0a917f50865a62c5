"""
Builds the collaborator graph shared by the API, the scheduler and the CLI.

    NangoClient ──┐
    DlpGate ──────┼─> SyncJobRunner ─> SyncService ─> SyncOrchestrator (per user)
    Embeddings ───┘                        │
    ClaudeClient ─> BriefingGenerator ─────┘
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from omnisync.ai.claude_client import ClaudeClient
from omnisync.briefing.generator import BriefingGenerator
from omnisync.config import Settings, get_settings
from omnisync.dlp.gate import DlpGate
from omnisync.dlp.scanner import NightfallScanner
from omnisync.dlp.vault import PiiVault
from omnisync.orchestrator.session import SessionContext, SyncOrchestrator
from omnisync.providers.client import NangoClient
from omnisync.sync.embeddings import EmbeddingQueue, LoggingEmbeddingQueue
from omnisync.sync.service import SyncService
from omnisync.sync.state_machine import SyncJobRunner

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: object
    settings: Settings
    gate: DlpGate
    runner: SyncJobRunner
    sync: SyncService
    briefings: BriefingGenerator
    orchestrators: Dict[str, SyncOrchestrator] = field(default_factory=dict)

    def orchestrator_for(self, user_id: str) -> SyncOrchestrator:
        """One orchestrator (and session context) per user, created lazily."""
        orchestrator = self.orchestrators.get(user_id)
        if orchestrator is None:
            orchestrator = SyncOrchestrator(
                SessionContext(user_id=user_id),
                self.sync,
                briefings=self.briefings,
                settings=self.settings,
            )
            orchestrator.refresh_connections()
            self.orchestrators[user_id] = orchestrator
        return orchestrator


def build_services(
    engine,
    settings: Optional[Settings] = None,
    embeddings: Optional[EmbeddingQueue] = None,
) -> Services:
    settings = settings or get_settings()
    vault = PiiVault.from_settings(engine, settings)
    scanner = NightfallScanner(
        api_key=settings.nightfall_api_key, scan_url=settings.nightfall_scan_url
    )
    gate = DlpGate(scanner, vault)
    runner = SyncJobRunner(
        engine,
        NangoClient(secret_key=settings.nango_secret_key, base_url=settings.nango_base_url),
        gate,
        embeddings or LoggingEmbeddingQueue(),
        settings=settings,
    )
    claude = ClaudeClient.from_settings(settings)
    briefings = BriefingGenerator(engine, claude, gate, settings=settings)
    sync = SyncService(runner, briefings=briefings, settings=settings)
    logger.info("Services ready (dlp sync policy=%s)", settings.dlp_sync_policy)
    return Services(
        engine=engine,
        settings=settings,
        gate=gate,
        runner=runner,
        sync=sync,
        briefings=briefings,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Module-level Services built on the default engine."""
    global _services
    if _services is None:
        from omnisync.db.engine import get_engine
        _services = build_services(get_engine())
    return _services

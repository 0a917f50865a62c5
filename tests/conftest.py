"""Shared test fixtures."""
import base64

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from omnisync.models.briefing import Briefing  # noqa: F401
from omnisync.models.connection import Connection  # noqa: F401
from omnisync.models.records import CalendarEvent, DriveDocument, Email  # noqa: F401
from omnisync.models.sync import SyncJob  # noqa: F401
from omnisync.models.vault import PiiVaultEntry  # noqa: F401

from omnisync.config import Settings
from omnisync.dlp.gate import DlpGate
from omnisync.dlp.vault import PiiVault
from omnisync.sync.state_machine import SyncJobRunner

from fakes import NOW, VAULT_KEY, FakeProviderClient, FakeScanner, InMemoryEmbeddingQueue


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(
        database_url="sqlite://",
        nango_secret_key="nango-secret",
        nightfall_api_key="nightfall-key",
        pii_vault_key_base64=base64.b64encode(VAULT_KEY).decode(),
        anthropic_api_key="test-key",
        default_user_id=None,
    )


@pytest.fixture(name="scanner")
def scanner_fixture() -> FakeScanner:
    return FakeScanner()


@pytest.fixture(name="vault")
def vault_fixture(engine) -> PiiVault:
    return PiiVault(engine, VAULT_KEY)


@pytest.fixture(name="gate")
def gate_fixture(scanner, vault) -> DlpGate:
    return DlpGate(scanner, vault)


@pytest.fixture(name="embeddings")
def embeddings_fixture() -> InMemoryEmbeddingQueue:
    return InMemoryEmbeddingQueue()


@pytest.fixture(name="provider_client")
def provider_client_fixture() -> FakeProviderClient:
    return FakeProviderClient()


@pytest.fixture(name="runner")
def runner_fixture(engine, provider_client, gate, embeddings, settings) -> SyncJobRunner:
    return SyncJobRunner(
        engine, provider_client, gate, embeddings, settings=settings, clock=lambda: NOW
    )

"""Wire the sync engine together from Settings.

One ``SyncEngine`` lives on ``app.state`` for the process lifetime; route
handlers reach it through ``dependencies.get_engine``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from nutrisync.config import Settings
from nutrisync.wearables.adapters import GoogleFitAdapter, HealthStoreAdapter, UploadedFileAdapter
from nutrisync.wearables.config_loader import SyncConfig, get_sync_config
from nutrisync.wearables.credentials import CredentialStore
from nutrisync.wearables.sync.orchestrator import SyncOrchestrator
from nutrisync.wearables.sync.persistence import SyncRepository, build_repository
from nutrisync.wearables.sync.scheduler import BackgroundSyncScheduler
from nutrisync.wearables.sync.triggers import FunctionInvoker, TriggerDispatcher
from nutrisync.wearables.tokens import TokenBrokerClient, TokenLifecycleManager

logger = logging.getLogger("nutrisync.engine")


@dataclass
class SyncEngine:
    """Every long-lived sync component, built once per process."""

    settings: Settings
    config: SyncConfig
    repository: SyncRepository
    credentials: CredentialStore
    tokens: TokenLifecycleManager
    google_fit: GoogleFitAdapter
    health_store: HealthStoreAdapter
    uploaded_file: UploadedFileAdapter
    triggers: TriggerDispatcher
    orchestrator: SyncOrchestrator
    scheduler: BackgroundSyncScheduler
    http_client: httpx.AsyncClient

    async def close(self) -> None:
        """Stop background loops, flush pending triggers, close HTTP."""
        await self.scheduler.stop()
        await self.triggers.drain()
        await self.http_client.aclose()
        logger.info("Sync engine closed")


def build_sync_engine(
    settings: Settings,
    repository: SyncRepository | None = None,
    http_client: httpx.AsyncClient | None = None,
    config: SyncConfig | None = None,
) -> SyncEngine:
    """Construct the engine.

    Args:
        settings:    Application settings.
        repository:  Override the repository (default from persistence_backend).
        http_client: Shared httpx client (one is created when omitted).
        config:      Sync config (default: the global sync_config.yaml).
    """
    cfg = config or get_sync_config()
    repo = repository or build_repository(settings.persistence_backend)
    client = http_client or httpx.AsyncClient()

    credentials = CredentialStore(backing=repo)
    google_fit = GoogleFitAdapter(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        http_client=client,
    )
    broker = TokenBrokerClient(
        settings.token_broker_url,
        settings.supabase_service_role_key,
        timeout_s=cfg.tokens.refresh_timeout_seconds,
        http_client=client,
    )
    tokens = TokenLifecycleManager(
        credentials,
        token_clients={google_fit.SOURCE.value: google_fit},
        broker=broker,
        config=cfg.tokens,
    )
    triggers = TriggerDispatcher(
        FunctionInvoker(
            settings.supabase_url,
            settings.supabase_service_role_key,
            timeout_s=cfg.triggers.timeout_seconds,
            http_client=client,
        ),
        config=cfg.triggers,
    )
    health_store = HealthStoreAdapter(repo)
    uploaded_file = UploadedFileAdapter(repo, config=cfg.classifier)
    orchestrator = SyncOrchestrator(
        tokens,
        repo,
        primary=google_fit,
        secondary=health_store,
        uploaded=uploaded_file,
        triggers=triggers,
        config=cfg,
    )
    scheduler = BackgroundSyncScheduler(orchestrator, tokens, config=cfg)

    logger.info(
        "Sync engine built (backend=%s, config v%s)", settings.persistence_backend, cfg.version
    )
    return SyncEngine(
        settings=settings,
        config=cfg,
        repository=repo,
        credentials=credentials,
        tokens=tokens,
        google_fit=google_fit,
        health_store=health_store,
        uploaded_file=uploaded_file,
        triggers=triggers,
        orchestrator=orchestrator,
        scheduler=scheduler,
        http_client=client,
    )

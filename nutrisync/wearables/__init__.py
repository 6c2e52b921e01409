"""NutriSync wearable health-data sync engine.

This package keeps each user's daily activity snapshot up to date from
remote fitness providers, refreshing OAuth tokens as needed, filtering
exercise sessions from incidental movement, and triggering downstream
recomputes.

Subpackages:
    adapters/  - Provider fetchers (uploaded file, Google Fit, device health store)
    sync/      - Orchestrator, run state, persistence, triggers, scheduler, backfill

Core modules:
    base          - ProviderFetcher ABC and canonical data models
    errors        - Failure taxonomy
    credentials   - Per-user credential table with write-through backing
    tokens        - Token lifecycle manager and token broker client
    classifier    - Exercise classification and session distance aggregation
    config_loader - Load/validate/hot-reload sync_config.yaml
"""

from nutrisync.wearables.base import (
    ActivitySession,
    Credential,
    DailySnapshot,
    ProviderFetcher,
    RawDay,
    SyncSource,
)
from nutrisync.wearables.config_loader import SyncConfig, get_sync_config

__all__ = [
    "ProviderFetcher",
    "ActivitySession",
    "Credential",
    "DailySnapshot",
    "RawDay",
    "SyncSource",
    "SyncConfig",
    "get_sync_config",
]

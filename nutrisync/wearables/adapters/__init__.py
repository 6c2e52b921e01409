"""Activity data providers for NutriSync.

Each adapter implements the ProviderFetcher ABC and handles:
- Fetching one user-local day of activity totals and raw sessions
- Per-session distance for kept exercise sessions
- (Google Fit only) direct OAuth refresh-token exchange

Available adapters, in sync priority order:
    UploadedFileAdapter - Snapshot persisted from an uploaded export file
    GoogleFitAdapter    - Google Fit REST API (OAuth2, primary provider)
    HealthStoreAdapter  - Device-pushed native health store data (secondary)
"""

from nutrisync.wearables.adapters.google_fit import GoogleFitAdapter
from nutrisync.wearables.adapters.health_store import HealthStoreAdapter
from nutrisync.wearables.adapters.uploaded_file import UploadedFileAdapter
from nutrisync.wearables.base import SyncSource

__all__ = [
    "GoogleFitAdapter",
    "HealthStoreAdapter",
    "UploadedFileAdapter",
]

# Registry: SyncSource → adapter class
ADAPTER_REGISTRY: dict[SyncSource, type] = {
    SyncSource.UPLOADED_FILE: UploadedFileAdapter,
    SyncSource.PRIMARY_PROVIDER: GoogleFitAdapter,
    SyncSource.SECONDARY_PROVIDER: HealthStoreAdapter,
}


def get_adapter(source: SyncSource | str) -> "type":
    """Return the adapter class for a given source.

    Args:
        source: A SyncSource or its value, e.g. 'google_fit'.

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If no adapter is registered (e.g. 'manual').
    """
    available = [s.value for s in ADAPTER_REGISTRY]
    try:
        key = SyncSource(source)
    except ValueError as exc:
        raise KeyError(f"Unknown source '{source}'. Available: {available}") from exc
    if key not in ADAPTER_REGISTRY:
        raise KeyError(f"No adapter registered for source '{key.value}'. Available: {available}")
    return ADAPTER_REGISTRY[key]

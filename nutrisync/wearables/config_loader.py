"""Load, validate, and hot-reload the NutriSync sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an admin update - no restart required.

Usage::

    from nutrisync.wearables.config_loader import get_sync_config

    config = get_sync_config()
    buffer = config.tokens.refresh_buffer_ms        # 900000
    batch = config.persistence.session_batch_size   # 50
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("nutrisync.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TokenConfig:
    """Token lifecycle timing."""

    refresh_buffer_minutes: float
    warning_window_minutes: float
    early_refresh_probability: float
    default_ttl_seconds: int
    refresh_timeout_seconds: float
    revalidate_interval_seconds: float

    @property
    def refresh_buffer_ms(self) -> int:
        return int(self.refresh_buffer_minutes * 60_000)

    @property
    def warning_window_ms(self) -> int:
        return int(self.warning_window_minutes * 60_000)


@dataclass
class CircuitBreakerConfig:
    max_consecutive_errors: int
    cooldown_minutes: float

    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown_minutes * 60


@dataclass
class SyncTimingConfig:
    """Orchestrator timing and timeouts."""

    interval_minutes: float
    provider_fetch_timeout_seconds: float
    session_distance_timeout_seconds: float
    session_distance_delay_ms: int
    history_day_delay_ms: int
    default_timezone: str


@dataclass
class PersistenceConfig:
    session_batch_size: int


@dataclass
class TriggerConfig:
    """Downstream recompute functions and debounce window."""

    debounce_seconds: float
    timeout_seconds: float
    on_sync_success: list[str]
    on_upstream_change: list[str]


@dataclass
class ClassifierConfig:
    """Allow/deny rules for exercise sessions."""

    exercise_keywords: list[str]
    excluded_keywords: list[str]
    included_activity_codes: frozenset[str]
    excluded_activity_codes: frozenset[str]
    activity_type_names: dict[str, str] = field(default_factory=dict)


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    This is the single in-memory representation of sync_config.yaml.
    The token manager, orchestrator, classifier, persistence layer and
    trigger dispatcher all read from this object.
    """

    version: str
    tokens: TokenConfig
    circuit_breaker: CircuitBreakerConfig
    sync: SyncTimingConfig
    persistence: PersistenceConfig
    triggers: TriggerConfig
    classifier: ClassifierConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml

    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Applies defaults for optional fields and collects every problem before
    raising, so one bad edit reports all its mistakes at once.

    Raises:
        ConfigValidationError: If values are missing or out of range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, path: str) -> float:
        value = section.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return float(default)

    version = str(raw.get("version", "1.0"))

    # ── Tokens ──
    tk = raw.get("tokens") or {}
    tokens = TokenConfig(
        refresh_buffer_minutes=_number(tk, "refresh_buffer_minutes", 15, "tokens"),
        warning_window_minutes=_number(tk, "warning_window_minutes", 20, "tokens"),
        early_refresh_probability=_number(tk, "early_refresh_probability", 0.3, "tokens"),
        default_ttl_seconds=int(_number(tk, "default_ttl_seconds", 3600, "tokens")),
        refresh_timeout_seconds=_number(tk, "refresh_timeout_seconds", 45, "tokens"),
        revalidate_interval_seconds=_number(tk, "revalidate_interval_seconds", 300, "tokens"),
    )
    if not (0.0 <= tokens.early_refresh_probability <= 1.0):
        errors.append(
            f"tokens.early_refresh_probability = {tokens.early_refresh_probability} "
            "is out of range [0.0, 1.0]"
        )
    if tokens.warning_window_minutes < tokens.refresh_buffer_minutes:
        errors.append("tokens.warning_window_minutes must be >= refresh_buffer_minutes")

    # ── Circuit breaker ──
    cb = raw.get("circuit_breaker") or {}
    circuit_breaker = CircuitBreakerConfig(
        max_consecutive_errors=int(_number(cb, "max_consecutive_errors", 3, "circuit_breaker")),
        cooldown_minutes=_number(cb, "cooldown_minutes", 5, "circuit_breaker"),
    )
    if circuit_breaker.max_consecutive_errors < 1:
        errors.append("circuit_breaker.max_consecutive_errors must be >= 1")

    # ── Sync timing ──
    sy = raw.get("sync") or {}
    sync = SyncTimingConfig(
        interval_minutes=_number(sy, "interval_minutes", 15, "sync"),
        provider_fetch_timeout_seconds=_number(sy, "provider_fetch_timeout_seconds", 30, "sync"),
        session_distance_timeout_seconds=_number(
            sy, "session_distance_timeout_seconds", 15, "sync"
        ),
        session_distance_delay_ms=int(_number(sy, "session_distance_delay_ms", 100, "sync")),
        history_day_delay_ms=int(_number(sy, "history_day_delay_ms", 150, "sync")),
        default_timezone=str(sy.get("default_timezone", "UTC")),
    )

    # ── Persistence ──
    ps = raw.get("persistence") or {}
    persistence = PersistenceConfig(
        session_batch_size=int(_number(ps, "session_batch_size", 50, "persistence")),
    )
    if persistence.session_batch_size < 1:
        errors.append("persistence.session_batch_size must be >= 1")

    # ── Triggers ──
    tr = raw.get("triggers") or {}
    triggers = TriggerConfig(
        debounce_seconds=_number(tr, "debounce_seconds", 2, "triggers"),
        timeout_seconds=_number(tr, "timeout_seconds", 20, "triggers"),
        on_sync_success=list(tr.get("on_sync_success") or []),
        on_upstream_change=list(tr.get("on_upstream_change") or []),
    )

    # ── Classifier ──
    cl = raw.get("classifier") or {}
    exercise = [str(k).lower() for k in (cl.get("exercise_keywords") or [])]
    excluded = [str(k).lower() for k in (cl.get("excluded_keywords") or [])]
    if not exercise:
        errors.append("'classifier.exercise_keywords' is missing or empty")
    overlap = sorted(set(exercise) & set(excluded))
    if overlap:
        errors.append(f"classifier keywords are both allowed and excluded: {overlap}")
    names_raw: dict[Any, Any] = cl.get("activity_type_names") or {}
    classifier = ClassifierConfig(
        exercise_keywords=exercise,
        excluded_keywords=excluded,
        included_activity_codes=frozenset(str(c) for c in cl.get("included_activity_codes") or []),
        excluded_activity_codes=frozenset(str(c) for c in cl.get("excluded_activity_codes") or []),
        activity_type_names={str(k): str(v) for k, v in names_raw.items()},
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        tokens=tokens,
        circuit_breaker=circuit_breaker,
        sync=sync,
        persistence=persistence,
        triggers=triggers,
        classifier=classifier,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config

"""Exercise session classification and distance aggregation.

Raw provider sessions are filtered against deny/allow rules from
``sync_config.yaml`` before anything is stored:

1. Deny first: an excluded activity code, or an excluded keyword in the
   activity type, name or description, drops the session even when an
   allow rule would also match (``power_walking`` is not exercise).
2. Allow second: an included activity code or an exercise keyword keeps it.
3. Anything else, including an empty activity type, is dropped.

Distance is summed from per-session queries over each kept session's exact
window, so incidental walking during the day never counts as exercise
distance.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from nutrisync.wearables.config_loader import ClassifierConfig, get_sync_config

logger = logging.getLogger("nutrisync.wearables.classifier")

# Async callable returning the distance in meters for one session window.
DistanceQuery = Callable[[dict], Awaitable[float]]


def activity_code(session: dict) -> str:
    """Return the session's activity type as a string ('' when absent)."""
    raw = session.get("activityType")
    if raw is None:
        raw = session.get("activityTypeId")
    if raw is None:
        raw = session.get("activity")
    if raw is None:
        raw = session.get("activity_type")
    if raw is None:
        return ""
    return str(raw).strip()


def _numeric_key(code: str) -> str | None:
    try:
        return str(int(float(code)))
    except (TypeError, ValueError):
        return None


def _text_signals(session: dict) -> list[str]:
    signals = [activity_code(session), session.get("name"), session.get("description")]
    return [str(s).lower() for s in signals if s]


def _matches(signals: Iterable[str], keywords: Iterable[str]) -> str | None:
    for text in signals:
        for keyword in keywords:
            if keyword in text:
                return keyword
    return None


def is_exercise(session: dict, config: ClassifierConfig | None = None) -> bool:
    """Decide whether one raw session counts as exercise."""
    cfg = config or get_sync_config().classifier
    code = _numeric_key(activity_code(session))
    signals = _text_signals(session)

    if code is not None and code in cfg.excluded_activity_codes:
        return False
    denied = _matches(signals, cfg.excluded_keywords)
    if denied:
        logger.debug("Session %s excluded by keyword %r", session.get("id"), denied)
        return False

    if code is not None and code in cfg.included_activity_codes:
        return True
    return _matches(signals, cfg.exercise_keywords) is not None


def classify(raw_sessions: list[dict], config: ClassifierConfig | None = None) -> list[dict]:
    """Return only the sessions that count as exercise, in their original order."""
    cfg = config or get_sync_config().classifier
    kept = [s for s in raw_sessions if s and is_exercise(s, cfg)]
    logger.debug("Classifier kept %d of %d sessions", len(kept), len(raw_sessions))
    return kept


def display_name(session: dict, config: ClassifierConfig | None = None) -> str | None:
    """Name from the session, else from its numeric activity code."""
    existing = str(session.get("name") or session.get("description") or "").strip()
    if existing:
        return existing
    code = _numeric_key(activity_code(session))
    if code is None:
        return None
    cfg = config or get_sync_config().classifier
    return cfg.activity_type_names.get(code)


async def session_distances(
    sessions: list[dict], query: DistanceQuery, delay_s: float = 0.0
) -> list[float]:
    """Query each session's window distance sequentially.

    A small delay between calls keeps us under provider rate limits.
    """
    distances: list[float] = []
    for i, session in enumerate(sessions):
        if i and delay_s:
            await asyncio.sleep(delay_s)
        distance = await query(session)
        distances.append(max(float(distance or 0.0), 0.0))
    return distances


async def aggregate_distance(
    sessions: list[dict], query: DistanceQuery, delay_s: float = 0.0
) -> float:
    """Total exercise distance in meters across the kept sessions."""
    return sum(await session_distances(sessions, query, delay_s))

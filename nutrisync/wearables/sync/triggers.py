"""Downstream recompute triggers.

After a successful sync (and when the activity tables change upstream) the
weekly activity aggregate and the actual-training record need recomputing.
Both are Supabase edge functions invoked over HTTP with ``{userId, date}``.

Invocations are fire-and-forget: they run as background tasks, failures are
logged, and nothing here ever raises into a sync.  Upstream change
notifications are debounced per user so a burst of row changes triggers one
recompute per changed date.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from uuid import UUID

import httpx

from nutrisync.wearables.config_loader import TriggerConfig, get_sync_config

logger = logging.getLogger("nutrisync.wearables.sync.triggers")


class FunctionInvoker:
    """POSTs JSON to ``{base_url}/functions/v1/{name}`` with the service key."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout_s: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._timeout = httpx.Timeout(timeout_s)
        self._http_client = http_client

    async def invoke(self, name: str, body: dict) -> int:
        """Invoke a function and return its HTTP status.

        Raises:
            httpx.HTTPError: On transport failure, timeout or non-2xx status.
        """
        url = f"{self._base_url}/functions/v1/{name}"
        headers = {"Authorization": f"Bearer {self._service_key}"}
        if self._http_client:
            response = await self._http_client.post(
                url, json=body, headers=headers, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()
        return response.status_code


class TriggerDispatcher:
    """Schedules downstream recomputes without blocking the caller.

    Usage::

        dispatcher = TriggerDispatcher(FunctionInvoker(url, key))
        dispatcher.on_sync_success(user_id, today)   # returns immediately
        ...
        await dispatcher.drain()                     # at shutdown
    """

    def __init__(self, invoker: FunctionInvoker, config: TriggerConfig | None = None) -> None:
        self._invoker = invoker
        self._config = config or get_sync_config().triggers
        self._tasks: set[asyncio.Task] = set()
        self._debounced: dict[UUID, asyncio.Task] = {}
        self._pending_days: dict[UUID, set[date | None]] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def on_sync_success(self, user_id: UUID, day: date) -> None:
        """Schedule the post-sync recomputes for one user-day."""
        body = {"userId": str(user_id), "date": day.isoformat()}
        for name in self._config.on_sync_success:
            self._spawn(self._fire(name, body))

    def on_upstream_change(self, user_id: UUID, day: date | None = None) -> None:
        """Schedule a debounced recompute after upstream activity rows changed.

        Every notification inside the debounce window restarts it.  When the
        window closes the recomputes run once per distinct date collected;
        ``day=None`` stands for a recompute without a date.
        """
        self._pending_days.setdefault(user_id, set()).add(day)
        previous = self._debounced.pop(user_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = self._spawn(self._debounce_then_fire(user_id))
        self._debounced[user_id] = task

    async def drain(self) -> None:
        """Wait for every outstanding invocation, including debounced ones."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _debounce_then_fire(self, user_id: UUID) -> None:
        await asyncio.sleep(self._config.debounce_seconds)
        if self._debounced.get(user_id) is asyncio.current_task():
            del self._debounced[user_id]
        days = self._pending_days.pop(user_id, set())
        bodies: list[dict] = []
        for day in sorted(days, key=lambda d: (d is not None, d or date.min)):
            body: dict = {"userId": str(user_id)}
            if day is not None:
                body["date"] = day.isoformat()
            bodies.append(body)
        await asyncio.gather(
            *(self._fire(name, body) for body in bodies for name in self._config.on_upstream_change)
        )

    async def _fire(self, name: str, body: dict) -> None:
        try:
            status = await self._invoker.invoke(name, body)
        except httpx.HTTPError as exc:
            logger.warning("Trigger %s failed for user %s: %s", name, body.get("userId"), exc)
            return
        logger.debug("Trigger %s for user %s -> %s", name, body.get("userId"), status)

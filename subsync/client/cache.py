"""
Per-session subscription cache.

State: uninitialized -> loading -> ready | error. A newer fetch supersedes
and cancels the one in flight; every await is bracketed by an abort check so
a superseded or closed fetch never writes into the cache. Refresh failures
after data was loaded keep the last known state and flag it stale; so does an
enhanced status that is not ``synced``. A failed or retry_needed status below
the retry cap schedules one background re-sync after the backoff delay.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from subsync.client import status as derive
from subsync.client.bus import ChangeEvent, EventBus
from subsync.client.errors import CacheError, is_retryable
from subsync.client.notifications import TransitionNotifier

log = logging.getLogger(__name__)


class CacheState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class Snapshot:
    state: CacheState
    subscription: dict[str, Any] | None
    enhanced_status: dict[str, Any] | None
    access: dict[str, Any] | None
    inventory: dict[str, Any] | None
    error: CacheError | None
    stale: bool
    syncing: bool
    has_access: bool
    is_trialing: bool
    days_until_expiry: int | None
    status_label: str
    critical: bool
    sync_label: str
    sync_healthy: bool
    consistency_issues: list[str]


Listener = Callable[[Snapshot], None]


class SubscriptionCache:
    def __init__(
        self,
        api,
        user_id: str,
        *,
        retry_delay_s: float = 1.0,
        debounce_window_s: float = 0.5,
        notifier: TransitionNotifier | None = None,
        retry_policy: derive.BackoffPolicy = derive.RETRY_POLICY,
    ) -> None:
        self.api = api
        self.user_id = str(user_id)
        self.retry_delay_s = retry_delay_s
        self.notifier = notifier
        self.retry_policy = retry_policy
        self.bus = EventBus(self._on_change, user_id=self.user_id, window_s=debounce_window_s)

        self.state = CacheState.UNINITIALIZED
        self.subscription: dict[str, Any] | None = None
        self.enhanced_status: dict[str, Any] | None = None
        self.access: dict[str, Any] | None = None
        self.inventory: dict[str, Any] | None = None
        self.error: CacheError | None = None
        self.stale = False
        self.syncing = False
        self.fetch_count = 0

        self._generation = 0
        self._closed = False
        self._fetch_task: asyncio.Task | None = None
        self._sync_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._portal_redirect = False
        self._listeners: list[Listener] = []

    # ----- derived view -----
    @property
    def loading(self) -> bool:
        return self.state in (CacheState.UNINITIALIZED, CacheState.LOADING)

    def snapshot(self) -> Snapshot:
        return Snapshot(
            state=self.state,
            subscription=self.subscription,
            enhanced_status=self.enhanced_status,
            access=self.access,
            inventory=self.inventory,
            error=self.error,
            stale=self.stale or derive.is_sync_stale(self.enhanced_status),
            syncing=self.syncing,
            has_access=derive.has_access(self.subscription, self.access, loading=self.loading),
            is_trialing=derive.is_trialing(self.subscription),
            days_until_expiry=derive.days_until_expiry(self.subscription),
            status_label=derive.status_label(self.subscription),
            critical=derive.is_critical((self.subscription or {}).get("status")),
            sync_label=derive.sync_status_label((self.enhanced_status or {}).get("sync_status")),
            sync_healthy=derive.is_sync_healthy(self.enhanced_status),
            consistency_issues=derive.consistency_issues(self.subscription, self.enhanced_status),
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)

    # ----- fetching -----
    async def load(self) -> Snapshot:
        """Initial fetch; resolves once the cache is ready or in error."""
        if self.state == CacheState.UNINITIALIZED:
            self.state = CacheState.LOADING
            self._emit()
        self.refresh()
        await self.wait_idle()
        return self.snapshot()

    def refresh(self) -> asyncio.Task:
        """Start a full re-fetch, cancelling any fetch still in flight."""
        if self._closed:
            raise CacheError("cache is closed")
        self._generation += 1
        previous = self._fetch_task
        if previous is not None and not previous.done():
            previous.cancel()
        self._fetch_task = asyncio.get_running_loop().create_task(self._fetch(self._generation))
        return self._fetch_task

    async def wait_idle(self) -> None:
        # Follows supersession: returns once the newest fetch has settled
        while self._fetch_task is not None and not self._fetch_task.done():
            await asyncio.wait({self._fetch_task})

    def _aborted(self, generation: int) -> bool:
        return self._closed or generation != self._generation

    async def _with_retry(self, call: Callable[[], Awaitable[Any]], generation: int) -> Any:
        try:
            return await call()
        except CacheError as exc:
            if not is_retryable(exc) or self._aborted(generation):
                raise
            log.warning("cache.fetch_retry", extra={"user_id": self.user_id, "error": str(exc)})
        await asyncio.sleep(self.retry_delay_s)
        if self._aborted(generation):
            raise asyncio.CancelledError()
        return await call()

    async def _optional(self, call: Callable[[], Awaitable[Any]]) -> Any:
        # Access and inventory checks fail independently of the subscription read
        try:
            return await call()
        except CacheError as exc:
            log.warning("cache.optional_fetch_failed", extra={"user_id": self.user_id, "error": str(exc)})
            return None

    async def _fetch(self, generation: int) -> None:
        if self._aborted(generation):
            return
        self.fetch_count += 1
        try:
            payload = await self._with_retry(self.api.fetch_subscription, generation)
        except CacheError as exc:
            if self._aborted(generation):
                return
            self._fail(exc)
            return
        if self._aborted(generation):
            return

        access = await self._optional(self.api.check_access)
        if self._aborted(generation):
            return
        inventory = await self._optional(self.api.inventory_limit)
        if self._aborted(generation):
            return

        previous = self.subscription
        self.subscription = payload.get("subscription")
        self.enhanced_status = payload.get("enhancedStatus")
        self.access = access
        self.inventory = inventory
        self.error = None
        self.stale = False
        self.state = CacheState.READY
        if self.notifier is not None:
            self.notifier.observe(previous, self.subscription)
        self._emit()
        self._schedule_sync_retry()

    def _fail(self, exc: CacheError) -> None:
        self.error = exc
        if self.subscription is not None:
            # Keep serving the last known state
            self.stale = True
            self.state = CacheState.READY
            log.warning("cache.stale", extra={"user_id": self.user_id, "error": str(exc)})
        else:
            self.state = CacheState.ERROR
            log.error("cache.load_failed", extra={"user_id": self.user_id, "error": str(exc)})
        self._emit()

    # ----- producers -----
    async def _on_change(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        log.debug("cache.change", extra={"source": event.source, "kind": event.kind})
        self.refresh()
        await self.wait_idle()

    async def sync(self) -> dict[str, Any]:
        """Manual reconcile; concurrent callers share one in-flight request."""
        if self._closed:
            raise CacheError("cache is closed")
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.get_running_loop().create_task(self._run_sync())
        return await asyncio.shield(self._sync_task)

    async def _run_sync(self) -> dict[str, Any]:
        self.syncing = True
        self._emit()
        try:
            result = await self.api.sync(self.user_id)
        finally:
            self.syncing = False
        if self._closed:
            return result

        enhanced = result.get("enhancedStatus")
        if enhanced:
            self.enhanced_status = enhanced
            if self.notifier is not None and enhanced.get("subscription_status") == "active":
                self.notifier.notify_activation(enhanced.get("stripe_subscription_id"))
        self.bus.publish(ChangeEvent.manual(self.user_id, result.get("timestamp")))
        self._emit()
        return result

    def _schedule_sync_retry(self) -> None:
        # At most one pending re-sync; the server bumps retry_count on each failure
        if self._closed or (self._retry_task is not None and not self._retry_task.done()):
            return
        wait = derive.sync_retry_delay(self.enhanced_status, policy=self.retry_policy)
        if wait is None:
            return
        log.info("cache.sync_retry_scheduled", extra={"user_id": self.user_id, "delay_s": wait})
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_sync(wait))

    async def _retry_sync(self, wait: float) -> None:
        await asyncio.sleep(wait)
        if self._closed:
            return
        try:
            await self.sync()
        except CacheError as exc:
            log.warning("cache.sync_retry_failed", extra={"user_id": self.user_id, "error": str(exc)})

    def mark_portal_redirect(self) -> None:
        """Call before sending the user to the external billing portal."""
        self._portal_redirect = True

    async def on_focus(self) -> bool:
        """Re-sync after returning from the billing portal. The flag is consumed once."""
        if not self._portal_redirect or self._closed:
            return False
        self._portal_redirect = False
        try:
            await self.sync()
        except CacheError as exc:
            log.warning("cache.focus_sync_failed", extra={"user_id": self.user_id, "error": str(exc)})
        return True

    async def close(self) -> None:
        """Abort everything in flight; later results are discarded."""
        self._closed = True
        self._generation += 1
        await self.bus.close()
        tasks = [t for t in (self._fetch_task, self._sync_task, self._retry_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

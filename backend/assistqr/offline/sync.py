"""
AssistQR Offline Client — Sync Engine
=======================================

What:  Drains the local queue into POST /accidents/report once the device
       is back online.
Why:   A queued report only helps once the emergency contacts hear about
       it, but a report must never reach them twice because two tabs,
       two processes or two triggers synced at the same moment.
How:   One cycle at a time, guarded twice:
         1. in memory (SyncState), claimed with no await in between
         2. on disk (the queue's sync lock row), which also enforces the
            cooldown between cycle starts across processes
       Each entry is claimed atomically (pending → syncing) before upload.
       While an upload runs, a heartbeat keeps both the lock and the claim
       fresh, so another process never mistakes a slow upload for a crash.

Cycle:
    ┌───────────┐   ┌──────────┐   ┌───────────┐   ┌──────────────────┐
    │ claim     │──▶│ online?  │──▶│ durable   │──▶│ for each pending │
    │ in-memory │   │          │   │ lock +    │   │ entry: claim →   │
    │ state     │   │          │   │ cooldown  │   │ POST → outcome   │
    └───────────┘   └──────────┘   └───────────┘   └──────────────────┘
                         locks released in `finally`, whatever happened

Outcomes per entry:
    2xx                      → removed (then counted as synced)
    408 / 429 / 5xx / network→ retry_count += 1 and back to pending, or
                               permanently_failed once the ceiling is hit
    any other 4xx            → permanently_failed at once
    queue write error        → entry skipped; the rest of the queue still runs

Delivery is at-least-once: a crash between a 2xx and the removal resubmits
that report on the next cycle.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Sequence, Set

import httpx

from assistqr.config import settings
from assistqr.exceptions import AssistQRError, StorageUnavailableError, TransientNetworkError
from assistqr.offline.queue import ImageFile, LocalQueue, QueuedReport, QueueStatus, ReportDraft

logger = logging.getLogger(__name__)

REPORT_PATH = "/accidents/report"

# The server answers these callers with JSON instead of the thank-you page.
PROGRAMMATIC_HEADERS = {
    "Accept": "application/json",
    "X-Requested-With": "XMLHttpRequest",
}

TRANSIENT_STATUSES = {408, 429}


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUSES or status_code >= 500


async def post_report(
    client: httpx.AsyncClient,
    draft: ReportDraft,
    images: Sequence[ImageFile],
) -> httpx.Response:
    """
    Submit one report as multipart form data.

    Raises:
        TransientNetworkError: the request never got an HTTP response
    """
    files = [("images", (img.filename, img.data, img.mime_type)) for img in images]
    try:
        return await client.post(
            REPORT_PATH,
            data=draft.form_fields(),
            files=files or None,
            headers=PROGRAMMATIC_HEADERS,
        )
    except httpx.TransportError as e:
        raise TransientNetworkError(message=f"{type(e).__name__}: {e}") from e


def error_text(response: httpx.Response) -> str:
    """Server message for a failed submission, falling back to the status."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return f"HTTP {response.status_code}: {body['message']}"
    return f"HTTP {response.status_code}"


def success_body(response: httpx.Response) -> dict:
    """JSON body of an accepted submission; {} when the server sent HTML."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class SyncState(str, Enum):
    IDLE = "idle"
    LOCKED = "locked"
    DRAINING = "draining"


class EntryOutcome(str, Enum):
    SYNCED = "synced"
    RETRY = "retry"
    PARKED = "parked"


@dataclass
class SyncReport:
    """What one run_cycle() call did. `skipped_reason` set means no cycle ran."""
    synced: int = 0
    failed: int = 0
    parked: int = 0
    skipped: int = 0
    skipped_reason: Optional[str] = None

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None


class SyncEngine:
    """
    Single-flight drainer for a LocalQueue.

    Collaborators are injectable for tests: `transport` (httpx), `clock`
    (seconds since epoch, compared against the durable lock), `online_check`
    and every timing constant.
    """

    def __init__(
        self,
        queue: LocalQueue,
        server_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        online_check: Optional[Callable[[], bool]] = None,
        cooldown: Optional[float] = None,
        lock_timeout: Optional[float] = None,
        retry_limit: Optional[int] = None,
        item_delay: Optional[float] = None,
        connectivity_debounce: Optional[float] = None,
        request_debounce: Optional[float] = None,
        request_timeout: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.server_url = (server_url or settings.offline_server_url).rstrip("/")
        self.transport = transport
        self.clock = clock
        self.online_check = online_check
        self.cooldown = settings.sync_cooldown if cooldown is None else cooldown
        self.lock_timeout = settings.sync_lock_timeout if lock_timeout is None else lock_timeout
        self.retry_limit = settings.sync_retry_limit if retry_limit is None else retry_limit
        self.item_delay = settings.sync_item_delay if item_delay is None else item_delay
        self.connectivity_debounce = (
            settings.sync_connectivity_debounce
            if connectivity_debounce is None else connectivity_debounce
        )
        self.request_debounce = (
            settings.sync_request_debounce if request_debounce is None else request_debounce
        )
        self.request_timeout = request_timeout or settings.sync_request_timeout
        # Well inside lock_timeout, so a live upload never looks abandoned.
        self.heartbeat_interval = heartbeat_interval or self.lock_timeout / 3

        self.state = SyncState.IDLE
        self.locked_since: Optional[float] = None
        self._online = True
        self._timer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ── Online signal ─────────────────────────────────────────────────────

    def is_online(self) -> bool:
        if self.online_check is not None:
            return self.online_check()
        return self._online

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.server_url,
            timeout=self.request_timeout,
            transport=self.transport,
        )

    # ── One cycle ─────────────────────────────────────────────────────────

    async def run_cycle(self) -> SyncReport:
        """
        Drain every pending entry once.

        Returns immediately (skipped_reason set) when a cycle is already
        running here or elsewhere, the cooldown has not elapsed, or the
        device is offline.

        Raises:
            StorageUnavailableError: the queue file could not be read
        """
        # No await before the state is claimed.
        if self.state is not SyncState.IDLE:
            logger.debug("Sync already in progress (in-memory lock), skipping")
            return SyncReport(skipped_reason="in_progress")
        self.state = SyncState.LOCKED
        self.locked_since = self.clock()

        token: Optional[str] = None
        try:
            if not self.is_online():
                logger.info("Still offline, cannot sync")
                return SyncReport(skipped_reason="offline")

            token = await self.queue.try_acquire_sync_lock(
                now=self.locked_since,
                stale_after=self.lock_timeout,
                cooldown=self.cooldown,
            )
            if token is None:
                logger.info("Sync lock held elsewhere or cooldown active, skipping")
                return SyncReport(skipped_reason="locked")

            self.state = SyncState.DRAINING
            return await self._drain(token)
        finally:
            if token is not None:
                await self._release(token)
            self.state = SyncState.IDLE
            self.locked_since = None

    async def _drain(self, token: str) -> SyncReport:
        report = SyncReport()
        await self.queue.release_orphans(now=self.clock(), stale_after=self.lock_timeout)
        pending = await self.queue.list_pending()
        if not pending:
            logger.info("No pending reports to sync")
            return report

        logger.info("Syncing %d pending report(s)...", len(pending))
        async with self.client() as client:
            for index, entry in enumerate(pending):
                if index and self.item_delay:
                    await asyncio.sleep(self.item_delay)

                try:
                    if not await self.queue.refresh_sync_lock(token, now=self.clock()):
                        logger.warning("Sync lock was taken over, stopping this cycle")
                        break
                    if not await self.queue.claim(entry.id, now=self.clock()):
                        logger.info("Report %d is no longer pending, skipping", entry.id)
                        report.skipped += 1
                        continue
                    outcome = await self._sync_entry(client, entry, token)
                except StorageUnavailableError as e:
                    # A syncing entry left behind here is released once its
                    # claim goes stale.
                    logger.error("Report %d: queue write failed: %s", entry.id, e.message)
                    report.failed += 1
                    continue

                if outcome is EntryOutcome.SYNCED:
                    report.synced += 1
                else:
                    report.failed += 1
                    if outcome is EntryOutcome.PARKED:
                        report.parked += 1

        logger.info(
            "Sync complete: %d synced, %d failed (%d parked)",
            report.synced, report.failed, report.parked,
        )
        return report

    async def _sync_entry(
        self,
        client: httpx.AsyncClient,
        entry: QueuedReport,
        token: str,
    ) -> EntryOutcome:
        images = await self.queue.images_for(entry.id)
        try:
            async with self._keep_alive(token, entry.id):
                response = await post_report(client, ReportDraft.from_entry(entry), images)
        except TransientNetworkError as e:
            logger.warning("Report %d: network error: %s", entry.id, e.message)
            return await self._record_failure(entry, e.message, terminal=False)

        if response.is_success:
            await self.queue.remove(entry.id)
            logger.info("Report %d synced and removed from queue", entry.id)
            return EntryOutcome.SYNCED

        terminal = not is_transient_status(response.status_code)
        message = error_text(response)
        logger.warning("Report %d: sync failed with %s", entry.id, message)
        return await self._record_failure(entry, message, terminal=terminal)

    async def _record_failure(self, entry: QueuedReport, error: str, terminal: bool) -> EntryOutcome:
        status, retry_count = await self.queue.record_failure(
            entry.id, error, retry_limit=self.retry_limit, terminal=terminal
        )
        if status is QueueStatus.PERMANENTLY_FAILED:
            logger.error(
                "Report %d parked as permanently failed after %d attempt(s): %s",
                entry.id, retry_count, error,
            )
            return EntryOutcome.PARKED
        return EntryOutcome.RETRY

    # ── Lock heartbeat ────────────────────────────────────────────────────

    @asynccontextmanager
    async def _keep_alive(self, token: str, queue_id: int) -> AsyncIterator[None]:
        """Refresh the lock and the entry's claim for as long as the upload runs."""
        stop = asyncio.Event()
        task = asyncio.get_running_loop().create_task(self._heartbeat(token, queue_id, stop))
        try:
            yield
        finally:
            stop.set()
            await task

    async def _heartbeat(self, token: str, queue_id: int, stop: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.heartbeat_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                held = await self.queue.refresh_sync_lock(token, now=self.clock(), queue_id=queue_id)
            except StorageUnavailableError as e:
                logger.warning("Sync lock heartbeat failed: %s", e.message)
                continue
            if not held:
                logger.warning("Sync lock lost while report %d was uploading", queue_id)
                return

    async def _release(self, token: str) -> None:
        try:
            await self.queue.release_sync_lock(token)
        except StorageUnavailableError as e:
            # The lock goes stale after lock_timeout and is taken over then.
            logger.warning("Could not release sync lock: %s", e.message)

    # ── Triggers ──────────────────────────────────────────────────────────

    def notify_connectivity(self, online: bool) -> None:
        """Record the online signal; coming online schedules a cycle."""
        self._online = online
        if online:
            logger.info("Online - scheduling sync in %.1fs", self.connectivity_debounce)
            self._schedule(self.connectivity_debounce)

    def request_sync(self) -> None:
        """Explicit sync request (e.g. after queueing a new report)."""
        self._schedule(self.request_debounce)

    def _schedule(self, delay: float) -> None:
        """
        Start a debounce timer, replacing one that is still waiting.
        Must be called from inside the running event loop.
        """
        if self._timer is not None:
            self._timer.cancel()
        task = asyncio.get_running_loop().create_task(self._run_after(delay))
        self._timer = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_after(self, delay: float) -> Optional[SyncReport]:
        await asyncio.sleep(delay)
        # Past the debounce window: from here on this task is never cancelled
        # by a newer trigger.
        if self._timer is asyncio.current_task():
            self._timer = None
        try:
            return await self.run_cycle()
        except AssistQRError as e:
            logger.error("Sync cycle failed: %s", e.message)
            return None

    async def wait_idle(self) -> None:
        """Wait until every scheduled trigger has fired and finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.wait_idle()


class ConnectivityMonitor:
    """
    Polls the server's /health and tells the engine when the device comes
    online.

    Any HTTP response counts as online (the network path works); only a
    transport failure counts as offline.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_path: str = "/health",
        timeout: float = 5.0,
    ):
        self.engine = engine
        self.interval = interval or settings.connectivity_poll_interval
        self.transport = transport
        self.probe_path = probe_path
        self.timeout = timeout
        self.online: Optional[bool] = None
        self._task: Optional[asyncio.Task] = None

    async def check(self) -> bool:
        try:
            async with httpx.AsyncClient(
                base_url=self.engine.server_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                await client.get(self.probe_path)
        except httpx.TransportError:
            return False
        return True

    async def poll_once(self) -> bool:
        online = await self.check()
        if online != self.online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
            self.online = online
            self.engine.notify_connectivity(online)
        return online

    async def run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


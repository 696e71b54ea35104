"""
Retention scheduler

Periodically deletes files older than the retention window and notifies
their owners. Only one sweep runs at a time; a sweep that finds another in
progress returns immediately with skipped=True.
"""
import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from api.files.services import purge_record
from api.filerecord.models import FileRecord
from api.filerecord.services import FileRecordStore
from api.retention.models import SchedulerState, SchedulerStatus, SweepResult
from api.retention.notifications import NotificationDispatcher
from core.errors import ScheduledTaskError
from core.storage import BlobStore

logger = logging.getLogger(__name__)

DELETED = "deleted"
FAILED = "failed"
CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetentionScheduler:
    """
    Deletes expired files on a fixed period.

    Clock and sleep are injectable so sweeps and the periodic loop can be
    driven deterministically in tests.
    """

    def __init__(
        self,
        record_store: FileRecordStore,
        blob_store: BlobStore,
        dispatcher: NotificationDispatcher | None = None,
        retention_days: int = 30,
        interval_seconds: int = 24 * 60 * 60,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._record_store = record_store
        self._blob_store = blob_store
        self._dispatcher = dispatcher
        self.retention_days = retention_days
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self._clock = clock
        self._sleep = sleep

        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._task: asyncio.Task | None = None
        self.last_result: SweepResult | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return SchedulerState.RUNNING if self._run_lock.locked() else SchedulerState.IDLE

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            state=self.state,
            started=self.started,
            retention_days=self.retention_days,
            interval_seconds=self.interval_seconds,
            last_result=self.last_result,
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run_once(self) -> SweepResult:
        """Run one sweep now, unless one is already running"""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Retention sweep already in progress, skipping")
            return SweepResult(skipped=True)
        try:
            result = self._sweep()
            self.last_result = result
            return result
        finally:
            self._run_lock.release()

    def _sweep(self) -> SweepResult:
        started_at = self._clock()
        cutoff = started_at - timedelta(days=self.retention_days)
        candidates = self._record_store.list_older_than(cutoff)
        result = SweepResult(
            cutoff=cutoff, candidates=len(candidates), started_at=started_at
        )
        logger.info(
            "Retention sweep: %d file(s) created before %s",
            len(candidates), cutoff.isoformat(),
        )

        if candidates:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="retention"
            ) as executor:
                outcomes = list(executor.map(self._process, candidates))
            result.deleted = outcomes.count(DELETED)
            result.failed = outcomes.count(FAILED)
            result.cancelled = outcomes.count(CANCELLED)

        result.finished_at = self._clock()
        logger.info(
            "Retention sweep finished: %d deleted, %d failed, %d cancelled",
            result.deleted, result.failed, result.cancelled,
        )
        return result

    def _process(self, record: FileRecord) -> str:
        # Stop requests are honoured between candidates, never mid-candidate
        if self._stop_event.is_set():
            return CANCELLED
        try:
            self._expire(record)
        except ScheduledTaskError as exc:
            logger.error("%s: %s", exc, exc.__cause__)
            return FAILED
        return DELETED

    def _expire(self, record: FileRecord) -> None:
        try:
            purge_record(record, self._record_store, self._blob_store)
        except Exception as exc:
            raise ScheduledTaskError(
                f"Failed to delete expired file {record.id} ({record.display_name})"
            ) from exc
        logger.info("Deleted expired file %s (%s)", record.id, record.display_name)
        self._notify_owner(record)

    def _notify_owner(self, record: FileRecord) -> None:
        if self._dispatcher is None:
            return
        try:
            self._dispatcher.dispatch(record.owner_id, record.display_name)
        except RuntimeError:
            logger.exception(
                "Could not queue deletion notice for %s", record.display_name
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Schedule periodic sweeps on the running event loop"""
        if self.started:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._run_forever())
        logger.info(
            "Retention scheduler started (window %d days, every %d seconds)",
            self.retention_days, self.interval_seconds,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop scheduling sweeps and wait for an in-flight sweep to wind down.

        A running sweep finishes the candidates it has already started and
        skips the rest.
        """
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if await asyncio.to_thread(self._run_lock.acquire, True, timeout):
            self._run_lock.release()
        else:
            logger.warning("Retention sweep still running after %.0fs", timeout)
        logger.info("Retention scheduler stopped")

    async def _run_forever(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Retention sweep failed")
            if self._stop_event.is_set():
                break
            await self._sleep(self.interval_seconds)

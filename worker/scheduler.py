"""
Batch scheduler
Owns the job collection and drains it one job at a time on the event loop
"""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from common import storage
from common.config import DEBOUNCE_SECONDS, TICK_DELAY_SECONDS
from common.errors import DecodeError, EncodeError
from common.files import format_bytes
from common.job_schema import CompressSettings, ErrorKind, Job, JobStatus, Result, TransformSettings
from common.storage import JobStore, SourceFile
from worker.worker import process_job

logger = logging.getLogger(__name__)

Executor = Callable[[Job, TransformSettings], Awaitable[Result]]


def _release(results: Iterable[Result]) -> None:
    for result in results:
        result.handle.release()


class BatchScheduler:
    """Single-flight job queue that re-runs finished jobs when settings change.

    At most one job is ``processing`` at any time; pending jobs are picked in
    intake order. A settings change re-arms every completed/error job after
    ``debounce_seconds`` without further changes. A job already running is
    never cancelled and keeps the settings it started with.
    """

    def __init__(
        self,
        settings: Optional[TransformSettings] = None,
        executor: Executor = process_job,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        tick_delay: float = TICK_DELAY_SECONDS,
    ):
        self._store = JobStore()
        self._settings = settings or CompressSettings()
        self._executor = executor
        self._debounce_seconds = debounce_seconds
        self._tick_delay = tick_delay
        self._timer: Optional[asyncio.TimerHandle] = None
        self._in_flight: Optional[str] = None
        self._runner: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    # ---------- Read-only views ----------

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def settings(self) -> TransformSettings:
        return self._settings

    @property
    def jobs(self) -> List[Job]:
        return list(self._store)

    def get_job(self, job_id: str) -> Optional[Job]:
        return storage.get_job(self._store, job_id)

    def summary(self) -> dict:
        jobs = list(self._store)
        return {
            "total": len(jobs),
            "counts": {s.value: self._store.count(s) for s in JobStatus},
            "total_original_size": sum(j.original_size for j in jobs),
            "total_compressed_size": sum(j.result.compressed_size for j in jobs if j.result),
        }

    # ---------- Transitions ----------

    def intake(self, sources: Iterable[SourceFile]) -> List[str]:
        """Replaces the whole batch with new pending jobs; returns their ids."""
        self._store, displaced = storage.replace_all(self._store, sources)
        _release(displaced)
        logger.info(f"Intake of {len(self._store)} file(s)")
        self._notify()
        return self._store.ids()

    def reset(self) -> None:
        """Drops every job and releases every display handle."""
        self._cancel_timer()
        self._store, displaced = storage.clear(self._store)
        _release(displaced)
        self._notify()

    def on_settings_changed(self, settings: TransformSettings) -> None:
        """Makes ``settings`` active and (re)starts the debounce timer.

        Must be called from the event loop thread.
        """
        if settings == self._settings:
            return
        self._settings = settings
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce_seconds, self._rearm)

    def _rearm(self) -> None:
        self._timer = None
        self._store, displaced = storage.rearm_finished(self._store)
        _release(displaced)
        logger.info(f"Settings changed, re-queued {self._store.count(JobStatus.PENDING)} job(s)")
        self._notify()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _notify(self) -> None:
        busy = self._in_flight is not None or storage.get_next_pending_job(self._store) is not None
        if busy:
            self._idle.clear()
            self._wakeup.set()
        else:
            self._idle.set()

    # ---------- Processing ----------

    async def tick(self) -> bool:
        """Runs the next pending job to completion. Returns False when there
        was nothing to start (queue empty or a job already in flight)."""
        if self._in_flight is not None:
            return False
        job = storage.get_next_pending_job(self._store)
        if job is None:
            return False

        settings = self._settings
        self._store = storage.mark_processing(self._store, job.id, settings)
        self._in_flight = job.id
        try:
            if self._tick_delay:
                await asyncio.sleep(self._tick_delay)
            logger.info(f"Processing job {job.id} ({job.name}) with tool={settings.tool}")
            try:
                result = await self._executor(job, settings)
            except DecodeError as e:
                self._fail(job, ErrorKind.DECODE, e)
            except EncodeError as e:
                self._fail(job, ErrorKind.ENCODE, e)
            except Exception as e:
                logger.exception(f"Unexpected failure in job {job.id}")
                self._fail(job, ErrorKind.INTERNAL, e)
            else:
                self._complete(job, result)
        finally:
            self._in_flight = None
            self._notify()
        return True

    def _complete(self, job: Job, result: Result) -> None:
        updated = storage.mark_completed(self._store, job.id, result)
        if updated is None:
            # The batch was replaced while this job ran
            result.handle.release()
            logger.info(f"Discarded result of job {job.id}, no longer in the batch")
            return
        self._store = updated
        logger.info(
            f"Processed job {job.id}: {format_bytes(result.original_size)} -> "
            f"{format_bytes(result.compressed_size)} ({result.width}x{result.height})"
        )

    def _fail(self, job: Job, kind: ErrorKind, exc: Exception) -> None:
        updated = storage.mark_failed(self._store, job.id, kind, str(exc))
        if updated is not None:
            self._store = updated
        logger.warning(f"Failed job {job.id}: {exc}")

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while await self.tick():
                pass

    def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())
            self._notify()

    async def wait_idle(self) -> None:
        """Returns once no job is pending or processing."""
        await self._idle.wait()

    async def close(self) -> None:
        """Stops the runner and tears the batch down."""
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self._in_flight = None
        self.reset()

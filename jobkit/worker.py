import asyncio
import logging
import signal
from typing import Optional

from .errors import JobOutcomeError, MalformedJob
from .executor import JobExecutor
from .storage import JobStorage

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def setup_signal_handlers(stop: asyncio.Event) -> bool:
    loop = asyncio.get_running_loop()

    def _handler(signum):
        logger.info("[Main] Received signal %s. Stopping workers", signum)
        stop.set()

    for sig in _SIGNALS:
        try:
            loop.add_signal_handler(sig, _handler, sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # not on the main thread, or no signal support (Windows)
            remove_signal_handlers()
            return False
    return True


def remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in _SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            pass


class JobProcessor:
    """Claims and executes one job at a time until ``stop`` is set.

    Run several processors against the same storage for concurrency; the
    storage's atomic claim keeps them from running the same job twice.
    """

    def __init__(
        self,
        storage: JobStorage,
        executor: JobExecutor,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        name: str = "worker-1",
    ):
        self.storage = storage
        self.executor = executor
        self.poll_interval = poll_interval
        self.name = name

    async def process(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                job = await self.storage.dequeue()
            except MalformedJob as e:
                logger.error("[%s] Couldn't dequeue job %s: %s", self.name, e.job_id, e.reason)
                await self._repair()
                await self._backoff(stop)
                continue
            except Exception:
                logger.exception("[%s] Couldn't dequeue a job to run.", self.name)
                await self._backoff(stop)
                continue

            if job is None:
                await self._backoff(stop)
                continue

            logger.debug("[%s] Executing job %s (%s)", self.name, job.id, job.job_type)
            try:
                await self.executor.execute(job)
            except JobOutcomeError as e:
                logger.critical(
                    "[%s] Outcome of job %s was not recorded; it stays processing until re-queued",
                    self.name,
                    e.job_id,
                    exc_info=True,
                )
            except Exception:
                logger.exception("[%s] Problem executing job %s.", self.name, job.id)

        logger.info("[%s] Worker stopped.", self.name)

    async def _repair(self) -> None:
        try:
            await self.storage.repair_corrupt()
        except Exception:
            logger.exception("[%s] Couldn't remove problematic jobs.", self.name)

    async def _backoff(self, stop: asyncio.Event) -> None:
        """Wait ``poll_interval`` seconds, returning early once ``stop`` is set."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass


async def run_workers(
    storage: JobStorage,
    executor: JobExecutor,
    count: int = 1,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """Recover orphans, then run ``count`` processors until stopped."""
    if count < 1:
        raise ValueError("count must be >= 1")
    stop = stop if stop is not None else asyncio.Event()

    # must finish before any processor claims a job
    await storage.requeue_orphaned()
    removed = await storage.repair_corrupt()
    if removed:
        logger.warning("[System] Removed %d problematic job(s): %s", len(removed), removed)

    handlers_installed = setup_signal_handlers(stop)
    processors = [
        JobProcessor(storage, executor, poll_interval, name=f"worker-{i + 1}")
        for i in range(count)
    ]
    for p in processors:
        logger.info("[System] Started %s", p.name)

    try:
        await asyncio.gather(*(p.process(stop) for p in processors))
    finally:
        stop.set()
        if handlers_installed:
            remove_signal_handlers()
    logger.info("[System] All workers stopped gracefully.")

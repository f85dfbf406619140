import inspect
import logging
from typing import Optional

from .errors import JobOutcomeError, SubscriberError
from .models import JobTask
from .registry import JobRegistry
from .storage import JobStorage

logger = logging.getLogger(__name__)


class JobExecutor:
    """Runs one claimed job and records its outcome in storage.

    Handler exceptions become ``mark_failed``. If the outcome itself cannot
    be recorded, ``JobOutcomeError`` is raised: the job is then stuck in
    processing until the next ``requeue_orphaned``.
    """

    def __init__(self, storage: JobStorage, registry: Optional[JobRegistry] = None):
        self.storage = storage
        self.registry = registry if registry is not None else storage.registry

    async def execute(self, job: JobTask) -> None:
        job_error = None
        try:
            async with self.registry.scope(job.job_type) as handler:
                result = handler.run(job.data)
                if inspect.isawaitable(result):
                    await result
        except Exception as e:
            job_error = e
            logger.exception("Couldn't run job %s (%s) with %r", job.id, job.job_type, job.data)

        try:
            if job_error is None:
                await self.storage.mark_succeeded(job.id)
                logger.info("Job %s (%s) succeeded", job.id, job.job_type)
            else:
                await self.storage.mark_failed(job.id, job_error)
        except SubscriberError as e:
            # outcome is already committed; only a listener misbehaved
            logger.warning("Job %s outcome recorded but event delivery failed: %s", job.id, e)
        except Exception as e:
            raise JobOutcomeError(
                job.id, f"Error marking job {job.id} as succeeded/failed: {e}"
            ) from e

"""Job lifecycle events.

Each storage owns a ``JobEvents`` channel with three topics. Publishing
awaits every subscriber; subscriber faults are collected and raised back
to the publisher as a single ``SubscriberError`` once all have run.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

from .errors import SubscriberError
from .models import JobTask

logger = logging.getLogger(__name__)


@dataclass
class JobEnqueuedEvent:
    job: JobTask


@dataclass
class JobSucceededEvent:
    job: JobTask


@dataclass
class JobFailedEvent:
    job: JobTask
    error: BaseException


Subscriber = Callable[[object], Union[None, Awaitable[None]]]


class AsyncEvent:
    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Subscriber:
        """Add a subscriber. Returns it so this can be used as a decorator."""
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)

    async def publish(self, event) -> None:
        # snapshot so subscribers may unsubscribe while being notified
        subscribers = list(self._subscribers)
        if not subscribers:
            return

        results = await asyncio.gather(
            *(self._invoke(cb, event) for cb in subscribers),
            return_exceptions=True,
        )
        for r in results:
            # cancellation and interpreter exits are not subscriber faults
            if isinstance(r, BaseException) and not isinstance(r, Exception):
                raise r
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            logger.warning("%d subscriber(s) of %s failed", len(errors), self.name)
            raise SubscriberError(self.name, errors)

    @staticmethod
    async def _invoke(callback: Subscriber, event) -> None:
        result = callback(event)
        if inspect.isawaitable(result):
            await result


class JobEvents:
    """The publish/subscribe channel a storage reports lifecycle changes on."""

    def __init__(self):
        self.enqueued = AsyncEvent("job_enqueued")
        self.succeeded = AsyncEvent("job_succeeded")
        self.failed = AsyncEvent("job_failed")

    def close(self) -> None:
        for topic in (self.enqueued, self.succeeded, self.failed):
            topic.clear()

    async def publish_enqueued(self, job: JobTask) -> None:
        await self.enqueued.publish(JobEnqueuedEvent(job))

    async def publish_succeeded(self, job: JobTask) -> None:
        await self.succeeded.publish(JobSucceededEvent(job))

    async def publish_failed(self, job: JobTask, error: Optional[BaseException]) -> None:
        await self.failed.publish(JobFailedEvent(job, error))

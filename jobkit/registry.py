"""Registry mapping stored type ids to job handlers and payload types."""

import dataclasses
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from .errors import PayloadDecodeError, UnknownJobType, UnknownPayloadType

logger = logging.getLogger(__name__)


class PayloadType:
    """Encodes and decodes one payload shape as JSON.

    ``cls`` is either ``dict`` or a dataclass. Decoding validates field
    types, nested dataclasses and tuples through pydantic; unknown fields
    are ignored.
    """

    def __init__(self, cls: type, type_id: Optional[str] = None):
        if cls is not dict and not dataclasses.is_dataclass(cls):
            raise TypeError(f"Payload type must be dict or a dataclass, got {cls!r}")
        self.cls = cls
        self.type_id = type_id or (
            "dict" if cls is dict else f"{cls.__module__}.{cls.__qualname__}"
        )
        if cls is dict:
            self._adapter = TypeAdapter(Dict[str, Any])
        else:
            self._adapter = TypeAdapter(cls)

    def describe(self) -> str:
        return self.type_id

    def encode(self, data: Any) -> str:
        if not isinstance(data, self.cls):
            raise TypeError(f"Expected {self.type_id} payload, got {type(data).__name__}")
        return self._adapter.dump_json(data).decode()

    def decode(self, text: str) -> Any:
        try:
            return self._adapter.validate_json(text)
        except ValidationError as e:
            raise PayloadDecodeError(f"Cannot build {self.type_id}: {e}")

    def __repr__(self) -> str:
        return f"PayloadType({self.type_id!r})"


@dataclass
class JobRegistration:
    job_type: str
    factory: Callable[[], Any]
    payload_type: PayloadType


class JobRegistry:
    def __init__(self):
        self._jobs: Dict[str, JobRegistration] = {}
        self._payloads: Dict[str, PayloadType] = {}

    def register(
        self,
        job_type: str,
        factory: Callable[[], Any],
        payload_type: type = dict,
        payload_type_id: Optional[str] = None,
    ) -> JobRegistration:
        """Register a handler factory and its payload shape under ``job_type``."""
        if not job_type or not job_type.strip():
            raise ValueError("Job type cannot be empty.")

        payload = PayloadType(payload_type, payload_type_id)
        existing = self._payloads.get(payload.type_id)
        if existing is not None and existing.cls is not payload.cls:
            raise ValueError(f"Payload type id {payload.type_id!r} already names {existing.cls!r}")
        self._payloads.setdefault(payload.type_id, payload)

        registration = JobRegistration(job_type, factory, self._payloads[payload.type_id])
        self._jobs[job_type] = registration
        logger.debug("registered job type %s (payload %s)", job_type, payload.type_id)
        return registration

    def unregister(self, job_type: str) -> None:
        self._jobs.pop(job_type, None)

    def update(self, other: "JobRegistry") -> None:
        for registration in other._jobs.values():
            self.register(
                registration.job_type,
                registration.factory,
                registration.payload_type.cls,
                registration.payload_type.type_id,
            )

    def list(self) -> List[str]:
        return sorted(self._jobs)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._jobs

    def resolve(self, job_type: str) -> JobRegistration:
        try:
            return self._jobs[job_type]
        except KeyError:
            raise UnknownJobType(job_type)

    def resolve_payload(self, type_id: str) -> PayloadType:
        try:
            return self._payloads[type_id]
        except KeyError:
            raise UnknownPayloadType(type_id)

    def payload_type_for(self, job_type: str, data: Any) -> PayloadType:
        payload = self.resolve(job_type).payload_type
        if not isinstance(data, payload.cls):
            raise TypeError(
                f"Job type {job_type!r} expects {payload.type_id} payloads, "
                f"got {type(data).__name__}"
            )
        return payload

    @asynccontextmanager
    async def scope(self, job_type: str):
        """Create a handler for one invocation and release it afterwards.

        A fault while releasing is logged, never raised, so it cannot
        replace the outcome of the run itself.
        """
        handler = self.resolve(job_type).factory()
        try:
            yield handler
        finally:
            await self._release(job_type, handler)

    @staticmethod
    async def _release(job_type: str, handler: Any) -> None:
        close = getattr(handler, "aclose", None) or getattr(handler, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Couldn't release %s handler %r", job_type, handler)

from dataclasses import dataclass, field
from typing import Any

from .utils import now_iso

# Job States
QUEUED = "queued"
PROCESSING = "processing"

STATES = (QUEUED, PROCESSING)


@dataclass
class JobRecord:
    id: int
    job_type: str
    job_data_type: str
    job_data: str
    status: str = QUEUED
    queued_on: str = field(default_factory=now_iso)


@dataclass
class JobTask:
    """A claimed or listed job with its payload decoded. Never stored."""
    id: int
    job_type: str
    data: Any

"""Exception hierarchy for jobkit."""


class JobKitError(Exception):
    """Base exception for jobkit."""


class StorageFault(JobKitError):
    """The storage medium could not be reached or a write could not commit."""


class InvalidJobState(JobKitError):
    """A job outcome was recorded for a job that is absent or not processing."""

    def __init__(self, job_id: int, message: str):
        self.job_id = job_id
        super().__init__(message)


class MalformedJob(JobKitError):
    """A stored job whose type ids cannot be resolved or whose payload cannot be decoded."""

    def __init__(self, job_id: int, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} is malformed: {reason}")


class UnknownJobType(JobKitError, LookupError):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Invalid job type: {job_type}")


class UnknownPayloadType(JobKitError, LookupError):
    def __init__(self, payload_type: str):
        self.payload_type = payload_type
        super().__init__(f"Invalid job data type: {payload_type}")


class PayloadDecodeError(JobKitError, ValueError):
    pass


class JobOutcomeError(JobKitError):
    """Marking a job as succeeded/failed failed; the job stays processing."""

    def __init__(self, job_id: int, message: str):
        self.job_id = job_id
        super().__init__(message)


class SubscriberError(JobKitError):
    """One or more event subscribers raised while an event was published."""

    def __init__(self, event_name: str, errors):
        self.event_name = event_name
        self.errors = list(errors)
        details = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} subscriber(s) of {event_name!r} failed: {details}")


class CommandFailed(JobKitError):
    def __init__(self, command: str, returncode: int, message: str):
        self.command = command
        self.returncode = returncode
        super().__init__(message)

class DispatchError(Exception):
    """Base class for every error raised by the relay pipeline."""


class QueueUnavailable(DispatchError):
    """The Redis backing store could not be reached. Retry with your own backoff."""


class NotFound(DispatchError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(DispatchError):
    def __init__(self, job_id: str, state, wanted):
        super().__init__(f"job {job_id} is {state}, cannot move to {wanted}")
        self.job_id = job_id
        self.state = state
        self.wanted = wanted


class StaleLease(InvalidTransition):
    """The caller's lease was reaped and the job handed to someone else."""

    def __init__(self, job_id: str, wanted):
        DispatchError.__init__(self, f"job {job_id} is leased by another holder, cannot move to {wanted}")
        self.job_id = job_id
        self.state = "ACTIVE"
        self.wanted = wanted


class InvalidJob(DispatchError):
    """Rejected at enqueue time (blank recipient or subject, bad attempt limit)."""


class ActionError(DispatchError):
    """The browser action failed: launch, navigation, evaluation or timeout."""


class LeaseExpired(ActionError):
    """A worker held a lease past its expiry without resolving the job."""

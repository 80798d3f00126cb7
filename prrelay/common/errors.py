"""
Error Taxonomy

Every failure that crosses a component boundary is one of these classes.
The worker endpoint decides between "ack" and "redeliver" purely from the
class of the exception, never from its message text.

- AuthenticationError: bad/missing signature or credential (reject, no retry)
- ValidationError: malformed payload or job (reject, no retry)
- ConfigurationError: nothing to deliver to, repo disabled (drop, no retry)
- TransientExternalError: timeouts, rate limits, 5xx (retry)
- PermanentExternalError: channel gone, token revoked (drop loudly, no retry)
- AlreadySatisfiedError: reaction already present/absent (success)
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all PR relay errors"""

    retryable: bool = False


class AuthenticationError(RelayError):
    """Signature or shared-secret verification failed"""


class ValidationError(RelayError):
    """Payload or job envelope is malformed"""


class ConfigurationError(RelayError):
    """The event cannot be delivered because of a configuration gap"""


class NoChannelConfiguredError(ConfigurationError):
    """No annotation, user default, or repo default channel applies"""


class RepoDisabledError(ConfigurationError):
    """Repository is registered but processing is switched off"""


class TransientExternalError(RelayError):
    """A collaborator failed in a way that may succeed on retry"""

    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class QueueError(TransientExternalError):
    """The durable task queue rejected or timed out an enqueue"""


class PermanentExternalError(RelayError):
    """A collaborator failed in a way retrying will not fix"""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class AlreadySatisfiedError(RelayError):
    """The requested chat mutation is already in effect"""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class InvalidStateError(RelayError):
    """OAuth state token is missing, expired, consumed, or superseded"""


class IdentityMismatchError(RelayError):
    """The identity returned by GitHub does not have the expected shape"""


def is_retryable(error: BaseException) -> bool:
    """
    Classify an exception raised while processing a job.

    asyncio/httpx timeouts surface as TimeoutError and are retryable; anything
    outside the taxonomy is treated as non-retryable so a programming error
    cannot pin a job in the queue until its attempt ceiling.
    """
    if isinstance(error, RelayError):
        return error.retryable
    return isinstance(error, TimeoutError)

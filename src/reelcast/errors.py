"""Error taxonomy for the orchestration core.

Provider clients and stores raise these; handlers classify them into
``HandlerResult`` failures before anything reaches the queue bookkeeping.
"""


class ReelcastError(Exception):
    """Base class for all orchestration errors."""


class TransientProviderError(ReelcastError):
    """Network failure, timeout, 429 or 5xx from an external provider. Retried."""


class PollTimeout(TransientProviderError):
    """A single status poll request timed out."""


class TerminalProviderError(ReelcastError):
    """The provider explicitly reported failure for a task or request."""


class DataIntegrityError(ReelcastError):
    """Referenced record is missing or in a state that forbids the operation. Not retried."""


class VideoNotFound(DataIntegrityError):
    """The referenced video record does not exist."""


class InvalidTransition(DataIntegrityError):
    """A video status change that the lifecycle does not allow."""

    def __init__(self, video_id: str, from_status: str, to_status: str):
        self.video_id = video_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Video {video_id}: illegal status transition {from_status} -> {to_status}"
        )


class CredentialNotFound(DataIntegrityError):
    """A publish credential reference could not be resolved."""


class StorageUnavailable(ReelcastError):
    """The queue backing store cannot be reached. Never silently dropped."""

"""Exception hierarchy for the channel archiver.

Errors are split into retryable and non-retryable branches. Only the batch
orchestrator retries across calls; lower layers raise and let it decide.
"""


class ArchiverError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(ArchiverError):
    """Errors that may succeed on a later attempt (network, provider hiccups)."""

    pass


class NonRetryableError(ArchiverError):
    """Errors that cannot succeed without a change of input or external action."""

    pass


class ValidationError(NonRetryableError):
    """Missing or malformed input, e.g. no channel selected."""

    pass


class NotFoundError(NonRetryableError):
    """A message or channel can no longer be resolved at the source."""

    pass


class CredentialError(NonRetryableError):
    """The Telegram session is missing, expired or needs a second factor.

    Fatal for a whole archive cycle: retrying cannot help until someone
    re-authenticates.
    """

    pass


class InvalidTransitionError(NonRetryableError):
    """A media status change that the lifecycle does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal media status transition: {current} -> {target}")


class RateLimitError(RetryableError):
    """Provider rate limit hit; ``retry_after`` carries the suggested wait."""

    def __init__(self, retry_after: int | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class DownloadTimeoutError(RetryableError):
    """A media download did not finish within its time budget."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Download timed out after {timeout_seconds:g}s")


class PullError(RetryableError):
    """Fetching messages from the external source failed."""

    pass


class BlobStoreError(RetryableError):
    """Blob storage read or write failed."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass

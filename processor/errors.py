"""Exception taxonomy for the calendar sync pipeline."""
from typing import Optional


class SyncError(Exception):
    """Base class for all pipeline errors."""


class ParseError(SyncError):
    """A single provider record could not be turned into an Event."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class FetchError(SyncError):
    """The primary feed could not be fetched or decoded."""


class NetworkError(FetchError):
    """The feed request did not complete (connection failure or timeout)."""


class UnexpectedStatusError(FetchError):
    """The feed endpoint answered with a non-success status code."""

    def __init__(self, status_code: int, url: str = ''):
        super().__init__(f"Unexpected HTTP status {status_code} from {url}")
        self.status_code = status_code
        self.url = url


class MalformedBodyError(FetchError):
    """The feed body is not a decodable event listing."""


class EnrichmentError(SyncError):
    """Per-event detail lookup failed."""

    retryable = False

    def __init__(self, message: str, slug: Optional[str] = None):
        super().__init__(message)
        self.slug = slug


class ThrottledError(EnrichmentError):
    """The detail endpoint signalled that the caller is rate limited."""

    retryable = True

    def __init__(
        self,
        message: str,
        slug: Optional[str] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, slug)
        self.retry_after = retry_after


class EnrichmentTimeoutError(EnrichmentError):
    """The detail request timed out or the connection dropped."""

    retryable = True


class NotFoundError(EnrichmentError):
    """The detail endpoint does not know the slug."""


class ServerError(EnrichmentError):
    """The detail endpoint failed with a 5xx or other unexpected status."""

    def __init__(
        self,
        message: str,
        slug: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, slug)
        self.status_code = status_code


class MalformedDetailError(EnrichmentError):
    """The detail body could not be decoded."""


class StoreError(SyncError):
    """A storage operation failed."""

    def __init__(self, message: str):
        super().__init__(message)
        # Filled in when a batch or run is aborted part-way
        self.partial_result = None
        self.run_summary = None


class WriteConflictError(StoreError):
    """A conditional write lost a race against another writer."""

    def __init__(self, external_id: str):
        super().__init__(f"Conflicting write for event {external_id}")
        self.external_id = external_id


class ItemRejectedError(StoreError):
    """The store refused one item (too large or otherwise invalid)."""

    def __init__(self, external_id: str, reason: str):
        super().__init__(f"Store rejected event {external_id}: {reason}")
        self.external_id = external_id
        self.reason = reason

"""Error taxonomy for the tracking engine."""
from typing import Optional


class TrackerError(Exception):
    """Base class for all tracker errors."""

    kind = "tracker_error"


class UpstreamTransient(TrackerError):
    """Network, timeout or rate-limit failure; worth retrying."""

    kind = "upstream_transient"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamPermanent(TrackerError):
    """Record not found, expired, or a malformed response. Never retried."""

    kind = "upstream_permanent"

    def __init__(self, message: str, status: Optional[str] = None, attempts: int = 1):
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class CacheUnavailable(TrackerError):
    """Cache backend could not be reached."""

    kind = "cache_unavailable"


class StoreWriteFailure(TrackerError):
    """Durable write (history append / status update) failed."""

    kind = "store_write_failure"


class ChannelDeliveryFailure(TrackerError):
    """A notification channel could not deliver."""

    kind = "channel_delivery_failure"

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class UnknownRecord(TrackerError):
    """No tracked record exists for the identifier."""

    kind = "unknown_record"

    def __init__(self, pnr: str):
        super().__init__(f"PNR {pnr} is not tracked")
        self.pnr = pnr


class InvalidRecordId(TrackerError, ValueError):
    """Identifier is not a well-formed PNR."""

    kind = "invalid_record_id"


class InvalidBatch(TrackerError, ValueError):
    """Batch request is empty or references malformed/unknown identifiers."""

    kind = "invalid_batch"

"""Error taxonomy for the listing store and merge engines.

Every error carries the HTTP status the web layer answers with, so the
mapping lives next to the error rather than in each route.
"""

from typing import ClassVar


class StayMergeError(Exception):
    """Base class for all errors raised by staymerge."""

    status_code: ClassVar[int] = 500
    retryable: ClassVar[bool] = False


class LockTimeout(StayMergeError):
    """A listing is being modified by another request; try again later."""

    status_code = 409
    retryable = True

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"Listing {key!r} is locked by another operation (waited {timeout:.2f}s)")
        self.key = key
        self.timeout = timeout


class ListingNotFound(StayMergeError):
    """No folder/record exists for the referenced listing id."""

    status_code = 404

    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing not found: {listing_id}")
        self.listing_id = listing_id


class InvalidInput(StayMergeError):
    """Malformed payload, URL, coordinates or path, rejected before mutation."""

    status_code = 400


class CapabilityUnavailable(StayMergeError):
    """A fingerprint backend or scraper needed for the call is disabled or failed to load."""

    status_code = 503


class PartialIO(StayMergeError):
    """A single image read/copy/download failed. Callers log it and skip the image."""

    status_code = 500


class PersistenceFailure(StayMergeError):
    """Writing a listing record failed."""

    status_code = 500

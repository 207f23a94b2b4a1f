"""Custom exception classes for the harvester pipeline."""

from typing import Optional


class HarvesterException(Exception):
    """Base exception for all harvester errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class UnknownAdapter(HarvesterException):
    """Raised when no adapter is registered under the requested id."""

    def __init__(self, site_id: str):
        self.site_id = site_id
        super().__init__(f"No adapter registered for '{site_id}'")


class DuplicateAdapter(HarvesterException):
    """Raised when registering an adapter whose id or domain is already claimed."""

    def __init__(self, site_id: str, reason: str = "already registered"):
        self.site_id = site_id
        super().__init__(f"Adapter '{site_id}' cannot be registered: {reason}")


class InvalidManifest(HarvesterException):
    """Raised when an adapter manifest fails registration checks."""

    def __init__(self, site_id: str, reason: str):
        self.site_id = site_id
        super().__init__(f"Invalid manifest for '{site_id}': {reason}")


class InvalidUrl(HarvesterException):
    """Raised when a URL cannot be parsed or is not http(s)."""

    def __init__(self, url: str, reason: str = "unparsable"):
        self.url = url
        super().__init__(f"Invalid URL '{url}': {reason}")


class OutOfScopeUrl(HarvesterException):
    """Raised when a URL does not belong to the adapter's base URLs."""

    def __init__(self, url: str, reason: str = "host not in adapter base URLs"):
        self.url = url
        super().__init__(f"URL out of scope '{url}': {reason}")


class RobotsDisallowed(HarvesterException):
    """Raised when robots.txt forbids fetching a URL."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Disallowed by robots.txt: {url}")


class FetchFailed(HarvesterException):
    """Raised when a single fetch attempt fails.

    ``status`` is the HTTP status code, or None for transport errors.
    """

    RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(self, url: str, status: Optional[int], reason: str):
        self.url = url
        self.status = status
        self.reason = reason
        super().__init__(f"Fetch failed for {url}: status={status} reason={reason}")

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status in self.RETRYABLE_STATUSES


class RateLimiterUnavailable(HarvesterException):
    """Raised when the coordination store backing rate limits cannot be reached."""

    def __init__(self, message: str = "Coordination store unavailable"):
        super().__init__(message)

# presence_sync/errors.py
from pypresence.exceptions import PyPresenceException


class SourceUnavailable(Exception):
    """The media player could not be queried (not installed, not running, script failed)."""


class ArtworkLookupError(Exception):
    """The artwork search failed, timed out or returned something unusable."""


class ArtworkRateLimited(ArtworkLookupError):
    def __init__(self, provider: str, status_code: int):
        super().__init__(f"{provider} rate limited the lookup (HTTP {status_code})")
        self.provider = provider
        self.status_code = status_code


class ProtocolViolation(PyPresenceException):
    """The presence service sent something the IPC protocol does not allow."""

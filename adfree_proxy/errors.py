"""Failure types raised inside the mediation pipeline.

Only ``UpstreamConnectError`` ever reaches a client (as a gateway error).
The others are soft failures: callers log them and degrade.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for pipeline failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BlocklistFetchError(ProxyError):
    """The remote blocklist could not be fetched or parsed."""


class CookieParseError(ProxyError):
    """A Set-Cookie header or cookie-file line could not be parsed."""

    def __init__(self, message: str, line: Optional[str] = None):
        self.line = line
        super().__init__(message)


class CookieStoreWriteError(ProxyError):
    """The cookie jar could not be written to durable storage."""


class ContentRewriteError(ProxyError):
    """A response body transform failed; the original bytes are used."""


class UpstreamConnectError(ProxyError):
    """The upstream could not be reached or stopped responding."""

    def __init__(self, message: str, kind: str = "connect", status_code: int = 502):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

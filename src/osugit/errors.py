"""
Error taxonomy for the osugit scrape-and-commit pipeline.

- AuthError: the credential exchange failed
- UpstreamError: a search or download call answered non-success (or not at all)
- CommitError: a history could not be created or written
- IngestError: one record failed; wraps any of the above
"""

from typing import Optional


class OsugitError(Exception):
    """Base class for every error raised by osugit."""


class ConfigError(OsugitError):
    """Settings are missing or invalid."""


class AuthError(OsugitError):
    """The token endpoint was unreachable or refused the client credentials."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamError(OsugitError):
    """
    The catalog API answered with a non-success status or a body we could not parse.

    `status` is None when the request never got a response (connect error, timeout).
    """

    def __init__(self, status: Optional[int], body: str = "", url: str = ""):
        self.status = status
        self.body = body
        self.url = url
        detail = body[:200] if body else "no body"
        super().__init__(f"upstream error {status} for {url or 'request'}: {detail}")


class CommitError(OsugitError):
    """A history could not be initialised, staged or committed."""


class IngestError(OsugitError):
    """One record could not be ingested. Siblings in the same cycle are unaffected."""

    def __init__(self, record_id: int, cause: Exception):
        self.record_id = record_id
        self.cause = cause
        super().__init__(f"record {record_id}: {cause}")

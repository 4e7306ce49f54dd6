#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Errors!
Failures a fetch can end with. Throttling and mid-fetch token expiry are
recovered inside the engine; the rest abort the report being collected.
"""


class EntraIrError(Exception):
    """Base class for every error raised by the fetch engine."""

    def __init__(self, message, url=None, status=None):
        super().__init__(message)
        self.message = message
        self.url = url
        self.status = status

    def __str__(self):
        if self.status is not None:
            return f"{self.message} (HTTP {self.status})"
        return self.message


class TokenUnavailable(EntraIrError):
    """No access token could be obtained for the tenant."""


class TokenExpiredMidFetch(TokenUnavailable):
    """A 401 arrived after earlier pages succeeded and the token refresh failed."""


class PermissionDenied(EntraIrError):
    """403, or a 401 before any page of the fetch succeeded."""


class InvalidQuery(EntraIrError):
    """400. The filter or URL is malformed."""


class Throttled(EntraIrError):
    """429, 503 or 504. Retried with a fixed delay and never raised to callers."""


class RequestFailed(EntraIrError):
    """The bounded retry budget for unclassified failures ran out."""

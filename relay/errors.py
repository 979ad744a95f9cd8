# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Relay error taxonomy.

``kind`` tells a UI what to do with the failure (open settings, offer a
retry, show a correction hint); ``code`` is the stable machine-readable id
carried by error events and error envelopes; ``http_status`` is used by the
non-streaming endpoint only.
"""

from __future__ import annotations


class RelayError(Exception):
    kind = "internal"
    code = "internal_error"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(RelayError):
    """Missing credentials or settings; raised before any upstream call."""
    kind = "configuration"
    code = "configuration_error"
    http_status = 400


class ValidationError(RelayError):
    """Empty query, unknown prompt or profile id."""
    kind = "validation"
    code = "invalid_request"
    http_status = 400


class UpstreamSearchError(RelayError):
    kind = "upstream"
    code = "search_failed"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamCompletionError(RelayError):
    kind = "upstream"
    code = "completion_failed"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class KVStoreError(RelayError):
    kind = "upstream"
    code = "kv_write_failed"


class AuthenticationError(RelayError):
    kind = "auth"
    code = "unauthorized"
    http_status = 401


class RateLimitExceeded(RelayError):
    kind = "rate_limit"
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after

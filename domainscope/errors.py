# domainscope/errors.py
"""
Error taxonomy for the scan pipeline.

Fatal (raised to the caller before any probe runs):
    InvalidTarget       - target string fails domain/IP grammar
    RateLimitExceeded   - client exceeded its request window

Per-probe (caught inside BaseProbe.run and recorded on the ProbeResult):
    NetworkError        - transient, retried with backoff, then Failed
    NetworkTimeout      - one network call timed out, retried, then TimedOut
    PermanentError      - cannot succeed for this target, fails fast
    ParseError          - response unusable in part, PartialData
    ProbeTimeout        - probe deadline exhausted or scan cancelled
"""

from __future__ import annotations

from typing import Any, Optional


class DomainScopeError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(DomainScopeError):
    """Reference data or settings are malformed."""


class InvalidTarget(DomainScopeError):
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Invalid target {target!r}: {reason}")


class RateLimitExceeded(DomainScopeError):
    def __init__(self, client_id: str, limit: int, window: float, retry_after: float):
        self.client_id = client_id
        self.limit = limit
        self.window = window
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Rate limit exceeded for {client_id}: {limit} requests per "
            f"{window:g}s (retry after {self.retry_after:.1f}s)"
        )


# ---------------------------------------------------------------------------
# Probe-local errors
# ---------------------------------------------------------------------------

class ProbeError(DomainScopeError):
    """Base for errors that stay inside a single probe."""


class NetworkError(ProbeError):
    """Transient network failure. Eligible for retry."""


class NetworkTimeout(NetworkError):
    """A single network call exceeded its per-call timeout."""


class PermanentError(ProbeError):
    """The probe cannot succeed for this target. Never retried."""


class ProbeTimeout(ProbeError):
    """The probe's deadline expired or the scan was cancelled."""


class ParseError(ProbeError):
    """
    The response could only be partly understood.

    `partial` carries whatever payload could still be built so the probe
    reports PartialData instead of discarding it.
    """

    def __init__(self, message: str, partial: Optional[Any] = None):
        super().__init__(message)
        self.partial = partial

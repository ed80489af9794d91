# domainscope/scanner/base.py
"""
Base classes for the probe pipeline.

Architecture:
    ScanContext flows through:  Probes → Scorer → RecommendationEngine

BaseProbe:  Collects one category of facts about the target (DNS, WHOIS,
            TLS, ...). Probes NEVER score or judge; they only gather and
            parse. run() wraps collect() and turns every outcome into a
            ProbeResult, so a probe can never take the scan down with it.

Deadline:   Monotonic expiry plus a shared cancellation Event. The
            orchestrator owns the scan deadline; every probe gets a child
            that expires no later than its parent and shares its Event, so
            one cancel() reaches every in-flight network call.

ScanContext: Target, settings, reference data and the injectable services
            (cache, clock, network clients). Read-only for probes.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Tuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from domainscope.cache import TTL, TTLCache, make_key
from domainscope.config import ReferenceData, Settings
from domainscope.errors import (
    NetworkError,
    NetworkTimeout,
    ParseError,
    PermanentError,
    ProbeTimeout,
)
from domainscope.scanner.models import ErrorKind, ProbeErrorInfo, ProbeKind, ProbeResult, ProbeStatus
from domainscope.scanner.network import NetworkClients
from domainscope.target import Target
from domainscope.utils.clock import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

# Shortest timeout handed to a socket or resolver; below this, calls fail
# spuriously instead of timing out cleanly
MIN_CALL_TIMEOUT = 0.05


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------

class Deadline:
    def __init__(
        self,
        seconds: float,
        clock: Optional[Clock] = None,
        cancel_event: Optional[threading.Event] = None,
        expires_at: Optional[float] = None,
    ):
        self.clock = clock or SYSTEM_CLOCK
        self._cancel = cancel_event or threading.Event()
        self.expires_at = expires_at if expires_at is not None else self.clock.monotonic() + seconds

    def child(self, seconds: float) -> "Deadline":
        """A deadline no later than this one that shares its cancellation."""
        return Deadline(
            seconds,
            clock=self.clock,
            cancel_event=self._cancel,
            expires_at=min(self.expires_at, self.clock.monotonic() + seconds),
        )

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def remaining(self) -> float:
        if self._cancel.is_set():
            return 0.0
        return max(0.0, self.expires_at - self.clock.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, what: str = "probe") -> None:
        if self._cancel.is_set():
            raise ProbeTimeout(f"{what} cancelled")
        if self.expired():
            raise ProbeTimeout(f"{what} deadline exceeded")

    def bound(self, per_call: float) -> float:
        """Per-call timeout capped by the time left. Raises once expired."""
        self.check()
        return max(MIN_CALL_TIMEOUT, min(per_call, self.remaining()))

    def sleep(self, seconds: float) -> None:
        """Backoff sleep that wakes on cancel and never outlives the deadline."""
        if seconds <= 0:
            self.check()
            return
        left = self.remaining()
        if seconds >= left:
            self._cancel.wait(left)
            raise ProbeTimeout("deadline exceeded during backoff")
        if self._cancel.wait(seconds):
            raise ProbeTimeout("cancelled during backoff")


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScanContext:
    """
    Everything a probe needs, passed explicitly.

    Probes read from it and never write to it; all shared mutable state
    lives behind the cache's lock.
    """
    target: Target
    settings: Settings
    data: ReferenceData
    cache: TTLCache
    deadline: Deadline
    network: NetworkClients = field(default_factory=NetworkClients)
    clock: Clock = SYSTEM_CLOCK

    def for_probe(self, timeout: float) -> "ScanContext":
        return replace(self, deadline=self.deadline.child(timeout))

    def cached(self, kind: str, fetch: Callable[[], Any], ttl: TTL = None, **params: Any) -> Tuple[Any, bool]:
        """Single-flight cache lookup for this target. Returns (value, hit)."""
        key = make_key(kind, self.target.value, **params)
        return self.cache.get_or_fetch(key, fetch, ttl=ttl, wait_timeout=self.deadline.remaining())

    def with_retries(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Call fn, retrying NetworkError with exponential backoff.

        Attempts stop at settings.retry_attempts or when the scan is
        cancelled; backoff sleeps go through the deadline so they can be
        interrupted.
        """
        retryer = Retrying(
            stop=stop_after_attempt(self.settings.retry_attempts) | stop_when_event_set(self.deadline.cancel_event),
            wait=wait_exponential(multiplier=self.settings.retry_backoff, max=self.settings.retry_backoff_max),
            retry=retry_if_exception_type(NetworkError),
            sleep=self.deadline.sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        return retryer(fn, *args, **kwargs)


# ---------------------------------------------------------------------------
# Probe contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Collected:
    """What collect() hands back to run(): the payload and any warnings."""
    data: Any
    warnings: Tuple[str, ...] = ()
    cached: bool = False


def complete_only(value: Any, ttl: float) -> float:
    """TTL that skips caching results collected with warnings."""
    if isinstance(value, Collected) and value.warnings:
        return 0
    return ttl


class BaseProbe(ABC):
    """
    Abstract base for probes.

    To create a new probe:
        1. Subclass BaseProbe
        2. Set `kind` to a ProbeKind
        3. Implement `collect(ctx) -> Collected`
        4. Optionally narrow `supported_target_kinds`

    The base class handles automatically:
        - Per-probe deadline derived from settings.probe_timeouts
        - Timing (latency_ms is set automatically)
        - Error classification (exceptions become a ProbeResult)
        - Target kind validation (domain-only probes skip IP targets)
    """

    kind: ProbeKind
    supported_target_kinds: Tuple[str, ...] = ("domain", "ip")

    @property
    def name(self) -> str:
        return self.kind.value

    def can_run(self, ctx: ScanContext) -> bool:
        return ctx.target.kind in self.supported_target_kinds

    def run(self, ctx: ScanContext, timeout: Optional[float] = None) -> ProbeResult:
        """
        Execute the probe with timing, deadline and error handling.

        DO NOT OVERRIDE THIS METHOD. Override `collect()` instead.

        Returns ProbeResult, always, even on failure.
        """
        if not self.can_run(ctx):
            return ProbeResult(
                kind=self.kind,
                status=ProbeStatus.FAILED,
                error=ProbeErrorInfo(
                    ErrorKind.PERMANENT,
                    f"Probe '{self.name}' does not support {ctx.target.kind} targets",
                ),
            )

        if timeout is None:
            timeout = ctx.settings.probe_timeout(self.name)
        pctx = ctx.for_probe(timeout)
        start = ctx.clock.monotonic()

        status = ProbeStatus.FAILED
        data = None
        warnings: Tuple[str, ...] = ()
        error: Optional[ProbeErrorInfo] = None
        cached = False

        try:
            pctx.deadline.check(self.name)
            collected = self.collect(pctx)
            data, warnings, cached = collected.data, tuple(collected.warnings), collected.cached
            status = ProbeStatus.PARTIAL if warnings else ProbeStatus.SUCCESS
        except ParseError as e:
            data = e.partial
            warnings = (str(e),)
            status = ProbeStatus.PARTIAL if e.partial is not None else ProbeStatus.FAILED
            error = ProbeErrorInfo(ErrorKind.PARSE, str(e))
        except (ProbeTimeout, NetworkTimeout) as e:
            status = ProbeStatus.TIMED_OUT
            error = ProbeErrorInfo(ErrorKind.TIMEOUT, str(e))
        except PermanentError as e:
            error = ProbeErrorInfo(ErrorKind.PERMANENT, str(e))
        except NetworkError as e:
            error = ProbeErrorInfo(ErrorKind.NETWORK, str(e))
        except Exception as e:
            logger.exception(f"Probe '{self.name}' crashed for {ctx.target}")
            error = ProbeErrorInfo(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")

        latency_ms = round((ctx.clock.monotonic() - start) * 1000, 1)

        if status.has_data:
            logger.info(
                f"Probe '{self.name}' {status.value} for {ctx.target} in {latency_ms}ms"
                + (" (cached)" if cached else "")
            )
        else:
            logger.warning(f"Probe '{self.name}' {status.value} for {ctx.target}: {error.message if error else ''}")

        return ProbeResult(
            kind=self.kind,
            status=status,
            data=data,
            latency_ms=latency_ms,
            error=error,
            warnings=warnings,
            cached=cached,
        )

    @abstractmethod
    def collect(self, ctx: ScanContext) -> Collected:
        """
        Gather and parse this probe's facts. Override in subclasses.

        Args:
            ctx: ScanContext whose deadline is already narrowed to this
                 probe's timeout. Every network call must be bounded by
                 ctx.deadline.bound(...).

        Returns:
            Collected with the typed payload. Warnings mark the result as
            PartialData.

        Raises:
            NetworkError, NetworkTimeout, PermanentError, ParseError,
            ProbeTimeout. Anything else is logged and recorded as an
            internal failure.
        """
        ...

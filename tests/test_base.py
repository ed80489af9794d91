"""Probe contract: deadlines, error classification and retries."""

from __future__ import annotations

from typing import List

import pytest

from domainscope.config import Settings
from domainscope.errors import (
    NetworkError,
    NetworkTimeout,
    ParseError,
    PermanentError,
    ProbeTimeout,
)
from domainscope.scanner.base import MIN_CALL_TIMEOUT, BaseProbe, Collected, Deadline, ScanContext
from domainscope.scanner.models import ErrorKind, ProbeKind, ProbeStatus

from conftest import FakeClock


class ScriptedProbe(BaseProbe):
    """Returns or raises whatever it was given."""
    kind = ProbeKind.HEADERS

    def __init__(self, outcome, advance: float = 0.0):
        self.outcome = outcome
        self.advance = advance

    def collect(self, ctx: ScanContext) -> Collected:
        if self.advance:
            ctx.clock.advance(self.advance)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


class DomainOnlyProbe(ScriptedProbe):
    kind = ProbeKind.WHOIS
    supported_target_kinds = ("domain",)


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------

def test_child_never_outlives_parent(clock: FakeClock) -> None:
    parent = Deadline(5, clock=clock)
    assert parent.child(2).remaining() == 2
    assert parent.child(60).remaining() == 5


def test_expiry_and_check(clock: FakeClock) -> None:
    parent = Deadline(5, clock=clock)
    child = parent.child(2)
    clock.advance(3)

    assert child.expired()
    with pytest.raises(ProbeTimeout):
        child.check()
    assert parent.remaining() == 2


def test_cancel_reaches_every_child(clock: FakeClock) -> None:
    parent = Deadline(5, clock=clock)
    a, b = parent.child(2), parent.child(3)
    a.cancel()

    assert parent.cancelled and b.cancelled
    assert b.remaining() == 0.0
    with pytest.raises(ProbeTimeout, match="cancelled"):
        b.check()


def test_bound_caps_per_call_timeout(clock: FakeClock) -> None:
    deadline = Deadline(5, clock=clock)
    assert deadline.bound(10) == 5
    assert deadline.bound(1) == 1

    clock.advance(4.99)
    assert deadline.bound(1) == pytest.approx(max(MIN_CALL_TIMEOUT, 0.01))

    clock.advance(1)
    with pytest.raises(ProbeTimeout):
        deadline.bound(1)


def test_sleep_on_cancelled_deadline_raises(clock: FakeClock) -> None:
    deadline = Deadline(5, clock=clock)
    deadline.cancel()
    with pytest.raises(ProbeTimeout):
        deadline.sleep(1)


# ---------------------------------------------------------------------------
# BaseProbe.run
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "error,status,kind",
    [
        (NetworkError("reset"), ProbeStatus.FAILED, ErrorKind.NETWORK),
        (NetworkTimeout("slow"), ProbeStatus.TIMED_OUT, ErrorKind.TIMEOUT),
        (ProbeTimeout("deadline"), ProbeStatus.TIMED_OUT, ErrorKind.TIMEOUT),
        (PermanentError("refused"), ProbeStatus.FAILED, ErrorKind.PERMANENT),
        (ParseError("garbled"), ProbeStatus.FAILED, ErrorKind.PARSE),
        (KeyError("oops"), ProbeStatus.FAILED, ErrorKind.INTERNAL),
    ],
)
def test_errors_become_results(make_ctx, error, status, kind) -> None:
    result = ScriptedProbe(error).run(make_ctx())
    assert result.status == status
    assert result.error.kind == kind
    assert result.data is None


def test_parse_error_with_partial_payload(make_ctx) -> None:
    result = ScriptedProbe(ParseError("half of it", partial={"title": "x"})).run(make_ctx())
    assert result.status == ProbeStatus.PARTIAL
    assert result.data == {"title": "x"}
    assert result.warnings == ("half of it",)


def test_warnings_mark_partial_data(make_ctx) -> None:
    result = ScriptedProbe(Collected("payload", warnings=("one query failed",))).run(make_ctx())
    assert result.status == ProbeStatus.PARTIAL
    assert result.ok


def test_success_records_latency(make_ctx) -> None:
    result = ScriptedProbe(Collected("payload"), advance=0.25).run(make_ctx())
    assert result.status == ProbeStatus.SUCCESS
    assert result.latency_ms == 250.0


def test_unsupported_target_kind(make_ctx) -> None:
    result = DomainOnlyProbe(Collected("payload")).run(make_ctx("192.0.2.1"))
    assert result.status == ProbeStatus.FAILED
    assert result.error.kind == ErrorKind.PERMANENT


def test_expired_scan_deadline_skips_collect(make_ctx, clock: FakeClock) -> None:
    deadline = Deadline(1, clock=clock)
    clock.advance(2)
    result = ScriptedProbe(Collected("never")).run(make_ctx(deadline=deadline))
    assert result.status == ProbeStatus.TIMED_OUT


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

def _flaky(failures: int, error: Exception, calls: List[int]):
    def call() -> str:
        calls.append(1)
        if len(calls) <= failures:
            raise error
        return "ok"
    return call


def test_retries_transient_errors(make_ctx) -> None:
    calls: List[int] = []
    ctx = make_ctx(settings=Settings(retry_attempts=3, retry_backoff=0.0, retry_backoff_max=0.0))
    assert ctx.with_retries(_flaky(2, NetworkError("reset"), calls)) == "ok"
    assert len(calls) == 3


def test_gives_up_after_max_attempts(make_ctx) -> None:
    calls: List[int] = []
    ctx = make_ctx(settings=Settings(retry_attempts=2, retry_backoff=0.0, retry_backoff_max=0.0))
    with pytest.raises(NetworkError):
        ctx.with_retries(_flaky(5, NetworkError("reset"), calls))
    assert len(calls) == 2


def test_permanent_errors_are_not_retried(make_ctx) -> None:
    calls: List[int] = []
    ctx = make_ctx(settings=Settings(retry_attempts=3, retry_backoff=0.0, retry_backoff_max=0.0))
    with pytest.raises(PermanentError):
        ctx.with_retries(_flaky(5, PermanentError("refused"), calls))
    assert len(calls) == 1


def test_cancellation_stops_retries(make_ctx, clock: FakeClock) -> None:
    calls: List[int] = []
    deadline = Deadline(5, clock=clock)
    deadline.cancel()
    ctx = make_ctx(
        settings=Settings(retry_attempts=5, retry_backoff=0.0, retry_backoff_max=0.0), deadline=deadline,
    )
    with pytest.raises(NetworkError):
        ctx.with_retries(_flaky(5, NetworkError("reset"), calls))
    assert len(calls) == 1

"""End-to-end scans over the fake network: report assembly, timeouts, deadlines, caching."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List

import dns.resolver
import pytest

from domainscope.config import DEFAULT_PROBE_TIMEOUTS, Settings
from domainscope.errors import InvalidTarget, ProbeTimeout, RateLimitExceeded
from domainscope.scanner.base import BaseProbe, Collected, ScanContext
from domainscope.scanner.models import (
    Category,
    ProbeKind,
    ProbeStatus,
    ScanReport,
    ScanState,
)
from domainscope.scanner.orchestrator import NullStatsSink, ScanOrchestrator, StatsSink
from domainscope.scanner.probes import DnsProbe, WhoisProbe

from conftest import FAST_SETTINGS, FakeNetwork, healthy_network


def _settings(**changes) -> Settings:
    return FAST_SETTINGS.with_overrides(**changes)


def _timeouts(**overrides: float) -> dict:
    timeouts = dict(DEFAULT_PROBE_TIMEOUTS)
    timeouts.update(overrides)
    return timeouts


class RecordingSink(StatsSink):
    def __init__(self):
        self.reports: List[ScanReport] = []

    def record(self, report: ScanReport) -> None:
        self.reports.append(report)


class StuckProbe(BaseProbe):
    """Ignores its deadline until released."""
    kind = ProbeKind.TLS

    def __init__(self, release: threading.Event):
        self.release = release

    def collect(self, ctx: ScanContext) -> Collected:
        self.release.wait(10)
        return Collected(None)


class CancelAwareProbe(BaseProbe):
    """Blocks on the scan's cancellation event, then reports what it saw."""
    kind = ProbeKind.TLS

    def __init__(self):
        self.saw_cancel = threading.Event()

    def collect(self, ctx: ScanContext) -> Collected:
        if ctx.deadline.cancel_event.wait(10):
            self.saw_cancel.set()
        raise ProbeTimeout("cancelled")


@pytest.fixture
def orchestrator(reference_data, clock):
    return ScanOrchestrator(
        settings=FAST_SETTINGS,
        data=reference_data,
        network=healthy_network(),
        clock=clock,
        stats_sink=NullStatsSink(),
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

def test_healthy_scan(orchestrator, clock) -> None:
    report = orchestrator.scan("https://WWW.Example.com/path")

    assert report.target == "www.example.com"
    assert report.timestamp == clock.now()
    assert list(report.probe_results) == [p.kind for p in orchestrator.probes]
    assert set(report.category_scores) == set(Category)
    assert 0 <= report.overall_score <= 100
    assert report.grade in ("A", "B", "C", "D", "F")
    for rec in report.recommendations:
        assert report.category_scores[rec.category] < 100


def test_healthy_example_com_completes(orchestrator) -> None:
    report = orchestrator.scan("example.com")

    assert report.state == ScanState.COMPLETED
    assert all(r.status == ProbeStatus.SUCCESS for r in report.probe_results.values())
    assert report.payload(ProbeKind.WHOIS).registrar.startswith("RESERVED")
    assert report.payload(ProbeKind.TECHNOLOGY).get("WordPress") is not None
    severities = [r.severity.rank for r in report.recommendations]
    assert severities == sorted(severities)


def test_report_serializes_to_json(orchestrator) -> None:
    data = orchestrator.scan("example.com").to_dict()

    encoded = json.loads(json.dumps(data))
    assert encoded["target"] == "example.com"
    assert encoded["state"] == "completed"
    assert "overallScore" in encoded
    assert encoded["probeResults"]["dns"]["status"] == "success"
    assert encoded["probeResults"]["whois"]["data"]["expiryDate"].startswith("2027-08-13")
    assert "hitRate" in encoded["cacheStats"]


def test_report_is_immutable(orchestrator) -> None:
    report = orchestrator.scan("example.com")
    with pytest.raises(TypeError):
        report.probe_results[ProbeKind.DNS] = None  # type: ignore[index]


def test_second_scan_served_from_cache(orchestrator) -> None:
    orchestrator.scan("example.com")
    calls = len(orchestrator.network.calls)

    report = orchestrator.scan("example.com")

    assert all(r.cached for r in report.probe_results.values())
    assert len(orchestrator.network.calls) == calls
    assert report.cache_stats["hits"] > 0


def test_stats_sink_receives_report(reference_data, clock) -> None:
    sink = RecordingSink()
    orchestrator = ScanOrchestrator(
        settings=FAST_SETTINGS, data=reference_data, network=healthy_network(), clock=clock, stats_sink=sink,
    )
    report = orchestrator.scan("example.com")
    assert sink.reports == [report]


def test_broken_stats_sink_does_not_fail_the_scan(reference_data, clock) -> None:
    class Broken(StatsSink):
        def record(self, report: ScanReport) -> None:
            raise RuntimeError("sink down")

    orchestrator = ScanOrchestrator(
        settings=FAST_SETTINGS, data=reference_data, network=healthy_network(), clock=clock, stats_sink=Broken(),
    )
    assert orchestrator.scan("example.com").target == "example.com"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

def test_everything_failing_still_produces_a_report(reference_data, clock) -> None:
    network = FakeNetwork(dns_fallback=lambda name, rdtype: dns.resolver.NoNameservers())
    orchestrator = ScanOrchestrator(
        settings=FAST_SETTINGS, data=reference_data, network=network, clock=clock, stats_sink=NullStatsSink(),
    )
    report = orchestrator.scan("example.com")

    assert report.state == ScanState.PARTIALLY_COMPLETED
    assert all(r.status == ProbeStatus.FAILED for r in report.probe_results.values())
    assert report.grade == "F"
    # Unverified rules never produce recommendations
    assert report.recommendations == ()


def test_invalid_target_raises(orchestrator) -> None:
    with pytest.raises(InvalidTarget):
        orchestrator.scan("not a domain!")
    assert orchestrator.network.calls == []


def test_rate_limit(reference_data, clock) -> None:
    orchestrator = ScanOrchestrator(
        settings=_settings(rate_limit=2), data=reference_data, network=healthy_network(),
        clock=clock, stats_sink=NullStatsSink(),
    )
    orchestrator.scan("example.com", client_id="203.0.113.7")
    orchestrator.scan("example.com", client_id="203.0.113.7")

    with pytest.raises(RateLimitExceeded) as excinfo:
        orchestrator.scan("example.com", client_id="203.0.113.7")
    assert excinfo.value.retry_after > 0

    # Other clients and anonymous scans are unaffected
    orchestrator.scan("example.com", client_id="198.51.100.1")
    orchestrator.scan("example.com")


def test_duplicate_probe_kinds_rejected(reference_data) -> None:
    with pytest.raises(ValueError):
        ScanOrchestrator(data=reference_data, probes=[DnsProbe(), DnsProbe()], network=FakeNetwork())


# ---------------------------------------------------------------------------
# Timeouts (real clock)
# ---------------------------------------------------------------------------

def test_slow_blacklist_times_out_alone(reference_data) -> None:
    release = threading.Event()

    def blocking_dnsbl(name: str, rdtype: str):
        if name.startswith("34.216.184.93."):
            release.wait(5)
        return dns.resolver.NoAnswer()

    network = healthy_network(dns_fallback=blocking_dnsbl)
    settings = _settings(probe_timeouts=_timeouts(blacklist=0.3), abandon_grace=0.2, scan_deadline=5.0)
    orchestrator = ScanOrchestrator(
        settings=settings, data=reference_data, network=network, stats_sink=NullStatsSink(),
    )
    try:
        report = orchestrator.scan("example.com")
    finally:
        release.set()

    assert report.result(ProbeKind.BLACKLIST).status == ProbeStatus.TIMED_OUT
    assert report.result(ProbeKind.DNS).status == ProbeStatus.SUCCESS
    assert report.result(ProbeKind.WHOIS).status == ProbeStatus.SUCCESS
    assert report.state == ScanState.PARTIALLY_COMPLETED
    assert report.duration_ms < 3000


def test_stuck_probe_is_abandoned(reference_data) -> None:
    release = threading.Event()
    stuck = StuckProbe(release)
    settings = _settings(probe_timeouts=_timeouts(tls=0.2), abandon_grace=0.1, scan_deadline=5.0)
    orchestrator = ScanOrchestrator(
        settings=settings, data=reference_data, network=healthy_network(),
        probes=[DnsProbe(), WhoisProbe(), stuck], stats_sink=NullStatsSink(),
    )
    try:
        report = orchestrator.scan("example.com")
    finally:
        release.set()

    tls = report.result(ProbeKind.TLS)
    assert tls.status == ProbeStatus.TIMED_OUT
    assert "0.2s timeout" in tls.error.message
    assert report.result(ProbeKind.DNS).status == ProbeStatus.SUCCESS
    assert report.duration_ms < 3000


def test_scan_deadline_cancels_running_probes(reference_data) -> None:
    probe = CancelAwareProbe()
    settings = _settings(probe_timeouts=_timeouts(tls=10.0), scan_deadline=0.3)
    orchestrator = ScanOrchestrator(
        settings=settings, data=reference_data, network=FakeNetwork(), probes=[probe],
        stats_sink=NullStatsSink(),
    )
    report = orchestrator.scan("example.com")

    result = report.result(ProbeKind.TLS)
    assert result.status == ProbeStatus.TIMED_OUT
    assert result.error.message == "scan deadline exceeded"
    assert probe.saw_cancel.wait(2)
    assert report.duration_ms < 3000


def test_settings_data_dir_is_loaded(tmp_path: Path) -> None:
    (tmp_path / "dnsbl_zones.json").write_text(
        json.dumps({"zones": [{"zone": "bl.test", "name": "Test"}]}), encoding="utf-8",
    )
    orchestrator = ScanOrchestrator(
        settings=_settings(data_dir=str(tmp_path)), network=FakeNetwork(), stats_sink=NullStatsSink(),
    )
    assert [z.zone for z in orchestrator.data.dnsbl_zones] == ["bl.test"]
    assert orchestrator.data.whois_servers["com"].host == "whois.verisign-grs.com"

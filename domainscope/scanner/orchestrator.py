# domainscope/scanner/orchestrator.py
"""
Scan orchestrator: the main entry point for running a scan.

Ties together target normalization, rate limiting, the probes, the Scorer
and the RecommendationEngine. Takes a raw target string, runs every probe
concurrently under one overall deadline, and assembles an immutable
ScanReport.

Usage:
    from domainscope.scanner.orchestrator import ScanOrchestrator

    orchestrator = ScanOrchestrator()
    report = orchestrator.scan("example.com", client_id="203.0.113.7")

Scan lifecycle:
    pending -> running -> completed            every probe succeeded
                       -> partially_completed  anything less
    pending -> failed                          InvalidTarget / RateLimitExceeded
                                               (raised to the caller)

Timeouts:
    Each probe runs under its own deadline (settings.probe_timeouts) that is
    a child of the scan deadline (settings.scan_deadline). The orchestrator
    does not trust probes to honour those: it wakes for whichever comes
    first, the scan deadline or a running probe's timeout plus
    settings.abandon_grace, and records anything still running past that
    point as timed_out. Results that already arrived are always kept.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Mapping, Optional, Sequence

from domainscope.cache import TTLCache
from domainscope.config import ReferenceData, Settings, default_reference_data, load_reference_data
from domainscope.errors import InvalidTarget, RateLimitExceeded
from domainscope.ratelimit import RateLimiter
from domainscope.scanner.analyzers import RecommendationEngine, Scorer
from domainscope.scanner.base import BaseProbe, Deadline, ScanContext
from domainscope.scanner.models import (
    ErrorKind,
    ProbeErrorInfo,
    ProbeKind,
    ProbeResult,
    ProbeStatus,
    ScanReport,
    ScanState,
)
from domainscope.scanner.network import NetworkClients
from domainscope.scanner.probes import default_probes
from domainscope.target import Target, normalize_target
from domainscope.utils.clock import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

# How often the wait loop looks for probes that have left the queue
START_POLL_INTERVAL = 0.05


# ---------------------------------------------------------------------------
# Stats sinks
# ---------------------------------------------------------------------------

class StatsSink:
    """Receives every finished report. Subclass to ship stats elsewhere."""

    def record(self, report: ScanReport) -> None:
        raise NotImplementedError


class LoggingStatsSink(StatsSink):
    def record(self, report: ScanReport) -> None:
        probes = ", ".join(
            f"{kind.value}={r.status.value}/{r.latency_ms}ms" + ("/cached" if r.cached else "")
            for kind, r in report.probe_results.items()
        )
        logger.info(
            f"Scan stats for {report.target}: {report.duration_ms}ms, "
            f"cache hit rate {report.cache_stats.get('hitRate', 0.0)}, probes [{probes}]"
        )


class NullStatsSink(StatsSink):
    def record(self, report: ScanReport) -> None:
        pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _timed_out(kind: ProbeKind, message: str, latency_ms: float = 0.0) -> ProbeResult:
    return ProbeResult(
        kind=kind,
        status=ProbeStatus.TIMED_OUT,
        latency_ms=latency_ms,
        error=ProbeErrorInfo(ErrorKind.TIMEOUT, message),
    )


def _final_state(results: Mapping[ProbeKind, ProbeResult]) -> ScanState:
    if results and all(r.status == ProbeStatus.SUCCESS for r in results.values()):
        return ScanState.COMPLETED
    return ScanState.PARTIALLY_COMPLETED


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ScanOrchestrator:
    """
    Runs scans. One instance is meant to be shared for the process lifetime
    so the cache and rate limiter accumulate state across scans.

    Every collaborator is injectable; anything left as None gets the
    production default built from `settings`.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        data: Optional[ReferenceData] = None,
        cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        network: Optional[NetworkClients] = None,
        probes: Optional[Sequence[BaseProbe]] = None,
        clock: Optional[Clock] = None,
        stats_sink: Optional[StatsSink] = None,
    ):
        self.settings = settings or Settings()
        self.clock = clock or SYSTEM_CLOCK
        if data is None:
            data = load_reference_data(self.settings.data_dir) if self.settings.data_dir else default_reference_data()
        self.data = data
        self.cache = cache or TTLCache(self.settings, clock=self.clock)
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(self.settings, clock=self.clock)
        self.network = network or NetworkClients(nameservers=self.settings.dns_nameservers)
        self.probes: List[BaseProbe] = list(probes) if probes is not None else default_probes()
        self.stats_sink = stats_sink or LoggingStatsSink()

        kinds = [p.kind for p in self.probes]
        if len(set(kinds)) != len(kinds):
            raise ValueError(f"Duplicate probe kinds: {[k.value for k in kinds]}")

        # Built once so a broken scoring policy fails here, not mid-scan
        self.scorer = Scorer(self.data.scoring)
        self.recommendations = RecommendationEngine(self.data.scoring)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def scan(self, raw_target: str, client_id: Optional[str] = None) -> ScanReport:
        """
        Scan one domain or IP and return its report.

        Raises:
            RateLimitExceeded: client_id has used up its window.
            InvalidTarget:     raw_target is not a usable domain or IP.

        Every other failure is recorded on the affected ProbeResult; the
        report is always assembled.
        """
        start = self.clock.monotonic()
        timestamp = self.clock.now()
        self._transition(raw_target, ScanState.PENDING)

        try:
            if self.rate_limiter is not None and client_id:
                self.rate_limiter.check(client_id)
            target = normalize_target(raw_target)
        except (RateLimitExceeded, InvalidTarget) as e:
            self._transition(raw_target, ScanState.FAILED, str(e))
            raise

        self._transition(target.value, ScanState.RUNNING)

        deadline = Deadline(self.settings.scan_deadline, clock=self.clock)
        ctx = ScanContext(
            target=target,
            settings=self.settings,
            data=self.data,
            cache=self.cache,
            deadline=deadline,
            network=self.network,
            clock=self.clock,
        )

        results = self._run_probes(ctx)

        evaluations = self.scorer.evaluate(results)
        card = self.scorer.score(evaluations)
        recommendations = self.recommendations.build(evaluations)
        state = _final_state(results)

        report = ScanReport(
            target=target.value,
            target_unicode=target.unicode,
            timestamp=timestamp,
            state=state,
            probe_results=results,
            category_scores=card.category_scores,
            overall_score=card.overall,
            grade=card.grade,
            recommendations=recommendations,
            evaluations=evaluations,
            duration_ms=round((self.clock.monotonic() - start) * 1000, 1),
            cache_stats=self.cache.stats().as_dict(),
        )
        self._transition(
            target.value, state,
            f"score {report.overall_score} ({report.grade}), {len(recommendations)} recommendations",
        )

        try:
            self.stats_sink.record(report)
        except Exception:
            logger.exception(f"Stats sink failed for {target.value}")

        return report

    # -------------------------------------------------------------------
    # Probe execution
    # -------------------------------------------------------------------

    def _probe_timeout(self, probe: BaseProbe) -> float:
        return self.settings.probe_timeout(probe.name)

    def _run_probes(self, ctx: ScanContext) -> Dict[ProbeKind, ProbeResult]:
        """
        Run every probe on a bounded pool and collect one result per probe.

        A probe's own clock starts when a worker picks it up, so queued
        probes are only bounded by the scan deadline.
        """
        grace = self.settings.abandon_grace
        deadline = ctx.deadline
        results: Dict[ProbeKind, ProbeResult] = {}
        started: Dict[ProbeKind, float] = {}

        def run_one(probe: BaseProbe) -> ProbeResult:
            started[probe.kind] = self.clock.monotonic()
            return probe.run(ctx, self._probe_timeout(probe))

        pool = ThreadPoolExecutor(max_workers=self.settings.concurrency, thread_name_prefix="probe")
        try:
            futures: Dict[Future, BaseProbe] = {pool.submit(run_one, p): p for p in self.probes}
            pending = set(futures)

            while pending:
                remaining = deadline.remaining()
                if remaining <= 0:
                    break

                now = self.clock.monotonic()
                wake = remaining
                for fut in pending:
                    probe = futures[fut]
                    t0 = started.get(probe.kind)
                    if t0 is None:
                        # Not picked up yet; look again once a worker has it
                        wake = min(wake, START_POLL_INTERVAL)
                    else:
                        wake = min(wake, t0 + self._probe_timeout(probe) + grace - now)

                done, pending = wait(pending, timeout=max(0.0, wake), return_when=FIRST_COMPLETED)
                for fut in done:
                    probe = futures[fut]
                    results[probe.kind] = self._collect(fut, probe, ctx.target)

                # Abandon probes that overran their own timeout
                now = self.clock.monotonic()
                for fut in list(pending):
                    probe = futures[fut]
                    t0 = started.get(probe.kind)
                    if t0 is None or now < t0 + self._probe_timeout(probe) + grace:
                        continue
                    pending.discard(fut)
                    logger.warning(f"Probe '{probe.name}' abandoned for {ctx.target} after {self._probe_timeout(probe)}s")
                    results[probe.kind] = _timed_out(
                        probe.kind,
                        f"probe exceeded its {self._probe_timeout(probe):g}s timeout",
                        latency_ms=round((now - t0) * 1000, 1),
                    )

            if pending:
                # Scan deadline: stop everything still queued or running
                deadline.cancel()
                logger.warning(
                    f"Scan deadline of {self.settings.scan_deadline:g}s reached for {ctx.target}; "
                    f"{len(pending)} probe(s) unfinished"
                )
                now = self.clock.monotonic()
                for fut in pending:
                    fut.cancel()
                    probe = futures[fut]
                    t0 = started.get(probe.kind)
                    results[probe.kind] = _timed_out(
                        probe.kind,
                        "scan deadline exceeded",
                        latency_ms=round((now - t0) * 1000, 1) if t0 is not None else 0.0,
                    )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        # Report probes in registration order
        return {p.kind: results[p.kind] for p in self.probes}

    def _collect(self, fut: Future, probe: BaseProbe, target: Target) -> ProbeResult:
        try:
            return fut.result()
        except Exception as e:
            # BaseProbe.run never raises; a probe that overrides it might
            logger.exception(f"Probe '{probe.name}' raised out of run() for {target}")
            return ProbeResult(
                kind=probe.kind,
                status=ProbeStatus.FAILED,
                error=ProbeErrorInfo(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}"),
            )

    def _transition(self, target: str, state: ScanState, detail: str = "") -> None:
        message = f"Scan {target}: {state.value}" + (f" ({detail})" if detail else "")
        if state == ScanState.FAILED:
            logger.warning(message)
        else:
            logger.info(message)


# ---------------------------------------------------------------------------
# Convenience
# ---------------------------------------------------------------------------

def run_scan(raw_target: str, client_id: Optional[str] = None, settings: Optional[Settings] = None) -> ScanReport:
    """One-off scan with a fresh orchestrator."""
    return ScanOrchestrator(settings=settings).scan(raw_target, client_id=client_id)

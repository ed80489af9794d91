# domainscope/__init__.py
"""
domainscope: multi-probe domain intelligence.

    from domainscope import ScanOrchestrator

    report = ScanOrchestrator().scan("example.com")
    print(report.grade, report.overall_score)
"""

from __future__ import annotations

from domainscope.config import Settings, load_reference_data
from domainscope.errors import DomainScopeError, InvalidTarget, RateLimitExceeded
from domainscope.scanner.orchestrator import LoggingStatsSink, ScanOrchestrator, run_scan

__version__ = "0.1.0"

__all__ = [
    "ScanOrchestrator", "run_scan", "LoggingStatsSink",
    "Settings", "load_reference_data",
    "DomainScopeError", "InvalidTarget", "RateLimitExceeded",
]

# domainscope/cli.py
"""
Command-line entry point.

    domainscope example.com
    domainscope https://bücher.example/ --summary
    DOMAINSCOPE_TIMEOUT_WHOIS=20 domainscope 93.184.216.34 --log-level DEBUG

Prints the report as JSON on stdout (or a short summary with --summary).
Logs go to stderr. Exit codes: 0 report produced, 2 invalid target,
3 rate limited, 4 bad configuration.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from domainscope.config import Settings, load_reference_data
from domainscope.errors import ConfigError, InvalidTarget, RateLimitExceeded
from domainscope.scanner.orchestrator import ScanOrchestrator
from domainscope.utils.scoring import grade_description

logger = logging.getLogger("domainscope.cli")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="domainscope",
        description="Scan a domain or IP and print a scored intelligence report.",
    )
    parser.add_argument("target", help="domain, URL or IP address to scan")
    parser.add_argument("--client-id", default=None, help="rate-limit bucket for this request")
    parser.add_argument("--deadline", type=float, default=None, help="overall scan deadline in seconds")
    parser.add_argument("--concurrency", type=int, default=None, help="probe worker pool size")
    parser.add_argument("--data-dir", default=None, help="directory overriding the bundled reference JSON")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--summary", action="store_true", help="print a short summary instead of JSON")
    parser.add_argument("--indent", type=int, default=2, help="JSON indent (0 for compact)")
    return parser


def _summary(report) -> str:
    lines = [
        f"{report.target_unicode}  {report.grade} ({report.overall_score})  {grade_description(report.grade)}",
        f"state: {report.state.value}  duration: {report.duration_ms}ms",
        "",
    ]
    for category, score in report.category_scores.items():
        lines.append(f"  {category.value:<12} {score:>5}")
    lines.append("")
    for kind, result in report.probe_results.items():
        note = f"  {result.error.message}" if result.error else ""
        lines.append(f"  {kind.value:<12} {result.status.value}{note}")
    if report.recommendations:
        lines.append("")
        for rec in report.recommendations:
            lines.append(f"  [{rec.severity.value}] {rec.message}: {rec.action}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
        overrides = {}
        if args.deadline is not None:
            overrides["scan_deadline"] = args.deadline
        if args.concurrency is not None:
            overrides["concurrency"] = args.concurrency
        if args.data_dir is not None:
            overrides["data_dir"] = args.data_dir
        if args.log_level is not None:
            overrides["log_level"] = args.log_level
        if overrides:
            settings = settings.with_overrides(**overrides)
    except ConfigError as e:
        print(f"domainscope: {e}", file=sys.stderr)
        return 4

    _setup_logging(settings.log_level)

    try:
        data = load_reference_data(settings.data_dir)
        orchestrator = ScanOrchestrator(settings=settings, data=data)
    except ConfigError as e:
        logger.error(f"Bad configuration: {e}")
        return 4

    try:
        report = orchestrator.scan(args.target, client_id=args.client_id)
    except InvalidTarget as e:
        logger.error(str(e))
        return 2
    except RateLimitExceeded as e:
        logger.error(str(e))
        return 3

    if args.summary:
        print(_summary(report))
    else:
        print(json.dumps(report.to_dict(), indent=args.indent or None, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())

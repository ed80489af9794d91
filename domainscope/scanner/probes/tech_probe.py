# domainscope/scanner/probes/tech_probe.py
"""
Technology fingerprint probe.

Matches what the target exposes against the versioned signature database
(data/tech_signatures.json):

    dns     - CNAME / NS / MX / TXT record values (shared DNS lookup)
    header  - response header values, or mere presence when no regex
    cookie  - Set-Cookie names
    meta    - <meta name=...> content (generator, ...)
    script  - <script src> URLs
    html    - raw page markup

Each detected technology gets its category, a confidence that is the sum of
its matched pattern confidences (capped at 100), the evidence that matched,
and a version when a pattern captures one.

If one of the two sources (DNS, homepage) fails the result is PartialData;
if both fail the probe fails with the homepage error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup

from domainscope.config import SignatureDatabase, SignaturePattern
from domainscope.errors import ProbeError, ProbeTimeout
from domainscope.scanner.base import BaseProbe, Collected, ScanContext, complete_only
from domainscope.scanner.models import DnsResult, HttpResponse, ProbeKind, TechMatch, TechnologyResult
from domainscope.scanner.probes.dns_probe import lookup_records
from domainscope.scanner.probes.http_fetch import fetch_homepage

logger = logging.getLogger(__name__)

MAX_EVIDENCE_LENGTH = 120

DNS_SOURCE_TYPES = ("CNAME", "NS", "MX", "TXT")


@dataclass
class Evidence:
    """Everything the matchers can look at, gathered once per scan."""
    dns: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Tuple[str, ...] = ()
    meta: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    scripts: Tuple[str, ...] = ()
    html: str = ""


def _clip(value: str) -> str:
    value = " ".join(value.split())
    return value if len(value) <= MAX_EVIDENCE_LENGTH else value[: MAX_EVIDENCE_LENGTH - 3] + "..."


def evidence_from_response(response: HttpResponse) -> Evidence:
    html = ""
    meta: Dict[str, List[str]] = {}
    scripts: List[str] = []
    if "html" in response.content_type.lower() or response.body.lstrip()[:1] == b"<":
        html = response.text
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup.find_all("meta"):
            name = (tag.get("name") or tag.get("property") or "").strip().lower()
            content = tag.get("content")
            if name and content:
                meta.setdefault(name, []).append(content)
        scripts = [tag["src"] for tag in soup.find_all("script", src=True)]
    return Evidence(
        headers=dict(response.headers),
        cookies=response.cookie_names,
        meta={k: tuple(v) for k, v in meta.items()},
        scripts=tuple(scripts),
        html=html,
    )


def _candidates(pattern: SignaturePattern, ev: Evidence) -> List[Tuple[str, str]]:
    """(label, value) pairs a pattern should be tested against."""
    if pattern.source == "header":
        value = ev.headers.get(pattern.key or "")
        return [(f"header {pattern.key}", value)] if value is not None else []
    if pattern.source == "cookie":
        return [("cookie", name) for name in ev.cookies]
    if pattern.source == "meta":
        return [(f"meta {pattern.key}", v) for v in ev.meta.get(pattern.key or "", ())]
    if pattern.source == "script":
        return [("script", src) for src in ev.scripts]
    if pattern.source == "html":
        return [("html", ev.html)] if ev.html else []
    if pattern.source == "dns":
        return [(f"dns {pattern.key}", v) for v in ev.dns.get(pattern.key or "", ())]
    return []


def _match_pattern(pattern: SignaturePattern, ev: Evidence) -> Optional[Tuple[str, Optional[str]]]:
    """(evidence, version) for the first candidate the pattern matches."""
    for label, value in _candidates(pattern, ev):
        if pattern.regex is None:
            return f"{label}: {_clip(value)}", None
        match = pattern.regex.search(value)
        if not match:
            continue
        version = None
        if pattern.version_group:
            try:
                version = match.group(pattern.version_group) or None
            except IndexError:
                version = None
        shown = match.group(0) if label == "html" else value
        return f"{label}: {_clip(shown)}", version
    return None


def detect(signatures: SignatureDatabase, ev: Evidence) -> Tuple[TechMatch, ...]:
    matches = []
    for tech in signatures.technologies:
        confidence = 0
        evidence: List[str] = []
        version = None
        for pattern in tech.patterns:
            hit = _match_pattern(pattern, ev)
            if hit is None:
                continue
            found, found_version = hit
            confidence += pattern.confidence
            evidence.append(found)
            version = version or found_version
        if evidence:
            matches.append(TechMatch(
                name=tech.name,
                category=tech.category,
                confidence=min(100, confidence),
                evidence=tuple(evidence),
                version=version,
            ))
    return tuple(sorted(matches, key=lambda m: (-m.confidence, m.name.lower())))


class TechnologyProbe(BaseProbe):
    kind = ProbeKind.TECHNOLOGY

    def collect(self, ctx: ScanContext) -> Collected:
        def fetch() -> Collected:
            warnings: List[str] = []
            ev = Evidence()

            http_error: Optional[ProbeError] = None
            try:
                ev = evidence_from_response(fetch_homepage(ctx).data)
            except ProbeTimeout:
                raise
            except ProbeError as e:
                http_error = e
                warnings.append(f"Homepage unavailable for fingerprinting: {e}")

            if not ctx.target.is_ip:
                try:
                    dns_result: DnsResult = lookup_records(ctx).data
                    ev.dns = {t: dns_result.get(t) for t in DNS_SOURCE_TYPES}
                except ProbeTimeout:
                    raise
                except ProbeError as e:
                    if http_error is not None:
                        raise http_error
                    warnings.append(f"DNS records unavailable for fingerprinting: {e}")
            elif http_error is not None:
                raise http_error

            result = TechnologyResult(
                matches=detect(ctx.data.signatures, ev),
                signatures_version=ctx.data.signatures.version,
            )
            logger.debug(f"Technology: {ctx.target} -> {[m.name for m in result.matches]}")
            return Collected(result, warnings=tuple(warnings))

        base_ttl = ctx.settings.ttl_for("technology")
        value, hit = ctx.cached(
            "technology", fetch, ttl=lambda v: complete_only(v, base_ttl),
            signatures=ctx.data.signatures.version,
        )
        return Collected(value.data, warnings=value.warnings, cached=hit)

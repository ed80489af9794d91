# domainscope/scanner/probes/headers_probe.py
"""
Security headers probe.

Reads the shared homepage fetch (no request of its own) and checks the
response for security best practices:

    - Required security headers present / missing
      (HSTS, CSP, X-Frame-Options, X-Content-Type-Options,
       Referrer-Policy, Permissions-Policy; overridable in Settings)
    - Weak configurations (HSTS max-age 0 or under 30 days, CSP allowing
      both unsafe-inline and unsafe-eval, unusual X-Frame-Options)
    - HTTP to HTTPS redirect seen in the redirect chain
    - Server / X-Powered-By version disclosure
    - Cookie flags (Secure, HttpOnly, SameSite)

The header score weights each header by how much protection it buys and is
normalized to 0-100 over the checked set.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from domainscope.scanner.base import BaseProbe, Collected, ScanContext
from domainscope.scanner.models import HeadersResult, HttpResponse, ProbeKind
from domainscope.scanner.probes.http_fetch import fetch_homepage

logger = logging.getLogger(__name__)

# Header -> weight in the header score
SECURITY_HEADERS: Dict[str, int] = {
    "strict-transport-security": 20,
    "content-security-policy": 25,
    "x-frame-options": 15,
    "x-content-type-options": 10,
    "referrer-policy": 10,
    "permissions-policy": 10,
}

DEFAULT_HEADER_WEIGHT = 10

HSTS_MIN_MAX_AGE = 2592000  # 30 days

VERSION_RE = re.compile(r"\d+(?:\.\d+)+")

DISCLOSURE_HEADERS = ("x-powered-by", "x-aspnet-version", "x-aspnetmvc-version", "x-generator")


def _weak_configurations(headers: Dict[str, str]) -> List[str]:
    weak = []

    hsts = headers.get("strict-transport-security")
    if hsts:
        match = re.search(r"max-age\s*=\s*\"?(\d+)", hsts, re.IGNORECASE)
        if match is None:
            weak.append("HSTS header has no max-age")
        else:
            max_age = int(match.group(1))
            if max_age == 0:
                weak.append("HSTS max-age is 0, which disables HSTS")
            elif max_age < HSTS_MIN_MAX_AGE:
                weak.append(f"HSTS max-age is short ({max_age}s, {max_age // 86400} days)")

    csp = headers.get("content-security-policy")
    if csp and "unsafe-inline" in csp and "unsafe-eval" in csp:
        weak.append("CSP allows both unsafe-inline and unsafe-eval")

    xfo = headers.get("x-frame-options")
    if xfo:
        value = xfo.strip().upper()
        if value not in ("DENY", "SAMEORIGIN") and not value.startswith("ALLOW-FROM"):
            weak.append(f"Unusual X-Frame-Options value: {xfo}")

    return weak


def cookie_issues(set_cookies: Tuple[str, ...], https: bool) -> List[str]:
    """One issue string per missing flag per cookie."""
    issues = []
    for cookie in set_cookies:
        if "=" not in cookie:
            continue
        name = cookie.split("=", 1)[0].strip()
        attrs = {part.strip().split("=", 1)[0].lower() for part in cookie.split(";")[1:]}
        if https and "secure" not in attrs:
            issues.append(f"Cookie '{name}' missing Secure flag")
        if "httponly" not in attrs:
            issues.append(f"Cookie '{name}' missing HttpOnly flag")
        if "samesite" not in attrs:
            issues.append(f"Cookie '{name}' missing SameSite attribute")
    return issues


def _https_redirect(response: HttpResponse) -> Optional[bool]:
    """True if plain HTTP ended up on HTTPS, None if the chain never started on HTTP."""
    if not response.redirect_chain or not response.redirect_chain[0].startswith("http://"):
        return None
    return response.is_https


def header_score(present: Dict[str, str], checked: Tuple[str, ...]) -> int:
    total = sum(SECURITY_HEADERS.get(h, DEFAULT_HEADER_WEIGHT) for h in checked)
    if not total:
        return 0
    earned = sum(SECURITY_HEADERS.get(h, DEFAULT_HEADER_WEIGHT) for h in checked if h in present)
    return round(100 * earned / total)


def analyse_headers(response: HttpResponse, required: Tuple[str, ...]) -> HeadersResult:
    headers = dict(response.headers)
    checked = tuple(h.lower() for h in required) or tuple(SECURITY_HEADERS)

    present = {h: headers[h] for h in checked if headers.get(h)}
    missing = tuple(h for h in checked if h not in present)

    server = headers.get("server")
    powered_by = headers.get("x-powered-by")
    disclosed = bool(server and VERSION_RE.search(server)) or any(headers.get(h) for h in DISCLOSURE_HEADERS)

    return HeadersResult(
        url=response.final_url,
        status_code=response.status_code,
        present=present,
        missing=missing,
        https=response.is_https,
        https_redirect=_https_redirect(response),
        server=server,
        powered_by=powered_by,
        version_disclosed=disclosed,
        weak_configurations=tuple(_weak_configurations(headers)),
        cookie_issues=tuple(cookie_issues(response.set_cookies, response.is_https)),
        score=header_score(present, checked),
    )


class HeadersProbe(BaseProbe):
    kind = ProbeKind.HEADERS

    def collect(self, ctx: ScanContext) -> Collected:
        def fetch() -> Collected:
            fetched = fetch_homepage(ctx)
            result = analyse_headers(fetched.data, ctx.settings.required_headers)
            logger.debug(
                f"Headers: {result.url} present={list(result.present)} "
                f"missing={list(result.missing)} score={result.score}"
            )
            return Collected(result, cached=fetched.cached)

        value, hit = ctx.cached("headers", fetch)
        return replace(value, cached=value.cached or hit)

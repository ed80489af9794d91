# domainscope/scanner/analyzers/checks.py
"""
Rule predicates.

Every rule in scoring_policy.json names one of these by "<probe>.<check>".
A predicate receives the typed payload of its probe plus the rule's params
and answers:

    True   rule met
    False  rule unmet (penalty, recommendation)
    None   payload lacks the field this rule needs (unverified)

Predicates are registered with @check and looked up by name; the Scorer
refuses to load a policy that names an unknown check or passes params the
predicate does not accept.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from domainscope.errors import ConfigError
from domainscope.scanner.models import (
    BlacklistResult,
    ContentResult,
    DnsResult,
    HeadersResult,
    ProbeKind,
    TechnologyResult,
    TlsResult,
    WhoisResult,
)

Predicate = Callable[..., Optional[bool]]


@dataclass(frozen=True)
class Check:
    name: str
    requires: ProbeKind
    fn: Predicate

    def validate_params(self, params: Dict[str, Any]) -> None:
        try:
            inspect.signature(self.fn).bind(None, **params)
        except TypeError as e:
            raise ConfigError(f"Check {self.name} does not accept params {sorted(params)}: {e}") from e

    def __call__(self, payload: Any, **params: Any) -> Optional[bool]:
        return self.fn(payload, **params)


CHECKS: Dict[str, Check] = {}


def check(name: str) -> Callable[[Predicate], Predicate]:
    """Register a predicate. The probe kind comes from the name prefix."""
    prefix = name.split(".", 1)[0]
    try:
        kind = ProbeKind(prefix)
    except ValueError as e:
        raise ConfigError(f"Check {name!r} does not start with a probe kind") from e

    def decorator(fn: Predicate) -> Predicate:
        if name in CHECKS:
            raise ConfigError(f"Check {name!r} registered twice")
        CHECKS[name] = Check(name=name, requires=kind, fn=fn)
        return fn

    return decorator


def get_check(name: str, registry: Optional[Mapping[str, Check]] = None) -> Check:
    chk = (CHECKS if registry is None else registry).get(name)
    if chk is None:
        raise ConfigError(f"Unknown check {name!r}")
    return chk


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

@check("headers.served_over_https")
def served_over_https(h: HeadersResult) -> bool:
    return h.https


@check("headers.https_redirect")
def https_redirect(h: HeadersResult) -> bool:
    # None: the fetch started on HTTPS because nothing answered on plain HTTP
    return h.https_redirect is not False


@check("headers.header_present")
def header_present(h: HeadersResult, header: str) -> bool:
    return header.lower() in h.present


@check("headers.no_version_disclosure")
def no_version_disclosure(h: HeadersResult) -> bool:
    return not h.version_disclosed


@check("headers.secure_cookies")
def secure_cookies(h: HeadersResult) -> bool:
    return not h.cookie_issues


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

@check("tls.valid_now")
def tls_valid_now(t: TlsResult) -> bool:
    return not t.expired and not t.not_yet_valid


@check("tls.hostname_match")
def tls_hostname_match(t: TlsResult) -> bool:
    return t.hostname_match


@check("tls.trusted_chain")
def tls_trusted_chain(t: TlsResult) -> Optional[bool]:
    return t.chain_valid


@check("tls.expiry_margin")
def tls_expiry_margin(t: TlsResult, days: int = 14) -> Optional[bool]:
    if t.days_until_expiry is None:
        return None
    return t.days_until_expiry >= days


@check("tls.modern_protocol")
def tls_modern_protocol(t: TlsResult) -> Optional[bool]:
    if not t.protocol:
        return None
    return t.protocol in ("TLSv1.2", "TLSv1.3")


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------

@check("blacklist.not_listed")
def not_listed(b: BlacklistResult) -> bool:
    return not b.is_listed


# ---------------------------------------------------------------------------
# DNS / email
# ---------------------------------------------------------------------------

@check("dns.domain_exists")
def domain_exists(d: DnsResult) -> bool:
    return d.exists


@check("dns.has_records")
def has_records(d: DnsResult, type: str) -> bool:
    return bool(d.get(type))


@check("dns.min_records")
def min_records(d: DnsResult, type: str, count: int = 1) -> bool:
    return len(d.get(type)) >= count


@check("dns.has_spf")
def has_spf(d: DnsResult) -> bool:
    return d.spf is not None


@check("dns.spf_not_permissive")
def spf_not_permissive(d: DnsResult) -> Optional[bool]:
    if d.spf is None:
        return None
    return not d.spf.permissive


@check("dns.has_dmarc")
def has_dmarc(d: DnsResult) -> bool:
    return d.dmarc is not None


@check("dns.dmarc_enforced")
def dmarc_enforced(d: DnsResult) -> Optional[bool]:
    if d.dmarc is None:
        return None
    return d.dmarc.enforced


# ---------------------------------------------------------------------------
# WHOIS
# ---------------------------------------------------------------------------

@check("whois.not_expired")
def whois_not_expired(w: WhoisResult) -> Optional[bool]:
    if w.days_until_expiry is None:
        return None
    return w.days_until_expiry >= 0


@check("whois.expiry_margin")
def whois_expiry_margin(w: WhoisResult, days: int = 30) -> Optional[bool]:
    if w.days_until_expiry is None:
        return None
    return w.days_until_expiry >= days


@check("whois.transfer_locked")
def transfer_locked(w: WhoisResult) -> Optional[bool]:
    if not w.statuses:
        return None
    return any("transferprohibited" in s.lower() for s in w.statuses)


@check("whois.dnssec_signed")
def dnssec_signed(w: WhoisResult) -> Optional[bool]:
    return w.dnssec


# ---------------------------------------------------------------------------
# Content: SEO, performance, business
# ---------------------------------------------------------------------------

@check("content.has_title")
def has_title(c: ContentResult) -> bool:
    return bool(c.title)


@check("content.title_length")
def title_length(c: ContentResult, min: int = 30, max: int = 60) -> bool:
    return bool(c.title) and min <= len(c.title) <= max


@check("content.has_meta_description")
def has_meta_description(c: ContentResult) -> bool:
    return bool(c.meta_description)


@check("content.has_viewport")
def has_viewport(c: ContentResult) -> bool:
    return bool(c.viewport)


@check("content.has_canonical")
def has_canonical(c: ContentResult) -> bool:
    return bool(c.canonical)


@check("content.has_lang")
def has_lang(c: ContentResult) -> bool:
    return bool(c.lang)


@check("content.h1_count")
def h1_count(c: ContentResult, min: Optional[int] = None, max: Optional[int] = None) -> bool:
    count = len(c.headings.get("h1", ()))
    if min is not None and count < min:
        return False
    if max is not None and count > max:
        return False
    return True


@check("content.has_structured_data")
def has_structured_data(c: ContentResult) -> bool:
    return bool(c.json_ld_types)


@check("content.has_open_graph")
def has_open_graph(c: ContentResult) -> bool:
    return any(k.startswith("og:") for k in c.meta)


@check("content.min_word_count")
def min_word_count(c: ContentResult, count: int = 300) -> bool:
    return c.word_count >= count


@check("content.image_alt_coverage")
def image_alt_coverage(c: ContentResult, min_ratio: float = 0.9) -> bool:
    if not c.images_total:
        return True
    return (c.images_total - c.images_missing_alt) / c.images_total >= min_ratio


@check("content.response_time")
def response_time(c: ContentResult, max_ms: float = 1500) -> bool:
    return c.response_time_ms <= max_ms


@check("content.compressed")
def compressed(c: ContentResult) -> bool:
    return c.compressed


@check("content.page_size")
def page_size(c: ContentResult, max_bytes: int = 500000) -> bool:
    return c.page_size <= max_bytes


@check("content.has_contact")
def has_contact(c: ContentResult) -> bool:
    return c.has_contact


@check("content.has_social_profiles")
def has_social_profiles(c: ContentResult) -> bool:
    return bool(c.social_profiles)


@check("content.has_privacy_policy")
def has_privacy_policy(c: ContentResult) -> bool:
    return bool(c.privacy_links)


# ---------------------------------------------------------------------------
# Technology
# ---------------------------------------------------------------------------

@check("technology.has_category")
def has_category(t: TechnologyResult, category: str) -> bool:
    return t.has_category(category)

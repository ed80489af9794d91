# domainscope/scanner/models.py
"""
Typed values that flow through the scan pipeline.

Every probe returns a ProbeResult tagged with its ProbeKind whose `data` is
one of the payload classes below (DnsResult, WhoisResult, ...). All of them
are frozen: mappings are wrapped in MappingProxyType and sequences are
tuples, so a ScanReport cannot be mutated once the orchestrator returns it.

to_jsonable() turns any of these into plain JSON types with camelCase keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProbeKind(str, Enum):
    DNS = "dns"
    WHOIS = "whois"
    BLACKLIST = "blacklist"
    TLS = "tls"
    HEADERS = "headers"
    TECHNOLOGY = "technology"
    CONTENT = "content"


class ProbeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial_data"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def has_data(self) -> bool:
        return self in (ProbeStatus.SUCCESS, ProbeStatus.PARTIAL)


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    PARSE = "parse"
    PERMANENT = "permanent"
    INTERNAL = "internal"


class Severity(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    SUGGESTED = "suggested"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.IMPORTANT: 1, Severity.SUGGESTED: 2}


class Category(str, Enum):
    SECURITY = "security"
    SEO = "seo"
    PERFORMANCE = "performance"
    TECHNICAL = "technical"
    EMAIL = "email"
    REPUTATION = "reputation"
    BUSINESS = "business"


class ScanState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"


class RuleOutcome(str, Enum):
    MET = "met"
    UNMET = "unmet"
    UNVERIFIED = "unverified"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def freeze(mapping: Optional[Mapping[Any, Any]]) -> Mapping[Any, Any]:
    """Read-only view over a private copy of `mapping`."""
    return MappingProxyType(dict(mapping or {}))


def _freeze_fields(obj: Any, *names: str) -> None:
    for name in names:
        object.__setattr__(obj, name, freeze(getattr(obj, name)))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def to_jsonable(value: Any) -> Any:
    """Convert payloads, enums, datetimes and frozen containers to JSON types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {_camel(f.name): to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {
            (k.value if isinstance(k, Enum) else str(k)): to_jsonable(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MxRecord:
    priority: int
    host: str


@dataclass(frozen=True)
class SpfPolicy:
    raw: str
    all_qualifier: Optional[str] = None  # "+", "-", "~", "?"
    mechanisms: Tuple[str, ...] = ()
    lookup_count: int = 0

    @property
    def permissive(self) -> bool:
        return self.all_qualifier == "+"


@dataclass(frozen=True)
class DmarcPolicy:
    raw: str
    policy: Optional[str] = None
    subdomain_policy: Optional[str] = None
    pct: Optional[int] = None
    rua: Optional[str] = None

    @property
    def enforced(self) -> bool:
        return self.policy in ("quarantine", "reject")


@dataclass(frozen=True)
class DnsResult:
    domain: str
    exists: bool = True
    records: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    ttls: Mapping[str, int] = field(default_factory=dict)
    mx: Tuple[MxRecord, ...] = ()
    spf: Optional[SpfPolicy] = None
    dmarc: Optional[DmarcPolicy] = None

    def __post_init__(self):
        _freeze_fields(self, "records", "ttls")

    def get(self, rtype: str) -> Tuple[str, ...]:
        return self.records.get(rtype.upper(), ())

    @property
    def addresses(self) -> Tuple[str, ...]:
        return self.get("A")

    @property
    def min_ttl(self) -> Optional[int]:
        return min(self.ttls.values()) if self.ttls else None


# ---------------------------------------------------------------------------
# WHOIS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WhoisResult:
    domain: str
    server: str
    registered: bool = True
    registrar: Optional[str] = None
    creation_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    updated_date: Optional[datetime] = None
    nameservers: Tuple[str, ...] = ()
    statuses: Tuple[str, ...] = ()
    dnssec: Optional[bool] = None
    registrant_org: Optional[str] = None
    registrant_country: Optional[str] = None
    days_until_expiry: Optional[int] = None
    domain_age_days: Optional[int] = None
    referral_server: Optional[str] = None
    rate_limited: bool = False


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlacklistListing:
    ip: str
    zone: str
    name: str
    response: str


@dataclass(frozen=True)
class BlacklistResult:
    ips: Tuple[str, ...]
    checked: int
    listed: int
    listings: Tuple[BlacklistListing, ...] = ()
    unresponsive: Tuple[str, ...] = ()
    errored: Tuple[str, ...] = ()

    @property
    def is_listed(self) -> bool:
        return self.listed > 0

    @property
    def reputation(self) -> float:
        """Share of checked zones that do not list any IP, as a percentage."""
        if not self.checked:
            return 100.0
        return round(100.0 * (self.checked - self.listed) / self.checked, 1)


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TlsResult:
    host: str
    port: int
    protocol: Optional[str] = None
    cipher: Optional[str] = None
    issuer: Optional[str] = None
    issuer_org: Optional[str] = None
    subject: Optional[str] = None
    sans: Tuple[str, ...] = ()
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    expired: bool = False
    not_yet_valid: bool = False
    self_signed: bool = False
    hostname_match: bool = False
    chain_valid: Optional[bool] = None
    chain_error: Optional[str] = None
    serial: Optional[str] = None
    fingerprint_sha256: Optional[str] = None
    key_type: Optional[str] = None
    key_size: Optional[int] = None
    signature_algorithm: Optional[str] = None


# ---------------------------------------------------------------------------
# HTTP: shared homepage fetch, security headers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HttpResponse:
    """One homepage fetch, shared by the headers, technology and content probes."""
    url: str
    final_url: str
    status_code: int
    headers: Mapping[str, str]
    set_cookies: Tuple[str, ...] = ()
    redirect_chain: Tuple[str, ...] = ()
    body: bytes = b""
    truncated: bool = False
    elapsed_ms: float = 0.0
    content_encoding: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(
            self, "headers", freeze({k.lower(): v for k, v in dict(self.headers).items()})
        )

    @property
    def is_https(self) -> bool:
        return self.final_url.startswith("https://")

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def cookie_names(self) -> Tuple[str, ...]:
        return tuple(c.split("=", 1)[0].strip() for c in self.set_cookies if "=" in c)

    @property
    def text(self) -> str:
        charset = "utf-8"
        ct = self.content_type.lower()
        if "charset=" in ct:
            charset = ct.split("charset=", 1)[1].split(";")[0].strip() or charset
        try:
            return self.body.decode(charset, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class HeadersResult:
    url: str
    status_code: int
    present: Mapping[str, str] = field(default_factory=dict)
    missing: Tuple[str, ...] = ()
    https: bool = False
    https_redirect: Optional[bool] = None
    server: Optional[str] = None
    powered_by: Optional[str] = None
    version_disclosed: bool = False
    weak_configurations: Tuple[str, ...] = ()
    cookie_issues: Tuple[str, ...] = ()
    score: int = 0

    def __post_init__(self):
        _freeze_fields(self, "present")


# ---------------------------------------------------------------------------
# Technology fingerprint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TechMatch:
    name: str
    category: str
    confidence: int
    evidence: Tuple[str, ...] = ()
    version: Optional[str] = None


@dataclass(frozen=True)
class TechnologyResult:
    matches: Tuple[TechMatch, ...] = ()
    signatures_version: str = ""

    def by_category(self) -> Dict[str, Tuple[str, ...]]:
        grouped: Dict[str, list] = {}
        for m in self.matches:
            grouped.setdefault(m.category, []).append(m.name)
        return {k: tuple(v) for k, v in grouped.items()}

    def has_category(self, category: str) -> bool:
        return any(m.category == category for m in self.matches)

    def get(self, name: str) -> Optional[TechMatch]:
        for m in self.matches:
            if m.name.lower() == name.lower():
                return m
        return None


# ---------------------------------------------------------------------------
# Content / business intelligence
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentResult:
    url: str
    status_code: int
    content_type: str = ""
    response_time_ms: float = 0.0
    page_size: int = 0
    compression: Optional[str] = None
    title: Optional[str] = None
    meta_description: Optional[str] = None
    meta: Mapping[str, str] = field(default_factory=dict)
    canonical: Optional[str] = None
    lang: Optional[str] = None
    viewport: Optional[str] = None
    headings: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    word_count: int = 0
    images_total: int = 0
    images_missing_alt: int = 0
    json_ld_types: Tuple[str, ...] = ()
    json_ld_blocks: int = 0
    emails: Tuple[str, ...] = ()
    phones: Tuple[str, ...] = ()
    social_profiles: Mapping[str, str] = field(default_factory=dict)
    has_contact_form: bool = False
    privacy_links: Tuple[str, ...] = ()
    business_model: Mapping[str, bool] = field(default_factory=dict)
    audience: str = "unknown"
    audience_scores: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        _freeze_fields(self, "meta", "headings", "social_profiles", "business_model", "audience_scores")

    @property
    def compressed(self) -> bool:
        return bool(self.compression) and self.compression != "identity"

    @property
    def has_contact(self) -> bool:
        return bool(self.emails or self.phones or self.has_contact_form)


# ---------------------------------------------------------------------------
# Probe result envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeErrorInfo:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class ProbeResult:
    kind: ProbeKind
    status: ProbeStatus
    data: Optional[Any] = None
    latency_ms: float = 0.0
    error: Optional[ProbeErrorInfo] = None
    warnings: Tuple[str, ...] = ()
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.status.has_data and self.data is not None


# ---------------------------------------------------------------------------
# Scoring output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuleEvaluation:
    rule_id: str
    category: Category
    severity: Severity
    points: float
    outcome: RuleOutcome


@dataclass(frozen=True)
class Recommendation:
    category: Category
    severity: Severity
    issue_key: str
    message: str
    action: str
    impact: str
    effort: str


@dataclass(frozen=True)
class ScanReport:
    target: str
    target_unicode: str
    timestamp: datetime
    state: ScanState
    probe_results: Mapping[ProbeKind, ProbeResult]
    category_scores: Mapping[Category, float]
    overall_score: float
    grade: str
    recommendations: Tuple[Recommendation, ...] = ()
    evaluations: Tuple[RuleEvaluation, ...] = ()
    duration_ms: float = 0.0
    cache_stats: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _freeze_fields(self, "probe_results", "category_scores", "cache_stats")

    def result(self, kind: ProbeKind) -> ProbeResult:
        return self.probe_results[kind]

    def payload(self, kind: ProbeKind) -> Optional[Any]:
        r = self.probe_results.get(kind)
        return r.data if r is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

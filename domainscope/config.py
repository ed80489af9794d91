# domainscope/config.py
"""
Settings and reference data.

Settings:
    Tunables (timeouts, concurrency, TTLs, retry policy, rate limits).
    Defaults live on the dataclass; Settings.from_env() overrides them from
    DOMAINSCOPE_* environment variables.

Reference data:
    Operational tables that change independently of code: the WHOIS server
    map, the DNSBL zone list, the technology signature database and the
    scoring policy. They ship as JSON under domainscope/data/ and are loaded
    once into frozen structures that callers pass explicitly to the
    orchestrator and probes.

Environment variables (all optional):
    DOMAINSCOPE_CONCURRENCY          worker pool size for probes
    DOMAINSCOPE_SCAN_DEADLINE        overall scan deadline in seconds
    DOMAINSCOPE_TIMEOUT_<KIND>       per-probe timeout, e.g. TIMEOUT_WHOIS=10
    DOMAINSCOPE_TTL_<KIND>           cache TTL, e.g. TTL_DNS=300
    DOMAINSCOPE_RETRY_ATTEMPTS       attempts for transient network errors
    DOMAINSCOPE_RATE_LIMIT           requests per window per client
    DOMAINSCOPE_RATE_WINDOW          window length in seconds
    DOMAINSCOPE_REDIS_URL            use Redis for rate-limit state
    DOMAINSCOPE_DATA_DIR             directory overriding the bundled JSON
    DOMAINSCOPE_LOG_LEVEL            logging level for the CLI
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Pattern, Tuple

from domainscope.errors import ConfigError
from domainscope.scanner.models import Category, Severity

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOMAINSCOPE_"

DEFAULT_PROBE_TIMEOUTS: Dict[str, float] = {
    "dns": 8.0,
    "whois": 12.0,
    "blacklist": 8.0,
    "tls": 8.0,
    "headers": 12.0,
    "technology": 14.0,
    "content": 12.0,
}

DEFAULT_CACHE_TTLS: Dict[str, int] = {
    "dns": 300,
    "whois": 86400,
    "blacklist": 7200,
    "tls": 3600,
    "http": 600,
    "headers": 3600,
    "technology": 86400,
    "content": 3600,
}

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; domainscope/0.1; +https://github.com/domainscope)"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    # Orchestrator
    concurrency: int = 6
    scan_deadline: float = 30.0
    abandon_grace: float = 1.0
    probe_timeouts: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_PROBE_TIMEOUTS))

    # Cache
    cache_ttls: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_CACHE_TTLS))
    cache_default_ttl: int = 600
    cache_max_entries: int = 10000
    cache_sweep_interval: int = 300

    # Retry policy for transient network errors
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    retry_backoff_max: float = 4.0

    # DNS
    dns_query_timeout: float = 3.0
    dns_nameservers: Tuple[str, ...] = ()
    srv_services: Tuple[str, ...] = ("_sip._tls", "_xmpp-server._tcp", "_autodiscover._tcp")

    # WHOIS
    whois_timeout: float = 8.0
    whois_follow_referral: bool = True
    whois_iana_fallback: bool = True
    whois_max_bytes: int = 65536

    # Blacklist
    dnsbl_timeout: float = 2.0
    dnsbl_concurrency: int = 10
    blacklist_max_ips: int = 8
    blacklist_check_www: bool = True
    blacklist_check_mail: bool = True
    blacklist_mx_hosts: int = 3

    # TLS
    tls_port: int = 443
    tls_timeout: float = 5.0
    tls_verify_chain: bool = True

    # HTTP
    http_timeout: float = 8.0
    http_max_redirects: int = 5
    http_max_body: int = 2_000_000
    user_agent: str = DEFAULT_USER_AGENT
    required_headers: Tuple[str, ...] = ()

    # Rate limiting
    rate_limit: int = 100
    rate_window: float = 3600.0
    redis_url: Optional[str] = None

    # Misc
    data_dir: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        object.__setattr__(self, "probe_timeouts", MappingProxyType(dict(self.probe_timeouts)))
        object.__setattr__(self, "cache_ttls", MappingProxyType(dict(self.cache_ttls)))
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.scan_deadline <= 0:
            raise ConfigError("scan_deadline must be positive")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1")

    def probe_timeout(self, kind: str) -> float:
        return float(self.probe_timeouts.get(kind, self.scan_deadline))

    def ttl_for(self, kind: str) -> int:
        return int(self.cache_ttls.get(kind, self.cache_default_ttl))

    def with_overrides(self, **changes: Any) -> "Settings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value is not None and value.strip() else None

        overrides: Dict[str, Any] = {}
        scalar_fields = {
            "CONCURRENCY": ("concurrency", int),
            "SCAN_DEADLINE": ("scan_deadline", float),
            "RETRY_ATTEMPTS": ("retry_attempts", int),
            "RETRY_BACKOFF": ("retry_backoff", float),
            "DNS_QUERY_TIMEOUT": ("dns_query_timeout", float),
            "WHOIS_TIMEOUT": ("whois_timeout", float),
            "DNSBL_TIMEOUT": ("dnsbl_timeout", float),
            "DNSBL_CONCURRENCY": ("dnsbl_concurrency", int),
            "HTTP_TIMEOUT": ("http_timeout", float),
            "CACHE_MAX_ENTRIES": ("cache_max_entries", int),
            "RATE_LIMIT": ("rate_limit", int),
            "RATE_WINDOW": ("rate_window", float),
        }
        for env_name, (attr, cast) in scalar_fields.items():
            raw = get(env_name)
            if raw is None:
                continue
            try:
                overrides[attr] = cast(raw)
            except ValueError as e:
                raise ConfigError(f"{ENV_PREFIX}{env_name}={raw!r} is not a valid {cast.__name__}") from e

        def per_kind(defaults: Mapping[str, Any], prefix: str, cast) -> Dict[str, Any]:
            values = dict(defaults)
            for kind in values:
                raw = get(f"{prefix}_{kind.upper()}")
                if raw is None:
                    continue
                try:
                    values[kind] = cast(raw)
                except ValueError as e:
                    raise ConfigError(f"{ENV_PREFIX}{prefix}_{kind.upper()}={raw!r} is not a valid {cast.__name__}") from e
            return values

        overrides["probe_timeouts"] = per_kind(DEFAULT_PROBE_TIMEOUTS, "TIMEOUT", float)
        overrides["cache_ttls"] = per_kind(DEFAULT_CACHE_TTLS, "TTL", int)

        nameservers = get("DNS_NAMESERVERS")
        if nameservers:
            overrides["dns_nameservers"] = tuple(n.strip() for n in nameservers.split(",") if n.strip())

        for env_name, attr in (("REDIS_URL", "redis_url"), ("DATA_DIR", "data_dir"),
                               ("LOG_LEVEL", "log_level"), ("USER_AGENT", "user_agent")):
            raw = get(env_name)
            if raw is not None:
                overrides[attr] = raw

        return cls(**overrides)


# ---------------------------------------------------------------------------
# Reference data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WhoisServer:
    host: str
    query: str = "{domain}"

    def format_query(self, domain: str) -> str:
        return self.query.format(domain=domain)


@dataclass(frozen=True)
class DnsblZone:
    zone: str
    name: str


@dataclass(frozen=True)
class SignaturePattern:
    source: str  # header | cookie | meta | html | script | dns
    key: Optional[str]
    regex: Optional[Pattern[str]]
    confidence: int
    version_group: Optional[int] = None


@dataclass(frozen=True)
class TechSignature:
    name: str
    category: str
    patterns: Tuple[SignaturePattern, ...]


@dataclass(frozen=True)
class SignatureDatabase:
    version: str
    technologies: Tuple[TechSignature, ...]
    categories: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Rule:
    id: str
    category: Category
    severity: Severity
    points: float
    check: str
    params: Mapping[str, Any]
    message: str
    action: str
    impact: str = "medium"
    effort: str = "medium"


@dataclass(frozen=True)
class GradeThreshold:
    min_score: float
    grade: str


@dataclass(frozen=True)
class ScoringPolicy:
    version: str
    rules: Tuple[Rule, ...]
    weights: Mapping[Category, float]
    grades: Tuple[GradeThreshold, ...]
    fallback_grade: str = "F"
    unverified_penalty_ratio: float = 0.5


@dataclass(frozen=True)
class ReferenceData:
    whois_servers: Mapping[str, WhoisServer]
    iana_server: str
    dnsbl_zones: Tuple[DnsblZone, ...]
    signatures: SignatureDatabase
    scoring: ScoringPolicy


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

SIGNATURE_SOURCES = ("header", "cookie", "meta", "html", "script", "dns")


def parse_whois_servers(raw: Mapping[str, Any]) -> Tuple[Mapping[str, WhoisServer], str]:
    servers: Dict[str, WhoisServer] = {}
    for tld, entry in (raw.get("servers") or {}).items():
        if isinstance(entry, str):
            servers[tld.lower()] = WhoisServer(host=entry)
        elif isinstance(entry, dict) and entry.get("server"):
            servers[tld.lower()] = WhoisServer(host=entry["server"], query=entry.get("query", "{domain}"))
        else:
            raise ConfigError(f"Bad WHOIS server entry for {tld!r}: {entry!r}")
    return MappingProxyType(servers), raw.get("iana", "whois.iana.org")


def parse_dnsbl_zones(raw: Mapping[str, Any]) -> Tuple[DnsblZone, ...]:
    zones = []
    seen = set()
    for entry in raw.get("zones") or []:
        zone = (entry.get("zone") or "").strip().lower().rstrip(".")
        if not zone:
            raise ConfigError(f"DNSBL entry without zone: {entry!r}")
        if zone in seen:
            continue
        seen.add(zone)
        zones.append(DnsblZone(zone=zone, name=entry.get("name") or zone))
    return tuple(zones)


def parse_signatures(raw: Mapping[str, Any]) -> SignatureDatabase:
    technologies = []
    for tech in raw.get("technologies") or []:
        name = tech.get("name")
        if not name:
            raise ConfigError(f"Technology signature without name: {tech!r}")
        patterns = []
        for p in tech.get("patterns") or []:
            source = p.get("source")
            if source not in SIGNATURE_SOURCES:
                raise ConfigError(f"{name}: unknown signature source {source!r}")
            match = p.get("match")
            try:
                regex = re.compile(match, re.IGNORECASE) if match else None
            except re.error as e:
                raise ConfigError(f"{name}: bad pattern {match!r}: {e}") from e
            if regex is None and source in ("html", "script", "cookie"):
                raise ConfigError(f"{name}: {source} patterns need a 'match' regex")
            key = p.get("key")
            if source in ("header", "meta", "dns") and not key:
                raise ConfigError(f"{name}: {source} patterns need a 'key'")
            patterns.append(SignaturePattern(
                source=source,
                key=key.lower() if key and source != "dns" else (key.upper() if key else None),
                regex=regex,
                confidence=max(0, min(100, int(p.get("confidence", 50)))),
                version_group=p.get("version"),
            ))
        technologies.append(TechSignature(name=name, category=tech.get("category", "other"), patterns=tuple(patterns)))
    return SignatureDatabase(
        version=str(raw.get("version", "")),
        technologies=tuple(technologies),
        categories=MappingProxyType(dict(raw.get("categories") or {})),
    )


def parse_scoring_policy(raw: Mapping[str, Any]) -> ScoringPolicy:
    try:
        weights = {Category(k): float(v) for k, v in (raw.get("weights") or {}).items()}
    except ValueError as e:
        raise ConfigError(f"Unknown category in weights: {e}") from e
    if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
        raise ConfigError("Category weights must be non-negative and sum to a positive value")

    grades = tuple(sorted(
        (GradeThreshold(min_score=float(g["min"]), grade=str(g["grade"])) for g in raw.get("grades") or []),
        key=lambda g: g.min_score,
        reverse=True,
    ))

    rules = []
    seen = set()
    for r in raw.get("rules") or []:
        rule_id = r.get("id")
        if not rule_id:
            raise ConfigError(f"Rule without id: {r!r}")
        if rule_id in seen:
            raise ConfigError(f"Duplicate rule id {rule_id!r}")
        seen.add(rule_id)
        try:
            category = Category(r["category"])
            severity = Severity(r["severity"])
        except (KeyError, ValueError) as e:
            raise ConfigError(f"Rule {rule_id}: bad category or severity ({e})") from e
        if category not in weights:
            raise ConfigError(f"Rule {rule_id}: category {category.value} has no weight")
        rules.append(Rule(
            id=rule_id,
            category=category,
            severity=severity,
            points=float(r.get("points", 0)),
            check=r["check"],
            params=MappingProxyType(dict(r.get("params") or {})),
            message=r.get("message", rule_id),
            action=r.get("action", ""),
            impact=r.get("impact", "medium"),
            effort=r.get("effort", "medium"),
        ))

    ratio = float(raw.get("unverified_penalty_ratio", 0.5))
    if not 0.0 <= ratio <= 1.0:
        raise ConfigError("unverified_penalty_ratio must be within [0, 1]")

    return ScoringPolicy(
        version=str(raw.get("version", "")),
        rules=tuple(rules),
        weights=MappingProxyType(weights),
        grades=grades,
        fallback_grade=str(raw.get("fallback_grade", "F")),
        unverified_penalty_ratio=ratio,
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

DATA_FILES = {
    "whois": "whois_servers.json",
    "dnsbl": "dnsbl_zones.json",
    "signatures": "tech_signatures.json",
    "scoring": "scoring_policy.json",
}


def _read_json(name: str, data_dir: Optional[str]) -> Mapping[str, Any]:
    # Partial override directories fall back to the bundled file
    override = Path(data_dir) / name if data_dir else None
    if override is not None and override.exists():
        text = override.read_text(encoding="utf-8")
    else:
        text = (resources.files("domainscope") / "data" / name).read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{name} is not valid JSON: {e}") from e


def load_reference_data(data_dir: Optional[str] = None) -> ReferenceData:
    """Read and validate every reference table. Call once per process."""
    whois_servers, iana = parse_whois_servers(_read_json(DATA_FILES["whois"], data_dir))
    zones = parse_dnsbl_zones(_read_json(DATA_FILES["dnsbl"], data_dir))
    signatures = parse_signatures(_read_json(DATA_FILES["signatures"], data_dir))
    scoring = parse_scoring_policy(_read_json(DATA_FILES["scoring"], data_dir))

    logger.info(
        f"Loaded reference data: {len(whois_servers)} WHOIS servers, {len(zones)} DNSBL zones, "
        f"{len(signatures.technologies)} signatures (v{signatures.version}), "
        f"{len(scoring.rules)} scoring rules (v{scoring.version})"
    )
    return ReferenceData(
        whois_servers=whois_servers,
        iana_server=iana,
        dnsbl_zones=zones,
        signatures=signatures,
        scoring=scoring,
    )


@lru_cache(maxsize=1)
def default_reference_data() -> ReferenceData:
    """Bundled reference data, loaded on first use and shared read-only."""
    return load_reference_data()

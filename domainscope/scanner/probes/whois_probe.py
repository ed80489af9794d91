# domainscope/scanner/probes/whois_probe.py
"""
WHOIS probe.

Looks up domain registration data over the line-oriented WHOIS protocol
(TCP/43).

Server selection:
    1. Full public suffix from the reference table ("co.uk" before "uk")
    2. Last label ("com")
    3. IANA referral (whois.iana.org "refer:" line), when enabled

Registries that only publish thin data (Verisign for .com/.net) point at the
registrar's server with "Registrar WHOIS Server:". The probe follows that
referral once and fills in what the registry left out; a failed referral
keeps the registry data and adds a warning.

Parsing is key:value line scanning with an alias table, plus indented
continuation lines for formats that put values under a block header
(Nominet's "Name servers:" block, for example). Rate-limit banners and
responses missing core fields come back as PartialData, never as a crash.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from domainscope.config import ReferenceData, WhoisServer
from domainscope.errors import NetworkError, PermanentError, ProbeError
from domainscope.scanner.base import BaseProbe, Collected, ScanContext, complete_only
from domainscope.scanner.models import ProbeKind, WhoisResult
from domainscope.target import Target

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parsing tables
# ---------------------------------------------------------------------------

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "registrar": ("registrar", "registrar name", "sponsoring registrar", "registrar organization"),
    "creation_date": ("creation date", "created date", "registration date", "created", "created on",
                      "registered", "registered on", "domain registration date", "registration time"),
    "expiry_date": ("registry expiry date", "registrar registration expiration date", "expiration date",
                    "expiry date", "expires", "expires on", "expire date", "paid-till", "expiration time",
                    "renewal date"),
    "updated_date": ("updated date", "last modified", "last updated", "last update", "changed", "modified"),
    "registrant_org": ("registrant organization", "registrant organisation", "org-name", "registrant"),
    "registrant_country": ("registrant country", "registrant country code"),
    "dnssec": ("dnssec",),
    "nameservers": ("name server", "name servers", "nameserver", "nameservers", "nserver"),
    "statuses": ("domain status", "status", "state"),
}

LABEL_TO_FIELD = {label: name for name, labels in FIELD_ALIASES.items() for label in labels}

MULTI_VALUE_FIELDS = ("nameservers", "statuses")

REDACTED_VALUES = (
    "redacted", "redacted for privacy", "data protected", "not disclosed",
    "gdpr masked", "statutory masking enabled", "contact privacy inc.",
)

NOT_FOUND_RE = re.compile(
    r"no match for|not found|no data found|no entries found|no object found|"
    r"status:\s*(?:free|available)|is available for registration|domain not registered",
    re.IGNORECASE,
)

RATE_LIMIT_RE = re.compile(
    r"limit exceeded|rate limit|too many requests|quota exceeded|exceeded the (?:query|maximum) "
    r"|try again later|query rate|access denied",
    re.IGNORECASE,
)

REFERRAL_PATTERNS = (
    re.compile(r"Registrar WHOIS Server:\s*(\S+)", re.IGNORECASE),
    re.compile(r"Whois Server:\s*(\S+)", re.IGNORECASE),
    re.compile(r"^refer:\s*(\S+)", re.IGNORECASE | re.MULTILINE),
)

DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S%z", "%Y-%m-%d", "%d-%b-%Y", "%d-%b-%Y %H:%M:%S",
    "%d/%m/%Y", "%Y/%m/%d", "%Y.%m.%d", "%d.%m.%Y", "%b %d %Y", "%Y%m%d",
)


def parse_date(value: str) -> Optional[datetime]:
    """Parse the date formats registries actually use. Returns UTC datetimes."""
    s = value.strip().split(" (")[0].strip()
    if s.upper().endswith(" UTC"):
        s = s[:-4].strip()
    for fmt in DATE_FORMATS:
        try:
            dt = datetime.strptime(s, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def _parse_dnssec(value: Optional[str]) -> Optional[bool]:
    if not value:
        return None
    v = value.strip().lower()
    if v in ("unsigned", "no", "inactive", "false", "unsigned delegation"):
        return False
    if v.startswith("signed") or v in ("yes", "active", "true"):
        return True
    return None


def scan_fields(raw: str) -> Dict[str, List[str]]:
    """Collect values per known field from key:value lines and indented blocks."""
    fields: Dict[str, List[str]] = {}
    block: Optional[str] = None

    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped:
            block = None
            continue
        if stripped.startswith(">>>"):
            # Verisign-style footer; everything after is boilerplate
            break
        if stripped.startswith(("%", "#")):
            continue

        indented = line[:1] in (" ", "\t")
        key, sep, value = stripped.partition(":")
        field = LABEL_TO_FIELD.get(key.strip().lower()) if sep else None

        if field:
            value = value.strip()
            if value:
                fields.setdefault(field, []).append(value)
                block = field if field in MULTI_VALUE_FIELDS else None
            else:
                block = field
            continue

        if sep and not indented:
            block = None
            continue

        if block and indented and not sep:
            fields.setdefault(block, []).append(stripped)

    return fields


def _first(fields: Dict[str, List[str]], name: str) -> Optional[str]:
    for value in fields.get(name, []):
        cleaned = re.sub(r"\s*\[Tag = [^\]]*\]", "", value).strip()
        if cleaned and cleaned.lower() not in REDACTED_VALUES:
            return cleaned
    return None


def extract_referral(raw: str) -> Optional[str]:
    for pattern in REFERRAL_PATTERNS:
        match = pattern.search(raw)
        if match:
            server = match.group(1).strip().rstrip(".").lower()
            for prefix in ("whois://", "rwhois://", "http://", "https://"):
                if server.startswith(prefix):
                    server = server[len(prefix):]
            server = server.split("/")[0].split(":")[0]
            if server and "." in server:
                return server
    return None


def parse_whois(raw: str, domain: str, server: str, now: datetime) -> Tuple[WhoisResult, List[str]]:
    """
    Turn a WHOIS reply into a WhoisResult plus warnings.

    Never raises: unknown layouts give a sparse result and warnings that
    mark the probe PartialData.
    """
    warnings: List[str] = []
    rate_limited = bool(RATE_LIMIT_RE.search(raw))
    fields = scan_fields(raw)

    registered = not (NOT_FOUND_RE.search(raw) and not fields.get("creation_date") and not fields.get("registrar"))
    if not registered:
        return WhoisResult(domain=domain, server=server, registered=False), warnings

    dates: Dict[str, Optional[datetime]] = {}
    for name in ("creation_date", "expiry_date", "updated_date"):
        value = _first(fields, name)
        dates[name] = parse_date(value) if value else None
        if value and dates[name] is None:
            warnings.append(f"Unparseable {name.replace('_', ' ')}: {value!r}")

    nameservers = tuple(dict.fromkeys(
        v.split()[0].lower().rstrip(".") for v in fields.get("nameservers", []) if v.split()
    ))
    statuses = tuple(dict.fromkeys(
        v.split()[0] for v in fields.get("statuses", []) if v.split()
    ))

    expiry = dates["expiry_date"]
    creation = dates["creation_date"]
    result = WhoisResult(
        domain=domain,
        server=server,
        registered=True,
        registrar=_first(fields, "registrar"),
        creation_date=creation,
        expiry_date=expiry,
        updated_date=dates["updated_date"],
        nameservers=nameservers,
        statuses=statuses,
        dnssec=_parse_dnssec(_first(fields, "dnssec")),
        registrant_org=_first(fields, "registrant_org"),
        registrant_country=_first(fields, "registrant_country"),
        days_until_expiry=(expiry - now).days if expiry else None,
        domain_age_days=(now - creation).days if creation else None,
        rate_limited=rate_limited,
    )

    if rate_limited:
        warnings.append(f"WHOIS server {server} reported a rate limit")
    return result, warnings


def _merge(registry: WhoisResult, registrar: WhoisResult, referral: str) -> WhoisResult:
    """Fill fields the registry left empty from the registrar's reply."""
    changes = {"referral_server": referral}
    for name in ("registrar", "creation_date", "expiry_date", "updated_date", "dnssec",
                 "registrant_org", "registrant_country", "days_until_expiry", "domain_age_days"):
        if getattr(registry, name) is None and getattr(registrar, name) is not None:
            changes[name] = getattr(registrar, name)
    if not registry.nameservers and registrar.nameservers:
        changes["nameservers"] = registrar.nameservers
    if not registry.statuses and registrar.statuses:
        changes["statuses"] = registrar.statuses
    return replace(registry, **changes)


def _missing_core(result: WhoisResult) -> List[str]:
    missing = []
    if not result.registrar:
        missing.append("registrar")
    if not result.creation_date:
        missing.append("creation date")
    if not result.expiry_date:
        missing.append("expiry date")
    return missing


# ---------------------------------------------------------------------------
# Server selection
# ---------------------------------------------------------------------------

def select_whois_server(data: ReferenceData, target: Target) -> Optional[WhoisServer]:
    """Most specific suffix first: 'co.uk' before 'uk'."""
    candidates = []
    if target.suffix:
        candidates.append(target.suffix.lower())
    candidates.append(target.tld)
    for suffix in candidates:
        server = data.whois_servers.get(suffix)
        if server is not None:
            return server
    return None


class WhoisProbe(BaseProbe):
    kind = ProbeKind.WHOIS
    supported_target_kinds = ("domain",)

    def _query(self, ctx: ScanContext, host: str, query: str) -> str:
        raw = ctx.with_retries(
            ctx.network.whois_query,
            host,
            query,
            ctx.deadline,
            ctx.settings.whois_timeout,
            ctx.settings.whois_max_bytes,
        )
        if not raw or not raw.strip():
            raise NetworkError(f"WHOIS server {host} returned an empty reply")
        return raw

    def _iana_server(self, ctx: ScanContext) -> Optional[WhoisServer]:
        tld = ctx.target.tld
        try:
            raw = self._query(ctx, ctx.data.iana_server, tld)
        except (NetworkError, PermanentError) as e:
            logger.debug(f"IANA lookup for .{tld} failed: {e}")
            return None
        host = extract_referral(raw)
        return WhoisServer(host=host) if host else None

    def collect(self, ctx: ScanContext) -> Collected:
        domain = ctx.target.registrable or ctx.target.value
        server = select_whois_server(ctx.data, ctx.target)
        if server is None and ctx.settings.whois_iana_fallback:
            server = self._iana_server(ctx)
        if server is None:
            raise PermanentError(f"No WHOIS server known for .{ctx.target.tld}")

        logger.info(f"WHOIS: querying {server.host} for {domain}")

        def fetch() -> Collected:
            raw = self._query(ctx, server.host, server.format_query(domain))
            now = ctx.clock.now()
            result, warnings = parse_whois(raw, domain, server.host, now)

            referral = extract_referral(raw) if result.registered else None
            if ctx.settings.whois_follow_referral and referral and referral != server.host:
                try:
                    referral_raw = self._query(ctx, referral, domain)
                    referral_result, referral_warnings = parse_whois(referral_raw, domain, referral, now)
                    result = _merge(result, referral_result, referral)
                    warnings.extend(w for w in referral_warnings if "rate limit" in w)
                except ProbeError as e:
                    warnings.append(f"Referral to {referral} failed: {e}")

            if result.registered and not result.rate_limited:
                missing = _missing_core(result)
                if missing:
                    warnings.append(f"Incomplete WHOIS response: missing {', '.join(missing)}")
            return Collected(result, warnings=tuple(warnings))

        base_ttl = ctx.settings.ttl_for("whois")
        value, hit = ctx.cached("whois", fetch, ttl=lambda v: complete_only(v, base_ttl))
        return replace(value, cached=hit)

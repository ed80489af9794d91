# domainscope/scanner/probes/dns_probe.py
"""
DNS probe.

Queries the record set for a domain and parses the email-authentication
records that live in it.

What this probe collects:
    - A, AAAA, MX, TXT, NS, CNAME, SOA, CAA records, each with its TTL
    - SRV records for a configurable list of service names
    - SPF record parsed from TXT (all-qualifier, mechanisms, lookup count)
    - DMARC record parsed from _dmarc.<domain>, falling back to the
      registered domain for subdomains

Missing record types are empty, not errors. NXDOMAIN yields a result with
exists=False. Individual query timeouts mark the result PartialData; if
every query times out the probe is TimedOut.

The lookup is shared: lookup_records() goes through the cache with
single-flight, so the blacklist and technology probes reuse the same answer
even when they ask while this probe's query is still in flight.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import dns.exception
import dns.resolver

from domainscope.errors import NetworkError, NetworkTimeout
from domainscope.scanner.base import BaseProbe, Collected, ScanContext
from domainscope.scanner.models import DmarcPolicy, DnsResult, MxRecord, ProbeKind, SpfPolicy

logger = logging.getLogger(__name__)

RECORD_TYPES = ("A", "AAAA", "MX", "TXT", "NS", "CNAME", "SOA", "CAA")

# Records with tiny TTLs still stay cached long enough to serve a scan
MIN_DNS_CACHE_TTL = 60

# SPF terms that cost a DNS lookup (RFC 7208 limits these to 10)
SPF_LOOKUP_PREFIXES = ("include:", "exists:", "redirect=", "a:", "a/", "mx:", "mx/", "ptr:")
SPF_LOOKUP_BARE = ("a", "mx", "ptr")

# Query states
OK, EMPTY, NXDOMAIN, TIMEOUT, ERROR = "ok", "empty", "nxdomain", "timeout", "error"


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

def _rdata_text(rdata, rdtype: str) -> str:
    if rdtype == "TXT":
        strings = getattr(rdata, "strings", None)
        if strings:
            return "".join(s.decode("utf-8", errors="replace") if isinstance(s, bytes) else str(s) for s in strings)
        return str(rdata).strip('"')
    if rdtype in ("NS", "CNAME"):
        return str(rdata).rstrip(".").lower()
    return str(rdata)


def _answer_ttl(answer) -> Optional[int]:
    rrset = getattr(answer, "rrset", None)
    return int(rrset.ttl) if rrset is not None else None


def query(ctx: ScanContext, name: str, rdtype: str) -> Tuple[List[str], Optional[int], str]:
    """One bounded query. Returns (values, ttl, state); never raises DNS errors."""
    lifetime = ctx.deadline.bound(ctx.settings.dns_query_timeout)
    try:
        answer = ctx.network.resolve(name, rdtype, lifetime)
    except dns.resolver.NXDOMAIN:
        return [], None, NXDOMAIN
    except dns.resolver.NoAnswer:
        return [], None, EMPTY
    except dns.resolver.NoNameservers:
        return [], None, ERROR
    except dns.exception.Timeout:
        return [], None, TIMEOUT
    except dns.exception.DNSException as e:
        logger.debug(f"DNS query failed for {name} {rdtype}: {e}")
        return [], None, ERROR
    return [_rdata_text(r, rdtype) for r in answer], _answer_ttl(answer), OK


# ---------------------------------------------------------------------------
# Record parsers
# ---------------------------------------------------------------------------

def parse_mx(values: Tuple[str, ...]) -> Tuple[MxRecord, ...]:
    out = []
    for entry in values:
        parts = entry.split()
        if len(parts) >= 2:
            try:
                out.append(MxRecord(priority=int(parts[0]), host=parts[1].rstrip(".").lower()))
                continue
            except ValueError:
                pass
        out.append(MxRecord(priority=0, host=entry.rstrip(".").lower()))
    return tuple(sorted(out, key=lambda m: (m.priority, m.host)))


def parse_spf(txt_records: Tuple[str, ...]) -> Optional[SpfPolicy]:
    """Parse the first v=spf1 TXT record into its mechanisms."""
    for txt in txt_records:
        if not txt.lower().startswith("v=spf1"):
            continue
        mechanisms = []
        all_qualifier = None
        lookups = 0
        for part in txt.split()[1:]:
            term = part.lower()
            bare = term.lstrip("+-~?")
            if bare == "all":
                all_qualifier = term[0] if term[0] in "+-~?" else "+"
            if bare in SPF_LOOKUP_BARE or bare.startswith(SPF_LOOKUP_PREFIXES):
                lookups += 1
            mechanisms.append(part)
        return SpfPolicy(raw=txt, all_qualifier=all_qualifier, mechanisms=tuple(mechanisms), lookup_count=lookups)
    return None


def parse_dmarc(txt_records: List[str]) -> Optional[DmarcPolicy]:
    """Parse a v=DMARC1 record's tag=value pairs."""
    for txt in txt_records:
        raw = txt.strip().strip('"')
        if not raw.lower().startswith("v=dmarc1"):
            continue
        tags: Dict[str, str] = {}
        for part in raw.split(";"):
            if "=" not in part:
                continue
            tag, value = part.split("=", 1)
            tags[tag.strip().lower()] = value.strip()
        pct = None
        if "pct" in tags:
            try:
                pct = int(tags["pct"])
            except ValueError:
                pct = None
        return DmarcPolicy(
            raw=raw,
            policy=tags.get("p", "").lower() or None,
            subdomain_policy=tags.get("sp", "").lower() or None,
            pct=pct,
            rua=tags.get("rua"),
        )
    return None


# ---------------------------------------------------------------------------
# Shared lookup
# ---------------------------------------------------------------------------

def _collect_records(ctx: ScanContext) -> Collected:
    domain = ctx.target.value
    records: Dict[str, Tuple[str, ...]] = {}
    ttls: Dict[str, int] = {}
    warnings: List[str] = []
    timeouts = errors = 0

    for rdtype in RECORD_TYPES:
        ctx.deadline.check("dns")
        values, ttl, state = query(ctx, domain, rdtype)
        if state == NXDOMAIN:
            logger.info(f"DNS: {domain} does not exist (NXDOMAIN)")
            return Collected(DnsResult(domain=domain, exists=False))
        if state == TIMEOUT:
            timeouts += 1
            warnings.append(f"{rdtype} query timed out")
        elif state == ERROR:
            errors += 1
            warnings.append(f"{rdtype} query failed")
        if values:
            records[rdtype] = tuple(values)
            if ttl is not None:
                ttls[rdtype] = ttl

    if timeouts == len(RECORD_TYPES):
        raise NetworkTimeout(f"Every DNS query for {domain} timed out")
    if timeouts + errors == len(RECORD_TYPES):
        raise NetworkError(f"No nameserver answered for {domain}")

    srv: List[str] = []
    for service in ctx.settings.srv_services:
        values, ttl, state = query(ctx, f"{service}.{domain}", "SRV")
        srv.extend(f"{service} {v}" for v in values)
        if values and ttl is not None:
            ttls["SRV"] = min(ttl, ttls.get("SRV", ttl))
    if srv:
        records["SRV"] = tuple(srv)

    dmarc_values, _, dmarc_state = query(ctx, f"_dmarc.{domain}", "TXT")
    dmarc = parse_dmarc(dmarc_values)
    organizational = ctx.target.registrable
    if dmarc is None and organizational and organizational != domain:
        # Subdomains inherit the registered domain's policy (RFC 7489 6.6.3)
        dmarc_values, _, dmarc_state = query(ctx, f"_dmarc.{organizational}", "TXT")
        dmarc = parse_dmarc(dmarc_values)
    if dmarc_state in (TIMEOUT, ERROR):
        warnings.append("DMARC query did not complete")

    result = DnsResult(
        domain=domain,
        exists=True,
        records=records,
        ttls=ttls,
        mx=parse_mx(records.get("MX", ())),
        spf=parse_spf(records.get("TXT", ())),
        dmarc=dmarc,
    )
    logger.debug(f"DNS: {domain} -> {sum(len(v) for v in records.values())} records, TTLs {ttls}")
    return Collected(result, warnings=tuple(warnings))


def _cache_ttl(ctx: ScanContext):
    base = ctx.settings.ttl_for("dns")

    def ttl(value: Collected) -> float:
        if value.warnings:
            return 0
        min_ttl = value.data.min_ttl if isinstance(value.data, DnsResult) else None
        if min_ttl is None:
            return base
        return min(base, max(MIN_DNS_CACHE_TTL, min_ttl))

    return ttl


def lookup_records(ctx: ScanContext) -> Collected:
    """Cached, single-flight record lookup for ctx.target."""
    value, hit = ctx.cached("dns", lambda: ctx.with_retries(_collect_records, ctx), ttl=_cache_ttl(ctx))
    return replace(value, cached=hit)


def resolve_addresses(ctx: ScanContext) -> Tuple[str, ...]:
    """IPv4 addresses for the target: the IP itself, or its A records."""
    if ctx.target.is_ip:
        return (ctx.target.value,) if ":" not in ctx.target.value else ()
    return lookup_records(ctx).data.addresses


class DnsProbe(BaseProbe):
    kind = ProbeKind.DNS
    supported_target_kinds = ("domain",)

    def collect(self, ctx: ScanContext) -> Collected:
        return lookup_records(ctx)

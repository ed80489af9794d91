# domainscope/scanner/probes/blacklist_probe.py
"""
DNS blacklist (DNSBL) probe.

For every IPv4 address behind the target (its own A records, www.<domain>
and the top MX hosts), asks each configured DNSBL zone whether it lists
that address: the octets are reversed and prepended to the zone
("1.2.0.192.zen.spamhaus.org") and an A query is sent. A listing on one
address is kept even if another address in the same zone times out.

Answers:
    127.0.0.0/8         listed (the last octet is the list's return code)
    127.255.255.x       resolver refused or blocked; recorded as an error
    NXDOMAIN / NoAnswer clean
    timeout             zone unresponsive

Zones are queried concurrently on a small thread pool, each call bounded by
a short resolver lifetime. Zones still pending when the probe deadline runs
out are recorded as unresponsive; the probe never waits past it. If no zone
answers at all the probe times out.
"""

from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

import dns.exception
import dns.resolver

from domainscope.config import DnsblZone
from domainscope.errors import NetworkTimeout, ProbeTimeout
from domainscope.scanner.base import BaseProbe, Collected, ScanContext, complete_only
from domainscope.scanner.models import BlacklistListing, BlacklistResult, ProbeKind
from domainscope.scanner.probes.dns_probe import ERROR as DNS_ERROR
from domainscope.scanner.probes.dns_probe import TIMEOUT as DNS_TIMEOUT
from domainscope.scanner.probes.dns_probe import lookup_records, resolve_addresses
from domainscope.scanner.probes.dns_probe import query as dns_query

logger = logging.getLogger(__name__)

LISTED_NETWORK = ipaddress.ip_network("127.0.0.0/8")
REFUSAL_PREFIX = "127.255.255."

# Zone outcomes
CLEAN, LISTED, ERROR, UNRESPONSIVE = "clean", "listed", "error", "unresponsive"


@dataclass(frozen=True)
class ZoneOutcome:
    zone: DnsblZone
    state: str
    listings: Tuple[BlacklistListing, ...] = ()
    detail: str = ""


def reverse_ip(ip: str) -> str:
    return ".".join(reversed(ip.split(".")))


def classify_answer(values: List[str]) -> Tuple[str, str]:
    """(state, detail) for the A records a DNSBL returned for one address."""
    for value in values:
        if value.startswith(REFUSAL_PREFIX):
            return ERROR, f"query refused ({value})"
    listed = []
    for value in values:
        try:
            if ipaddress.ip_address(value) in LISTED_NETWORK:
                listed.append(value)
        except ValueError:
            continue
    if listed:
        return LISTED, listed[0]
    return ERROR, f"unexpected answer {', '.join(values)}"


def check_zone(ctx: ScanContext, zone: DnsblZone, ips: Tuple[str, ...]) -> ZoneOutcome:
    """
    Query one zone for every address. Never raises DNS errors.

    A listing on any address wins over a failure on another; the failure
    detail is kept on the outcome so it can still be reported.
    """
    listings: List[BlacklistListing] = []
    failure: Optional[ZoneOutcome] = None
    for ip in ips:
        name = f"{reverse_ip(ip)}.{zone.zone}"
        try:
            lifetime = ctx.deadline.bound(ctx.settings.dnsbl_timeout)
        except ProbeTimeout:
            failure = failure or ZoneOutcome(zone, UNRESPONSIVE, detail=f"{ip}: deadline reached")
            break
        try:
            answer = ctx.network.resolve(name, "A", lifetime)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            continue
        except dns.exception.Timeout:
            failure = failure or ZoneOutcome(zone, UNRESPONSIVE, detail=f"{ip}: timed out")
            continue
        except dns.exception.DNSException as e:
            failure = failure or ZoneOutcome(zone, ERROR, detail=f"{ip}: {str(e) or type(e).__name__}")
            continue

        state, detail = classify_answer([str(r) for r in answer])
        if state == ERROR:
            failure = failure or ZoneOutcome(zone, ERROR, detail=f"{ip}: {detail}")
            continue
        listings.append(BlacklistListing(ip=ip, zone=zone.zone, name=zone.name, response=detail))

    if listings:
        return ZoneOutcome(zone, LISTED, listings=tuple(listings), detail=failure.detail if failure else "")
    if failure is not None:
        return failure
    return ZoneOutcome(zone, CLEAN)


def _ipv4_only(addresses: Iterable[str], limit: int) -> Tuple[str, ...]:
    out = []
    for addr in addresses:
        try:
            if ipaddress.ip_address(addr).version == 4:
                out.append(addr)
        except ValueError:
            continue
    return tuple(dict.fromkeys(out))[:limit]


def _host_addresses(ctx: ScanContext, host: str, warnings: List[str]) -> List[str]:
    values, _, state = dns_query(ctx, host, "A")
    if state in (DNS_TIMEOUT, DNS_ERROR):
        warnings.append(f"A lookup for {host} did not complete")
    return values


def collect_addresses(ctx: ScanContext) -> Collected:
    """
    IPv4 addresses worth checking: the target's own A records, then
    www.<domain> and the top MX hosts. Deduplicated and capped at
    settings.blacklist_max_ips.
    """
    settings = ctx.settings
    if ctx.target.is_ip:
        return Collected(_ipv4_only(resolve_addresses(ctx), settings.blacklist_max_ips))

    warnings: List[str] = []
    addresses = list(resolve_addresses(ctx))
    domain = ctx.target.value

    if settings.blacklist_check_www and not domain.startswith("www."):
        addresses.extend(_host_addresses(ctx, f"www.{domain}", warnings))

    if settings.blacklist_check_mail:
        mx = lookup_records(ctx).data.mx
        for record in mx[:settings.blacklist_mx_hosts]:
            if record.host:
                addresses.extend(_host_addresses(ctx, record.host, warnings))

    return Collected(_ipv4_only(addresses, settings.blacklist_max_ips), warnings=tuple(warnings))


def run_zones(ctx: ScanContext, zones: Tuple[DnsblZone, ...], ips: Tuple[str, ...]) -> List[ZoneOutcome]:
    """
    Check every zone concurrently, returning outcomes in zone order.

    Zones without an answer when the deadline expires come back as
    UNRESPONSIVE. The pool is shut down without waiting for them.
    """
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(ctx.settings.dnsbl_concurrency, len(zones))),
        thread_name_prefix="dnsbl",
    )
    outcomes: Dict[str, ZoneOutcome] = {}
    try:
        pending: Dict[Future, DnsblZone] = {
            executor.submit(check_zone, ctx, zone, ips): zone for zone in zones
        }
        while pending:
            remaining = ctx.deadline.remaining()
            if remaining <= 0:
                break
            done, _ = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
            for future in done:
                zone = pending.pop(future)
                try:
                    outcomes[zone.zone] = future.result()
                except Exception as e:
                    # ProbeTimeout from deadline.bound() lands here too
                    outcomes[zone.zone] = ZoneOutcome(zone, UNRESPONSIVE, detail=str(e))
        for future, zone in pending.items():
            future.cancel()
            outcomes[zone.zone] = ZoneOutcome(zone, UNRESPONSIVE, detail="no answer before deadline")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return [outcomes[z.zone] for z in zones]


class BlacklistProbe(BaseProbe):
    kind = ProbeKind.BLACKLIST

    def collect(self, ctx: ScanContext) -> Collected:
        dns_ttl = ctx.settings.ttl_for("dns")
        addresses, _ = ctx.cached("blacklist_ips", lambda: collect_addresses(ctx), ttl=lambda v: complete_only(v, dns_ttl))
        ips = addresses.data
        zones = ctx.data.dnsbl_zones

        if not ips:
            return Collected(
                BlacklistResult(ips=(), checked=0, listed=0),
                warnings=addresses.warnings + ("No IPv4 address to check against blacklists",),
            )

        def fetch() -> Collected:
            logger.info(f"Blacklist: checking {len(ips)} IP(s) against {len(zones)} zones")
            outcomes = run_zones(ctx, zones, ips)

            listings = tuple(l for o in outcomes for l in o.listings)
            unresponsive = tuple(o.zone.zone for o in outcomes if o.state == UNRESPONSIVE)
            if len(unresponsive) == len(zones):
                raise NetworkTimeout(f"No blacklist zone answered for {', '.join(ips)}")
            errored = tuple(o.zone.zone for o in outcomes if o.state == ERROR)
            incomplete = tuple(f"{o.zone.zone} ({o.detail})" for o in outcomes if o.state == LISTED and o.detail)
            result = BlacklistResult(
                ips=ips,
                checked=len(zones),
                listed=sum(1 for o in outcomes if o.state == LISTED),
                listings=listings,
                unresponsive=unresponsive,
                errored=errored,
            )

            warnings: List[str] = []
            if unresponsive:
                warnings.append(f"{len(unresponsive)} blacklist zone(s) did not answer: {', '.join(unresponsive)}")
            if errored:
                warnings.append(f"{len(errored)} blacklist zone(s) returned errors: {', '.join(errored)}")
            if incomplete:
                warnings.append(f"Listing zone(s) not checked for every IP: {', '.join(incomplete)}")
            if result.listed:
                logger.info(f"Blacklist: {ctx.target} listed on {result.listed}/{result.checked} zones")
            return Collected(result, warnings=tuple(warnings))

        base_ttl = ctx.settings.ttl_for("blacklist")
        value, hit = ctx.cached(
            "blacklist", fetch, ttl=lambda v: complete_only(v, base_ttl), ips=",".join(ips)
        )
        if addresses.warnings:
            value = replace(value, warnings=addresses.warnings + value.warnings)
        return replace(value, cached=hit)

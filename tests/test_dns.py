"""DNS probe: record collection, SPF/DMARC parsing, caching and failure modes."""

from __future__ import annotations

import dns.exception
import dns.resolver

from domainscope.config import Settings
from domainscope.scanner.models import ErrorKind, ProbeStatus
from domainscope.scanner.probes.dns_probe import DnsProbe, parse_dmarc, parse_mx, parse_spf

from conftest import FAST_SETTINGS, FakeAnswer, FakeClock, FakeNetwork, site_dns


def test_parse_spf() -> None:
    spf = parse_spf(("google-site-verification=abc", "v=spf1 a mx include:_spf.example.com ~all"))
    assert spf is not None
    assert spf.all_qualifier == "~"
    assert spf.lookup_count == 3
    assert not spf.permissive


def test_parse_spf_bare_all_is_permissive() -> None:
    assert parse_spf(("v=spf1 all",)).permissive
    assert parse_spf(("nothing here",)) is None


def test_parse_dmarc() -> None:
    dmarc = parse_dmarc(["v=DMARC1; p=Quarantine; sp=none; pct=50; rua=mailto:r@example.com"])
    assert dmarc.policy == "quarantine"
    assert dmarc.subdomain_policy == "none"
    assert dmarc.pct == 50
    assert dmarc.enforced


def test_parse_mx_sorts_by_priority() -> None:
    mx = parse_mx(("20 b.example.com.", "10 A.example.com."))
    assert [(m.priority, m.host) for m in mx] == [(10, "a.example.com"), (20, "b.example.com")]


def test_collects_records(make_ctx) -> None:
    network = FakeNetwork(dns=site_dns())
    result = DnsProbe().run(make_ctx(network=network))

    assert result.status == ProbeStatus.SUCCESS
    data = result.data
    assert data.exists
    assert data.addresses == ("93.184.216.34",)
    assert data.get("ns") == ("a.iana-servers.net", "b.iana-servers.net")
    assert data.mx[0].host == "mail.example.com"
    assert data.spf.all_qualifier == "-"
    assert data.dmarc.policy == "reject"
    assert data.ttls["A"] == 300
    assert "CNAME" not in data.records


def test_nxdomain_is_a_result_not_an_error(make_ctx) -> None:
    network = FakeNetwork(dns={("nope.example.com", "A"): dns.resolver.NXDOMAIN()})
    result = DnsProbe().run(make_ctx("nope.example.com", network=network))

    assert result.status == ProbeStatus.SUCCESS
    assert result.data.exists is False


def test_some_timeouts_give_partial_data(make_ctx) -> None:
    records = site_dns()
    records[("example.com", "CAA")] = dns.exception.Timeout()
    result = DnsProbe().run(make_ctx(network=FakeNetwork(dns=records)))

    assert result.status == ProbeStatus.PARTIAL
    assert "CAA query timed out" in result.warnings
    assert result.data.addresses == ("93.184.216.34",)


def test_every_query_timing_out_is_timed_out(make_ctx) -> None:
    network = FakeNetwork(dns_fallback=lambda name, rdtype: dns.exception.Timeout())
    result = DnsProbe().run(make_ctx(network=network))

    assert result.status == ProbeStatus.TIMED_OUT
    assert result.error.kind == ErrorKind.TIMEOUT


def test_no_nameservers_is_network_failure_and_retried(make_ctx) -> None:
    network = FakeNetwork(dns_fallback=lambda name, rdtype: dns.resolver.NoNameservers())
    settings = Settings(retry_attempts=2, retry_backoff=0.0, retry_backoff_max=0.0)
    result = DnsProbe().run(make_ctx(network=network, settings=settings))

    assert result.status == ProbeStatus.FAILED
    assert result.error.kind == ErrorKind.NETWORK
    # Two attempts over the eight base record types
    assert network.count("dns") == 16


def test_ip_target_is_rejected(make_ctx) -> None:
    result = DnsProbe().run(make_ctx("192.0.2.10"))
    assert result.status == ProbeStatus.FAILED
    assert result.error.kind == ErrorKind.PERMANENT


def test_second_lookup_is_served_from_cache(make_ctx, clock: FakeClock) -> None:
    network = FakeNetwork(dns=site_dns())
    ctx = make_ctx(network=network)

    first = DnsProbe().run(ctx)
    queries = network.count("dns")
    second = DnsProbe().run(ctx)

    assert not first.cached
    assert second.cached
    assert second.data is first.data
    assert network.count("dns") == queries


def test_cache_honours_record_ttl(make_ctx, clock: FakeClock) -> None:
    records = {key: FakeAnswer(list(answer), ttl=120) for key, answer in site_dns().items()}
    network = FakeNetwork(dns=records)
    ctx = make_ctx(network=network, settings=FAST_SETTINGS)

    DnsProbe().run(ctx)
    clock.advance(121)
    assert not DnsProbe().run(ctx).cached


def test_subdomain_falls_back_to_organizational_dmarc(make_ctx) -> None:
    records = site_dns("www.example.com")
    del records[("_dmarc.www.example.com", "TXT")]
    records[("_dmarc.example.com", "TXT")] = ["v=DMARC1; p=quarantine"]
    network = FakeNetwork(dns=records)
    result = DnsProbe().run(make_ctx("www.example.com", network=network))

    assert result.status == ProbeStatus.SUCCESS
    assert result.data.dmarc.policy == "quarantine"
    assert ("dns", "_dmarc.www.example.com", "TXT") in network.calls


def test_subdomain_policy_wins_over_organizational(make_ctx) -> None:
    records = site_dns("www.example.com")
    records[("_dmarc.example.com", "TXT")] = ["v=DMARC1; p=none"]
    network = FakeNetwork(dns=records)
    result = DnsProbe().run(make_ctx("www.example.com", network=network))

    assert result.data.dmarc.policy == "reject"
    assert ("dns", "_dmarc.example.com", "TXT") not in network.calls

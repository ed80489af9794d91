"""Shared fakes: a steerable clock and a NetworkClients stand-in with canned answers."""

from __future__ import annotations

import datetime as dt
import threading
from types import SimpleNamespace
from typing import Any, Callable, Dict, Optional, Tuple

import dns.resolver
import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from domainscope.cache import TTLCache
from domainscope.config import ReferenceData, Settings, load_reference_data
from domainscope.errors import PermanentError
from domainscope.scanner.base import Deadline, ScanContext
from domainscope.scanner.network import NetworkClients, TlsHandshake
from domainscope.target import normalize_target
from domainscope.utils.clock import Clock

FIXED_NOW = dt.datetime(2026, 3, 1, 12, 0, 0, tzinfo=dt.timezone.utc)

# No backoff sleeps, single attempt unless a test asks for retries
FAST_SETTINGS = Settings(retry_attempts=1, retry_backoff=0.0, retry_backoff_max=0.0)


class FakeClock(Clock):
    def __init__(self, now: dt.datetime = FIXED_NOW, mono: float = 1000.0):
        self._now = now
        self._mono = mono

    def now(self) -> dt.datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._mono += seconds
        self._now += dt.timedelta(seconds=seconds)


class FakeAnswer(list):
    """Iterable of rdata strings with the rrset.ttl dnspython answers carry."""

    def __init__(self, values, ttl: int = 300):
        super().__init__(values)
        self.rrset = SimpleNamespace(ttl=ttl)


Entry = Any  # list of values, exception instance, or callable


class FakeNetwork(NetworkClients):
    """
    Canned network. Unknown DNS names answer NoAnswer, unknown WHOIS
    servers refuse, and HTTP without a handler cannot connect.
    """

    def __init__(
        self,
        dns: Optional[Dict[Tuple[str, str], Entry]] = None,
        dns_fallback: Optional[Callable[[str, str], Entry]] = None,
        whois: Optional[Dict[str, Entry]] = None,
        tls: Entry = None,
        tls_verify: Entry = None,
        http: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ):
        super().__init__()
        self.dns = dict(dns or {})
        self.dns_fallback = dns_fallback
        self.whois = dict(whois or {})
        self.tls = tls
        self.tls_verify = tls_verify
        self.http = http
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def count(self, kind: str) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c[0] == kind)

    @staticmethod
    def _answer(entry: Entry, *args):
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(*args)
            if isinstance(entry, BaseException):
                raise entry
        return entry

    def resolve(self, name: str, rdtype: str, lifetime: float):
        self._record("dns", name, rdtype)
        key = (name.lower(), rdtype)
        if key in self.dns:
            entry = self.dns[key]
        elif self.dns_fallback is not None:
            entry = self.dns_fallback(name.lower(), rdtype)
        else:
            raise dns.resolver.NoAnswer()
        values = self._answer(entry, name, rdtype)
        return values if isinstance(values, FakeAnswer) else FakeAnswer(values)

    def whois_query(self, server, query, deadline, per_call_timeout, max_bytes=65536) -> str:
        self._record("whois", server, query)
        deadline.bound(per_call_timeout)
        if server not in self.whois:
            raise PermanentError(f"WHOIS server {server} refused the connection")
        return self._answer(self.whois[server], query)

    def tls_handshake(self, host, port, timeout, verify=False) -> TlsHandshake:
        self._record("tls", host, port, verify)
        entry = self.tls_verify if verify and self.tls_verify is not None else self.tls
        if entry is None:
            raise PermanentError(f"Port {port} on {host} refused the connection")
        return self._answer(entry, verify)

    def http_client(self, timeout, max_redirects, user_agent) -> httpx.Client:
        self._record("http", timeout)

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        return httpx.Client(
            transport=httpx.MockTransport(self.http or refuse),
            follow_redirects=True,
            max_redirects=max_redirects,
            headers={"User-Agent": user_agent},
        )


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------

def make_certificate(
    common_name: str = "example.com",
    sans: Tuple[str, ...] = ("example.com", "www.example.com"),
    not_before: dt.datetime = FIXED_NOW - dt.timedelta(days=30),
    not_after: dt.datetime = FIXED_NOW + dt.timedelta(days=60),
    issuer_cn: Optional[str] = None,
) -> bytes:
    """DER for a certificate signed by its own P-256 key."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = subject if issuer_cn is None else x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test CA Ltd"),
    ])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(0x1F2E3D)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in sans]), critical=False
        )
    cert = builder.sign(key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.DER)


# ---------------------------------------------------------------------------
# Canned site
# ---------------------------------------------------------------------------

VERISIGN_REPLY = """\
   Domain Name: EXAMPLE.COM
   Registry Domain ID: 2336799_DOMAIN_COM-VRSN
   Registrar WHOIS Server: whois.registrar.test
   Registrar URL: http://www.registrar.test
   Updated Date: 2025-08-14T07:01:38Z
   Creation Date: 1995-08-14T04:00:00Z
   Registry Expiry Date: 2027-08-13T04:00:00Z
   Registrar: RESERVED-Internet Assigned Numbers Authority
   Registrar IANA ID: 376
   Domain Status: clientDeleteProhibited https://icann.org/epp#clientDeleteProhibited
   Domain Status: clientTransferProhibited https://icann.org/epp#clientTransferProhibited
   Name Server: A.IANA-SERVERS.NET
   Name Server: B.IANA-SERVERS.NET
   DNSSEC: signedDelegation
>>> Last update of whois database: 2026-03-01T12:00:00Z <<<

NOTICE: The expiration date displayed in this record is the date the
registrar's sponsorship of the domain name registration in the registry is
currently set to expire.
"""

REGISTRAR_REPLY = """\
Domain Name: example.com
Registrar: Example Registrar, Inc.
Registrant Organization: Internet Assigned Numbers Authority
Registrant Country: US
"""

HOMEPAGE = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <title>Example Domain - Illustrative examples for documents</title>
  <meta name="description" content="This domain is for use in illustrative examples.">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta name="generator" content="WordPress 6.4.2">
  <meta property="og:title" content="Example Domain">
  <link rel="canonical" href="https://example.com/">
  <script type="application/ld+json">{"@context": "https://schema.org", "@type": "Organization", "name": "Example"}</script>
  <script src="https://www.googletagmanager.com/gtag/js?id=G-TEST123"></script>
</head>
<body>
  <h1>Example Domain</h1>
  <p>Our enterprise solution helps business teams. Contact us at hello@example.com or +1 415 555 0100.</p>
  <img src="/logo.png" alt="Logo">
  <a href="https://twitter.com/example">Twitter</a>
  <a href="/privacy-policy">Privacy Policy</a>
</body>
</html>
"""

SECURE_HEADERS = {
    "content-type": "text/html; charset=utf-8",
    "server": "nginx",
    "strict-transport-security": "max-age=31536000; includeSubDomains",
    "content-security-policy": "default-src 'self'",
    "x-frame-options": "DENY",
    "x-content-type-options": "nosniff",
    "referrer-policy": "strict-origin-when-cross-origin",
    "permissions-policy": "geolocation=()",
}


def site_handler(html: str = HOMEPAGE, headers: Optional[Dict[str, str]] = None):
    """http:// redirects to https://, which serves `html`."""
    served = dict(SECURE_HEADERS if headers is None else headers)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.scheme == "http":
            return httpx.Response(301, headers={"Location": f"https://{request.url.host}/"})
        return httpx.Response(200, headers=served, content=html.encode("utf-8"))

    return handler


def site_dns(domain: str = "example.com") -> Dict[Tuple[str, str], Entry]:
    return {
        (domain, "A"): FakeAnswer(["93.184.216.34"], ttl=300),
        (domain, "AAAA"): FakeAnswer(["2606:2800:220:1:248:1893:25c8:1946"], ttl=300),
        (domain, "MX"): FakeAnswer(["10 mail.example.com."], ttl=3600),
        (domain, "TXT"): FakeAnswer(["v=spf1 include:_spf.example.com -all"], ttl=3600),
        (domain, "NS"): FakeAnswer(["a.iana-servers.net.", "b.iana-servers.net."], ttl=86400),
        (domain, "CAA"): FakeAnswer(['0 issue "letsencrypt.org"'], ttl=3600),
        (f"_dmarc.{domain}", "TXT"): FakeAnswer(["v=DMARC1; p=reject; rua=mailto:d@example.com"], ttl=3600),
    }


def healthy_network(**overrides: Any) -> FakeNetwork:
    kwargs: Dict[str, Any] = dict(
        dns=site_dns(),
        whois={"whois.verisign-grs.com": VERISIGN_REPLY, "whois.registrar.test": REGISTRAR_REPLY},
        tls=TlsHandshake(der=make_certificate(), protocol="TLSv1.3", cipher="TLS_AES_256_GCM_SHA384"),
        http=site_handler(),
    )
    kwargs.update(overrides)
    return FakeNetwork(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def reference_data() -> ReferenceData:
    return load_reference_data()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_ctx(reference_data: ReferenceData, clock: FakeClock):
    """Build a ScanContext around a fake network. Defaults share the test's clock."""

    def build(
        target: str = "example.com",
        network: Optional[NetworkClients] = None,
        settings: Settings = FAST_SETTINGS,
        cache: Optional[TTLCache] = None,
        data: Optional[ReferenceData] = None,
        deadline: Optional[Deadline] = None,
        ctx_clock: Optional[Clock] = None,
    ) -> ScanContext:
        use_clock = ctx_clock or clock
        return ScanContext(
            target=normalize_target(target),
            settings=settings,
            data=data or reference_data,
            cache=cache if cache is not None else TTLCache(settings, clock=use_clock),
            deadline=deadline or Deadline(settings.scan_deadline, clock=use_clock),
            network=network if network is not None else FakeNetwork(),
            clock=use_clock,
        )

    return build

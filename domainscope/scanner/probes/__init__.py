# domainscope/scanner/probes/__init__.py
"""
Data collection probes.
Each probe collects one category of facts about the target.
Probes do NOT score or judge; they only gather facts.
"""
from domainscope.scanner.models import ProbeKind
from domainscope.scanner.probes.dns_probe import DnsProbe
from domainscope.scanner.probes.whois_probe import WhoisProbe
from domainscope.scanner.probes.blacklist_probe import BlacklistProbe
from domainscope.scanner.probes.tls_probe import TlsProbe
from domainscope.scanner.probes.headers_probe import HeadersProbe
from domainscope.scanner.probes.tech_probe import TechnologyProbe
from domainscope.scanner.probes.content_probe import ContentProbe

# Registry of all available probes.
# The orchestrator runs one instance of each unless told otherwise.
ALL_PROBES = {
    ProbeKind.DNS: DnsProbe,
    ProbeKind.WHOIS: WhoisProbe,
    ProbeKind.BLACKLIST: BlacklistProbe,
    ProbeKind.TLS: TlsProbe,
    ProbeKind.HEADERS: HeadersProbe,
    ProbeKind.TECHNOLOGY: TechnologyProbe,
    ProbeKind.CONTENT: ContentProbe,
}


def default_probes():
    return [cls() for cls in ALL_PROBES.values()]


__all__ = [
    "DnsProbe", "WhoisProbe", "BlacklistProbe", "TlsProbe",
    "HeadersProbe", "TechnologyProbe", "ContentProbe",
    "ALL_PROBES", "default_probes",
]

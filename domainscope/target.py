# domainscope/target.py
"""
Target normalization.

Accepts what a user types ("https://Bücher.example/path", "example.com.",
"93.184.216.34") and produces a validated, immutable Target whose `value`
is the ASCII form every probe uses. Unicode labels are converted with the
IDNA codec before anything touches the network.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import tldextract

from domainscope.errors import InvalidTarget

LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
TLD_RE = re.compile(r"^(?:[a-z]{2,63}|xn--[a-z0-9-]{1,59})$")
SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

MAX_DOMAIN_LENGTH = 253


@lru_cache(maxsize=1)
def _extractor() -> tldextract.TLDExtract:
    # Bundled public suffix snapshot only; no HTTP fetch at import or scan time
    return tldextract.TLDExtract(suffix_list_urls=())


@dataclass(frozen=True)
class Target:
    value: str
    kind: str  # "domain" or "ip"
    unicode: str
    suffix: str = ""
    registrable: str = ""

    @property
    def is_ip(self) -> bool:
        return self.kind == "ip"

    @property
    def tld(self) -> str:
        return self.value.rsplit(".", 1)[-1] if not self.is_ip else ""

    def __str__(self) -> str:
        return self.value


def _strip_decorations(raw: str) -> str:
    """Drop scheme, credentials, path, query, fragment and port."""
    s = raw.strip()
    s = SCHEME_RE.sub("", s)
    s = re.split(r"[/?#]", s, maxsplit=1)[0]
    if "@" in s:
        s = s.rsplit("@", 1)[1]

    # Bracketed IPv6 with optional port
    if s.startswith("["):
        end = s.find("]")
        return s[1:end] if end > 0 else s

    # host:port, but leave bare IPv6 alone
    if s.count(":") == 1:
        s = s.split(":", 1)[0]
    return s.rstrip(".")


def _as_ip(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def normalize_target(raw: str) -> Target:
    """
    Validate and normalize a user-supplied domain or IP.

    Raises InvalidTarget when the input is empty, contains characters the
    IDNA codec rejects, or breaks LDH label grammar.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidTarget(str(raw), "empty target")

    host = _strip_decorations(raw)
    if not host:
        raise InvalidTarget(raw, "no host component")

    ip = _as_ip(host)
    if ip is not None:
        return Target(value=ip, kind="ip", unicode=ip)

    unicode_host = host.lower()
    try:
        ascii_host = unicode_host.encode("idna").decode("ascii")
    except UnicodeError as e:
        raise InvalidTarget(raw, f"not a valid internationalized name ({e})") from e

    ascii_host = ascii_host.lower()
    if len(ascii_host) > MAX_DOMAIN_LENGTH:
        raise InvalidTarget(raw, f"longer than {MAX_DOMAIN_LENGTH} characters")

    labels = ascii_host.split(".")
    if len(labels) < 2:
        raise InvalidTarget(raw, "a domain needs at least two labels")
    for label in labels:
        if not LABEL_RE.match(label):
            raise InvalidTarget(raw, f"invalid label {label!r}")
    if not TLD_RE.match(labels[-1]):
        raise InvalidTarget(raw, f"invalid top-level domain {labels[-1]!r}")

    try:
        display = ascii_host.encode("ascii").decode("idna")
    except UnicodeError:
        display = ascii_host

    ext = _extractor()(ascii_host)
    suffix = ext.suffix or labels[-1]
    registrable = f"{ext.domain}.{ext.suffix}" if ext.domain and ext.suffix else ascii_host

    return Target(
        value=ascii_host,
        kind="domain",
        unicode=display,
        suffix=suffix,
        registrable=registrable,
    )

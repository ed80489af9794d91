# domainscope/scanner/probes/tls_probe.py
"""
TLS certificate probe.

Connects to the target on port 443 (configurable) with SNI and an
unverified context, so the certificate can be read even when it is
expired, self-signed or issued for another name. The DER is parsed with
`cryptography`.

What this probe collects:
    - Issuer CN/O, subject CN, SANs (DNS names)
    - Validity window, days until expiry, expired / not-yet-valid flags
    - Serial, SHA-256 fingerprint, key type and size, signature algorithm
    - Negotiated protocol and cipher
    - Hostname match (one-level wildcards), self-signed detection
    - Chain validity, from a second handshake with verification on

What this probe does NOT do:
    - Judge severity (the scorer does that from the payload)
    - Enumerate supported protocol versions
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.x509.oid import NameOID

from domainscope.errors import ParseError, ProbeError
from domainscope.scanner.base import BaseProbe, Collected, ScanContext, complete_only
from domainscope.scanner.models import ProbeKind, TlsResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------

def _name_attr(name: x509.Name, oid) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    return str(attrs[0].value) if attrs else None


def _utc(cert: x509.Certificate, attr: str) -> datetime:
    # cryptography >= 42 has *_utc; older releases return naive UTC
    value = getattr(cert, f"{attr}_utc", None)
    if value is None:
        value = getattr(cert, attr).replace(tzinfo=timezone.utc)
    return value


def _sans(cert: x509.Certificate) -> Tuple[str, ...]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    return tuple(n.lower() for n in ext.value.get_values_for_type(x509.DNSName))


def _key_info(cert: x509.Certificate) -> Tuple[Optional[str], Optional[int]]:
    key = cert.public_key()
    if isinstance(key, rsa.RSAPublicKey):
        return "RSA", key.key_size
    if isinstance(key, ec.EllipticCurvePublicKey):
        return "EC", key.key_size
    if isinstance(key, dsa.DSAPublicKey):
        return "DSA", key.key_size
    if isinstance(key, ed25519.Ed25519PublicKey):
        return "Ed25519", 256
    if isinstance(key, ed448.Ed448PublicKey):
        return "Ed448", 456
    return type(key).__name__, None


def hostname_matches(hostname: str, names: List[str]) -> bool:
    """Exact match, or a single-label wildcard (*.example.com matches a.example.com)."""
    hostname = hostname.lower().strip().rstrip(".")
    for name in names:
        if not name:
            continue
        name = name.lower()
        if name == hostname:
            return True
        if name.startswith("*."):
            base = name[2:]
            if hostname.endswith("." + base):
                prefix = hostname[: -(len(base) + 1)]
                if prefix and "." not in prefix:
                    return True
    return False


def parse_certificate(der: bytes, host: str, port: int, now: datetime) -> TlsResult:
    """Build a TlsResult from a DER certificate. Raises ParseError on bad DER."""
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise ParseError(f"Certificate from {host}:{port} could not be parsed: {e}") from e

    not_before = _utc(cert, "not_valid_before")
    not_after = _utc(cert, "not_valid_after")
    subject_cn = _name_attr(cert.subject, NameOID.COMMON_NAME)
    sans = _sans(cert)
    key_type, key_size = _key_info(cert)

    try:
        sig_alg = cert.signature_hash_algorithm.name if cert.signature_hash_algorithm else None
    except UnsupportedAlgorithm:
        sig_alg = None

    names = list(sans) if sans else [subject_cn or ""]
    return TlsResult(
        host=host,
        port=port,
        issuer=_name_attr(cert.issuer, NameOID.COMMON_NAME),
        issuer_org=_name_attr(cert.issuer, NameOID.ORGANIZATION_NAME),
        subject=subject_cn,
        sans=sans,
        not_before=not_before,
        not_after=not_after,
        days_until_expiry=(not_after - now).days,
        expired=now > not_after,
        not_yet_valid=now < not_before,
        self_signed=cert.issuer == cert.subject,
        hostname_match=hostname_matches(host, names),
        serial=format(cert.serial_number, "X"),
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(":").upper(),
        key_type=key_type,
        key_size=key_size,
        signature_algorithm=sig_alg,
    )


class TlsProbe(BaseProbe):
    kind = ProbeKind.TLS

    def _verify_chain(self, ctx: ScanContext, host: str, port: int) -> Tuple[Optional[bool], Optional[str]]:
        try:
            ctx.network.tls_handshake(host, port, ctx.deadline.bound(ctx.settings.tls_timeout), verify=True)
        except ssl.SSLCertVerificationError as e:
            return False, getattr(e, "verify_message", None) or str(e)
        except ProbeError as e:
            logger.debug(f"TLS chain check for {host}:{port} inconclusive: {e}")
            return None, None
        return True, None

    def collect(self, ctx: ScanContext) -> Collected:
        host = ctx.target.value
        port = ctx.settings.tls_port

        def fetch() -> Collected:
            handshake = ctx.with_retries(
                lambda: ctx.network.tls_handshake(
                    host, port, ctx.deadline.bound(ctx.settings.tls_timeout), verify=False
                )
            )
            if not handshake.der:
                raise ParseError(f"{host}:{port} completed the handshake without a certificate")

            result = parse_certificate(handshake.der, host, port, ctx.clock.now())
            result = replace(result, protocol=handshake.protocol, cipher=handshake.cipher)

            warnings: List[str] = []
            if ctx.settings.tls_verify_chain:
                chain_valid, chain_error = self._verify_chain(ctx, host, port)
                result = replace(result, chain_valid=chain_valid, chain_error=chain_error)
                if chain_valid is None:
                    warnings.append("Certificate chain could not be verified")

            logger.debug(
                f"TLS: {host}:{port} {result.protocol} issuer={result.issuer} "
                f"expires in {result.days_until_expiry}d match={result.hostname_match}"
            )
            return Collected(result, warnings=tuple(warnings))

        base_ttl = ctx.settings.ttl_for("tls")
        value, hit = ctx.cached("tls", fetch, ttl=lambda v: complete_only(v, base_ttl), port=port)
        return replace(value, cached=hit)

# domainscope/scanner/network.py
"""
Network clients used by the probes.

Probes never open sockets or build resolvers themselves; they go through a
NetworkClients instance carried on the ScanContext. Tests subclass it and
override the handful of methods below to return canned answers.

Each method translates library exceptions into the package taxonomy:
    socket.timeout / httpx.TimeoutException  -> NetworkTimeout
    connection refused, TLS alert            -> PermanentError
    other socket / transport errors          -> NetworkError
DNS exceptions are left to the DNS-aware probes because NXDOMAIN and
NoAnswer are answers, not failures.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import dns.resolver
import httpx

from domainscope.errors import NetworkError, NetworkTimeout, PermanentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TlsHandshake:
    der: bytes
    protocol: Optional[str]
    cipher: Optional[str]


def tls_context(verify: bool) -> ssl.SSLContext:
    """
    Client context for the TLS probe. Hostname matching is always off:
    the probe compares the certificate's names itself, so a mismatch is
    reported once and never as a broken chain.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    if not verify:
        context.verify_mode = ssl.CERT_NONE
    return context


class NetworkClients:
    def __init__(self, nameservers: Sequence[str] = ()):
        self.nameservers = tuple(nameservers)
        self._resolver: Optional[dns.resolver.Resolver] = None
        self._resolver_lock = threading.Lock()

    # -------------------------------------------------------------------
    # DNS
    # -------------------------------------------------------------------

    def resolver(self) -> dns.resolver.Resolver:
        with self._resolver_lock:
            if self._resolver is None:
                resolver = dns.resolver.Resolver()
                if self.nameservers:
                    resolver.nameservers = list(self.nameservers)
                self._resolver = resolver
            return self._resolver

    def resolve(self, name: str, rdtype: str, lifetime: float):
        """
        Query one record type. Returns a dnspython Answer.

        Raises dns.resolver.NXDOMAIN / NoAnswer / NoNameservers /
        LifetimeTimeout unchanged.
        """
        return self.resolver().resolve(name, rdtype, lifetime=lifetime, raise_on_no_answer=True)

    # -------------------------------------------------------------------
    # WHOIS
    # -------------------------------------------------------------------

    def whois_query(self, server: str, query: str, deadline, per_call_timeout: float, max_bytes: int = 65536) -> str:
        """Send one WHOIS query over TCP/43 and read the reply until EOF."""
        timeout = deadline.bound(per_call_timeout)
        try:
            with socket.create_connection((server, 43), timeout=timeout) as sock:
                sock.sendall((query + "\r\n").encode("utf-8"))
                chunks = []
                total = 0
                while True:
                    sock.settimeout(deadline.bound(per_call_timeout))
                    chunk = sock.recv(4096)
                    if not chunk:
                        break
                    chunks.append(chunk)
                    total += len(chunk)
                    if total > max_bytes:
                        logger.debug(f"WHOIS reply from {server} truncated at {max_bytes} bytes")
                        break
        except socket.timeout as e:
            raise NetworkTimeout(f"WHOIS server {server} timed out") from e
        except ConnectionRefusedError as e:
            raise PermanentError(f"WHOIS server {server} refused the connection") from e
        except socket.gaierror as e:
            raise NetworkError(f"Cannot resolve WHOIS server {server}: {e}") from e
        except OSError as e:
            raise NetworkError(f"WHOIS connection to {server} failed: {e}") from e

        return b"".join(chunks).decode("utf-8", errors="replace")

    # -------------------------------------------------------------------
    # TLS
    # -------------------------------------------------------------------

    def tls_handshake(self, host: str, port: int, timeout: float, verify: bool = False) -> TlsHandshake:
        """
        Complete a TLS handshake with SNI and return the leaf certificate.

        With verify=False the certificate is always returned so it can be
        inspected even when it is expired or self-signed. With verify=True
        an untrusted chain raises SSLCertVerificationError.
        """
        context = tls_context(verify)

        try:
            with socket.create_connection((host, port), timeout=timeout) as sock:
                with context.wrap_socket(sock, server_hostname=host) as tls:
                    der = tls.getpeercert(binary_form=True) or b""
                    cipher = tls.cipher()
                    return TlsHandshake(
                        der=der,
                        protocol=tls.version(),
                        cipher=cipher[0] if cipher else None,
                    )
        except ssl.SSLCertVerificationError:
            raise
        except socket.timeout as e:
            raise NetworkTimeout(f"TLS handshake with {host}:{port} timed out") from e
        except ConnectionRefusedError as e:
            raise PermanentError(f"Port {port} on {host} refused the connection") from e
        except ssl.SSLError as e:
            raise PermanentError(f"TLS handshake with {host}:{port} failed: {e.reason or e}") from e
        except OSError as e:
            raise NetworkError(f"Cannot connect to {host}:{port}: {e}") from e

    # -------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------

    def http_client(self, timeout: float, max_redirects: int, user_agent: str) -> httpx.Client:
        """
        Client for the homepage fetch. Certificate problems are the TLS
        probe's business, so verification is off here.
        """
        return httpx.Client(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            max_redirects=max_redirects,
            verify=False,
            headers={"User-Agent": user_agent, "Accept": "text/html,application/xhtml+xml,*/*;q=0.8"},
        )


def translate_http_error(e: httpx.HTTPError, url: str) -> Exception:
    """Map an httpx exception onto the probe error taxonomy."""
    if isinstance(e, httpx.TimeoutException):
        return NetworkTimeout(f"Request to {url} timed out")
    if isinstance(e, httpx.TooManyRedirects):
        return PermanentError(f"Too many redirects from {url}")
    if isinstance(e, httpx.UnsupportedProtocol):
        return PermanentError(f"Unsupported redirect target from {url}: {e}")
    if isinstance(e, httpx.ConnectError):
        return NetworkError(f"Cannot connect to {url}: {e}")
    return NetworkError(f"HTTP request to {url} failed: {e}")


__all__ = ["NetworkClients", "TlsHandshake", "translate_http_error"]

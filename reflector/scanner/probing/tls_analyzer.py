"""
TLS handshake and certificate analysis

The handshake here is for inspection only: certificate trust is NOT
verified, so whatever the peer presents can be reported on. Never reuse
the context built in this module for a connection that needs security.
"""

import asyncio
import math
import select
import socket
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID
from OpenSSL import SSL

from reflector.models.check import CertificateInfo, TLSInfo

logger = structlog.get_logger()

EXPIRY_WARNING_WINDOW = timedelta(days=30)

TLS_VERSION_LABELS = {
    "TLSv1": "TLS 1.0",
    "TLSv1.1": "TLS 1.1",
    "TLSv1.2": "TLS 1.2",
    "TLSv1.3": "TLS 1.3",
}
WEAK_TLS_VERSIONS = {"TLS 1.0", "TLS 1.1"}

# OpenSSL suite names -> IANA names. TLS 1.3 suites already use IANA names.
CIPHER_SUITE_NAMES = {
    "ECDHE-ECDSA-AES128-GCM-SHA256": "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
    "ECDHE-ECDSA-AES256-GCM-SHA384": "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305": "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256",
    "ECDHE-ECDSA-AES128-SHA256": "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256",
    "ECDHE-ECDSA-AES128-SHA": "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA",
    "ECDHE-ECDSA-AES256-SHA": "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA",
    "ECDHE-RSA-AES128-GCM-SHA256": "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    "ECDHE-RSA-AES256-GCM-SHA384": "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "ECDHE-RSA-CHACHA20-POLY1305": "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256",
    "ECDHE-RSA-AES128-SHA256": "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256",
    "ECDHE-RSA-AES128-SHA": "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA",
    "ECDHE-RSA-AES256-SHA": "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA",
    "ECDHE-RSA-DES-CBC3-SHA": "TLS_ECDHE_RSA_WITH_3DES_EDE_CBC_SHA",
    "DHE-RSA-AES128-GCM-SHA256": "TLS_DHE_RSA_WITH_AES_128_GCM_SHA256",
    "DHE-RSA-AES256-GCM-SHA384": "TLS_DHE_RSA_WITH_AES_256_GCM_SHA384",
    "AES128-GCM-SHA256": "TLS_RSA_WITH_AES_128_GCM_SHA256",
    "AES256-GCM-SHA384": "TLS_RSA_WITH_AES_256_GCM_SHA384",
    "AES128-SHA256": "TLS_RSA_WITH_AES_128_CBC_SHA256",
    "AES128-SHA": "TLS_RSA_WITH_AES_128_CBC_SHA",
    "AES256-SHA": "TLS_RSA_WITH_AES_256_CBC_SHA",
    "DES-CBC3-SHA": "TLS_RSA_WITH_3DES_EDE_CBC_SHA",
    "RC4-SHA": "TLS_RSA_WITH_RC4_128_SHA",
}


class TLSAnalysisError(Exception):
    """Handshake failed or produced nothing to analyze"""


def unverified_inspection_context() -> SSL.Context:
    """
    Build a client context that skips certificate verification

    Chain validation is off and every protocol version the local library
    supports is allowed, so weak and broken servers can be observed.
    Inspection only, never for trust.
    """
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)
    context.set_verify(SSL.VERIFY_NONE)
    # 0 selects the lowest version the library supports
    context.set_min_proto_version(0)
    try:
        context.set_cipher_list(b"ALL:@SECLEVEL=0")
    except SSL.Error:
        # Library without security levels; keep its defaults
        pass
    return context


def tls_version_label(version: Optional[str]) -> str:
    return TLS_VERSION_LABELS.get(version or "", "Unknown")


def cipher_suite_name(openssl_name: Optional[str]) -> str:
    if not openssl_name:
        return "Unknown"
    return CIPHER_SUITE_NAMES.get(openssl_name, openssl_name)


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _common_name(name: x509.Name) -> str:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return ""
    value = attributes[0].value
    return value if isinstance(value, str) else value.decode("utf-8", errors="replace")


def _subject_alt_names(cert: x509.Certificate):
    """Returns (dns_names, ip_addresses)"""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return [], []
    dns_names = san.get_values_for_type(x509.DNSName)
    ip_addresses = [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    return dns_names, ip_addresses


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days until moment, rounded up; negative once past"""
    return math.ceil((moment - now) / timedelta(days=1))


def generate_tls_warnings(
    version: str,
    self_signed: bool,
    not_before: datetime,
    not_after: datetime,
    has_san: bool,
    now: datetime
) -> List[str]:
    """Derive warning tags from the negotiated version and certificate"""
    warnings = []

    if version in WEAK_TLS_VERSIONS:
        warnings.append("weak_tls_version")

    if self_signed:
        warnings.append("self_signed_certificate")

    if not_after < now:
        warnings.append("certificate_expired")
    elif not_after < now + EXPIRY_WARNING_WINDOW:
        warnings.append("certificate_expires_soon")

    if not_before > now:
        warnings.append("certificate_not_yet_valid")

    if not has_san:
        warnings.append("missing_san")

    return warnings


def build_tls_info(
    cert_der: bytes,
    version: Optional[str],
    cipher: Optional[str],
    chain_length: int = 1,
    now: Optional[datetime] = None
) -> TLSInfo:
    """
    Assemble TLSInfo from the raw handshake results

    Args:
        cert_der: Leaf certificate, DER encoded
        version: Protocol name as reported by OpenSSL (e.g. "TLSv1.3")
        cipher: OpenSSL cipher name
        chain_length: Number of certificates the peer sent
        now: Reference time, defaults to the current UTC time
    """
    now = now or datetime.now(timezone.utc)
    try:
        cert = x509.load_der_x509_certificate(cert_der)
    except ValueError as e:
        raise TLSAnalysisError(f"unparseable certificate: {e}") from e

    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    self_signed = cert.subject.rfc4514_string() == cert.issuer.rfc4514_string()
    dns_names, ip_addresses = _subject_alt_names(cert)
    version_label = tls_version_label(version)

    certificate = CertificateInfo(
        subject=_common_name(cert.subject),
        issuer=_common_name(cert.issuer),
        self_signed=self_signed,
        not_before=_rfc3339(not_before),
        not_after=_rfc3339(not_after),
        days_until_expiry=days_until(not_after, now),
        dns_names=dns_names,
        serial=format(cert.serial_number, "x"),
    )

    return TLSInfo(
        version=version_label,
        cipher_suite=cipher_suite_name(cipher),
        certificate=certificate,
        chain_length=max(chain_length, 1),
        warnings=generate_tls_warnings(
            version_label,
            self_signed,
            not_before,
            not_after,
            bool(dns_names or ip_addresses),
            now
        ),
    )




def _complete(operation, sock: socket.socket, deadline_at: float):
    """Drive a non-blocking pyOpenSSL operation until it finishes or time runs out"""
    while True:
        try:
            return operation()
        except SSL.WantReadError:
            readable, writable = [sock], []
        except SSL.WantWriteError:
            readable, writable = [], [sock]

        remaining = deadline_at - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("TLS handshake timed out")
        ready_read, ready_write, _ = select.select(readable, writable, [], remaining)
        if not ready_read and not ready_write:
            raise TimeoutError("TLS handshake timed out")


def inspect_handshake(
    address: str,
    port: int,
    timeout: float
) -> Tuple[List[bytes], Optional[str], Optional[str]]:
    """
    Blocking inspection handshake, run in a worker thread

    Returns:
        (peer chain as DER, leaf first; protocol name; OpenSSL cipher name)
    """
    deadline_at = time.monotonic() + timeout
    sock = socket.create_connection((address, port), timeout=timeout)
    try:
        sock.setblocking(False)
        connection = SSL.Connection(unverified_inspection_context(), sock)
        connection.set_connect_state()
        _complete(connection.do_handshake, sock, deadline_at)

        chain = connection.get_peer_cert_chain() or []
        ders = [
            cert.to_cryptography().public_bytes(serialization.Encoding.DER)
            for cert in chain
        ]
        return ders, connection.get_protocol_version_name(), connection.get_cipher_name()
    finally:
        sock.close()


class TLSAnalyzer:
    """Performs one inspection handshake and reports what was presented"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.logger = logger.bind(tool="tls_analyzer")

    async def analyze(
        self,
        address: str,
        port: int,
        timeout: Optional[float] = None
    ) -> TLSInfo:
        """
        Handshake with address:port and analyze the leaf certificate

        Raises:
            TLSAnalysisError: handshake failed or no certificate was sent
        """
        deadline = self.timeout if timeout is None else min(timeout, self.timeout)

        try:
            chain, version, cipher = await asyncio.to_thread(
                inspect_handshake, address, port, deadline
            )
        except (SSL.Error, OSError) as e:
            raise TLSAnalysisError(f"handshake failed: {type(e).__name__}") from e

        if not chain:
            raise TLSAnalysisError("no certificates received")

        return build_tls_info(
            chain[0],
            version=version,
            cipher=cipher,
            chain_length=len(chain),
        )

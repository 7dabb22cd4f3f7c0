"""
Shared fixtures: settings, fake probers, local servers and certificates
"""

import asyncio
import ipaddress
import logging
import socket
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from reflector.core.config import ReflectorConfig
from reflector.scanner.probing import ProbeOutcome, TLSAnalysisError

PUBLIC_V4 = "203.0.113.10"
PUBLIC_V6 = "2001:db8:1234:5678:9abc:def0:1234:5678"


def make_config(**overrides) -> ReflectorConfig:
    return ReflectorConfig(_env_file=None, **overrides)


@pytest.fixture
def config(tmp_path):
    return make_config(log_dir=tmp_path / "logs")


def make_certificate(
    common_name: str = "reflector.test",
    issuer_name: Optional[str] = None,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    dns_names: Optional[List[str]] = None,
    ip_addresses: Optional[List[str]] = None,
    serial: int = 0x1234ABCD,
    signer=None
):
    """
    Returns (certificate, private key)

    signer is an optional (CA certificate, CA key) pair; without it the
    certificate signs itself.
    """
    now = datetime.now(timezone.utc)
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    if signer is not None:
        issuer = signer[0].subject
        signing_key = signer[1]
    else:
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name or common_name)])
        signing_key = key

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
    )

    alt_names = [x509.DNSName(name) for name in dns_names or []]
    alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses or []]
    if alt_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)

    return builder.sign(signing_key, hashes.SHA256()), key


def certificate_der(**kwargs) -> bytes:
    cert, _ = make_certificate(**kwargs)
    return cert.public_bytes(serialization.Encoding.DER)


def write_certificate(tmp_path, **kwargs):
    """Write a certificate and key as PEM, returns (cert_path, key_path)"""
    cert, key = make_certificate(**kwargs)
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()
    ))
    return cert_path, key_path


def write_chain(tmp_path, common_name: str = "leaf.example.org"):
    """Write a CA-issued leaf followed by its CA, returns (chain_path, key_path)"""
    ca_cert, ca_key = make_certificate(common_name="Reflector Test CA", serial=0x01)
    leaf_cert, leaf_key = make_certificate(
        common_name=common_name,
        dns_names=[common_name],
        signer=(ca_cert, ca_key)
    )
    chain_path = tmp_path / "chain.pem"
    key_path = tmp_path / "leaf-key.pem"
    chain_path.write_bytes(
        leaf_cert.public_bytes(serialization.Encoding.PEM)
        + ca_cert.public_bytes(serialization.Encoding.PEM)
    )
    key_path.write_bytes(leaf_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()
    ))
    return chain_path, key_path


def closed_port() -> int:
    """A localhost port with nothing listening"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
async def local_server():
    """
    Start asyncio servers on 127.0.0.1

    Usage: port = await local_server(handler, ssl=None)
    """
    servers = []

    async def start(handler, ssl=None) -> int:
        server = await asyncio.start_server(handler, "127.0.0.1", 0, ssl=ssl)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


class FakeProber:
    """Reports the configured ports as open"""

    def __init__(self, open_ports=(), latency_ms: int = 12, delay: float = 0.0):
        self.open_ports = set(open_ports)
        self.latency_ms = latency_ms
        self.delay = delay
        self.calls: List[int] = []
        self.targets: List[str] = []

    async def probe(self, address, port, timeout=None):
        self.calls.append(port)
        self.targets.append(address)
        if self.delay:
            await asyncio.sleep(self.delay)
        if port in self.open_ports:
            return ProbeOutcome(reachable=True, latency_ms=self.latency_ms)
        return ProbeOutcome(reachable=False, error="connection_failed")


class FakeTLSAnalyzer:
    def __init__(self, info=None):
        self.info = info
        self.calls: List[int] = []

    async def analyze(self, address, port, timeout=None):
        self.calls.append(port)
        if self.info is None:
            raise TLSAnalysisError("handshake failed: SSLError")
        return self.info


class FakeBannerGrabber:
    def __init__(self, banners: Optional[Dict[int, str]] = None):
        self.banners = banners or {}
        self.calls: List[int] = []

    async def grab(self, address, port):
        self.calls.append(port)
        return self.banners.get(port, "")


class FakeChallengeVerifier:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    async def verify(self, address, port, token, path=None):
        self.calls.append((port, token, path))
        return self.result


class RecordingAccessLogger:
    def __init__(self):
        self.entries = []

    def log_access(self, entry):
        self.entries.append(entry)


@pytest.fixture
def restore_logging():
    """Undo configure_logging so handlers do not leak between tests"""
    yield
    for name in ("", "reflector.access"):
        target = logging.getLogger(name)
        for handler in list(target.handlers):
            target.removeHandler(handler)
            handler.close()
    structlog.reset_defaults()

"""
Request, result and log-record models for reachability checks
Everything here lives for a single request and is never persisted
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ProbeRequest(BaseModel):
    """A validated /check request"""
    client_ip: str
    ports: List[int]
    tls_analyze: bool = True
    banner: bool = False
    challenge: Optional[str] = None
    challenge_path: Optional[str] = None
    challenge_port: int = 80


class CertificateInfo(BaseModel):
    """Leaf certificate metadata"""
    subject: str
    issuer: str
    self_signed: bool
    not_before: str
    not_after: str
    days_until_expiry: int
    dns_names: List[str] = Field(default_factory=list)
    serial: str


class TLSInfo(BaseModel):
    version: str
    cipher_suite: str
    certificate: CertificateInfo
    chain_length: int
    warnings: List[str] = Field(default_factory=list)


class SSHInfo(BaseModel):
    """Parsed SSH identification string"""
    banner: str
    protocol: str
    software: str
    comments: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class ChallengeResult(BaseModel):
    verified: bool
    token: Optional[str] = None
    error: Optional[str] = None
    expected: Optional[str] = None
    received: Optional[str] = None


class PortResult(BaseModel):
    reachable: bool = False
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    tls: Optional[TLSInfo] = None
    challenge: Optional[ChallengeResult] = None
    banner: Optional[str] = None
    ssh: Optional[SSHInfo] = None


class CheckResponse(BaseModel):
    success: bool
    client_ip: Optional[str] = None
    ip_version: Optional[int] = None
    timestamp: str
    results: Optional[Dict[str, PortResult]] = None
    error: Optional[str] = None
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: int
    version: str
    checks_last_hour: int


class AccessLogEntry(BaseModel):
    """One access-log record; ip must already be anonymized"""
    ts: str
    ip: str
    method: str
    path: str
    ports: Optional[List[int]] = None
    results: Optional[Dict[str, bool]] = None
    duration_ms: int
    status: int
    error: Optional[str] = None

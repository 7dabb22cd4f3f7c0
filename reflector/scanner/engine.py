"""
Main check engine
Validates a request, probes the caller's ports and aggregates the results
"""

import asyncio
import re
import time
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from reflector import __version__
from reflector.core.config import DEFAULT_PORTS, MAX_PORTS_PER_REQUEST, ReflectorConfig
from reflector.core.counters import CheckCounter
from reflector.core.logging import AccessLogger
from reflector.models.check import (
    AccessLogEntry,
    CheckResponse,
    HealthResponse,
    PortResult,
    ProbeRequest,
)
from reflector.scanner.address import anonymize, ip_version, is_private, resolve_client_address
from reflector.scanner.probing import (
    BannerGrabber,
    ChallengeVerifier,
    TCPProber,
    TLSAnalysisError,
    TLSAnalyzer,
)
from reflector.scanner.probing.banner_grabber import (
    BANNER_PORTS,
    SSH_PREFIX,
    parse_ssh_identification,
)
from reflector.scanner.rate_limiter import IPRateLimiter

logger = structlog.get_logger()

INVALID_IP = "invalid_ip"
PRIVATE_IP = "private_ip"
RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
INVALID_PORTS = "invalid_ports"
DEADLINE_EXCEEDED = "deadline_exceeded"

_PORT_NUMBER = re.compile(r"^[0-9]+$")


class CheckRejected(Exception):
    """A request refused before any probing took place"""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        client_ip: Optional[str] = None
    ):
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.client_ip = client_ip


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ports(
    raw: Optional[str],
    allowed_ports,
    client_ip: Optional[str] = None
) -> List[int]:
    """
    Parse the comma-separated ports parameter

    Empty means the default set. Every entry must be a number in range,
    in the allow-list and not repeated; at most five entries.
    """
    if raw is None or not raw.strip():
        return list(DEFAULT_PORTS)

    def reject(detail: str):
        return CheckRejected(INVALID_PORTS, detail, 400, client_ip)

    items = [item.strip() for item in raw.split(",")]
    if len(items) > MAX_PORTS_PER_REQUEST:
        raise reject(f"too many ports (max {MAX_PORTS_PER_REQUEST})")

    ports: List[int] = []
    for item in items:
        if not _PORT_NUMBER.match(item):
            raise reject(f"invalid port: {item}")
        port = int(item)
        if not 1 <= port <= 65535:
            raise reject(f"port out of range: {port}")
        if port not in allowed_ports:
            raise reject(f"port not allowed: {port}")
        if port in ports:
            raise reject(f"duplicate port: {port}")
        ports.append(port)

    return ports


def parse_port_param(raw: Optional[str], default: int) -> int:
    """Lenient single-port parameter; falls back to default"""
    if raw and _PORT_NUMBER.match(raw.strip()):
        port = int(raw.strip())
        if 1 <= port <= 65535:
            return port
    return default


class CheckEngine:
    """
    Orchestrates a reachability check for the calling address

    Ports are probed one at a time in request order. For each port the TCP
    probe runs first and gates the TLS, challenge and banner steps. The whole
    port loop shares one deadline.
    """

    def __init__(
        self,
        config: ReflectorConfig,
        rate_limiter: Optional[IPRateLimiter] = None,
        counter: Optional[CheckCounter] = None,
        access_logger: Optional[AccessLogger] = None,
        prober: Optional[TCPProber] = None,
        tls_analyzer: Optional[TLSAnalyzer] = None,
        banner_grabber: Optional[BannerGrabber] = None,
        challenge_verifier: Optional[ChallengeVerifier] = None
    ):
        self.config = config
        self.rate_limiter = rate_limiter or IPRateLimiter(config.rate_limit_per_min)
        self.counter = counter or CheckCounter()
        self.access_logger = access_logger or AccessLogger()

        self.prober = prober or TCPProber(timeout=config.timeout)
        self.tls_analyzer = tls_analyzer or TLSAnalyzer(timeout=config.timeout)
        self.banner_grabber = banner_grabber or BannerGrabber(timeout=config.banner_timeout)
        self.challenge_verifier = challenge_verifier or ChallengeVerifier(timeout=config.timeout)

        self.started_at = time.monotonic()
        self.logger = logger.bind(component="check_engine")

    def admit(self, headers: Mapping[str, str], peer_address: Optional[str]) -> str:
        """
        Resolve and gate the caller

        Raises:
            CheckRejected: invalid_ip, private_ip or rate_limit_exceeded
        """
        client_ip = resolve_client_address(headers, peer_address, self.config.trusted_proxies)
        if client_ip is None:
            raise CheckRejected(INVALID_IP, "Could not determine client IP", 400)

        if is_private(client_ip):
            raise CheckRejected(
                PRIVATE_IP,
                "Cannot test private/internal IP addresses",
                403,
                client_ip
            )

        if not self.rate_limiter.allow(client_ip):
            raise CheckRejected(
                RATE_LIMIT_EXCEEDED,
                "Too many requests. Please try again later.",
                429,
                client_ip
            )

        return client_ip

    def build_request(self, client_ip: str, params: Mapping[str, str]) -> ProbeRequest:
        ports = parse_ports(params.get("ports"), self.config.allowed_ports, client_ip)
        return ProbeRequest(
            client_ip=client_ip,
            ports=ports,
            tls_analyze=params.get("tls_analyze") != "false",
            banner=params.get("banner") == "true",
            challenge=params.get("challenge") or None,
            challenge_path=params.get("challenge_path") or None,
            challenge_port=parse_port_param(
                params.get("challenge_port"),
                self.config.default_challenge_port
            ),
        )

    async def run_checks(self, request: ProbeRequest) -> Dict[str, PortResult]:
        """Probe every requested port under one overall deadline"""
        results: Dict[str, PortResult] = {}
        deadline = time.monotonic() + self.config.check_deadline

        for port in request.ports:
            result = PortResult(reachable=False)
            results[str(port)] = result

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                result.error = DEADLINE_EXCEEDED
                continue

            try:
                await asyncio.wait_for(
                    self._check_port(result, request, port),
                    timeout=remaining
                )
            except asyncio.TimeoutError:
                # Only completed steps are kept on the result
                if not result.reachable and result.error is None:
                    result.error = DEADLINE_EXCEEDED
                self.logger.warning("Check deadline exceeded", port=port)

        return results

    async def _check_port(self, result: PortResult, request: ProbeRequest, port: int):
        address = request.client_ip

        outcome = await self.prober.probe(address, port)
        if not outcome.reachable:
            result.error = outcome.error
            return
        result.reachable = True
        result.latency_ms = outcome.latency_ms

        if port == self.config.tls_port and request.tls_analyze:
            try:
                result.tls = await self.tls_analyzer.analyze(address, port)
            except TLSAnalysisError as e:
                self.logger.debug("TLS analysis failed", port=port, error=str(e))

        if request.challenge and port == request.challenge_port:
            result.challenge = await self.challenge_verifier.verify(
                address, port, request.challenge, request.challenge_path
            )

        if request.banner or port in BANNER_PORTS:
            banner = await self.banner_grabber.grab(address, port)
            if banner:
                result.banner = banner
                if banner.startswith(SSH_PREFIX):
                    result.ssh = parse_ssh_identification(banner)

    async def handle_check(
        self,
        headers: Mapping[str, str],
        peer_address: Optional[str],
        params: Mapping[str, str],
        method: str = "GET",
        path: str = "/check"
    ) -> Tuple[int, CheckResponse]:
        """
        Full /check flow

        Returns:
            (HTTP status, response body)
        """
        start = time.monotonic()
        client_ip: Optional[str] = None
        request: Optional[ProbeRequest] = None

        try:
            client_ip = self.admit(headers, peer_address)
            request = self.build_request(client_ip, params)
            results = await self.run_checks(request)
        except CheckRejected as rejection:
            status = rejection.status_code
            client_ip = rejection.client_ip
            response = CheckResponse(
                success=False,
                client_ip=client_ip,
                timestamp=utc_timestamp(),
                error=rejection.error,
                message=rejection.message
            )
        else:
            status = 200
            self.counter.increment()
            response = CheckResponse(
                success=True,
                client_ip=client_ip,
                ip_version=ip_version(client_ip),
                timestamp=utc_timestamp(),
                results=results
            )

        self.access_logger.log_access(AccessLogEntry(
            ts=utc_timestamp(),
            ip=anonymize(client_ip or ""),
            method=method,
            path=path,
            ports=request.ports if request else None,
            results=(
                {port: result.reachable for port, result in response.results.items()}
                if response.results is not None else None
            ),
            duration_ms=int((time.monotonic() - start) * 1000),
            status=status,
            error=response.error
        ))

        return status, response

    async def handle_simple(
        self,
        headers: Mapping[str, str],
        peer_address: Optional[str],
        params: Mapping[str, str]
    ) -> Tuple[int, str]:
        """Single-port check answering yes, no or error"""
        try:
            client_ip = self.admit(headers, peer_address)
        except CheckRejected as rejection:
            return rejection.status_code, "error"

        raw_port = (params.get("port") or "").strip()
        port = int(raw_port) if _PORT_NUMBER.match(raw_port) else 80
        if not self.config.is_port_allowed(port):
            return 400, "error"

        outcome = await self.prober.probe(client_ip, port)
        return 200, "yes" if outcome.reachable else "no"

    def health(self) -> HealthResponse:
        return HealthResponse(
            status="healthy",
            uptime_seconds=int(time.monotonic() - self.started_at),
            version=__version__,
            checks_last_hour=self.counter.count_last_hour()
        )

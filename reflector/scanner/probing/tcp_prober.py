"""
TCP reachability probing
A single bounded connect attempt per port, no data exchanged
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import structlog

logger = structlog.get_logger()

CONNECTION_FAILED = "connection_failed"


@dataclass
class ProbeOutcome:
    reachable: bool
    latency_ms: int = 0
    error: Optional[str] = None


class TCPProber:
    """
    Checks whether a TCP handshake to address:port completes

    Dial errors are collapsed into one generic classification so the
    response does not reveal whether a firewall dropped or rejected us.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.logger = logger.bind(tool="tcp_prober")

    async def probe(
        self,
        address: str,
        port: int,
        timeout: Optional[float] = None
    ) -> ProbeOutcome:
        """
        Attempt a TCP connect

        Args:
            address: IPv4 or IPv6 literal
            port: Destination port
            timeout: Overrides the default connect timeout

        Returns:
            ProbeOutcome with latency measured from dial start
        """
        deadline = self.timeout if timeout is None else min(timeout, self.timeout)
        start = time.monotonic()

        try:
            # open_connection takes the bare literal; brackets are only for URLs
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, port),
                timeout=deadline
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.debug("Connect failed", port=port, error_type=type(e).__name__)
            return ProbeOutcome(reachable=False, error=CONNECTION_FAILED)

        latency_ms = int((time.monotonic() - start) * 1000)

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

        return ProbeOutcome(reachable=True, latency_ms=latency_ms)

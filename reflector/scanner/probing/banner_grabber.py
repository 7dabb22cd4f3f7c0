"""
Banner grabbing and SSH identification parsing
Reads whatever a service announces on connect; absence is not an error
"""

import asyncio
import re
from typing import Optional

import structlog

from reflector.models.check import SSHInfo

logger = structlog.get_logger()

# Ports that only answer after a request
HTTP_PORTS = {80, 8080}
# Ports grabbed even when the caller did not ask for a banner
BANNER_PORTS = {21, 22, 25}

READ_BUDGET = 256
SSH_PREFIX = "SSH-"
SSH_MAX_LENGTH = 100
BANNER_MAX_LENGTH = 200

_NON_PRINTABLE = re.compile(r"[^\x20-\x7e]")
_NON_PRINTABLE_MULTILINE = re.compile(r"[^\x09\x0a\x0d\x20-\x7e]")
_SSH_IDENT = re.compile(r"^SSH-([^-\s]+)-(\S+)(?:\s+(.*))?$")


def sanitize_banner(raw: str) -> str:
    """
    Strip binary noise and bound the length

    SSH banners are cut to their identification line. Everything else
    keeps printable ASCII plus tab/CR/LF and is marked when truncated.
    """
    if raw.startswith(SSH_PREFIX):
        first_line = raw.split("\n", 1)[0]
        cleaned = _NON_PRINTABLE.sub("", first_line).strip()
        return cleaned[:SSH_MAX_LENGTH]

    cleaned = _NON_PRINTABLE_MULTILINE.sub("", raw).strip()
    if len(cleaned) > BANNER_MAX_LENGTH:
        return cleaned[:BANNER_MAX_LENGTH] + "..."
    return cleaned


def parse_ssh_identification(banner: str) -> Optional[SSHInfo]:
    """Split an SSH identification line into protocol and software"""
    match = _SSH_IDENT.match(banner)
    if not match:
        return None

    protocol, software, comments = match.groups()
    warnings = []
    if protocol.startswith("1.") and protocol != "1.99":
        warnings.append("legacy_ssh_protocol")

    return SSHInfo(
        banner=banner,
        protocol=protocol,
        software=software,
        comments=comments or None,
        warnings=warnings
    )


class BannerGrabber:
    """Short-lived connection that reads the first bytes a service sends"""

    def __init__(self, timeout: float = 2.0, http_ports=None):
        self.timeout = timeout
        self.http_ports = HTTP_PORTS if http_ports is None else set(http_ports)
        self.logger = logger.bind(tool="banner_grabber")

    async def grab(self, address: str, port: int) -> str:
        """
        Read a sanitized banner from address:port

        Returns an empty string on any failure or an empty read.
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, port),
                timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError):
            return ""

        try:
            if port in self.http_ports:
                host = f"[{address}]" if ":" in address else address
                writer.write(f"HEAD / HTTP/1.0\r\nHost: {host}\r\n\r\n".encode("ascii"))
                await asyncio.wait_for(writer.drain(), timeout=self.timeout)

            data = await asyncio.wait_for(reader.read(READ_BUDGET), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.debug("Banner read failed", port=port, error_type=type(e).__name__)
            return ""
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if not data:
            return ""
        return sanitize_banner(data.decode("utf-8", errors="ignore"))

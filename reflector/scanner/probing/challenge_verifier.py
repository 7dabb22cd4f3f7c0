"""
Ownership challenge verification
Fetches a token from the caller's own server over plain HTTP
"""

import asyncio
from typing import Optional
from urllib.parse import quote

import aiohttp
import structlog

from reflector.models.check import ChallengeResult
from reflector.scanner.address import format_host_port

logger = structlog.get_logger()

CHALLENGE_PATH_PREFIX = "/.well-known/reflector/"
BODY_BUDGET = 256
RECEIVED_MAX_LENGTH = 100


def challenge_path_for(token: str, path: Optional[str] = None) -> str:
    """Default path is /.well-known/reflector/<token>"""
    if path:
        return path if path.startswith("/") else "/" + path
    return CHALLENGE_PATH_PREFIX + quote(token, safe="")


async def _read_limited(response: aiohttp.ClientResponse, limit: int) -> bytes:
    body = bytearray()
    while len(body) < limit:
        chunk = await response.content.read(limit - len(body))
        if not chunk:
            break
        body.extend(chunk)
    return bytes(body)


class ChallengeVerifier:
    """
    Proves the caller controls address:port

    Verified only when the server answers 200 and the trimmed body is
    exactly the token. Redirects are never followed.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.logger = logger.bind(tool="challenge_verifier")

    async def verify(
        self,
        address: str,
        port: int,
        token: str,
        path: Optional[str] = None
    ) -> ChallengeResult:
        url = f"http://{format_host_port(address, port)}{challenge_path_for(token, path)}"
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url, allow_redirects=False) as response:
                    if response.status != 200:
                        return ChallengeResult(
                            verified=False,
                            error=f"http_status_{response.status}",
                            expected=token
                        )

                    try:
                        body = await _read_limited(response, BODY_BUDGET)
                    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                        self.logger.debug("Challenge body read failed", error_type=type(e).__name__)
                        return ChallengeResult(verified=False, error="read_error", expected=token)

        except (aiohttp.ClientError, OSError, asyncio.TimeoutError, ValueError) as e:
            self.logger.debug("Challenge request failed", port=port, error_type=type(e).__name__)
            return ChallengeResult(verified=False, error="http_error", expected=token)

        received = body.strip()
        if received == token.encode("utf-8"):
            return ChallengeResult(verified=True, token=token)

        return ChallengeResult(
            verified=False,
            error="token_mismatch",
            expected=token,
            received=received.decode("utf-8", errors="replace")[:RECEIVED_MAX_LENGTH]
        )

"""
Test ownership challenge verification against a local HTTP responder
"""

from conftest import closed_port

from reflector.scanner.probing import ChallengeVerifier
from reflector.scanner.probing.challenge_verifier import challenge_path_for


def http_responder(status_line: str, body: bytes, requests: list, extra_headers: str = ""):
    """Minimal HTTP/1.1 handler that records request lines"""

    async def handler(reader, writer):
        head = await reader.readuntil(b"\r\n\r\n")
        requests.append(head.split(b"\r\n", 1)[0].decode())
        writer.write(
            f"HTTP/1.1 {status_line}\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"{extra_headers}\r\n".encode() + body
        )
        await writer.drain()
        writer.close()

    return handler


def test_default_challenge_path():
    assert challenge_path_for("abc123") == "/.well-known/reflector/abc123"


def test_challenge_token_is_quoted():
    assert challenge_path_for("a b/c") == "/.well-known/reflector/a%20b%2Fc"


def test_custom_path_gets_leading_slash():
    assert challenge_path_for("abc", "proof.txt") == "/proof.txt"
    assert challenge_path_for("abc", "/proof.txt") == "/proof.txt"


async def test_matching_token_verifies(local_server):
    requests = []
    port = await local_server(http_responder("200 OK", b"  tok-42\n", requests))

    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", port, "tok-42")

    assert result.verified
    assert result.token == "tok-42"
    assert result.error is None
    assert requests == ["GET /.well-known/reflector/tok-42 HTTP/1.1"]


async def test_custom_path_is_requested(local_server):
    requests = []
    port = await local_server(http_responder("200 OK", b"tok-42", requests))

    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", port, "tok-42", "/proof.txt")

    assert result.verified
    assert requests == ["GET /proof.txt HTTP/1.1"]


async def test_mismatch_reports_expected_and_received(local_server):
    requests = []
    port = await local_server(http_responder("200 OK", b"something-else", requests))

    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", port, "tok-42")

    assert not result.verified
    assert result.error == "token_mismatch"
    assert result.expected == "tok-42"
    assert result.received == "something-else"


async def test_received_text_is_capped(local_server):
    requests = []
    port = await local_server(http_responder("200 OK", b"z" * 300, requests))

    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", port, "tok-42")

    assert result.error == "token_mismatch"
    assert len(result.received) == 100


async def test_non_200_status_is_reported(local_server):
    requests = []
    port = await local_server(http_responder("404 Not Found", b"nope", requests))

    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", port, "tok-42")

    assert not result.verified
    assert result.error == "http_status_404"
    assert result.expected == "tok-42"


async def test_redirect_is_not_followed(local_server):
    requests = []
    handler = http_responder(
        "302 Found", b"", requests,
        extra_headers="Location: http://198.51.100.1/tok-42\r\n"
    )
    port = await local_server(handler)

    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", port, "tok-42")

    assert result.error == "http_status_302"
    assert len(requests) == 1, "Redirect target must not be fetched"


async def test_unreachable_server_is_http_error():
    result = await ChallengeVerifier(timeout=2.0).verify("127.0.0.1", closed_port(), "tok-42")

    assert not result.verified
    assert result.error == "http_error"
    assert result.expected == "tok-42"

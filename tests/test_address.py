"""
Test client address resolution, classification and anonymization
"""

import ipaddress

import pytest

from reflector.scanner.address import (
    anonymize,
    format_host_port,
    ip_version,
    is_private,
    is_trusted_proxy,
    resolve_client_address,
)

TRUSTED = [ipaddress.ip_network("10.0.0.0/8"), ipaddress.ip_network("fd00::/8")]
PROXY = "10.0.0.2"


def test_forwarded_for_takes_precedence():
    headers = {"X-Forwarded-For": "198.51.100.7, 10.0.0.1", "X-Real-IP": "198.51.100.8"}
    assert resolve_client_address(headers, PROXY, TRUSTED) == "198.51.100.7"


def test_forwarded_for_skips_garbage_entries():
    headers = {"X-Forwarded-For": "unknown, 198.51.100.7"}
    assert resolve_client_address(headers, PROXY, TRUSTED) == "198.51.100.7"


def test_real_ip_used_when_forwarded_for_is_invalid():
    headers = {"X-Forwarded-For": "not-an-ip", "X-Real-IP": "2001:db8::5"}
    assert resolve_client_address(headers, "fd00::1", TRUSTED) == "2001:db8::5"


def test_proxy_address_is_the_fallback():
    assert resolve_client_address({}, PROXY, TRUSTED) == PROXY


def test_untrusted_peer_cannot_forward():
    headers = {"X-Forwarded-For": "8.8.8.8", "X-Real-IP": "8.8.4.4"}
    assert resolve_client_address(headers, "198.51.100.7", TRUSTED) == "198.51.100.7", \
        "Headers from a public peer must be ignored"


def test_no_trusted_networks_means_headers_ignored():
    headers = {"X-Forwarded-For": "198.51.100.7"}
    assert resolve_client_address(headers, PROXY) == PROXY


def test_no_usable_candidate_returns_none():
    headers = {"X-Forwarded-For": "garbage", "X-Real-IP": "also garbage"}
    assert resolve_client_address(headers, "testclient", TRUSTED) is None
    assert resolve_client_address({}, None, TRUSTED) is None


def test_trusted_proxy_membership():
    assert is_trusted_proxy("10.20.30.40", TRUSTED)
    assert is_trusted_proxy("::ffff:10.0.0.9", TRUSTED)
    assert not is_trusted_proxy("192.168.1.1", TRUSTED)
    assert not is_trusted_proxy("testclient", TRUSTED)


@pytest.mark.parametrize("address", [
    "10.1.2.3",
    "172.16.5.4",
    "172.31.255.255",
    "192.168.1.1",
    "127.0.0.1",
    "169.254.10.20",
    "::1",
    "fc00::1",
    "fd12:3456::1",
    "fe80::1",
    "::ffff:10.0.0.1",
])
def test_private_ranges(address):
    assert is_private(address), f"{address} should be private"


@pytest.mark.parametrize("address", [
    "8.8.8.8",
    "172.32.0.1",
    "203.0.113.10",
    "2001:db8::1",
    "2606:4700::1111",
])
def test_public_addresses(address):
    assert not is_private(address), f"{address} should be public"


def test_ip_version():
    assert ip_version("203.0.113.10") == 4
    assert ip_version("2001:db8::1") == 6
    assert ip_version("::ffff:203.0.113.10") == 4
    with pytest.raises(ValueError):
        ip_version("example.com")


def test_anonymize_ipv4_zeroes_last_octet():
    assert anonymize("203.0.113.77") == "203.0.113.0"
    assert anonymize("8.8.8.8") == "8.8.8.0"


def test_anonymize_ipv6_keeps_48_bit_prefix():
    result = anonymize("2001:db8:abcd:1234:5678:9abc:def0:1")
    assert result == "2001:db8:abcd::"
    low_bits = int(ipaddress.IPv6Address(result)) & ((1 << 80) - 1)
    assert low_bits == 0, "Low 80 bits must be zero"


@pytest.mark.parametrize("address", [
    "203.0.113.77",
    "2001:db8:abcd:1234::1",
    "::1",
    "::ffff:198.51.100.23",
    "not-an-ip",
    "",
])
def test_anonymize_is_idempotent(address):
    once = anonymize(address)
    assert anonymize(once) == once


def test_anonymize_passes_through_non_ip():
    assert anonymize("not-an-ip") == "not-an-ip"


def test_format_host_port_brackets_ipv6():
    assert format_host_port("203.0.113.10", 80) == "203.0.113.10:80"
    assert format_host_port("2001:db8::1", 443) == "[2001:db8::1]:443"

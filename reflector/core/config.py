"""
Configuration Management System
Environment-driven settings for the reachability service
"""

import re
from pathlib import Path
from ipaddress import IPv4Network, IPv6Network, ip_network
from typing import Annotated, Any, List, Set, Union

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger()

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# Hard cap on ports per request, independent of the allow-list size
MAX_PORTS_PER_REQUEST = 5
DEFAULT_PORTS: List[int] = [80, 443]
# Peers allowed to set X-Forwarded-For / X-Real-IP
DEFAULT_TRUSTED_PROXIES = ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]


def parse_duration(value: Any) -> float:
    """
    Parse a timeout into seconds

    Accepts numbers (seconds) and Go-style duration strings such as
    "5s", "500ms" or "1m".
    """
    if isinstance(value, (int, float)):
        return float(value)

    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")

    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


class ReflectorConfig(BaseSettings):
    """Settings injected into the probing core"""

    # Listener
    host: str = Field("0.0.0.0")
    port: int = Field(8080)

    # Ports a caller may ask us to probe
    allowed_ports: Annotated[Set[int], NoDecode] = Field(
        default={22, 80, 443, 8080, 8443}
    )

    # Reverse proxies whose forwarding headers are believed
    trusted_proxies: Annotated[List[Union[IPv4Network, IPv6Network]], NoDecode] = Field(
        default_factory=lambda: [ip_network(cidr) for cidr in DEFAULT_TRUSTED_PROXIES]
    )

    # Per-probe timeout (TCP connect, TLS handshake, challenge fetch)
    timeout: float = Field(5.0)

    # Per-address token bucket, refilled over one minute
    rate_limit_per_min: int = Field(10, ge=1)
    rate_limit_reset_interval: float = Field(3600.0, gt=0)

    # Logging
    log_dir: Path = Field(Path("logs"))
    log_level: str = Field("INFO")

    # Probing budget
    check_deadline: float = Field(15.0, gt=0)
    banner_timeout: float = Field(2.0, gt=0)
    tls_port: int = Field(443)
    default_challenge_port: int = Field(80)

    @field_validator("allowed_ports", mode="before")
    @classmethod
    def split_port_list(cls, v):
        """Accept "22,80,443" from the environment"""
        if isinstance(v, str):
            ports = set()
            for item in v.split(","):
                item = item.strip()
                if not item:
                    continue
                if not item.isdigit():
                    raise ValueError(f"Invalid port in allow-list: {item!r}")
                ports.add(int(item))
            return ports
        return v

    @field_validator("allowed_ports", mode="after")
    @classmethod
    def validate_port_range(cls, v):
        out_of_range = sorted(p for p in v if not 1 <= p <= 65535)
        if out_of_range:
            raise ValueError(f"Ports out of range in allow-list: {out_of_range}")
        return v

    @field_validator("trusted_proxies", mode="before")
    @classmethod
    def split_network_list(cls, v):
        """Accept "10.0.0.0/8,192.168.0.0/16" from the environment; empty trusts nobody"""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator(
        "timeout", "check_deadline", "banner_timeout", "rate_limit_reset_interval",
        mode="before"
    )
    @classmethod
    def parse_timeouts(cls, v):
        return parse_duration(v)

    @field_validator("timeout", mode="after")
    @classmethod
    def ensure_positive_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator("log_level", mode="after")
    @classmethod
    def normalize_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    model_config = {
        "env_prefix": "REFLECTOR_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }

    def is_port_allowed(self, port: int) -> bool:
        return port in self.allowed_ports

    def log_summary(self):
        """Log the values that change probing behaviour"""
        logger.info(
            "Configuration loaded",
            allowed_ports=sorted(self.allowed_ports),
            trusted_proxies=[str(network) for network in self.trusted_proxies],
            rate_limit_per_min=self.rate_limit_per_min,
            timeout=self.timeout,
            log_dir=str(self.log_dir)
        )

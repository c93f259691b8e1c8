"""
ShadowPilot Proxy Profiles
==========================
The ``ProxyConfig`` value object handed to the supervisor, its validation
rules and the translation into the proxy executable's argument vector.

A config is frozen once constructed. ``validate()`` must succeed before the
config reaches ``ProxySupervisor.start``; the supervisor re-validates anyway.

Persisted form (shared with the profile store and the ``vpn_config``
message) uses camelCase keys::

    {"server": "1.2.3.4", "serverPort": "8388", "password": "...",
     "method": "aes-256-gcm", "localAddress": "127.0.0.1",
     "localPort": "1080", "enableUDP": true, "timeout": 300,
     "dnsServer": "8.8.8.8", "mode": "whitelist"}
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from shadowpilot.core.errors import InvalidConfiguration
from shadowpilot.core.rules import RoutingMode


# ── Enums ────────────────────────────────────────────────────────────────────

class EncryptionMethod(str, Enum):
    """Ciphers accepted by the bundled proxy executable."""
    # OpenSSL backed
    AES_128_GCM = "aes-128-gcm"
    AES_256_GCM = "aes-256-gcm"
    AES_128_CFB = "aes-128-cfb"
    AES_256_CFB = "aes-256-cfb"
    CHACHA20 = "chacha20"
    CHACHA20_POLY1305 = "chacha20-poly1305"
    # libsodium backed
    XCHACHA20 = "xchacha20"
    XCHACHA20_POLY1305 = "xchacha20-poly1305"

    @classmethod
    def from_str(cls, value: str) -> "EncryptionMethod":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidConfiguration(f"unsupported encryption method '{value}'")


class RoutingStrategy(str, Enum):
    DIRECT = "direct"
    PROXY = "proxy"
    BY_LOCATION = "by_location"
    BY_LATENCY = "by_latency"
    LOAD_BALANCE = "load_balance"

    @classmethod
    def from_str(cls, value: str) -> "RoutingStrategy":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.PROXY


# ── Config ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProxyConfig:
    """Connection settings for a single proxy session."""
    server: str
    server_port: int
    password: str
    method: Union[EncryptionMethod, str] = EncryptionMethod.AES_256_GCM
    local_address: str = "127.0.0.1"
    local_port: int = 1080
    enable_udp: bool = True
    timeout: float = 300
    dns_server: str = "8.8.8.8"
    mode: RoutingMode = RoutingMode.WHITELIST
    routing_strategy: RoutingStrategy = RoutingStrategy.PROXY
    enable_tls: bool = False
    tls_cert_path: Optional[str] = None

    def validate(self) -> None:
        """Raise ``InvalidConfiguration`` describing the first problem found."""
        if not self.server or not str(self.server).strip():
            raise InvalidConfiguration("server address must not be empty")
        if not _valid_port(self.server_port):
            raise InvalidConfiguration("server port must be between 1 and 65535")
        if not self.password:
            raise InvalidConfiguration("password must not be empty")
        if not self.method:
            raise InvalidConfiguration("encryption method must not be empty")
        if not isinstance(self.method, EncryptionMethod):
            EncryptionMethod.from_str(str(self.method))
        if not self.local_address or not str(self.local_address).strip():
            raise InvalidConfiguration("local address must not be empty")
        if not _valid_port(self.local_port):
            raise InvalidConfiguration("local port must be between 1 and 65535")
        if self.timeout is None or self.timeout < 0:
            raise InvalidConfiguration("timeout must not be negative")
        if not self.dns_server or not str(self.dns_server).strip():
            raise InvalidConfiguration("DNS server must not be empty")

        if self.enable_tls:
            if not self.tls_cert_path:
                raise InvalidConfiguration("a certificate path is required when TLS is enabled")
            if not os.path.exists(self.tls_cert_path):
                raise InvalidConfiguration(f"TLS certificate not found: {self.tls_cert_path}")

    @property
    def method_name(self) -> str:
        if isinstance(self.method, EncryptionMethod):
            return self.method.value
        return str(self.method)

    def to_arguments(self) -> List[str]:
        """Build the argument vector for the proxy executable (no program name)."""
        args = [
            "-s", self.server,
            "-p", str(self.server_port),
            "-k", self.password,
            "-m", self.method_name,
            "-b", self.local_address,
            "-l", str(self.local_port),
            "--log-without-time",
        ]
        if self.enable_udp:
            args.append("--enable-udp")

        args.extend(["--timeout", str(int(self.timeout))])
        args.extend(["--dns", self.dns_server])

        if self.enable_tls:
            args.append("--tls")
            if self.tls_cert_path:
                args.extend(["--tls-cert", self.tls_cert_path])
        return args

    def masked_arguments(self) -> List[str]:
        """Argument vector with the secret replaced, safe for logs."""
        args = self.to_arguments()
        idx = args.index("-k")
        args[idx + 1] = "******"
        return args

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "server": self.server,
            "serverPort": str(self.server_port),
            "password": self.password,
            "method": self.method_name,
            "localAddress": self.local_address,
            "localPort": str(self.local_port),
            "enableUDP": self.enable_udp,
            "timeout": self.timeout,
            "dnsServer": self.dns_server,
            "mode": self.mode.value,
            "routingStrategy": self.routing_strategy.value,
            "enableTLS": self.enable_tls,
        }
        if self.tls_cert_path:
            data["tlsCertPath"] = self.tls_cert_path
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyConfig":
        """Build a config from its persisted form.

        Missing optional keys take their defaults. Raises
        ``InvalidConfiguration`` when a required key is missing or a value
        cannot be converted; range checks are left to ``validate()``.
        """
        if not isinstance(data, dict):
            raise InvalidConfiguration("configuration must be an object")
        for key in ("server", "serverPort", "password"):
            if key not in data:
                raise InvalidConfiguration(f"missing field '{key}'")

        method = data.get("method") or EncryptionMethod.AES_256_GCM.value
        mode = data.get("mode") or RoutingMode.WHITELIST.value

        return cls(
            server=str(data["server"]),
            server_port=_parse_port(data["serverPort"], "serverPort"),
            password=str(data["password"]),
            method=EncryptionMethod.from_str(str(method)),
            local_address=str(data.get("localAddress", "127.0.0.1")),
            local_port=_parse_port(data.get("localPort", 1080), "localPort"),
            enable_udp=_parse_bool(data.get("enableUDP", True), "enableUDP"),
            timeout=_parse_float(data.get("timeout", 300), "timeout"),
            dns_server=str(data.get("dnsServer", "8.8.8.8")),
            mode=RoutingMode.from_str(str(mode)),
            routing_strategy=RoutingStrategy.from_str(str(data.get("routingStrategy", "proxy"))),
            enable_tls=_parse_bool(data.get("enableTLS", False), "enableTLS"),
            tls_cert_path=data.get("tlsCertPath"),
        )


def build_arguments(config: ProxyConfig) -> List[str]:
    """Validate ``config`` and return its argument vector."""
    config.validate()
    return config.to_arguments()


def _valid_port(port: Any) -> bool:
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return 1 <= port <= 65535


def _parse_port(value: Any, field_name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise InvalidConfiguration(f"{field_name} must be a number, got '{value}'")


def _parse_float(value: Any, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(f"{field_name} must be a number, got '{value}'")


def _parse_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off", ""):
            return False
    raise InvalidConfiguration(f"{field_name} must be a boolean, got '{value}'")

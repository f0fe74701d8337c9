from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from portrelay.errors import ConfigError


class Protocol(enum.Enum):
    TCP = "TCP"
    UDP = "UDP"

    @classmethod
    def parse(cls, value: Any) -> "Protocol":
        if value is None:
            return cls.TCP
        name = str(value).strip().upper()
        try:
            return cls(name)
        except ValueError:
            raise ConfigError(f"unknown protocol {value!r} (expected TCP or UDP)") from None


def _port(d: Dict[str, Any], key: str, where: str) -> int:
    v = d.get(key)
    if isinstance(v, bool) or not isinstance(v, int):
        raise ConfigError(f"{where}: {key} must be an integer, got {v!r}")
    if not 1 <= v <= 65535:
        raise ConfigError(f"{where}: {key} out of range 1-65535: {v}")
    return v


@dataclass(frozen=True)
class Rule:
    """One forwarding directive: local port -> remote_host:remote_port."""
    local_port: int
    remote_port: int
    remote_host: str
    protocol: Protocol = Protocol.TCP

    @classmethod
    def from_dict(cls, d: Dict[str, Any], index: int = 0) -> "Rule":
        where = f"rules[{index}]"
        if not isinstance(d, dict):
            raise ConfigError(f"{where}: expected an object, got {type(d).__name__}")
        host = d.get("remote_host")
        if not isinstance(host, str) or not host.strip():
            raise ConfigError(f"{where}: remote_host must be a non-empty string")
        return cls(
            local_port=_port(d, "local_port", where),
            remote_port=_port(d, "remote_port", where),
            remote_host=host.strip(),
            protocol=Protocol.parse(d.get("protocol")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_port": self.local_port,
            "remote_port": self.remote_port,
            "remote_host": self.remote_host,
            "protocol": self.protocol.value,
        }

    def describe(self) -> str:
        return f"{self.protocol.value} {self.local_port} -> {self.remote_host}:{self.remote_port}"


@dataclass(frozen=True)
class Config:
    debug: bool = False
    rules: Tuple[Rule, ...] = ()
    logging: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Config":
        if not isinstance(d, dict):
            raise ConfigError("config root must be an object")
        raw_rules = d.get("rules") or []
        if not isinstance(raw_rules, list):
            raise ConfigError("rules must be a list")
        rules = tuple(Rule.from_dict(r, i) for i, r in enumerate(raw_rules))
        debug = d.get("debug", False)
        if not isinstance(debug, bool):
            raise ConfigError(f"debug must be true or false, got {debug!r}")
        lc = d.get("logging") or {}
        return cls(
            debug=debug,
            rules=rules,
            logging=lc if isinstance(lc, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "debug": self.debug,
            "rules": [r.to_dict() for r in self.rules],
            "logging": dict(self.logging),
        }

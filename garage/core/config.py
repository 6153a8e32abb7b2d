# garage/core/config.py
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from garage.core.errors import ConfigError
from garage.protocol.frames import TEXT_SIZE


CHANNEL_DRIVERS = ("framed", "json", "http")
ACTUATOR_DRIVERS = ("log", "gpio", "serial")


@dataclass(frozen=True)
class EndpointConfig:
    """Where the controller connects / the command server listens."""
    host: str = "localhost"
    port: int = 9443
    listen_host: str = "0.0.0.0"
    driver: str = "json"
    secret: str = ""


@dataclass(frozen=True)
class TlsConfig:
    enabled: bool = False
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    check_hostname: bool = True


@dataclass(frozen=True)
class SessionConfig:
    connect_timeout_s: float = 5.0
    handshake_timeout_s: float = 3.0
    request_timeout_s: float = 5.0
    ping_interval_s: float = 2.5
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0
    backoff_factor: float = 2.0
    touch_debounce_s: float = 1.0
    stale_toggle_s: float = 10.0


@dataclass(frozen=True)
class RelayConfig:
    agent_host: str = "0.0.0.0"
    agent_port: int = 9444
    notify_capacity: int = 6
    heartbeat_interval_s: float = 10.0


@dataclass(frozen=True)
class ActuatorConfig:
    driver: str = "log"
    pin: int = 17
    pulse_s: float = 0.3
    serial_port: Optional[str] = None
    queue_size: int = 3


@dataclass(frozen=True)
class GarageConfig:
    """
    Immutable configuration value passed to constructors.

    Every section has defaults; only `endpoint.secret` must be provided.
    """
    endpoint: EndpointConfig = field(default_factory=EndpointConfig)
    tls: TlsConfig = field(default_factory=TlsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    actuator: ActuatorConfig = field(default_factory=ActuatorConfig)

    @classmethod
    def from_mapping(cls, doc: Mapping[str, Any]) -> "GarageConfig":
        if not isinstance(doc, Mapping):
            raise ConfigError(
                "Configuration must be a mapping.",
                details={"type": type(doc).__name__},
            )

        sections = {
            "endpoint": EndpointConfig,
            "tls": TlsConfig,
            "session": SessionConfig,
            "relay": RelayConfig,
            "actuator": ActuatorConfig,
        }
        unknown = sorted(set(doc) - set(sections))
        if unknown:
            raise ConfigError(
                f"Unknown configuration section(s): {unknown}.",
                hint=f"Valid sections: {sorted(sections)}",
            )

        built: Dict[str, Any] = {}
        for name, section_cls in sections.items():
            built[name] = _build_section(name, section_cls, doc.get(name) or {})

        cfg = cls(**built)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        ep = self.endpoint
        if not ep.secret:
            raise ConfigError(
                "endpoint.secret must be set.",
                hint="Both sides of the link must share the same secret.",
            )
        if ep.driver not in CHANNEL_DRIVERS:
            raise ConfigError(
                f"Unknown channel driver '{ep.driver}'.",
                hint=f"Valid drivers: {list(CHANNEL_DRIVERS)}",
                details={"driver": ep.driver},
            )
        if ep.driver == "framed" and len(ep.secret.encode("utf-8")) > TEXT_SIZE:
            raise ConfigError(
                f"endpoint.secret is too long for the framed driver (max {TEXT_SIZE} bytes).",
                details={"length": len(ep.secret.encode("utf-8"))},
            )
        if not (0 < ep.port < 65536):
            raise ConfigError(f"Invalid endpoint.port {ep.port}.")

        s = self.session
        if s.backoff_base_s <= 0 or s.backoff_base_s > s.backoff_max_s:
            raise ConfigError(
                "session.backoff_base_s must be > 0 and <= session.backoff_max_s.",
                details={"base": s.backoff_base_s, "max": s.backoff_max_s},
            )
        if s.backoff_factor < 1.0:
            raise ConfigError("session.backoff_factor must be >= 1.")
        for name in (
            "connect_timeout_s",
            "handshake_timeout_s",
            "request_timeout_s",
            "ping_interval_s",
            "touch_debounce_s",
            "stale_toggle_s",
        ):
            if getattr(s, name) <= 0:
                raise ConfigError(f"session.{name} must be > 0.")

        if self.relay.notify_capacity < 1:
            raise ConfigError("relay.notify_capacity must be >= 1.")
        if self.relay.heartbeat_interval_s <= 0:
            raise ConfigError("relay.heartbeat_interval_s must be > 0.")

        a = self.actuator
        if a.driver not in ACTUATOR_DRIVERS:
            raise ConfigError(
                f"Unknown actuator driver '{a.driver}'.",
                hint=f"Valid drivers: {list(ACTUATOR_DRIVERS)}",
            )
        if a.driver == "serial" and not a.serial_port:
            raise ConfigError("actuator.serial_port is required for the serial actuator.")
        if a.queue_size < 1:
            raise ConfigError("actuator.queue_size must be >= 1.")

        t = self.tls
        if t.enabled and bool(t.cert_file) != bool(t.key_file):
            raise ConfigError("tls.cert_file and tls.key_file must be given together.")


def _build_section(name: str, section_cls: type, values: Any) -> Any:
    if not isinstance(values, Mapping):
        raise ConfigError(f"Section '{name}' must be a mapping.")

    known = {f.name: f for f in fields(section_cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in values.items():
        f = known.get(key)
        if f is None:
            raise ConfigError(
                f"Unknown key '{name}.{key}'.",
                hint=f"Valid keys: {sorted(known)}",
            )
        kwargs[key] = _cast(name, key, value, getattr(section_cls(), key))
    return section_cls(**kwargs)


def _cast(section: str, key: str, value: Any, default: Any) -> Any:
    """Cast a YAML scalar to the type of the field default (None defaults accept str)."""
    if value is None:
        if default is None:
            return None
        raise ConfigError(
            f"'{section}.{key}' must not be empty.",
            hint=f"Remove the key to use the default ({default!r}).",
        )
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            raise TypeError(f"Expected bool, got {type(value).__name__}")
        if isinstance(default, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"Expected int, got {type(value).__name__}")
            return value
        if isinstance(default, float):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"Expected float, got {type(value).__name__}")
            return float(value)
        return str(value)
    except TypeError as e:
        raise ConfigError(
            f"Invalid value for '{section}.{key}'.",
            hint=str(e),
            details={"value": value},
        ) from None


def load_config(path: str | Path) -> GarageConfig:
    """Load and validate a YAML configuration file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(
            f"Config file not found: {path}",
            hint="Pass --config <file.yml>.",
        ) from None
    except yaml.YAMLError as e:
        raise ConfigError(
            "Failed to parse config file.",
            hint=str(e),
            details={"path": str(path)},
        ) from None

    return GarageConfig.from_mapping(doc)

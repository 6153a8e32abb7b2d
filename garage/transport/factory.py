# garage/transport/factory.py
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Type

from garage.core.config import GarageConfig
from garage.core.errors import ConfigError

from .base import CommandChannel
from .framed import FramedChannel
from .http_channel import HttpChannel
from .jsonline import JsonLineChannel
from .sockets import client_ssl_context

CHANNEL_CLASSES: Mapping[str, Type[CommandChannel]] = {
    FramedChannel.driver: FramedChannel,
    JsonLineChannel.driver: JsonLineChannel,
    HttpChannel.driver: HttpChannel,
}


def channel_class(
    driver: str,
    classes: Optional[Mapping[str, Type[CommandChannel]]] = None,
) -> Type[CommandChannel]:
    """Look up the channel class for endpoint.driver (case-insensitive)."""
    table = {k.lower(): v for k, v in (classes or CHANNEL_CLASSES).items()}
    try:
        return table[driver.lower()]
    except KeyError:
        raise ConfigError(
            f"No channel class for driver '{driver}'.",
            hint=f"Known drivers: {sorted(table)}",
        ) from None


def channel_params(cfg: GarageConfig) -> Dict[str, Any]:
    """Constructor kwargs for the configured driver."""
    ep = cfg.endpoint
    params: Dict[str, Any] = {
        "host": ep.host,
        "port": ep.port,
        "request_timeout_s": cfg.session.request_timeout_s,
    }
    if ep.driver == HttpChannel.driver:
        params["scheme"] = "https" if cfg.tls.enabled else "http"
        params["verify"] = cfg.tls.ca_file or True
        params["auth"] = ep.secret
        return params

    try:
        params["ssl_context"] = client_ssl_context(cfg.tls)
    except (OSError, ValueError) as e:
        raise ConfigError(
            "Failed to build the TLS client context.",
            hint=str(e),
            details={"ca_file": cfg.tls.ca_file},
        ) from None
    return params


def create_channel(
    cfg: GarageConfig,
    *,
    classes: Optional[Mapping[str, Type[CommandChannel]]] = None,
    logger: Optional[logging.Logger] = None,
) -> CommandChannel:
    """Construct (but do not connect) the channel named by endpoint.driver."""
    cls = channel_class(cfg.endpoint.driver, classes)
    try:
        return cls(logger=logger, **channel_params(cfg))
    except TypeError as e:
        raise ConfigError(
            f"Failed to construct channel driver '{cfg.endpoint.driver}'.",
            hint=str(e),
            details={"driver": cfg.endpoint.driver},
        ) from None

from __future__ import annotations

import pytest

from garage.core.config import EndpointConfig, GarageConfig, TlsConfig
from garage.core.errors import ConfigError
from garage.protocol import Response
from garage.transport.base import CommandChannel, Connection
from garage.transport.factory import CHANNEL_CLASSES, channel_class, channel_params, create_channel
from garage.transport.framed import FramedChannel
from garage.transport.http_channel import HttpChannel
from garage.transport.jsonline import JsonLineChannel


class DummyChannel(CommandChannel):
    driver = "dummy"

    def __init__(self, *, host="", port=0, request_timeout_s=0.0, ssl_context=None, logger=None):
        self.host = host
        self.port = port

    def connect(self, timeout): return Connection(peer="dummy", handle=None)
    def send(self, conn, cmd): return Response.success()
    def close(self, conn): ...


def test_every_encoding_has_a_channel():
    assert CHANNEL_CLASSES == {"framed": FramedChannel, "json": JsonLineChannel, "http": HttpChannel}


def test_channel_class_lookup_is_case_insensitive():
    assert channel_class("HTTP") is HttpChannel
    assert channel_class("DuMmY", {"dummy": DummyChannel}) is DummyChannel


def test_unknown_driver_lists_known_ones():
    with pytest.raises(ConfigError) as ei:
        channel_class("grpc")
    assert "framed" in ei.value.hint


def _cfg(driver: str, tls: bool = False) -> GarageConfig:
    return GarageConfig(
        endpoint=EndpointConfig(host="garage.lan", port=9443, driver=driver, secret="k"),
        tls=TlsConfig(enabled=tls),
    )


@pytest.mark.parametrize("driver,cls", [("framed", FramedChannel), ("json", JsonLineChannel), ("http", HttpChannel)])
def test_create_channel_from_config(driver, cls):
    ch = create_channel(_cfg(driver))
    assert isinstance(ch, cls)
    assert ch.driver == driver


def test_create_channel_with_custom_classes():
    ch = create_channel(_cfg("dummy"), classes={"dummy": DummyChannel})
    assert isinstance(ch, DummyChannel)
    assert (ch.host, ch.port) == ("garage.lan", 9443)


def test_http_params_follow_tls_switch():
    assert channel_params(_cfg("http"))["scheme"] == "http"
    params = channel_params(_cfg("http", tls=True))
    assert params["scheme"] == "https"
    assert params["verify"] is True


def test_http_channel_receives_secret_for_handshake():
    assert channel_params(_cfg("http"))["auth"] == "k"
    assert create_channel(_cfg("http")).auth == "k"


def test_socket_params_without_tls_have_no_context():
    assert channel_params(_cfg("json"))["ssl_context"] is None


def test_unregistered_driver_is_config_error():
    with pytest.raises(ConfigError):
        create_channel(_cfg("json"), classes={"dummy": DummyChannel})

# garage/app/runner.py
"""
Wiring from a GarageConfig to running components, one entry point per process role.
Each start_* returns a frozen *Run bundle whose stop() tears everything down in order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from garage.agent.client import AgentClient
from garage.app.controller import RemoteController
from garage.app.sinks import FanoutCommandSink
from garage.core.config import GarageConfig
from garage.core.errors import ConfigError
from garage.core.recording.command_trace import CommandTraceLogger
from garage.interfaces.command_sink import CommandSink
from garage.interfaces.actuator import Actuator
from garage.interfaces.toggle_target import ToggleTarget
from garage.relay.agent_service import AgentListener, AgentService
from garage.relay.hub import RelayHub
from garage.relay.registry import RelayRegistry
from garage.runtime.debounce import TouchDebounce
from garage.runtime.session_manager import SessionManager
from garage.server.actuator import create_actuator
from garage.server.actuator_worker import ActuatorWorker
from garage.server.dispatcher import CommandDispatcher
from garage.server.http_app import HttpCommandServer
from garage.server.socket_server import CommandServer
from garage.transport.base import CommandChannel
from garage.transport.factory import create_channel
from garage.transport.sockets import client_ssl_context, server_ssl_context

CommandListener = Union[CommandServer, HttpCommandServer]


def _trace_sink(trace_path: Optional[Path]) -> CommandTraceLogger:
    return CommandTraceLogger(
        logger=logging.getLogger("commands"),
        file_path=Path(trace_path) if trace_path is not None else None,
        flush_interval_s=0.5,
    )


def _server_tls(cfg: GarageConfig):
    try:
        return server_ssl_context(cfg.tls)
    except (OSError, ValueError) as e:
        raise ConfigError(
            "Failed to build the TLS server context.",
            hint=str(e),
            details={"cert_file": cfg.tls.cert_file},
        ) from None


def _client_tls(cfg: GarageConfig):
    try:
        return client_ssl_context(cfg.tls)
    except (OSError, ValueError) as e:
        raise ConfigError("Failed to build the TLS client context.", hint=str(e)) from None


def _command_listener(cfg: GarageConfig, dispatcher: CommandDispatcher) -> CommandListener:
    ep = cfg.endpoint
    tls = _server_tls(cfg)
    try:
        if ep.driver == "http":
            return HttpCommandServer(ep.listen_host, ep.port, dispatcher, ssl_context=tls)
        return CommandServer(
            (ep.listen_host, ep.port),
            dispatcher,
            codec=ep.driver,
            ssl_context=tls,
            handshake_timeout_s=cfg.session.handshake_timeout_s,
            request_timeout_s=cfg.session.request_timeout_s,
        )
    except OSError as e:
        raise ConfigError(
            f"Could not listen on {ep.listen_host}:{ep.port}.",
            hint=str(e),
        ) from None


# ---------------- controller ----------------

@dataclass(frozen=True)
class ControllerRun:
    controller: RemoteController
    session: SessionManager
    channel: CommandChannel
    cmd_sink: CommandSink

    def stop(self) -> None:
        try:
            self.controller.stop()
        finally:
            self.cmd_sink.close()


def start_controller(
    cfg: GarageConfig,
    *,
    trace_path: Optional[Path] = None,
    channel: Optional[CommandChannel] = None,
    observers: Sequence[CommandSink] = (),
) -> ControllerRun:
    channel = channel or create_channel(cfg, logger=logging.getLogger("garage.channel"))
    cmd_sink = FanoutCommandSink([_trace_sink(trace_path), *observers])
    session = SessionManager(channel, config=cfg.session, auth=cfg.endpoint.secret, cmd_sink=cmd_sink)
    controller = RemoteController(session, debounce=TouchDebounce(cfg.session.touch_debounce_s))
    controller.start()
    return ControllerRun(controller=controller, session=session, channel=channel, cmd_sink=cmd_sink)


# ---------------- direct server ----------------

@dataclass(frozen=True)
class ServerRun:
    dispatcher: CommandDispatcher
    listener: CommandListener
    worker: ActuatorWorker
    cmd_sink: CommandTraceLogger

    def stop(self) -> None:
        try:
            self.listener.stop()
        finally:
            self.worker.stop()
            self.cmd_sink.close()


def start_server(
    cfg: GarageConfig,
    *,
    trace_path: Optional[Path] = None,
    actuator: Optional[Actuator] = None,
) -> ServerRun:
    cmd_sink = _trace_sink(trace_path)
    worker = ActuatorWorker(
        actuator or create_actuator(cfg.actuator),
        queue_size=cfg.actuator.queue_size,
        cmd_sink=cmd_sink,
    )
    dispatcher = CommandDispatcher(cfg.endpoint.secret, worker, cmd_sink=cmd_sink)
    try:
        listener = _command_listener(cfg, dispatcher)
    except ConfigError:
        worker.stop()
        cmd_sink.close()
        raise
    worker.start()
    listener.start()
    return ServerRun(dispatcher=dispatcher, listener=listener, worker=worker, cmd_sink=cmd_sink)


# ---------------- relay ----------------

@dataclass(frozen=True)
class RelayRun:
    hub: RelayHub
    dispatcher: CommandDispatcher
    listener: CommandListener
    agents: AgentListener
    cmd_sink: CommandTraceLogger

    def stop(self) -> None:
        try:
            self.listener.stop()
            self.agents.stop()
        finally:
            self.cmd_sink.close()


def start_relay(cfg: GarageConfig, *, trace_path: Optional[Path] = None) -> RelayRun:
    hub = RelayHub(RelayRegistry(cfg.relay.notify_capacity))
    cmd_sink = _trace_sink(trace_path)
    dispatcher = CommandDispatcher(cfg.endpoint.secret, hub, cmd_sink=cmd_sink)
    listener = _command_listener(cfg, dispatcher)

    service = AgentService(
        hub,
        cfg.endpoint.secret,
        hello_timeout_s=cfg.session.handshake_timeout_s,
        idle_timeout_s=cfg.relay.heartbeat_interval_s * 3,
        write_timeout_s=cfg.session.request_timeout_s,
    )
    try:
        agents = AgentListener(
            (cfg.relay.agent_host, cfg.relay.agent_port),
            service,
            ssl_context=_server_tls(cfg),
            handshake_timeout_s=cfg.session.handshake_timeout_s,
        )
    except OSError as e:
        listener.stop()
        raise ConfigError(
            f"Could not listen for agents on {cfg.relay.agent_host}:{cfg.relay.agent_port}.",
            hint=str(e),
        ) from None

    agents.start()
    listener.start()
    return RelayRun(hub=hub, dispatcher=dispatcher, listener=listener, agents=agents, cmd_sink=cmd_sink)


# ---------------- agent ----------------

@dataclass(frozen=True)
class AgentRun:
    client: AgentClient
    worker: ActuatorWorker

    def stop(self) -> None:
        try:
            self.client.stop(timeout=5.0)
        finally:
            self.worker.stop()


def start_agent(
    cfg: GarageConfig,
    *,
    actuator: Optional[Actuator] = None,
    target: Optional[ToggleTarget] = None,
) -> AgentRun:
    worker = ActuatorWorker(actuator or create_actuator(cfg.actuator), queue_size=cfg.actuator.queue_size)
    client = AgentClient(cfg, target or worker, ssl_context=_client_tls(cfg))
    worker.start()
    client.start()
    return AgentRun(client=client, worker=worker)

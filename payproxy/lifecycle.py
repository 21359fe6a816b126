"""
Process lifecycle for the proxy: bind, serve, drain, stop.

    STARTING -> LISTENING -> DRAINING -> STOPPED

uvicorn owns the accept loop. ProxyServer hooks into it to log the active
tables once the socket is bound, and to replace uvicorn's signal escalation
with a single graceful drain guarded by a watchdog: when in-flight requests
do not finish within the grace period the process is terminated with exit
status 1.
"""

import asyncio
import copy
import logging
import os
import signal
import sys
from enum import Enum
from typing import Callable, Optional

import uvicorn
from uvicorn.config import LOGGING_CONFIG

from payproxy.config import ProxyConfig
from payproxy.vars import HOST, LOG_LEVEL

logger = logging.getLogger("uvicorn.error")

EXIT_OK = 0
EXIT_FORCED = 1


class ServerState(str, Enum):
    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


def build_log_config(level: str = LOG_LEVEL) -> dict:
    """uvicorn's logging config with timestamps on every line."""
    log_config = copy.deepcopy(LOGGING_CONFIG)
    log_config["formatters"]["default"]["fmt"] = "%(asctime)s %(levelprefix)s %(message)s"
    log_config["formatters"]["access"]["fmt"] = (
        '%(asctime)s %(levelprefix)s %(client_addr)s - "%(request_line)s" %(status_code)s'
    )
    for formatter in ("default", "access"):
        log_config["formatters"][formatter]["datefmt"] = "%Y-%m-%dT%H:%M:%S%z"
    log_config["loggers"]["uvicorn"]["level"] = level.upper()
    return log_config


def log_policy_tables(config: ProxyConfig, port: int) -> None:
    logger.info(f"Proxy Server running on port {port}")
    logger.info("Host Redirects (302):")
    for host, target in config.redirects.items():
        logger.info(f"  - {host} -> {target}")
    logger.info("Payment Gateway Proxies:")
    for host, referrer in config.hosts.items():
        logger.info(f"  - {host}:")
        for gateway in config.gateways:
            logger.info(
                f"    {gateway.prefix}/* -> {gateway.target}/* "
                f"(Host: {gateway.host}, Referer: {referrer})"
            )
    logger.info(
        f"Request timeout {config.request_timeout_ms}ms, "
        f"shutdown grace period {config.shutdown_grace_ms}ms"
    )


def _flush_logs() -> None:
    current = logger
    while current is not None:
        for handler in current.handlers:
            handler.flush()
        current = current.parent if current.propagate else None


class ProxyServer(uvicorn.Server):
    def __init__(
        self,
        config: uvicorn.Config,
        proxy_config: ProxyConfig,
        exit_func: Callable[[int], None] = os._exit,
    ):
        super().__init__(config)
        self.proxy_config = proxy_config
        self.state = ServerState.STARTING
        self._exit_func = exit_func
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def serve(self, sockets=None) -> None:
        self.attach_loop(asyncio.get_running_loop())
        try:
            await super().serve(sockets=sockets)
        finally:
            self.mark_stopped()

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.should_exit or self.state is not ServerState.STARTING:
            return
        self.state = ServerState.LISTENING
        log_policy_tables(self.proxy_config, self.config.port)

    def handle_exit(self, sig: int, frame) -> None:
        # Replaces uvicorn's handler: later signals never escalate to a force exit
        if self.state in (ServerState.DRAINING, ServerState.STOPPED):
            logger.debug(f"Ignoring signal {sig}; shutdown already in progress")
            return
        self.state = ServerState.DRAINING
        try:
            name = signal.Signals(sig).name
        except ValueError:
            name = str(sig)
        logger.info(f"{name} received. Shutting down gracefully...")
        self.should_exit = True
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._arm_watchdog)

    def _arm_watchdog(self) -> None:
        if self.state is not ServerState.DRAINING or self._watchdog is not None:
            return
        self._watchdog = self._loop.call_later(
            self.proxy_config.shutdown_grace, self._force_exit
        )

    def _force_exit(self) -> None:
        if self.state is ServerState.STOPPED:
            return
        logger.error("Forced shutdown due to timeout")
        self.state = ServerState.STOPPED
        _flush_logs()
        self._exit_func(EXIT_FORCED)

    def mark_stopped(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        previous, self.state = self.state, ServerState.STOPPED
        if previous in (ServerState.LISTENING, ServerState.DRAINING):
            logger.info("Server closed successfully")


def build_server(app, proxy_config: ProxyConfig) -> ProxyServer:
    config = uvicorn.Config(
        app,
        host=HOST,
        port=proxy_config.port,
        log_config=build_log_config(LOG_LEVEL),
        log_level=LOG_LEVEL,
        # Draining is bounded by ProxyServer's watchdog instead
        timeout_graceful_shutdown=None,
    )
    return ProxyServer(config, proxy_config)


def main() -> None:
    from payproxy.server import app

    server = build_server(app, app.state.proxy_config)
    # Bind failures exit with status 1 from inside uvicorn
    server.run()
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()

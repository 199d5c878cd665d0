"""Process entry point: ``cfproxy`` console script or ``python -m cfproxy.main``."""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI

from cfproxy.core.app_factory import create_app
from cfproxy.core.config import LogSettings, Settings, load_env_file, load_settings
from cfproxy.core.errors import ConfigError
from cfproxy.core.logging import configure_logging

logger = logging.getLogger("cfproxy")


class ProxyServer(uvicorn.Server):
    """uvicorn server that announces the port once the listener is bound."""

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            logger.info(
                "Server listening on port %s",
                self.config.port,
                extra={"event": "proxy.starting", "port": self.config.port},
            )


def build_server_config(app: FastAPI, settings: Settings) -> uvicorn.Config:
    """uvicorn config for serving ``app``.

    uvicorn's own ``date``/``server`` headers are turned off: relayed
    responses already carry the upstream's.
    """

    return uvicorn.Config(
        app,
        host=settings.proxy.host,
        port=settings.proxy.port,
        log_config=None,
        access_log=False,
        server_header=False,
        date_header=False,
    )


def run() -> None:
    """Load configuration and serve until interrupted.

    Exits with status 1 when configuration is missing or invalid.
    """

    # LOG_* may come from the env file, so it has to be in place first
    load_env_file()
    configure_logging(LogSettings())

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.critical("config.invalid", extra={"error_message": exc.message})
        sys.exit(1)

    configure_logging(
        settings.log,
        extra_sensitive_keys=[settings.proxy.credential_header],
    )

    app = create_app(settings)
    ProxyServer(build_server_config(app, settings)).run()


if __name__ == "__main__":
    run()

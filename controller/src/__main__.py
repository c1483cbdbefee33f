from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from collections.abc import Sequence

import uvicorn

from controller.src.config import ARGOOS_VERSION, ArgoosConfig, ConfigError, load_config
from controller.src.controller import RolloutController
from controller.src.errors import ClusterUnavailable
from controller.src.metrics import METRICS
from webhook.src.main import configure_logging, create_app

SERVER_STOP_TIMEOUT_SECONDS = 10


def build_server(config: ArgoosConfig, controller: RolloutController) -> uvicorn.Server:
    """Return a uvicorn server for the webhook app, serving HTTPS when configured."""
    host, port = config.listen_address()
    server_config = uvicorn.Config(
        create_app(config, controller),
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        ssl_certfile=config.server_cert if config.tls_enabled else None,
        ssl_keyfile=config.server_key if config.tls_enabled else None,
    )
    return uvicorn.Server(server_config)


def main(argv: Sequence[str] | None = None) -> int:
    """Entrypoint: load config, start the controller, serve webhooks until signalled."""
    try:
        config, show_version = load_config(argv)
    except ConfigError as exc:
        print(f"argoos: {exc}", file=sys.stderr)
        return 2
    if show_version:
        print(ARGOOS_VERSION)
        return 0

    configure_logging(verbose=config.verbose)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", ARGOOS_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    if not config.auth_enabled:
        logger.warning("No token configured; webhook authentication is disabled")

    controller = RolloutController(config=config)
    try:
        controller.start()
    except ClusterUnavailable:
        logger.exception("Cannot reach the Kubernetes API; exiting")
        return 1

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    server = build_server(config, controller)
    # uvicorn skips its own signal capture outside the main thread.
    server_thread = threading.Thread(target=server.run, name="argoos-http", daemon=True)
    server_thread.start()
    logger.info(
        "Starting argoos %s on %s (%s)",
        ARGOOS_VERSION,
        config.listen,
        "https" if config.tls_enabled else "http",
    )

    exit_code = 0
    while not shutdown_event.wait(timeout=1.0):
        if not server_thread.is_alive():
            logger.error("HTTP server exited unexpectedly")
            exit_code = 1
            break

    server.should_exit = True
    server_thread.join(timeout=SERVER_STOP_TIMEOUT_SECONDS)
    controller.stop()
    logger.info("argoos stopped")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())

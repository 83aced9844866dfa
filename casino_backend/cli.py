import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Optional

import uvicorn

from .config import Settings
from .errors import ConfigError
from .logging_config import setup_logging
from .main import create_app
from .service import EntropyBackendService

logger = logging.getLogger("casino_backend")


def log_heartbeat(service: EntropyBackendService) -> None:
    status = service.get_status()
    logger.info("💓 Service Status: Running=%s, Pending=%d, Settled=%d, Abandoned=%d",
                status["isRunning"], status["pendingRequests"], status["settled"], status["abandoned"])
    for record in service.stale_requests():
        logger.warning("⏰ Request %s (%s) pending for %.0fs, oracle may be stuck",
                       record.request_id_hex, record.origin_tx_hash, record.age())


class StatusServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the service loop."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    async def serve(self, sockets=None) -> None:
        try:
            await super().serve(sockets)
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind; keep the service running without the API
            logger.error("❌ Status API failed to start on %s:%d (exit code %s)",
                         self.config.host, self.config.port, e.code)


async def run(settings: Settings) -> int:
    service = None
    try:
        service = EntropyBackendService.from_settings(settings)
        await service.start()
    except Exception:
        logger.exception("❌ Failed to start service")
        if service is not None:
            await service.stop()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run
            pass

    api_server: Optional[StatusServer] = None
    api_task = None
    if settings.status_api_port:
        config = uvicorn.Config(create_app(service), host=settings.status_api_host,
                                port=settings.status_api_port, log_level="warning", loop="asyncio")
        api_server = StatusServer(config)
        api_task = asyncio.create_task(api_server.serve(), name="status-api")
        logger.info("🌐 Status API on http://%s:%d", settings.status_api_host, settings.status_api_port)

    try:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.status_interval)
            except asyncio.TimeoutError:
                log_heartbeat(service)
    finally:
        logger.info("🛑 Shutting down...")
        if api_server is not None:
            api_server.should_exit = True
            try:
                await api_task
            except Exception:
                logger.exception("❌ Status API stopped with an error")
        await service.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Cross-chain entropy backend: requests oracle randomness for casino games and settles them.")
    parser.add_argument("--env", type=str, default=None, help="The .env file to load (default: ./.env)")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env(args.env)
    except ConfigError as e:
        setup_logging()
        logger.error("❌ Configuration error: %s", e)
        return 1

    setup_logging(settings.log_level, settings.log_format)
    return asyncio.run(run(settings))


if __name__ == "__main__":
    sys.exit(main())

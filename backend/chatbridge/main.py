import asyncio
import logging
import signal

from chatbridge.config.settings import Settings, get_settings
from chatbridge.logging.setup import configure_logging
from chatbridge.persistence.store import BridgeStore
from chatbridge.services.bridge import Bridge

logger = logging.getLogger(__name__)


async def run_bridge(settings: Settings, stop_event: asyncio.Event | None = None) -> None:
    """Run the bridge until SIGINT/SIGTERM (or ``stop_event``) and shut it down."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover
            pass

    store = BridgeStore(settings.db_path)
    bridge = Bridge(settings, store)
    try:
        await bridge.start()
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await bridge.stop()
        store.close()


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting %s %s", settings.app_name, settings.app_version)
    asyncio.run(run_bridge(settings))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

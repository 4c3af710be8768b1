from __future__ import annotations

import asyncio
import signal

from reglens.apps.api.deps import build_services
from reglens.core.logging import configure_logging
from reglens.persistence.db import dispose_engine, get_session_factory


async def _main() -> None:
    # Dedicated process that zeroes counters at every UTC midnight without request traffic.
    configure_logging()
    services = build_services(get_session_factory())
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    services.scheduler.start()
    try:
        await stop.wait()
    finally:
        await services.scheduler.stop()
        await services.scheduler.aclose()
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(_main())

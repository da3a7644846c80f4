"""Background worker: polls due callbacks and reminders, runs the optimizer.

Usage:
    dispatch-worker                         # via pyproject.toml entrypoint
    python -m lead_dispatch.worker          # direct
"""

from __future__ import annotations

import asyncio
import logging
import signal

from lead_dispatch.core.config import Settings
from lead_dispatch.system import DispatchSystem

logger = logging.getLogger(__name__)


class DispatchWorker:
    """Drives the scheduler's poll loop and the optimizer's cycle timer."""

    def __init__(self, settings: Settings | None = None, system: DispatchSystem | None = None):
        self.settings = settings or Settings()
        self.system = system or DispatchSystem(self.settings)
        self._running = False
        self._stopped = False

    async def start(self) -> None:
        self._running = True
        await self.system.optimizer.start()
        logger.info("Dispatch worker started, polling every %ds", self.settings.poll_interval)

        while self._running:
            try:
                counts = await self.system.poll_once()
                logger.debug("Poll cycle: %s", counts)
            except Exception:
                logger.exception("Poll cycle error")
            await asyncio.sleep(self.settings.poll_interval)

    async def stop(self) -> None:
        """Graceful shutdown. Safe to call more than once."""
        self._running = False
        if self._stopped:
            return
        self._stopped = True
        await self.system.close()
        logger.info("Dispatch worker stopped")


async def _run() -> None:
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    worker = DispatchWorker(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))
        except NotImplementedError:
            pass  # Windows

    try:
        await worker.start()
    finally:
        await worker.stop()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()

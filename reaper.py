import asyncio
import logging

logger = logging.getLogger(__name__)


class HoldReaper:
    """Background reclamation of temporary holds whose expiry passed without settlement."""

    def __init__(self, orchestrator, interval_seconds: float = 60):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._running = False

    def run_once(self) -> int:
        expired = self.orchestrator.expire_due_holds()
        if expired:
            logger.info("Reclaimed %s expired hold(s)", expired)
        return expired

    async def run_periodic(self):
        """Run reclamation every `interval_seconds` until stop() is called."""
        self._running = True
        logger.info("Starting hold reaper (interval: %ss)", self.interval_seconds)
        while self._running:
            try:
                # expiry takes unit locks and hits the database; keep it off the event loop
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error("Error in hold reaper: %s", e)
            await asyncio.sleep(self.interval_seconds)

    def stop(self):
        self._running = False
        logger.info("Hold reaper stopped")

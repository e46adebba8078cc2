"""Background sweeper for UX timeouts and run polling.

Worker callbacks have no engine-imposed timeout, but UX nodes may. The
sweeper periodically expires overdue waits; it holds no run state of its
own, so several sweepers (or a crashed one) are harmless.
"""

import asyncio
import logging

from stitch.core.engine import GraphEngine
from stitch.core.models import RunStatus

logger = logging.getLogger(__name__)


class TimeoutSweeper:
    """
    Expires overdue UX waits.

    Design:
    - Polls the DB for waiting nodes past their deadline
    - Each expiry is a guarded transition, so concurrent sweepers never double fire
    """

    def __init__(self, engine: GraphEngine, poll_interval: float = 5.0):
        self.engine = engine
        self.poll_interval = poll_interval
        self.running = False

    def sweep_once(self) -> int:
        """Expire everything overdue right now. Returns the number of nodes expired."""
        return self.engine.expire_waits()

    async def run_until_complete(self, run_id: str, timeout: float | None = None) -> RunStatus:
        """
        Poll a run until it completes or fails, sweeping timeouts meanwhile.
        Returns final status, or the current one if ``timeout`` elapses first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            await asyncio.to_thread(self.sweep_once)
            report = await asyncio.to_thread(self.engine.get_status, run_id)
            if report.status in (RunStatus.COMPLETED, RunStatus.FAILED):
                return report.status
            if deadline is not None and loop.time() >= deadline:
                return report.status
            await asyncio.sleep(self.poll_interval)

    async def start_daemon(self):
        """
        Start daemon mode - sweep until stopped.
        """
        self.running = True

        while self.running:
            try:
                expired = await asyncio.to_thread(self.sweep_once)
                if expired:
                    logger.info(f"Expired {expired} overdue UX wait(s)")
            except Exception as e:
                logger.error(f"Sweeper error: {e}")

            await asyncio.sleep(self.poll_interval)

    def stop(self):
        """Stop the sweeper daemon"""
        self.running = False

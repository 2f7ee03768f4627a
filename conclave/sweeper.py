"""Background expiry sweep.

Periodically asks the engine to expire overdue decision sessions. The
sweep goes through the same per-session locks as vote submission, so a
session resolved by a vote just before the sweep reaches it is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conclave.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs WorkflowEngine.sweep_expired() every ``interval`` seconds.

    Usage:
        sweeper = ExpirySweeper(engine, interval=5.0)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, engine: WorkflowEngine, interval: float = 5.0) -> None:
        if interval <= 0:
            raise ValueError(f"Sweep interval must be positive, got {interval}")
        self._engine = engine
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop on the running event loop."""
        if self.running:
            return
        self._stopped = False
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._sweep_loop())
        logger.info("Expiry sweeper started (every %.1fs)", self._interval)

    async def sweep_once(self) -> int:
        """Run one sweep. Returns the number of sessions expired."""
        updates = await self._engine.sweep_expired()
        self.sweeps += 1
        return len(updates)

    async def _sweep_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Expiry sweep failed")

    async def stop(self) -> None:
        """Stop the loop and wait for the task to finish."""
        self._stopped = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Expiry sweeper stopped after %d sweeps", self.sweeps)

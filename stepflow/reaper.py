"""Periodic sweep that reclaims steps abandoned by their agents."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .engine import StepEngine

logger = logging.getLogger(__name__)


class Reaper:
    """Runs ``StepEngine.reap_abandoned`` on a fixed interval.

    Claims already sweep before handing out work; a standalone reaper keeps
    runs moving when no agent is polling.
    """

    def __init__(
        self,
        engine: StepEngine,
        interval_seconds: float = 60.0,
        max_age_minutes: Optional[float] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._engine = engine
        self._interval = interval_seconds
        self._max_age_minutes = max_age_minutes

    async def run_once(self) -> int:
        reclaimed = await self._engine.reap_abandoned(self._max_age_minutes)
        if reclaimed:
            logger.info(f"Reaper reclaimed {reclaimed} abandoned steps")
        return reclaimed

    async def start(self, lifespan: Optional[float] = None) -> int:
        """Sweep until cancelled or ``lifespan`` seconds have elapsed.

        Returns the total number of steps reclaimed.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        total = 0
        logger.info(f"Reaper started with interval={self._interval}s")
        while True:
            total += await self.run_once()
            if lifespan is not None and loop.time() - start_time + self._interval > lifespan:
                break
            await asyncio.sleep(self._interval)
        logger.info(f"Reaper stopped after reclaiming {total} steps")
        return total

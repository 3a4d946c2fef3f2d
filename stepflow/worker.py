"""Polling worker that executes claimed steps with a user supplied handler."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from .contracts import ClaimResult
from .engine import StepEngine
from .errors import StepflowError
from .utils.retry import idle_backoff

logger = logging.getLogger(__name__)

StepHandler = Callable[[ClaimResult], Union[str, Awaitable[str]]]


class StepWorker:
    """Claims work for one agent id and reports the handler's result.

    The handler receives the claim and returns the step output. Raising marks
    the attempt as failed with the exception text.
    """

    def __init__(self, engine: StepEngine, agent_id: str, handler: StepHandler) -> None:
        self._engine = engine
        self._agent_id = agent_id
        self._handler = handler
        self.executed_steps: list[str] = []

    async def run_once(self) -> bool:
        """Claim and execute a single step. Returns False when idle."""
        claim = await self._engine.claim(self._agent_id)
        if not claim.found:
            return False

        try:
            output = self._handler(claim)
            if inspect.isawaitable(output):
                output = await output
        except Exception as e:
            logger.warning(
                f"Agent {self._agent_id} failed step_id={claim.step_id} run_id={claim.run_id}: {e}"
            )
            try:
                await self._engine.fail(claim.step_id, str(e))
            except StepflowError as report_error:
                logger.warning(
                    f"Could not record failure of step_id={claim.step_id}: {report_error}"
                )
            return True

        try:
            result = await self._engine.complete(claim.step_id, str(output or ""))
        except StepflowError as e:
            # Reclaimed or cancelled while the handler ran.
            logger.warning(f"Discarded output of step_id={claim.step_id}: {e}")
            return True
        self.executed_steps.append(claim.step_id)
        logger.info(
            f"Agent {self._agent_id} completed step_id={claim.step_id} run_id={claim.run_id}"
        )
        if result.parse_error:
            logger.warning(f"Output of step_id={claim.step_id} had a bad story block")
        return True

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll until cancelled or ``lifespan`` seconds have elapsed."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        idle = 0
        logger.info(f"Worker for agent {self._agent_id} started")
        while lifespan is None or loop.time() - start_time < lifespan:
            if await self.run_once():
                idle = 0
                continue
            idle += 1
            await idle_backoff(idle, cap=self._idle_cap(lifespan, loop.time() - start_time))
        logger.info(f"Worker for agent {self._agent_id} stopped")

    @staticmethod
    def _idle_cap(lifespan: Optional[float], elapsed: float) -> float:
        if lifespan is None:
            return 30.0
        return max(min(30.0, lifespan - elapsed), 0.0)

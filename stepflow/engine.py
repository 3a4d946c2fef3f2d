"""Step lifecycle engine: claim, complete, fail, approve, reject and reap.

Every public operation is one or more short units of work against the
repository. Moving a step or story out of ``pending`` is always a conditional
update checked by affected rows; a lost race rolls the whole unit of work
back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional, Sequence

from .clock import Clock, SystemClock
from .config import StepflowConfig
from .constants import ABANDONED_ERROR, RETRY_MARKER
from .context import merge_context_from_output, parse_stories_json
from .contracts import (
    ApprovalResult,
    ClaimResult,
    CompleteResult,
    FailResult,
    StoryInput,
)
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    RecoverableParseError,
    StoryValidationError,
)
from .models import Run, Step, Story
from .persistence import UnitOfWork, WorkflowRepository
from .resolver import resolve_template
from .runs import RunController
from .states import (
    STEP_TRANSITIONS,
    STORY_TRANSITIONS,
    RunStatus,
    StepKind,
    StepStatus,
    StoryStatus,
    can_transition,
)
from .stories import StoryManager, build_story_context
from .templates import InMemoryTemplateStore, TemplateStore

logger = logging.getLogger(__name__)

_OPEN_STORY_STATUSES = (StoryStatus.PENDING, StoryStatus.RUNNING, StoryStatus.VERIFYING)


class _TransitionLost(Exception):
    """A conditional update matched no row: another caller got there first."""


class StepEngine:
    """Hands out step work to polling agents and records their results."""

    def __init__(
        self,
        repository: WorkflowRepository,
        templates: Optional[TemplateStore] = None,
        config: Optional[StepflowConfig] = None,
        clock: Optional[Clock] = None,
        runs: Optional[RunController] = None,
        stories: Optional[StoryManager] = None,
    ) -> None:
        self._repository = repository
        self._config = config or StepflowConfig()
        self._clock = clock or SystemClock()
        self.runs = runs or RunController(
            repository, templates or InMemoryTemplateStore(), self._config, self._clock
        )
        self.stories = stories or StoryManager(repository, self._config, self._clock)

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Claim
    async def claim(self, agent_id: str) -> ClaimResult:
        """Claim the oldest pending step for ``agent_id``.

        Returns ``ClaimResult(found=False)`` when there is nothing to hand out,
        including when the selected step was an approval gate or a loop step
        that just finished its last story.
        """
        await self.reap_abandoned()

        async with self._repository.unit_of_work() as uow:
            candidates = await uow.find_pending_steps(agent_id)

        for candidate in candidates:
            try:
                async with self._repository.unit_of_work() as uow:
                    result = await self._claim_step(uow, candidate.id)
            except _TransitionLost:
                logger.debug(f"Lost claim race for step_id={candidate.id}")
                continue
            if result.found:
                logger.info(
                    f"Agent {agent_id} claimed step_id={result.step_id} run_id={result.run_id}"
                    + (f" story={result.story_id}" if result.story_id else "")
                )
            return result

        logger.debug(f"No pending steps for agent {agent_id}")
        return ClaimResult.empty()

    async def _claim_step(self, uow: UnitOfWork, step_id: str) -> ClaimResult:
        step = await uow.get_step(step_id)
        if step is None or step.status != StepStatus.PENDING:
            raise _TransitionLost(step_id)
        run = await uow.get_run(step.run_id)
        if run is None or run.status != RunStatus.RUNNING:
            raise _TransitionLost(step_id)
        now = self._clock.now()

        if step.kind == StepKind.APPROVAL:
            await self._move_step(
                uow, step, StepStatus.AWAITING_APPROVAL, now, [StepStatus.PENDING]
            )
            await uow.update_run(
                run.id,
                {"awaiting_approval": True, "updated_at": now},
                status_in=[RunStatus.RUNNING],
            )
            logger.info(f"Step {step.step_id} of run_id={run.id} is awaiting approval")
            return ClaimResult.empty()

        if step.kind == StepKind.LOOP:
            return await self._claim_loop(uow, run, step, now)

        await self._move_step(uow, step, StepStatus.RUNNING, now, [StepStatus.PENDING])
        context: Mapping[str, str] = run.context
        if step.current_story_id:
            context = await self._gate_context(uow, run, step.current_story_id)
        return ClaimResult(
            found=True,
            step_id=step.id,
            run_id=run.id,
            resolved_input=resolve_template(step.input_template, context),
            story_id=step.current_story_id,
        )

    async def _claim_loop(
        self, uow: UnitOfWork, run: Run, step: Step, now: datetime
    ) -> ClaimResult:
        stories = await uow.list_stories(run.id)
        story = next((s for s in stories if s.status == StoryStatus.PENDING), None)

        if story is None:
            if any(s.status == StoryStatus.FAILED for s in stories):
                logger.warning(
                    f"Loop step {step.step_id} of run_id={run.id} has failed stories"
                )
                return ClaimResult.empty()
            if any(s.status in _OPEN_STORY_STATUSES for s in stories):
                return ClaimResult.empty()
            if not stories:
                logger.warning(
                    f"Loop step {step.step_id} of run_id={run.id} has no stories"
                )
            await self._move_step(
                uow,
                step,
                StepStatus.COMPLETED,
                now,
                [StepStatus.PENDING],
                output=f"Completed {len(stories)} stories",
            )
            logger.info(f"Loop step {step.step_id} completed for run_id={run.id}")
            await self._advance(uow, run, step, now)
            return ClaimResult.empty()

        await self._move_story(uow, story, StoryStatus.RUNNING, now, [StoryStatus.PENDING])
        await self._move_step(
            uow,
            step,
            StepStatus.RUNNING,
            now,
            [StepStatus.PENDING],
            current_story_id=story.id,
        )
        context = build_story_context(run.context, story, stories)
        return ClaimResult(
            found=True,
            step_id=step.id,
            run_id=run.id,
            resolved_input=resolve_template(step.input_template, context),
            story_id=story.id,
        )

    async def _gate_context(
        self, uow: UnitOfWork, run: Run, story_pk: str
    ) -> Mapping[str, str]:
        story = await uow.get_story(story_pk)
        if story is None:
            return run.context
        context = build_story_context(run.context, story, await uow.list_stories(run.id))
        context["story_output"] = story.output or ""
        return context

    # ------------------------------------------------------------------
    # Complete
    async def complete(self, step_id: str, output: str) -> CompleteResult:
        """Record a successful result for a running step.

        For a verify gate, ``step_completed`` reports whether the loop step it
        guards finished as a consequence.
        """
        try:
            async with self._repository.unit_of_work() as uow:
                step, run = await self._load_running(uow, step_id, StepStatus.COMPLETED)
                now = self._clock.now()
                run, parse_error = await self._merge_output(uow, run, output, now)

                if step.kind == StepKind.LOOP and step.current_story_id:
                    result = await self._complete_story(uow, run, step, output, now)
                elif step.current_story_id:
                    result = await self._complete_verification(uow, run, step, output, now)
                else:
                    await self._move_step(
                        uow, step, StepStatus.COMPLETED, now, [StepStatus.RUNNING],
                        output=output,
                    )
                    logger.info(f"Completed step {step.step_id} for run_id={run.id}")
                    run_completed = await self._advance(uow, run, step, now)
                    result = CompleteResult(step_completed=True, run_completed=run_completed)
        except _TransitionLost:
            raise InvalidTransitionError(
                "step", "unknown", StepStatus.COMPLETED.value, step_id,
                reason="step changed concurrently",
            ) from None

        if parse_error:
            result = result.model_copy(update={"parse_error": parse_error})
        return result

    async def _merge_output(
        self, uow: UnitOfWork, run: Run, output: str, now: datetime
    ) -> tuple[Run, Optional[str]]:
        context = merge_context_from_output(output, run.context)
        await uow.update_run(run.id, {"context": context, "updated_at": now})
        run = run.model_copy(update={"context": context})

        try:
            parsed = parse_stories_json(output, self._config.max_stories)
        except RecoverableParseError as e:
            logger.warning(f"Dropping STORIES_JSON for run_id={run.id}: {e}")
            return run, str(e)
        if not parsed:
            return run, None

        steps = await uow.list_steps(run.id)
        if not any(s.kind == StepKind.LOOP for s in steps):
            logger.warning(f"Ignoring STORIES_JSON for run_id={run.id}: no loop step")
            return run, None
        try:
            await self.stories.create_in(uow, run.id, parsed)
        except StoryValidationError as e:
            logger.warning(f"Dropping STORIES_JSON for run_id={run.id}: {e}")
            return run, str(e)
        return run, None

    async def _complete_story(
        self, uow: UnitOfWork, run: Run, step: Step, output: str, now: datetime
    ) -> CompleteResult:
        story = await self._require_story(uow, step.current_story_id)
        gate = await self._find_gate(uow, step)

        if gate is not None:
            await self._move_step(
                uow, step, StepStatus.WAITING, now, [StepStatus.RUNNING],
                output=output, current_story_id=None,
            )
            await self._move_story(
                uow, story, StoryStatus.VERIFYING, now, [StoryStatus.RUNNING],
                output=output,
            )
            await self._move_step(
                uow, gate, StepStatus.PENDING, now, [StepStatus.WAITING],
                current_story_id=story.id,
            )
            logger.info(
                f"Story {story.story_id} of run_id={run.id} awaiting verification by {gate.step_id}"
            )
            return CompleteResult(step_completed=False, run_completed=False)

        await self._move_step(
            uow, step, StepStatus.PENDING, now, [StepStatus.RUNNING],
            output=output, current_story_id=None,
        )
        await self._move_story(
            uow, story, StoryStatus.COMPLETED, now, [StoryStatus.RUNNING], output=output
        )
        logger.info(f"Story {story.story_id} completed for run_id={run.id}")
        return await self._finish_loop_if_done(uow, run, step.id, now)

    async def _complete_verification(
        self, uow: UnitOfWork, run: Run, gate: Step, output: str, now: datetime
    ) -> CompleteResult:
        story = await self._require_story(uow, gate.current_story_id)
        loop = await self._find_loop_for_gate(uow, gate)
        await self._move_step(
            uow, gate, StepStatus.WAITING, now, [StepStatus.RUNNING],
            output=output, current_story_id=None,
        )

        passed = RETRY_MARKER not in output and (not gate.expects or gate.expects in output)
        if not passed:
            logger.info(f"Story {story.story_id} failed verification for run_id={run.id}")
            await self._retry_story(
                uow, run, loop, story, f"verification failed: {output}", now,
                [StepStatus.WAITING],
            )
            return CompleteResult(step_completed=False, run_completed=False)

        await self._move_story(
            uow, story, StoryStatus.COMPLETED, now, [StoryStatus.VERIFYING]
        )
        await self._move_step(uow, loop, StepStatus.PENDING, now, [StepStatus.WAITING])
        logger.info(f"Story {story.story_id} verified for run_id={run.id}")
        return await self._finish_loop_if_done(uow, run, loop.id, now)

    async def _finish_loop_if_done(
        self, uow: UnitOfWork, run: Run, loop_step_id: str, now: datetime
    ) -> CompleteResult:
        stories = await uow.list_stories(run.id)
        unfinished = [s for s in stories if s.status != StoryStatus.COMPLETED]
        if unfinished:
            return CompleteResult(step_completed=False, run_completed=False)

        loop = await uow.get_step(loop_step_id)
        await self._move_step(
            uow, loop, StepStatus.COMPLETED, now, [StepStatus.PENDING],
            output=f"Completed {len(stories)} stories",
        )
        logger.info(f"Loop step {loop.step_id} completed for run_id={run.id}")
        run_completed = await self._advance(uow, run, loop, now)
        return CompleteResult(step_completed=True, run_completed=run_completed)

    # ------------------------------------------------------------------
    # Fail
    async def fail(self, step_id: str, error: str) -> FailResult:
        """Record a failed attempt; retries until the budget is exhausted."""
        try:
            async with self._repository.unit_of_work() as uow:
                step, run = await self._load_running(uow, step_id, StepStatus.FAILED)
                return await self._fail_locked(uow, run, step, error, self._clock.now())
        except _TransitionLost:
            raise InvalidTransitionError(
                "step", "unknown", StepStatus.FAILED.value, step_id,
                reason="step changed concurrently",
            ) from None

    async def _fail_locked(
        self,
        uow: UnitOfWork,
        run: Run,
        step: Step,
        error: str,
        now: datetime,
        updated_at: Optional[datetime] = None,
    ) -> FailResult:
        if run.status != RunStatus.RUNNING:
            await self._move_step(
                uow, step, StepStatus.FAILED, now, [StepStatus.RUNNING],
                updated_at=updated_at, output=error, current_story_id=None,
            )
            if step.current_story_id:
                story = await self._require_story(uow, step.current_story_id)
                await self._move_story(
                    uow, story, StoryStatus.FAILED, now,
                    [StoryStatus.RUNNING, StoryStatus.VERIFYING], output=error,
                )
            return FailResult(retrying=False, run_failed=run.status == RunStatus.FAILED)

        if step.kind == StepKind.LOOP and step.current_story_id:
            story = await self._require_story(uow, step.current_story_id)
            return await self._retry_story(
                uow, run, step, story, error, now, [StepStatus.RUNNING], updated_at
            )

        if step.current_story_id:
            story = await self._require_story(uow, step.current_story_id)
            loop = await self._find_loop_for_gate(uow, step)
            await self._move_step(
                uow, step, StepStatus.WAITING, now, [StepStatus.RUNNING],
                updated_at=updated_at, output=error, current_story_id=None,
            )
            return await self._retry_story(
                uow, run, loop, story, error, now, [StepStatus.WAITING]
            )

        attempts = step.retry_count + 1
        if attempts > step.max_retries:
            await self._move_step(
                uow, step, StepStatus.FAILED, now, [StepStatus.RUNNING],
                updated_at=updated_at, output=error,
            )
            logger.warning(
                f"Step {step.step_id} exhausted {step.max_retries} retries for run_id={run.id}"
            )
            await self.runs.mark_failed(uow, run.id, f"step {step.step_id} failed: {error}")
            return FailResult(retrying=False, run_failed=True)

        await self._move_step(
            uow, step, StepStatus.PENDING, now, [StepStatus.RUNNING],
            updated_at=updated_at, output=error, retry_count=attempts,
        )
        logger.info(
            f"Step {step.step_id} will retry ({attempts}/{step.max_retries}) for run_id={run.id}"
        )
        return FailResult(retrying=True, run_failed=False)

    async def _retry_story(
        self,
        uow: UnitOfWork,
        run: Run,
        loop: Step,
        story: Story,
        error: str,
        now: datetime,
        loop_status_in: Sequence[StepStatus],
        updated_at: Optional[datetime] = None,
    ) -> FailResult:
        story_from = [StoryStatus.RUNNING, StoryStatus.VERIFYING]
        attempts = story.retry_count + 1
        if attempts > story.max_retries:
            await self._move_step(
                uow, loop, StepStatus.FAILED, now, loop_status_in,
                updated_at=updated_at, output=error, current_story_id=None,
            )
            await self._move_story(
                uow, story, StoryStatus.FAILED, now, story_from, output=error
            )
            logger.warning(
                f"Story {story.story_id} exhausted {story.max_retries} retries for run_id={run.id}"
            )
            await self.runs.mark_failed(
                uow, run.id, f"story {story.story_id} failed: {error}"
            )
            return FailResult(retrying=False, run_failed=True)

        await self._move_step(
            uow, loop, StepStatus.PENDING, now, loop_status_in,
            updated_at=updated_at, output=error, current_story_id=None,
        )
        await self._move_story(
            uow, story, StoryStatus.PENDING, now, story_from,
            output=error, retry_count=attempts,
        )
        logger.info(
            f"Story {story.story_id} will retry ({attempts}/{story.max_retries}) for run_id={run.id}"
        )
        return FailResult(retrying=True, run_failed=False)

    # ------------------------------------------------------------------
    # Approval gate
    async def approve(self, step_id: str, note: str = "") -> ApprovalResult:
        """Approve a step awaiting a human decision and advance the pipeline."""
        try:
            async with self._repository.unit_of_work() as uow:
                step, run = await self._load_awaiting(uow, step_id, StepStatus.COMPLETED)
                now = self._clock.now()
                await self._move_step(
                    uow, step, StepStatus.COMPLETED, now, [StepStatus.AWAITING_APPROVAL],
                    output=f"APPROVED: {note}" if note else "APPROVED",
                )
                await uow.update_run(
                    run.id, {"awaiting_approval": False, "updated_at": now},
                    status_in=[RunStatus.RUNNING],
                )
                logger.info(f"Step {step.step_id} approved for run_id={run.id}")
                run_completed = await self._advance(uow, run, step, now)
        except _TransitionLost:
            raise InvalidTransitionError(
                "step", "unknown", StepStatus.COMPLETED.value, step_id,
                reason="step changed concurrently",
            ) from None
        return ApprovalResult(
            step_id=step_id,
            status=StepStatus.COMPLETED.value,
            run_completed=run_completed,
        )

    async def reject(self, step_id: str, reason: str) -> ApprovalResult:
        """Reject a step awaiting a human decision; the run fails."""
        try:
            async with self._repository.unit_of_work() as uow:
                step, run = await self._load_awaiting(uow, step_id, StepStatus.FAILED)
                now = self._clock.now()
                await self._move_step(
                    uow, step, StepStatus.FAILED, now, [StepStatus.AWAITING_APPROVAL],
                    output=f"REJECTED: {reason}",
                )
                await self.runs.mark_failed(
                    uow, run.id, f"step {step.step_id} rejected: {reason}"
                )
        except _TransitionLost:
            raise InvalidTransitionError(
                "step", "unknown", StepStatus.FAILED.value, step_id,
                reason="step changed concurrently",
            ) from None
        return ApprovalResult(
            step_id=step_id, status=StepStatus.FAILED.value, run_failed=True
        )

    # ------------------------------------------------------------------
    # Stories and reaping
    async def create_stories(
        self, run_id: str, stories: Sequence[StoryInput | Mapping[str, Any]]
    ) -> List[Story]:
        return await self.stories.create_stories(run_id, stories)

    async def reap_abandoned(self, max_age_minutes: Optional[float] = None) -> int:
        """Treat steps running longer than the threshold as failed attempts.

        Returns the number of steps reclaimed.
        """
        age = (
            max_age_minutes
            if max_age_minutes is not None
            else self._config.reaper.max_age_minutes
        )
        now = self._clock.now()
        cutoff = now - timedelta(minutes=age)

        async with self._repository.unit_of_work() as uow:
            stale = await uow.find_running_steps_before(cutoff)

        reclaimed = 0
        for candidate in stale:
            try:
                async with self._repository.unit_of_work() as uow:
                    step = await uow.get_step(candidate.id)
                    if step is None or step.updated_at != candidate.updated_at:
                        continue
                    run = await uow.get_run(step.run_id)
                    if run is None:
                        continue
                    result = await self._fail_locked(
                        uow,
                        run,
                        step,
                        ABANDONED_ERROR,
                        now,
                        updated_at=candidate.updated_at,
                    )
            except _TransitionLost:
                continue
            reclaimed += 1
            logger.warning(
                f"Reclaimed abandoned step {step.step_id} (step_id={step.id}) "
                f"for run_id={step.run_id}: retrying={result.retrying}"
            )
        return reclaimed

    # ------------------------------------------------------------------
    # Pipeline advancement
    async def _advance(
        self, uow: UnitOfWork, run: Run, finished: Step, now: datetime
    ) -> bool:
        """Activate the step after ``finished``; complete the run if none is left.

        Returns True when the run completed.
        """
        steps = await uow.list_steps(run.id)
        gates = {s.loop_config.verify_step for s in steps if s.verifies_each_story}

        if finished.verifies_each_story:
            for gate in steps:
                if (
                    gate.step_id == finished.loop_config.verify_step
                    and gate.status == StepStatus.WAITING
                ):
                    await self._move_step(
                        uow,
                        gate,
                        StepStatus.COMPLETED,
                        now,
                        [StepStatus.WAITING],
                        output="All stories verified",
                    )

        following = [
            s
            for s in steps
            if s.position > finished.position
            and s.status == StepStatus.WAITING
            and s.step_id not in gates
        ]
        if following:
            nxt = following[0]
            await self._move_step(uow, nxt, StepStatus.PENDING, now, [StepStatus.WAITING])
            logger.info(f"Advanced run_id={run.id} to step {nxt.step_id}")
            return False

        return await self.runs.mark_completed(uow, run.id)

    # ------------------------------------------------------------------
    # Helpers
    async def _load_running(
        self, uow: UnitOfWork, step_id: str, target: StepStatus
    ) -> tuple[Step, Run]:
        step = await uow.get_step(step_id)
        if step is None:
            raise NotFoundError("step", step_id)
        if step.status != StepStatus.RUNNING:
            raise InvalidTransitionError("step", step.status.value, target.value, step_id)
        run = await uow.get_run(step.run_id)
        if run is None:
            raise NotFoundError("run", step.run_id)
        if run.status != RunStatus.RUNNING:
            raise InvalidTransitionError(
                "run", run.status.value, entity_id=run.id, reason="run is not running"
            )
        return step, run

    async def _load_awaiting(
        self, uow: UnitOfWork, step_id: str, target: StepStatus
    ) -> tuple[Step, Run]:
        step = await uow.get_step(step_id)
        if step is None:
            raise NotFoundError("step", step_id)
        if step.status != StepStatus.AWAITING_APPROVAL:
            raise InvalidTransitionError(
                "step",
                step.status.value,
                target.value,
                step_id,
                reason="step is not awaiting approval",
            )
        run = await uow.get_run(step.run_id)
        if run is None:
            raise NotFoundError("run", step.run_id)
        if run.status != RunStatus.RUNNING:
            raise InvalidTransitionError(
                "run", run.status.value, entity_id=run.id, reason="run is not running"
            )
        return step, run

    async def _require_story(self, uow: UnitOfWork, story_pk: Optional[str]) -> Story:
        story = await uow.get_story(story_pk) if story_pk else None
        if story is None:
            raise NotFoundError("story", story_pk or "")
        return story

    async def _find_gate(self, uow: UnitOfWork, loop: Step) -> Optional[Step]:
        if not loop.verifies_each_story:
            return None
        for step in await uow.list_steps(loop.run_id):
            if step.step_id == loop.loop_config.verify_step:
                return step
        logger.warning(
            f"Verify step {loop.loop_config.verify_step} missing in run_id={loop.run_id}"
        )
        return None

    async def _find_loop_for_gate(self, uow: UnitOfWork, gate: Step) -> Step:
        for step in await uow.list_steps(gate.run_id):
            if step.verifies_each_story and step.loop_config.verify_step == gate.step_id:
                return step
        raise NotFoundError("loop step for verify step", gate.step_id)

    async def _move_step(
        self,
        uow: UnitOfWork,
        step: Step,
        target: StepStatus,
        now: datetime,
        status_in: Sequence[StepStatus],
        updated_at: Optional[datetime] = None,
        **values: Any,
    ) -> None:
        for source in status_in:
            if not can_transition(STEP_TRANSITIONS, source, target):
                raise InvalidTransitionError("step", source.value, target.value, step.id)
        changed = await uow.update_step(
            step.id,
            {"status": target, "updated_at": now, **values},
            status_in=status_in,
            updated_at=updated_at,
        )
        if not changed:
            raise _TransitionLost(step.id)

    async def _move_story(
        self,
        uow: UnitOfWork,
        story: Story,
        target: StoryStatus,
        now: datetime,
        status_in: Sequence[StoryStatus],
        **values: Any,
    ) -> None:
        for source in status_in:
            if not can_transition(STORY_TRANSITIONS, source, target):
                raise InvalidTransitionError("story", source.value, target.value, story.id)
        changed = await uow.update_story(
            story.id, {"status": target, "updated_at": now, **values}, status_in=status_in
        )
        if not changed:
            raise _TransitionLost(story.id)

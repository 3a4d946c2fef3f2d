"""Run creation and run-level status changes."""

from __future__ import annotations

import logging
import uuid
from typing import Any, List, Mapping, Optional

from .clock import Clock, SystemClock
from .config import StepflowConfig
from .contracts import WorkflowTemplate
from .errors import InvalidTransitionError, NotFoundError
from .models import Run, Step, Story
from .persistence import UnitOfWork, WorkflowRepository
from .states import RunStatus, StepKind, StepStatus
from .templates import TemplateStore

logger = logging.getLogger(__name__)


def verify_gate_ids(template: WorkflowTemplate) -> set[str]:
    """Step ids that act as per-story verify gates for a loop step."""
    return {
        spec.loop_config.verify_step
        for spec in template.steps
        if spec.kind == StepKind.LOOP
        and spec.loop_config is not None
        and spec.loop_config.verify_each
        and spec.loop_config.verify_step
    }


class RunController:
    """Instantiates templates into runs and records run-level outcomes."""

    def __init__(
        self,
        repository: WorkflowRepository,
        templates: TemplateStore,
        config: Optional[StepflowConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._templates = templates
        self._config = config or StepflowConfig()
        self._clock = clock or SystemClock()

    async def create_run(
        self,
        template_id: str,
        task: str,
        context: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> Run:
        """Create a run and all of its steps; the first step becomes pending."""
        template = self._templates.get_template(template_id)
        now = self._clock.now()
        run_id = run_id or str(uuid.uuid4())

        seeded = {"task": task}
        for key, value in (context or {}).items():
            seeded[str(key).lower()] = str(value)

        run = Run(
            id=run_id,
            template_id=template.id,
            task=task,
            status=RunStatus.RUNNING,
            context=seeded,
            created_at=now,
            updated_at=now,
        )

        gates = verify_gate_ids(template)
        steps: List[Step] = []
        activated = False
        for spec in template.ordered_steps():
            status = StepStatus.WAITING
            if not activated and spec.step_id not in gates:
                status = StepStatus.PENDING
                activated = True
            max_retries = (
                spec.max_retries
                if spec.max_retries is not None
                else self._config.retries.step_max_retries
            )
            steps.append(
                Step(
                    id=str(uuid.uuid4()),
                    run_id=run_id,
                    step_id=spec.step_id,
                    agent_id=spec.agent_id,
                    position=spec.position,
                    kind=spec.kind,
                    status=status,
                    input_template=spec.input_template,
                    expects=spec.expects,
                    loop_config=spec.loop_config,
                    max_retries=max_retries,
                    created_at=now,
                    updated_at=now,
                )
            )

        async with self._repository.unit_of_work() as uow:
            await uow.insert_run(run)
            await uow.insert_steps(steps)

        logger.info(
            f"Created run_id={run_id} from template {template.id} with {len(steps)} steps"
        )
        return run

    async def get_run(self, run_id: str) -> Run:
        async with self._repository.unit_of_work() as uow:
            run = await uow.get_run(run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    async def list_runs(self, status: Optional[RunStatus] = None) -> List[Run]:
        async with self._repository.unit_of_work() as uow:
            return await uow.list_runs(status)

    async def list_steps(self, run_id: str) -> List[Step]:
        async with self._repository.unit_of_work() as uow:
            if await uow.get_run(run_id) is None:
                raise NotFoundError("run", run_id)
            return await uow.list_steps(run_id)

    async def list_stories(self, run_id: str) -> List[Story]:
        async with self._repository.unit_of_work() as uow:
            if await uow.get_run(run_id) is None:
                raise NotFoundError("run", run_id)
            return await uow.list_stories(run_id)

    async def cancel_run(self, run_id: str) -> Run:
        """Stop handing out work for a running run."""
        async with self._repository.unit_of_work() as uow:
            run = await uow.get_run(run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            changed = await uow.update_run(
                run_id,
                {
                    "status": RunStatus.CANCELLED,
                    "awaiting_approval": False,
                    "updated_at": self._clock.now(),
                },
                status_in=[RunStatus.RUNNING],
            )
            if not changed:
                raise InvalidTransitionError(
                    "run", run.status.value, RunStatus.CANCELLED.value, run_id
                )
            run = await uow.get_run(run_id)
        logger.info(f"Cancelled run_id={run_id}")
        return run

    # ------------------------------------------------------------------
    # Called by the step engine inside its unit of work
    async def mark_completed(self, uow: UnitOfWork, run_id: str) -> bool:
        changed = await uow.update_run(
            run_id,
            {
                "status": RunStatus.COMPLETED,
                "awaiting_approval": False,
                "updated_at": self._clock.now(),
            },
            status_in=[RunStatus.RUNNING],
        )
        if changed:
            logger.info(f"Run completed for run_id={run_id}")
        return changed

    async def mark_failed(self, uow: UnitOfWork, run_id: str, reason: str) -> bool:
        changed = await uow.update_run(
            run_id,
            {
                "status": RunStatus.FAILED,
                "awaiting_approval": False,
                "updated_at": self._clock.now(),
            },
            status_in=[RunStatus.RUNNING],
        )
        if changed:
            logger.warning(f"Run failed for run_id={run_id}: {reason}")
        return changed

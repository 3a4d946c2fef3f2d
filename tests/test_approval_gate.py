import pytest

from stepflow.errors import InvalidTransitionError, NotFoundError
from stepflow.states import RunStatus, StepStatus


async def _reach_review(engine):
    run = await engine.runs.create_run("gated", "newsletter")
    claim = await engine.claim("writer")
    await engine.complete(claim.step_id, "STATUS: done")
    assert not (await engine.claim("reviewer")).found
    steps = {s.step_id: s for s in await engine.runs.list_steps(run.id)}
    return run, steps["review"]


@pytest.mark.asyncio
async def test_claiming_approval_step_parks_it(engine):
    run, review = await _reach_review(engine)

    assert review.status == StepStatus.AWAITING_APPROVAL
    assert (await engine.runs.get_run(run.id)).awaiting_approval
    assert not (await engine.claim("reviewer")).found


@pytest.mark.asyncio
async def test_approve_advances_pipeline(engine):
    run, review = await _reach_review(engine)

    result = await engine.approve(review.id, note="ship it")
    assert result.status == "completed"
    assert not result.run_completed

    run = await engine.runs.get_run(run.id)
    assert not run.awaiting_approval
    steps = {s.step_id: s for s in await engine.runs.list_steps(run.id)}
    assert steps["review"].output == "APPROVED: ship it"
    assert steps["publish"].status == StepStatus.PENDING

    claim = await engine.claim("publisher")
    assert claim.resolved_input == "Publish newsletter"
    assert (await engine.complete(claim.step_id, "STATUS: done")).run_completed


@pytest.mark.asyncio
async def test_reject_fails_run(engine):
    run, review = await _reach_review(engine)

    result = await engine.reject(review.id, "off brand")
    assert result.status == "failed"
    assert result.run_failed

    run = await engine.runs.get_run(run.id)
    assert run.status == RunStatus.FAILED
    assert not run.awaiting_approval
    steps = {s.step_id: s for s in await engine.runs.list_steps(run.id)}
    assert steps["review"].output == "REJECTED: off brand"
    assert steps["publish"].status == StepStatus.WAITING


@pytest.mark.asyncio
async def test_decisions_require_awaiting_step(engine):
    run, review = await _reach_review(engine)
    steps = {s.step_id: s for s in await engine.runs.list_steps(run.id)}

    with pytest.raises(InvalidTransitionError):
        await engine.approve(steps["publish"].id)
    with pytest.raises(InvalidTransitionError):
        await engine.reject(steps["draft"].id, "no")
    with pytest.raises(NotFoundError):
        await engine.approve("missing")

    await engine.approve(review.id)
    with pytest.raises(InvalidTransitionError):
        await engine.reject(review.id, "too late")

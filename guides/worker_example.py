"""Example running the feature-dev template end to end with in-process workers."""

import asyncio
import json

from stepflow import (
    ClaimResult,
    DirectoryTemplateStore,
    StepEngine,
    StepWorker,
    get_repository,
)


def planner(claim: ClaimResult) -> str:
    stories = [
        {"id": "S-1", "title": "Toggle component", "acceptanceCriteria": ["renders"]},
        {"id": "S-2", "title": "Persist preference", "acceptanceCriteria": ["saved"]},
    ]
    return f"STATUS: done\nREPO: web\nSTORIES_JSON: {json.dumps(stories)}"


async def developer(claim: ClaimResult) -> str:
    await asyncio.sleep(0.1)
    return f"STATUS: done\nImplemented story {claim.story_id}"


def verifier(claim: ClaimResult) -> str:
    return "STATUS: done"


def writer(claim: ClaimResult) -> str:
    return "STATUS: done\nRELEASE_NOTES: Dark mode is here"


async def main():
    engine = StepEngine(get_repository(), DirectoryTemplateStore("workflows"))
    run = await engine.runs.create_run("feature-dev", "Add a dark mode toggle")
    print(f"Run created: {run.id}")

    workers = [
        StepWorker(engine, "feature-dev/planner", planner),
        StepWorker(engine, "feature-dev/developer", developer),
        StepWorker(engine, "feature-dev/verifier", verifier),
        StepWorker(engine, "feature-dev/writer", writer),
    ]
    await asyncio.gather(*(w.start(lifespan=5) for w in workers))

    # The review step waits for a human; approve it and let the writer finish
    steps = await engine.runs.list_steps(run.id)
    review = next(s for s in steps if s.step_id == "review")
    await engine.approve(review.id, note="looks good")
    await workers[-1].start(lifespan=3)

    run = await engine.runs.get_run(run.id)
    print(f"Run {run.id}: {run.status.value}")
    print(json.dumps(run.context, indent=2))


if __name__ == "__main__":
    asyncio.run(main())

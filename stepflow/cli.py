"""Command line interface for stepflow runs, steps and workers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .config import StepflowConfig, load_config
from .engine import StepEngine
from .errors import StepflowError
from .persistence import get_repository
from .reaper import Reaper
from .states import RunStatus
from .templates import DirectoryTemplateStore, load_template_file

T = TypeVar("T")

app = typer.Typer(help="CLI for stepflow workflow runs")

# Command groups
template_app = typer.Typer(help="Commands for inspecting workflow templates")
run_app = typer.Typer(help="Commands for managing runs")
step_app = typer.Typer(help="Commands for agents and approvers working on steps")
story_app = typer.Typer(help="Commands for loop stories")
reaper_app = typer.Typer(help="Commands for reclaiming abandoned steps")

app.add_typer(template_app, name="template")
app.add_typer(run_app, name="run")
app.add_typer(step_app, name="step")
app.add_typer(story_app, name="story")
app.add_typer(reaper_app, name="reaper")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, help="Path to a stepflow YAML config"),
    log_level: Optional[str] = typer.Option(None, help="Logging level, e.g. DEBUG"),
) -> None:
    """Stepflow CLI entry point."""
    cfg = load_config(str(config) if config else None)
    logging.basicConfig(
        level=(log_level or cfg.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = cfg


def _config(ctx: typer.Context) -> StepflowConfig:
    return ctx.obj if isinstance(ctx.obj, StepflowConfig) else load_config()


def get_template_store(config: StepflowConfig) -> DirectoryTemplateStore:
    return DirectoryTemplateStore(config.templates_dir)


def _engine(config: StepflowConfig) -> StepEngine:
    repository = get_repository(config=config)
    return StepEngine(repository, get_template_store(config), config)


def _run(engine: StepEngine, factory: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine, turning engine errors into a red message and exit code 1."""

    async def _main() -> T:
        try:
            return await factory()
        finally:
            await engine.repository.close()

    try:
        return asyncio.run(_main())
    except StepflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid JSON for {option}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Templates
@template_app.command("list")
def template_list(ctx: typer.Context) -> None:
    """List templates found in the configured templates directory."""
    store = get_template_store(_config(ctx))
    try:
        templates = store.list_templates()
    except StepflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not templates:
        typer.echo("No templates found")
        return
    for template in templates:
        typer.echo(f"{template.id}\t{template.name}\t{len(template.steps)} steps")


@template_app.command("show")
def template_show(ctx: typer.Context, template_id: str) -> None:
    """Show the ordered steps of a template."""
    store = get_template_store(_config(ctx))
    try:
        template = store.get_template(template_id)
    except StepflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Template {template.id}: {template.name}")
    if template.description:
        typer.echo(template.description)
    for spec in template.ordered_steps():
        extra = ""
        if spec.loop_config is not None and spec.loop_config.verify_each:
            extra = f" (verified by {spec.loop_config.verify_step})"
        typer.echo(
            f"{spec.position}. {spec.step_id} [{spec.kind.value}] -> {spec.agent_id}{extra}"
        )


@template_app.command("validate")
def template_validate(path: Path) -> None:
    """Validate a template YAML file without registering it."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        template = load_template_file(path)
    except StepflowError as e:
        typer.secho(f"Invalid template: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Template {template.id} is valid ({len(template.steps)} steps)")


# ----------------------------------------------------------------------
# Runs
@run_app.command("create")
def run_create(
    ctx: typer.Context,
    template_id: str,
    task: str,
    context: Optional[str] = typer.Option(None, help="JSON object of extra context"),
) -> None:
    """
    Start a run of a template.

    Example:
        stepflow run create feature-dev "Add a dark mode toggle"
        stepflow run create feature-dev "Fix login" --context '{"repo": "web"}'
    """
    extra = _parse_json(context, "--context") or {}
    if not isinstance(extra, dict):
        typer.secho("--context must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    engine = _engine(_config(ctx))
    run = _run(engine, lambda: engine.runs.create_run(template_id, task, extra))
    typer.echo(f"Run created: {run.id}")


@run_app.command("list")
def run_list(
    ctx: typer.Context,
    status: Optional[RunStatus] = typer.Option(None, help="Only show runs in this status"),
) -> None:
    """List runs, newest first."""
    engine = _engine(_config(ctx))
    runs = _run(engine, lambda: engine.runs.list_runs(status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        flag = "\tawaiting approval" if run.awaiting_approval else ""
        typer.echo(f"{run.id}\t{run.template_id}\t{run.status.value}{flag}")


@run_app.command("show")
def run_show(ctx: typer.Context, run_id: str) -> None:
    """Show run status, context, steps and stories."""
    engine = _engine(_config(ctx))

    async def _load():
        run = await engine.runs.get_run(run_id)
        steps = await engine.runs.list_steps(run_id)
        stories = await engine.runs.list_stories(run_id)
        return run, steps, stories

    run, steps, stories = _run(engine, _load)
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Task: {run.task}")
    if run.context:
        typer.echo(f"Context: {json.dumps(run.context, sort_keys=True)}")
    for step in steps:
        retries = f" retries={step.retry_count}/{step.max_retries}" if step.retry_count else ""
        typer.echo(f"- {step.step_id}: {step.status.value}{retries} (id={step.id})")
    for story in stories:
        typer.echo(f"  * {story.story_id} {story.title}: {story.status.value}")


@run_app.command("cancel")
def run_cancel(ctx: typer.Context, run_id: str) -> None:
    """Cancel a running run."""
    engine = _engine(_config(ctx))
    run = _run(engine, lambda: engine.runs.cancel_run(run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")


# ----------------------------------------------------------------------
# Steps
@step_app.command("claim")
def step_claim(ctx: typer.Context, agent_id: str) -> None:
    """Claim the next pending step for an agent and print it as JSON."""
    engine = _engine(_config(ctx))
    result = _run(engine, lambda: engine.claim(agent_id))
    typer.echo(result.model_dump_json(exclude_none=True))


@step_app.command("complete")
def step_complete(
    ctx: typer.Context,
    step_id: str,
    output: Optional[str] = typer.Argument(None, help="Step output text"),
    output_file: Optional[Path] = typer.Option(None, help="Read the output from a file"),
) -> None:
    """Report a step as completed with its output."""
    if output_file is not None:
        output = output_file.read_text()
    if output is None:
        typer.secho("Provide OUTPUT or --output-file", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    engine = _engine(_config(ctx))
    result = _run(engine, lambda: engine.complete(step_id, output))
    if result.parse_error:
        typer.secho(f"Story block ignored: {result.parse_error}", fg=typer.colors.YELLOW)
    typer.echo(result.model_dump_json(exclude_none=True))


@step_app.command("fail")
def step_fail(ctx: typer.Context, step_id: str, error: str) -> None:
    """Report a failed attempt for a step."""
    engine = _engine(_config(ctx))
    result = _run(engine, lambda: engine.fail(step_id, error))
    typer.echo(result.model_dump_json())


@step_app.command("approve")
def step_approve(
    ctx: typer.Context, step_id: str, note: str = typer.Option("", help="Approval note")
) -> None:
    """Approve a step that is awaiting approval."""
    engine = _engine(_config(ctx))
    result = _run(engine, lambda: engine.approve(step_id, note))
    typer.echo(result.model_dump_json())


@step_app.command("reject")
def step_reject(ctx: typer.Context, step_id: str, reason: str) -> None:
    """Reject a step that is awaiting approval; the run fails."""
    engine = _engine(_config(ctx))
    result = _run(engine, lambda: engine.reject(step_id, reason))
    typer.echo(result.model_dump_json())


# ----------------------------------------------------------------------
# Stories
@story_app.command("add")
def story_add(ctx: typer.Context, run_id: str, stories: str) -> None:
    """
    Add stories to a run from a JSON array.

    Example:
        stepflow story add <run_id> '[{"id": "S-1", "title": "Login form"}]'
    """
    items = _parse_json(stories, "stories")
    if not isinstance(items, list):
        typer.secho("stories must be a JSON array", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    engine = _engine(_config(ctx))
    created = _run(engine, lambda: engine.create_stories(run_id, items))
    for story in created:
        typer.echo(f"{story.id}\t{story.story_id}\t{story.title}")


# ----------------------------------------------------------------------
# Reaper
@reaper_app.command("sweep")
def reaper_sweep(
    ctx: typer.Context,
    max_age_minutes: Optional[float] = typer.Option(
        None, "--max-age", help="Minutes after which a running step is abandoned"
    ),
) -> None:
    """Reclaim abandoned steps once."""
    engine = _engine(_config(ctx))
    reclaimed = _run(engine, lambda: engine.reap_abandoned(max_age_minutes))
    typer.echo(f"Reclaimed {reclaimed} steps")


@reaper_app.command("start")
def reaper_start(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Run the reaper until stopped or the lifespan expires."""
    config = _config(ctx)
    engine = _engine(config)
    reaper = Reaper(
        engine,
        interval_seconds=interval or config.reaper.interval_seconds,
        max_age_minutes=config.reaper.max_age_minutes,
    )
    typer.echo("Starting reaper")
    total = _run(engine, lambda: reaper.start(lifespan=lifespan))
    typer.echo(f"Reclaimed {total} steps")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

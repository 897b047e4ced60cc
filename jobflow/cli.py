"""Command line interface for managing jobs and their steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

import typer

from .config import JobflowConfig, load_config
from .controller import JobLifecycleController
from .errors import JobflowError, TransitionRejected
from .identity import StaticDirectory
from .models import Job
from .notify import Notifier
from .permissions import PermissionMatrix
from .persistence import get_repository
from .queries import (
    BOARD_COLUMNS,
    available_next_steps,
    board,
    current_step,
    effective_status,
    pending_actions,
    progress,
    stale_jobs,
    visible_jobs,
)
from .trail import narrate, recent_first, return_details
from .transports import BaseTransport, get_transport

T = TypeVar("T")

app = typer.Typer(help="CLI for jobflow job progress tracking")

# Command groups
job_app = typer.Typer(help="Commands for managing jobs")
step_app = typer.Typer(help="Commands acting on a single step")

app.add_typer(job_app, name="job")
app.add_typer(step_app, name="step")

ACTOR_HELP = "User to act as (defaults to directory.current_user)"


@dataclass
class Runtime:
    config: JobflowConfig
    directory: StaticDirectory
    controller: JobLifecycleController
    transport: BaseTransport

    @property
    def permissions(self) -> PermissionMatrix:
        return self.controller.engine.permissions

    def run(self, coro: Awaitable[T]) -> T:
        """Run ``coro`` and close the transport on the same event loop."""

        async def _main() -> T:
            try:
                return await coro
            finally:
                await self.transport.disconnect()

        try:
            return asyncio.run(_main())
        except TransitionRejected as exc:
            typer.secho(f"Rejected ({exc.code}): {exc.message}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        except JobflowError as exc:
            typer.secho(f"Error ({exc.code}): {exc.message}", fg=typer.colors.RED)
            raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config YAML"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """jobflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ctx.obj = config


def _runtime(ctx: typer.Context) -> Runtime:
    try:
        config = load_config(ctx.obj)
        directory = StaticDirectory(config.directory)
        transport = get_transport(config=config)
        controller = JobLifecycleController(
            get_repository(config=config),
            directory,
            notifier=Notifier(transport, directory),
            config=config.workflow,
        )
    except JobflowError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return Runtime(config, directory, controller, transport)


def _actor(rt: Runtime, actor: Optional[str]) -> str:
    if actor:
        return actor
    current = rt.directory.current_actor()
    if current is None:
        typer.secho(
            "No acting user: pass --as or set directory.current_user to a known user",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return current.id


def _parse_meta(items: Optional[List[str]]) -> Optional[Dict[str, Any]]:
    if not items:
        return None
    meta: Dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{item}'", param_hint="--meta")
        meta[key.strip()] = value.strip()
    return meta


def _day(value: Optional[datetime]):
    return value.date() if value else None


async def _step_id(rt: Runtime, job_id: str, ref: str) -> str:
    """Accept a step id or its 1-based position in the job."""
    if ref.isdigit():
        job = await rt.controller.get_job(job_id)
        position = int(ref)
        if 1 <= position <= len(job.steps):
            return job.steps[position - 1].id
    return ref


def _echo_summary(rt: Runtime, job: Job) -> None:
    step = current_step(job)
    where = f"{step.name} ({step.status.value})" if step else "-"
    typer.echo(f"{job.id}\t{job.status.value}\t{progress(job)}%\t{job.title}\t{where}")


def _echo_result(rt: Runtime, job: Job, verb: str) -> None:
    typer.secho(f"{verb}: {job.title} [{job.id}]", fg=typer.colors.GREEN)
    step = current_step(job)
    if step is not None:
        assignee = rt.directory.display_name(step.assignee_id) if step.assignee_id else "Unassigned"
        typer.echo(f"Current step: {step.name} ({step.status.value}) -> {assignee}")
    else:
        typer.echo(f"Status: {job.status.value}")


async def _with_step(rt: Runtime, job_id: str, step_ref: str, op, *args, **kwargs) -> Job:
    step_id = await _step_id(rt, job_id, step_ref)
    return await op(job_id, step_id, *args, **kwargs)


# ----------------------------------------------------------------------
# Job commands


@job_app.command("create")
def job_create(
    ctx: typer.Context,
    title: str,
    step: str = typer.Option(..., "--step", help="Name of the first step"),
    assignee: Optional[str] = typer.Option(None, "--assignee", help="Assignee of the first step"),
    project: Optional[str] = typer.Option(None, "--project"),
    meta: Optional[List[str]] = typer.Option(None, "--meta", help="key=value, repeatable"),
    description: Optional[str] = typer.Option(None, "--description"),
    due: Optional[datetime] = typer.Option(None, "--due", formats=["%Y-%m-%d"]),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """
    Create a job with its first step.

    Example:
        jobflow job create "Tower B facade" --step "JMS created" --assignee u2 --project p1
    """
    rt = _runtime(ctx)
    job = rt.run(
        rt.controller.create_job(
            _actor(rt, actor),
            title,
            step,
            assignee_id=assignee,
            project_id=project,
            metadata=_parse_meta(meta),
            description=description,
            due_date=_day(due),
        )
    )
    _echo_result(rt, job, "Created")


@job_app.command("list")
def job_list(
    ctx: typer.Context,
    month: Optional[str] = typer.Option(None, "--month", help="Only jobs created in YYYY-MM"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """List the jobs visible to the acting user."""
    rt = _runtime(ctx)
    jobs = visible_jobs(
        rt.run(rt.controller.list_jobs()),
        _actor(rt, actor),
        rt.directory,
        month=month,
        permissions=rt.permissions,
    )
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        _echo_summary(rt, job)


@job_app.command("show")
def job_show(
    ctx: typer.Context,
    job_id: str,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """
    Show a job with its steps, trail and the actions open to the acting user.

    Example:
        jobflow job show 3f6c... --as u2
    """
    rt = _runtime(ctx)
    job = rt.run(rt.controller.get_job(job_id))
    name = rt.directory.display_name
    typer.echo(f"Job {job.id}: {job.title} [{job.status.value}] {progress(job)}%")
    typer.echo(f"Created by {name(job.creator_id)} on {job.created_at:%Y-%m-%d %H:%M}")
    if job.project_id:
        typer.echo(f"Project: {job.project_id}")
    for key, value in job.metadata.items():
        typer.echo(f"{key}: {value}")

    for index, step in enumerate(job.steps):
        assignee = name(step.assignee_id) if step.assignee_id else "Unassigned"
        typer.echo(f"{index + 1}. {step.name}: {effective_status(job, index).value} -> {assignee}")
        details = return_details(step)
        if details:
            typer.secho(
                f"   Returned by {name(details.returned_by)} on {details.date:%Y-%m-%d}: {details.reason}",
                fg=typer.colors.YELLOW,
            )
        for entry in recent_first(step.comments):
            typer.echo(f"   [{entry.created_at:%Y-%m-%d %H:%M}] {narrate(entry, name)}")

    for entry in recent_first(job.comments):
        typer.echo(f"[{entry.created_at:%Y-%m-%d %H:%M}] {narrate(entry, name)}")

    step = current_step(job)
    if step is not None and (actor or rt.config.directory.current_user):
        allowed = rt.controller.allowed_transitions(job, step.id, _actor(rt, actor))
        typer.echo(f"Available actions: {', '.join(t.value for t in allowed) or 'none'}")
        if step.name != rt.config.workflow.terminal_step:
            options = available_next_steps(job, rt.config.workflow.step_catalogue)
            typer.echo(f"Next step options: {', '.join(options)}")


@job_app.command("board")
def job_board(
    ctx: typer.Context,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Show visible jobs grouped by board column."""
    rt = _runtime(ctx)
    jobs = visible_jobs(
        rt.run(rt.controller.list_jobs()), _actor(rt, actor), rt.directory, permissions=rt.permissions
    )
    columns = board(jobs)
    for column in BOARD_COLUMNS:
        typer.echo(f"{column.title()} ({len(columns[column])})")
        for job in columns[column]:
            typer.echo(f"  {job.id}\t{job.title}")


@job_app.command("pending")
def job_pending(
    ctx: typer.Context,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """List steps waiting for the acting user to acknowledge them."""
    rt = _runtime(ctx)
    actions = pending_actions(rt.run(rt.controller.list_jobs()), _actor(rt, actor))
    if not actions:
        typer.echo("Nothing pending")
        return
    for job, step in actions:
        typer.echo(f"{job.id}\t{job.title}\t{step.id}\t{step.name}")


@job_app.command("stale")
def job_stale(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", help="Idle threshold in days"),
) -> None:
    """List active jobs with no update for the configured number of days."""
    rt = _runtime(ctx)
    threshold = days if days is not None else rt.config.workflow.stale_after_days
    jobs = stale_jobs(rt.run(rt.controller.list_jobs()), days=threshold)
    if not jobs:
        typer.echo("No stale jobs")
        return
    for job in jobs:
        typer.echo(f"{job.id}\t{job.title}\tlast updated {job.last_updated:%Y-%m-%d %H:%M}")


@job_app.command("reopen")
def job_reopen(
    ctx: typer.Context,
    job_id: str,
    reason: str = typer.Option(..., "--reason"),
    step: str = typer.Option(..., "--step", help="Name of the new step"),
    assignee: str = typer.Option(..., "--assignee"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Reopen a completed job with a fresh step."""
    rt = _runtime(ctx)
    job = rt.run(rt.controller.reopen(job_id, _actor(rt, actor), reason, step, assignee))
    _echo_result(rt, job, "Reopened")


@job_app.command("update")
def job_update(
    ctx: typer.Context,
    job_id: str,
    title: Optional[str] = typer.Option(None, "--title"),
    project: Optional[str] = typer.Option(None, "--project"),
    meta: Optional[List[str]] = typer.Option(None, "--meta", help="key=value, repeatable"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Edit job title, project or metadata."""
    rt = _runtime(ctx)
    job = rt.run(
        rt.controller.update_job_details(
            job_id, _actor(rt, actor), title=title, project_id=project, metadata=_parse_meta(meta)
        )
    )
    _echo_result(rt, job, "Updated")


@job_app.command("comment")
def job_comment(
    ctx: typer.Context,
    job_id: str,
    text: str,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Add a comment to the job trail."""
    rt = _runtime(ctx)
    job = rt.run(rt.controller.add_job_comment(job_id, _actor(rt, actor), text))
    _echo_result(rt, job, "Commented")


@job_app.command("watch")
def job_watch(
    ctx: typer.Context,
    lifespan: Optional[float] = typer.Option(None, "--lifespan", help="Seconds to listen"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Print notifications for the acting user as they arrive."""
    rt = _runtime(ctx)
    user_id = _actor(rt, actor)

    async def _listen() -> None:
        async for message in rt.controller.notifier.listen(user_id, lifespan):
            typer.echo(f"[{message.created_at:%H:%M}] {message.message}")

    typer.echo(f"Listening for notifications to {rt.directory.display_name(user_id)}")
    rt.run(_listen())


# ----------------------------------------------------------------------
# Step commands
#
# STEP accepts a step id or the step's 1-based position in the job.


@step_app.command("assign")
def step_assign(
    ctx: typer.Context,
    job_id: str,
    step: str,
    assignee: str,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Assign an unassigned pending step."""
    rt = _runtime(ctx)
    job = rt.run(_with_step(rt, job_id, step, rt.controller.assign, _actor(rt, actor), assignee))
    _echo_result(rt, job, "Assigned")


@step_app.command("acknowledge")
def step_acknowledge(
    ctx: typer.Context,
    job_id: str,
    step: str,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Acknowledge a pending step."""
    rt = _runtime(ctx)
    job = rt.run(_with_step(rt, job_id, step, rt.controller.acknowledge, _actor(rt, actor)))
    _echo_result(rt, job, "Acknowledged")


@step_app.command("return")
def step_return(
    ctx: typer.Context,
    job_id: str,
    step: str,
    reason: str = typer.Option(..., "--reason"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Hand a step back: it becomes pending and unassigned."""
    rt = _runtime(ctx)
    job = rt.run(_with_step(rt, job_id, step, rt.controller.return_step, _actor(rt, actor), reason))
    _echo_result(rt, job, "Returned")


@step_app.command("reassign")
def step_reassign(
    ctx: typer.Context,
    job_id: str,
    step: str,
    new_assignee: str,
    comment: str = typer.Option(..., "--comment"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Move an acknowledged step to another user."""
    rt = _runtime(ctx)
    job = rt.run(
        _with_step(
            rt, job_id, step, rt.controller.reassign, _actor(rt, actor), new_assignee, comment
        )
    )
    _echo_result(rt, job, "Reassigned")


@step_app.command("complete")
def step_complete(
    ctx: typer.Context,
    job_id: str,
    step: str,
    next_step: str = typer.Option(..., "--next", help="Name of the step to append"),
    assignee: Optional[str] = typer.Option(None, "--assignee"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    description: Optional[str] = typer.Option(None, "--description"),
    due: Optional[datetime] = typer.Option(None, "--due", formats=["%Y-%m-%d"]),
    meta: Optional[List[str]] = typer.Option(None, "--meta", help="key=value, repeatable"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """
    Complete an acknowledged step and append the next one.

    Example:
        jobflow step complete 3f6c... 5 --next "JMS no created" --assignee u3 --meta jms_no=JMS-42
    """
    rt = _runtime(ctx)
    job = rt.run(
        _with_step(
            rt,
            job_id,
            step,
            rt.controller.complete_and_chain,
            _actor(rt, actor),
            next_step,
            next_assignee_id=assignee,
            notes=notes,
            description=description,
            due_date=_day(due),
            metadata=_parse_meta(meta),
        )
    )
    _echo_result(rt, job, "Completed")


@step_app.command("finalize")
def step_finalize(
    ctx: typer.Context,
    job_id: str,
    step: str,
    notes: Optional[str] = typer.Option(None, "--notes"),
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Complete the terminal step, closing the job."""
    rt = _runtime(ctx)
    job = rt.run(
        _with_step(rt, job_id, step, rt.controller.finalize, _actor(rt, actor), notes=notes)
    )
    _echo_result(rt, job, "Finalized")


@step_app.command("rename")
def step_rename(
    ctx: typer.Context,
    job_id: str,
    step: str,
    name: str,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Change a step's name."""
    rt = _runtime(ctx)
    job = rt.run(_with_step(rt, job_id, step, rt.controller.edit_step_name, _actor(rt, actor), name))
    _echo_result(rt, job, "Renamed")


@step_app.command("comment")
def step_comment(
    ctx: typer.Context,
    job_id: str,
    step: str,
    text: str,
    actor: Optional[str] = typer.Option(None, "--as", help=ACTOR_HELP),
) -> None:
    """Add a comment to a step's trail."""
    rt = _runtime(ctx)
    job = rt.run(_with_step(rt, job_id, step, rt.controller.add_step_comment, _actor(rt, actor), text))
    _echo_result(rt, job, "Commented")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

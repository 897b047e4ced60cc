"""Read-only projections over jobs for lists, boards and dashboards."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

from .config import WorkflowConfig
from .constants import DEFAULT_STALE_AFTER_DAYS
from .identity import IdentityDirectory
from .models import Job, JobStatus, Step, StepStatus
from .permissions import PermissionMatrix
from .trail import is_returned
from .utils.time import utcnow

BOARD_COLUMNS = ("completed", "returned", "acknowledged", "pending")


class PendingAction(NamedTuple):
    job: Job
    step: Step


def effective_status(job: Job, index: int) -> StepStatus:
    """Stored status, except Pending steps behind an open predecessor read as Not Started."""
    step = job.steps[index]
    if step.status == StepStatus.PENDING and not job.predecessor_done(index):
        return StepStatus.NOT_STARTED
    return step.status


def current_step(job: Job) -> Optional[Step]:
    """The step awaiting action, or ``None`` for completed jobs."""
    if job.status == JobStatus.COMPLETED:
        return None
    for index, step in enumerate(job.steps):
        if step.is_open and job.predecessor_done(index):
            return step
    return None


def progress(job: Job) -> int:
    """Completed steps as a whole percentage of all steps."""
    if not job.steps:
        return 0
    done = sum(1 for step in job.steps if step.is_completed)
    return round(done * 100 / len(job.steps))


def board_column(job: Job) -> str:
    if job.status == JobStatus.COMPLETED:
        return "completed"
    step = current_step(job)
    if step is None:
        return "pending"
    if is_returned(step):
        return "returned"
    if step.status == StepStatus.ACKNOWLEDGED:
        return "acknowledged"
    return "pending"


def board(jobs: Iterable[Job]) -> Dict[str, List[Job]]:
    """Group jobs into kanban columns; each job lands in exactly one."""
    columns: Dict[str, List[Job]] = {name: [] for name in BOARD_COLUMNS}
    for job in jobs:
        columns[board_column(job)].append(job)
    return columns


def pending_actions(jobs: Iterable[Job], user_id: str) -> List[PendingAction]:
    """Pending steps assigned to ``user_id`` on active jobs."""
    actions = []
    for job in jobs:
        if job.status != JobStatus.ACTIVE:
            continue
        for step in job.steps:
            if step.status == StepStatus.PENDING and step.assignee_id == user_id:
                actions.append(PendingAction(job, step))
    return actions


def stale_jobs(
    jobs: Iterable[Job],
    now: Optional[datetime] = None,
    days: int = DEFAULT_STALE_AFTER_DAYS,
) -> List[Job]:
    """Active jobs not touched for more than ``days`` days, oldest first."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    stale = [job for job in jobs if job.status == JobStatus.ACTIVE and job.last_updated < cutoff]
    return sorted(stale, key=lambda job: job.last_updated)


def visible_jobs(
    jobs: Iterable[Job],
    actor_id: str,
    directory: IdentityDirectory,
    month: Optional[str] = None,
    permissions: Optional[PermissionMatrix] = None,
) -> List[Job]:
    """Jobs ``actor_id`` may see, optionally limited to a ``YYYY-MM`` month.

    View-all roles see everything; others see jobs they created and jobs
    of projects they belong to.
    """
    permissions = permissions or PermissionMatrix.from_config(WorkflowConfig())
    actor = directory.get_actor(actor_id)
    if actor is None:
        return []
    see_all = permissions.can_view_all(actor.role)

    visible = []
    for job in jobs:
        if month and job.created_at.strftime("%Y-%m") != month:
            continue
        if (
            see_all
            or job.creator_id == actor_id
            or (job.project_id and directory.is_project_member(actor_id, job.project_id))
        ):
            visible.append(job)
    return sorted(visible, key=lambda job: job.created_at, reverse=True)


def available_next_steps(job: Job, catalogue: Sequence[str]) -> List[str]:
    """Catalogue names not yet used by a completed step, in catalogue order."""
    used = {step.name for step in job.steps if step.is_completed}
    return [name for name in catalogue if name not in used]

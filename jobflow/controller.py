"""Job lifecycle controller.

Coordinates the identity directory, the transition engine, the workflow
store and notifications.  Every write runs the engine inside
:meth:`WorkflowRepository.apply_job_mutation`, so the decision is made
against exactly the state being replaced.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .config import WorkflowConfig
from .contracts import (
    ActorContext,
    Mutation,
    Rejection,
    RejectionReason,
    Transition,
    TransitionRequest,
)
from .engine import TransitionEngine
from .errors import JobNotFoundError, TransitionRejected
from .identity import IdentityDirectory
from .models import Job, new_id
from .notify import Notifier
from .persistence.repository import WorkflowRepository
from .utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


class JobLifecycleController:
    """Async entry points for every job and step operation."""

    def __init__(
        self,
        repository: WorkflowRepository,
        directory: IdentityDirectory,
        engine: Optional[TransitionEngine] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.engine = engine or TransitionEngine(config or WorkflowConfig(), clock=clock)
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Identity
    def actor_context(self, actor_id: str, job: Optional[Job] = None) -> Optional[ActorContext]:
        """Resolve the facts the engine needs about ``actor_id``."""
        actor = self.directory.get_actor(actor_id)
        if actor is None:
            return None
        member = bool(
            job is not None
            and job.project_id
            and self.directory.is_project_member(actor_id, job.project_id)
        )
        return ActorContext(
            actor_id=actor.id,
            role=actor.role,
            is_project_member=member,
            can_create_jobs=self.directory.has_permission(
                actor.role, self.engine.config.create_permission
            ),
        )

    def _decide(self, job: Optional[Job], request: TransitionRequest) -> Mutation:
        actor = self.actor_context(request.actor_id, job)
        if actor is None:
            raise TransitionRejected(
                Rejection(
                    reason=RejectionReason.NOT_AUTHORIZED,
                    message=f"Unknown user {request.actor_id}.",
                )
            )
        decision = self.engine.decide(job, request, actor)
        if isinstance(decision, Rejection):
            raise TransitionRejected(decision)
        unknown = self._unknown_assignee(job, decision.job)
        if unknown is not None:
            raise TransitionRejected(
                Rejection(
                    reason=RejectionReason.INVALID_PAYLOAD,
                    message=f"Unknown assignee {unknown}.",
                )
            )
        return decision

    def _unknown_assignee(self, before: Optional[Job], after: Job) -> Optional[str]:
        """Return a newly set assignee the directory cannot resolve."""
        previous = {step.id: step.assignee_id for step in before.steps} if before else {}
        for step in after.steps:
            assignee = step.assignee_id
            if assignee and assignee != previous.get(step.id):
                if self.directory.get_actor(assignee) is None:
                    return assignee
        return None

    # ------------------------------------------------------------------
    # Generic entry point
    async def submit(self, request: TransitionRequest) -> Job:
        """Apply ``request`` and return the stored job.

        Raises :class:`TransitionRejected` when the engine refuses it.
        """
        try:
            if request.transition == Transition.CREATE:
                mutation = self._decide(None, request)
                await self.repository.create_job(mutation.job)
                job = mutation.job
            else:
                applied: List[Mutation] = []

                def mutate(current: Job) -> Job:
                    decision = self._decide(current, request)
                    applied.append(decision)
                    return decision.job

                job = await self.repository.apply_job_mutation(request.job_id, mutate)
                mutation = applied[-1]
        except JobNotFoundError as exc:
            logger.info(f"Rejected {request.transition.value}: job {request.job_id} not found")
            raise TransitionRejected(
                Rejection(reason=RejectionReason.NOT_FOUND, message=str(exc))
            ) from exc
        except TransitionRejected as exc:
            logger.info(
                f"Rejected {request.transition.value} on job={request.job_id} "
                f"step={request.step_id} by {request.actor_id}: {exc.code} {exc.message}"
            )
            raise

        logger.info(
            f"Applied {request.transition.value} on job={job.id} "
            f"step={request.step_id} by {request.actor_id}"
        )
        if self.notifier and mutation.notify:
            await self.notifier.notify(mutation, request.actor_id, request.step_id)
        return job

    def _request(
        self,
        transition: Transition,
        job_id: str,
        actor_id: str,
        step_id: Optional[str] = None,
        **payload: Any,
    ) -> TransitionRequest:
        return TransitionRequest(
            job_id=job_id,
            actor_id=actor_id,
            transition=transition,
            step_id=step_id,
            payload={k: v for k, v in payload.items() if v is not None},
        )

    # ------------------------------------------------------------------
    # Job operations
    async def create_job(
        self,
        actor_id: str,
        title: str,
        step_name: str,
        assignee_id: Optional[str] = None,
        project_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        due_date: Optional[date] = None,
    ) -> Job:
        initial_step = {
            "name": step_name,
            "assignee_id": assignee_id,
            "description": description,
            "due_date": due_date,
        }
        return await self.submit(
            self._request(
                Transition.CREATE,
                new_id(),
                actor_id,
                title=title,
                project_id=project_id,
                metadata=metadata,
                initial_step=initial_step,
            )
        )

    async def reopen(
        self, job_id: str, actor_id: str, reason: str, new_step_name: str, new_step_assignee_id: str
    ) -> Job:
        return await self.submit(
            self._request(
                Transition.REOPEN,
                job_id,
                actor_id,
                reason=reason,
                new_step_name=new_step_name,
                new_step_assignee_id=new_step_assignee_id,
            )
        )

    async def update_job_details(
        self,
        job_id: str,
        actor_id: str,
        title: Optional[str] = None,
        project_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Job:
        return await self.submit(
            self._request(
                Transition.UPDATE_JOB,
                job_id,
                actor_id,
                title=title,
                project_id=project_id,
                metadata=metadata,
            )
        )

    async def add_job_comment(self, job_id: str, actor_id: str, text: str) -> Job:
        return await self.submit(self._request(Transition.COMMENT, job_id, actor_id, text=text))

    # ------------------------------------------------------------------
    # Step operations
    async def assign(self, job_id: str, step_id: str, actor_id: str, assignee_id: str) -> Job:
        return await self.submit(
            self._request(Transition.ASSIGN, job_id, actor_id, step_id, assignee_id=assignee_id)
        )

    async def acknowledge(self, job_id: str, step_id: str, actor_id: str) -> Job:
        return await self.submit(self._request(Transition.ACKNOWLEDGE, job_id, actor_id, step_id))

    async def return_step(self, job_id: str, step_id: str, actor_id: str, reason: str) -> Job:
        return await self.submit(
            self._request(Transition.RETURN, job_id, actor_id, step_id, reason=reason)
        )

    async def reassign(
        self, job_id: str, step_id: str, actor_id: str, new_assignee_id: str, comment: str
    ) -> Job:
        return await self.submit(
            self._request(
                Transition.REASSIGN,
                job_id,
                actor_id,
                step_id,
                new_assignee_id=new_assignee_id,
                comment=comment,
            )
        )

    async def complete_and_chain(
        self,
        job_id: str,
        step_id: str,
        actor_id: str,
        next_step_name: str,
        next_assignee_id: Optional[str] = None,
        notes: Optional[str] = None,
        description: Optional[str] = None,
        due_date: Optional[date] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Job:
        next_step = {
            "name": next_step_name,
            "assignee_id": next_assignee_id,
            "description": description,
            "due_date": due_date,
        }
        return await self.submit(
            self._request(
                Transition.COMPLETE,
                job_id,
                actor_id,
                step_id,
                next_step=next_step,
                notes=notes,
                metadata=metadata,
            )
        )

    async def finalize(
        self, job_id: str, step_id: str, actor_id: str, notes: Optional[str] = None
    ) -> Job:
        return await self.submit(
            self._request(Transition.FINALIZE, job_id, actor_id, step_id, notes=notes)
        )

    async def edit_step_name(self, job_id: str, step_id: str, actor_id: str, name: str) -> Job:
        return await self.submit(
            self._request(Transition.EDIT_STEP_NAME, job_id, actor_id, step_id, name=name)
        )

    async def add_step_comment(self, job_id: str, step_id: str, actor_id: str, text: str) -> Job:
        return await self.submit(
            self._request(Transition.COMMENT, job_id, actor_id, step_id, text=text)
        )

    # ------------------------------------------------------------------
    # Reads
    async def get_job(self, job_id: str) -> Job:
        job = await self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self) -> List[Job]:
        return await self.repository.list_jobs()

    def allowed_transitions(self, job: Job, step_id: str, actor_id: str) -> List[Transition]:
        actor = self.actor_context(actor_id, job)
        return self.engine.allowed_transitions(job, step_id, actor) if actor else []

"""Step transition engine.

Pure decision logic for the job step machine.  Given the current job, an
actor context and a :class:`~jobflow.contracts.TransitionRequest`, the engine
returns either a :class:`~jobflow.contracts.Mutation` holding the updated job
or a :class:`~jobflow.contracts.Rejection` with a typed reason.  It never
touches storage and never raises for business-rule violations.

Checks run in a fixed order and the first failure wins:

1. job state (``AlreadyTerminal``, or ``JobNotCompleted`` for reopen)
2. step lookup (``NotFound``)
3. authorization (``NotAuthorized``)
4. predecessor gate (``PredecessorIncomplete``)
5. step status (``AlreadyInState``)
6. payload content (``InvalidPayload``)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .config import WorkflowConfig
from .contracts import (
    PAYLOAD_MODELS,
    ActorContext,
    AssignPayload,
    CommentPayload,
    CompletePayload,
    CreateJobPayload,
    Decision,
    EditStepNamePayload,
    FinalizePayload,
    Mutation,
    ReassignPayload,
    Rejection,
    RejectionReason,
    ReopenPayload,
    ReturnPayload,
    Transition,
    TransitionRequest,
    UpdateJobPayload,
)
from .models import Job, JobStatus, Step, StepStatus
from .permissions import PermissionMatrix
from .trail import EventKind, HumanComment, SystemEvent
from .utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

STEP_TRANSITIONS = (
    Transition.ASSIGN,
    Transition.ACKNOWLEDGE,
    Transition.RETURN,
    Transition.REASSIGN,
    Transition.COMPLETE,
    Transition.FINALIZE,
    Transition.EDIT_STEP_NAME,
)


def _reject(reason: RejectionReason, message: str) -> Rejection:
    return Rejection(reason=reason, message=message)


def _text(value: Optional[str]) -> str:
    return (value or "").strip()


class TransitionEngine:
    """Stateless decision function for job and step transitions."""

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        permissions: Optional[PermissionMatrix] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or WorkflowConfig()
        self.permissions = permissions or PermissionMatrix.from_config(self.config)
        self._clock = clock
        self._checks: Dict[Transition, Callable[[Job, int, Step, ActorContext], Optional[Rejection]]] = {
            Transition.ASSIGN: self._check_assign,
            Transition.ACKNOWLEDGE: self._check_acknowledge,
            Transition.RETURN: self._check_return,
            Transition.REASSIGN: self._check_reassign,
            Transition.COMPLETE: self._check_complete,
            Transition.FINALIZE: self._check_finalize,
            Transition.EDIT_STEP_NAME: self._check_edit_step_name,
        }
        self._effects: Dict[Transition, Callable[..., Decision]] = {
            Transition.ASSIGN: self._assign,
            Transition.ACKNOWLEDGE: self._acknowledge,
            Transition.RETURN: self._return,
            Transition.REASSIGN: self._reassign,
            Transition.COMPLETE: self._complete,
            Transition.FINALIZE: self._finalize,
            Transition.EDIT_STEP_NAME: self._edit_step_name,
        }

    # ------------------------------------------------------------------
    # Public API
    def decide(
        self, job: Optional[Job], request: TransitionRequest, actor: ActorContext
    ) -> Decision:
        """Return the mutation for ``request`` or the reason it is refused."""
        if request.transition == Transition.CREATE:
            decision = self._create(request, actor)
        elif job is None:
            decision = _reject(RejectionReason.NOT_FOUND, f"Job {request.job_id} not found.")
        elif request.transition == Transition.REOPEN:
            decision = self._reopen(job, request, actor)
        elif request.transition == Transition.UPDATE_JOB:
            decision = self._update_job(job, request, actor)
        elif request.transition == Transition.COMMENT:
            decision = self._comment(job, request, actor)
        else:
            decision = self._step_transition(job, request, actor)

        if isinstance(decision, Rejection):
            logger.debug(
                f"Rejected {request.transition.value} on job={request.job_id} "
                f"step={request.step_id} actor={actor.actor_id}: {decision.reason.value}"
            )
        return decision

    def allowed_transitions(
        self, job: Job, step_id: str, actor: ActorContext
    ) -> List[Transition]:
        """Step transitions whose non-payload preconditions hold for ``actor``."""
        located = self._locate(job, step_id)
        if isinstance(located, Rejection):
            return []
        index, step = located
        return [
            transition
            for transition in STEP_TRANSITIONS
            if self._checks[transition](job, index, step, actor) is None
        ]

    # ------------------------------------------------------------------
    # Predicates
    def is_assignee(self, step: Step, actor: ActorContext) -> bool:
        return step.assignee_id is not None and step.assignee_id == actor.actor_id

    def is_privileged(self, actor: ActorContext, transition: Transition) -> bool:
        return self.permissions.is_privileged(actor.role, transition)

    def is_creator(self, job: Job, actor: ActorContext) -> bool:
        return job.creator_id == actor.actor_id

    def is_eligible_unassigned(self, step: Step, actor: ActorContext) -> bool:
        """Unassigned hand-off steps may be worked by project members or listed roles."""
        if step.assignee_id is not None or not self.permissions.is_unassigned_eligible(step.name):
            return False
        return actor.is_project_member or actor.role in self.permissions.unassigned_roles(step.name)

    def can_work(self, step: Step, actor: ActorContext) -> bool:
        return self.is_assignee(step, actor) or self.is_eligible_unassigned(step, actor)

    # ------------------------------------------------------------------
    # Shared helpers
    def _locate(self, job: Job, step_id: Optional[str]) -> Union[tuple[int, Step], Rejection]:
        if job.status == JobStatus.COMPLETED:
            return _reject(RejectionReason.ALREADY_TERMINAL, "Job is already completed.")
        index = job.step_index(step_id) if step_id else None
        if index is None:
            return _reject(RejectionReason.NOT_FOUND, f"Step {step_id} not found in job {job.id}.")
        return index, job.steps[index]

    @staticmethod
    def _parse(model: Type[PayloadT], payload: Dict[str, Any]) -> Union[PayloadT, Rejection]:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in exc.errors()
            )
            return _reject(RejectionReason.INVALID_PAYLOAD, f"Invalid payload: {details}")

    def _check_reason(self, value: str, label: str) -> Optional[Rejection]:
        minimum = self.config.min_reason_length
        if len(_text(value)) < minimum:
            return _reject(
                RejectionReason.INVALID_PAYLOAD,
                f"{label} must be at least {minimum} characters.",
            )
        return None

    @staticmethod
    def _gate(job: Job, index: int) -> Optional[Rejection]:
        if not job.predecessor_done(index):
            return _reject(
                RejectionReason.PREDECESSOR_INCOMPLETE,
                f"Step '{job.steps[index - 1].name}' must be completed first.",
            )
        return None

    @staticmethod
    def _status_is(step: Step, *allowed: StepStatus) -> Optional[Rejection]:
        if step.status not in allowed:
            expected = " or ".join(s.value for s in allowed)
            return _reject(
                RejectionReason.ALREADY_IN_STATE,
                f"Step '{step.name}' is {step.status.value}; expected {expected}.",
            )
        return None

    def _event(self, actor: ActorContext, kind: EventKind, **payload: Any) -> SystemEvent:
        return SystemEvent(
            author_id=actor.actor_id, event=kind, payload=payload, created_at=self._clock()
        )

    def _remark(self, actor: ActorContext, text: str) -> HumanComment:
        return HumanComment(author_id=actor.actor_id, text=text, created_at=self._clock())

    def _mutation(
        self,
        transition: Transition,
        job: Job,
        entries: List[Union[HumanComment, SystemEvent]],
        notify: Optional[List[Optional[str]]] = None,
    ) -> Mutation:
        job.last_updated = self._clock()
        recipients: List[str] = []
        for user_id in notify or []:
            if user_id and user_id not in recipients:
                recipients.append(user_id)
        return Mutation(transition=transition, job=job, entries=entries, notify=recipients)

    def _step_transition(
        self, job: Job, request: TransitionRequest, actor: ActorContext
    ) -> Decision:
        located = self._locate(job, request.step_id)
        if isinstance(located, Rejection):
            return located
        index, step = located

        rejection = self._checks[request.transition](job, index, step, actor)
        if rejection is not None:
            return rejection

        model = PAYLOAD_MODELS.get(request.transition)
        payload = self._parse(model, request.payload) if model else None
        if isinstance(payload, Rejection):
            return payload

        work = job.model_copy(deep=True)
        return self._effects[request.transition](work, work.steps[index], actor, payload)

    # ------------------------------------------------------------------
    # Preconditions (authorization, gate, status)
    def _check_assign(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        if not (self.is_creator(job, actor) or self.is_privileged(actor, Transition.ASSIGN)):
            return _reject(RejectionReason.NOT_AUTHORIZED, "Only the job creator or a coordinator can assign steps.")
        if step.assignee_id is not None:
            return _reject(RejectionReason.ALREADY_IN_STATE, f"Step '{step.name}' is already assigned.")
        return self._status_is(step, StepStatus.PENDING)

    def _check_acknowledge(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        if not self.can_work(step, actor):
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not assigned to this step.")
        return self._gate(job, index) or self._status_is(step, StepStatus.PENDING)

    def _check_return(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        if not self.is_assignee(step, actor):
            return _reject(RejectionReason.NOT_AUTHORIZED, "Only the current assignee can return a step.")
        return self._status_is(step, StepStatus.PENDING, StepStatus.ACKNOWLEDGED)

    def _check_reassign(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        if not (self.is_privileged(actor, Transition.REASSIGN) or self.is_assignee(step, actor)):
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not allowed to reassign this step.")
        return self._status_is(step, StepStatus.ACKNOWLEDGED)

    def _check_complete(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        if not self.can_work(step, actor):
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not assigned to this step.")
        rejection = self._gate(job, index) or self._status_is(step, StepStatus.ACKNOWLEDGED)
        if rejection is None and step.name == self.config.terminal_step:
            return _reject(
                RejectionReason.INVALID_PAYLOAD,
                f"'{step.name}' is the final step; finalize the job instead.",
            )
        return rejection

    def _check_finalize(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        allowed = (
            self.is_creator(job, actor)
            or self.is_privileged(actor, Transition.FINALIZE)
            or self.can_work(step, actor)
        )
        if not allowed:
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not allowed to finalize this job.")
        rejection = self._gate(job, index) or self._status_is(step, StepStatus.ACKNOWLEDGED)
        if rejection is None and step.name != self.config.terminal_step:
            return _reject(
                RejectionReason.INVALID_PAYLOAD,
                f"Only the '{self.config.terminal_step}' step can finalize the job.",
            )
        return rejection

    def _check_edit_step_name(self, job: Job, index: int, step: Step, actor: ActorContext) -> Optional[Rejection]:
        allowed = (
            self.is_creator(job, actor)
            or self.is_privileged(actor, Transition.EDIT_STEP_NAME)
            or self.is_assignee(step, actor)
        )
        if not allowed:
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not allowed to rename this step.")
        return None

    # ------------------------------------------------------------------
    # Step effects
    def _assign(self, job: Job, step: Step, actor: ActorContext, payload: AssignPayload) -> Decision:
        assignee = _text(payload.assignee_id)
        if not assignee:
            return _reject(RejectionReason.INVALID_PAYLOAD, "An assignee is required.")
        step.assignee_id = assignee
        event = self._event(actor, EventKind.ASSIGNED, assignee_id=assignee)
        step.comments.append(event)
        return self._mutation(Transition.ASSIGN, job, [event], [assignee])

    def _acknowledge(self, job: Job, step: Step, actor: ActorContext, payload: None) -> Decision:
        step.status = StepStatus.ACKNOWLEDGED
        if step.acknowledged_at is None:
            step.acknowledged_at = self._clock()
        event = self._event(actor, EventKind.ACKNOWLEDGED)
        step.comments.append(event)
        return self._mutation(Transition.ACKNOWLEDGE, job, [event])

    def _return(self, job: Job, step: Step, actor: ActorContext, payload: ReturnPayload) -> Decision:
        rejection = self._check_reason(payload.reason, "Reason")
        if rejection:
            return rejection
        previous = step.status
        step.status = StepStatus.PENDING
        step.assignee_id = None
        event = self._event(
            actor, EventKind.RETURNED, reason=_text(payload.reason), previous_status=previous.value
        )
        step.comments.append(event)
        notify = [job.creator_id] if job.creator_id != actor.actor_id else []
        return self._mutation(Transition.RETURN, job, [event], notify)

    def _reassign(self, job: Job, step: Step, actor: ActorContext, payload: ReassignPayload) -> Decision:
        new_assignee = _text(payload.new_assignee_id)
        if not new_assignee:
            return _reject(RejectionReason.INVALID_PAYLOAD, "Please select a new assignee.")
        rejection = self._check_reason(payload.comment, "Comment")
        if rejection:
            return rejection
        if new_assignee == step.assignee_id:
            return _reject(RejectionReason.ALREADY_IN_STATE, "Step is already assigned to that user.")
        previous = step.assignee_id
        step.assignee_id = new_assignee
        event = self._event(
            actor,
            EventKind.REASSIGNED,
            previous_assignee_id=previous,
            new_assignee_id=new_assignee,
            comment=_text(payload.comment),
        )
        step.comments.append(event)
        return self._mutation(Transition.REASSIGN, job, [event], [new_assignee])

    def _complete(self, job: Job, step: Step, actor: ActorContext, payload: CompletePayload) -> Decision:
        next_step = payload.next_step
        name = _text(next_step.name)
        if not name:
            return _reject(RejectionReason.INVALID_PAYLOAD, "Step name is required.")
        assignee = _text(next_step.assignee_id) or None
        if assignee is None and not self.permissions.is_unassigned_eligible(name):
            return _reject(RejectionReason.INVALID_PAYLOAD, "Assignee is required for this step.")
        missing = [
            key for key in self.config.required_metadata.get(name, []) if not payload.metadata.get(key)
        ]
        if missing:
            return _reject(
                RejectionReason.INVALID_PAYLOAD,
                f"'{name}' requires: {', '.join(missing)}.",
            )

        entries: List[Union[HumanComment, SystemEvent]] = []
        self._close_step(step, actor)
        if _text(payload.notes):
            remark = self._remark(actor, _text(payload.notes))
            step.comments.append(remark)
            entries.append(remark)
        event = self._event(
            actor, EventKind.COMPLETED, next_step_name=name, next_assignee_id=assignee
        )
        step.comments.append(event)
        entries.append(event)

        job.metadata.update(payload.metadata)
        job.steps.append(
            Step(
                name=name,
                assignee_id=assignee,
                description=_text(next_step.description) or None,
                due_date=next_step.due_date,
            )
        )
        return self._mutation(Transition.COMPLETE, job, entries, [assignee])

    def _finalize(self, job: Job, step: Step, actor: ActorContext, payload: FinalizePayload) -> Decision:
        entries: List[Union[HumanComment, SystemEvent]] = []
        self._close_step(step, actor)
        if _text(payload.notes):
            remark = self._remark(actor, _text(payload.notes))
            step.comments.append(remark)
            entries.append(remark)
        event = self._event(actor, EventKind.FINALIZED)
        step.comments.append(event)
        entries.append(event)
        job.status = JobStatus.COMPLETED
        notify = [job.creator_id] if job.creator_id != actor.actor_id else []
        return self._mutation(Transition.FINALIZE, job, entries, notify)

    def _edit_step_name(
        self, job: Job, step: Step, actor: ActorContext, payload: EditStepNamePayload
    ) -> Decision:
        name = _text(payload.name)
        if not name:
            return _reject(RejectionReason.INVALID_PAYLOAD, "Step name cannot be empty.")
        if name == step.name:
            return _reject(RejectionReason.ALREADY_IN_STATE, "Step already has that name.")
        event = self._event(actor, EventKind.RENAMED, old_name=step.name, new_name=name)
        step.name = name
        step.comments.append(event)
        return self._mutation(Transition.EDIT_STEP_NAME, job, [event])

    def _close_step(self, step: Step, actor: ActorContext) -> None:
        step.status = StepStatus.COMPLETED
        step.completed_at = self._clock()
        step.completed_by = actor.actor_id

    # ------------------------------------------------------------------
    # Job-level transitions
    def _create(self, request: TransitionRequest, actor: ActorContext) -> Decision:
        if not actor.can_create_jobs:
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not allowed to create jobs.")
        payload = self._parse(CreateJobPayload, request.payload)
        if isinstance(payload, Rejection):
            return payload
        title = _text(payload.title)
        if len(title) < self.config.min_title_length:
            return _reject(
                RejectionReason.INVALID_PAYLOAD,
                f"Job title must be at least {self.config.min_title_length} characters.",
            )
        first = payload.initial_step
        name = _text(first.name)
        assignee = _text(first.assignee_id) or None
        if not name:
            return _reject(RejectionReason.INVALID_PAYLOAD, "Step name is required.")
        if assignee is None and not self.permissions.is_unassigned_eligible(name):
            return _reject(RejectionReason.INVALID_PAYLOAD, "Assignee is required.")

        now = self._clock()
        job = Job(
            id=request.job_id,
            title=title,
            creator_id=actor.actor_id,
            project_id=payload.project_id,
            metadata=dict(payload.metadata),
            created_at=now,
            last_updated=now,
            steps=[
                Step(
                    name=name,
                    assignee_id=assignee,
                    description=_text(first.description) or None,
                    due_date=first.due_date,
                )
            ],
        )
        event = self._event(actor, EventKind.CREATED, step_name=name, assignee_id=assignee)
        job.comments.append(event)
        return self._mutation(Transition.CREATE, job, [event], [assignee])

    def _reopen(self, job: Job, request: TransitionRequest, actor: ActorContext) -> Decision:
        if job.status != JobStatus.COMPLETED:
            return _reject(RejectionReason.JOB_NOT_COMPLETED, "Only completed jobs can be reopened.")
        if not (self.is_creator(job, actor) or self.is_privileged(actor, Transition.REOPEN)):
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not allowed to reopen this job.")
        payload = self._parse(ReopenPayload, request.payload)
        if isinstance(payload, Rejection):
            return payload
        rejection = self._check_reason(payload.reason, "Reason")
        if rejection:
            return rejection
        name = _text(payload.new_step_name)
        assignee = _text(payload.new_step_assignee_id)
        if not name:
            return _reject(RejectionReason.INVALID_PAYLOAD, "A name for the new step is required.")
        if not assignee:
            return _reject(RejectionReason.INVALID_PAYLOAD, "An assignee for the new step is required.")

        work = job.model_copy(deep=True)
        work.status = JobStatus.ACTIVE
        work.steps.append(Step(name=name, assignee_id=assignee))
        event = self._event(
            actor,
            EventKind.REOPENED,
            reason=_text(payload.reason),
            step_name=name,
            assignee_id=assignee,
        )
        work.comments.append(event)
        return self._mutation(Transition.REOPEN, work, [event], [assignee])

    def _update_job(self, job: Job, request: TransitionRequest, actor: ActorContext) -> Decision:
        if job.status == JobStatus.COMPLETED:
            return _reject(RejectionReason.ALREADY_TERMINAL, "Job is already completed.")
        if not (self.is_creator(job, actor) or self.is_privileged(actor, Transition.UPDATE_JOB)):
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not allowed to edit this job.")
        payload = self._parse(UpdateJobPayload, request.payload)
        if isinstance(payload, Rejection):
            return payload

        work = job.model_copy(deep=True)
        changed: List[str] = []
        if payload.title is not None:
            title = _text(payload.title)
            if len(title) < self.config.min_title_length:
                return _reject(
                    RejectionReason.INVALID_PAYLOAD,
                    f"Job title must be at least {self.config.min_title_length} characters.",
                )
            if title != work.title:
                work.title = title
                changed.append("title")
        if payload.project_id is not None and payload.project_id != work.project_id:
            work.project_id = payload.project_id or None
            changed.append("project_id")
        for key, value in (payload.metadata or {}).items():
            if value is None:
                if key in work.metadata:
                    del work.metadata[key]
                    changed.append(key)
            elif work.metadata.get(key) != value:
                work.metadata[key] = value
                changed.append(key)
        if not changed:
            return _reject(RejectionReason.ALREADY_IN_STATE, "No job details changed.")

        event = self._event(actor, EventKind.JOB_UPDATED, fields=changed)
        work.comments.append(event)
        return self._mutation(Transition.UPDATE_JOB, work, [event])

    def _comment(self, job: Job, request: TransitionRequest, actor: ActorContext) -> Decision:
        if job.status == JobStatus.COMPLETED:
            return _reject(RejectionReason.ALREADY_TERMINAL, "Job is already completed.")
        index: Optional[int] = None
        if request.step_id is not None:
            index = job.step_index(request.step_id)
            if index is None:
                return _reject(
                    RejectionReason.NOT_FOUND,
                    f"Step {request.step_id} not found in job {job.id}.",
                )
        participant = (
            self.is_creator(job, actor)
            or actor.is_project_member
            or self.is_privileged(actor, Transition.COMMENT)
            or any(s.assignee_id == actor.actor_id for s in job.steps)
        )
        if not participant:
            return _reject(RejectionReason.NOT_AUTHORIZED, "You are not a participant in this job.")
        payload = self._parse(CommentPayload, request.payload)
        if isinstance(payload, Rejection):
            return payload
        text = _text(payload.text)
        if not text:
            return _reject(RejectionReason.INVALID_PAYLOAD, "Comment cannot be empty.")

        work = job.model_copy(deep=True)
        remark = self._remark(actor, text)
        target = work.steps[index].comments if index is not None else work.comments
        target.append(remark)
        return self._mutation(Transition.COMMENT, work, [remark])

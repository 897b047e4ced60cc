"""Request, payload and decision contracts exchanged with the engine."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .models import Job, new_id
from .trail import HumanComment, SystemEvent
from .utils.time import utcnow


class Transition(str, Enum):
    CREATE = "create"
    ASSIGN = "assign"
    ACKNOWLEDGE = "acknowledge"
    RETURN = "return"
    REASSIGN = "reassign"
    COMPLETE = "complete"
    FINALIZE = "finalize"
    REOPEN = "reopen"
    EDIT_STEP_NAME = "edit_step_name"
    UPDATE_JOB = "update_job"
    COMMENT = "comment"


class RejectionReason(str, Enum):
    NOT_AUTHORIZED = "NotAuthorized"
    PREDECESSOR_INCOMPLETE = "PredecessorIncomplete"
    INVALID_PAYLOAD = "InvalidPayload"
    ALREADY_IN_STATE = "AlreadyInState"
    ALREADY_TERMINAL = "AlreadyTerminal"
    JOB_NOT_COMPLETED = "JobNotCompleted"
    NOT_FOUND = "NotFound"


# ----------------------------------------------------------------------
# Payloads


class AssignPayload(BaseModel):
    assignee_id: str


class ReturnPayload(BaseModel):
    reason: str


class ReassignPayload(BaseModel):
    new_assignee_id: str
    comment: str


class NextStep(BaseModel):
    """Descriptor for the step appended by complete-and-chain."""

    name: str
    assignee_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None


class CompletePayload(BaseModel):
    next_step: NextStep
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FinalizePayload(BaseModel):
    notes: Optional[str] = None


class ReopenPayload(BaseModel):
    reason: str
    new_step_name: str
    new_step_assignee_id: str


class EditStepNamePayload(BaseModel):
    name: str


class UpdateJobPayload(BaseModel):
    title: Optional[str] = None
    project_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class CommentPayload(BaseModel):
    text: str


class CreateJobPayload(BaseModel):
    title: str
    project_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    initial_step: NextStep


PAYLOAD_MODELS: Dict[Transition, type[BaseModel]] = {
    Transition.CREATE: CreateJobPayload,
    Transition.ASSIGN: AssignPayload,
    Transition.RETURN: ReturnPayload,
    Transition.REASSIGN: ReassignPayload,
    Transition.COMPLETE: CompletePayload,
    Transition.FINALIZE: FinalizePayload,
    Transition.REOPEN: ReopenPayload,
    Transition.EDIT_STEP_NAME: EditStepNamePayload,
    Transition.UPDATE_JOB: UpdateJobPayload,
    Transition.COMMENT: CommentPayload,
}


# ----------------------------------------------------------------------
# Requests and decisions


class TransitionRequest(BaseModel):
    """Ephemeral request submitted to the controller; never persisted.

    ``step_id`` is omitted for job-level operations (reopen, job details,
    job comments).
    """

    job_id: str
    actor_id: str
    transition: Transition
    step_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ActorContext(BaseModel):
    """Identity facts the engine needs, resolved before it is called."""

    actor_id: str
    role: str
    is_project_member: bool = False
    can_create_jobs: bool = False


class Rejection(BaseModel):
    reason: RejectionReason
    message: str


class Mutation(BaseModel):
    """Authorized outcome: the job to write and what it appended."""

    transition: Transition
    job: Job
    entries: List[Union[HumanComment, SystemEvent]] = Field(default_factory=list)
    notify: List[str] = Field(default_factory=list)


Decision = Union[Mutation, Rejection]


# ----------------------------------------------------------------------
# Notifications


class JobNotification(BaseModel):
    """Message published to a user after a transition touches them."""

    notification_id: str = Field(default_factory=new_id)
    recipient_id: str
    job_id: str
    job_title: str
    step_name: Optional[str] = None
    transition: Transition
    actor_id: str
    message: str
    created_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobNotification":
        return cls.model_validate_json(data)

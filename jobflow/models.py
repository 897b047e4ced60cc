"""Job and Step aggregates persisted by the workflow store."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .trail import Comment
from .utils.time import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"


class StepStatus(str, Enum):
    NOT_STARTED = "Not Started"  # derived from position, never stored
    PENDING = "Pending"
    ACKNOWLEDGED = "Acknowledged"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"


class Step(BaseModel):
    """One ordered stage of a job."""

    id: str = Field(default_factory=new_id)
    name: str
    assignee_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    status: StepStatus = StepStatus.PENDING
    acknowledged_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    comments: List[Comment] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def _not_derived(cls, v: StepStatus) -> StepStatus:
        if v == StepStatus.NOT_STARTED:
            raise ValueError("'Not Started' is derived from position and cannot be stored")
        return v

    @property
    def is_completed(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def is_open(self) -> bool:
        """Pending or Acknowledged, i.e. awaiting action."""
        return self.status in (StepStatus.PENDING, StepStatus.ACKNOWLEDGED)


class Job(BaseModel):
    """Top-level workflow instance owning an ordered chain of steps."""

    id: str = Field(default_factory=new_id)
    title: str
    creator_id: str
    project_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    steps: List[Step] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)

    @property
    def is_completed(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def step_index(self, step_id: str) -> Optional[int]:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None

    def get_step(self, step_id: str) -> Optional[Step]:
        index = self.step_index(step_id)
        return self.steps[index] if index is not None else None

    def predecessor_done(self, index: int) -> bool:
        """First step, or the step before ``index`` is Completed."""
        return index == 0 or self.steps[index - 1].is_completed

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "Job":
        return cls.model_validate_json(data)

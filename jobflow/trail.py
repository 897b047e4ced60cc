"""Append-only audit and comment trail for jobs and steps.

A trail entry is either a :class:`HumanComment` (free discussion) or a
:class:`SystemEvent` emitted by a state transition.  System events carry a
structured payload; the text shown to users is projected from it by
:func:`narrate`, so nothing downstream has to pattern-match comment text.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Callable, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .utils.time import utcnow

if TYPE_CHECKING:
    from .models import Step


class EventKind(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    ACKNOWLEDGED = "acknowledged"
    RETURNED = "returned"
    REASSIGNED = "reassigned"
    COMPLETED = "completed"
    FINALIZED = "finalized"
    REOPENED = "reopened"
    RENAMED = "renamed"
    JOB_UPDATED = "job_updated"


class HumanComment(BaseModel):
    """Free-form remark written by a user."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["human"] = "human"
    author_id: str
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class SystemEvent(BaseModel):
    """Narration of a transition, recorded by the controller."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["system"] = "system"
    author_id: str
    event: EventKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


Comment = Annotated[Union[HumanComment, SystemEvent], Field(discriminator="kind")]

NameLookup = Callable[[str], str]

_TEMPLATES: Dict[EventKind, str] = {
    EventKind.CREATED: "Job created by {actor} with first step '{step_name}' assigned to {assignee}.",
    EventKind.ASSIGNED: "Step assigned to {assignee} by {actor}.",
    EventKind.ACKNOWLEDGED: "Step acknowledged by {actor}.",
    EventKind.RETURNED: "Step was returned by {actor}. Reason: {reason}",
    EventKind.REASSIGNED: "Reassigned from {previous_assignee} to {new_assignee} by {actor}. Comment: {comment}",
    EventKind.COMPLETED: "Step completed by {actor}. Next step: '{next_step_name}' assigned to {next_assignee}.",
    EventKind.FINALIZED: "Final step completed by {actor}. Job marked as completed.",
    EventKind.REOPENED: "Job was reopened by {actor}. Reason: {reason}. New step '{step_name}' assigned to {assignee}.",
    EventKind.RENAMED: "Step renamed from '{old_name}' to '{new_name}' by {actor}.",
    EventKind.JOB_UPDATED: "Job details updated by {actor}: {fields}.",
}


class ReturnDetails(BaseModel):
    """Who returned a step, why and when."""

    returned_by: str
    reason: str
    date: datetime


def narrate(entry: Union[HumanComment, SystemEvent], names: Optional[NameLookup] = None) -> str:
    """Return the display text for a trail entry.

    ``names`` maps user ids to display names; ids are shown as-is without it.
    Payload keys ending in ``_id`` are resolved and exposed without the suffix.
    """
    if isinstance(entry, HumanComment):
        return entry.text

    resolve = names or (lambda user_id: user_id)
    values: Dict[str, Any] = {}
    for key, value in entry.payload.items():
        if key.endswith("_id"):
            values[key[:-3]] = resolve(value) if value else "Unassigned"
        elif isinstance(value, (list, tuple)):
            values[key] = ", ".join(str(v) for v in value)
        else:
            values[key] = value
    values["actor"] = resolve(entry.author_id)
    return _TEMPLATES[entry.event].format_map(_Defaulting(values))


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return ""


def timeline(entries: Iterable[Union[HumanComment, SystemEvent]]) -> List[Union[HumanComment, SystemEvent]]:
    """Entries in insertion order."""
    return list(entries)


def recent_first(entries: Iterable[Union[HumanComment, SystemEvent]]) -> List[Union[HumanComment, SystemEvent]]:
    """Entries newest first, ties kept in reverse insertion order."""
    return sorted(reversed(list(entries)), key=lambda e: e.created_at, reverse=True)


def system_events(
    entries: Iterable[Union[HumanComment, SystemEvent]], event: Optional[EventKind] = None
) -> List[SystemEvent]:
    return [
        e for e in entries if isinstance(e, SystemEvent) and (event is None or e.event == event)
    ]


def latest_event(entries: Iterable[Union[HumanComment, SystemEvent]]) -> Optional[SystemEvent]:
    events = system_events(entries)
    return events[-1] if events else None


def is_returned(step: "Step") -> bool:
    """A step counts as returned until someone acts on it again."""
    from .models import StepStatus

    if step.status != StepStatus.PENDING:
        return False
    last = latest_event(step.comments)
    return last is not None and last.event == EventKind.RETURNED


def return_details(step: "Step") -> Optional[ReturnDetails]:
    if not is_returned(step):
        return None
    event = latest_event(step.comments)
    return ReturnDetails(
        returned_by=event.author_id,
        reason=event.payload.get("reason", ""),
        date=event.created_at,
    )

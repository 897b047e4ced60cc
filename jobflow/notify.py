"""Fire-and-forget user notifications for applied transitions."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from .constants import NOTIFICATION_TOPIC_PREFIX
from .contracts import JobNotification, Mutation, Transition
from .identity import IdentityDirectory
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)

_NEW_STEP_TRANSITIONS = (Transition.CREATE, Transition.COMPLETE, Transition.REOPEN)


class Notifier:
    """Publish a :class:`JobNotification` to each recipient of a mutation.

    Each user listens on ``<prefix>.<user_id>``. Delivery problems are logged
    and never propagate, the job change has already been stored.
    """

    def __init__(
        self,
        transport: BaseTransport,
        directory: Optional[IdentityDirectory] = None,
        prefix: str = NOTIFICATION_TOPIC_PREFIX,
    ) -> None:
        self.transport = transport
        self.directory = directory
        self.prefix = prefix

    def topic_for(self, user_id: str) -> str:
        return f"{self.prefix}.{user_id}"

    def _name(self, user_id: str) -> str:
        return self.directory.display_name(user_id) if self.directory else user_id

    def build(
        self, mutation: Mutation, recipient_id: str, actor_id: str, step_id: Optional[str] = None
    ) -> JobNotification:
        job = mutation.job
        if mutation.transition in _NEW_STEP_TRANSITIONS and job.steps:
            step = job.steps[-1]
        else:
            step = job.get_step(step_id) if step_id else None
        step_name = step.name if step else None

        if mutation.transition == Transition.RETURN:
            text = f"Step '{step_name}' on job '{job.title}' was returned by {self._name(actor_id)}."
        elif mutation.transition == Transition.FINALIZE:
            text = f"Job '{job.title}' has been completed by {self._name(actor_id)}."
        else:
            text = f"You have been assigned '{step_name}' on job '{job.title}'."

        return JobNotification(
            recipient_id=recipient_id,
            job_id=job.id,
            job_title=job.title,
            step_name=step_name,
            transition=mutation.transition,
            actor_id=actor_id,
            message=text,
        )

    async def notify(self, mutation: Mutation, actor_id: str, step_id: Optional[str] = None) -> int:
        """Publish to every recipient; return how many were delivered."""
        delivered = 0
        for recipient in mutation.notify:
            try:
                message = self.build(mutation, recipient, actor_id, step_id)
                await self.transport.publish(self.topic_for(recipient), message)
            except Exception as e:
                logger.warning(
                    f"Failed to notify {recipient} about {mutation.transition.value} "
                    f"on job {mutation.job.id}: {e}"
                )
                continue
            delivered += 1
            logger.debug(f"Notified {recipient} about job {mutation.job.id}")
        return delivered

    async def listen(
        self, user_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[JobNotification]:
        """Yield notifications addressed to ``user_id``."""
        async for raw, message in self.transport.subscribe(self.topic_for(user_id), lifespan):
            await self.transport.ack(raw)
            yield message

"""Shared fixtures: a small user directory, a controllable clock and wiring."""

from datetime import datetime, timedelta, timezone

import pytest

from jobflow.config import DirectoryConfig, UserEntry, WorkflowConfig
from jobflow.constants import NOTIFICATION_TOPIC_PREFIX
from jobflow.contracts import ActorContext
from jobflow.controller import JobLifecycleController
from jobflow.engine import TransitionEngine
from jobflow.identity import StaticDirectory
from jobflow.notify import Notifier
from jobflow.persistence import InMemoryWorkflowRepository
from jobflow.transports import InMemoryTransport

USERS = [
    UserEntry(id="creator", name="Cora Creator", role="Site Lead", project_ids=["p1"]),
    UserEntry(id="alice", name="Alice Adams", role="Site Engineer", project_ids=["p1"]),
    UserEntry(id="bob", name="Bob Brown", role="Site Engineer", project_ids=["p1"]),
    UserEntry(id="carol", name="Carol Chen", role="Admin"),
    UserEntry(id="dave", name="Dave Dunn", role="Site Engineer", project_ids=["p2"]),
    UserEntry(id="erin", name="Erin Evans", role="Manager"),
]

PERMISSIONS = {
    "Site Lead": ["manage_job_progress"],
    "Admin": ["manage_job_progress"],
}


class FakeClock:
    """Deterministic clock that ticks one minute per reading."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(minutes=1)
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def directory():
    return StaticDirectory(
        DirectoryConfig(current_user="creator", users=USERS, permissions=PERMISSIONS)
    )


@pytest.fixture
def workflow_config():
    return WorkflowConfig()


@pytest.fixture
def engine(workflow_config, clock):
    return TransitionEngine(workflow_config, clock=clock)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def notifier(transport, directory):
    return Notifier(transport, directory)


@pytest.fixture
def controller(repository, directory, engine, notifier):
    return JobLifecycleController(repository, directory, engine=engine, notifier=notifier)


@pytest.fixture
def make_actor():
    def _make(user_id: str, role: str = "Site Engineer", member: bool = False, creator: bool = False):
        return ActorContext(
            actor_id=user_id, role=role, is_project_member=member, can_create_jobs=creator
        )

    return _make


@pytest.fixture
def drain():
    """Collect the notifications queued for a user on a transport."""

    async def _drain(transport, user_id: str):
        topic = f"{NOTIFICATION_TOPIC_PREFIX}.{user_id}"
        return [message async for _, message in transport.subscribe(topic, lifespan=0.1)]

    return _drain

"""Transport and notifier tests."""

import pytest

from jobflow.contracts import JobNotification, Mutation, Transition
from jobflow.identity import StaticDirectory
from jobflow.models import Job, Step
from jobflow.notify import Notifier
from jobflow.transports.base import BaseTransport
from jobflow.transports.inmemory import InMemoryTransport


def _notification(**overrides) -> JobNotification:
    data = dict(
        recipient_id="bob",
        job_id="job-1",
        job_title="Tower B facade",
        step_name="Measurement verified",
        transition=Transition.COMPLETE,
        actor_id="alice",
        message="You have been assigned 'Measurement verified' on job 'Tower B facade'.",
    )
    data.update(overrides)
    return JobNotification(**data)


def _mutation(transition=Transition.COMPLETE, notify=("bob",)) -> Mutation:
    job = Job(
        id="job-1",
        title="Tower B facade",
        creator_id="creator",
        steps=[Step(id="s0", name="JMS created"), Step(id="s1", name="Measurement verified", assignee_id="bob")],
    )
    return Mutation(transition=transition, job=job, notify=list(notify))


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    await transport.publish("topic", _notification())

    received = False
    async for raw_msg, message in transport.subscribe("topic"):
        assert message.job_id == "job-1"
        assert message.recipient_id == "bob"
        await transport.ack(raw_msg)
        received = True
        break

    assert received


@pytest.mark.asyncio
async def test_inmemory_subscribe_stops_after_lifespan():
    transport = InMemoryTransport()
    messages = [m async for _, m in transport.subscribe("empty", lifespan=0.1)]
    assert messages == []


@pytest.mark.asyncio
async def test_redis_transport_import():
    from jobflow.transports.redis import RedisTransport

    transport = RedisTransport(host="example", port=6390)
    assert isinstance(transport, BaseTransport)
    assert transport.host == "example"


def test_notification_json_round_trip():
    message = _notification()
    assert JobNotification.from_json(message.to_json()) == message


@pytest.mark.asyncio
async def test_notifier_publishes_per_recipient(directory, drain):
    transport = InMemoryTransport()
    notifier = Notifier(transport, directory)

    delivered = await notifier.notify(_mutation(notify=("bob", "alice")), actor_id="alice")

    assert delivered == 2
    [message] = await drain(transport, "bob")
    assert message.step_name == "Measurement verified"
    assert message.message == "You have been assigned 'Measurement verified' on job 'Tower B facade'."
    assert len(await drain(transport, "alice")) == 1


@pytest.mark.asyncio
async def test_notifier_return_message(directory, drain):
    transport = InMemoryTransport()
    notifier = Notifier(transport, directory)

    await notifier.notify(_mutation(Transition.RETURN, ("creator",)), actor_id="bob", step_id="s1")

    [message] = await drain(transport, "creator")
    assert message.message == "Step 'Measurement verified' on job 'Tower B facade' was returned by Bob Brown."


class _BrokenTransport(InMemoryTransport):
    async def publish(self, topic, message):
        raise ConnectionError("broker down")


@pytest.mark.asyncio
async def test_notifier_failures_are_logged_not_raised(caplog):
    notifier = Notifier(_BrokenTransport())
    delivered = await notifier.notify(_mutation(), actor_id="alice")

    assert delivered == 0
    assert "Failed to notify bob" in caplog.text


@pytest.mark.asyncio
async def test_notifier_listen(directory):
    transport = InMemoryTransport()
    notifier = Notifier(transport, directory)
    await notifier.notify(_mutation(), actor_id="alice")

    async for message in notifier.listen("bob", lifespan=1):
        assert message.recipient_id == "bob"
        break


class _DirectoryDown(StaticDirectory):
    def display_name(self, user_id: str) -> str:
        raise ConnectionError("directory lookup down")


@pytest.mark.asyncio
async def test_notifier_message_build_failure_is_logged(caplog):
    transport = InMemoryTransport()
    notifier = Notifier(transport, _DirectoryDown())

    delivered = await notifier.notify(_mutation(Transition.RETURN, ("creator",)), actor_id="bob", step_id="s1")

    assert delivered == 0
    assert "Failed to notify creator" in caplog.text
    assert "directory lookup down" in caplog.text

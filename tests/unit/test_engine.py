"""Transition engine decisions."""

import pytest

from jobflow.contracts import Mutation, Rejection, RejectionReason, Transition, TransitionRequest
from jobflow.models import Job, JobStatus, Step, StepStatus
from jobflow.trail import EventKind, HumanComment, SystemEvent, is_returned, narrate

TERMINAL = "JMS Hard copy submitted"


def _job(*steps, status=JobStatus.ACTIVE, creator="creator", project="p1"):
    return Job(
        id="job-1",
        title="Tower B facade",
        creator_id=creator,
        project_id=project,
        status=status,
        steps=list(steps),
    )


def _request(transition, step_id=None, actor_id="alice", **payload):
    return TransitionRequest(
        job_id="job-1",
        actor_id=actor_id,
        transition=transition,
        step_id=step_id,
        payload=payload,
    )


def _done(step_id="s0", name="JMS created"):
    return Step(id=step_id, name=name, assignee_id="creator", status=StepStatus.COMPLETED)


def _ok(decision):
    assert isinstance(decision, Mutation), decision
    return decision.job


def _rejected(decision, reason):
    assert isinstance(decision, Rejection), decision
    assert decision.reason == reason, decision.message
    return decision


@pytest.fixture
def acknowledged_job():
    return _job(
        _done(),
        Step(id="s1", name="Sent to site for measurement", assignee_id="alice", status=StepStatus.ACKNOWLEDGED),
    )


# ----------------------------------------------------------------------
# Scenarios


def test_acknowledge_sets_status_and_timestamp(engine, make_actor):
    job = _job(_done(), Step(id="s1", name="Sent to site for measurement", assignee_id="alice"))

    updated = _ok(engine.decide(job, _request(Transition.ACKNOWLEDGE, "s1"), make_actor("alice")))

    assert updated.steps[1].status == StepStatus.ACKNOWLEDGED
    assert updated.steps[1].acknowledged_at is not None
    assert updated.steps[0] == job.steps[0]
    # input job untouched
    assert job.steps[1].status == StepStatus.PENDING


def test_return_by_non_assignee_is_not_authorized(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.RETURN, "s1", actor_id="bob", reason="not my job, wrong person"),
        make_actor("bob", member=True),
    )

    _rejected(decision, RejectionReason.NOT_AUTHORIZED)
    assert acknowledged_job.steps[1].status == StepStatus.ACKNOWLEDGED


def test_return_by_assignee_clears_assignee(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.RETURN, "s1", reason="not my job, wrong person"),
        make_actor("alice"),
    )

    updated = _ok(decision)
    step = updated.steps[1]
    assert step.status == StepStatus.PENDING
    assert step.assignee_id is None
    event = step.comments[-1]
    assert isinstance(event, SystemEvent)
    assert event.event == EventKind.RETURNED
    assert narrate(event) == "Step was returned by alice. Reason: not my job, wrong person"
    assert is_returned(step)
    assert decision.notify == ["creator"]


def test_finalize_terminal_step_completes_job(engine, make_actor):
    job = _job(Step(id="s0", name=TERMINAL, assignee_id="alice", status=StepStatus.ACKNOWLEDGED))

    updated = _ok(engine.decide(job, _request(Transition.FINALIZE, "s0"), make_actor("alice")))

    assert updated.steps[0].status == StepStatus.COMPLETED
    assert updated.steps[0].completed_by == "alice"
    assert updated.status == JobStatus.COMPLETED
    assert len(updated.steps) == 1


def test_reopen_appends_pending_step(engine, make_actor):
    job = _job(
        Step(id="s0", name=TERMINAL, assignee_id="alice", status=StepStatus.COMPLETED),
        status=JobStatus.COMPLETED,
    )
    creator = make_actor("creator", role="Site Lead")

    updated = _ok(
        engine.decide(
            job,
            _request(
                Transition.REOPEN,
                actor_id="creator",
                reason="client requested revision",
                new_step_name="Review",
                new_step_assignee_id="u3",
            ),
            creator,
        )
    )

    assert updated.status == JobStatus.ACTIVE
    assert updated.steps[1].name == "Review"
    assert updated.steps[1].status == StepStatus.PENDING
    assert updated.steps[1].assignee_id == "u3"
    assert updated.comments[-1].event == EventKind.REOPENED

    again = engine.decide(
        updated,
        _request(
            Transition.REOPEN,
            actor_id="creator",
            reason="client requested revision",
            new_step_name="Review",
            new_step_assignee_id="u3",
        ),
        creator,
    )
    _rejected(again, RejectionReason.JOB_NOT_COMPLETED)


# ----------------------------------------------------------------------
# Check order and gates


def test_terminal_job_wins_over_missing_step(engine, make_actor):
    job = _job(_done(), status=JobStatus.COMPLETED)
    decision = engine.decide(job, _request(Transition.ACKNOWLEDGE, "nope"), make_actor("alice"))
    _rejected(decision, RejectionReason.ALREADY_TERMINAL)


def test_unknown_step_is_not_found(engine, make_actor):
    job = _job(_done())
    decision = engine.decide(job, _request(Transition.ACKNOWLEDGE, "nope"), make_actor("alice"))
    _rejected(decision, RejectionReason.NOT_FOUND)


def test_missing_job_is_not_found(engine, make_actor):
    decision = engine.decide(None, _request(Transition.ACKNOWLEDGE, "s0"), make_actor("alice"))
    _rejected(decision, RejectionReason.NOT_FOUND)


def test_predecessor_gate(engine, make_actor):
    job = _job(
        Step(id="s0", name="JMS created", assignee_id="alice", status=StepStatus.ACKNOWLEDGED),
        Step(id="s1", name="Sent to site for measurement", assignee_id="bob"),
    )
    decision = engine.decide(job, _request(Transition.ACKNOWLEDGE, "s1", actor_id="bob"), make_actor("bob"))
    _rejected(decision, RejectionReason.PREDECESSOR_INCOMPLETE)


def test_authorization_checked_before_gate(engine, make_actor):
    job = _job(
        Step(id="s0", name="JMS created", assignee_id="alice", status=StepStatus.ACKNOWLEDGED),
        Step(id="s1", name="Sent to site for measurement", assignee_id="bob"),
    )
    decision = engine.decide(job, _request(Transition.ACKNOWLEDGE, "s1", actor_id="dave"), make_actor("dave"))
    _rejected(decision, RejectionReason.NOT_AUTHORIZED)


def test_acknowledge_twice_is_already_in_state(engine, make_actor, acknowledged_job):
    decision = engine.decide(acknowledged_job, _request(Transition.ACKNOWLEDGE, "s1"), make_actor("alice"))
    _rejected(decision, RejectionReason.ALREADY_IN_STATE)


def test_acknowledged_at_survives_return(engine, make_actor):
    job = _job(_done(), Step(id="s1", name="Sent to site for measurement", assignee_id="alice"))
    first = _ok(engine.decide(job, _request(Transition.ACKNOWLEDGE, "s1"), make_actor("alice")))
    stamp = first.steps[1].acknowledged_at

    returned = _ok(
        engine.decide(
            first, _request(Transition.RETURN, "s1", reason="need a site visit first"), make_actor("alice")
        )
    )
    assert returned.steps[1].acknowledged_at == stamp


# ----------------------------------------------------------------------
# Return and reassign


def test_return_reason_too_short(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job, _request(Transition.RETURN, "s1", reason="too short"), make_actor("alice")
    )
    _rejected(decision, RejectionReason.INVALID_PAYLOAD)


def test_return_reason_missing(engine, make_actor, acknowledged_job):
    decision = engine.decide(acknowledged_job, _request(Transition.RETURN, "s1"), make_actor("alice"))
    _rejected(decision, RejectionReason.INVALID_PAYLOAD)


def test_privileged_user_cannot_return(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.RETURN, "s1", actor_id="carol", reason="not my job, wrong person"),
        make_actor("carol", role="Admin"),
    )
    _rejected(decision, RejectionReason.NOT_AUTHORIZED)


def test_reassign_by_privileged_role(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(
            Transition.REASSIGN,
            "s1",
            actor_id="carol",
            new_assignee_id="bob",
            comment="covering for annual leave",
        ),
        make_actor("carol", role="Admin"),
    )

    updated = _ok(decision)
    step = updated.steps[1]
    assert step.assignee_id == "bob"
    assert step.status == StepStatus.ACKNOWLEDGED
    event = step.comments[-1]
    assert event.payload["previous_assignee_id"] == "alice"
    assert event.payload["new_assignee_id"] == "bob"
    assert decision.notify == ["bob"]


def test_reassign_requires_acknowledged(engine, make_actor):
    job = _job(_done(), Step(id="s1", name="Sent to site for measurement", assignee_id="alice"))
    decision = engine.decide(
        job,
        _request(Transition.REASSIGN, "s1", new_assignee_id="bob", comment="covering for annual leave"),
        make_actor("alice"),
    )
    _rejected(decision, RejectionReason.ALREADY_IN_STATE)


def test_reassign_to_current_assignee(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.REASSIGN, "s1", new_assignee_id="alice", comment="keeping this one myself"),
        make_actor("alice"),
    )
    _rejected(decision, RejectionReason.ALREADY_IN_STATE)


def test_reassign_comment_too_short(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.REASSIGN, "s1", new_assignee_id="bob", comment="leave"),
        make_actor("alice"),
    )
    _rejected(decision, RejectionReason.INVALID_PAYLOAD)


# ----------------------------------------------------------------------
# Complete and finalize


def test_complete_appends_exactly_one_step(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(
            Transition.COMPLETE,
            "s1",
            next_step={"name": "Measurement verified", "assignee_id": "bob"},
            notes="All walls measured",
        ),
        make_actor("alice"),
    )

    updated = _ok(decision)
    assert len(updated.steps) == len(acknowledged_job.steps) + 1
    done, new = updated.steps[1], updated.steps[2]
    assert done.status == StepStatus.COMPLETED
    assert done.completed_by == "alice"
    assert isinstance(done.comments[-2], HumanComment)
    assert done.comments[-2].text == "All walls measured"
    assert done.comments[-1].event == EventKind.COMPLETED
    assert new.name == "Measurement verified"
    assert new.status == StepStatus.PENDING
    assert new.assignee_id == "bob"
    assert decision.notify == ["bob"]
    assert len(acknowledged_job.steps) == 2


def test_complete_requires_assignee(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.COMPLETE, "s1", next_step={"name": "Measurement verified"}),
        make_actor("alice"),
    )
    _rejected(decision, RejectionReason.INVALID_PAYLOAD)


def test_complete_into_unassigned_terminal_step(engine, make_actor, acknowledged_job):
    decision = engine.decide(
        acknowledged_job,
        _request(Transition.COMPLETE, "s1", next_step={"name": TERMINAL}),
        make_actor("alice"),
    )
    updated = _ok(decision)
    assert updated.steps[-1].name == TERMINAL
    assert updated.steps[-1].assignee_id is None
    assert decision.notify == []


def test_complete_checks_required_metadata(engine, make_actor, acknowledged_job):
    missing = engine.decide(
        acknowledged_job,
        _request(Transition.COMPLETE, "s1", next_step={"name": "JMS no created", "assignee_id": "bob"}),
        make_actor("alice"),
    )
    _rejected(missing, RejectionReason.INVALID_PAYLOAD)

    updated = _ok(
        engine.decide(
            acknowledged_job,
            _request(
                Transition.COMPLETE,
                "s1",
                next_step={"name": "JMS no created", "assignee_id": "bob"},
                metadata={"jms_no": "JMS-042"},
            ),
            make_actor("alice"),
        )
    )
    assert updated.metadata["jms_no"] == "JMS-042"


def test_terminal_step_cannot_be_chained(engine, make_actor):
    job = _job(_done(), Step(id="s1", name=TERMINAL, assignee_id="alice", status=StepStatus.ACKNOWLEDGED))
    decision = engine.decide(
        job,
        _request(Transition.COMPLETE, "s1", next_step={"name": "Extra", "assignee_id": "bob"}),
        make_actor("alice"),
    )
    _rejected(decision, RejectionReason.INVALID_PAYLOAD)


def test_finalize_rejects_non_terminal_step(engine, make_actor, acknowledged_job):
    decision = engine.decide(acknowledged_job, _request(Transition.FINALIZE, "s1"), make_actor("alice"))
    _rejected(decision, RejectionReason.INVALID_PAYLOAD)


# ----------------------------------------------------------------------
# Unassigned-eligible steps


@pytest.fixture
def unassigned_terminal_job():
    return _job(_done(), Step(id="s1", name=TERMINAL))


def test_project_member_can_work_unassigned_terminal(engine, make_actor, unassigned_terminal_job):
    decision = engine.decide(
        unassigned_terminal_job, _request(Transition.ACKNOWLEDGE, "s1"), make_actor("alice", member=True)
    )
    assert _ok(decision).steps[1].status == StepStatus.ACKNOWLEDGED


def test_listed_role_can_work_unassigned_terminal(engine, make_actor, unassigned_terminal_job):
    decision = engine.decide(
        unassigned_terminal_job,
        _request(Transition.ACKNOWLEDGE, "s1", actor_id="carol"),
        make_actor("carol", role="Admin"),
    )
    _ok(decision)


def test_outsider_cannot_work_unassigned_terminal(engine, make_actor, unassigned_terminal_job):
    decision = engine.decide(
        unassigned_terminal_job,
        _request(Transition.ACKNOWLEDGE, "s1", actor_id="dave"),
        make_actor("dave"),
    )
    _rejected(decision, RejectionReason.NOT_AUTHORIZED)


# ----------------------------------------------------------------------
# Assign, rename, create, update, comment


def test_assign_unassigned_step(engine, make_actor, unassigned_terminal_job):
    creator = make_actor("creator", role="Site Lead")
    decision = engine.decide(
        unassigned_terminal_job,
        _request(Transition.ASSIGN, "s1", actor_id="creator", assignee_id="bob"),
        creator,
    )
    updated = _ok(decision)
    assert updated.steps[1].assignee_id == "bob"
    assert decision.notify == ["bob"]

    again = engine.decide(
        updated, _request(Transition.ASSIGN, "s1", actor_id="creator", assignee_id="alice"), creator
    )
    _rejected(again, RejectionReason.ALREADY_IN_STATE)


def test_assign_requires_creator_or_privileged(engine, make_actor, unassigned_terminal_job):
    decision = engine.decide(
        unassigned_terminal_job,
        _request(Transition.ASSIGN, "s1", assignee_id="bob"),
        make_actor("alice", member=True),
    )
    _rejected(decision, RejectionReason.NOT_AUTHORIZED)


def test_rename_step(engine, make_actor, acknowledged_job):
    creator = make_actor("creator", role="Site Lead")
    updated = _ok(
        engine.decide(
            acknowledged_job,
            _request(Transition.EDIT_STEP_NAME, "s1", actor_id="creator", name="Site measurement"),
            creator,
        )
    )
    assert updated.steps[1].name == "Site measurement"
    assert updated.steps[1].comments[-1].payload == {
        "old_name": "Sent to site for measurement",
        "new_name": "Site measurement",
    }

    same = engine.decide(
        updated,
        _request(Transition.EDIT_STEP_NAME, "s1", actor_id="creator", name="Site measurement"),
        creator,
    )
    _rejected(same, RejectionReason.ALREADY_IN_STATE)

    outsider = engine.decide(
        updated, _request(Transition.EDIT_STEP_NAME, "s1", actor_id="bob", name="Other"), make_actor("bob")
    )
    _rejected(outsider, RejectionReason.NOT_AUTHORIZED)


def test_create_job(engine, make_actor):
    request = TransitionRequest(
        job_id="job-9",
        actor_id="creator",
        transition=Transition.CREATE,
        payload={
            "title": "Tower B facade",
            "project_id": "p1",
            "initial_step": {"name": "JMS created", "assignee_id": "alice"},
        },
    )
    decision = engine.decide(None, request, make_actor("creator", role="Site Lead", creator=True))

    job = _ok(decision)
    assert job.id == "job-9"
    assert job.status == JobStatus.ACTIVE
    assert [s.status for s in job.steps] == [StepStatus.PENDING]
    assert job.comments[0].event == EventKind.CREATED
    assert decision.notify == ["alice"]


def test_create_job_rules(engine, make_actor):
    payload = {"title": "ab", "initial_step": {"name": "JMS created", "assignee_id": "alice"}}
    request = TransitionRequest(job_id="j", actor_id="alice", transition=Transition.CREATE, payload=payload)

    _rejected(engine.decide(None, request, make_actor("alice")), RejectionReason.NOT_AUTHORIZED)
    _rejected(
        engine.decide(None, request, make_actor("alice", creator=True)),
        RejectionReason.INVALID_PAYLOAD,
    )


def test_update_job_details(engine, make_actor, acknowledged_job):
    creator = make_actor("creator", role="Site Lead")
    updated = _ok(
        engine.decide(
            acknowledged_job,
            _request(Transition.UPDATE_JOB, actor_id="creator", title="Tower B east facade", metadata={"block": "B"}),
            creator,
        )
    )
    assert updated.title == "Tower B east facade"
    assert updated.metadata == {"block": "B"}
    assert updated.comments[-1].payload == {"fields": ["title", "block"]}

    unchanged = engine.decide(
        updated, _request(Transition.UPDATE_JOB, actor_id="creator", title="Tower B east facade"), creator
    )
    _rejected(unchanged, RejectionReason.ALREADY_IN_STATE)

    closed = updated.model_copy(update={"status": JobStatus.COMPLETED})
    _rejected(
        engine.decide(closed, _request(Transition.UPDATE_JOB, actor_id="creator", title="Again"), creator),
        RejectionReason.ALREADY_TERMINAL,
    )


def test_comments(engine, make_actor, acknowledged_job):
    updated = _ok(
        engine.decide(
            acknowledged_job,
            _request(Transition.COMMENT, "s1", actor_id="bob", text="Scaffold is up on level 3"),
            make_actor("bob", member=True),
        )
    )
    assert updated.steps[1].comments[-1].text == "Scaffold is up on level 3"

    job_level = _ok(
        engine.decide(acknowledged_job, _request(Transition.COMMENT, text="Client called"), make_actor("alice"))
    )
    assert job_level.comments[-1].author_id == "alice"

    _rejected(
        engine.decide(
            acknowledged_job, _request(Transition.COMMENT, actor_id="dave", text="hello"), make_actor("dave")
        ),
        RejectionReason.NOT_AUTHORIZED,
    )
    _rejected(
        engine.decide(acknowledged_job, _request(Transition.COMMENT, text="   "), make_actor("alice")),
        RejectionReason.INVALID_PAYLOAD,
    )


def test_allowed_transitions_for_assignee(engine, make_actor):
    job = _job(_done(), Step(id="s1", name="Sent to site for measurement", assignee_id="alice"))
    allowed = engine.allowed_transitions(job, "s1", make_actor("alice"))
    assert allowed == [Transition.ACKNOWLEDGE, Transition.RETURN, Transition.EDIT_STEP_NAME]

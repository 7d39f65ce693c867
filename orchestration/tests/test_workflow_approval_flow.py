import pytest

from orchestration.database import SessionLocal
from orchestration.models.event_outbox import EventOutbox
from orchestration.models.pending_action import ActionAuditEntry, PendingAction
from orchestration.services import autonomy_service, workflow_engine
from orchestration.services.outbox_handlers import build_handlers
from orchestration.services.outbox_processor import process_outbox_batch

WS = "ws-1"


@pytest.fixture
def drain(registry, settings, fake_sleep):
    handlers = build_handlers(registry=registry, settings=settings, sleep=fake_sleep)

    def _drain():
        return process_outbox_batch(handlers=handlers)

    return _drain


@pytest.fixture
def team(team_factory):
    # Only low-risk actions run without review.
    return team_factory(autonomy_level="semi_autonomous")


def _email_workflow(workflow_factory, team, mailer, logger_agent, **first_step):
    step = {
        "id": "email",
        "name": "Send intro",
        "agent_id": mailer.id,
        "action": "send_email",
        "inputs": {"to": "{{ trigger.email }}", "subject": "Intro"},
    }
    step.update(first_step)
    return workflow_factory(
        team_id=team.id,
        steps=[
            step,
            {"id": "log", "name": "Log it", "agent_id": logger_agent.id, "action": "log_event", "inputs": {}},
        ],
    )


def _pending_for(execution_id) -> PendingAction:
    db = SessionLocal()
    try:
        return db.query(PendingAction).filter(PendingAction.workflow_execution_id == execution_id).one()
    finally:
        db.close()


def test_gated_step_parks_then_resumes_after_approval(team, agent_factory, workflow_factory, registry, drain):
    mailer = agent_factory(team_id=team.id)
    logger_agent = agent_factory(team_id=team.id)
    wf = _email_workflow(workflow_factory, team, mailer, logger_agent)

    execution_id = workflow_engine.execute_workflow(WS, wf["id"], {"email": "lead@example.com"})
    assert drain().processed == 1

    parked = workflow_engine.get_execution(WS, execution_id)
    assert parked["status"] == "running"
    action = _pending_for(execution_id)
    assert parked["awaiting_action_id"] == action.id
    assert action.workflow_step_id == "email"
    assert action.risk_level == "high"
    assert action.action_data == {"to": "lead@example.com", "subject": "Intro"}
    assert registry.calls == []

    autonomy_service.process_approval(WS, action.id, True, "manager-1")
    assert drain().processed == 1

    done = workflow_engine.get_execution(WS, execution_id)
    assert done["status"] == "completed"
    assert done["completed_steps"] == 2
    assert done["awaiting_action_id"] is None
    assert registry.calls_for(mailer.id)[0]["inputs"] == {"to": "lead@example.com", "subject": "Intro"}
    assert len(registry.calls_for(logger_agent.id)) == 1

    db = SessionLocal()
    try:
        run_audit = (
            db.query(ActionAuditEntry)
            .filter(
                ActionAuditEntry.approval_id == action.id,
                ActionAuditEntry.duration_ms.isnot(None),
            )
            .one()
        )
        assert run_audit.was_automatic is False
        assert run_audit.success is True
    finally:
        db.close()


def test_redelivered_resolution_does_not_rerun_the_step(
    team, agent_factory, workflow_factory, registry, drain, settings, fake_sleep
):
    mailer = agent_factory(team_id=team.id)
    logger_agent = agent_factory(team_id=team.id)
    wf = _email_workflow(workflow_factory, team, mailer, logger_agent)

    execution_id = workflow_engine.execute_workflow(WS, wf["id"], {"email": "lead@example.com"})
    drain()
    action = _pending_for(execution_id)
    autonomy_service.process_approval(WS, action.id, True, "manager-1")
    drain()

    status = workflow_engine.resume_execution(
        execution_id, action.id, registry=registry, settings=settings, sleep=fake_sleep
    )
    assert status == "completed"
    assert len(registry.calls_for(mailer.id)) == 1


def test_rejection_fails_the_step_without_retries(team, agent_factory, workflow_factory, registry, drain):
    mailer = agent_factory(team_id=team.id)
    logger_agent = agent_factory(team_id=team.id)
    wf = _email_workflow(
        workflow_factory,
        team,
        mailer,
        logger_agent,
        retry_config={"max_attempts": 3, "backoff_ms": 100},
    )

    execution_id = workflow_engine.execute_workflow(WS, wf["id"], {"email": "lead@example.com"})
    drain()
    action = _pending_for(execution_id)

    autonomy_service.process_approval(WS, action.id, False, "manager-1", "wrong audience")
    drain()

    execution = workflow_engine.get_execution(WS, execution_id)
    assert execution["status"] == "failed"
    assert execution["error"] == {"message": "Action rejected: wrong audience", "step": "email"}
    assert execution["step_results"]["email"]["attempts"] == 0
    assert registry.calls == []


def test_rejection_follows_failure_edge(team, agent_factory, workflow_factory, registry, drain):
    mailer = agent_factory(team_id=team.id)
    logger_agent = agent_factory(team_id=team.id)
    wf = _email_workflow(workflow_factory, team, mailer, logger_agent, on_failure="log")

    execution_id = workflow_engine.execute_workflow(WS, wf["id"], {"email": "lead@example.com"})
    drain()
    autonomy_service.process_approval(WS, _pending_for(execution_id).id, False, "manager-1")
    drain()

    execution = workflow_engine.get_execution(WS, execution_id)
    assert execution["status"] == "completed"
    assert execution["step_results"]["email"]["error"] == "Action rejected: No reason provided"
    assert registry.calls_for(mailer.id) == []
    assert len(registry.calls_for(logger_agent.id)) == 1


def test_cancelled_execution_ignores_later_approval(team, agent_factory, workflow_factory, registry, drain):
    mailer = agent_factory(team_id=team.id)
    logger_agent = agent_factory(team_id=team.id)
    wf = _email_workflow(workflow_factory, team, mailer, logger_agent)

    execution_id = workflow_engine.execute_workflow(WS, wf["id"], {"email": "lead@example.com"})
    drain()
    action = _pending_for(execution_id)

    workflow_engine.cancel_execution(WS, execution_id)
    autonomy_service.process_approval(WS, action.id, True, "manager-1")
    assert drain().processed == 1

    assert workflow_engine.get_execution(WS, execution_id)["status"] == "cancelled"
    assert registry.calls == []


def test_approved_standalone_action_runs_on_its_agent(team, agent_factory, registry, drain):
    agent = agent_factory(team_id=team.id)
    action = autonomy_service.queue_for_approval(
        WS,
        action_type="create_task",
        action_data={"title": "Call Acme"},
        description="Create follow-up task",
        team_id=team.id,
        agent_id=agent.id,
    )

    autonomy_service.process_approval(WS, action.id, True, "manager-1")
    assert drain().processed == 1

    calls = registry.calls_for(agent.id)
    assert len(calls) == 1
    assert calls[0]["action"] == "create_task"
    assert calls[0]["inputs"] == {"title": "Call Acme"}

    db = SessionLocal()
    try:
        event = (
            db.query(EventOutbox)
            .filter(EventOutbox.event_type == autonomy_service.PENDING_ACTION_RESOLVED)
            .one()
        )
        assert event.processed is True
    finally:
        db.close()


def test_rejected_standalone_action_is_not_run(team, agent_factory, registry, drain):
    agent = agent_factory(team_id=team.id)
    action = autonomy_service.queue_for_approval(
        WS,
        action_type="create_task",
        action_data={"title": "Call Acme"},
        description="Create follow-up task",
        agent_id=agent.id,
    )

    autonomy_service.process_approval(WS, action.id, False, "manager-1")
    assert drain().processed == 1
    assert registry.calls == []


def test_second_runner_does_not_park_the_next_step_twice(
    team, agent_factory, workflow_factory, registry, settings, fake_sleep
):
    logger_agent = agent_factory(team_id=team.id, agent_type="hooked")
    mailer = agent_factory(team_id=team.id)
    wf = workflow_factory(
        team_id=team.id,
        steps=[
            {"id": "log", "name": "Log it", "agent_id": logger_agent.id, "action": "log_event", "inputs": {}},
            {
                "id": "email",
                "name": "Send intro",
                "agent_id": mailer.id,
                "action": "send_email",
                "inputs": {"to": "lead@example.com", "subject": "Intro"},
            },
        ],
    )
    execution_id = workflow_engine.execute_workflow(WS, wf["id"], {})

    # The start event is delivered again while the first step is still running.
    redelivered = []

    def run_again(agent_id, action, inputs, context):
        if registry.hook is None:
            return
        registry.hook = None
        redelivered.append(
            workflow_engine.run_execution(execution_id, registry=registry, settings=settings, sleep=fake_sleep)
        )

    registry.hook = run_again

    status = workflow_engine.run_execution(execution_id, registry=registry, settings=settings, sleep=fake_sleep)
    assert status == "running"
    assert redelivered == ["running"]

    db = SessionLocal()
    try:
        actions = db.query(PendingAction).filter(PendingAction.workflow_execution_id == execution_id).all()
    finally:
        db.close()
    assert len(actions) == 1
    assert actions[0].workflow_step_id == "email"

    execution = workflow_engine.get_execution(WS, execution_id)
    assert execution["awaiting_action_id"] == actions[0].id
    assert execution["current_step_id"] == "email"
    assert execution["completed_steps"] == 1

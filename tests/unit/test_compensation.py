"""Unit tests for the compensation service."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest

from process_orchestration.compensation import CompensationService
from process_orchestration.config import ProcessCoreSettings
from process_orchestration.errors import CompensationFailedError, DependencyMissingError
from process_orchestration.events import CompensationEventType
from process_orchestration.models import (
    CompensationHandler,
    CompensationState,
    ProcessDefinition,
    Task,
)


def _definition() -> ProcessDefinition:
    return ProcessDefinition.model_validate(
        {
            "id": "order-flow",
            "nodes": [
                {
                    "id": "reserve",
                    "data": {
                        "compensationHandler": {
                            "service": "inventory",
                            "action": "release",
                            "inputMapping": {"reservationId": "${result.reservation.id}"},
                        }
                    },
                },
                {
                    "id": "charge",
                    "data": {
                        "compensationHandler": {"service": "payments", "action": "refund"}
                    },
                },
                {"id": "notify", "data": {}},
            ],
        }
    )


@pytest.fixture
def service(storage, orchestrator, agent_manager, settings) -> CompensationService:
    return CompensationService(storage, orchestrator, agent_manager, settings=settings)


@pytest.mark.asyncio
async def test_get_compensatable_tasks_filters_and_sorts_ascending(
    service, storage, make_task_binding
) -> None:
    storage.get_all_role_bindings.return_value = [
        make_task_binding("t3", minutes=2),
        make_task_binding("t1", minutes=0),
        make_task_binding("t2", minutes=1),
        make_task_binding("running", minutes=3, state="running"),
        make_task_binding("other", minutes=4, instance_id="proc-2"),
        make_task_binding("not-a-task", minutes=5, role_id="role-something-else"),
    ]

    tasks = await service.get_compensatable_tasks("proc-1")

    assert [t.id for t in tasks] == ["t1", "t2", "t3"]
    storage.update_role_binding.assert_not_called()


@pytest.mark.asyncio
async def test_get_compensatable_tasks_stops_before_from_task(
    service, storage, make_task_binding
) -> None:
    storage.get_all_role_bindings.return_value = [
        make_task_binding("t1", minutes=0),
        make_task_binding("t2", minutes=1),
        make_task_binding("t3", minutes=2),
    ]

    assert [t.id for t in await service.get_compensatable_tasks("proc-1", "t3")] == ["t1", "t2"]
    assert await service.get_compensatable_tasks("proc-1", "t1") == []
    assert [t.id for t in await service.get_compensatable_tasks("proc-1", "unknown")] == [
        "t1",
        "t2",
        "t3",
    ]


@pytest.mark.asyncio
async def test_get_compensatable_tasks_ignores_malformed_foreign_bindings(
    service, storage, make_task_binding
) -> None:
    pending = make_task_binding("pending", instance_id="proc-2", state="active")
    pending["witness"]["startTime"] = "pending"
    numeric_owner = make_task_binding("numeric-owner")
    numeric_owner["witness"]["processInstanceId"] = 42
    numeric_owner["witness"]["startTime"] = "not a date"
    storage.get_all_role_bindings.return_value = [
        pending,
        numeric_owner,
        {"roleId": "role-task-instance", "witness": {}},
        make_task_binding("t1"),
    ]

    tasks = await service.get_compensatable_tasks("proc-1")

    assert [t.id for t in tasks] == ["t1"]


@pytest.mark.asyncio
async def test_get_compensatable_tasks_skips_own_binding_with_invalid_witness(
    service, storage, make_task_binding
) -> None:
    broken = make_task_binding("broken", minutes=1)
    broken["witness"]["startTime"] = "yesterday-ish"
    storage.get_all_role_bindings.return_value = [broken, make_task_binding("t1")]

    assert [t.id for t in await service.get_compensatable_tasks("proc-1")] == ["t1"]


@pytest.mark.asyncio
async def test_get_compensatable_tasks_without_storage_returns_empty(orchestrator) -> None:
    service = CompensationService(None, orchestrator, None)

    assert await service.get_compensatable_tasks("proc-1") == []


def test_map_compensation_input_resolves_result_paths(service) -> None:
    task = Task(
        id="t1",
        process_instance_id="proc-1",
        result={"transaction": {"id": "tx-9", "amount": 42}},
    )

    mapped = service.map_compensation_input(
        task,
        {
            "txId": "${result.transaction.id}",
            "amount": "${result.transaction.amount}",
            "missing": "${result.transaction.nope}",
            "double": "${result.transaction.amount * 2}",
            "reason": "rollback",
        },
    )

    assert mapped == {
        "txId": "tx-9",
        "amount": 42,
        "missing": None,
        "double": 84,
        "reason": "rollback",
    }


def test_map_compensation_input_without_mapping_returns_result(service) -> None:
    result = {"orderId": "o-1"}

    assert service.map_compensation_input(Task(id="t1", result=result), {}) is result
    assert service.map_compensation_input(Task(id="t2"), None) == {}


def test_map_compensation_input_evaluates_task_expressions(service) -> None:
    task = Task(id="t1", node_id="charge", result={"amount": 10})

    mapped = service.map_compensation_input(
        task, {"node": "${task.node_id}", "bad": "${result.amount +}"}
    )

    assert mapped == {"node": "charge", "bad": None}


def test_evaluate_expression_delegates(service) -> None:
    assert service.evaluate_expression("a * 2 + 1", {"a": 4}) == 9
    assert service.evaluate_expression("a / 0", {"a": 4}) is None


@pytest.mark.asyncio
async def test_execute_compensation_handler_builds_compensation_task(
    service, agent_manager
) -> None:
    task = Task(id="t1", process_instance_id="proc-1", result={"reservation": {"id": "r-5"}})
    handler = CompensationHandler(
        service="inventory",
        action="release",
        input_mapping={"reservationId": "${result.reservation.id}"},
    )

    result = await service.execute_compensation_handler(task, handler)

    assert result == {"assigned": "compensation-t1"}
    compensation_task = agent_manager.assign_task.await_args.args[0]
    assert compensation_task.type == "compensation"
    assert compensation_task.priority == 10
    assert compensation_task.required_capabilities == ["inventory"]
    assert compensation_task.data.original_task_id == "t1"
    assert compensation_task.data.input == {"reservationId": "r-5"}
    assert compensation_task.metadata["is_compensation"] is True


@pytest.mark.asyncio
async def test_execute_compensation_handler_requires_agent_manager(storage, orchestrator) -> None:
    service = CompensationService(storage, orchestrator, None)

    with pytest.raises(DependencyMissingError, match="AgentManager is required"):
        await service.execute_compensation_handler(Task(id="t1"), CompensationHandler())


@pytest.mark.asyncio
async def test_execute_with_compensation_success_skips_compensation(service) -> None:
    operation = AsyncMock(return_value="done")
    compensate = Mock()

    assert await service.execute_with_compensation(operation, compensate) == "done"

    assert operation.await_count == 1
    assert compensate.call_count == 0


@pytest.mark.asyncio
async def test_execute_with_compensation_single_attempt_raises_after_compensating(service) -> None:
    error = RuntimeError("once")
    compensate = Mock()

    with pytest.raises(RuntimeError) as exc_info:
        await service.execute_with_compensation(Mock(side_effect=error), compensate, max_retries=1)

    assert exc_info.value is error
    assert compensate.call_count == 1


@pytest.mark.asyncio
async def test_execute_with_compensation_retries_until_success(service) -> None:
    operation = AsyncMock(side_effect=[RuntimeError("boom"), RuntimeError("boom"), "ok"])
    compensate = Mock()

    result = await service.execute_with_compensation(operation, compensate, max_retries=3)

    assert result == "ok"
    assert operation.await_count == 3
    assert compensate.call_count == 2


@pytest.mark.asyncio
async def test_execute_with_compensation_raises_last_error(service) -> None:
    errors = [ValueError("first"), ValueError("second")]
    operation = Mock(side_effect=errors)
    compensate = AsyncMock(side_effect=RuntimeError("compensation broke"))

    with pytest.raises(ValueError) as exc_info:
        await service.execute_with_compensation(operation, compensate, max_retries=2)

    assert exc_info.value is errors[1]
    assert compensate.await_count == 2


@pytest.mark.asyncio
async def test_execute_with_compensation_backs_off_exponentially(
    storage, orchestrator, agent_manager, monkeypatch
) -> None:
    sleep = AsyncMock()
    monkeypatch.setattr("process_orchestration.compensation.asyncio.sleep", sleep)
    service = CompensationService(
        storage, orchestrator, agent_manager, retry_backoff_seconds=1.0
    )

    with pytest.raises(RuntimeError):
        await service.execute_with_compensation(
            Mock(side_effect=RuntimeError("down")), Mock(), max_retries=3
        )

    assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]


@pytest.mark.asyncio
async def test_execute_with_compensation_rejects_zero_retries(service) -> None:
    with pytest.raises(ValueError, match="max_retries"):
        await service.execute_with_compensation(Mock(), Mock(), max_retries=0)


@pytest.mark.asyncio
async def test_compensate_process_runs_handlers_most_recent_first(
    service, storage, agent_manager, make_task_binding
) -> None:
    storage.get_all_role_bindings.return_value = [
        make_task_binding("t-reserve", node_id="reserve", minutes=0, result={"reservation": {"id": "r-1"}}),
        make_task_binding("t-charge", node_id="charge", minutes=1, result={"charge": "c-1"}),
        make_task_binding("t-notify", node_id="notify", minutes=2),
    ]
    events: list = []
    for event_type in CompensationEventType:
        service.on(event_type, events.append)

    outcome = await service.compensate_process("proc-1", None, _definition())

    dispatched = [c.args[0].data.original_task_id for c in agent_manager.assign_task.await_args_list]
    assert dispatched == ["t-charge", "t-reserve"]
    assert outcome.state == CompensationState.COMPLETED
    assert outcome.tasks_compensated == 2
    assert [e.type for e in events] == [
        CompensationEventType.STARTED,
        CompensationEventType.TASK_COMPLETED,
        CompensationEventType.TASK_COMPLETED,
        CompensationEventType.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_compensate_process_continues_after_handler_failure(
    service, storage, agent_manager, make_task_binding
) -> None:
    storage.get_all_role_bindings.return_value = [
        make_task_binding("t-reserve", node_id="reserve", minutes=0),
        make_task_binding("t-charge", node_id="charge", minutes=1),
    ]
    agent_manager.assign_task.side_effect = [RuntimeError("refund rejected"), {"ok": True}]

    outcome = await service.compensate_process("proc-1", None, _definition())

    assert outcome.state == CompensationState.FAILED
    assert outcome.tasks_compensated == 1
    assert [r.task_id for r in outcome.failed] == ["t-charge"]
    assert outcome.failed[0].error == "refund rejected"


@pytest.mark.asyncio
async def test_compensate_process_stops_when_configured(
    storage, orchestrator, agent_manager, make_task_binding
) -> None:
    service = CompensationService(
        storage,
        orchestrator,
        agent_manager,
        settings=ProcessCoreSettings(_env_file=None, continue_on_compensation_failure=False),
    )
    storage.get_all_role_bindings.return_value = [
        make_task_binding("t-reserve", node_id="reserve", minutes=0),
        make_task_binding("t-charge", node_id="charge", minutes=1),
    ]
    agent_manager.assign_task.side_effect = RuntimeError("refund rejected")
    failures: list = []
    service.on(CompensationEventType.FAILED, failures.append)

    with pytest.raises(CompensationFailedError, match="t-charge"):
        await service.compensate_process("proc-1", None, _definition())

    assert agent_manager.assign_task.await_count == 1
    assert len(failures) == 1


@pytest.mark.asyncio
async def test_rollback_transaction_limits_to_boundary_nodes(
    service, storage, agent_manager, make_task_binding
) -> None:
    storage.get_all_role_bindings.return_value = [
        make_task_binding("t-reserve", node_id="reserve", minutes=0),
        make_task_binding("t-charge", node_id="charge", minutes=1),
    ]
    rolled_back: list = []
    service.on(CompensationEventType.TRANSACTION_ROLLED_BACK, rolled_back.append)

    transaction_id = await service.define_transaction_boundary("proc-1", ["reserve"])
    outcome = await service.rollback_transaction(transaction_id, "proc-1", _definition())

    assert transaction_id == "txn-1"
    assert [r.task_id for r in outcome.results] == ["t-reserve"]
    assert service.get_transaction_boundary(transaction_id) is None
    payload = rolled_back[0].payload
    assert payload["transaction_id"] == "txn-1"
    assert datetime.fromisoformat(payload["started_at"]).tzinfo is not None
    assert payload["duration_seconds"] >= 0


@pytest.mark.asyncio
async def test_commit_transaction_forgets_boundary(service) -> None:
    committed: list = []
    service.on(CompensationEventType.TRANSACTION_COMMITTED, committed.append)

    transaction_id = await service.define_transaction_boundary("proc-1", ["reserve", "charge"])
    assert service.get_transaction_boundary(transaction_id).node_ids == {"reserve", "charge"}

    await service.commit_transaction(transaction_id)

    assert service.get_transaction_boundary(transaction_id) is None
    assert committed[0].instance_id == "proc-1"
    assert "started_at" in committed[0].payload


@pytest.mark.asyncio
async def test_commit_unknown_transaction_has_no_timing(service) -> None:
    committed: list = []
    service.on(CompensationEventType.TRANSACTION_COMMITTED, committed.append)

    await service.commit_transaction("never-defined")

    assert committed[0].instance_id is None
    assert committed[0].payload == {"transaction_id": "never-defined"}

"""Test configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest

from process_orchestration.config import ProcessCoreSettings
from process_orchestration.events import EventEmitter

TASK_ROLE_ID = "role-task-instance"
PROCESS_ROLE_ID = "role-process-instance"

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeOrchestrator(EventEmitter):
    """Process orchestrator double: real event dispatch, mocked lifecycle calls."""

    def __init__(self, storage: Any = None) -> None:
        super().__init__()
        self.role_ids = {"TaskInstance": TASK_ROLE_ID, "ProcessInstance": PROCESS_ROLE_ID}
        self.storage = storage
        self.start_process = AsyncMock(return_value="child-1")
        self.get_process_instance = AsyncMock(return_value=None)
        self.cancel_process = AsyncMock(return_value=None)


def task_binding(
    task_id: str,
    *,
    instance_id: str = "proc-1",
    node_id: str = "node-a",
    state: str = "completed",
    minutes: int = 0,
    result: Any = None,
    role_id: str = TASK_ROLE_ID,
) -> dict[str, Any]:
    """A task instance role binding as the storage layer returns it."""
    return {
        "id": f"binding-{task_id}",
        "thingId": task_id,
        "roleId": role_id,
        "witness": {
            "processInstanceId": instance_id,
            "nodeId": node_id,
            "state": state,
            "startTime": (BASE_TIME + timedelta(minutes=minutes)).isoformat(),
            "result": result,
        },
    }


@pytest.fixture
def settings() -> ProcessCoreSettings:
    """Provide settings without retry delays."""
    return ProcessCoreSettings(
        _env_file=None,
        retry_backoff_seconds=0,
        subprocess_timeout_seconds=5,
    )


@pytest.fixture
def storage() -> Mock:
    """Provide an in-memory storage gateway double."""
    gateway = Mock()
    gateway.get_all_role_bindings = AsyncMock(return_value=[])
    gateway.get_role_bindings_by_thing = AsyncMock(return_value=[])
    gateway.update_role_binding = AsyncMock(return_value=None)
    gateway.create_thing = AsyncMock(return_value="txn-1")
    return gateway


@pytest.fixture
def orchestrator(storage: Mock) -> FakeOrchestrator:
    return FakeOrchestrator(storage)


@pytest.fixture
def agent_manager() -> Mock:
    """Provide an agent manager that accepts every task."""
    manager = Mock()
    manager.assign_task = AsyncMock(side_effect=lambda task: {"assigned": task.id})
    return manager


@pytest.fixture
def make_task_binding():
    return task_binding

"""Interfaces of the external collaborators the core calls into.

These are black boxes: the storage layer, the agent/task execution backend and
the process-instance state machine. Only the surface used here is described.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from process_orchestration.events import Listener
from process_orchestration.models import (
    CompensationTask,
    ProcessDefinition,
    ProcessInstance,
    RoleBinding,
)


class StorageGateway(Protocol):
    """Generic entity/role-binding store."""

    async def get_all_role_bindings(self) -> Sequence[RoleBinding]: ...

    async def get_role_bindings_by_thing(self, thing_id: str) -> Sequence[RoleBinding]: ...

    async def update_role_binding(self, binding_id: str, witness: dict[str, Any]) -> None: ...

    async def create_thing(self) -> str: ...


class AgentManager(Protocol):
    """Executes a task description against some execution backend."""

    async def assign_task(self, task: CompensationTask) -> Any: ...


class ProcessOrchestrator(Protocol):
    """Owns process-instance lifecycle and publishes ``process:*`` events."""

    role_ids: Mapping[str, str]
    storage: StorageGateway | None

    async def start_process(
        self,
        definition: ProcessDefinition,
        variables: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> str: ...

    async def get_process_instance(self, instance_id: str) -> ProcessInstance | None: ...

    async def cancel_process(self, instance_id: str) -> None: ...

    def on(self, event_type: str, listener: Listener) -> None: ...

    def off(self, event_type: str, listener: Listener) -> None: ...

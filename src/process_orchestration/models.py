"""Pydantic models for the records the core reads and the tasks it dispatches.

Records coming from the storage layer use camelCase keys (``thingId``,
``processInstanceId``); every model accepts those aliases as well as the
snake_case field names.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TASK_INSTANCE_ROLE = "TaskInstance"
PROCESS_INSTANCE_ROLE = "ProcessInstance"

COMPLETED_TASK_STATE = "completed"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CompensationState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RoleBinding(_Record):
    """Associates a thing (entity) with a role; ``witness`` holds its state."""

    id: str | None = None
    thing_id: str
    role_id: str
    witness: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, raw: RoleBinding | Mapping[str, Any]) -> RoleBinding:
        return raw if isinstance(raw, RoleBinding) else cls.model_validate(raw)


class Task(_Record):
    """Core-facing projection of a task instance role binding."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    process_instance_id: str | None = None
    node_id: str | None = None
    state: str | None = None
    start_time: datetime | None = None
    result: Any = None

    @classmethod
    def from_binding(cls, binding: RoleBinding) -> Task:
        return cls.model_validate({**binding.witness, "id": binding.thing_id})

    def sort_key(self) -> datetime:
        """Chronological key; tasks without a start time sort first."""

        if self.start_time is None:
            return datetime.min.replace(tzinfo=UTC)
        if self.start_time.tzinfo is None:
            return self.start_time.replace(tzinfo=UTC)
        return self.start_time


class CompensationHandler(_Record):
    """How to undo a workflow step.

    ``input_mapping`` maps target field names to either a literal value or an
    interpolation such as ``"${result.transaction.id}"``.
    """

    service: str | None = None
    action: str | None = None
    input_mapping: dict[str, Any] = Field(default_factory=dict)


class CompensationTaskData(_Record):
    original_task_id: str
    service: str | None = None
    action: str | None = None
    input: Any = None


class CompensationTask(_Record):
    """Ephemeral task record handed to the agent manager."""

    id: str
    type: Literal["compensation"] = "compensation"
    data: CompensationTaskData
    required_capabilities: list[str] = Field(default_factory=list)
    priority: int = 10
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskCompensationResult(BaseModel):
    task_id: str
    node_id: str | None = None
    state: CompensationState
    result: Any = None
    error: str | None = None


class ProcessCompensationResult(BaseModel):
    state: CompensationState
    tasks_compensated: int
    results: list[TaskCompensationResult] = Field(default_factory=list)

    @property
    def failed(self) -> list[TaskCompensationResult]:
        return [r for r in self.results if r.state == CompensationState.FAILED]


class NodeData(_Record):
    """The parts of a node's ``data`` block this package understands."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    compensation_handler: CompensationHandler | None = None

    input_mapping: dict[str, Any] = Field(default_factory=dict)
    output_mapping: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)

    is_embedded: bool = False
    embedded_process: ProcessDefinition | None = None
    process_definition_id: str | None = None


class ProcessNode(_Record):
    id: str
    type: str | None = None
    data: NodeData = Field(default_factory=NodeData)


class ProcessDefinition(_Record):
    id: str
    name: str | None = None
    nodes: list[ProcessNode] = Field(default_factory=list)

    def find_node(self, node_id: str | None) -> ProcessNode | None:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class ProcessInstance(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    state: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    business_key: str | None = None
    priority: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


NodeData.model_rebuild()
ProcessNode.model_rebuild()
ProcessDefinition.model_rebuild()

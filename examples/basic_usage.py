#!/usr/bin/env python3
"""Programmatic sub-process and compensation example.

This wires the process core to small in-memory collaborators:

* an order process has already reserved stock and charged a card
* it starts an embedded "shipping" sub-process
* the shipping process completes, or fails with ``--fail-child``; a failure
  rolls back the parent's completed tasks, most recent first
"""

from __future__ import annotations

import argparse
import asyncio
import itertools
from datetime import UTC, datetime, timedelta
from typing import Any, Sequence

from process_orchestration import ProcessCore, ProcessCoreSettings
from process_orchestration.errors import SubProcessError
from process_orchestration.events import EventEmitter, ProcessEvent, ProcessEventType
from process_orchestration.models import (
    CompensationTask,
    ProcessDefinition,
    ProcessInstance,
    RoleBinding,
)

TASK_ROLE = "role-task"
PROCESS_ROLE = "role-process"


class InMemoryStorage:
    def __init__(self) -> None:
        self.bindings: list[RoleBinding] = []
        self._ids = itertools.count(1)

    async def get_all_role_bindings(self) -> list[RoleBinding]:
        return list(self.bindings)

    async def get_role_bindings_by_thing(self, thing_id: str) -> list[RoleBinding]:
        return [b for b in self.bindings if b.thing_id == thing_id]

    async def update_role_binding(self, binding_id: str, witness: dict[str, Any]) -> None:
        for binding in self.bindings:
            if binding.id == binding_id:
                binding.witness = witness

    async def create_thing(self) -> str:
        return f"thing-{next(self._ids)}"


class PrintingAgentManager:
    async def assign_task(self, task: CompensationTask) -> dict[str, Any]:
        print(f"compensating {task.data.original_task_id}: {task.data.service}.{task.data.action}")
        return {"accepted": task.id}


class InMemoryOrchestrator(EventEmitter):
    """Finishes every started process shortly after it starts."""

    def __init__(self, storage: InMemoryStorage, fail_children: bool) -> None:
        super().__init__()
        self.role_ids = {"TaskInstance": TASK_ROLE, "ProcessInstance": PROCESS_ROLE}
        self.storage = storage
        self.instances: dict[str, ProcessInstance] = {}
        self.fail_children = fail_children

    def add_instance(self, instance: ProcessInstance) -> None:
        self.instances[instance.id] = instance
        self.storage.bindings.append(
            RoleBinding(
                id=f"binding-{instance.id}",
                thing_id=instance.id,
                role_id=PROCESS_ROLE,
                witness={"variables": dict(instance.variables)},
            )
        )

    async def start_process(
        self,
        definition: ProcessDefinition,
        variables: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> str:
        instance_id = (options or {}).get("business_key") or definition.id
        self.add_instance(ProcessInstance(id=instance_id, state="running", variables=variables))
        asyncio.get_running_loop().call_later(0.05, self._finish, instance_id)
        return instance_id

    def _finish(self, instance_id: str) -> None:
        instance = self.instances[instance_id]
        if self.fail_children:
            instance.state = "failed"
            self.emit(
                ProcessEvent(
                    type=ProcessEventType.FAILED,
                    instance_id=instance_id,
                    payload={"error": "carrier unavailable"},
                )
            )
            return
        instance.state = "completed"
        instance.variables["trackingNumber"] = "TN-0001"
        self.emit(ProcessEvent(type=ProcessEventType.COMPLETED, instance_id=instance_id))

    async def get_process_instance(self, instance_id: str) -> ProcessInstance | None:
        return self.instances.get(instance_id)

    async def cancel_process(self, instance_id: str) -> None:
        self.instances[instance_id].state = "cancelled"


ORDER_FLOW = ProcessDefinition.model_validate(
    {
        "id": "order-flow",
        "nodes": [
            {
                "id": "reserve",
                "data": {
                    "compensationHandler": {
                        "service": "inventory",
                        "action": "release",
                        "inputMapping": {"reservationId": "${result.reservationId}"},
                    }
                },
            },
            {
                "id": "charge",
                "data": {
                    "compensationHandler": {
                        "service": "payments",
                        "action": "refund",
                        "inputMapping": {"amount": "${result.amount}", "reason": "shipping failed"},
                    }
                },
            },
            {
                "id": "ship",
                "type": "subprocess",
                "data": {
                    "isEmbedded": True,
                    "embeddedProcess": {"id": "shipping", "nodes": [{"id": "pack"}]},
                    "inputMapping": {"order": "${orderId}"},
                    "outputMapping": {"tracking": "trackingNumber"},
                    "timeoutSeconds": 5,
                },
            },
        ],
    }
)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an order process with a shipping sub-process.")
    parser.add_argument(
        "--fail-child",
        action="store_true",
        help="Make the shipping sub-process fail so the order is rolled back",
    )
    return parser.parse_args(argv)


async def _run(fail_child: bool) -> int:
    storage = InMemoryStorage()
    orchestrator = InMemoryOrchestrator(storage, fail_children=fail_child)
    core = ProcessCore(storage, orchestrator, PrintingAgentManager(), ProcessCoreSettings())

    orchestrator.add_instance(
        ProcessInstance(id="order-1", state="running", business_key="order-1", variables={"orderId": "o-1"})
    )
    started = datetime.now(UTC)
    for offset, (node_id, result) in enumerate(
        [("reserve", {"reservationId": "r-9"}), ("charge", {"amount": 42})]
    ):
        storage.bindings.append(
            RoleBinding(
                id=f"binding-task-{node_id}",
                thing_id=f"task-{node_id}",
                role_id=TASK_ROLE,
                witness={
                    "processInstanceId": "order-1",
                    "nodeId": node_id,
                    "state": "completed",
                    "startTime": (started + timedelta(seconds=offset)).isoformat(),
                    "result": result,
                },
            )
        )

    try:
        completion = await core.execute_sub_process(
            "order-1", ORDER_FLOW, ORDER_FLOW.find_node("ship")
        )
    except SubProcessError as e:
        print(f"order rolled back: {e}")
        return 1

    parent = next(b for b in storage.bindings if b.thing_id == "order-1")
    print(f"sub-process {completion.instance_id} {completion.state}")
    print(f"order variables: {parent.witness['variables']}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    return asyncio.run(_run(args.fail_child))


if __name__ == "__main__":
    raise SystemExit(main())

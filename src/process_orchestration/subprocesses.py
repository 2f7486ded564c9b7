"""Nested process execution.

Tracks parent/child relationships between process instances, maps variables
across the parent/child boundary and waits for child completion by listening
to the process orchestrator's lifecycle events.

The hierarchy lives in two maps owned by one :class:`SubProcessManager`:
``process_hierarchy`` (parent -> children) and ``child_to_parent`` (the
inverse index). It is in-process state only; sharing it across processes or
machines needs an external consistent store.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from process_orchestration.config import ProcessCoreSettings
from process_orchestration.errors import (
    DependencyMissingError,
    InvalidSubProcessDefinitionError,
    ProcessInstanceNotFoundError,
    SubProcessCancelledError,
    SubProcessFailedError,
    SubProcessTimeoutError,
)
from process_orchestration.events import (
    EventEmitter,
    ProcessEvent,
    ProcessEventType,
    SubProcessEventType,
)
from process_orchestration.expressions import match_interpolation, resolve_path
from process_orchestration.interfaces import ProcessOrchestrator, StorageGateway
from process_orchestration.logging import bind_logger
from process_orchestration.models import (
    PROCESS_INSTANCE_ROLE,
    ProcessDefinition,
    ProcessNode,
    RoleBinding,
)

logger = logging.getLogger(__name__)

DefinitionLoader = Callable[[str], Awaitable[ProcessDefinition | None]]

_TERMINAL_COMPLETED = "completed"
_TERMINAL_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SubProcessCompletion:
    instance_id: str
    state: str = _TERMINAL_COMPLETED

    def to_json(self) -> dict[str, object]:
        return {"state": self.state, "instance_id": self.instance_id}


@dataclass(frozen=True, slots=True)
class HierarchyNode:
    """A process instance and, recursively, the children registered under it."""

    instance_id: str
    children: tuple[HierarchyNode, ...] = ()

    def to_json(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "children": [child.to_json() for child in self.children],
        }


class SubProcessManager(EventEmitter):
    """Handles sub-process lifecycle within parent processes."""

    def __init__(
        self,
        process_orchestrator: ProcessOrchestrator | None,
        storage: StorageGateway | None = None,
        *,
        definition_loader: DefinitionLoader | None = None,
        settings: ProcessCoreSettings | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            process_orchestrator: Event source and process lifecycle owner.
            storage: Role binding store; defaults to the orchestrator's.
            definition_loader: Resolves ``process_definition_id`` references
                of call-activity style sub-process nodes.
            settings: Defaults for timeouts and cleanup behaviour.

        Raises:
            DependencyMissingError: If no process orchestrator is given.
        """
        super().__init__()
        if process_orchestrator is None:
            raise DependencyMissingError("ProcessOrchestrator", "SubProcessManager")

        self.settings = settings or ProcessCoreSettings()
        self.process_orchestrator = process_orchestrator
        self.storage = storage if storage is not None else getattr(process_orchestrator, "storage", None)
        self.definition_loader = definition_loader

        # Child collections are dicts used as insertion-ordered sets.
        self.process_hierarchy: dict[str, dict[str, None]] = {}
        self.child_to_parent: dict[str, str] = {}
        self._lock = threading.RLock()

        logger.info("SubProcessManager initialized")

    def map_input_variables(
        self, parent_variables: Mapping[str, Any], input_mapping: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Build child variables from parent variables.

        An empty mapping passes every parent variable through. Otherwise each
        child variable is read from ``"${parentVar}"`` (dotted paths allowed)
        or set to the literal value given.
        """
        if not input_mapping:
            return dict(parent_variables)

        child_variables: dict[str, Any] = {}
        for child_name, source in input_mapping.items():
            parent_name = match_interpolation(source)
            if parent_name is None:
                child_variables[child_name] = source
            elif parent_name in parent_variables:
                child_variables[child_name] = parent_variables[parent_name]
            else:
                child_variables[child_name] = resolve_path(parent_variables, parent_name)

        logger.debug(
            "Mapped input variables",
            extra={"input_mapping": dict(input_mapping), "child_variables": sorted(child_variables)},
        )
        return child_variables

    def register_parent_child(self, parent_id: str, child_id: str) -> None:
        """Record ``child_id`` as a child of ``parent_id``.

        A child belongs to at most one parent; registering it again under a
        different parent moves it.
        """
        if parent_id == child_id:
            raise ValueError(f"A process cannot be its own sub-process: {parent_id}")

        with self._lock:
            previous = self.child_to_parent.get(child_id)
            if previous is not None and previous != parent_id:
                self.process_hierarchy.get(previous, {}).pop(child_id, None)

            self.process_hierarchy.setdefault(parent_id, {})[child_id] = None
            self.child_to_parent[child_id] = parent_id

        logger.debug(
            "Registered parent-child relationship",
            extra={"parent_instance_id": parent_id, "child_instance_id": child_id},
        )

    def get_child_processes(self, parent_id: str) -> list[str]:
        with self._lock:
            return list(self.process_hierarchy.get(parent_id, ()))

    def get_parent_process(self, child_id: str) -> str | None:
        with self._lock:
            return self.child_to_parent.get(child_id)

    def get_process_hierarchy(self, root_id: str) -> HierarchyNode:
        """Depth-first tree of registered descendants of ``root_id``.

        An instance already on the current path is emitted as a leaf, so a
        malformed (cyclic) hierarchy still terminates.
        """
        with self._lock:
            return self._build_node(root_id, frozenset())

    def _build_node(self, instance_id: str, path: frozenset[str]) -> HierarchyNode:
        if instance_id in path:
            logger.warning("Cycle in process hierarchy", extra={"instance_id": instance_id})
            return HierarchyNode(instance_id=instance_id)

        path = path | {instance_id}
        children = tuple(
            self._build_node(child_id, path)
            for child_id in self.process_hierarchy.get(instance_id, ())
        )
        return HierarchyNode(instance_id=instance_id, children=children)

    def cleanup_hierarchy(self, instance_id: str, *, detach_from_parent: bool | None = None) -> None:
        """Forget the hierarchy tracking of a finished instance.

        Empties the instance's child set (the key stays) and drops the inverse
        entries of those children, then removes the instance from
        ``child_to_parent``. Grandchildren are not touched. The instance stays
        in its parent's child set unless ``detach_from_parent`` is true
        (default: ``settings.symmetric_hierarchy_cleanup``).
        """
        detach = (
            self.settings.symmetric_hierarchy_cleanup
            if detach_from_parent is None
            else detach_from_parent
        )

        with self._lock:
            children = self.process_hierarchy.get(instance_id)
            if children is not None:
                for child_id in children:
                    if self.child_to_parent.get(child_id) == instance_id:
                        del self.child_to_parent[child_id]
                children.clear()

            parent_id = self.child_to_parent.pop(instance_id, None)
            if detach and parent_id is not None:
                self.process_hierarchy.get(parent_id, {}).pop(instance_id, None)

        logger.debug(
            "Cleaned up process hierarchy",
            extra={"instance_id": instance_id, "parent_instance_id": parent_id, "detached": detach},
        )

    async def wait_for_sub_process_completion(
        self,
        child_id: str,
        timeout_seconds: float | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        check_current_state: bool = False,
    ) -> SubProcessCompletion:
        """Wait for the orchestrator to report ``child_id`` as finished.

        Lifecycle events must be emitted on the event loop running this
        coroutine. The first matching event wins; listeners and the timer are
        released whatever the outcome.

        Args:
            child_id: Child process instance to wait for.
            timeout_seconds: Defaults to ``settings.subprocess_timeout_seconds``.
            cancel_event: Optional token; setting it abandons the wait.
            check_current_state: After subscribing, also ask the orchestrator
                for the instance once, so a child that finished before the
                wait began is not missed.

        Raises:
            SubProcessFailedError: A ``process:failed`` event for the child.
            SubProcessTimeoutError: No matching event within the timeout.
            SubProcessCancelledError: ``cancel_event`` was set first.
        """
        timeout = self.settings.subprocess_timeout_seconds if timeout_seconds is None else timeout_seconds
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[SubProcessCompletion] = loop.create_future()

        def on_completed(event: ProcessEvent) -> None:
            if event.instance_id != child_id or outcome.done():
                return
            outcome.set_result(SubProcessCompletion(instance_id=child_id))

        def on_failed(event: ProcessEvent) -> None:
            if event.instance_id != child_id or outcome.done():
                return
            outcome.set_exception(SubProcessFailedError(child_id, event.error))

        self.process_orchestrator.on(ProcessEventType.COMPLETED, on_completed)
        self.process_orchestrator.on(ProcessEventType.FAILED, on_failed)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None

        try:
            if check_current_state:
                await self._settle_from_current_state(child_id, outcome)

            waiters: set[asyncio.Future[Any]] = {outcome}
            if cancel_waiter is not None:
                waiters.add(cancel_waiter)

            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if outcome in done:
                return outcome.result()
            if cancel_waiter is not None and cancel_waiter in done:
                raise SubProcessCancelledError(child_id)
            raise SubProcessTimeoutError(child_id, timeout)
        finally:
            self.process_orchestrator.off(ProcessEventType.COMPLETED, on_completed)
            self.process_orchestrator.off(ProcessEventType.FAILED, on_failed)
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not outcome.done():
                outcome.cancel()

    async def _settle_from_current_state(
        self, child_id: str, outcome: asyncio.Future[SubProcessCompletion]
    ) -> None:
        instance = await self.process_orchestrator.get_process_instance(child_id)
        if instance is None or outcome.done():
            return
        if instance.state == _TERMINAL_COMPLETED:
            outcome.set_result(SubProcessCompletion(instance_id=child_id))
        elif instance.state == _TERMINAL_FAILED:
            outcome.set_exception(
                SubProcessFailedError(child_id, instance.metadata.get("error", "unknown error"))
            )

    async def execute_sub_process(
        self,
        parent_id: str,
        process_definition: ProcessDefinition,
        sub_process_node: ProcessNode,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SubProcessCompletion:
        """Start a child process for ``sub_process_node`` and wait for it.

        Input variables are mapped from the parent, the child is registered in
        the hierarchy, and on completion output variables are mapped back.
        """
        log = bind_logger(
            logger, parent_instance_id=parent_id, sub_process_node_id=sub_process_node.id
        )
        try:
            log.info("Starting subprocess execution")

            parent = await self.process_orchestrator.get_process_instance(parent_id)
            if parent is None:
                raise ProcessInstanceNotFoundError(parent_id, "Parent process")

            definition = await self.get_sub_process_definition(sub_process_node, process_definition)
            child_variables = self.map_input_variables(
                parent.variables, sub_process_node.data.input_mapping
            )

            child_id = await self.process_orchestrator.start_process(
                definition,
                child_variables,
                {
                    "business_key": f"{parent.business_key or parent_id}-sub-{sub_process_node.id}",
                    "priority": parent.priority,
                    "metadata": {
                        "parent_process_instance_id": parent_id,
                        "parent_node_id": sub_process_node.id,
                        "is_sub_process": True,
                    },
                },
            )

            log = log.bind(child_instance_id=child_id)
            self.register_parent_child(parent_id, child_id)
            self.emit(
                ProcessEvent(
                    type=SubProcessEventType.STARTED,
                    instance_id=child_id,
                    payload={
                        "parent_instance_id": parent_id,
                        "sub_process_node_id": sub_process_node.id,
                    },
                )
            )

            result = await self.wait_for_sub_process_completion(
                child_id,
                sub_process_node.data.timeout_seconds,
                cancel_event=cancel_event,
                check_current_state=True,
            )

            await self.map_output_variables(
                parent_id, child_id, sub_process_node.data.output_mapping
            )
        except Exception as e:
            log.error("Subprocess execution failed", exc_info=True)
            self.emit(
                ProcessEvent(
                    type=SubProcessEventType.FAILED,
                    instance_id=parent_id,
                    payload={"sub_process_node_id": sub_process_node.id, "error": e},
                )
            )
            raise

        log.info("Subprocess completed")
        self.emit(
            ProcessEvent(
                type=SubProcessEventType.COMPLETED,
                instance_id=child_id,
                payload={"parent_instance_id": parent_id, "result": result},
            )
        )
        return result

    async def get_sub_process_definition(
        self, sub_process_node: ProcessNode, parent_definition: ProcessDefinition | None = None
    ) -> ProcessDefinition:
        """Embedded process of the node, or the definition it references.

        A reference to the parent's own definition id (a recursive call) is
        answered with ``parent_definition`` without consulting the loader.
        """
        data = sub_process_node.data
        if data.is_embedded and data.embedded_process is not None:
            return data.embedded_process

        if data.process_definition_id:
            if parent_definition is not None and parent_definition.id == data.process_definition_id:
                return parent_definition
            if self.definition_loader is None:
                raise InvalidSubProcessDefinitionError(
                    f"No definition loader configured for process definition: "
                    f"{data.process_definition_id}"
                )
            definition = await self.definition_loader(data.process_definition_id)
            if definition is None:
                raise InvalidSubProcessDefinitionError(
                    f"Process definition not found: {data.process_definition_id}"
                )
            return definition

        raise InvalidSubProcessDefinitionError(
            "SubProcess node must have either an embedded process or a process_definition_id"
        )

    async def map_output_variables(
        self, parent_id: str, child_id: str, output_mapping: Mapping[str, str] | None = None
    ) -> None:
        """Copy child variables back into the parent instance's binding.

        An empty mapping merges every child variable into the parent.
        Otherwise ``{parent_var: child_var}`` pairs are copied for child
        variables that exist.
        """
        child = await self.process_orchestrator.get_process_instance(child_id)
        if child is None:
            raise ProcessInstanceNotFoundError(child_id, "Child process")

        if self.storage is None:
            raise DependencyMissingError("StorageGateway", "output variable mapping")

        process_role_id = self.process_orchestrator.role_ids.get(PROCESS_INSTANCE_ROLE)
        bindings = [
            RoleBinding.coerce(raw)
            for raw in await self.storage.get_role_bindings_by_thing(parent_id)
        ]
        parent_binding = next((b for b in bindings if b.role_id == process_role_id), None)
        if parent_binding is None or parent_binding.id is None:
            raise ProcessInstanceNotFoundError(parent_id, "Parent process")

        variables = dict(parent_binding.witness.get("variables") or {})
        if not output_mapping:
            variables.update(child.variables)
        else:
            for parent_name, child_name in output_mapping.items():
                if child_name in child.variables:
                    variables[parent_name] = child.variables[child_name]

        await self.storage.update_role_binding(
            parent_binding.id, {**parent_binding.witness, "variables": variables}
        )

        logger.debug(
            "Mapped output variables",
            extra={
                "parent_instance_id": parent_id,
                "child_instance_id": child_id,
                "merged_all": not output_mapping,
            },
        )

    async def cancel_child_processes(self, parent_id: str) -> list[str]:
        """Cancel every registered child of ``parent_id``.

        Returns:
            Ids of the children whose cancellation succeeded. Failures are
            logged and do not stop the remaining cancellations.
        """
        child_ids = self.get_child_processes(parent_id)
        logger.info(
            "Cancelling child processes",
            extra={"parent_instance_id": parent_id, "child_count": len(child_ids)},
        )

        cancelled: list[str] = []
        for child_id in child_ids:
            try:
                await self.process_orchestrator.cancel_process(child_id)
            except Exception:
                logger.exception("Failed to cancel child process", extra={"child_id": child_id})
                continue
            cancelled.append(child_id)
        return cancelled

"""Compensation and rollback for completed process tasks.

Derives the compensatable task list from a process instance's task history,
maps task results into compensation-handler inputs and dispatches compensation
tasks through the agent manager. Also offers a generic retry-with-compensation
primitive for single operations.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from process_orchestration.config import ProcessCoreSettings
from process_orchestration.errors import CompensationFailedError, DependencyMissingError
from process_orchestration.events import CompensationEventType, EventEmitter, ProcessEvent
from process_orchestration.expressions import (
    evaluate_expression,
    is_dotted_path,
    match_interpolation,
    resolve_path,
)
from process_orchestration.interfaces import AgentManager, ProcessOrchestrator, StorageGateway
from process_orchestration.logging import bind_logger
from process_orchestration.models import (
    COMPLETED_TASK_STATE,
    TASK_INSTANCE_ROLE,
    CompensationHandler,
    CompensationState,
    CompensationTask,
    CompensationTaskData,
    ProcessCompensationResult,
    ProcessDefinition,
    RoleBinding,
    Task,
    TaskCompensationResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class TransactionBoundary:
    transaction_id: str
    process_instance_id: str
    node_ids: frozenset[str]
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def elapsed_seconds(self) -> float:
        return (datetime.now(UTC) - self.started_at).total_seconds()


def _transaction_payload(
    transaction_id: str, boundary: TransactionBoundary | None
) -> dict[str, object]:
    if boundary is None:
        return {"transaction_id": transaction_id}
    return {
        "transaction_id": transaction_id,
        "started_at": boundary.started_at.isoformat(),
        "duration_seconds": boundary.elapsed_seconds(),
    }


def _witness_field(witness: Mapping[str, Any], name: str, alias: str) -> Any:
    return witness[alias] if alias in witness else witness.get(name)


async def _invoke(fn: Callable[[], T | Awaitable[T]]) -> T:
    result = fn()
    if inspect.isawaitable(result):
        return await result
    return result


class CompensationService(EventEmitter):
    """Saga-style compensation for process instances.

    Only ``agent_manager`` is needed to execute a compensation; without
    ``storage`` or ``process_orchestrator`` task discovery yields nothing.
    """

    def __init__(
        self,
        storage: StorageGateway | None = None,
        process_orchestrator: ProcessOrchestrator | None = None,
        agent_manager: AgentManager | None = None,
        *,
        continue_on_compensation_failure: bool | None = None,
        retry_backoff_seconds: float | None = None,
        settings: ProcessCoreSettings | None = None,
    ) -> None:
        super().__init__()
        self.settings = settings or ProcessCoreSettings()

        self.storage = storage
        self.process_orchestrator = process_orchestrator
        self.agent_manager = agent_manager

        self.continue_on_compensation_failure = (
            self.settings.continue_on_compensation_failure
            if continue_on_compensation_failure is None
            else continue_on_compensation_failure
        )
        self.retry_backoff_seconds = (
            self.settings.retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )

        self._transactions: dict[str, TransactionBoundary] = {}

        logger.info(
            "CompensationService initialized",
            extra={"continue_on_compensation_failure": self.continue_on_compensation_failure},
        )

    async def get_compensatable_tasks(
        self, process_instance_id: str, from_task_id: str | None = None
    ) -> list[Task]:
        """Completed tasks of an instance, oldest first.

        Args:
            process_instance_id: Process instance whose task history is read.
            from_task_id: If it matches a task, only tasks strictly before it
                are returned. An unknown id leaves the list untouched.

        Returns:
            Tasks sorted by ascending start time. Callers wanting saga order
            (most recent first) reverse it themselves.
        """
        if self.storage is None or self.process_orchestrator is None:
            logger.warning(
                "Task discovery needs storage and a process orchestrator; nothing to compensate",
                extra={"process_instance_id": process_instance_id},
            )
            return []

        task_role_id = self.process_orchestrator.role_ids.get(TASK_INSTANCE_ROLE)
        bindings = await self.storage.get_all_role_bindings()

        # Filter on raw witness fields first; only matching bindings are
        # validated, so a malformed record of another instance cannot fail
        # discovery for this one.
        tasks: list[Task] = []
        for raw in bindings:
            try:
                binding = RoleBinding.coerce(raw)
            except ValidationError:
                logger.warning("Skipping malformed role binding", exc_info=True)
                continue
            if binding.role_id != task_role_id:
                continue
            witness = binding.witness
            if _witness_field(witness, "process_instance_id", "processInstanceId") != process_instance_id:
                continue
            if witness.get("state") != COMPLETED_TASK_STATE:
                continue
            try:
                tasks.append(Task.from_binding(binding))
            except ValidationError as e:
                logger.warning(
                    "Skipping task binding with invalid witness",
                    extra={
                        "process_instance_id": process_instance_id,
                        "task_id": binding.thing_id,
                        "error": str(e),
                    },
                )

        tasks.sort(key=Task.sort_key)

        if from_task_id is not None:
            for index, task in enumerate(tasks):
                if task.id == from_task_id:
                    tasks = tasks[:index]
                    break

        return tasks

    def map_compensation_input(
        self, task: Task, input_mapping: Mapping[str, Any] | None = None
    ) -> Any:
        """Translate a task result into compensation handler input.

        Without a mapping the task result itself is returned. Otherwise each
        target key is filled from ``"${result.<path>}"`` (resolved against the
        result, type preserved), from a generic ``"${expression}"``, or with
        the literal value as given.
        """
        if not input_mapping:
            return task.result if task.result is not None else {}

        mapped: dict[str, Any] = {}
        for target, source in input_mapping.items():
            path = match_interpolation(source, prefix="result")
            if path is not None and is_dotted_path(path):
                mapped[target] = resolve_path(task.result, path)
                continue

            expression = match_interpolation(source)
            if expression is not None:
                mapped[target] = self.evaluate_expression(
                    expression, {"task": task.model_dump(), "result": task.result}
                )
            else:
                mapped[target] = source

        return mapped

    def evaluate_expression(self, expression: str, context: Mapping[str, Any] | None) -> Any:
        """Evaluate a restricted arithmetic/property expression; ``None`` on error."""
        return evaluate_expression(expression, context)

    async def execute_compensation_handler(
        self, task: Task, handler: CompensationHandler
    ) -> Any:
        """Dispatch the compensation of ``task`` to the agent manager.

        Raises:
            DependencyMissingError: If no agent manager is configured.
        """
        if self.agent_manager is None:
            raise DependencyMissingError("AgentManager", "compensation execution")

        compensation_task = CompensationTask(
            id=f"compensation-{task.id}",
            data=CompensationTaskData(
                original_task_id=task.id,
                service=handler.service,
                action=handler.action,
                input=self.map_compensation_input(task, handler.input_mapping),
            ),
            required_capabilities=[handler.service or "generic"],
            priority=self.settings.compensation_priority,
            metadata={
                "is_compensation": True,
                "original_task_id": task.id,
                "process_instance_id": task.process_instance_id,
            },
        )

        logger.info(
            "Executing compensation handler",
            extra={
                "task_id": task.id,
                "service": handler.service,
                "action": handler.action,
            },
        )

        result = await self.agent_manager.assign_task(compensation_task)

        logger.info(
            "Compensation handler completed",
            extra={"task_id": task.id, "compensation_task_id": compensation_task.id},
        )
        return result

    async def execute_with_compensation(
        self,
        operation: Callable[[], T | Awaitable[T]],
        compensation_fn: Callable[[], Any],
        max_retries: int | None = None,
    ) -> T:
        """Run ``operation``, compensating and retrying after each failure.

        Args:
            operation: Zero-argument callable, sync or async.
            compensation_fn: Zero-argument callable invoked once per failed
                attempt. Its own failure is logged and does not stop retries.
            max_retries: Total attempts of ``operation`` (default from settings).

        Returns:
            The first successful result of ``operation``.

        Raises:
            Exception: The last error from ``operation``, unchanged, once all
                attempts have failed.
        """
        attempts = self.settings.max_retries if max_retries is None else max_retries
        if attempts < 1:
            raise ValueError(f"max_retries must be at least 1, got {attempts}")

        attempt = 0
        while True:
            attempt += 1
            try:
                return await _invoke(operation)
            except Exception as e:
                logger.warning(
                    "Operation failed",
                    extra={"attempt": attempt, "max_retries": attempts, "error": str(e)},
                )
                await self._run_compensation_fn(compensation_fn, attempt)
                if attempt >= attempts:
                    raise

            delay = self.retry_backoff_seconds * 2**attempt
            if delay > 0:
                await asyncio.sleep(delay)

    async def _run_compensation_fn(self, compensation_fn: Callable[[], Any], attempt: int) -> None:
        try:
            await _invoke(compensation_fn)
        except Exception:
            logger.exception("Compensation failed", extra={"attempt": attempt})

    async def compensate_process(
        self,
        process_instance_id: str,
        from_task_id: str | None,
        process_definition: ProcessDefinition,
        *,
        node_ids: Collection[str] | None = None,
    ) -> ProcessCompensationResult:
        """Undo completed tasks of an instance, most recent first.

        Tasks whose node declares no ``compensation_handler`` are skipped. With
        ``node_ids`` only tasks of those nodes are considered.

        Raises:
            CompensationFailedError: A handler failed and
                ``continue_on_compensation_failure`` is false.
            DependencyMissingError: No agent manager is configured.
        """
        log = bind_logger(logger, process_instance_id=process_instance_id)
        log.info("Starting process compensation", extra={"from_task_id": from_task_id})
        self.emit(
            ProcessEvent(
                type=CompensationEventType.STARTED,
                instance_id=process_instance_id,
                payload={"from_task_id": from_task_id},
            )
        )

        results: list[TaskCompensationResult] = []
        try:
            tasks = await self.get_compensatable_tasks(process_instance_id, from_task_id)
            if node_ids is not None:
                tasks = [t for t in tasks if t.node_id in node_ids]

            log.debug("Found tasks to compensate", extra={"task_count": len(tasks)})

            for task in reversed(tasks):
                node = process_definition.find_node(task.node_id)
                if node is None or node.data.compensation_handler is None:
                    log.debug(
                        "Task has no compensation handler, skipping",
                        extra={"task_id": task.id, "node_id": task.node_id},
                    )
                    continue
                results.append(
                    await self._compensate_task(
                        process_instance_id, task, node.data.compensation_handler
                    )
                )
        except Exception as e:
            log.error("Process compensation failed", exc_info=True)
            self.emit(
                ProcessEvent(
                    type=CompensationEventType.FAILED,
                    instance_id=process_instance_id,
                    payload={"error": e},
                )
            )
            raise

        outcome = ProcessCompensationResult(
            state=CompensationState.FAILED
            if any(r.state == CompensationState.FAILED for r in results)
            else CompensationState.COMPLETED,
            tasks_compensated=sum(1 for r in results if r.state == CompensationState.COMPLETED),
            results=results,
        )

        log.info(
            "Process compensation completed",
            extra={
                "compensated_tasks": outcome.tasks_compensated,
                "failed_compensations": len(outcome.failed),
            },
        )
        self.emit(
            ProcessEvent(
                type=CompensationEventType.COMPLETED,
                instance_id=process_instance_id,
                payload={"results": results},
            )
        )
        return outcome

    async def _compensate_task(
        self, process_instance_id: str, task: Task, handler: CompensationHandler
    ) -> TaskCompensationResult:
        try:
            result = await self.execute_compensation_handler(task, handler)
        except DependencyMissingError:
            raise
        except Exception as e:
            logger.error(
                "Compensation failed for task",
                exc_info=True,
                extra={"process_instance_id": process_instance_id, "task_id": task.id},
            )
            self.emit(
                ProcessEvent(
                    type=CompensationEventType.TASK_FAILED,
                    instance_id=process_instance_id,
                    payload={"task_id": task.id, "error": e},
                )
            )
            if not self.continue_on_compensation_failure:
                raise CompensationFailedError(task.id, e) from e
            return TaskCompensationResult(
                task_id=task.id,
                node_id=task.node_id,
                state=CompensationState.FAILED,
                error=str(e),
            )

        self.emit(
            ProcessEvent(
                type=CompensationEventType.TASK_COMPLETED,
                instance_id=process_instance_id,
                payload={"task_id": task.id, "result": result},
            )
        )
        return TaskCompensationResult(
            task_id=task.id,
            node_id=task.node_id,
            state=CompensationState.COMPLETED,
            result=result,
        )

    async def define_transaction_boundary(
        self, process_instance_id: str, node_ids: Collection[str]
    ) -> str:
        """Group nodes of an instance so they can be rolled back together."""
        if self.storage is None:
            raise DependencyMissingError("StorageGateway", "transaction boundaries")

        transaction_id = await self.storage.create_thing()
        self._transactions[transaction_id] = TransactionBoundary(
            transaction_id=transaction_id,
            process_instance_id=process_instance_id,
            node_ids=frozenset(node_ids),
        )

        logger.info(
            "Transaction boundary defined",
            extra={
                "process_instance_id": process_instance_id,
                "transaction_id": transaction_id,
                "node_ids": sorted(node_ids),
            },
        )
        return transaction_id

    def get_transaction_boundary(self, transaction_id: str) -> TransactionBoundary | None:
        return self._transactions.get(transaction_id)

    async def commit_transaction(self, transaction_id: str) -> None:
        boundary = self._transactions.pop(transaction_id, None)
        payload = _transaction_payload(transaction_id, boundary)
        logger.info("Transaction committed", extra={**payload, "known": boundary is not None})
        self.emit(
            ProcessEvent(
                type=CompensationEventType.TRANSACTION_COMMITTED,
                instance_id=boundary.process_instance_id if boundary else None,
                payload=payload,
            )
        )

    async def rollback_transaction(
        self,
        transaction_id: str,
        process_instance_id: str,
        process_definition: ProcessDefinition,
    ) -> ProcessCompensationResult:
        """Compensate the tasks inside a transaction boundary.

        An unknown transaction id compensates the whole instance.
        """
        boundary = self._transactions.pop(transaction_id, None)
        payload = _transaction_payload(transaction_id, boundary)
        logger.info(
            "Rolling back transaction",
            extra={**payload, "process_instance_id": process_instance_id},
        )

        outcome = await self.compensate_process(
            process_instance_id,
            None,
            process_definition,
            node_ids=boundary.node_ids if boundary is not None else None,
        )

        self.emit(
            ProcessEvent(
                type=CompensationEventType.TRANSACTION_ROLLED_BACK,
                instance_id=process_instance_id,
                payload=payload,
            )
        )
        return outcome

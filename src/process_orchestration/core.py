"""Process core facade.

Wires the compensation service and the sub-process manager to the same
collaborators so a failing child process can be rolled back from its parent.
"""

from __future__ import annotations

import asyncio
import logging

from process_orchestration.compensation import CompensationService
from process_orchestration.config import ProcessCoreSettings
from process_orchestration.errors import SubProcessError
from process_orchestration.interfaces import AgentManager, ProcessOrchestrator, StorageGateway
from process_orchestration.models import ProcessDefinition, ProcessNode
from process_orchestration.subprocesses import DefinitionLoader, SubProcessCompletion, SubProcessManager

logger = logging.getLogger(__name__)


class ProcessCore:
    """Entry point combining compensation and nested process execution.

    Both services share the storage gateway, the process orchestrator and the
    settings; the agent manager is only needed for compensation.
    """

    def __init__(
        self,
        storage: StorageGateway | None,
        process_orchestrator: ProcessOrchestrator,
        agent_manager: AgentManager | None = None,
        settings: ProcessCoreSettings | None = None,
        *,
        definition_loader: DefinitionLoader | None = None,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the core.

        Args:
            storage: Role binding store shared by both services.
            process_orchestrator: Owner of process instance lifecycle.
            agent_manager: Backend executing compensation tasks.
            settings: Configuration. If None, loads from environment.
            definition_loader: Resolves referenced sub-process definitions.
            configure_logging: Install the JSON log handler from settings.
        """
        self.settings = settings or ProcessCoreSettings()
        if configure_logging:
            self.settings.setup_logging()

        logger.info("Initializing process orchestration core")

        self.compensation = CompensationService(
            storage,
            process_orchestrator,
            agent_manager,
            settings=self.settings,
        )
        self.subprocesses = SubProcessManager(
            process_orchestrator,
            storage,
            definition_loader=definition_loader,
            settings=self.settings,
        )

        logger.info("Process orchestration core initialized")

    async def execute_sub_process(
        self,
        parent_id: str,
        process_definition: ProcessDefinition,
        sub_process_node: ProcessNode,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SubProcessCompletion:
        """Run a sub-process and roll the parent back if it fails.

        On a :class:`SubProcessError` the parent's completed tasks are
        compensated (when ``compensate_parent_on_subprocess_failure`` is set)
        and the failed child's hierarchy entries are cleaned up before the
        original error is re-raised. A compensation failure is logged and does
        not replace the original error.
        """
        try:
            return await self.subprocesses.execute_sub_process(
                parent_id,
                process_definition,
                sub_process_node,
                cancel_event=cancel_event,
            )
        except SubProcessError as e:
            logger.warning(
                "Subprocess failed, handling in parent",
                extra={
                    "parent_instance_id": parent_id,
                    "child_instance_id": e.instance_id,
                    "error": str(e),
                },
            )
            if self.settings.compensate_parent_on_subprocess_failure:
                try:
                    await self.compensation.compensate_process(parent_id, None, process_definition)
                except Exception:
                    logger.exception(
                        "Parent compensation failed", extra={"parent_instance_id": parent_id}
                    )
            self.subprocesses.cleanup_hierarchy(e.instance_id)
            raise

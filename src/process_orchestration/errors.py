"""Exceptions raised by the process orchestration core."""

from __future__ import annotations


class ProcessCoreError(Exception):
    """Base class for all errors raised by this package."""


class DependencyMissingError(ProcessCoreError):
    """A required collaborator was not provided. Never retried."""

    def __init__(self, dependency: str, purpose: str) -> None:
        self.dependency = dependency
        super().__init__(f"{dependency} is required for {purpose}")


class CompensationFailedError(ProcessCoreError):
    """A compensation handler failed and the rollback was configured to stop."""

    def __init__(self, task_id: str, cause: BaseException) -> None:
        self.task_id = task_id
        self.cause = cause
        super().__init__(f"Compensation failed at task {task_id}: {cause}")


class SubProcessError(ProcessCoreError):
    """Base class for errors while waiting on or running a child process."""

    def __init__(self, instance_id: str, message: str) -> None:
        self.instance_id = instance_id
        super().__init__(message)


class SubProcessFailedError(SubProcessError):
    """The orchestrator reported the child process as failed."""

    def __init__(self, instance_id: str, cause: object) -> None:
        self.cause = cause
        super().__init__(instance_id, f"Subprocess failed: {_describe(cause)}")


class SubProcessTimeoutError(SubProcessError, TimeoutError):
    """Neither a completion nor a failure event arrived in time."""

    def __init__(self, instance_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(instance_id, f"Subprocess execution timeout: {instance_id}")


class SubProcessCancelledError(SubProcessError):
    """The caller cancelled the wait before the child finished."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(instance_id, f"Subprocess wait cancelled: {instance_id}")


class InvalidSubProcessDefinitionError(ProcessCoreError, ValueError):
    pass


class ProcessInstanceNotFoundError(ProcessCoreError, LookupError):
    def __init__(self, instance_id: str, role: str = "Process") -> None:
        self.instance_id = instance_id
        super().__init__(f"{role} instance not found: {instance_id}")


def _describe(cause: object) -> str:
    if isinstance(cause, BaseException):
        return str(cause) or type(cause).__name__
    return str(cause)

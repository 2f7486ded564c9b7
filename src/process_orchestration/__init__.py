"""Process orchestration core.

Provides the two pieces that give long-running workflows undo semantics and
nested composition:
- saga-style compensation of completed tasks
- sub-process hierarchy tracking and event-driven completion waiting
"""

__version__ = "0.1.0"

from process_orchestration.compensation import CompensationService
from process_orchestration.config import ProcessCoreSettings
from process_orchestration.core import ProcessCore
from process_orchestration.subprocesses import SubProcessManager

__all__ = [
    "__version__",
    "CompensationService",
    "ProcessCore",
    "ProcessCoreSettings",
    "SubProcessManager",
]

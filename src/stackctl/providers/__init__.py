"""Provider interfaces for stackctl."""
from __future__ import annotations

from .management_tool import ManagementTool, ManagementToolError, select_management_tool
from .orchestrator import DockerStackOrchestrator, OrchestratorError

__all__ = [
    "DockerStackOrchestrator",
    "ManagementTool",
    "ManagementToolError",
    "OrchestratorError",
    "select_management_tool",
]

"""Instance table, persistence and lifecycle orchestration."""

from .models import CreateInstanceRequest, Instance, LogEntry, UpdateInstanceRequest
from .orchestrator import InstanceOrchestrator
from .store import InstanceStore

__all__ = [
    "CreateInstanceRequest",
    "Instance",
    "InstanceOrchestrator",
    "InstanceStore",
    "LogEntry",
    "UpdateInstanceRequest",
]

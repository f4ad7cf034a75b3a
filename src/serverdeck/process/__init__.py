"""Instance process supervision."""

from .log_parser import is_ready_line, parse_log_level
from .models import LogStream, MemoryBounds, ProcessHandle, ProcessState
from .supervisor import ProcessSupervisor, build_java_command

__all__ = [
    "build_java_command",
    "is_ready_line",
    "LogStream",
    "MemoryBounds",
    "parse_log_level",
    "ProcessHandle",
    "ProcessState",
    "ProcessSupervisor",
]

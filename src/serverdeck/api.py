"""Operation surface returning uniform result envelopes."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from serverdeck.config import AppConfig, load_config
from serverdeck.download.models import CancellationToken, ProgressSnapshot
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.events import Subscription
from serverdeck.instances.orchestrator import InstanceOrchestrator

logger = py_logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result:
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: Any = None) -> Result:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: ErrorKind) -> Result:
        return cls(success=False, error=error, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
        }


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


class ServerDeckApi:
    """One method per operation; no exception escapes a call.

    Domain failures become ``Result.fail`` with their ``ErrorKind``; anything
    else is reported as ``unknown`` with the underlying message.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        orchestrator: InstanceOrchestrator | None = None,
    ) -> None:
        self.config = config or load_config()
        self.orchestrator = orchestrator or InstanceOrchestrator(self.config)

    def _call(self, name: str, operation: Callable[[], T]) -> Result:
        try:
            return Result.ok(_plain(operation()))
        except ServerDeckError as exc:
            logger.info("Operation failed op=%s kind=%s error=%s", name, exc.kind.value, exc.message)
            return Result.fail(str(exc), exc.kind)
        except Exception as exc:
            logger.exception("Operation crashed op=%s", name)
            return Result.fail(str(exc) or type(exc).__name__, ErrorKind.UNKNOWN)

    def subscribe(self, subscription: Subscription | None = None) -> Subscription:
        return self.orchestrator.subscribe(subscription)

    # -- artifacts ---------------------------------------------------------

    def list_versions(self, core_type: str) -> Result:
        return self._call("list_versions", lambda: self.orchestrator.resolver.list_versions(core_type))

    def list_builds(self, core_type: str, version: str) -> Result:
        return self._call("list_builds", lambda: self.orchestrator.resolver.list_builds(core_type, version))

    # -- java --------------------------------------------------------------

    def detect_java(self) -> Result:
        return self._call("detect_java", self.orchestrator.java.detect)

    def list_java(self) -> Result:
        return self._call("list_java", self.orchestrator.java.installations)

    def required_java(self, version: str) -> Result:
        return self._call("required_java", lambda: self.orchestrator.java.required_major_version(version))

    def install_java(
        self,
        major: int,
        *,
        on_progress: Callable[[ProgressSnapshot], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> Result:
        return self._call(
            "install_java",
            lambda: self.orchestrator.java.install(major, on_progress=on_progress, cancel=cancel),
        )

    def uninstall_java(self, path: str) -> Result:
        return self._call("uninstall_java", lambda: self.orchestrator.java.uninstall(path))

    # -- instances ---------------------------------------------------------

    def load_instances(self) -> Result:
        return self._call("load_instances", self.orchestrator.load_instances)

    def create_instance(self, request: Mapping[str, Any]) -> Result:
        return self._call("create_instance", lambda: self.orchestrator.create(request))

    def list_instances(self) -> Result:
        return self._call("list_instances", self.orchestrator.list)

    def get_instance(self, instance_id: str) -> Result:
        return self._call("get_instance", lambda: self.orchestrator.get(instance_id))

    def update_instance(self, instance_id: str, changes: Mapping[str, Any]) -> Result:
        return self._call("update_instance", lambda: self.orchestrator.update(instance_id, changes))

    def start_instance(self, instance_id: str) -> Result:
        return self._call("start_instance", lambda: self.orchestrator.start(instance_id))

    def stop_instance(self, instance_id: str, *, force: bool = False, timeout: float | None = None) -> Result:
        return self._call(
            "stop_instance",
            lambda: self.orchestrator.stop(instance_id, force=force, timeout=timeout),
        )

    def restart_instance(self, instance_id: str) -> Result:
        return self._call("restart_instance", lambda: self.orchestrator.restart(instance_id))

    def delete_instance(self, instance_id: str) -> Result:
        return self._call("delete_instance", lambda: self.orchestrator.delete(instance_id))

    def send_command(self, instance_id: str, command: str) -> Result:
        return self._call("send_command", lambda: self.orchestrator.send_command(instance_id, command))

    def instance_logs(self, instance_id: str, limit: int | None = None) -> Result:
        return self._call("instance_logs", lambda: self.orchestrator.logs(instance_id, limit))

    def cancel_provision(self, instance_id: str) -> Result:
        return self._call("cancel_provision", lambda: self.orchestrator.cancel_provision(instance_id))

    # -- tunnels -----------------------------------------------------------

    def create_tunnel(self, instance_id: str) -> Result:
        return self._call("create_tunnel", lambda: self.orchestrator.create_tunnel(instance_id))

    def start_tunnel(self, instance_id: str) -> Result:
        return self._call("start_tunnel", lambda: self.orchestrator.tunnels.start(instance_id))

    def stop_tunnel(self, instance_id: str) -> Result:
        return self._call("stop_tunnel", lambda: self.orchestrator.tunnels.stop(instance_id))

    def delete_tunnel(self, instance_id: str) -> Result:
        return self._call("delete_tunnel", lambda: self.orchestrator.tunnels.delete(instance_id))

    def get_tunnel(self, instance_id: str) -> Result:
        return self._call("get_tunnel", lambda: self.orchestrator.tunnels.get(instance_id))

    def list_tunnels(self) -> Result:
        return self._call("list_tunnels", self.orchestrator.tunnels.list)

    def shutdown(self) -> Result:
        return self._call("shutdown", self.orchestrator.shutdown)

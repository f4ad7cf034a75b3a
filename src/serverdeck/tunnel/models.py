"""Tunnel record and status."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TunnelStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    CLAIMING = "claiming"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"

    @property
    def active(self) -> bool:
        return self in {TunnelStatus.STARTING, TunnelStatus.CLAIMING, TunnelStatus.RUNNING, TunnelStatus.STOPPING}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TunnelRecord:
    instance_id: str
    local_port: int
    status: TunnelStatus = TunnelStatus.STOPPED
    claim_code: str = ""
    claim_url: str = ""
    public_address: str = ""
    public_port: int | None = None
    last_error: str = ""
    created_at: str = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status == TunnelStatus.ERROR

    @property
    def endpoint(self) -> str:
        if self.public_address and self.public_port:
            return f"{self.public_address}:{self.public_port}"
        return ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["endpoint"] = self.endpoint
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TunnelRecord:
        port = payload.get("public_port")
        return cls(
            instance_id=str(payload["instance_id"]),
            local_port=int(payload["local_port"]),
            public_address=str(payload.get("public_address") or ""),
            public_port=int(port) if isinstance(port, int) else None,
            created_at=str(payload.get("created_at") or _now()),
        )

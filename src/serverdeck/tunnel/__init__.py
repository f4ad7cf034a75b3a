"""playit.gg tunnel lifecycle."""

from .agent import ensure_agent, parse_public_address, strip_ansi
from .manager import TunnelManager
from .models import TunnelRecord, TunnelStatus
from .relay import PlayitRelayClient, claim_url

__all__ = [
    "claim_url",
    "ensure_agent",
    "parse_public_address",
    "PlayitRelayClient",
    "strip_ansi",
    "TunnelManager",
    "TunnelRecord",
    "TunnelStatus",
]

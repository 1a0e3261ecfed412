"""Tunnel process bookkeeping."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class TunnelStatus(str, Enum):
    """Lifecycle of one tunnel subprocess."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class TunnelHandle:
    """One supervised tunnel subprocess."""

    id: str
    local_port: int
    provider: str
    protocol: str = "http"
    public_url: Optional[str] = None
    status: TunnelStatus = TunnelStatus.CONNECTING
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    exit_code: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

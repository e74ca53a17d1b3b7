from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ServerStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    CHECKING = "checking"


@dataclass(frozen=True)
class ServerRecord:
    id: str
    user_email: str
    url: str
    status: ServerStatus = ServerStatus.CHECKING
    response_time: int = 0
    last_check: datetime | None = None
    consecutive_failures: int = 0
    alert_enabled: bool = True
    alert_sent: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    response_time: int  # milliseconds
    status_code: int | None = None
    error_message: str | None = None


# Fields the monitoring cycle is allowed to write back to a server record.
WRITABLE_FIELDS = frozenset(
    {
        "status",
        "response_time",
        "last_check",
        "consecutive_failures",
        "alert_sent",
    }
)

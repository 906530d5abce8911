"""
Shared Schemas - Response and event models
Common data models used across all layers of Synapse Query.

These schemas provide:
- The response shape every transport settles with
- Queue statistics snapshots
- Event payloads carried on the event bus
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Event names carried on the event bus
REFETCH_EVENT = "refetch"
INVALIDATE_EVENT = "invalidate"
REFETCH_ALL_EVENT = "refetch-all"
QUEUE_CLEAR_EVENT = "queue-clear"
REQUEST_COMPLETE_EVENT = "request-complete"


@dataclass
class Response:
    """Settled result of one transport call."""
    status: int = 0
    data: Any = None
    error: Any = None
    aborted: bool = False
    headers: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.aborted

    @classmethod
    def coerce(cls, value: Union["Response", Mapping[str, Any], None]) -> "Response":
        """Accept either a Response or a mapping with the same keys."""
        if isinstance(value, Response):
            return value
        if value is None:
            return cls()
        if isinstance(value, Mapping):
            return cls(
                status=value.get("status", 0),
                data=value.get("data"),
                error=value.get("error"),
                aborted=bool(value.get("aborted", False)),
                headers=dict(value.get("headers") or {}),
            )
        raise TypeError(f"Transport returned unsupported value: {type(value).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status,
            "data": self.data,
            "error": self.error,
            "aborted": self.aborted,
            "headers": dict(self.headers),
        }


class QueueStats(BaseModel):
    """Aggregate counters for one queue controller."""
    model_config = ConfigDict(frozen=True)

    pending: int = 0
    running: int = 0
    settled: int = 0
    success: int = 0
    failed: int = Field(0, description="Tasks that ended in error or were aborted")
    total: int = 0
    percentage: int = 0


class RefetchEvent(BaseModel):
    """Payload of the refetch event."""
    query_key: str
    reason: str = "invalidate"


class QueueClearEvent(BaseModel):
    """Payload of the queue bulk-discard event."""
    query_keys: List[str] = Field(default_factory=list)


class RequestCompleteEvent(BaseModel):
    """Payload emitted after every completed middleware chain."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    query_key: str
    operation_type: str
    ok: bool
    status: Optional[int] = None

"""
Data model shared by the monitoring engine.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Target:
    """A monitored endpoint as supplied by the target registry."""

    id: str
    display_name: str
    url: str
    check_interval_seconds: int = 60
    owner_ref: str = ""

    def effective_interval(self, floor: int) -> int:
        """Check interval with non-positive or too-small values raised to ``floor``."""
        return max(self.check_interval_seconds, floor)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Observation:
    """Outcome of one probe. Append-only."""

    target_id: str
    is_up: bool
    status_code: int
    response_time_ms: int
    checked_at: int = field(default_factory=lambda: int(time.time()))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Observation":
        return cls(
            target_id=data["target_id"],
            is_up=bool(data["is_up"]),
            status_code=int(data["status_code"]),
            response_time_ms=int(data["response_time_ms"]),
            checked_at=int(data["checked_at"]),
            id=data.get("id") or uuid.uuid4().hex,
        )


@dataclass
class CertificateRecord:
    """
    Latest certificate snapshot for a target.

    ``error`` is set when the handshake failed or no certificate was
    presented; the validity fields are zero in that case.
    """

    target_id: str
    host: str
    valid_from: int = 0
    valid_to: int = 0
    issuer: str = ""
    error: Optional[str] = None
    checked_at: int = field(default_factory=lambda: int(time.time()))
    days_left: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        return cls(**data)


class AlertDecision(str, Enum):
    """Outcome of evaluating one observation against the previous state."""

    NONE = "none"
    BECAME_DOWN = "became_down"
    BECAME_UP = "became_up"
    FIRST_OBSERVATION_DOWN = "first_observation_down"

    @property
    def should_alert(self) -> bool:
        return self is not AlertDecision.NONE

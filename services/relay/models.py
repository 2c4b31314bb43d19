"""
Trashcan Relay — Pydantic Models

Bus payloads (device → relay), client requests (browser → relay) and the
records/snapshots the relay hands back out.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator


# ═══════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════

class TopicKind(str, Enum):
    HEALTH = "health"
    ACTIVITY = "activity"
    DETECTION = "detection"
    UNKNOWN = "unknown"


class DetectionStatus(str, Enum):
    PENDING = "pending"
    CORRECT = "correct"
    INCORRECT = "incorrect"


class ClientEvent(str, Enum):
    MANUAL_CONTROL = "manual_control"
    ML_FEEDBACK = "ml_feedback"


# Movement / arm-control primitives understood by the device firmware
ALLOWED_COMMANDS = frozenset({"F", "B", "L", "R", "S", "P", "D", "X"})

# Detection ids are SQLite INTEGER (signed 64-bit)
MAX_DETECTION_ID = 2**63 - 1


# ═══════════════════════════════════════════════════════════
# BUS PAYLOADS
# ═══════════════════════════════════════════════════════════

class DetectionPayload(BaseModel):
    """Device detection published on the detection topic."""
    item: str = Field(..., min_length=1)
    confidence: Union[int, float]   # kept as sent: 92 stays 92

    @field_validator("confidence", mode="before")
    @classmethod
    def _not_bool(cls, v):
        if isinstance(v, bool):
            raise ValueError("confidence must be a number")
        return v

    @field_validator("confidence")
    @classmethod
    def _in_range(cls, v):
        if not 0 <= v <= 100:
            raise ValueError("confidence must be between 0 and 100")
        return v


# ═══════════════════════════════════════════════════════════
# CLIENT REQUESTS
# ═══════════════════════════════════════════════════════════

class ClientMessage(BaseModel):
    """Envelope for every WebSocket frame sent by a browser session."""
    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class ManualControlRequest(BaseModel):
    command: str


class FeedbackRequest(BaseModel):
    id: int = Field(..., ge=1, le=MAX_DETECTION_ID)
    feedback: Literal["correct", "incorrect"]


class LoginRequest(BaseModel):
    username: str
    password: str


# ═══════════════════════════════════════════════════════════
# RECORDS / SNAPSHOTS
# ═══════════════════════════════════════════════════════════

class TokenClaims(BaseModel):
    sub: str
    iat: int
    exp: int


class DetectionRecord(BaseModel):
    id: int
    item: str
    confidence: float
    status: DetectionStatus = DetectionStatus.PENDING
    timestamp: Optional[datetime] = None

    class Config:
        from_attributes = True


class AccuracySnapshot(BaseModel):
    accuracy: str                   # percentage, one decimal

    @classmethod
    def from_percentage(cls, value: float) -> "AccuracySnapshot":
        return cls(accuracy=f"{value:.1f}")

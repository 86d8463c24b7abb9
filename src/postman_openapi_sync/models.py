from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DocumentKind(str, Enum):
    SOURCE = "source"
    DERIVED = "derived"

    @property
    def snapshot_prefix(self) -> str:
        return "postman" if self is DocumentKind.SOURCE else "openapi"

    @classmethod
    def from_snapshot_name(cls, filename: str) -> Optional["DocumentKind"]:
        for kind in cls:
            if filename.startswith(f"{kind.snapshot_prefix}-"):
                return kind
        return None


class ConversionState(str, Enum):
    IDLE = "idle"
    LOCKING = "locking"
    BACKING_UP = "backing_up"
    TRANSFORMING = "transforming"
    NORMALIZING = "normalizing"
    VALIDATING = "validating"
    COMMITTING = "committing"
    FAILING = "failing"
    ROLLING_BACK = "rolling_back"


class SnapshotInfo(BaseModel):
    filename: str
    kind: DocumentKind
    created: datetime
    size: int


class ConversionEvent(BaseModel):
    timestamp: datetime
    message: str


class ConversionResult(BaseModel):
    success: bool
    trigger: str
    started_at: datetime
    finished_at: datetime
    final_state: ConversionState
    reason: Optional[str] = None
    error_code: Optional[str] = None
    snapshot: Optional[str] = None
    restored_from: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    events: List[ConversionEvent] = Field(default_factory=list)


class HealthReport(BaseModel):
    status: str
    message: str
    last_conversion: Optional[ConversionResult] = None


class ServiceStatus(BaseModel):
    source_exists: bool
    derived_exists: bool
    watcher_running: bool
    last_conversion: Optional[ConversionResult] = None
    events: List[ConversionEvent]


class ServiceIndex(BaseModel):
    name: str
    version: str
    endpoints: Dict[str, Any]

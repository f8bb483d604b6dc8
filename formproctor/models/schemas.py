from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum


class ViolationKind(str, Enum):
    NO_PERSON = "no_person"
    MULTIPLE_PEOPLE = "multiple_people"
    PHONE_DETECTED = "phone_detected"
    BOOK_DETECTED = "book_detected"
    LAPTOP_DETECTED = "laptop_detected"
    PROHIBITED_OBJECT = "prohibited_object"
    TAB_SWITCH = "tab_switch"


class CameraStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    DENIED = "denied"
    ERROR = "error"


class ModelStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class MonitorStatus(str, Enum):
    LOADING = "loading"
    ACTIVE = "active"
    DEGRADED = "degraded"


class Violation(BaseModel):
    """A recorded proctoring violation, in its wire form."""

    model_config = ConfigDict(frozen=True)

    type: ViolationKind
    timestamp: datetime
    message: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class Detection(BaseModel):
    class_label: str
    confidence: float


class FrameAnalysis(BaseModel):
    """Classifier output normalized across detection backends."""

    person_count: int = 0
    person_confidences: List[float] = Field(default_factory=list)
    objects: List[Detection] = Field(default_factory=list)


class SessionState(BaseModel):
    session_id: str
    form_id: str
    status: MonitorStatus
    camera_status: CameraStatus
    model_status: ModelStatus
    violations: List[Violation]
    violation_count: int
    tab_switch_count: int
    reported_tab_switches: int
    current_alert: Optional[str] = None
    error_message: Optional[str] = None
    minimized: bool = False


# Ingestion endpoint

class ViolationReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    form_id: str = Field(alias="formId", min_length=1)
    violation: Violation


class IngestResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    total_violations: int = Field(alias="totalViolations")


class ViolationListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    form_id: str = Field(alias="formId")
    violations: List[dict]
    total_violations: int = Field(alias="totalViolations")


class FailureResponse(BaseModel):
    success: bool = False
    message: str


# Monitoring sessions

class StartMonitoringRequest(BaseModel):
    form_id: str
    session_id: Optional[str] = None
    camera_index: Optional[int] = None
    backend: Optional[str] = None


class StopMonitoringRequest(BaseModel):
    session_id: str


class MonitoringResponse(BaseModel):
    status: str
    session_id: str
    message: Optional[str] = None


class VisibilityEvent(BaseModel):
    hidden: bool


class ViolationEvent(BaseModel):
    type: str = "violation"
    violation: Violation
    session_id: str

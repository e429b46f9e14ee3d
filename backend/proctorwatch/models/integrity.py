from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    SUBMITTED = "submitted"
    TERMINATED = "terminated"
    INVALIDATED = "invalidated"


TERMINAL_STATUSES = {SessionStatus.TERMINATED, SessionStatus.INVALIDATED}


class Severity(str, Enum):
    RED = "RED"
    ORANGE = "ORANGE"


class ReviewAction(str, Enum):
    DISMISS = "dismiss"
    WARN = "warn"
    ESCALATE = "escalate"
    INVALIDATE = "invalidate"


class TokenPurpose(str, Enum):
    MODULE_OVERRIDE = "module_override"
    FACE_RESET = "face_reset"


class ProctoringModule(str, Enum):
    IDENTITY = "identity"
    DEVICE = "device"
    BEHAVIOR = "behavior"
    AUDIO = "audio"
    NETWORK = "network"
    OBJECT_DETECTION = "object_detection"
    ENFORCEMENT = "enforcement"


class ExamSession(BaseModel):
    """Exam attempt tracked by the lifecycle controller"""
    id: str
    student_id: str
    test_id: str
    status: SessionStatus
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    red_flags: int = 0
    orange_flags: int = 0
    score: Optional[float] = None
    status_reason: Optional[str] = None


class Flag(BaseModel):
    """Suspected integrity violation raised by a detection source"""
    id: str
    session_id: str
    module: str  # originating detection source
    flag_type: str
    severity: Severity
    timestamp: datetime
    evidence_url: Optional[str] = None
    metadata: Dict[str, Any] = {}

    # Review fields (the only mutable part of a flag)
    reviewed: bool = False
    review_action: Optional[ReviewAction] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None


class OverrideToken(BaseModel):
    """Single-use bypass code"""
    id: Optional[str] = None
    code: str
    purpose: TokenPurpose
    created_by: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None


class ModuleOverride(BaseModel):
    """Detection modules switched off for one session"""
    session_id: str
    disabled_modules: List[ProctoringModule] = []
    reason: str
    admin_id: Optional[str] = None
    applied_at: Optional[datetime] = None


class RiskSnapshot(BaseModel):
    """One scan cycle over host telemetry; never persisted"""
    timestamp: datetime
    process_risk: float = Field(default=0.0, ge=0, le=1)
    network_anomaly: float = Field(default=0.0, ge=0, le=1)
    vpn_risk: float = Field(default=0.0, ge=0, le=1)
    remote_access: float = Field(default=0.0, ge=0, le=1)
    composite: float = Field(default=0.0, ge=0, le=1)

    # Supporting detail
    blacklist_matches: List[str] = []
    suspicious_connections: int = 0
    vpn_interface: Optional[str] = None
    remote_signal: Optional[str] = None  # e.g. "mstsc.exe" or "port 3389"
    bytes_sent: Optional[int] = None
    bytes_recv: Optional[int] = None


class ViolationEvent(BaseModel):
    """Notification pushed outward by the enforcement loop"""
    type: str  # PROCESS_KILLED, FOCUS_LOST, ...
    message: str
    severity: str  # high, medium
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from proctorwatch.models.integrity import ProctoringModule, ReviewAction, TokenPurpose


# ============================================================================
# Override codes
# ============================================================================

class OverrideCodeCreate(BaseModel):
    purpose: TokenPurpose


class OverrideCodeRead(BaseModel):
    code: str
    purpose: TokenPurpose
    expires_at: datetime


class OverrideRedeem(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)
    reason: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    student_id: Optional[str] = None  # face_reset target; defaults to the caller
    disabled_modules: List[ProctoringModule] = []


class AdminCredentialOverride(BaseModel):
    username: str
    password: str
    session_id: str
    disabled_modules: List[ProctoringModule]
    reason: str = Field(..., min_length=1)


# ============================================================================
# Sessions
# ============================================================================

class TransitionRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class SubmitRequest(BaseModel):
    """
    The exam UI grades the answers and reports the score with the
    submission. It is stored as reported, floored at 0; invalidation
    later forces it to 0.
    """
    reason: str = Field(default="student_submit", min_length=1)
    score: Optional[float] = None


# ============================================================================
# Flags
# ============================================================================

class FlagCreate(BaseModel):
    session_id: str
    flag_type: str
    severity: str  # any supported encoding: high/RED, medium/ORANGE/YELLOW/low
    module: Optional[str] = None
    evidence_url: Optional[str] = None
    metadata: Dict[str, Any] = {}
    confidence: Optional[float] = None


class FlagReviewRequest(BaseModel):
    action: ReviewAction
    notes: Optional[str] = None

"""
Flag intake and review endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, Query, status
from typing import List, Optional
import logging

from proctorwatch.dependencies import IntegrityServices, get_current_reviewer, get_current_user, get_services
from proctorwatch.models.integrity import Flag
from proctorwatch.schemas.integrity import FlagCreate, FlagReviewRequest
from proctorwatch.utils.exceptions import AppError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=Flag, status_code=status.HTTP_201_CREATED)
async def create_flag(
    body: FlagCreate,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    """Record a violation reported by a detection source"""
    try:
        return await services.flags.ingest(
            body.session_id,
            flag_type=body.flag_type,
            severity=body.severity,
            module=body.module,
            evidence_url=body.evidence_url,
            metadata=body.metadata,
            confidence=body.confidence,
        )
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("", response_model=List[Flag])
async def list_flags(
    session_id: Optional[str] = None,
    filter: Optional[str] = Query(None, pattern="^(red|orange|escalated|unreviewed)$"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(get_current_reviewer),
    services: IntegrityServices = Depends(get_services),
):
    try:
        return await services.flags.list_flags(session_id=session_id, filter_by=filter, limit=limit)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{flag_id}/review")
async def review_flag(
    flag_id: str,
    body: FlagReviewRequest,
    current_user: dict = Depends(get_current_reviewer),
    services: IntegrityServices = Depends(get_services),
):
    """dismiss / warn / escalate (teacher) / invalidate (admin)"""
    try:
        return await services.flags.review(
            flag_id,
            body.action,
            body.notes,
            reviewer={"id": current_user["id"], "role": current_user.get("role")},
        )
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

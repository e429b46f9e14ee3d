"""
Exam session lifecycle endpoints
"""

from fastapi import APIRouter, HTTPException, Depends
import logging

from proctorwatch.dependencies import (
    IntegrityServices, get_current_admin, get_current_student, get_current_user, get_services
)
from proctorwatch.models.integrity import ExamSession
from proctorwatch.schemas.integrity import SubmitRequest, TransitionRequest
from proctorwatch.utils.exceptions import AppError

logger = logging.getLogger(__name__)
router = APIRouter()


async def _own_session(services: IntegrityServices, session_id: str, student: dict) -> ExamSession:
    session = await services.lifecycle.get(session_id)
    if session.student_id != student["id"]:
        raise HTTPException(status_code=403, detail="Not authorized to access this session")
    return session


@router.get("/{session_id}", response_model=ExamSession)
async def get_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    try:
        session = await services.lifecycle.get(session_id)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if current_user.get("role") == "student" and session.student_id != current_user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized to access this session")
    return session


@router.post("/{session_id}/start", response_model=ExamSession)
async def start_session(
    session_id: str,
    body: TransitionRequest,
    current_user: dict = Depends(get_current_student),
    services: IntegrityServices = Depends(get_services),
):
    try:
        await _own_session(services, session_id, current_user)
        return await services.lifecycle.start(session_id, current_user["id"], body.reason)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{session_id}/submit", response_model=ExamSession)
async def submit_session(
    session_id: str,
    body: SubmitRequest,
    current_user: dict = Depends(get_current_student),
    services: IntegrityServices = Depends(get_services),
):
    try:
        await _own_session(services, session_id, current_user)
        session = await services.lifecycle.submit(
            session_id, current_user["id"], reason=body.reason, score=body.score
        )
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return session


@router.post("/{session_id}/suspend", response_model=ExamSession)
async def suspend_session(
    session_id: str,
    body: TransitionRequest,
    current_user: dict = Depends(get_current_admin),
    services: IntegrityServices = Depends(get_services),
):
    try:
        return await services.lifecycle.suspend(session_id, current_user["id"], body.reason)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{session_id}/resume", response_model=ExamSession)
async def resume_session(
    session_id: str,
    body: TransitionRequest,
    current_user: dict = Depends(get_current_admin),
    services: IntegrityServices = Depends(get_services),
):
    try:
        return await services.lifecycle.resume(session_id, current_user["id"], body.reason)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{session_id}/terminate", response_model=ExamSession)
async def terminate_session(
    session_id: str,
    body: TransitionRequest,
    current_user: dict = Depends(get_current_admin),
    services: IntegrityServices = Depends(get_services),
):
    try:
        session = await services.lifecycle.terminate(session_id, current_user["id"], body.reason)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return session

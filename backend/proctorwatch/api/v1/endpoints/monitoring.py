"""
Host monitoring endpoints: enforcement loop and risk scanner per session
"""

from fastapi import APIRouter, HTTPException, Depends
import logging

from proctorwatch.dependencies import IntegrityServices, get_current_staff, get_current_user, get_services
from proctorwatch.schemas.auth import UserRole
from proctorwatch.utils.exceptions import AppError

logger = logging.getLogger(__name__)
router = APIRouter()

STAFF_ROLES = {UserRole.ADMIN.value, UserRole.TECHNICAL.value}


async def _authorize(services: IntegrityServices, session_id: str, user: dict) -> None:
    """The session's own student, or an administrator or technical user"""
    if user.get("role") in STAFF_ROLES:
        return
    session = await services.lifecycle.get(session_id)
    if user.get("role") != UserRole.STUDENT.value or session.student_id != user["id"]:
        logger.warning(f"User {user['id']} denied monitoring access to session {session_id}")
        raise HTTPException(status_code=403, detail="Not authorized to access this session")


@router.post("/sessions/{session_id}/start")
async def start_monitoring(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    try:
        await _authorize(services, session_id, current_user)
        return await services.monitoring.start(session_id)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/sessions/{session_id}/stop")
async def stop_monitoring(
    session_id: str,
    current_user: dict = Depends(get_current_staff),
    services: IntegrityServices = Depends(get_services),
):
    """Ending a session stops its monitor; this is the manual path for staff"""
    stopped = await services.monitoring.stop(session_id)
    if stopped:
        logger.info(f"Monitoring for session {session_id} stopped by {current_user['id']}")
    return {"session_id": session_id, "stopped": stopped}


@router.get("/sessions/{session_id}")
async def get_monitoring_status(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    try:
        await _authorize(services, session_id, current_user)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return services.monitoring.status(session_id)


@router.post("/sessions/{session_id}/timer-click")
async def timer_click(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    """Three clicks on the exam timer within 800ms open the override surface"""
    try:
        await _authorize(services, session_id, current_user)
        monitor = services.monitoring.get(session_id)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if monitor.enforcement is None:
        return {"open_override": False}
    return {"open_override": monitor.enforcement.timer_click()}

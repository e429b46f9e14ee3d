"""
Override code endpoints: issuance (admin), redemption, and the admin
credentials path for module overrides.
"""

from fastapi import APIRouter, HTTPException, Depends, status
import logging

from proctorwatch.dependencies import IntegrityServices, get_current_admin, get_current_user, get_services
from proctorwatch.models.integrity import TokenPurpose
from proctorwatch.schemas.integrity import (
    AdminCredentialOverride, OverrideCodeCreate, OverrideCodeRead, OverrideRedeem
)
from proctorwatch.utils.exceptions import AppError, TokenError

logger = logging.getLogger(__name__)
router = APIRouter()

REDEEM_REJECTED = "Invalid, already used, or expired override code"


@router.post("/codes", response_model=OverrideCodeRead, status_code=status.HTTP_201_CREATED)
async def generate_override_code(
    body: OverrideCodeCreate,
    current_user: dict = Depends(get_current_admin),
    services: IntegrityServices = Depends(get_services),
):
    """Issue a single-use override code valid for five minutes"""
    try:
        token = await services.tokens.generate(body.purpose, current_user["id"])
        return OverrideCodeRead(code=token.code, purpose=token.purpose, expires_at=token.expires_at)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/redeem")
async def redeem_override_code(
    body: OverrideRedeem,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    """
    Redeem a code and apply what it unlocks.

    module_override needs session_id and disabled_modules; face_reset
    resets student_id (or the caller when omitted).
    """
    try:
        return await services.overrides.redeem_and_apply(
            code=body.code,
            redeemer_id=current_user["id"],
            reason=body.reason,
            session_id=body.session_id,
            student_id=body.student_id,
            disabled_modules=[m.value for m in body.disabled_modules],
        )
    except TokenError as e:
        logger.info(f"Override redemption by {current_user['id']} rejected ({e.reason})")
        raise HTTPException(status_code=e.status_code, detail=REDEEM_REJECTED)
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/admin-credentials")
async def apply_override_with_credentials(
    body: AdminCredentialOverride,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    """An administrator at the exam machine authorizes a module override in person"""
    try:
        admin = await services.overrides.authorize_admin_credentials(body.username, body.password)
        override = await services.overrides.apply_module_override(
            session_id=body.session_id,
            disabled_modules=[m.value for m in body.disabled_modules],
            reason=body.reason,
            admin_id=admin["id"],
            via="admin_credentials",
        )
        return {
            "purpose": TokenPurpose.MODULE_OVERRIDE.value,
            "issued_by": admin["id"],
            "disabled_modules": sorted(m.value for m in override.disabled_modules),
        }
    except AppError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/sessions/{session_id}/disabled-modules")
async def get_disabled_modules(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    services: IntegrityServices = Depends(get_services),
):
    """Detection modules the exam UI must not mount for this session"""
    modules = await services.overrides.get_disabled_modules(session_id)
    return {"session_id": session_id, "disabled_modules": sorted(m.value for m in modules)}

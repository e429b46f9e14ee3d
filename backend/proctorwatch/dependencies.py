from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from proctorwatch.config import settings
from proctorwatch.core.host import DesktopHost, HostCapabilities
from proctorwatch.core.security import decode_token
from proctorwatch.core.supabase_client import get_supabase_client
from proctorwatch.core.telemetry import PsutilTelemetry, TelemetrySource
from proctorwatch.schemas.auth import UserRole
from proctorwatch.services.audit import AuditLog
from proctorwatch.services.flag_review import FlagAggregator
from proctorwatch.services.monitoring import MonitoringRegistry
from proctorwatch.services.override_tokens import OverrideService, OverrideTokenAuthority
from proctorwatch.services.session_lifecycle import SessionLifecycleController
from proctorwatch.utils.clock import Clock, utcnow

security = HTTPBearer()


class IntegrityServices:
    """The integrity services wired to one storage client"""

    def __init__(
        self,
        client,
        app_settings=settings,
        host_factory: Optional[Callable[[], HostCapabilities]] = None,
        telemetry_factory: Optional[Callable[[], TelemetrySource]] = None,
        now: Clock = utcnow,
    ):
        self.audit = AuditLog(client, now)
        self.tokens = OverrideTokenAuthority(
            client,
            self.audit,
            ttl_seconds=app_settings.OVERRIDE_CODE_TTL_SECONDS,
            code_length=app_settings.OVERRIDE_CODE_LENGTH,
            now=now,
        )
        self.overrides = OverrideService(client, self.tokens, self.audit, now)
        self.lifecycle = SessionLifecycleController(client, self.audit, now)
        self.flags = FlagAggregator(client, self.lifecycle, self.audit, now)
        self.monitoring = MonitoringRegistry(
            client,
            self.flags,
            self.overrides,
            app_settings,
            host_factory=host_factory or (lambda: DesktopHost(app_settings.EXAM_WINDOW_TITLE)),
            telemetry_factory=telemetry_factory or PsutilTelemetry,
        )

    async def shutdown(self) -> None:
        await self.monitoring.shutdown()
        await self.lifecycle.shutdown()


def get_db():
    return get_supabase_client()


@lru_cache()
def get_services() -> IntegrityServices:
    return IntegrityServices(get_supabase_client())


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
) -> dict:
    """Get current authenticated user from JWT token"""
    token = credentials.credentials

    payload = decode_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    try:
        result = db.table("users").select("id, username, role, is_active")\
            .eq("id", user_id).limit(1).execute()
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Database error: {str(e)}"
        )

    user = result.data[0] if result.data else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if not user.get("is_active"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    return user


def require_role(*roles: UserRole):
    """Dependency factory for role-based access control"""
    allowed = [role.value for role in roles]

    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {allowed}"
            )
        return current_user
    return role_checker


get_current_admin = require_role(UserRole.ADMIN)
get_current_reviewer = require_role(UserRole.TEACHER, UserRole.ADMIN)
get_current_student = require_role(UserRole.STUDENT)
get_current_staff = require_role(UserRole.ADMIN, UserRole.TECHNICAL)

"""
Override codes: issuance, single-use redemption and the side effects a
redeemed code unlocks (module override or Face ID reset).
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional, Iterable, Dict, Any, Set

from postgrest.exceptions import APIError

from proctorwatch.core.security import verify_password
from proctorwatch.models.integrity import (
    OverrideToken, ModuleOverride, ProctoringModule, TokenPurpose
)
from proctorwatch.services.audit import AuditLog
from proctorwatch.services.notifications import EventChannel
from proctorwatch.utils.clock import Clock, utcnow, parse_timestamp
from proctorwatch.utils.exceptions import (
    AppError, PermissionDenied, TokenAlreadyUsed, TokenExpired, TokenInvalid,
    ValidationFailure
)

logger = logging.getLogger(__name__)

# 32 symbols: no I, O, 0 or 1
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
UNIQUE_VIOLATION = "23505"
MAX_ISSUE_ATTEMPTS = 3


def _masked(code: str) -> str:
    return code[:2] + "*" * max(len(code) - 2, 0)


class OverrideTokenAuthority:
    """Issues and redeems short-lived, purpose-scoped, single-use codes"""

    def __init__(
        self,
        client,
        audit: AuditLog,
        ttl_seconds: int = 300,
        code_length: int = 6,
        now: Clock = utcnow,
    ):
        self.client = client
        self.audit = audit
        self.ttl = timedelta(seconds=ttl_seconds)
        self.code_length = code_length
        self.now = now

    def _draw_code(self) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.code_length))

    def normalize(self, code: str) -> str:
        """Upper-case and validate the shape of a user-entered code"""
        normalized = (code or "").strip().upper()
        if len(normalized) != self.code_length or any(c not in CODE_ALPHABET for c in normalized):
            raise TokenInvalid(f"Please enter a valid {self.code_length}-character override code")
        return normalized

    async def generate(self, purpose: TokenPurpose, issuer_id: str) -> OverrideToken:
        """
        Issue a new code.

        Args:
            purpose: What the code unlocks; fixed for its lifetime
            issuer_id: Administrator issuing the code

        Returns:
            The stored OverrideToken (code + expires_at)
        """
        purpose = TokenPurpose(purpose)

        for attempt in range(MAX_ISSUE_ATTEMPTS):
            issued_at = self.now()
            row = {
                "code": self._draw_code(),
                "purpose": purpose.value,
                "created_by": issuer_id,
                "created_at": issued_at.isoformat(),
                "expires_at": (issued_at + self.ttl).isoformat(),
                "used": False,
            }
            try:
                response = self.client.table("override_codes").insert(row).execute()
            except APIError as e:
                # A live code with the same symbols already exists; draw again
                if e.code == UNIQUE_VIOLATION and attempt < MAX_ISSUE_ATTEMPTS - 1:
                    continue
                raise

            stored = response.data[0] if response.data else row
            token = OverrideToken(**stored)
            logger.info(
                f"Override code {_masked(token.code)} issued by {issuer_id} "
                f"for {purpose.value}, expires {token.expires_at.isoformat()}"
            )
            self.audit.record(
                "OVERRIDE_CODE_ISSUED",
                user_id=issuer_id,
                target_type="override_code",
                target_id=token.id,
                details={"purpose": purpose.value, "expires_at": token.expires_at.isoformat()},
            )
            return token

        raise AppError("Failed to generate override code", 500)

    async def peek(self, code: str) -> Optional[OverrideToken]:
        """Read a code without consuming it"""
        response = self.client.table("override_codes").select("*")\
            .eq("code", self.normalize(code)).limit(1).execute()
        return OverrideToken(**response.data[0]) if response.data else None

    async def redeem(
        self,
        code: str,
        redeemer_id: Optional[str],
        expected_purpose: Optional[TokenPurpose] = None,
    ) -> OverrideToken:
        """
        Consume a code exactly once.

        The used flag is flipped by a single filtered UPDATE, so of two
        concurrent redeemers only one gets a row back.

        Raises:
            TokenInvalid: unknown code or purpose mismatch
            TokenExpired: now is past expires_at
            TokenAlreadyUsed: the code was consumed before
        """
        normalized = self.normalize(code)
        now = self.now()

        query = self.client.table("override_codes").update({
            "used": True,
            "used_at": now.isoformat(),
            "used_by": redeemer_id,
        }).eq("code", normalized).eq("used", False).gt("expires_at", now.isoformat())
        if expected_purpose is not None:
            query = query.eq("purpose", TokenPurpose(expected_purpose).value)
        response = query.execute()

        if not response.data:
            self._reject(normalized, now, expected_purpose)

        token = OverrideToken(**response.data[0])
        logger.info(f"Override code {_masked(normalized)} redeemed by {redeemer_id} ({token.purpose.value})")
        self.audit.record(
            "OVERRIDE_CODE_REDEEMED",
            user_id=redeemer_id,
            target_type="override_code",
            target_id=token.id,
            details={"purpose": token.purpose.value, "issued_by": token.created_by},
        )
        return token

    def _reject(self, code: str, now, expected_purpose: Optional[TokenPurpose]) -> None:
        """Work out why the guarded update matched nothing and raise accordingly"""
        response = self.client.table("override_codes").select("*")\
            .eq("code", code).limit(1).execute()
        row = response.data[0] if response.data else None

        if row is None:
            error = TokenInvalid()
        elif row.get("used"):
            error = TokenAlreadyUsed()
        elif parse_timestamp(row["expires_at"]) <= now:
            error = TokenExpired()
        elif expected_purpose is not None and row.get("purpose") != TokenPurpose(expected_purpose).value:
            error = TokenInvalid(
                f"This code is for {row.get('purpose')}, not {TokenPurpose(expected_purpose).value}"
            )
        else:
            error = TokenInvalid()

        logger.warning(f"Override code {_masked(code)} rejected: {error.reason}")
        raise error


class OverrideService:
    """Applies what an authorization (code or admin credentials) unlocks"""

    def __init__(self, client, authority: OverrideTokenAuthority, audit: AuditLog, now: Clock = utcnow):
        self.client = client
        self.authority = authority
        self.audit = audit
        self.now = now
        # Running monitors apply overrides as they land
        self.applied: EventChannel[ModuleOverride] = EventChannel("module-overrides")

    @staticmethod
    def _parse_modules(modules: Optional[Iterable[str]]) -> Set[ProctoringModule]:
        parsed = set()
        for module in modules or []:
            try:
                parsed.add(ProctoringModule(module))
            except ValueError:
                raise ValidationFailure(f"Unknown proctoring module: {module}")
        return parsed

    async def redeem_and_apply(
        self,
        code: str,
        redeemer_id: Optional[str],
        reason: str,
        session_id: Optional[str] = None,
        student_id: Optional[str] = None,
        disabled_modules: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """
        Redeem a code and apply its purpose.

        Inputs are validated against the code's purpose before the code is
        consumed, so a malformed request never burns a code.
        """
        if not reason or not reason.strip():
            raise ValidationFailure("Reason is required")
        modules = self._parse_modules(disabled_modules)

        known = await self.authority.peek(code)
        if known is not None and known.purpose == TokenPurpose.MODULE_OVERRIDE and not session_id:
            raise ValidationFailure("A session is required for a module override")

        token = await self.authority.redeem(
            code, redeemer_id, expected_purpose=known.purpose if known else None
        )

        result: Dict[str, Any] = {"purpose": token.purpose.value, "issued_by": token.created_by}
        if token.purpose == TokenPurpose.MODULE_OVERRIDE:
            override = await self.apply_module_override(
                session_id=session_id,
                disabled_modules=modules,
                reason=reason,
                admin_id=token.created_by,
                via="override_code",
                override_code_id=token.id,
            )
            result["disabled_modules"] = sorted(m.value for m in override.disabled_modules)
        else:
            target = student_id or redeemer_id
            await self.reset_face_id(
                student_id=target,
                reason=reason,
                admin_id=token.created_by,
                via="override_code",
                session_id=session_id,
                override_code_id=token.id,
            )
            result["student_id"] = target
        return result

    async def authorize_admin_credentials(self, username: str, password: str) -> Dict[str, Any]:
        """Credentials path: an active admin/technical account unlocks a module override"""
        response = self.client.table("users").select("id, role, password_hash")\
            .eq("username", username).eq("is_active", True)\
            .in_("role", ["admin", "technical"]).limit(1).execute()
        admin = response.data[0] if response.data else None

        if not admin or not verify_password(password, admin.get("password_hash")):
            logger.warning(f"Admin credential override rejected for '{username}'")
            raise PermissionDenied("Invalid admin credentials")
        return {"id": admin["id"], "role": admin["role"]}

    async def apply_module_override(
        self,
        session_id: str,
        disabled_modules: Iterable[str],
        reason: str,
        admin_id: Optional[str],
        via: str,
        override_code_id: Optional[str] = None,
    ) -> ModuleOverride:
        if not reason or not reason.strip():
            raise ValidationFailure("Reason is required")
        modules = self._parse_modules(disabled_modules)

        row = {
            "session_id": session_id,
            "admin_id": admin_id,
            "disabled_modules": sorted(m.value for m in modules),
            "reason": reason.strip(),
            "applied_at": self.now().isoformat(),
        }
        response = self.client.table("module_overrides").insert(row).execute()
        stored = response.data[0] if response.data else row

        self.audit.record(
            "ADMIN_OVERRIDE_APPLIED",
            user_id=admin_id,
            target_type="exam_session",
            target_id=session_id,
            details={
                "disabled_modules": row["disabled_modules"],
                "reason": row["reason"],
                "via": via,
                "override_code_id": override_code_id,
            },
        )
        logger.info(f"Module override on session {session_id}: {row['disabled_modules']} ({via})")
        override = ModuleOverride(**stored)
        await self.applied.publish(override)
        return override

    async def reset_face_id(
        self,
        student_id: str,
        reason: str,
        admin_id: Optional[str],
        via: str,
        session_id: Optional[str] = None,
        override_code_id: Optional[str] = None,
    ) -> None:
        """Drop the student's registered face so they can enroll again"""
        self.client.table("face_registrations").delete().eq("user_id", student_id).execute()

        self.audit.record(
            "FACE_ID_RESET",
            user_id=admin_id,
            target_type="user",
            target_id=student_id,
            details={
                "reason": reason.strip(),
                "via": via,
                "session_id": session_id,
                "override_code_id": override_code_id,
            },
        )
        logger.info(f"Face ID reset for student {student_id} ({via})")

    async def get_disabled_modules(self, session_id: str) -> Set[ProctoringModule]:
        """The latest override for a session supersedes any earlier one"""
        response = self.client.table("module_overrides").select("*")\
            .eq("session_id", session_id)\
            .order("applied_at", desc=True)\
            .limit(1).execute()
        if not response.data:
            return set()
        return self._parse_modules(response.data[0].get("disabled_modules"))

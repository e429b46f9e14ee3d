"""
Flag intake and the staff review / escalation workflow.

Detection sources report severities in several historical encodings;
normalize_severity() is the only place raw strings are interpreted.
"""

import logging
from typing import Optional, Dict, Any, List

from proctorwatch.models.integrity import (
    Flag, ReviewAction, SessionStatus, Severity
)
from proctorwatch.services.audit import AuditLog
from proctorwatch.services.session_lifecycle import SessionLifecycleController
from proctorwatch.utils.clock import Clock, utcnow
from proctorwatch.utils.exceptions import (
    AlreadyReviewed, AppError, InvalidTransition, NotFound, PermissionDenied,
    ValidationFailure
)

logger = logging.getLogger(__name__)

SEVERITY_ENCODINGS = {
    "high": Severity.RED,
    "red": Severity.RED,
    "medium": Severity.ORANGE,
    "orange": Severity.ORANGE,
    "yellow": Severity.ORANGE,
    "low": Severity.ORANGE,
}

# Raw values stored by older clients, per canonical severity
LEGACY_SEVERITY_VALUES = {
    Severity.RED: ["high", "RED"],
    Severity.ORANGE: ["medium", "ORANGE", "YELLOW", "low"],
}

ACCEPTING_FLAGS = {SessionStatus.IN_PROGRESS, SessionStatus.PAUSED}
ADMIN_ROLES = {"admin"}
REVIEWER_ROLES = {"admin", "teacher"}


def normalize_severity(raw) -> Severity:
    """Map any known severity encoding onto RED / ORANGE"""
    if isinstance(raw, Severity):
        return raw
    severity = SEVERITY_ENCODINGS.get(str(raw).strip().lower())
    if severity is None:
        raise ValidationFailure(f"Unknown flag severity: {raw}")
    return severity


def _to_flag(row: Dict[str, Any]) -> Flag:
    data = dict(row)
    data["severity"] = normalize_severity(data.get("severity"))
    data["metadata"] = data.get("metadata") or {}
    data["module"] = data.get("module") or "unknown"
    return Flag(**data)


class FlagAggregator:
    """Ingests violation flags, keeps per-session counters, runs reviews"""

    def __init__(
        self,
        client,
        lifecycle: SessionLifecycleController,
        audit: AuditLog,
        now: Clock = utcnow,
    ):
        self.client = client
        self.lifecycle = lifecycle
        self.audit = audit
        self.now = now

    async def ingest(
        self,
        session_id: str,
        flag_type: str,
        severity,
        module: Optional[str] = None,
        evidence_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        confidence: Optional[float] = None,
    ) -> Flag:
        """
        Store a flag and bump the owning session's counter.

        Args:
            session_id: Owning exam session
            flag_type: e.g. MULTIPLE_FACES, PROCESS_KILLED
            severity: Any supported encoding (high/RED, medium/ORANGE/YELLOW/low)
            module: Originating detection source; derived from flag_type if omitted

        Returns:
            The stored Flag with canonical severity
        """
        canonical = normalize_severity(severity)

        session = await self.lifecycle.get(session_id)
        if session.status not in ACCEPTING_FLAGS:
            raise InvalidTransition(
                session.status.value, "flagged",
                message=f"Session is {session.status.value} and not accepting flags",
            )

        row = {
            "session_id": session_id,
            "flag_type": flag_type,
            "severity": canonical.value,
            "module": module or (flag_type.split("_")[0].lower() if flag_type else "unknown"),
            "metadata": metadata or {},
            "evidence_url": evidence_url,
            "confidence": confidence,
            "timestamp": self.now().isoformat(),
            "reviewed": False,
        }
        response = self.client.table("flags").insert(row).execute()
        if not response.data:
            raise AppError("Failed to store flag", 500)

        # Single-statement increment in Postgres; safe under concurrent sources
        self.client.rpc("increment_session_flag", {
            "p_session_id": session_id,
            "p_severity": canonical.value,
        }).execute()

        flag = _to_flag(response.data[0])
        logger.info(f"Flag {flag.flag_type} ({canonical.value}) on session {session_id}")
        return flag

    async def get_flag(self, flag_id: str) -> Flag:
        response = self.client.table("flags").select("*").eq("id", flag_id).limit(1).execute()
        if not response.data:
            raise NotFound("Flag not found")
        return _to_flag(response.data[0])

    async def list_flags(
        self,
        session_id: Optional[str] = None,
        filter_by: Optional[str] = None,
        limit: int = 100,
    ) -> List[Flag]:
        """List flags, optionally filtered: red, orange, escalated, unreviewed"""
        query = self.client.table("flags").select("*")
        if session_id:
            query = query.eq("session_id", session_id)

        if filter_by == "red":
            query = query.in_("severity", LEGACY_SEVERITY_VALUES[Severity.RED])
        elif filter_by == "orange":
            query = query.in_("severity", LEGACY_SEVERITY_VALUES[Severity.ORANGE])
        elif filter_by == "escalated":
            query = query.eq("review_action", ReviewAction.ESCALATE.value)
        elif filter_by == "unreviewed":
            query = query.eq("reviewed", False)
        elif filter_by:
            raise ValidationFailure(f"Unknown flag filter: {filter_by}")

        response = query.order("timestamp", desc=True).limit(limit).execute()
        return [_to_flag(row) for row in response.data or []]

    async def review(
        self,
        flag_id: str,
        action,
        notes: Optional[str],
        reviewer: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Record a review outcome.

        escalate is for non-administrators and only surfaces the flag to
        administrators; invalidate is for administrators and invalidates
        the session. Re-running a review overwrites the record fields, but
        the invalidation itself happens at most once.

        Raises:
            PermissionDenied: action not allowed for the reviewer's role
            AlreadyReviewed: a non-administrator revisiting a reviewed flag
            InvalidTransition: invalidate on a session that never started
        """
        try:
            action = ReviewAction(action)
        except ValueError:
            raise ValidationFailure(f"Unknown review action: {action}")

        role = reviewer.get("role")
        if role not in REVIEWER_ROLES:
            raise PermissionDenied("Only teachers and administrators review flags")
        is_admin = role in ADMIN_ROLES
        if action == ReviewAction.ESCALATE and is_admin:
            raise PermissionDenied("Administrators resolve escalations; they do not escalate")
        if action == ReviewAction.INVALIDATE and not is_admin:
            raise PermissionDenied("Only administrators can invalidate an exam")

        flag = await self.get_flag(flag_id)
        if flag.reviewed and not is_admin:
            raise AlreadyReviewed(flag.id, flag.review_action.value if flag.review_action else None)

        # Lifecycle first: if it refuses, the flag record stays untouched
        invalidated = None
        if action == ReviewAction.INVALIDATE:
            invalidated = await self.lifecycle.invalidate_from_review(
                flag.session_id,
                reviewer_id=reviewer.get("id"),
                reason=notes or "Invalidated on flag review",
                flag_id=flag.id,
            )

        response = self.client.table("flags").update({
            "reviewed": True,
            "review_action": action.value,
            "review_notes": notes,
            "reviewed_by": reviewer.get("id"),
        }).eq("id", flag.id).execute()
        updated = _to_flag(response.data[0]) if response.data else flag

        self.audit.record(
            "FLAG_REVIEWED",
            user_id=reviewer.get("id"),
            target_type="flag",
            target_id=flag.id,
            details={
                "session_id": flag.session_id,
                "action": action.value,
                "notes": notes,
                "previous_action": flag.review_action.value if flag.review_action else None,
            },
        )
        logger.info(f"Flag {flag.id} reviewed by {reviewer.get('id')}: {action.value}")

        return {
            "flag": updated,
            "session_invalidated": invalidated is not None,
        }

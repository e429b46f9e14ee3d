"""
Exam session state machine.

    scheduled --start--> in_progress <--suspend/resume--> paused
    in_progress --submit / deadline--> submitted
    in_progress|paused --terminate--> terminated
    in_progress|paused|submitted|terminated --flag review "invalidate"--> invalidated

terminated and invalidated are terminal. Every transition is a single
status-guarded UPDATE, so concurrent callers resolve to one writer.
Completed transitions are published on `transitions`.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional, Dict, Any, Iterable

from proctorwatch.models.integrity import ExamSession, SessionStatus
from proctorwatch.services.audit import AuditLog
from proctorwatch.services.notifications import EventChannel
from proctorwatch.utils.clock import Clock, utcnow, parse_timestamp
from proctorwatch.utils.exceptions import InvalidTransition, NotFound, ValidationFailure

logger = logging.getLogger(__name__)

TIME_EXPIRED_REASON = "time_expired"
INVALIDATABLE = [
    SessionStatus.IN_PROGRESS,
    SessionStatus.PAUSED,
    SessionStatus.SUBMITTED,
    SessionStatus.TERMINATED,
]


class SessionLifecycleController:
    """Drives exam sessions through their lifecycle"""

    def __init__(self, client, audit: AuditLog, now: Clock = utcnow):
        self.client = client
        self.audit = audit
        self.now = now
        # session_id -> pending auto-submit task
        self._deadlines: Dict[str, asyncio.Task] = {}
        self.transitions: EventChannel[ExamSession] = EventChannel("session-transitions")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, session_id: str) -> ExamSession:
        response = self.client.table("exam_sessions").select("*")\
            .eq("id", session_id).limit(1).execute()
        if not response.data:
            raise NotFound("Exam session not found")
        return ExamSession(**response.data[0])

    async def _get_test(self, test_id: str) -> Dict[str, Any]:
        response = self.client.table("tests").select("id, start_time, end_time, duration_minutes")\
            .eq("id", test_id).limit(1).execute()
        if not response.data:
            raise NotFound("Test not found")
        return response.data[0]

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    async def _transition(
        self,
        session_id: str,
        sources: Iterable[SessionStatus],
        target: SessionStatus,
        reason: str,
        actor_id: Optional[str],
        action: str,
        extra: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ExamSession:
        if not reason or not reason.strip():
            raise ValidationFailure("Reason is required")

        values = {"status": target.value, "status_reason": reason.strip()}
        values.update(extra or {})

        response = self.client.table("exam_sessions").update(values)\
            .eq("id", session_id)\
            .in_("status", [s.value for s in sources])\
            .execute()

        if not response.data:
            current = await self.get(session_id)
            raise InvalidTransition(current.status.value, target.value)

        session = ExamSession(**response.data[0])
        audit_details = {"to": target.value, "reason": reason.strip()}
        audit_details.update(details or {})
        self.audit.record(
            action,
            user_id=actor_id,
            target_type="exam_session",
            target_id=session_id,
            details=audit_details,
        )
        logger.info(f"Session {session_id} -> {target.value} ({reason.strip()})")
        await self.transitions.publish(session)
        return session

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, session_id: str, actor_id: Optional[str], reason: str) -> ExamSession:
        """scheduled -> in_progress, only while the test window is open"""
        session = await self.get(session_id)
        test = await self._get_test(session.test_id)
        now = self.now()

        window_start = parse_timestamp(test["start_time"])
        window_end = parse_timestamp(test["end_time"])
        if not (window_start <= now <= window_end):
            raise InvalidTransition(
                session.status.value,
                SessionStatus.IN_PROGRESS.value,
                message="The exam window is not open",
            )

        started = await self._transition(
            session_id,
            [SessionStatus.SCHEDULED],
            SessionStatus.IN_PROGRESS,
            reason,
            actor_id,
            "SESSION_STARTED",
            extra={"started_at": now.isoformat()},
        )
        self._arm_deadline(started, test.get("duration_minutes"))
        return started

    async def suspend(self, session_id: str, actor_id: Optional[str], reason: str) -> ExamSession:
        session = await self._transition(
            session_id, [SessionStatus.IN_PROGRESS], SessionStatus.PAUSED,
            reason, actor_id, "SESSION_SUSPENDED",
        )
        self._cancel_deadline(session_id)
        return session

    async def resume(self, session_id: str, actor_id: Optional[str], reason: str) -> ExamSession:
        session = await self._transition(
            session_id, [SessionStatus.PAUSED], SessionStatus.IN_PROGRESS,
            reason, actor_id, "SESSION_RESUMED",
        )
        test = await self._get_test(session.test_id)
        self._arm_deadline(session, test.get("duration_minutes"))
        return session

    async def submit(
        self,
        session_id: str,
        actor_id: Optional[str],
        reason: str = "student_submit",
        score: Optional[float] = None,
    ) -> ExamSession:
        extra: Dict[str, Any] = {"ended_at": self.now().isoformat()}
        if score is not None:
            extra["score"] = max(0, score)
        session = await self._transition(
            session_id, [SessionStatus.IN_PROGRESS], SessionStatus.SUBMITTED,
            reason, actor_id, "EXAM_SUBMITTED", extra=extra,
            details={"automatic": reason == TIME_EXPIRED_REASON, "score": extra.get("score")},
        )
        self._cancel_deadline(session_id)
        return session

    async def terminate(self, session_id: str, actor_id: Optional[str], reason: str) -> ExamSession:
        session = await self._transition(
            session_id, [SessionStatus.IN_PROGRESS, SessionStatus.PAUSED], SessionStatus.TERMINATED,
            reason, actor_id, "SESSION_TERMINATED",
            extra={"ended_at": self.now().isoformat()},
        )
        self._cancel_deadline(session_id)
        return session

    async def invalidate_from_review(
        self,
        session_id: str,
        reviewer_id: Optional[str],
        reason: str,
        flag_id: str,
    ) -> Optional[ExamSession]:
        """
        Any started session -> invalidated, forcing score 0.
        A running session is ended here and its deadline cancelled.

        Only the flag review workflow calls this. Returns None when the
        session is already invalidated (a repeated or concurrent review),
        in which case nothing is written and no audit entry is added.
        """
        session = await self.get(session_id)
        if session.status == SessionStatus.INVALIDATED:
            logger.info(f"Session {session_id} already invalidated; review {flag_id} is a no-op")
            return None

        extra: Dict[str, Any] = {"score": 0}
        if session.ended_at is None:
            extra["ended_at"] = self.now().isoformat()

        try:
            invalidated = await self._transition(
                session_id,
                INVALIDATABLE,
                SessionStatus.INVALIDATED,
                reason or "Invalidated on flag review",
                reviewer_id,
                "EXAM_INVALIDATED",
                extra=extra,
                details={"session_id": session_id, "flag_id": flag_id},
            )
        except InvalidTransition as e:
            # Lost the race to another reviewer
            if e.current == SessionStatus.INVALIDATED.value:
                return None
            raise
        self._cancel_deadline(session_id)
        return invalidated

    # ------------------------------------------------------------------
    # Submission deadline (safety net independent of any polling loop)
    # ------------------------------------------------------------------

    def _arm_deadline(self, session: ExamSession, duration_minutes: Optional[int]) -> None:
        if not duration_minutes or session.started_at is None:
            return
        deadline = session.started_at + timedelta(minutes=duration_minutes)
        delay = max(0.0, (deadline - self.now()).total_seconds())

        self._cancel_deadline(session.id)
        self._deadlines[session.id] = asyncio.create_task(
            self._expire_after(session.id, delay),
            name=f"deadline:{session.id}",
        )
        logger.debug(f"Session {session.id} auto-submits in {delay:.0f}s")

    def _cancel_deadline(self, session_id: str) -> None:
        task = self._deadlines.pop(session_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def has_deadline(self, session_id: str) -> bool:
        task = self._deadlines.get(session_id)
        return task is not None and not task.done()

    async def _expire_after(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.submit(session_id, actor_id=None, reason=TIME_EXPIRED_REASON)
            logger.info(f"Session {session_id} auto-submitted at deadline")
        except InvalidTransition as e:
            logger.debug(f"Deadline for {session_id} found status {e.current}; nothing to submit")
        except Exception:
            logger.exception(f"Auto-submit failed for session {session_id}")
        finally:
            if self._deadlines.get(session_id) is asyncio.current_task():
                self._deadlines.pop(session_id, None)

    async def shutdown(self) -> None:
        """Cancel every pending deadline"""
        tasks = list(self._deadlines.values())
        self._deadlines.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

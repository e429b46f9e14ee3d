"""
Per-session monitoring: one EnforcementLoop and one RiskScoringEngine for
every session being proctored on this host.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from proctorwatch.core.host import HostCapabilities
from proctorwatch.core.telemetry import TelemetrySource
from proctorwatch.models.integrity import (
    ExamSession, ModuleOverride, ProctoringModule, SessionStatus, ViolationEvent
)
from proctorwatch.services.enforcement import EnforcementConfig, EnforcementLoop, load_process_lists
from proctorwatch.services.flag_review import FlagAggregator
from proctorwatch.services.notifications import ViolationChannel
from proctorwatch.services.override_tokens import OverrideService
from proctorwatch.services.risk_scoring import RiskConfig, RiskFlagger, RiskScoringEngine
from proctorwatch.utils.exceptions import InvalidTransition, NotFound

logger = logging.getLogger(__name__)

# Violation severities that become flags; others (info) are UI-only
FLAGGED_VIOLATIONS = {"high", "medium"}

# Monitoring ends on entering any of these
ENDED_STATUSES = {SessionStatus.SUBMITTED, SessionStatus.TERMINATED, SessionStatus.INVALIDATED}


class SessionMonitor:
    """Everything running for one session"""

    def __init__(
        self,
        session_id: str,
        violations: ViolationChannel,
        enforcement: Optional[EnforcementLoop],
        risk: Optional[RiskScoringEngine],
        disabled_modules: List[str],
    ):
        self.session_id = session_id
        self.violations = violations
        self.enforcement = enforcement
        self.risk = risk
        self.disabled_modules = disabled_modules

    async def start(self) -> None:
        if self.enforcement is not None:
            await self.enforcement.start()
        if self.risk is not None:
            self.risk.start()

    async def stop(self) -> None:
        if self.enforcement is not None:
            await self.enforcement.stop()
        if self.risk is not None:
            await self.risk.stop()

    def status(self) -> Dict[str, Any]:
        snapshot = self.risk.last_snapshot if self.risk is not None else None
        latest = self.violations.latest
        return {
            "session_id": self.session_id,
            "active": True,
            "disabled_modules": self.disabled_modules,
            "enforcement_tasks": self.enforcement.active_tasks if self.enforcement else [],
            "keyboard_hook": self.enforcement.hook_installed if self.enforcement else False,
            "risk_running": self.risk.running if self.risk else False,
            "last_risk_snapshot": snapshot.model_dump(mode="json") if snapshot else None,
            "last_violation": latest.model_dump(mode="json") if latest else None,
        }


class MonitoringRegistry:
    """
    Starts, tracks and stops SessionMonitors.

    A monitor is torn down whenever its session ends (student submit,
    deadline, termination or invalidation), and module overrides are
    applied to a running monitor as soon as they are stored.
    """

    def __init__(
        self,
        client,
        aggregator: FlagAggregator,
        overrides: OverrideService,
        settings,
        host_factory: Callable[[], HostCapabilities],
        telemetry_factory: Callable[[], TelemetrySource],
    ):
        self.client = client
        self.aggregator = aggregator
        self.overrides = overrides
        self.settings = settings
        self.host_factory = host_factory
        self.telemetry_factory = telemetry_factory
        self._monitors: Dict[str, SessionMonitor] = {}
        self._lock = asyncio.Lock()

        aggregator.lifecycle.transitions.subscribe(self._on_transition)
        overrides.applied.subscribe(self._on_override)

    def _flag_violation(self, session_id: str):
        async def listener(event: ViolationEvent) -> None:
            if event.severity not in FLAGGED_VIOLATIONS:
                return
            await self.aggregator.ingest(
                session_id,
                flag_type=event.type,
                severity=event.severity,
                module=ProctoringModule.ENFORCEMENT.value,
                metadata={"message": event.message},
            )
        return listener

    async def _build_enforcement(self, session_id: str, violations: ViolationChannel) -> EnforcementLoop:
        blacklist, whitelist = await asyncio.to_thread(load_process_lists, self.client)
        return EnforcementLoop(
            session_id,
            self.host_factory(),
            EnforcementConfig.from_settings(self.settings, blacklist, whitelist),
            violations,
        )

    def _build_risk(self, session_id: str) -> RiskScoringEngine:
        risk = RiskScoringEngine(
            self.telemetry_factory(),
            RiskConfig.from_settings(self.settings),
            name=f"risk:{session_id}",
        )
        risk.snapshots.subscribe(
            RiskFlagger.from_settings(session_id, self.aggregator, self.settings)
        )
        return risk

    async def start(self, session_id: str) -> Dict[str, Any]:
        """Start monitoring an in-progress session; a second call is a no-op"""
        async with self._lock:
            existing = self._monitors.get(session_id)
            if existing is not None:
                return existing.status()

            session = await self.aggregator.lifecycle.get(session_id)
            if session.status != SessionStatus.IN_PROGRESS:
                raise InvalidTransition(
                    session.status.value, "monitored",
                    message="Monitoring starts only for sessions in progress",
                )

            disabled = await self.overrides.get_disabled_modules(session_id)
            violations = ViolationChannel(f"violations:{session_id}")
            violations.subscribe(self._flag_violation(session_id))

            enforcement = None
            if ProctoringModule.ENFORCEMENT not in disabled:
                enforcement = await self._build_enforcement(session_id, violations)

            risk = None
            if ProctoringModule.NETWORK not in disabled:
                risk = self._build_risk(session_id)

            monitor = SessionMonitor(
                session_id, violations, enforcement, risk,
                sorted(m.value for m in disabled),
            )
            await monitor.start()
            self._monitors[session_id] = monitor

        logger.info(
            f"Monitoring started for session {session_id} "
            f"(enforcement={enforcement is not None}, risk={risk is not None})"
        )
        return monitor.status()

    async def stop(self, session_id: str) -> bool:
        async with self._lock:
            monitor = self._monitors.pop(session_id, None)
        if monitor is None:
            return False
        await monitor.stop()
        logger.info(f"Monitoring stopped for session {session_id}")
        return True

    async def _on_transition(self, session: ExamSession) -> None:
        if session.status in ENDED_STATUSES:
            await self.stop(session.id)

    async def _on_override(self, override: ModuleOverride) -> None:
        """Bring a running monitor in line with the latest override"""
        async with self._lock:
            monitor = self._monitors.get(override.session_id)
            if monitor is None:
                return
            disabled = set(override.disabled_modules)
            monitor.disabled_modules = sorted(m.value for m in disabled)

            if ProctoringModule.ENFORCEMENT in disabled:
                if monitor.enforcement is not None:
                    await monitor.enforcement.stop()
                    monitor.enforcement = None
            elif monitor.enforcement is None:
                monitor.enforcement = await self._build_enforcement(monitor.session_id, monitor.violations)
                await monitor.enforcement.start()

            if ProctoringModule.NETWORK in disabled:
                if monitor.risk is not None:
                    await monitor.risk.stop()
                    monitor.risk = None
            elif monitor.risk is None:
                monitor.risk = self._build_risk(monitor.session_id)
                monitor.risk.start()

        logger.info(f"Monitoring for session {override.session_id} now skips {monitor.disabled_modules}")

    def get(self, session_id: str) -> SessionMonitor:
        monitor = self._monitors.get(session_id)
        if monitor is None:
            raise NotFound("Session is not being monitored")
        return monitor

    def status(self, session_id: str) -> Dict[str, Any]:
        monitor = self._monitors.get(session_id)
        if monitor is None:
            return {"session_id": session_id, "active": False}
        return monitor.status()

    async def shutdown(self) -> None:
        async with self._lock:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        await asyncio.gather(*(m.stop() for m in monitors), return_exceptions=True)

"""
Composite risk scoring over host telemetry.

Every scan cycle produces a RiskSnapshot with four sub-scores:

- process_risk     1.0 if any process name contains a blacklisted substring
- network_anomaly  0 / 0.5 / 1.0 by count of established connections on a
                   suspicious local or peer port
- vpn_risk         0.5 if an interface looks like a VPN or tunnel
- remote_access    1.0 if a remote-control process or port is in use

The cut-offs and keyword sets are heuristics and live on RiskConfig.
"""

import asyncio
import logging
import time
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel

from proctorwatch.core.telemetry import Connection, TelemetrySample, TelemetrySource
from proctorwatch.models.integrity import RiskSnapshot
from proctorwatch.services.notifications import EventChannel
from proctorwatch.services.scheduling import PeriodicScheduler
from proctorwatch.utils.clock import Clock, utcnow
from proctorwatch.utils.exceptions import AppError

logger = logging.getLogger(__name__)

ESTABLISHED = "ESTABLISHED"


class RiskConfig(BaseModel):
    """Scanner heuristics; every value can be overridden per deployment"""

    scan_interval_seconds: float = 10.0

    process_blacklist: FrozenSet[str] = frozenset({
        # remote desktop
        "teamviewer", "anydesk", "logmein", "remotedesktop", "vnc", "mstsc",
        "rdpclip", "tv_w32", "ammyyadmin", "rustdesk", "splashtop",
        "ultraviewer", "parsec", "nomachine", "supremo",
        # communication
        "discord", "slack", "skype", "telegram", "whatsapp", "zoom", "teams",
        "webex", "viber",
        # assistants
        "chatgpt", "openai", "copilot",
        # screen capture
        "obs64", "obs32", "sharex", "bandicam", "camtasia", "streamlabs",
        # tunnels
        "ngrok", "localtunnel", "cloudflared", "zerotier", "hamachi", "radmin",
    })
    suspicious_ports: FrozenSet[int] = frozenset({
        3389, 5900, 5901, 5938, 22, 1723, 4444, 8080, 4040, 1080, 3128,
    })
    vpn_keywords: Tuple[str, ...] = (
        "tun", "tap", "vpn", "wireguard", "openvpn", "cloudflare",
        "warp", "proton", "nordvpn", "expressvpn", "surfshark", "mullvad",
        "tunnelbear", "windscribe",
    )
    remote_control_processes: FrozenSet[str] = frozenset({
        "mstsc.exe", "rdpclip.exe", "tv_w32.exe", "anydesk.exe",
        "teamviewer.exe", "teamviewer_service.exe", "vncviewer.exe",
        "vncserver.exe", "ultraviewer.exe", "ammyy_admin.exe",
        "rustdesk.exe", "parsec.exe",
    })
    remote_control_ports: FrozenSet[int] = frozenset({3389, 5900, 5901, 5938})

    # network_anomaly steps: at least N connections -> score
    network_steps: Tuple[Tuple[int, float], ...] = ((3, 1.0), (1, 0.5))
    vpn_score: float = 0.5

    weights: Dict[str, float] = {
        "process": 0.25,
        "network": 0.25,
        "vpn": 0.20,
        "remote": 0.15,
    }

    @classmethod
    def from_settings(cls, settings) -> "RiskConfig":
        return cls(scan_interval_seconds=settings.RISK_SCAN_INTERVAL_SECONDS)


class RiskScoringEngine:
    """
    Periodic scanner publishing one RiskSnapshot per cycle to `snapshots`.

    Keeps no history. A failed cycle is logged and skipped; the next one
    runs on schedule.
    """

    def __init__(
        self,
        source: TelemetrySource,
        config: Optional[RiskConfig] = None,
        now: Clock = utcnow,
        name: str = "risk",
    ):
        self.source = source
        self.config = config or RiskConfig()
        self.now = now
        self.snapshots: EventChannel[RiskSnapshot] = EventChannel(f"{name}:snapshots", history=1)
        self._scheduler = PeriodicScheduler(name)

    # ------------------------------------------------------------------
    # Sub-scores
    # ------------------------------------------------------------------

    def process_risk(self, processes: List[str]) -> Tuple[float, List[str]]:
        matches = []
        for name in processes:
            lowered = name.lower()
            if any(entry in lowered for entry in self.config.process_blacklist):
                if lowered not in matches:
                    matches.append(lowered)
        return (1.0 if matches else 0.0), matches

    def count_suspicious_connections(self, connections: List[Connection]) -> int:
        ports = self.config.suspicious_ports
        return sum(
            1 for conn in connections
            if conn.status == ESTABLISHED and (conn.local_port in ports or conn.remote_port in ports)
        )

    def network_anomaly(self, suspicious: int) -> float:
        for threshold, score in self.config.network_steps:
            if suspicious >= threshold:
                return score
        return 0.0

    def vpn_risk(self, interfaces: List[str]) -> Tuple[float, Optional[str]]:
        for name in interfaces:
            lowered = name.lower()
            if any(keyword in lowered for keyword in self.config.vpn_keywords):
                return self.config.vpn_score, name
        return 0.0, None

    def remote_access(self, processes: List[str], connections: List[Connection]) -> Tuple[float, Optional[str]]:
        for name in processes:
            if name.lower() in self.config.remote_control_processes:
                return 1.0, name

        ports = self.config.remote_control_ports
        for conn in connections:
            if conn.status != ESTABLISHED:
                continue
            for port in (conn.local_port, conn.remote_port):
                if port in ports:
                    return 1.0, f"port {port}"
        return 0.0, None

    def composite(self, process: float, network: float, vpn: float, remote: float) -> float:
        weights = self.config.weights
        total = sum(weights.values())
        if total <= 0:
            return 0.0
        weighted = (
            process * weights.get("process", 0)
            + network * weights.get("network", 0)
            + vpn * weights.get("vpn", 0)
            + remote * weights.get("remote", 0)
        )
        return round(min(1.0, weighted / total), 4)

    def score(self, sample: TelemetrySample) -> RiskSnapshot:
        """Pure scoring of one telemetry sample"""
        process, matches = self.process_risk(sample.processes)
        suspicious = self.count_suspicious_connections(sample.connections)
        network = self.network_anomaly(suspicious)
        vpn, vpn_interface = self.vpn_risk(sample.interfaces)
        remote, remote_signal = self.remote_access(sample.processes, sample.connections)

        return RiskSnapshot(
            timestamp=self.now(),
            process_risk=process,
            network_anomaly=network,
            vpn_risk=vpn,
            remote_access=remote,
            composite=self.composite(process, network, vpn, remote),
            blacklist_matches=matches,
            suspicious_connections=suspicious,
            vpn_interface=vpn_interface,
            remote_signal=remote_signal,
            bytes_sent=sample.bytes_sent,
            bytes_recv=sample.bytes_recv,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def scan_once(self) -> Optional[RiskSnapshot]:
        started = time.monotonic()
        try:
            sample = await asyncio.to_thread(self.source.collect)
        except AppError as e:
            logger.error(f"Risk scan skipped: {e.message}")
            return None

        snapshot = self.score(sample)
        await self.snapshots.publish(snapshot)
        logger.debug(
            f"Risk scan: composite={snapshot.composite} process={snapshot.process_risk} "
            f"network={snapshot.network_anomaly} vpn={snapshot.vpn_risk} "
            f"remote={snapshot.remote_access} ({time.monotonic() - started:.2f}s)"
        )
        return snapshot

    async def _tick(self) -> None:
        await self.scan_once()

    @property
    def running(self) -> bool:
        return bool(self._scheduler.active)

    @property
    def last_snapshot(self) -> Optional[RiskSnapshot]:
        return self.snapshots.latest

    def start(self) -> None:
        self._scheduler.every("scan", self.config.scan_interval_seconds, self._tick)

    async def stop(self) -> None:
        await self._scheduler.shutdown()


class RiskFlagger:
    """
    Snapshot observer that turns high composite scores into flags.

    At most one flag per debounce window.
    """

    def __init__(
        self,
        session_id: str,
        aggregator,
        medium_threshold: float = 0.40,
        high_threshold: float = 0.70,
        debounce_seconds: float = 10.0,
        monotonic=time.monotonic,
    ):
        self.session_id = session_id
        self.aggregator = aggregator
        self.medium_threshold = medium_threshold
        self.high_threshold = high_threshold
        self.debounce_seconds = debounce_seconds
        self.monotonic = monotonic
        self._last_flag_at: Optional[float] = None

    @classmethod
    def from_settings(cls, session_id: str, aggregator, settings) -> "RiskFlagger":
        return cls(
            session_id,
            aggregator,
            medium_threshold=settings.RISK_FLAG_MEDIUM_THRESHOLD,
            high_threshold=settings.RISK_FLAG_HIGH_THRESHOLD,
            debounce_seconds=settings.RISK_FLAG_DEBOUNCE_SECONDS,
        )

    async def __call__(self, snapshot: RiskSnapshot) -> None:
        if snapshot.composite > self.high_threshold:
            severity = "high"
        elif snapshot.composite > self.medium_threshold:
            severity = "medium"
        else:
            return

        now = self.monotonic()
        if self._last_flag_at is not None and now - self._last_flag_at < self.debounce_seconds:
            return
        self._last_flag_at = now

        await self.aggregator.ingest(
            self.session_id,
            flag_type="SYSTEM_RISK",
            severity=severity,
            module="network",
            metadata={
                "composite": snapshot.composite,
                "process_risk": snapshot.process_risk,
                "network_anomaly": snapshot.network_anomaly,
                "vpn_risk": snapshot.vpn_risk,
                "remote_access": snapshot.remote_access,
                "blacklist_matches": snapshot.blacklist_matches,
                "vpn_interface": snapshot.vpn_interface,
                "remote_signal": snapshot.remote_signal,
            },
        )

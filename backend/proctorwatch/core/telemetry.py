"""
Host telemetry for the risk scanner (psutil)
"""

import logging
from typing import List, NamedTuple, Optional, Protocol

from proctorwatch.utils.exceptions import TelemetryFetchFailure

logger = logging.getLogger(__name__)


class Connection(NamedTuple):
    local_port: Optional[int]
    remote_port: Optional[int]
    status: str


class TelemetrySample(NamedTuple):
    processes: List[str]
    connections: List[Connection]
    interfaces: List[str]
    bytes_sent: Optional[int] = None
    bytes_recv: Optional[int] = None


class TelemetrySource(Protocol):
    def collect(self) -> TelemetrySample: ...


class PsutilTelemetry:
    """Process list, inet connections, interfaces and io counters in one pass"""

    def collect(self) -> TelemetrySample:
        import psutil

        try:
            processes = []
            for proc in psutil.process_iter(["name"]):
                if proc.info.get("name"):
                    processes.append(proc.info["name"])

            connections = [
                Connection(
                    local_port=conn.laddr.port if conn.laddr else None,
                    remote_port=conn.raddr.port if conn.raddr else None,
                    status=conn.status,
                )
                for conn in psutil.net_connections(kind="inet")
            ]

            interfaces = list(psutil.net_if_addrs().keys())
            counters = psutil.net_io_counters()
        except (psutil.Error, OSError) as e:
            raise TelemetryFetchFailure(str(e))

        return TelemetrySample(
            processes=processes,
            connections=connections,
            interfaces=interfaces,
            bytes_sent=counters.bytes_sent if counters else None,
            bytes_recv=counters.bytes_recv if counters else None,
        )

"""
Audit trail writer for the audit_logs table
"""

import logging
from typing import Optional, Dict, Any

from proctorwatch.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class AuditLog:
    """Appends one audit_logs row per lifecycle transition, redemption and review"""

    def __init__(self, client, now: Clock = utcnow):
        self.client = client
        self.now = now

    def record(
        self,
        action: str,
        user_id: Optional[str],
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry = {
            "action": action,
            "user_id": user_id,
            "target_type": target_type,
            "target_id": target_id,
            "details": details or {},
            "timestamp": self.now().isoformat(),
        }
        response = self.client.table("audit_logs").insert(entry).execute()
        logger.info(f"Audit {action} by {user_id} on {target_type}:{target_id}")
        return response.data[0] if response.data else entry

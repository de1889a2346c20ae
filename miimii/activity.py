"""
Activity log: an append-only audit trail of what users did. Never raises.
"""

import json
import logging
from typing import Any, Dict, List

from miimii.database import Database
from miimii.models import new_id, utcnow

logger = logging.getLogger(__name__)


class ActivityLog:

    def __init__(self, db: Database):
        self.db = db

    def log(self, user_id: str, action: str, **details: Any):
        try:
            self.db.create("activity_logs", {
                "id": new_id(),
                "user_id": user_id,
                "action": action,
                "details": json.dumps(details, default=str),
                "created_at": utcnow().isoformat(),
            })
        except Exception as e:
            logger.error(f"Activity log write failed ({action}): {e}")

    def recent(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self.db.find_all("activity_logs", {"user_id": user_id}, order_by="created_at DESC", limit=limit)
        for row in rows:
            row["details"] = json.loads(row["details"]) if row.get("details") else {}
        return rows

"""
Notifications
=============
Everything the agent says to a user goes through NotificationEmitter.
Sends are best-effort: a platform failure is logged and never fails the
turn that produced it. Sent message ids are kept in the notifications
table so delivery receipts can update them.
"""

import logging
from typing import Optional

from miimii.database import Database, is_unique_violation
from miimii.errors import MediaTooLarge
from miimii.events import StatusUpdate
from miimii.messages import OutboundMessage, Text
from miimii.models import utcnow
from miimii.phone import mask, to_platform
from miimii.whatsapp_client import PlatformClient, PlatformError

logger = logging.getLogger(__name__)

# Delivery receipts only move forward.
_STATUS_RANK = {"sent": 1, "delivered": 2, "read": 3, "failed": 4}


class NotificationEmitter:

    def __init__(self, client: PlatformClient, db: Database = None):
        self.client = client
        self.db = db

    def acknowledge(self, message_id: str):
        """Mark the inbound message read and show the typing indicator."""
        if not message_id:
            return
        try:
            self.client.mark_read_with_typing(message_id)
        except PlatformError as e:
            logger.warning(f"Could not mark {message_id} as read: {e}")

    def send(self, phone: str, message: OutboundMessage) -> Optional[str]:
        kind = type(message).__name__.lower()
        try:
            message_id = self.client.send(to_platform(phone), message)
        except PlatformError as e:
            logger.error(f"Failed to send {kind} to {mask(phone)}: {e}")
            return None
        self._record(message_id, phone, kind)
        return message_id

    def text(self, phone: str, body: str) -> Optional[str]:
        return self.send(phone, Text(body))

    def send_document(self, phone: str, content: bytes, filename: str, caption: str = "",
                      mime_type: str = "application/pdf") -> Optional[str]:
        try:
            message_id = self.client.send_media(to_platform(phone), content, mime_type, filename,
                                                "document", caption=caption)
        except (PlatformError, MediaTooLarge) as e:
            logger.error(f"Failed to send document {filename} to {mask(phone)}: {e}")
            return None
        self._record(message_id, phone, "document")
        return message_id

    def record_status(self, update: StatusUpdate):
        if self.db is None or not update.message_id:
            return
        row = self.db.find_one("notifications", {"message_id": update.message_id})
        if not row:
            return
        if _STATUS_RANK.get(update.status, 0) <= _STATUS_RANK.get(row["status"], 0):
            return
        self.db.update("notifications", {"message_id": update.message_id}, {
            "status": update.status, "updated_at": utcnow().isoformat(),
        })
        if update.status == "failed":
            logger.warning(f"Message {update.message_id} to {mask(row['phone'])} failed: {list(update.errors)}")

    def _record(self, message_id: Optional[str], phone: str, kind: str):
        if self.db is None or not message_id:
            return
        now = utcnow().isoformat()
        try:
            self.db.create("notifications", {
                "message_id": message_id, "phone": phone, "kind": kind,
                "status": "sent", "created_at": now, "updated_at": now,
            })
        except Exception as e:
            if not is_unique_violation(e):
                logger.error(f"Could not record notification {message_id}: {e}")

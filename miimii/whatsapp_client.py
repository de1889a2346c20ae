"""
WhatsApp Cloud API client
=========================
- Plain text goes through pygwan
- Interactive, Flow, media, read/typing and key upload go straight to the
  Graph API with requests
- Media is two-phase: upload (multipart) for a media id, then send by id
"""

import logging
from typing import Any, Dict, Optional

import requests
from pygwan import WhatsApp

from miimii.config import Settings
from miimii.errors import MediaTooLarge
from miimii.messages import Media, OutboundMessage, Text, TypingIndicator

logger = logging.getLogger(__name__)

MEDIA_LIMITS = {
    "image": 5 * 1024 * 1024,
    "document": 100 * 1024 * 1024,
}


class PlatformError(Exception):
    pass


class PlatformClient:

    def __init__(self, settings: Settings, session: requests.Session = None, whatsapp: WhatsApp = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.whatsapp = whatsapp or WhatsApp(token=settings.whatsapp_token,
                                             phone_number_id=settings.phone_number_id)
        self.base_url = f"{settings.graph_url}/{settings.phone_number_id}"
        self.headers = {"Authorization": f"Bearer {settings.whatsapp_token}"}

    def _post(self, path: str, timeout: float = 30, **kwargs) -> Dict[str, Any]:
        try:
            response = self.session.post(f"{self.base_url}{path}", headers=self.headers, timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise PlatformError(f"WhatsApp API unreachable: {e}")
        if response.status_code >= 400:
            raise PlatformError(f"WhatsApp API error {response.status_code}: {response.text[:300]}")
        try:
            return response.json()
        except ValueError:
            return {}

    def send(self, to: str, message: OutboundMessage) -> Optional[str]:
        """Send and return the platform message id, if any."""
        if isinstance(message, Text):
            result = self.whatsapp.send_message(message.body, to)
            if isinstance(result, dict) and result.get("error"):
                raise PlatformError(f"WhatsApp API error: {result['error']}")
        else:
            result = self._post("/messages", json=message.to_payload(to))
        messages = (result or {}).get("messages") or [{}]
        return messages[0].get("id")

    def mark_read_with_typing(self, message_id: str):
        self._post("/messages", json=TypingIndicator(message_id).to_payload())

    def upload_media(self, content: bytes, mime_type: str, filename: str, kind: str) -> str:
        limit = MEDIA_LIMITS.get(kind)
        if limit is None:
            raise ValueError(f"Unsupported media kind: {kind}")
        if len(content) > limit:
            raise MediaTooLarge(
                f"{kind.title()} is {len(content) / 1024 / 1024:.1f} MB; the limit is {limit // 1024 // 1024} MB."
            )
        result = self._post(
            "/media",
            timeout=120,
            files={"file": (filename, content, mime_type)},
            data={"messaging_product": "whatsapp", "type": mime_type},
        )
        media_id = result.get("id")
        if not media_id:
            raise PlatformError("Media upload returned no id")
        logger.info(f"Uploaded {kind} {filename} as media {media_id}")
        return media_id

    def send_media(self, to: str, content: bytes, mime_type: str, filename: str, kind: str,
                   caption: str = "") -> Optional[str]:
        media_id = self.upload_media(content, mime_type, filename, kind)
        return self.send(to, Media(kind=kind, media_id=media_id, caption=caption, filename=filename))

    def upload_public_key(self, public_pem: bytes) -> bool:
        """Register our Flow public key; the endpoint takes form encoding, not JSON."""
        result = self._post(
            "/whatsapp_business_encryption",
            data={"business_public_key": public_pem.decode("utf-8")},
        )
        ok = bool(result.get("success"))
        logger.info(f"Flow public key upload {'succeeded' if ok else 'failed'}")
        return ok

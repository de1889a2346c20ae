"""
Webhook Parser for MiiMii
=========================
Turns WhatsApp Cloud API webhook envelopes into typed inbound events.

- GET verification handshake (hub.mode / hub.verify_token / hub.challenge)
- X-Hub-Signature-256 verification of POST bodies
- Tolerant POST parsing: a malformed entry, change or message is logged
  and skipped while its siblings are still parsed
"""

import hmac
import json
import hashlib
import logging
from typing import Any, Dict, Iterable, List, Optional

from miimii import phone as phones
from miimii.errors import InvalidPhoneNumber
from miimii.events import (
    ButtonReply, FlowSubmission, InboundEvent, ListReply, MediaMessage,
    StatusUpdate, TextMessage, UnsupportedMessage, Verification,
)

logger = logging.getLogger(__name__)

BUSINESS_ACCOUNT_OBJECT = "whatsapp_business_account"
MEDIA_TYPES = ("image", "audio", "video", "document", "voice", "sticker")


class MalformedMessage(ValueError):
    pass


class WebhookParser:

    def __init__(self, verify_token: str, app_secret: str = "", default_country: str = "234"):
        self.verify_token = verify_token
        self.app_secret = app_secret
        self.default_country = default_country

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, request: Verification) -> Optional[str]:
        """Return the challenge iff mode is subscribe and the token matches."""
        if request.mode != "subscribe" or not self.verify_token:
            return None
        supplied = (request.verify_token or "").encode("utf-8")
        if hmac.compare_digest(supplied, self.verify_token.encode("utf-8")):
            return request.challenge
        logger.warning("Webhook verification failed: token mismatch")
        return None

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self.app_secret:
            return True
        if not signature:
            logger.warning("No X-Hub-Signature-256 header on webhook POST")
            return False
        if signature.startswith("sha256="):
            signature = signature[7:]
        expected = hmac.new(self.app_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.warning("Invalid webhook signature")
        return is_valid

    # ------------------------------------------------------------------
    # Envelope parsing
    # ------------------------------------------------------------------

    def parse(self, envelope: Dict[str, Any]) -> List[InboundEvent]:
        if not isinstance(envelope, dict) or envelope.get("object") != BUSINESS_ACCOUNT_OBJECT:
            logger.info(f"Ignoring webhook for object {envelope.get('object') if isinstance(envelope, dict) else None!r}")
            return []

        events: List[InboundEvent] = []
        for entry in _as_list(envelope.get("entry")):
            if not isinstance(entry, dict):
                logger.warning(f"Skipping malformed webhook entry: {entry!r}")
                continue
            for change in _as_list(entry.get("changes")):
                value = change.get("value") if isinstance(change, dict) else None
                if not isinstance(value, dict):
                    logger.warning(f"Skipping change without value in entry {entry.get('id')}")
                    continue
                events.extend(self._parse_value(value))
        return events

    def _parse_value(self, value: Dict[str, Any]) -> Iterable[InboundEvent]:
        names = {}
        for contact in _as_list(value.get("contacts")):
            if isinstance(contact, dict) and contact.get("wa_id"):
                profile = contact.get("profile")
                names[contact["wa_id"]] = profile.get("name", "") if isinstance(profile, dict) else ""

        for message in _as_list(value.get("messages")):
            try:
                yield self._parse_message(message, names)
            except (MalformedMessage, InvalidPhoneNumber, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed message {_safe_id(message)}: {e}")

        for status in _as_list(value.get("statuses")):
            try:
                yield self._parse_status(status)
            except (MalformedMessage, InvalidPhoneNumber, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed status {_safe_id(status)}: {e}")

        completion = value.get("flow_completion")
        if completion:
            try:
                yield self._parse_flow_completion(completion, names)
            except (MalformedMessage, InvalidPhoneNumber, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed flow completion: {e}")

    def _common(self, message: Dict[str, Any], names: Dict[str, str]) -> Dict[str, Any]:
        if not isinstance(message, dict):
            raise MalformedMessage("message is not an object")
        message_id = message.get("id")
        sender = message.get("from")
        if not message_id or not sender:
            raise MalformedMessage("message without id or sender")
        return {
            "message_id": message_id,
            "phone": phones.normalize(sender, self.default_country),
            "timestamp": int(message.get("timestamp") or 0),
            "raw": message,
            "contact_name": names.get(sender, ""),
        }

    def _parse_message(self, message: Dict[str, Any], names: Dict[str, str]) -> InboundEvent:
        common = self._common(message, names)
        kind = message.get("type")

        if kind == "text":
            return TextMessage(body=str(_section(message, "text").get("body", "")), **common)

        if kind in MEDIA_TYPES:
            media = _section(message, kind)
            if not media.get("id"):
                raise MalformedMessage(f"{kind} message without media id")
            return MediaMessage(
                kind="audio" if kind == "voice" else kind,
                media_id=media["id"],
                mime_type=media.get("mime_type", ""),
                caption=media.get("caption", ""),
                **common,
            )

        if kind == "button":
            button = _section(message, "button")
            return ButtonReply(id=button.get("payload", ""), title=button.get("text", ""), **common)

        if kind == "interactive":
            return self._parse_interactive(_section(message, "interactive"), common)

        return UnsupportedMessage(type=str(kind), **common)

    def _parse_interactive(self, interactive: Dict[str, Any], common: Dict[str, Any]) -> InboundEvent:
        kind = interactive.get("type")

        if kind == "button_reply":
            reply = _section(interactive, "button_reply", required=True)
            return ButtonReply(id=reply["id"], title=reply.get("title", ""), **common)

        if kind == "list_reply":
            reply = _section(interactive, "list_reply", required=True)
            return ListReply(
                id=reply["id"],
                title=reply.get("title", ""),
                description=reply.get("description", ""),
                **common,
            )

        if kind == "nfm_reply":
            reply = _section(interactive, "nfm_reply", required=True)
            response = _load_response_json(reply.get("response_json"), common["message_id"])
            return FlowSubmission(
                name=reply.get("name", ""),
                body=reply.get("body", ""),
                response_json=response,
                flow_token=response.get("flow_token"),
                **common,
            )

        return UnsupportedMessage(type=f"interactive.{kind}", **common)

    def _parse_status(self, status: Dict[str, Any]) -> StatusUpdate:
        if not isinstance(status, dict) or not status.get("id"):
            raise MalformedMessage("status without id")
        recipient = status.get("recipient_id", "")
        return StatusUpdate(
            message_id=status["id"],
            phone=phones.normalize(recipient, self.default_country),
            timestamp=int(status.get("timestamp") or 0),
            raw=status,
            status=status.get("status", ""),
            recipient=recipient,
            errors=tuple(status.get("errors") or ()),
        )

    def _parse_flow_completion(self, completion: Dict[str, Any], names: Dict[str, str]) -> FlowSubmission:
        common = self._common(completion, names)
        response = completion.get("response_json")
        if not isinstance(response, dict):
            response = _load_response_json(response, common["message_id"])
        token = completion.get("flow_token") or response.get("flow_token")
        return FlowSubmission(
            name=completion.get("name", "flow"),
            body=completion.get("body", ""),
            response_json=response,
            flow_token=token,
            **common,
        )


def parse_verification(params: Dict[str, str]) -> Verification:
    return Verification(
        mode=params.get("hub.mode", ""),
        verify_token=params.get("hub.verify_token", ""),
        challenge=params.get("hub.challenge", ""),
    )


def _load_response_json(raw: Any, message_id: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not parse response_json on {message_id}: {e}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"response_json on {message_id} is not an object")
        return {}
    return parsed


def _section(message: Dict[str, Any], key: str, required: bool = False) -> Dict[str, Any]:
    """The object under ``key``; anything other than an object makes the message malformed."""
    section = message.get(key)
    if section is None and not required:
        return {}
    if not isinstance(section, dict):
        raise MalformedMessage(f"{key} is not an object")
    return section


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _safe_id(item: Any) -> str:
    return str(item.get("id")) if isinstance(item, dict) else repr(item)[:40]

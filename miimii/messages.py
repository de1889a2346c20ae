"""
Outbound messages
=================
Typed WhatsApp Cloud API messages. ``to_payload(to)`` builds the JSON body
for POST /{phone_number_id}/messages and applies the platform's length
limits (button titles 20, headers 60, bodies 1024, 3 buttons, 10 rows).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


def _envelope(to: str, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": kind,
        kind: body,
    }


def _decorate(interactive: Dict[str, Any], header: Optional[str], footer: Optional[str]) -> Dict[str, Any]:
    if header:
        interactive["header"] = {"type": "text", "text": header[:60]}
    if footer:
        interactive["footer"] = {"text": footer[:60]}
    return interactive


@dataclass
class Text:
    body: str
    preview_url: bool = False

    def to_payload(self, to: str) -> Dict[str, Any]:
        return _envelope(to, "text", {"body": self.body[:4096], "preview_url": self.preview_url})


@dataclass
class Button:
    id: str
    title: str


@dataclass
class ButtonPrompt:
    body: str
    buttons: List[Button]
    header: Optional[str] = None
    footer: Optional[str] = None

    def to_payload(self, to: str) -> Dict[str, Any]:
        interactive = {
            "type": "button",
            "body": {"text": self.body[:1024]},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": b.id[:256], "title": b.title[:20]}}
                    for b in self.buttons[:3]
                ]
            },
        }
        return _envelope(to, "interactive", _decorate(interactive, self.header, self.footer))


@dataclass
class ListRow:
    id: str
    title: str
    description: str = ""


@dataclass
class ListSection:
    title: str
    rows: List[ListRow]


@dataclass
class ListPrompt:
    body: str
    button_text: str
    sections: List[ListSection]
    header: Optional[str] = None
    footer: Optional[str] = None

    def to_payload(self, to: str) -> Dict[str, Any]:
        sections = []
        for section in self.sections[:10]:
            rows = []
            for row in section.rows[:10]:
                item = {"id": row.id[:200], "title": row.title[:24]}
                if row.description:
                    item["description"] = row.description[:72]
                rows.append(item)
            sections.append({"title": section.title[:24], "rows": rows})
        interactive = {
            "type": "list",
            "body": {"text": self.body[:1024]},
            "action": {"button": self.button_text[:20], "sections": sections},
        }
        return _envelope(to, "interactive", _decorate(interactive, self.header, self.footer))


@dataclass
class FlowInvitation:
    flow_id: str
    flow_token: str
    body: str
    cta: str
    initial_screen: str
    data: Dict[str, Any] = field(default_factory=dict)
    header: Optional[str] = None
    footer: Optional[str] = None

    def to_payload(self, to: str) -> Dict[str, Any]:
        action_payload: Dict[str, Any] = {"screen": self.initial_screen}
        if self.data:
            action_payload["data"] = self.data
        interactive = {
            "type": "flow",
            "body": {"text": self.body[:1024]},
            "action": {
                "name": "flow",
                "parameters": {
                    "flow_message_version": "3",
                    "flow_token": self.flow_token,
                    "flow_id": self.flow_id,
                    "flow_cta": self.cta[:20],
                    "flow_action": "navigate",
                    "flow_action_payload": action_payload,
                },
            },
        }
        return _envelope(to, "interactive", _decorate(interactive, self.header, self.footer))


@dataclass
class Media:
    kind: str  # image | document
    media_id: Optional[str] = None
    link: Optional[str] = None
    caption: str = ""
    filename: Optional[str] = None

    def to_payload(self, to: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {"id": self.media_id} if self.media_id else {"link": self.link}
        if self.caption:
            body["caption"] = self.caption[:1024]
        if self.filename and self.kind == "document":
            body["filename"] = self.filename
        return _envelope(to, self.kind, body)


@dataclass
class ReadReceipt:
    message_id: str

    def to_payload(self, to: str = "") -> Dict[str, Any]:
        return {"messaging_product": "whatsapp", "status": "read", "message_id": self.message_id}


@dataclass
class TypingIndicator:
    """Marks the inbound read and shows typing until the next send or 25 s."""
    message_id: str

    def to_payload(self, to: str = "") -> Dict[str, Any]:
        payload = ReadReceipt(self.message_id).to_payload()
        payload["typing_indicator"] = {"type": "text"}
        return payload


OutboundMessage = Union[Text, ButtonPrompt, ListPrompt, FlowInvitation, Media, ReadReceipt, TypingIndicator]

"""
Inbound events
==============
One typed event per WhatsApp message, status update or Flow completion.
Every event carries the platform message id, the sender's canonical
phone, the server timestamp and the raw sub-envelope it was parsed from.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class _Base:
    message_id: str
    phone: str
    timestamp: int
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    contact_name: str = ""


@dataclass(frozen=True)
class TextMessage(_Base):
    body: str = ""


@dataclass(frozen=True)
class MediaMessage(_Base):
    kind: str = "image"
    media_id: str = ""
    mime_type: str = ""
    caption: str = ""


@dataclass(frozen=True)
class ButtonReply(_Base):
    id: str = ""
    title: str = ""


@dataclass(frozen=True)
class ListReply(_Base):
    id: str = ""
    title: str = ""
    description: str = ""


@dataclass(frozen=True)
class FlowSubmission(_Base):
    name: str = ""
    body: str = ""
    response_json: Dict[str, Any] = field(default_factory=dict)
    flow_token: Optional[str] = None


@dataclass(frozen=True)
class StatusUpdate(_Base):
    status: str = ""
    recipient: str = ""
    errors: tuple = ()


@dataclass(frozen=True)
class Verification:
    mode: str
    verify_token: str
    challenge: str


@dataclass(frozen=True)
class UnsupportedMessage(_Base):
    type: str = ""


InboundEvent = Union[
    TextMessage, MediaMessage, ButtonReply, ListReply, FlowSubmission,
    StatusUpdate, Verification, UnsupportedMessage,
]

# Events that come from a user turn (as opposed to delivery receipts).
USER_EVENTS = (TextMessage, MediaMessage, ButtonReply, ListReply, FlowSubmission, UnsupportedMessage)


def text_of(event: Any) -> str:
    """The text a classifier or continuation handler should look at."""
    if isinstance(event, TextMessage):
        return event.body.strip()
    if isinstance(event, (ButtonReply, ListReply)):
        return event.id
    if isinstance(event, MediaMessage):
        return event.caption.strip()
    return ""

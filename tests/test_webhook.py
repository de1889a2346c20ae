import hashlib
import hmac
import json

from miimii.events import (
    ButtonReply, FlowSubmission, ListReply, MediaMessage, StatusUpdate, TextMessage, UnsupportedMessage,
    Verification,
)
from miimii.webhook import WebhookParser, parse_verification


def envelope(value):
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}],
    }


def message(kind, message_id, sender="2348012345678", **body):
    data = {"from": sender, "id": message_id, "timestamp": "1714557600", "type": kind}
    data.update(body)
    return data


CONTACTS = [{"wa_id": "2348012345678", "profile": {"name": "Ada"}}]


class TestVerification:

    def test_challenge_returned_for_matching_token(self):
        parser = WebhookParser("secret")
        request = parse_verification({"hub.mode": "subscribe", "hub.verify_token": "secret",
                                      "hub.challenge": "42"})
        assert parser.verify(request) == "42"

    def test_wrong_token_or_mode_rejected(self):
        parser = WebhookParser("secret")
        assert parser.verify(Verification("subscribe", "nope", "42")) is None
        assert parser.verify(Verification("unsubscribe", "secret", "42")) is None

    def test_signature(self):
        parser = WebhookParser("secret", app_secret="app-secret")
        body = b'{"object": "whatsapp_business_account"}'
        good = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
        assert parser.verify_signature(body, good)
        assert not parser.verify_signature(body, "sha256=deadbeef")
        assert not parser.verify_signature(body, None)

    def test_signature_not_required_without_secret(self):
        assert WebhookParser("secret").verify_signature(b"{}", None)


class TestParse:

    def test_mixed_envelope_yields_independent_events(self):
        events = WebhookParser("secret").parse(envelope({
            "messaging_product": "whatsapp",
            "contacts": CONTACTS,
            "messages": [
                message("text", "m1", text={"body": "hi"}),
                message("reaction", "m2", reaction={"emoji": "👍"}),
            ],
            "statuses": [{"id": "out1", "status": "delivered", "recipient_id": "2348012345678",
                          "timestamp": "1714557601"}],
        }))

        assert len(events) == 3
        text, unsupported, status = events
        assert isinstance(text, TextMessage)
        assert text.body == "hi"
        assert text.phone == "+2348012345678"
        assert text.contact_name == "Ada"
        assert isinstance(unsupported, UnsupportedMessage)
        assert unsupported.type == "reaction"
        assert isinstance(status, StatusUpdate)
        assert status.status == "delivered"

    def test_malformed_message_skipped_siblings_kept(self):
        events = WebhookParser("secret").parse(envelope({
            "messages": [
                {"id": "broken"},
                message("image", "m2", image={}),
                message("text", "m3", text={"body": "balance"}),
            ],
        }))
        assert [event.message_id for event in events] == ["m3"]

    def test_non_object_sections_skip_only_their_message(self):
        events = WebhookParser("secret").parse(envelope({
            "contacts": [{"wa_id": "2348012345678", "profile": "Ada"}],
            "messages": [
                message("text", "m1", text="hello"),
                message("interactive", "m2", interactive="button"),
                message("interactive", "m3", interactive={"type": "button_reply", "button_reply": "yes"}),
                message("image", "m4", image=["media-1"]),
                message("text", "m5", text={"body": "balance"}),
            ],
        }))
        assert [event.message_id for event in events] == ["m5"]
        assert events[0].body == "balance"
        assert events[0].contact_name == ""

    def test_interactive_replies(self):
        events = WebhookParser("secret").parse(envelope({
            "messages": [
                message("interactive", "b1", interactive={"type": "button_reply",
                                                          "button_reply": {"id": "confirm", "title": "Confirm"}}),
                message("interactive", "l1", interactive={"type": "list_reply",
                                                          "list_reply": {"id": "check_balance", "title": "Balance"}}),
                message("audio", "a1", audio={"id": "media-1", "mime_type": "audio/ogg"}),
            ],
        }))
        button, row, audio = events
        assert isinstance(button, ButtonReply) and button.id == "confirm"
        assert isinstance(row, ListReply) and row.id == "check_balance"
        assert isinstance(audio, MediaMessage) and audio.media_id == "media-1"

    def test_flow_reply_with_bad_json_is_not_fatal(self):
        events = WebhookParser("secret").parse(envelope({
            "messages": [
                message("interactive", "f1", interactive={"type": "nfm_reply", "nfm_reply": {
                    "name": "flow", "body": "Sent", "response_json": "{not json"}}),
                message("interactive", "f2", interactive={"type": "nfm_reply", "nfm_reply": {
                    "name": "flow", "body": "Sent",
                    "response_json": json.dumps({"flow_token": "tok", "pin": "1234"})}}),
            ],
        }))
        broken, good = events
        assert isinstance(broken, FlowSubmission) and broken.response_json == {}
        assert good.flow_token == "tok"
        assert good.response_json["pin"] == "1234"

    def test_parse_is_deterministic(self):
        parser = WebhookParser("secret")
        body = envelope({"messages": [message("text", "m1", text={"body": "hi"})]})
        assert parser.parse(body) == parser.parse(body)

    def test_other_objects_ignored(self):
        assert WebhookParser("secret").parse({"object": "page", "entry": []}) == []

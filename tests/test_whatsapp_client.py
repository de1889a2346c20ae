from unittest.mock import MagicMock

import pytest

from miimii.errors import MediaTooLarge
from miimii.messages import Button, ButtonPrompt, Text
from miimii.whatsapp_client import PlatformClient, PlatformError


def reply(status=200, body=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body or {}
    response.text = str(body)
    return response


@pytest.fixture
def client(settings):
    return PlatformClient(settings, session=MagicMock(), whatsapp=MagicMock())


class TestPlatformClient:

    def test_text_goes_through_pygwan(self, client):
        client.whatsapp.send_message.return_value = {"messages": [{"id": "wamid.t"}]}
        assert client.send("2348012345678", Text("hello")) == "wamid.t"
        client.whatsapp.send_message.assert_called_once_with("hello", "2348012345678")
        client.session.post.assert_not_called()

    def test_interactive_posts_to_graph(self, client):
        client.session.post.return_value = reply(body={"messages": [{"id": "wamid.b"}]})
        prompt = ButtonPrompt("Confirm?", [Button("confirm_yes", "Yes"), Button("confirm_no", "No")])
        assert client.send("2348012345678", prompt) == "wamid.b"
        url = client.session.post.call_args.args[0]
        assert url == "https://graph.facebook.com/v20.0/1234/messages"
        assert client.session.post.call_args.kwargs["json"]["type"] == "interactive"

    def test_api_error_raises(self, client):
        client.session.post.return_value = reply(400, {"error": {"message": "bad"}})
        with pytest.raises(PlatformError):
            client.send("2348012345678", ButtonPrompt("x", [Button("a", "A")]))

    def test_oversized_image_is_refused_before_upload(self, client):
        with pytest.raises(MediaTooLarge):
            client.upload_media(b"0" * (5 * 1024 * 1024 + 1), "image/png", "big.png", "image")
        client.session.post.assert_not_called()

    def test_document_is_uploaded_then_sent(self, client):
        client.session.post.side_effect = [reply(body={"id": "media-1"}),
                                           reply(body={"messages": [{"id": "wamid.d"}]})]
        assert client.send_media("2348012345678", b"%PDF", "application/pdf", "r.pdf", "document") == "wamid.d"
        sent = client.session.post.call_args.kwargs["json"]
        assert sent["document"]["id"] == "media-1"
        assert sent["document"]["filename"] == "r.pdf"

    def test_public_key_upload_is_form_encoded(self, client):
        client.session.post.return_value = reply(body={"success": True})
        assert client.upload_public_key(b"-----BEGIN PUBLIC KEY-----")
        kwargs = client.session.post.call_args.kwargs
        assert kwargs["data"] == {"business_public_key": "-----BEGIN PUBLIC KEY-----"}
        assert "json" not in kwargs

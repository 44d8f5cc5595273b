"""Integration tests for the chat API sender against a mocked gateway."""

import json

import httpx
from outbound.channel.chat_api import ChatApiSender
from outbound.channel.instance import ChannelInstance
from outbound.queue.message import QueuedMessage

TOKEN = "live-token-123"
TEXT_URL = "https://gateway.example.com/rest/sendMessage/inst-1/text"


def _instance(**overrides):
    defaults = {
        "channel": "chat_api",
        "instance_key": "inst-1",
        "api_url": "gateway.example.com/",
        "api_token": TOKEN,
        "status": "connected",
    }
    defaults.update(overrides)
    return ChannelInstance(**defaults)


def _message(**overrides):
    defaults = {
        "recipient_key": "551188887777",
        "channel": "chat_api",
        "message_type": "status_change",
        "content": "Order #1042 shipped",
    }
    defaults.update(overrides)
    return QueuedMessage.create(**defaults)


class Gateway:
    """Records requests and answers them with ``respond(request, body)``."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request):
        body = json.loads(request.content) if request.content else None
        self.requests.append((request, body))
        return self.respond(request, body)

    def sender(self):
        return ChatApiSender(client=httpx.Client(transport=httpx.MockTransport(self)))

    @property
    def recipients(self):
        return [body["messageData"]["to"] for _, body in self.requests]


def _ok(request, body):
    return httpx.Response(200, json={"key": {"id": "wamid-1"}})


class TestTextMessages:
    def test_successful_send(self):
        gateway = Gateway(_ok)
        result = gateway.sender().send(_message(), _instance())

        assert result == {"status": "sent", "message_id": "wamid-1"}
        request, body = gateway.requests[0]
        assert str(request.url) == TEXT_URL
        assert request.headers["apikey"] == TOKEN
        assert body == {"messageData": {"to": "551188887777", "text": "Order #1042 shipped", "linkPreview": False}}

    def test_transport_id_from_flat_response(self):
        gateway = Gateway(lambda request, body: httpx.Response(201, json={"messageId": "abc-9"}))
        assert gateway.sender().send(_message(), _instance())["message_id"] == "abc-9"

    def test_non_json_success(self):
        gateway = Gateway(lambda request, body: httpx.Response(200, text="OK"))
        result = gateway.sender().send(_message(), _instance())
        assert result["status"] == "sent"
        assert result["message_id"] is None


class TestAuthFallback:
    def test_falls_back_to_bearer(self):
        def respond(request, body):
            if request.headers.get("Authorization") == f"Bearer {TOKEN}":
                return _ok(request, body)
            return httpx.Response(401, text="invalid apikey")

        gateway = Gateway(respond)
        result = gateway.sender().send(_message(), _instance())

        assert result["status"] == "sent"
        assert len(gateway.requests) == 2

    def test_falls_back_to_capitalized_header(self):
        def respond(request, body):
            if (b"Apikey", TOKEN.encode()) in request.headers.raw:
                return _ok(request, body)
            return httpx.Response(403)

        gateway = Gateway(respond)
        result = gateway.sender().send(_message(), _instance())

        assert result["status"] == "sent"
        assert len(gateway.requests) == 3

    def test_rejected_credentials_mean_no_instance(self):
        gateway = Gateway(lambda request, body: httpx.Response(403, text="forbidden"))
        result = gateway.sender().send(_message(), _instance())

        assert result["status"] == "failed"
        assert result["failure"] == "no_instance"
        assert result["status_code"] == 403
        assert len(gateway.requests) == 3

    def test_missing_token_never_calls_out(self):
        gateway = Gateway(_ok)
        result = gateway.sender().send(_message(), _instance(api_token="SEU_TOKEN"))

        assert result["failure"] == "no_instance"
        assert gateway.requests == []


class TestPhoneVariants:
    def test_falls_back_to_long_form(self):
        def respond(request, body):
            if body["messageData"]["to"] == "551188887777":
                return httpx.Response(404, text="number not on chat")
            return _ok(request, body)

        gateway = Gateway(respond)
        result = gateway.sender().send(_message(), _instance())

        assert result["status"] == "sent"
        assert gateway.recipients == ["551188887777", "5511988887777"]

    def test_every_variant_rejected_is_permanent(self):
        gateway = Gateway(lambda request, body: httpx.Response(400, text="invalid number"))
        result = gateway.sender().send(_message(), _instance())

        assert result["status"] == "failed"
        assert result["failure"] == "permanent"
        assert result["error"] == "400 - invalid number"
        assert len(gateway.requests) == 2

    def test_disconnected_instance_is_transient(self):
        gateway = Gateway(lambda request, body: httpx.Response(400, text="Instance not connected"))
        result = gateway.sender().send(_message(), _instance())
        assert result["failure"] == "transient"

    def test_server_error_does_not_try_other_variants(self):
        gateway = Gateway(lambda request, body: httpx.Response(502, text="bad gateway"))
        result = gateway.sender().send(_message(), _instance())

        assert result["failure"] == "transient"
        assert len(gateway.requests) == 1


class TestErrors:
    def test_error_body_is_truncated(self):
        gateway = Gateway(lambda request, body: httpx.Response(500, text="x" * 1000))
        result = gateway.sender().send(_message(), _instance())

        assert result["error"] == "500 - " + "x" * 200
        assert result["status_code"] == 500

    def test_timeout_is_transient(self):
        def respond(request, body):
            raise httpx.ConnectTimeout("timed out", request=request)

        gateway = Gateway(respond)
        result = gateway.sender().send(_message(), _instance())

        assert result["status"] == "failed"
        assert result["failure"] == "transient"
        assert result["error"].startswith("Timeout calling chat gateway")


class TestMedia:
    def test_image_follows_the_text(self):
        gateway = Gateway(_ok)
        message = _message(media_base64="iVBORw0KGgo=", media_mimetype="image/png", media_caption="Chart")

        result = gateway.sender().send(message, _instance())

        assert result["status"] == "sent"
        request, body = gateway.requests[1]
        assert str(request.url).endswith("/rest/sendMessage/inst-1/image")
        assert body["messageData"]["image"] == "data:image/png;base64,iVBORw0KGgo="
        assert body["messageData"]["caption"] == "Chart"

    def test_document_carries_file_name(self):
        gateway = Gateway(_ok)
        message = _message(media_url="https://files.example.com/r.pdf", media_mimetype="application/pdf", media_filename="r.pdf")

        gateway.sender().send(message, _instance())

        request, body = gateway.requests[1]
        assert str(request.url).endswith("/document")
        assert body["messageData"]["document"] == "https://files.example.com/r.pdf"
        assert body["messageData"]["fileName"] == "r.pdf"
        assert body["messageData"]["mimetype"] == "application/pdf"

    def test_media_failure_does_not_fail_the_message(self):
        def respond(request, body):
            if str(request.url).endswith("/text"):
                return _ok(request, body)
            return httpx.Response(500, text="media store down")

        gateway = Gateway(respond)
        result = gateway.sender().send(_message(media_base64="aGk=", media_mimetype="image/jpeg"), _instance())

        assert result == {"status": "sent", "message_id": "wamid-1"}

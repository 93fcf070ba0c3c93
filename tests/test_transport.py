import json
from urllib.error import URLError

import pytest

from feedrelay import transport as transport_module
from feedrelay.models import Target
from feedrelay.service import transport_from_env
from feedrelay.transport import TransportError, WebhookTransport

TARGET = Target(id="t1", name="Ops", address="ops@chat", type="group", active=True)


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def read(self):
        return json.dumps(self.payload).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _serve(monkeypatch, payload=None, error=None):
    requests = []

    def _urlopen(request, timeout=None):
        requests.append(request)
        if error is not None:
            raise error
        return FakeResponse(payload)

    monkeypatch.setattr(transport_module, "urlopen", _urlopen)
    return requests


def test_send_posts_message(monkeypatch):
    requests = _serve(monkeypatch, {"message_id": "wamid-1"})

    receipt = WebhookTransport("https://gw.example.com/", token="tok").send(TARGET, "Hello")

    assert receipt.message_id == "wamid-1"
    request = requests[0]
    assert request.full_url == "https://gw.example.com/send"
    assert request.get_method() == "POST"
    assert request.get_header("Authorization") == "Bearer tok"
    assert json.loads(request.data) == {"to": "ops@chat", "type": "group", "text": "Hello"}


def test_send_error_payload_raises(monkeypatch):
    _serve(monkeypatch, {"error": "not on whatsapp"})
    with pytest.raises(TransportError):
        WebhookTransport("https://gw.example.com").send(TARGET, "Hello")


def test_status_reports_unreachable_gateway(monkeypatch):
    _serve(monkeypatch, error=URLError("connection refused"))
    status = WebhookTransport("https://gw.example.com").get_status()
    assert status["status"] == "unreachable"


def test_transport_from_env(monkeypatch):
    monkeypatch.delenv("FR_TRANSPORT_URL", raising=False)
    assert transport_from_env() is None
    monkeypatch.setenv("FR_TRANSPORT_URL", "https://gw.example.com")
    monkeypatch.setenv("FR_TRANSPORT_TOKEN", "tok")
    built = transport_from_env()
    assert isinstance(built, WebhookTransport)
    assert built.token == "tok"

import asyncio

import httpx
import pytest

from maturador import dispatcher
from maturador import runtime_config
from maturador.errors import ChannelFatalError, ChannelTransientError, IdentityUnresolvable
from maturador.identity_resolver import Identity


class _DummyResponse:
    def __init__(self, status_code, payload, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)
        self.headers = headers or {}

    def json(self):
        return self._payload


ANA = Identity(name="Ana", address="+55 (11) 91234-5678", instance_ref="inst-ana", prompt="p", script_id=None)
BIA = Identity(name="Bia", address="551187654321", instance_ref="inst-bia", prompt="p", script_id=None)


def test_normalize_address_strips_formatting():
    assert dispatcher.normalize_address("+55 (11) 91234-5678") == "5511912345678"


def test_normalize_address_inserts_brazilian_mobile_nine():
    assert dispatcher.normalize_address("551187654321") == "5511987654321"


def test_normalize_address_keeps_foreign_numbers():
    assert dispatcher.normalize_address("+1 415 555 0100 22") == "1415555010022"


def test_normalize_address_rejects_short_numbers():
    with pytest.raises(IdentityUnresolvable):
        dispatcher.normalize_address("11987654321")
    with pytest.raises(IdentityUnresolvable):
        dispatcher.normalize_address("")


def test_send_posts_to_sender_instance_with_normalized_number(monkeypatch):
    captured = {}

    async def _fake_post(self, url, headers=None, json=None, params=None):  # noqa: ARG001
        captured["url"] = url
        captured["headers"] = headers
        captured["body"] = json
        return _DummyResponse(201, {"key": {"id": "MSG123"}, "status": "PENDING"})

    monkeypatch.setattr("httpx.AsyncClient.post", _fake_post)

    ack = asyncio.run(dispatcher.send(ANA, BIA, "oi sumida"))
    assert ack["ok"] is True
    assert ack["message_id"] == "MSG123"
    assert captured["url"] == "https://evolution.test/message/sendText/inst-ana"
    assert captured["headers"]["apikey"] == "evo-test-key"
    assert captured["body"] == {"number": "5511987654321", "text": "oi sumida"}


def test_send_without_sender_instance_is_unresolvable():
    sender = Identity(name="Ana", address="5511912345678", instance_ref=None, prompt="p", script_id=None)
    with pytest.raises(IdentityUnresolvable):
        asyncio.run(dispatcher.send(sender, BIA, "oi"))


def test_send_without_receiver_address_is_unresolvable():
    receiver = Identity(name="Bia", address=None, instance_ref="inst-bia", prompt="p", script_id=None)
    with pytest.raises(IdentityUnresolvable):
        asyncio.run(dispatcher.send(ANA, receiver, "oi"))


def test_gateway_errors_are_classified(monkeypatch):
    statuses = iter([503, 401, 404])

    async def _fake_post(self, url, headers=None, json=None, params=None):  # noqa: ARG001
        return _DummyResponse(next(statuses), {"response": {"message": "nope"}})

    monkeypatch.setattr("httpx.AsyncClient.post", _fake_post)

    with pytest.raises(ChannelTransientError):
        asyncio.run(dispatcher.send(ANA, BIA, "oi"))
    with pytest.raises(ChannelFatalError):
        asyncio.run(dispatcher.send(ANA, BIA, "oi"))
    with pytest.raises(ChannelFatalError) as excinfo:
        asyncio.run(dispatcher.send(ANA, BIA, "oi"))
    assert excinfo.value.status_code == 404


def test_connection_failure_is_transient(monkeypatch):
    async def _fake_post(self, url, headers=None, json=None, params=None):  # noqa: ARG001
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("httpx.AsyncClient.post", _fake_post)

    with pytest.raises(ChannelTransientError):
        asyncio.run(dispatcher.send(ANA, BIA, "oi"))


def test_closed_instance_is_transient_when_preflight_enabled(monkeypatch):
    monkeypatch.setattr(runtime_config, "CHECK_INSTANCE_STATE", True)
    sent = []

    async def _fake_get(self, url, headers=None, params=None):  # noqa: ARG001
        assert url.endswith("/instance/fetchInstances")
        assert params == {"instanceName": "inst-ana"}
        return _DummyResponse(200, [{"name": "inst-ana", "connectionStatus": "close"}])

    async def _fake_post(self, url, headers=None, json=None, params=None):  # noqa: ARG001
        sent.append(url)
        return _DummyResponse(201, {"key": {"id": "X"}})

    monkeypatch.setattr("httpx.AsyncClient.get", _fake_get)
    monkeypatch.setattr("httpx.AsyncClient.post", _fake_post)

    with pytest.raises(ChannelTransientError):
        asyncio.run(dispatcher.send(ANA, BIA, "oi"))
    assert sent == []

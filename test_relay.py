"""
Tests for the push relay and the client transport that talks to it.
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from ker_crypto.identity import IdentityManager
from ker_client.errors import InvalidRecipient, TransportError
from ker_client.models import DeliveryReport
from ker_client.transport import RelayTransport
from ker_relay.auth import create_access_token, verify_token
from ker_relay.main import create_app


@pytest.fixture
def relay_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}"


@pytest.fixture
def client(relay_url):
    with TestClient(create_app(relay_url)) as client:
        yield client


def register(client, identity=None):
    identity = identity or IdentityManager().generate_identity()
    response = client.post("/api/sessions", json=identity.public_dict())
    assert response.status_code == 200, response.text
    return identity, response.json()["access_token"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def notification(recipient, body="opaque"):
    return {
        "recipient_session_id": recipient,
        "notification_type": "key_exchange_request",
        "encrypted_body": body,
    }


def test_tokens():
    token = create_access_token("abc")
    assert verify_token(token) == "abc"
    assert verify_token("garbage") is None
    assert verify_token(None) is None


def test_register_session(client):
    identity, token = register(client)
    assert verify_token(token) == identity.session_id

    # Registering again refreshes the token
    _, second = register(client, identity)
    assert verify_token(second) == identity.session_id


def test_register_rejects_foreign_session_id(client):
    manager = IdentityManager()
    mine = manager.generate_identity()
    theirs = manager.generate_identity()

    response = client.post("/api/sessions", json={
        "session_id": theirs.session_id,
        "public_key": mine.public_key.hex(),
    })
    assert response.status_code == 400

    response = client.post("/api/sessions", json={"session_id": "bad", "public_key": mine.public_key.hex()})
    assert response.status_code == 422

    response = client.post("/api/sessions", json={"session_id": mine.session_id, "public_key": "zz"})
    assert response.status_code == 422


def test_notify_requires_token(client):
    recipient = IdentityManager().generate_identity().session_id
    assert client.post("/api/notify", json=notification(recipient)).status_code == 401
    assert client.post("/api/notify", json=notification(recipient), headers=auth("nope")).status_code == 401


def test_notify_unknown_or_offline_recipient(client):
    _, token = register(client)
    stranger = IdentityManager().generate_identity().session_id

    response = client.post("/api/notify", json=notification(stranger), headers=auth(token))
    assert response.status_code == 200
    assert response.json() == {"accepted": True, "delivered_count": 0}

    offline, _ = register(client)
    response = client.post("/api/notify", json=notification(offline.session_id), headers=auth(token))
    assert response.json() == {"accepted": True, "delivered_count": 0}


def test_notify_malformed_recipient(client):
    _, token = register(client)
    response = client.post("/api/notify", json=notification("not-a-session"), headers=auth(token))
    assert response.status_code == 422


def test_push_reaches_connected_session(client):
    _, sender_token = register(client)
    recipient, recipient_token = register(client)

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": recipient_token})
        assert websocket.receive_json() == {"type": "auth_success", "session_id": recipient.session_id}

        status = client.get(f"/api/sessions/{recipient.session_id}").json()
        assert status["registered"] and status["online"]

        response = client.post(
            "/api/notify",
            json=notification(recipient.session_id, "sealed-body"),
            headers=auth(sender_token),
        )
        assert response.json() == {"accepted": True, "delivered_count": 1}

        push = websocket.receive_json()
        assert push == {
            "type": "push",
            "recipient_session_id": recipient.session_id,
            "notification_type": "key_exchange_request",
            "encrypted_body": "sealed-body",
        }

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_websocket_rejects_bad_token(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": "forged"})
        assert websocket.receive_json()["type"] == "error"


def test_unregister_stops_delivery(client):
    _, sender_token = register(client)
    recipient, recipient_token = register(client)

    assert client.delete("/api/sessions/me", headers=auth(recipient_token)).status_code == 200
    status = client.get(f"/api/sessions/{recipient.session_id}").json()
    assert not status["registered"]

    response = client.post("/api/notify", json=notification(recipient.session_id), headers=auth(sender_token))
    assert response.json()["delivered_count"] == 0


def test_relay_transport_against_app(relay_url):
    app = create_app(relay_url)
    identity = IdentityManager().generate_identity()
    stranger = IdentityManager().generate_identity().session_id

    async def scenario():
        await app.state.db.create_tables()
        http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay")
        transport = RelayTransport("http://relay", identity, http_client=http_client)
        try:
            report = await transport.send(stranger, "opaque", "key_exchange_request")
            assert transport.token is not None

            with pytest.raises(InvalidRecipient):
                await transport.send("not-a-session", "opaque", "key_exchange_request")

            transport.token = "expired"
            with pytest.raises(TransportError):
                await transport.send(stranger, "opaque", "key_exchange_request")
            assert transport.token is None
            return report
        finally:
            await transport.close()
            await app.state.db.close()

    assert asyncio.run(scenario()) == DeliveryReport(accepted=True, delivered_count=0)


def test_relay_transport_unreachable():
    identity = IdentityManager().generate_identity()

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        transport = RelayTransport("http://relay", identity, http_client=http_client)
        try:
            await transport.send(identity.session_id, "opaque", "key_exchange_request")
        finally:
            await transport.close()

    with pytest.raises(TransportError):
        asyncio.run(scenario())


def test_relay_transport_hands_pushes_to_handler():
    identity = IdentityManager().generate_identity()
    transport = RelayTransport("http://relay", identity, http_client=httpx.AsyncClient())
    received = []
    transport.set_receive_handler(received.append)

    transport._handle_frame(json.dumps({"type": "pong"}))
    transport._handle_frame("not json")
    transport._handle_frame(json.dumps({"type": "push", "recipient_session_id": identity.session_id}))
    transport._handle_frame(json.dumps({
        "type": "push",
        "recipient_session_id": identity.session_id,
        "notification_type": "key_exchange_revoked",
        "encrypted_body": "sealed",
    }))

    assert len(received) == 1
    assert received[0].notification_type == "key_exchange_revoked"
    assert received[0].encrypted_body == "sealed"
    assert transport.ws_url == "ws://relay/ws"

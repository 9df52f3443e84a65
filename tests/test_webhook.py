"""
Tests for the gateway webhooks.

Tests cover:
- Inbound messages (creation, duplicates, media, conversation lookup)
- Delivery-status callbacks (forward moves, stale and repeated reports,
  failures, untracked messages, unknown statuses)
- Signature validation (401)
- Malformed payloads (400) and internal failures (500)
"""

import pytest

from chatrelay.config import settings
from chatrelay.utils import compute_gateway_signature

from conftest import CONTACT_NUMBER, FROM_NUMBER, drain


def incoming_form(message_sid: str, from_number: str = CONTACT_NUMBER, body: str = "Hi there", **extra) -> dict:
    form = {
        "MessageSid": message_sid,
        "From": f"whatsapp:{from_number}",
        "To": f"whatsapp:{FROM_NUMBER}",
        "Body": body,
        "NumMedia": "0",
        "ProfileName": "Asha",
    }
    form.update(extra)
    return form


def send_outbound(client, conversation_id: str = "contact-1", to: str = CONTACT_NUMBER, body: str = "Hello"):
    """Send a message through the API and return (message id, gateway id)."""
    response = client.post(
        "/api/messages/send-message",
        json={"conversationId": conversation_id, "to": to, "body": body},
    )
    assert response.status_code == 202
    drain(client)
    message_id = response.json()["data"]["id"]
    status = client.get(f"/api/messages/messages/{message_id}/status").json()["data"]
    return message_id, status["gatewayMessageId"]


def message_status(client, message_id: str) -> dict:
    return client.get(f"/api/messages/messages/{message_id}/status").json()["data"]


class TestIncomingWebhook:
    """Inbound message notifications."""

    def test_incoming_message_created(self, client):
        response = client.post("/webhook/incoming", data=incoming_form("SMin1"))

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "created"}

        listing = client.get("/api/messages/messages", params={"conversationId": CONTACT_NUMBER}).json()
        assert listing["pagination"]["total"] == 1
        message = listing["data"][0]
        assert message["gatewayMessageId"] == "SMin1"
        assert message["direction"] == "inbound"
        assert message["status"] == "received"
        assert message["from"] == CONTACT_NUMBER
        assert message["to"] == FROM_NUMBER
        assert message["body"] == "Hi there"
        assert message["isRead"] is False
        assert message["deliveredAt"] is not None
        assert listing["contactName"] == "Asha"

    def test_duplicate_incoming_is_idempotent(self, client):
        first = client.post("/webhook/incoming", data=incoming_form("SMdup"))
        second = client.post("/webhook/incoming", data=incoming_form("SMdup"))

        assert first.json()["result"] == "created"
        assert second.status_code == 200
        assert second.json() == {"status": "ok", "result": "duplicate"}

        listing = client.get("/api/messages/messages", params={"conversationId": CONTACT_NUMBER}).json()
        assert listing["pagination"]["total"] == 1

    def test_incoming_joins_conversation_of_outbound_message(self, client):
        send_outbound(client, conversation_id="contact-42")

        response = client.post("/webhook/incoming", data=incoming_form("SMreply"))
        assert response.json()["result"] == "created"

        listing = client.get("/api/messages/messages", params={"conversationId": "contact-42"}).json()
        assert listing["pagination"]["total"] == 2
        assert {m["direction"] for m in listing["data"]} == {"inbound", "outbound"}

    def test_incoming_media_urls_collected(self, client):
        form = incoming_form(
            "SMmedia",
            body="",
            NumMedia="2",
            MediaUrl0="https://media.example.com/a.jpg",
            MediaUrl1="https://media.example.com/b.jpg",
        )
        response = client.post("/webhook/incoming", data=form)
        assert response.status_code == 200

        message = client.get("/api/messages/messages", params={"conversationId": CONTACT_NUMBER}).json()["data"][0]
        assert message["messageType"] == "media"
        assert message["mediaUrls"] == [
            "https://media.example.com/a.jpg",
            "https://media.example.com/b.jpg",
        ]

    def test_incoming_json_body_accepted(self, client):
        response = client.post("/webhook/incoming", json=incoming_form("SMjson"))

        assert response.status_code == 200
        assert response.json()["result"] == "created"

    def test_missing_message_sid_returns_400(self, client):
        form = incoming_form("SMx")
        del form["MessageSid"]

        response = client.post("/webhook/incoming", data=form)

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unreadable_json_returns_400(self, client):
        response = client.post(
            "/webhook/incoming",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestStatusWebhook:
    """Delivery-status callbacks."""

    def test_delivered_applied(self, client):
        message_id, sid = send_outbound(client)
        assert message_status(client, message_id)["status"] == "sent"

        response = client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "delivered"})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "applied"}
        assert message_status(client, message_id)["status"] == "delivered"

    def test_repeated_callback_ignored(self, client):
        message_id, sid = send_outbound(client)
        client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "delivered"})

        response = client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "delivered"})

        assert response.status_code == 200
        assert response.json()["result"] == "ignored"
        assert message_status(client, message_id)["status"] == "delivered"

    def test_stale_callback_does_not_regress(self, client):
        message_id, sid = send_outbound(client)
        client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "read"})

        response = client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "delivered"})

        assert response.json()["result"] == "ignored"
        assert message_status(client, message_id)["status"] == "read"

    def test_failure_records_error(self, client):
        message_id, sid = send_outbound(client)

        response = client.post(
            "/webhook/status",
            data={
                "MessageSid": sid,
                "MessageStatus": "undelivered",
                "ErrorCode": "63016",
                "ErrorMessage": "Outside the allowed window",
            },
        )

        assert response.json()["result"] == "applied"
        data = message_status(client, message_id)
        assert data["status"] == "undelivered"
        assert data["error"] == {"code": "63016", "message": "Outside the allowed window"}

    def test_failure_without_error_code_defaults(self, client):
        message_id, sid = send_outbound(client)

        client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "failed"})

        data = message_status(client, message_id)
        assert data["status"] == "failed"
        assert data["error"]["code"] == "UNKNOWN"

    def test_failed_message_stays_failed(self, client):
        message_id, sid = send_outbound(client)
        client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "failed"})

        response = client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "delivered"})

        assert response.json()["result"] == "ignored"
        assert message_status(client, message_id)["status"] == "failed"

    def test_untracked_message_acknowledged(self, client):
        response = client.post("/webhook/status", data={"MessageSid": "SMunknown", "MessageStatus": "delivered"})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "result": "not_tracked"}

    def test_unrecognized_status_acknowledged(self, client):
        message_id, sid = send_outbound(client)

        response = client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "teleported"})

        assert response.status_code == 200
        assert response.json()["result"] == "unrecognized"
        assert message_status(client, message_id)["status"] == "sent"

    def test_missing_status_returns_400(self, client):
        response = client.post("/webhook/status", data={"MessageSid": "SM1"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_internal_failure_returns_500(self, client, monkeypatch):
        async def broken_reconcile(callback):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(client.app.state.reconciler, "reconcile", broken_reconcile)

        response = client.post("/webhook/status", data={"MessageSid": "SM1", "MessageStatus": "sent"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal server error"}


class TestWebhookSignature:
    """Optional gateway signature validation."""

    @pytest.fixture(autouse=True)
    def require_signature(self, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_VALIDATE_SIGNATURE", True)
        monkeypatch.setattr(settings, "WEBHOOK_PUBLIC_URL", None)

    def test_missing_signature_returns_401(self, client):
        response = client.post("/webhook/incoming", data=incoming_form("SMsig"))

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "invalid signature"}

    def test_wrong_signature_returns_401(self, client):
        form = incoming_form("SMsig")
        signature = compute_gateway_signature("http://testserver/webhook/incoming", form, "wrong-token")

        response = client.post("/webhook/incoming", data=form, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 401

    def test_valid_signature_accepted(self, client):
        form = incoming_form("SMsig")
        signature = compute_gateway_signature(
            "http://testserver/webhook/incoming", form, settings.GATEWAY_AUTH_TOKEN
        )

        response = client.post("/webhook/incoming", data=form, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200
        assert response.json()["result"] == "created"

    def test_public_url_used_for_signing(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_PUBLIC_URL", "https://relay.example.com/")
        form = {"MessageSid": "SMpub", "MessageStatus": "sent"}
        signature = compute_gateway_signature(
            "https://relay.example.com/webhook/status", form, settings.GATEWAY_AUTH_TOKEN
        )

        response = client.post("/webhook/status", data=form, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200
        assert response.json()["result"] == "not_tracked"

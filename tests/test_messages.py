"""
Tests for the message API and the realtime channel.

Tests cover:
- Outbound sends (text, media, template) and caller errors
- Gateway failures, automatic retries and manual retry
- Listing with filters and pagination, contact lookup
- Mark-as-read, status lookup and gateway refresh
- Realtime subscription events
- Health and metrics endpoints
"""

from chatrelay.errors import GatewayError, GatewayErrorClass
from chatrelay.gateway import GatewayMessage

from conftest import CONTACT_NUMBER, drain


def send(client, **overrides):
    payload = {"conversationId": "contact-1", "to": CONTACT_NUMBER, "body": "Hello from the CRM"}
    payload.update(overrides)
    return client.post("/api/messages/send-message", json=payload)


def list_messages(client, **params):
    return client.get("/api/messages/messages", params=params).json()


class TestSendMessage:
    """POST /api/messages/send-message"""

    def test_send_accepted_and_submitted(self, client, gateway):
        response = send(client, contactName="Asha")

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Message is being processed"
        assert body["data"]["status"] == "queued"
        assert body["data"]["gatewayMessageId"].startswith("tmp_")
        assert body["data"]["to"] == CONTACT_NUMBER

        drain(client)

        assert len(gateway.submissions) == 1
        submission = gateway.submissions[0]
        assert submission.to_address == f"whatsapp:{CONTACT_NUMBER}"
        assert submission.from_address == "whatsapp:+14155550100"
        assert submission.body == "Hello from the CRM"

        message = list_messages(client, conversationId="contact-1")["data"][0]
        assert message["status"] == "sent"
        assert message["gatewayMessageId"] == "SM00000000000000000000000000000001"
        assert message["sentAt"] is not None

    def test_send_normalizes_formatted_number(self, client, gateway):
        response = send(client, to="whatsapp:+91 98765-43210")

        assert response.status_code == 202
        assert response.json()["data"]["to"] == CONTACT_NUMBER

    def test_send_with_media_and_caption(self, client, gateway):
        response = send(client, mediaUrl="https://cdn.example.com/invoice.pdf", body="Your invoice")

        assert response.status_code == 202
        assert response.json()["data"]["messageType"] == "media"
        drain(client)
        assert gateway.submissions[0].media_urls == ["https://cdn.example.com/invoice.pdf"]
        assert gateway.submissions[0].body == "Your invoice"

    def test_missing_recipient_rejected(self, client, gateway):
        response = client.post(
            "/api/messages/send-message",
            json={"conversationId": "contact-1", "body": "Hello"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "VALIDATION_ERROR"
        assert list_messages(client)["pagination"]["total"] == 0
        assert gateway.submissions == []

    def test_missing_content_rejected(self, client):
        response = send(client, body="   ")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert list_messages(client)["pagination"]["total"] == 0

    def test_invalid_phone_rejected(self, client):
        response = send(client, to="12345")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PHONE_NUMBER"
        assert list_messages(client)["pagination"]["total"] == 0

    def test_invalid_media_url_rejected(self, client):
        response = send(client, mediaUrl="not a url")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestSendTemplate:
    """POST /api/messages/send-template"""

    def test_template_submitted(self, client, gateway):
        response = client.post(
            "/api/messages/send-template",
            json={
                "conversationId": "contact-1",
                "to": CONTACT_NUMBER,
                "templateId": "HXabc123",
                "templateVariables": {"1": "Asha", "2": "Friday"},
            },
        )

        assert response.status_code == 202
        assert response.json()["data"]["messageType"] == "template"
        drain(client)

        submission = gateway.submissions[0]
        assert submission.template_id == "HXabc123"
        assert submission.template_variables == {"1": "Asha", "2": "Friday"}
        assert submission.body is None

    def test_template_id_required(self, client):
        response = client.post(
            "/api/messages/send-template",
            json={"conversationId": "contact-1", "to": CONTACT_NUMBER},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestGatewayFailures:
    """Failures after the record exists end up on the record, not the caller."""

    def test_permanent_failure_recorded(self, client, gateway):
        gateway.failures = [
            GatewayError(GatewayErrorClass.INVALID_RECIPIENT, "Not a WhatsApp user", 400, "63003")
        ]

        response = send(client)
        assert response.status_code == 202
        drain(client)

        message = list_messages(client)["data"][0]
        assert message["status"] == "failed"
        assert message["errorCode"] == "63003"
        assert message["errorMessage"] == "Not a WhatsApp user"
        assert message["failedAt"] is not None
        assert len(gateway.submissions) == 1

    def test_transient_failure_retried(self, client, gateway):
        gateway.failures = [GatewayError(GatewayErrorClass.RATE_LIMIT, "Too many requests", 429, "20429")]

        send(client)
        drain(client)

        message = list_messages(client)["data"][0]
        assert message["status"] == "sent"
        assert message["retryCount"] == 1
        assert len(gateway.submissions) == 2

    def test_retry_budget_exhausted(self, client, gateway):
        gateway.failures = [
            GatewayError(GatewayErrorClass.SERVER_ERROR, "Service unavailable", 503) for _ in range(4)
        ]

        send(client)
        drain(client)

        message = list_messages(client)["data"][0]
        assert message["status"] == "failed"
        assert message["errorCode"] == "SERVER_ERROR"
        assert message["retryCount"] == 3
        assert len(gateway.submissions) == 4

    def test_manual_retry_resubmits(self, client, gateway):
        gateway.failures = [GatewayError(GatewayErrorClass.BAD_REQUEST, "Bad request", 400)]
        message_id = send(client).json()["data"]["id"]
        drain(client)

        response = client.post(f"/api/messages/messages/{message_id}/retry")

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["status"] == "queued"
        assert data["errorCode"] is None
        assert data["retryCount"] == 1
        drain(client)

        status = client.get(f"/api/messages/messages/{message_id}/status").json()["data"]
        assert status["status"] == "sent"
        assert status["error"] is None
        assert len(gateway.submissions) == 2

    def test_manual_retry_of_sent_message_conflicts(self, client):
        message_id = send(client).json()["data"]["id"]
        drain(client)

        response = client.post(f"/api/messages/messages/{message_id}/retry")

        assert response.status_code == 409
        assert response.json()["code"] == "RETRY_NOT_ALLOWED"

    def test_manual_retry_of_unknown_message(self, client):
        response = client.post("/api/messages/messages/nope/retry")

        assert response.status_code == 404
        assert response.json()["code"] == "MESSAGE_NOT_FOUND"


class TestListMessages:
    """GET /api/messages/messages"""

    def test_empty(self, client):
        body = list_messages(client, conversationId="contact-1")

        assert body["success"] is True
        assert body["data"] == []
        assert body["contactName"] == "Unknown Contact"
        assert body["pagination"] == {"total": 0, "page": 1, "totalPages": 0, "limit": 20}

    def test_pagination(self, client):
        for i in range(3):
            send(client, body=f"Message {i}")
        drain(client)

        page1 = list_messages(client, conversationId="contact-1", limit=2, page=1)
        page2 = list_messages(client, conversationId="contact-1", limit=2, page=2)

        assert len(page1["data"]) == 2
        assert len(page2["data"]) == 1
        assert page1["pagination"] == {"total": 3, "page": 1, "totalPages": 2, "limit": 2}
        ids1 = {m["id"] for m in page1["data"]}
        ids2 = {m["id"] for m in page2["data"]}
        assert ids1.isdisjoint(ids2)

    def test_contact_id_alias(self, client):
        send(client, conversationId="contact-7")
        drain(client)

        body = list_messages(client, contactId="contact-7")

        assert body["pagination"]["total"] == 1

    def test_filter_by_direction_and_status(self, client):
        send(client)
        drain(client)
        client.post(
            "/webhook/incoming",
            data={"MessageSid": "SMin1", "From": f"whatsapp:{CONTACT_NUMBER}", "Body": "Thanks"},
        )

        inbound = list_messages(client, conversationId="contact-1", direction="inbound")
        sent = list_messages(client, conversationId="contact-1", status="sent")

        assert [m["gatewayMessageId"] for m in inbound["data"]] == ["SMin1"]
        assert [m["direction"] for m in sent["data"]] == ["outbound"]

    def test_limit_out_of_range(self, client):
        response = client.get("/api/messages/messages", params={"limit": 0})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestContact:
    """GET /api/messages/contact/{conversationId}"""

    def test_contact_found(self, client):
        send(client, contactName="Asha")
        drain(client)

        response = client.get("/api/messages/contact/contact-1")

        assert response.status_code == 200
        assert response.json() == {"success": True, "name": "Asha", "phone": CONTACT_NUMBER}

    def test_contact_not_found(self, client):
        response = client.get("/api/messages/contact/nobody")

        assert response.status_code == 404
        assert response.json()["success"] is False


class TestMarkRead:
    """PATCH /api/messages/messages/read"""

    def _receive(self, client, sid):
        client.post(
            "/webhook/incoming",
            data={"MessageSid": sid, "From": f"whatsapp:{CONTACT_NUMBER}", "Body": "Hello?"},
        )

    def test_mark_conversation_read(self, client):
        self._receive(client, "SMa")
        self._receive(client, "SMb")

        response = client.patch("/api/messages/messages/read", json={"conversationId": CONTACT_NUMBER})

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"matchedCount": 2, "modifiedCount": 2}}
        messages = list_messages(client, conversationId=CONTACT_NUMBER)["data"]
        assert all(m["isRead"] for m in messages)
        assert all(m["status"] == "read" for m in messages)

    def test_mark_read_is_idempotent(self, client):
        self._receive(client, "SMa")
        client.patch("/api/messages/messages/read", json={"messageIds": ["SMa"]})

        response = client.patch("/api/messages/messages/read", json={"messageIds": ["SMa"]})

        assert response.json()["data"] == {"matchedCount": 1, "modifiedCount": 0}

    def test_mark_read_requires_target(self, client):
        response = client.patch("/api/messages/messages/read", json={})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestMessageStatus:
    """GET /api/messages/messages/{id}/status"""

    def test_status_by_gateway_id(self, client):
        message_id = send(client).json()["data"]["id"]
        drain(client)

        response = client.get("/api/messages/messages/SM00000000000000000000000000000001/status")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["messageId"] == message_id
        assert data["status"] == "sent"

    def test_status_unknown_message(self, client):
        response = client.get("/api/messages/messages/missing/status")

        assert response.status_code == 404
        assert response.json()["code"] == "MESSAGE_NOT_FOUND"

    def test_refresh_from_gateway(self, client, gateway):
        message_id = send(client).json()["data"]["id"]
        drain(client)
        sid = "SM00000000000000000000000000000001"
        gateway.remote[sid] = GatewayMessage(sid=sid, status="delivered")

        response = client.get(f"/api/messages/messages/{message_id}/status", params={"refresh": "true"})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "delivered"


class TestRealtimeChannel:
    """WS /ws"""

    def test_join_and_receive_events(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join", "data": "contact-1"})
            ack = ws.receive_json()
            assert ack == {"event": "ack", "ack": "join", "data": {"success": True, "room": "contact-1"}}

            send(client)
            drain(client)

            event = ws.receive_json()
            assert event["event"] == "new-message"
            assert event["data"]["conversationId"] == "contact-1"
            assert event["data"]["status"] == "sent"

            sid = event["data"]["gatewayMessageId"]
            client.post("/webhook/status", data={"MessageSid": sid, "MessageStatus": "delivered"})

            update = ws.receive_json()
            assert update["event"] == "message-status-update"
            assert update["data"]["status"] == "delivered"

    def test_join_without_conversation(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join", "data": {}})

            ack = ws.receive_json()

            assert ack["data"] == {"success": False, "error": "conversationId is required"}

    def test_invalid_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")

            reply = ws.receive_json()

            assert reply["event"] == "error"


class TestHealthAndMetrics:

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_api_health(self, client):
        body = client.get("/api/health").json()

        assert body["status"] == "ok"
        assert body["connections"] == 0

    def test_metrics_exposed(self, client):
        send(client)
        drain(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "gateway_submissions_total" in response.text
        assert "webhook_requests_total" in response.text

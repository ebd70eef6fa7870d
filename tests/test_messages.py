"""
Tests for the message endpoints.

Tests cover:
- Sending: success, provider error codes, network failure, malformed response
- Preconditions: unconfigured profile, unknown contact
- Conversation listing order and pagination
- Sending to a bare phone number without a contact
"""

import asyncio
import json

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from conftest import PHONE_NUMBER_ID, make_delivery, text_message
from wa_inbox import outbound
from wa_inbox.models import Contact, Message
from wa_inbox.provider import ProviderClient
from wa_inbox.storage import create_contact, create_profile


@pytest.fixture
def contact(db, profile):
    contact, _ = create_contact(db, profile.id, "919876543210", "+919876543210", name="Ravi")
    return contact


def send(client, profile_id, contact_id, text="Hello from Acme"):
    return client.post(
        f"/profiles/{profile_id}/contacts/{contact_id}/messages",
        json={"text": text},
    )


class TestSendMessage:

    def test_send_success(self, client, db, profile, contact, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(
            200,
            json={
                "messaging_product": "whatsapp",
                "contacts": [{"input": "919876543210", "wa_id": "919876543210"}],
                "messages": [{"id": "wamid.sent1"}],
            },
        )

        response = send(client, profile.id, contact.id)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "sent"
        assert data["message_id"] == "wamid.sent1"
        assert data["direction"] == "outbound"
        assert data["content"] == "Hello from Acme"

        request = provider_requests[0]
        assert str(request.url) == f"https://graph.test/v17.0/{PHONE_NUMBER_ID}/messages"
        assert request.headers["Authorization"] == "Bearer EAAtesttoken"
        assert json.loads(request.content) == {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": "919876543210",
            "type": "text",
            "text": {"body": "Hello from Acme"},
        }

    def test_sent_message_receives_later_status(self, client, db, profile, contact, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(200, json={"messages": [{"id": "wamid.sent2"}]})
        send(client, profile.id, contact.id)

        client.post(
            "/webhook",
            content=json.dumps(make_delivery(statuses=[
                {"id": "wamid.sent2", "status": "delivered", "timestamp": "1700000000"},
            ])),
            headers={"Content-Type": "application/json"},
        )

        assert db.query(Message).one().status == "delivered"

    def test_provider_error_marks_failed(self, client, db, profile, contact, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(
            401,
            json={"error": {"message": "Error validating access token", "type": "OAuthException", "code": 190}},
        )

        response = send(client, profile.id, contact.id)

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert "Access token expired or invalid" in detail
        assert "(Error code: 190)" in detail
        message = db.query(Message).one()
        assert message.status == "failed"
        assert message.message_id is None

    def test_unmapped_error_code_is_still_reported(self, client, db, profile, contact, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(
            400, json={"error": {"message": "Something odd", "code": 999}},
        )

        response = send(client, profile.id, contact.id)

        assert response.status_code == 502
        assert response.json()["detail"] == "Failed to send message: Something odd (Error code: 999)"

    def test_network_error_marks_failed(self, client, db, profile, contact, provider_requests):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider_requests.handler = unreachable

        response = send(client, profile.id, contact.id)

        assert response.status_code == 502
        assert "Network error" in response.json()["detail"]
        assert db.query(Message).one().status == "failed"

    def test_response_without_id_marks_failed(self, client, db, profile, contact, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(200, json={"messages": []})

        response = send(client, profile.id, contact.id)

        assert response.status_code == 502
        assert db.query(Message).one().status == "failed"

    def test_unconfigured_profile_is_rejected(self, client, db, provider_requests):
        bare = create_profile(db, full_name="No Config")
        contact, _ = create_contact(db, bare.id, "919876543210", "+919876543210", name="Ravi")

        response = send(client, bare.id, contact.id)

        assert response.status_code == 400
        assert len(provider_requests) == 0
        assert db.query(Message).count() == 0

    def test_other_tenants_contact_is_not_found(self, client, profile, other_profile, db, provider_requests):
        foreign, _ = create_contact(db, other_profile.id, "919876543210", "+919876543210", name="Ravi")

        response = send(client, profile.id, foreign.id)

        assert response.status_code == 404
        assert len(provider_requests) == 0

    def test_blank_text_is_rejected(self, client, profile, contact, provider_requests):
        response = send(client, profile.id, contact.id, text="   ")

        assert response.status_code == 422


class TestConversation:

    def test_messages_in_chronological_order(self, client, db, profile):
        body = make_delivery(messages=[
            text_message(message_id="wamid.late", body="later", timestamp="1700000300"),
            text_message(message_id="wamid.early", body="earlier", timestamp="1700000100"),
        ])
        client.post("/webhook", content=json.dumps(body), headers={"Content-Type": "application/json"})
        contact_id = db.query(Message).first().contact_id

        response = client.get(f"/profiles/{profile.id}/contacts/{contact_id}/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [m["content"] for m in data["data"]] == ["earlier", "later"]

    def test_pagination(self, client, db, profile):
        body = make_delivery(messages=[
            text_message(message_id=f"wamid.{i}", body=f"m{i}", timestamp=str(1700000000 + i))
            for i in range(5)
        ])
        client.post("/webhook", content=json.dumps(body), headers={"Content-Type": "application/json"})
        contact_id = db.query(Message).first().contact_id

        response = client.get(
            f"/profiles/{profile.id}/contacts/{contact_id}/messages",
            params={"limit": 2, "offset": 2},
        )

        data = response.json()
        assert data["total"] == 5
        assert data["limit"] == 2
        assert data["offset"] == 2
        assert [m["content"] for m in data["data"]] == ["m2", "m3"]

    def test_unknown_contact(self, client, profile):
        response = client.get(f"/profiles/{profile.id}/contacts/nope/messages")

        assert response.status_code == 404


class TestSendToNumber:

    def test_send_to_bare_number(self, client, db, profile, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(200, json={"messages": [{"id": "wamid.test1"}]})

        response = client.post(
            f"/profiles/{profile.id}/messages",
            json={"to": "98765 43210", "text": "Testing the setup"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "sent"
        assert data["message_id"] == "wamid.test1"
        assert data["contact_id"] is None
        assert json.loads(provider_requests[0].content)["to"] == "919876543210"
        assert db.query(Contact).count() == 0

    def test_provider_error_marks_failed(self, client, db, profile, provider_requests):
        provider_requests.handler = lambda request: httpx.Response(
            400, json={"error": {"message": "Recipient not on WhatsApp", "code": 131052}},
        )

        response = client.post(f"/profiles/{profile.id}/messages", json={"to": "+15551234567", "text": "hi"})

        assert response.status_code == 502
        assert "User is not a WhatsApp user" in response.json()["detail"]
        message = db.query(Message).one()
        assert message.status == "failed"
        assert message.contact_id is None

    def test_number_without_digits_rejected(self, client, profile, provider_requests):
        response = client.post(f"/profiles/{profile.id}/messages", json={"to": "nobody", "text": "hi"})

        assert response.status_code == 422
        assert len(provider_requests) == 0

    def test_unconfigured_profile_is_rejected(self, client, db, provider_requests):
        bare = create_profile(db, full_name="No Config")

        response = client.post(f"/profiles/{bare.id}/messages", json={"to": "+15551234567", "text": "hi"})

        assert response.status_code == 400
        assert db.query(Message).count() == 0

    def test_unknown_profile(self, client, provider_requests):
        response = client.post("/profiles/missing/messages", json={"to": "+15551234567", "text": "hi"})

        assert response.status_code == 404


class TestSendBookkeeping:

    def test_failure_to_record_accepted_send_is_logged(self, db, profile, contact, monkeypatch, caplog):
        provider = ProviderClient(
            base_url="https://graph.test",
            api_version="v17.0",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"messages": [{"id": "wamid.accepted"}]})
            ),
        )

        def broken_mark_sent(session, message, provider_message_id):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(outbound, "mark_message_sent", broken_mark_sent)

        with pytest.raises(OperationalError):
            asyncio.run(outbound.send_text_message(db, provider, profile, "hi", "91", contact=contact))

        db.expire_all()
        assert db.query(Message).one().status == "sending"
        assert "wamid.accepted" in caplog.text

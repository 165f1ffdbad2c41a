import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import add_provider
from marketplace.core.config import settings
from marketplace.dependencies import build_marketplace, get_marketplace, set_marketplace
from marketplace.main import app

REQUEST_BODY = {
    "customer_id": 10,
    "customer_email": "customer@example.com",
    "category_id": 1,
    "postal_code": "78701-1234",
    "title": "Fix leaking sink",
    "description": "Kitchen sink drips under the cabinet",
}


@pytest.fixture
def service(store, queue, channel, processor, geocoder, clock):
    async def setup():
        for provider_id in (1, 2, 3):
            await add_provider(store, provider_id)
        return await build_marketplace(
            settings,
            store=store,
            queue=queue,
            channels={"email": channel},
            geocoder=geocoder,
            processor=processor,
            clock=clock,
        )

    return asyncio.run(setup())


@pytest.fixture
def client(service):
    async def override():
        return service

    set_marketplace(service)
    app.dependency_overrides[get_marketplace] = override
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    set_marketplace(None)


def create_request(client, **overrides):
    response = client.post("/api/service-requests", json=dict(REQUEST_BODY, **overrides))
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["backend"] == "memory"
    assert body["checks"]["redis"]["status"] == "skipped"


def test_root_and_request_id(client):
    response = client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json()["health"] == "/api/health"
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/").headers["X-Request-ID"]


def test_create_service_request(client):
    body = create_request(client)

    assert body["status"] == "lead_assigned"
    assert body["postal_code"] == "78701"
    assert [lead["rank_position"] for lead in body["leads"]] == [1, 2, 3]
    assert all(lead["status"] == "notified" for lead in body["leads"])
    assert body["leads"][0]["lead_cost"] == "20.00"

    fetched = client.get(f"/api/service-requests/{body['id']}").json()
    assert fetched["id"] == body["id"]
    assert len(fetched["leads"]) == 3


def test_create_service_request_validation(client):
    response = client.post("/api/service-requests", json=dict(REQUEST_BODY, customer_email="not-an-email"))
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"]["errors"][0]["loc"][-1] == "customer_email"

    response = client.post("/api/service-requests", json=dict(REQUEST_BODY, postal_code="12"))
    assert response.status_code == 422


def test_create_without_category_is_rejected(client):
    payload = dict(REQUEST_BODY)
    payload.pop("category_id")
    response = client.post("/api/service-requests", json=payload)
    assert response.status_code == 422
    assert response.json()["code"] == "category_required"


def test_unknown_resources_return_404(client):
    assert client.get("/api/service-requests/999").status_code == 404
    response = client.get("/api/leads/999")
    assert response.status_code == 404
    assert response.json()["code"] == "NotFoundError"
    assert client.get("/api/leads/999/payout").status_code == 404


def test_lead_lifecycle_over_http(client, processor):
    request = create_request(client)
    lead_id = request["leads"][0]["id"]

    assert client.post(f"/api/leads/{lead_id}/view").json()["status"] == "viewed"
    assert client.post(f"/api/leads/{lead_id}/respond", json={"decision": "accept"}).json()["status"] == "accepted"
    assert client.post(f"/api/leads/{lead_id}/start").json()["status"] == "in_progress"
    proposal = client.post(
        f"/api/leads/{lead_id}/proposal",
        json={"amount": "100.00", "payment_intent_ref": "pi_http"},
    )
    assert proposal.status_code == 200
    assert proposal.json()["agreed_price"] == "100.00"
    assert client.post(f"/api/leads/{lead_id}/complete").json()["status"] == "completed"

    approved = client.post(f"/api/leads/{lead_id}/approve")
    assert approved.status_code == 200
    assert approved.json()["provider_payout_amount"] == "90.00"
    assert approved.json()["platform_fee_amount"] == "10.00"

    # The transfer runs as a background task after the approval response
    payout = client.get(f"/api/leads/{lead_id}/payout").json()
    assert payout["status"] == "completed"
    assert processor.captures == ["pi_http"]

    again = client.post(f"/api/leads/{lead_id}/approve")
    assert again.json()["id"] == approved.json()["id"]

    lead = client.get(f"/api/leads/{lead_id}").json()
    assert lead["status"] == "closed"
    assert [event["to_status"] for event in lead["history"]][-2:] == ["approved", "closed"]

    request = client.get(f"/api/service-requests/{request['id']}").json()
    assert request["status"] == "closed"
    assert request["accepted_lead_id"] == lead_id
    assert [l["status"] for l in request["leads"][1:]] == ["cancelled", "cancelled"]


def test_invalid_transition_is_409(client):
    lead_id = create_request(client)["leads"][0]["id"]

    response = client.post(f"/api/leads/{lead_id}/complete")

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "invalid_transition"
    assert body["details"]["from"] == "notified"
    assert body["details"]["to"] == "completed"


def test_decline_requires_reason(client):
    lead_id = create_request(client)["leads"][0]["id"]

    assert client.post(f"/api/leads/{lead_id}/respond", json={"decision": "decline"}).status_code == 422
    response = client.post(
        f"/api/leads/{lead_id}/respond",
        json={"decision": "decline", "reason": "other", "note": "Booked until next month"},
    )
    assert response.status_code == 200
    assert response.json()["decline_reason"] == "other"


def test_cancel_and_reassign(client):
    request = create_request(client)

    response = client.post(f"/api/service-requests/{request['id']}/reassign")
    assert response.status_code == 409
    assert response.json()["code"] == "no_eligible_providers"

    cancelled = client.post(f"/api/service-requests/{request['id']}/cancel", json={"reason": "found someone else"})
    assert cancelled.status_code == 200
    body = cancelled.json()
    assert body["status"] == "cancelled"
    assert {lead["cancel_reason"] for lead in body["leads"]} == {"found someone else"}

    lead_id = body["leads"][0]["id"]
    assert client.post(f"/api/leads/{lead_id}/cancel").status_code == 409


def test_lead_notifications_and_failed_list(client, service):
    lead_id = create_request(client)["leads"][0]["id"]
    asyncio.run(service.dispatcher.process_due())

    history = client.get(f"/api/leads/{lead_id}/notifications").json()
    assert [record["message_type"] for record in history] == ["new_lead"]
    assert history[0]["status"] == "sent"
    assert history[0]["attempts"][0]["success"] is True

    assert client.get("/api/notifications/failed").json() == []
    assert client.get("/api/notifications/failed", params={"limit": 0}).status_code == 422


def test_notification_preferences_over_http(client, service):
    response = client.put("/api/notifications/preferences/10", json={"disabled_types": ["work_started"]})
    assert response.status_code == 200
    assert response.json()["disabled_types"] == ["work_started"]
    assert response.json()["email_enabled"] is True
    assert "unsubscribe_token" not in response.json()

    bad = client.put("/api/notifications/preferences/10", json={"disabled_types": ["fax"]})
    assert bad.status_code == 422

    token = asyncio.run(service.notification_preferences(10)).unsubscribe_token
    assert client.post("/api/notifications/unsubscribe", params={"token": token}).json()["email_enabled"] is False
    assert client.get("/api/notifications/preferences/10").json()["email_enabled"] is False
    assert client.post("/api/notifications/unsubscribe", params={"token": "nope"}).status_code == 404


def test_failed_lead_charge_is_402(client, processor):
    lead_id = create_request(client)["leads"][0]["id"]
    processor.fail_charges = 1

    response = client.post(f"/api/leads/{lead_id}/respond", json={"decision": "accept"})

    assert response.status_code == 402
    assert response.json()["code"] == "lead_payment_failed"
    lead = client.get(f"/api/leads/{lead_id}").json()
    assert lead["status"] == "viewed"
    assert lead["lead_charge_error"] == "Your card was declined."

from datetime import timedelta

import pytest
from sqlmodel import select

from islapos.models import EdgeEvent, EdgeGateway, EdgeGatewayPairCode, utcnow
from islapos.security import verify_secret

from conftest import auth


def start_pairing(client, user):
    response = client.post("/edge/pair/start", json={"name": "Front counter"}, headers=auth(user))
    assert response.status_code == 200
    return response.json()


def test_pair_start(client, session, owner, restaurant):
    body = start_pairing(client, owner)
    assert body["restaurantId"] == restaurant.id
    assert body["name"] == "Front counter"
    assert len(body["code"]) == 8
    assert set(body["code"]) <= set("ABCDEFGHJKLMNPQRSTUVWXYZ23456789")

    row = session.get(EdgeGatewayPairCode, body["code"])
    assert row.restaurant_id == restaurant.id
    assert row.created_by_user_id == owner.id


def test_pair_start_for_manager_and_cashier(client, manager, cashier, restaurant):
    assert start_pairing(client, manager)["restaurantId"] == restaurant.id

    response = client.post("/edge/pair/start", headers=auth(cashier))
    assert response.status_code == 403
    assert response.json() == {"error": "Cashier accounts cannot pair an edge gateway"}


def test_pair_complete_is_single_use(client, session, owner, restaurant):
    code = start_pairing(client, owner)["code"]

    response = client.post("/edge/pair/complete", json={"code": f" {code.lower()} ", "name": "Till"})
    assert response.status_code == 200
    paired = response.json()
    assert paired["restaurantId"] == restaurant.id

    gateway = session.get(EdgeGateway, paired["gatewayId"])
    assert gateway.name == "Till"
    assert gateway.last_seen_at is not None
    assert gateway.secret_hash != paired["secret"]
    assert verify_secret(paired["secret"], gateway.secret_hash)
    assert session.get(EdgeGatewayPairCode, code) is None

    again = client.post("/edge/pair/complete", json={"code": code})
    assert again.status_code == 401
    assert again.json() == {"error": "Invalid or expired pairing code"}


def test_pair_complete_expired_code(client, session, owner, restaurant):
    session.add(
        EdgeGatewayPairCode(
            code="EXPIRED2",
            restaurant_id=restaurant.id,
            created_by_user_id=owner.id,
            expires_at=utcnow() - timedelta(minutes=1),
        )
    )
    session.commit()

    response = client.post("/edge/pair/complete", json={"code": "EXPIRED2"})
    assert response.status_code == 401
    session.expire_all()
    assert session.get(EdgeGatewayPairCode, "EXPIRED2") is None
    assert session.exec(select(EdgeGateway)).all() == []


def test_pair_complete_missing_code(client):
    response = client.post("/edge/pair/complete", json={"code": "  "})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing code"}


@pytest.fixture
def paired(client, owner, restaurant):
    code = start_pairing(client, owner)["code"]
    body = client.post("/edge/pair/complete", json={"code": code}).json()
    return {"X-Gateway-Id": body["gatewayId"], "X-Gateway-Secret": body["secret"]}


def test_push_requires_credentials(client, paired):
    response = client.post("/edge/push-events", json={"events": []})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing gateway credentials"}

    wrong = {**paired, "X-Gateway-Secret": "not-it"}
    response = client.post("/edge/push-events", json={"events": []}, headers=wrong)
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_push_events_is_idempotent(client, session, restaurant, paired):
    events = [
        {"id": "evt-1", "type": "printer_status", "deviceId": " p1 ", "payload": {"paper": "low"},
         "createdAt": "2026-03-01T10:00:00Z"},
        {"id": "evt-2", "type": "test_event"},
    ]
    first = client.post("/edge/push-events", json={"events": events}, headers=paired)
    assert first.status_code == 200
    assert first.json() == {"ok": True, "accepted": 2, "duplicate": 0, "ids": ["evt-1", "evt-2"]}

    second = client.post("/edge/push-events", json={"events": events[:1]}, headers=paired)
    assert second.json() == {"ok": True, "accepted": 0, "duplicate": 1, "ids": ["evt-1"]}

    stored = session.get(EdgeEvent, "evt-1")
    assert stored.restaurant_id == restaurant.id
    assert stored.gateway_id == paired["X-Gateway-Id"]
    assert stored.device_id == "p1"
    assert stored.payload_json == {"paper": "low"}
    assert session.get(EdgeEvent, "evt-2").payload_json == {}


def test_push_events_repeated_within_batch(client, session, paired):
    events = [{"id": "evt-9", "type": "scan"}, {"id": "evt-9", "type": "scan"}]
    response = client.post("/edge/push-events", json={"events": events}, headers=paired)
    assert response.json()["accepted"] == 1
    assert response.json()["duplicate"] == 1


def test_push_events_validation(client, paired):
    response = client.post("/edge/push-events", json={"events": []}, headers=paired)
    assert response.json() == {"ok": True, "accepted": 0, "duplicate": 0, "ids": []}

    response = client.post("/edge/push-events", json={"events": [{"id": "x"}, {"type": "y"}]}, headers=paired)
    assert response.status_code == 400
    assert response.json() == {"error": "No valid events"}


def test_push_updates_last_seen(client, session, paired):
    gateway = session.get(EdgeGateway, paired["X-Gateway-Id"])
    gateway.last_seen_at = None
    session.add(gateway)
    session.commit()

    client.post("/edge/push-events", json={"events": []}, headers=paired)
    session.expire_all()
    assert session.get(EdgeGateway, paired["X-Gateway-Id"]).last_seen_at is not None

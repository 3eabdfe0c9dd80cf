from datetime import datetime, timedelta, timezone

import pytest

from islapos.models import DeliveryIntegration, Order, OrderType

from conftest import add_order, auth

NO_PROVIDER = "No enabled delivery provider for this restaurant. Configure it in Admin → Integrations."


def enable_provider(session, restaurant_id, provider, enabled=True, minutes=0):
    session.add(
        DeliveryIntegration(
            restaurant_id=restaurant_id,
            provider=provider,
            enabled=enabled,
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
        )
    )
    session.commit()


@pytest.fixture
def delivery_order(session, restaurant):
    return add_order(session, restaurant.id, order_type=OrderType.delivery)


def test_dispatch_with_first_enabled_provider(client, session, cashier, restaurant, delivery_order):
    enable_provider(session, restaurant.id, "uber", enabled=False)
    enable_provider(session, restaurant.id, "doordash", minutes=1)
    enable_provider(session, restaurant.id, "glovo", minutes=2)

    response = client.post("/delivery/dispatch", json={"orderId": delivery_order.id}, headers=auth(cashier))
    assert response.status_code == 200
    body = response.json()
    assert body["dispatched"] is True
    order = body["order"]
    assert order["id"] == delivery_order.id
    assert order["delivery_status"] == "dispatched"
    assert order["delivery_provider"] == "doordash"
    assert order["delivery_provider_delivery_id"].startswith("stub_")
    assert order["delivery_tracking_url"].endswith(f"/doordash/{order['delivery_provider_delivery_id']}")


def test_dispatch_with_requested_provider(client, session, owner, restaurant, delivery_order):
    enable_provider(session, restaurant.id, "doordash")
    enable_provider(session, restaurant.id, "glovo", minutes=1)
    response = client.post(
        "/delivery/dispatch", json={"orderId": delivery_order.id, "provider": "glovo"}, headers=auth(owner)
    )
    assert response.json()["order"]["delivery_provider"] == "glovo"


def test_dispatch_errors(client, session, owner, restaurant, delivery_order):
    headers = auth(owner)
    assert client.post("/delivery/dispatch", json={}, headers=headers).json() == {"error": "Missing orderId"}

    response = client.post("/delivery/dispatch", json={"orderId": delivery_order.id}, headers=headers)
    assert response.status_code == 400
    assert response.json() == {"error": NO_PROVIDER}

    enable_provider(session, restaurant.id, "doordash")
    dine_in = add_order(session, restaurant.id, order_type=OrderType.dine_in)
    response = client.post("/delivery/dispatch", json={"orderId": dine_in.id}, headers=headers)
    assert response.json() == {"error": "Only delivery orders can be dispatched"}


def test_dispatch_other_restaurant_order(client, session, owner, restaurant, other_restaurant):
    enable_provider(session, other_restaurant.id, "doordash")
    order_id = add_order(session, other_restaurant.id, order_type=OrderType.delivery).id

    response = client.post("/delivery/dispatch", json={"orderId": order_id}, headers=auth(owner))
    assert response.status_code == 404
    session.expire_all()
    assert session.get(Order, order_id).delivery_status is None


def test_dispatch_requires_auth(client, delivery_order):
    response = client.post("/delivery/dispatch", json={"orderId": delivery_order.id})
    assert response.status_code == 401


def test_webhook_updates_order(client, session, delivery_order):
    order_id = delivery_order.id
    response = client.post(
        "/delivery/webhook/uber",
        json={"orderId": order_id, "status": "delivered", "provider_delivery_id": "u-1", "tracking_url": "https://u/1"},
    )
    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "order": {
            "id": order_id,
            "delivery_status": "delivered",
            "delivery_provider": "uber",
            "delivery_provider_delivery_id": "u-1",
            "delivery_tracking_url": "https://u/1",
        },
    }


def test_webhook_unknown_order_is_acknowledged(client):
    response = client.post("/delivery/webhook/uber", json={"orderId": "missing", "status": "delivered"})
    assert response.json() == {"ok": True, "order": None}


def test_webhook_validation(client):
    response = client.post("/delivery/webhook/uber", json={"orderId": "x"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing orderId or status"}


def test_webhook_secret(client, session, test_settings, delivery_order):
    test_settings.delivery_webhook_secret = "s3cret"
    body = {"orderId": delivery_order.id, "status": "picked_up"}

    assert client.post("/delivery/webhook/uber", json=body).status_code == 401
    assert client.post("/delivery/webhook/uber", json=body, headers={"X-Webhook-Secret": "nope"}).status_code == 401
    session.expire_all()
    assert session.get(Order, delivery_order.id).delivery_status is None

    response = client.post("/delivery/webhook/uber", json=body, headers={"X-Webhook-Secret": "s3cret"})
    assert response.json()["order"]["delivery_status"] == "picked_up"

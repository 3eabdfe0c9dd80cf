import logging
import time
from typing import Annotated

from fastapi import APIRouter, Depends, Header
from sqlmodel import Session, select

from .db import get_session
from .errors import InvalidInput, NotFound, Unauthorized
from .models import (
    DeliveryIntegration,
    DeliveryWebhookRequest,
    DispatchRequest,
    Order,
    OrderType,
    utcnow,
)
from .realtime import publish_order_update
from .security import verify_shared_secret
from .settings import settings
from .tenancy import scoped_restaurant_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/delivery")

DISPATCHED = "dispatched"
TRACKING_BASE_URL = "https://track.islapos.local"


def delivery_payload(order: Order) -> dict:
    return {
        "id": order.id,
        "delivery_status": order.delivery_status,
        "delivery_provider": order.delivery_provider,
        "delivery_provider_delivery_id": order.delivery_provider_delivery_id,
        "delivery_tracking_url": order.delivery_tracking_url,
    }


def pick_provider(session: Session, restaurant_id: str, requested: str | None) -> str | None:
    """The requested provider when enabled, else the first enabled one."""
    enabled = session.exec(
        select(DeliveryIntegration.provider)
        .where(DeliveryIntegration.restaurant_id == restaurant_id, DeliveryIntegration.enabled == True)  # noqa: E712
        .order_by(DeliveryIntegration.created_at)
    ).all()
    if requested and requested in enabled:
        return requested
    return enabled[0] if enabled else None


@router.post("/dispatch")
def dispatch_order(
    restaurant_id: Annotated[str, Depends(scoped_restaurant_id)],
    body: DispatchRequest | None = None,
    session: Session = Depends(get_session),
):
    body = body or DispatchRequest()
    order_id = (body.order_id or "").strip()
    if not order_id:
        raise InvalidInput("Missing orderId")

    order = session.get(Order, order_id)
    # Orders of other restaurants are indistinguishable from missing ones.
    if order is None or order.restaurant_id != restaurant_id:
        raise NotFound("Order not found")
    if order.order_type != OrderType.delivery:
        raise InvalidInput("Only delivery orders can be dispatched")

    provider = pick_provider(session, restaurant_id, (body.provider or "").strip() or None)
    if provider is None:
        raise InvalidInput(
            "No enabled delivery provider for this restaurant. Configure it in Admin → Integrations."
        )

    delivery_id = f"stub_{int(time.time() * 1000)}"
    order.delivery_status = DISPATCHED
    order.delivery_provider = provider
    order.delivery_provider_delivery_id = delivery_id
    order.delivery_tracking_url = f"{TRACKING_BASE_URL}/{provider}/{delivery_id}"
    order.delivery_dispatched_at = utcnow()
    session.add(order)
    session.commit()
    session.refresh(order)

    logger.info("Dispatched order %s via %s", order.id, provider)
    payload = delivery_payload(order)
    publish_order_update(restaurant_id, {"type": "delivery_update", **payload})
    return {"dispatched": True, "order": payload}


def require_webhook_secret(x_webhook_secret: Annotated[str | None, Header()] = None) -> None:
    expected = settings.delivery_webhook_secret
    if not expected:
        return
    if not x_webhook_secret or not verify_shared_secret(x_webhook_secret, expected):
        raise Unauthorized()


@router.post("/webhook/{provider}", dependencies=[Depends(require_webhook_secret)])
def delivery_webhook(
    provider: str,
    body: DeliveryWebhookRequest | None = None,
    session: Session = Depends(get_session),
):
    """Provider status callback. Updates are last-write-wins."""
    body = body or DeliveryWebhookRequest()
    order_id = (body.order_id or "").strip()
    status = (body.status or "").strip()
    if not order_id or not status:
        raise InvalidInput("Missing orderId or status")

    order = session.get(Order, order_id)
    if order is None:
        logger.info("Webhook from %s for unknown order %s", provider, order_id)
        return {"ok": True, "order": None}

    order.delivery_provider = provider
    order.delivery_status = status
    if body.provider_delivery_id:
        order.delivery_provider_delivery_id = body.provider_delivery_id
    if body.tracking_url:
        order.delivery_tracking_url = body.tracking_url
    session.add(order)
    session.commit()
    session.refresh(order)

    payload = delivery_payload(order)
    publish_order_update(order.restaurant_id, {"type": "delivery_update", **payload})
    return {"ok": True, "order": payload}

"""
Kitchen display endpoints.

A KDS device authenticates with the token in its URL; the token row decides
which restaurant's orders it sees.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import update
from sqlmodel import Session, select

from . import order_flow
from .db import get_session
from .errors import InvalidInput, InvalidTransition, NotFound, Unauthorized
from .models import KdsToken, KdsUpdateRequest, Order, OrderItem, Restaurant
from .realtime import publish_order_update

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/kds")


def get_kds_token(token: str, session: Session = Depends(get_session)) -> KdsToken:
    row = session.exec(select(KdsToken).where(KdsToken.token == token)).first()
    if row is None:
        raise Unauthorized("Invalid or expired KDS link")
    if not row.is_active:
        raise Unauthorized("This KDS link has been deactivated")
    return row


def list_kitchen_orders(session: Session, restaurant_id: str) -> list[dict]:
    orders = session.exec(
        select(Order)
        .where(Order.restaurant_id == restaurant_id, Order.status.in_(order_flow.KDS_VISIBLE_STATUSES))
        .order_by(Order.created_at)
    ).all()
    if not orders:
        return []

    items_by_order: dict[str, list[dict]] = {o.id: [] for o in orders}
    items = session.exec(select(OrderItem).where(OrderItem.order_id.in_(list(items_by_order)))).all()
    for item in items:
        items_by_order[item.order_id].append({"id": item.id, "name": item.name, "qty": item.qty})

    return [
        {
            "id": o.id,
            "ticket_no": o.ticket_no,
            "status": o.status.value,
            "total": o.total,
            "created_at": o.created_at.isoformat(),
            "order_type": o.order_type.value if o.order_type else None,
            "customer_name": o.customer_name,
            "items": items_by_order[o.id],
        }
        for o in orders
    ]


@router.get("/{token}")
def kds_orders(kds: KdsToken = Depends(get_kds_token), session: Session = Depends(get_session)):
    restaurant = session.get(Restaurant, kds.restaurant_id)
    return {
        "restaurantId": kds.restaurant_id,
        "restaurantName": restaurant.name if restaurant else None,
        "orders": list_kitchen_orders(session, kds.restaurant_id),
    }


@router.post("/{token}")
def kds_update(
    body: KdsUpdateRequest | None = None,
    kds: KdsToken = Depends(get_kds_token),
    session: Session = Depends(get_session),
):
    """Bump or recall one order by a single step."""
    body = body or KdsUpdateRequest()
    order_id = (body.order_id or "").strip()
    if not order_id or body.action not in {a.value for a in order_flow.KdsAction}:
        raise InvalidInput("Missing orderId or action")

    order = session.exec(
        select(Order).where(Order.id == order_id, Order.restaurant_id == kds.restaurant_id)
    ).first()
    if order is None:
        raise NotFound("Order not found")

    current = order.status
    target = order_flow.next_status(current, order_flow.KdsAction(body.action))

    # Compare-and-swap: a concurrent bump or recall makes this match nothing.
    result = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.restaurant_id == kds.restaurant_id, Order.status == current)
        .values(status=target)
    )
    if result.rowcount != 1:
        session.rollback()
        raise InvalidTransition()
    session.commit()
    session.expire_all()

    logger.info("KDS %s moved order %s from %s to %s", kds.id, order_id, current.value, target.value)
    publish_order_update(kds.restaurant_id, {"type": "status_changed", "order_id": order_id, "status": target.value})
    return {"ok": True, "orders": list_kitchen_orders(session, kds.restaurant_id)}

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from . import customer_service, receipts, staff_service
from .db import get_session
from .email_service import Mailer, get_mailer
from .errors import InvalidInput, NotFound, UpstreamError
from .identity import IdentityError, IdentityProvider, get_identity_provider
from .models import (
    CustomerCreate,
    Order,
    OrderItem,
    Restaurant,
    SendReceiptRequest,
    TimeClockAction,
    TimeClockEntry,
    TimeClockRequest,
    as_utc,
)
from .security import Requester, get_requester
from .tenancy import ensure_same_restaurant, resolve_restaurant_id, scoped_restaurant_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pos")


@router.get("/staff-pins")
def list_staff_pins(
    restaurant_id: Annotated[str, Depends(scoped_restaurant_id)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
):
    """Staff of the caller's restaurant with their PINs, for the terminal's PIN pad."""
    rows = staff_service.list_staff(identity, restaurant_id)
    return {"restaurantId": restaurant_id, "staff": staff_service.sort_by_name(rows)}


def _parse_at(raw: str | None) -> datetime:
    raw = (raw or "").strip()
    if not raw:
        raise InvalidInput("Invalid at")
    try:
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        raise InvalidInput("Invalid at")


def _clean(value: str | None) -> str | None:
    return value.strip() if isinstance(value, str) else None


@router.post("/time-clock")
def record_time_clock(
    requester: Annotated[Requester, Depends(get_requester)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    body: TimeClockRequest | None = None,
    session: Session = Depends(get_session),
):
    body = body or TimeClockRequest()
    if body.action not in {a.value for a in TimeClockAction}:
        raise InvalidInput("Invalid action")
    at = _parse_at(body.at)

    restaurant_id = resolve_restaurant_id(session, identity, requester)
    ensure_same_restaurant(body.restaurant_id, restaurant_id)

    staff_user_id = _clean(body.staff_user_id) or None
    if staff_user_id:
        try:
            staff_user = identity.get_user_by_id(staff_user_id)
        except IdentityError as exc:
            raise UpstreamError(str(exc))
        if staff_user.assigned_restaurant_id != restaurant_id:
            raise InvalidInput("Staff user is not assigned to the active restaurant")

    entry = TimeClockEntry(
        restaurant_id=restaurant_id,
        staff_user_id=staff_user_id,
        staff_pin=_clean(body.staff_pin),
        staff_label=_clean(body.staff_label),
        action=TimeClockAction(body.action),
        at=at,
        recorded_by_user_id=requester.id,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info("Recorded %s for restaurant %s", entry.action.value, restaurant_id)
    return {"ok": True, "id": entry.id}


@router.get("/customers")
def search_customers(
    restaurant_id: Annotated[str, Depends(scoped_restaurant_id)],
    query: str | None = None,
    session: Session = Depends(get_session),
):
    customers = customer_service.search_customers(session, restaurant_id, query, customer_service.POS_LIST_LIMIT)
    return {"customers": [customer_service.summary(c) for c in customers]}


@router.post("/customers")
def capture_customer(
    restaurant_id: Annotated[str, Depends(scoped_restaurant_id)],
    body: CustomerCreate | None = None,
    session: Session = Depends(get_session),
):
    """Create the customer, or refresh name and phone of the one with this email."""
    customer = customer_service.upsert_customer(session, restaurant_id, body or CustomerCreate())
    return {"customer": customer_service.summary(customer)}


def _load_receipt(session: Session, restaurant_id: str, order_id: str) -> receipts.Receipt:
    order = session.exec(
        select(Order).where(Order.id == order_id, Order.restaurant_id == restaurant_id)
    ).first()
    if order is None:
        raise NotFound("Order not found")
    items = session.exec(
        select(OrderItem).where(OrderItem.order_id == order.id).limit(receipts.RECEIPT_ITEM_LIMIT)
    ).all()
    return receipts.build_receipt(session.get(Restaurant, restaurant_id), order, list(items))


@router.post("/send-receipt")
async def send_receipt(
    restaurant_id: Annotated[str, Depends(scoped_restaurant_id)],
    mailer: Annotated[Mailer, Depends(get_mailer)],
    body: SendReceiptRequest | None = None,
    session: Session = Depends(get_session),
):
    body = body or SendReceiptRequest()
    order_id = _clean(body.order_id)
    if not order_id:
        raise InvalidInput("Missing orderId")
    email = (_clean(body.email) or "").lower()
    if not receipts.is_valid_email(email):
        raise InvalidInput("Invalid email")

    receipt = await run_in_threadpool(_load_receipt, session, restaurant_id, order_id)
    if not await mailer(email, receipt.subject, receipt.html, receipt.text):
        raise UpstreamError("Failed to send email")

    logger.info("Receipt for order %s sent for restaurant %s", order_id, restaurant_id)
    return {"ok": True}

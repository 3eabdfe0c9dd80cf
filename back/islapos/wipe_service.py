"""
Full tenant wipe.

Storage is cleared in a single transaction first. Identity deletions follow
and are best-effort: each failure is collected instead of aborting the rest.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import delete, update
from sqlmodel import Session, select

from .errors import UpstreamError
from .identity import IdentityError, IdentityProvider, users_bound_to
from .models import (
    AppConfig,
    Customer,
    DeliveryIntegration,
    EdgeEvent,
    EdgeGateway,
    EdgeGatewayPairCode,
    FloorArea,
    FloorObject,
    FloorTable,
    KdsToken,
    Order,
    OrderItem,
    PayrollShift,
    Restaurant,
    SupportCase,
    TimeClockEntry,
)

logger = logging.getLogger(__name__)

WIPE_CONFIRMATION = "WIPE"

PARTIAL_WIPE_WARNING = (
    "Restaurant deleted, but some user accounts could not be deleted. "
    "You can delete them from the identity provider's user list."
)

# Children before parents so foreign keys hold at every step.
TENANT_TABLES = (
    EdgeEvent,
    EdgeGatewayPairCode,
    EdgeGateway,
    KdsToken,
    SupportCase,
    TimeClockEntry,
    PayrollShift,
    Customer,
    DeliveryIntegration,
    FloorTable,
    FloorObject,
    FloorArea,
    Order,
)


def is_confirmed(confirm: str | None) -> bool:
    return isinstance(confirm, str) and confirm.strip().upper() == WIPE_CONFIRMATION


@dataclass
class WipeResult:
    user_ids: list[str]
    failures: list[dict[str, str]] = field(default_factory=list)

    def to_payload(self) -> dict:
        if not self.failures:
            return {"ok": True}
        return {"ok": True, "warning": PARTIAL_WIPE_WARNING, "failures": self.failures}


def affected_user_ids(identity: IdentityProvider, restaurant_id: str, requester_id: str) -> list[str]:
    try:
        bound = users_bound_to(identity, restaurant_id)
    except IdentityError as exc:
        logger.warning("Could not list users for restaurant %s: %s", restaurant_id, exc)
        raise UpstreamError(str(exc) or "Failed to list users")

    user_ids: list[str] = []
    for user in bound:
        if user.id not in user_ids:
            user_ids.append(user.id)
    if requester_id not in user_ids:
        user_ids.append(requester_id)
    return user_ids


def delete_restaurant_data(session: Session, restaurant_id: str, user_ids: list[str]) -> None:
    order_ids = select(Order.id).where(Order.restaurant_id == restaurant_id)
    session.execute(delete(OrderItem).where(OrderItem.order_id.in_(order_ids)))
    for table in TENANT_TABLES:
        session.execute(delete(table).where(table.restaurant_id == restaurant_id))

    session.execute(delete(AppConfig).where(AppConfig.owner_user_id.in_(user_ids)))
    # Pointers held by users outside the wipe just lose their selection.
    session.execute(
        update(AppConfig)
        .where(AppConfig.restaurant_id == restaurant_id)
        .values(restaurant_id=None, setup_complete=False)
    )
    session.execute(delete(Restaurant).where(Restaurant.id == restaurant_id))


def full_wipe(session: Session, identity: IdentityProvider, restaurant_id: str, requester_id: str) -> WipeResult:
    user_ids = affected_user_ids(identity, restaurant_id, requester_id)

    try:
        delete_restaurant_data(session, restaurant_id, user_ids)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("Wiped restaurant %s (%d user accounts affected)", restaurant_id, len(user_ids))

    result = WipeResult(user_ids=user_ids)
    for user_id in user_ids:
        try:
            identity.delete_user(user_id)
        except IdentityError as exc:
            logger.warning("Failed to delete user %s after wipe of %s: %s", user_id, restaurant_id, exc)
            result.failures.append({"userId": user_id, "error": str(exc)})
    return result

"""
Tenant resolution.

Owners (and callers without a recognized role) act on the restaurant their
AppConfig row points at. Staff are bound to the restaurant recorded in their
identity metadata and never switch.
"""

import logging
from typing import Annotated

from fastapi import Depends
from sqlmodel import Session, select

from .db import get_session
from .errors import Forbidden, NoActiveRestaurant, NoRestaurantAssigned, UpstreamError
from .identity import IdentityError, IdentityProvider, get_identity_provider
from .models import AppConfig
from .security import Requester, get_requester

logger = logging.getLogger(__name__)


def get_active_restaurant_id(session: Session, user_id: str) -> str | None:
    config = session.exec(select(AppConfig).where(AppConfig.owner_user_id == user_id)).first()
    return config.restaurant_id if config else None


def require_active_restaurant_id(session: Session, user_id: str) -> str:
    restaurant_id = get_active_restaurant_id(session, user_id)
    if not restaurant_id:
        raise NoActiveRestaurant()
    return restaurant_id


def resolve_restaurant_id(session: Session, identity: IdentityProvider, requester: Requester) -> str:
    if not requester.role.is_staff:
        return require_active_restaurant_id(session, requester.id)

    assigned = requester.user.assigned_restaurant_id
    if assigned:
        return assigned

    try:
        fresh = identity.get_user_by_id(requester.id)
    except IdentityError as exc:
        logger.warning("Identity lookup failed for user %s: %s", requester.id, exc)
        raise UpstreamError(str(exc))
    if not fresh.assigned_restaurant_id:
        raise NoRestaurantAssigned()
    return fresh.assigned_restaurant_id


def ensure_same_restaurant(requested: str | None, resolved: str) -> None:
    """Client-supplied restaurant ids are only accepted when they match."""
    if requested and requested.strip() and requested.strip() != resolved:
        raise Forbidden()


def active_restaurant_id(
    requester: Annotated[Requester, Depends(get_requester)],
    session: Session = Depends(get_session),
) -> str:
    """Dependency: the caller's AppConfig pointer."""
    return require_active_restaurant_id(session, requester.id)


def scoped_restaurant_id(
    requester: Annotated[Requester, Depends(get_requester)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    session: Session = Depends(get_session),
) -> str:
    """Dependency: the role-aware tenant of the caller."""
    return resolve_restaurant_id(session, identity, requester)

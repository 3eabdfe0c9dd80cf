import logging
from dataclasses import dataclass
from enum import Enum
from typing import Annotated

from fastapi import Depends
from sqlmodel import Session

from .db import get_session
from .errors import Forbidden
from .identity import IdentityError, IdentityProvider, get_identity_provider
from .models import Restaurant, Role
from .security import Requester, get_requester
from .tenancy import require_active_restaurant_id, resolve_restaurant_id

logger = logging.getLogger(__name__)


class AdminAction(str, Enum):
    FLOOR_EDIT = "floor:edit"
    ORDERS_DELETE = "orders:delete"
    STAFF_INVITE = "staff:invite"
    STAFF_MANAGE = "staff:manage"
    SUPPORT_ACCESS = "support:access"
    FULL_WIPE = "restaurant:wipe"
    EDGE_PAIR = "edge:pair"
    CUSTOMERS_MANAGE = "customers:manage"
    PAYROLL_MANAGE = "payroll:manage"
    PAYROLL_REPORT = "payroll:report"
    PAYROLL_EMAIL = "payroll:email"


ACTION_LABELS = {
    AdminAction.FLOOR_EDIT: "edit the floor plan",
    AdminAction.ORDERS_DELETE: "delete transactions",
    AdminAction.STAFF_INVITE: "invite staff",
    AdminAction.STAFF_MANAGE: "manage staff",
    AdminAction.SUPPORT_ACCESS: "access support",
    AdminAction.FULL_WIPE: "perform a full wipe",
    AdminAction.EDGE_PAIR: "pair an edge gateway",
    AdminAction.CUSTOMERS_MANAGE: "access customers",
    AdminAction.PAYROLL_MANAGE: "manage payroll",
    AdminAction.PAYROLL_REPORT: "view payroll reports",
    AdminAction.PAYROLL_EMAIL: "email schedules",
}

# Managers never get these, even for their own restaurant.
OWNER_ONLY_ACTIONS = frozenset({AdminAction.FULL_WIPE})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None


ALLOW = Decision(True)


class AuthorizationPolicy:
    """Decides whether a caller may run an administrative action on a restaurant."""

    def __init__(self, session: Session, identity: IdentityProvider):
        self.session = session
        self.identity = identity

    def authorize(self, requester: Requester, restaurant_id: str, action: AdminAction) -> Decision:
        label = ACTION_LABELS[action]
        role = requester.role

        if role.is_restricted:
            return Decision(False, f"{role.value.capitalize()} accounts cannot {label}")

        if role == Role.manager:
            if action in OWNER_ONLY_ACTIONS:
                return Decision(False, f"Only the restaurant owner can {label}")
            # Binding is re-read from the provider, not from the token's copy.
            try:
                fresh = self.identity.get_user_by_id(requester.id)
            except IdentityError as exc:
                return Decision(False, str(exc))
            if fresh.assigned_restaurant_id != restaurant_id:
                return Decision(False, f"Managers can only {label} for their assigned restaurant")
            return ALLOW

        # Owners and unrecognized roles: ownership is the stored relation.
        restaurant = self.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            return Decision(False, "Restaurant not found")
        if restaurant.owner_user_id != requester.id:
            if action in OWNER_ONLY_ACTIONS:
                return Decision(False, f"Only the restaurant owner can {label}")
            return Decision(False, f"Only the restaurant owner or manager can {label}")
        return ALLOW

    def require(self, requester: Requester, restaurant_id: str, action: AdminAction) -> None:
        decision = self.authorize(requester, restaurant_id, action)
        if not decision.allowed:
            logger.info(
                "Denied %s for user %s on restaurant %s: %s",
                action.value, requester.id, restaurant_id, decision.reason,
            )
            raise Forbidden(decision.reason or "Forbidden")


def get_policy(
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    session: Session = Depends(get_session),
) -> AuthorizationPolicy:
    return AuthorizationPolicy(session, identity)


@dataclass
class AuthorizedRequest:
    requester: Requester
    restaurant_id: str


class PermissionChecker:
    """
    Dependency that authenticates, resolves the target restaurant and
    enforces `action` on it.

    With `by_role=False` the target is the caller's AppConfig pointer for
    every role; managers then must be bound to that same restaurant.
    With `by_role=True` staff resolve through their own metadata instead.
    """

    def __init__(self, action: AdminAction, by_role: bool = False):
        self.action = action
        self.by_role = by_role

    def __call__(
        self,
        requester: Annotated[Requester, Depends(get_requester)],
        identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
        policy: Annotated[AuthorizationPolicy, Depends(get_policy)],
        session: Session = Depends(get_session),
    ) -> AuthorizedRequest:
        if self.by_role:
            restaurant_id = resolve_restaurant_id(session, identity, requester)
        else:
            restaurant_id = require_active_restaurant_id(session, requester.id)
        policy.require(requester, restaurant_id, self.action)
        return AuthorizedRequest(requester=requester, restaurant_id=restaurant_id)

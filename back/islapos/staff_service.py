import logging
import re
from typing import Any

from sqlmodel import Session, select

from .errors import InvalidInput, InviteFailed, UpstreamError
from .identity import AuthUser, IdentityError, IdentityProvider, users_bound_to
from .models import STAFF_ROLES, AppConfig, Role

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")
MAX_STAFF_NAME_LENGTH = 60


def normalize_pin(value: Any) -> str | None:
    """A stored PIN is only reported when it is exactly four digits."""
    if not isinstance(value, str):
        return None
    pin = value.strip()
    return pin if PIN_PATTERN.match(pin) else None


def parse_staff_role(value: str | None, default: Role | None = None) -> Role | None:
    if value is None or value == "":
        return default
    try:
        role = Role(value)
    except ValueError:
        raise InvalidInput("Invalid role")
    if role not in STAFF_ROLES:
        raise InvalidInput("Invalid role")
    return role


def staff_row(user: AuthUser) -> dict[str, Any]:
    meta = user.app_metadata
    name = meta.get("staff_name")
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role.value if user.role in STAFF_ROLES else Role.cashier.value,
        "name": name if isinstance(name, str) else None,
        "pin": normalize_pin(meta.get("staff_pin")),
    }


def list_staff(identity: IdentityProvider, restaurant_id: str) -> list[dict[str, Any]]:
    try:
        users = users_bound_to(identity, restaurant_id)
    except IdentityError as exc:
        logger.warning("Could not list staff for restaurant %s: %s", restaurant_id, exc)
        raise UpstreamError(str(exc) or "Failed to list users")
    return [staff_row(u) for u in users]


def sort_by_email(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda r: (r["email"] or "").lower())


def sort_by_name(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda r: (r["name"] or r["email"] or "").lower())


def get_bound_user(identity: IdentityProvider, user_id: str, restaurant_id: str) -> AuthUser:
    try:
        target = identity.get_user_by_id(user_id)
    except IdentityError as exc:
        raise UpstreamError(str(exc))
    if target.assigned_restaurant_id != restaurant_id:
        raise InvalidInput("User is not assigned to the active restaurant")
    return target


def update_staff(
    identity: IdentityProvider,
    restaurant_id: str,
    user_id: str,
    changes: dict[str, Any],
) -> AuthUser:
    """
    Merge `changes` (keys: role, name, pin; a None value clears name/pin) into
    the target's metadata. The target stays pinned to `restaurant_id`.
    """
    role = parse_staff_role(changes.get("role"))

    name = changes.get("name")
    if isinstance(name, str):
        name = name.strip()
        if len(name) > MAX_STAFF_NAME_LENGTH:
            raise InvalidInput("Name is too long")

    pin = changes.get("pin")
    if isinstance(pin, str):
        pin = pin.strip()
        if not PIN_PATTERN.match(pin):
            raise InvalidInput("PIN must be exactly 4 digits")

    target = get_bound_user(identity, user_id, restaurant_id)

    if role is None and "name" not in changes and "pin" not in changes:
        raise InvalidInput("Nothing to update")

    meta = dict(target.app_metadata)
    if role is not None:
        meta["role"] = role.value
    meta["restaurant_id"] = restaurant_id
    if "name" in changes:
        meta["staff_name"] = name
    if "pin" in changes:
        meta["staff_pin"] = pin

    try:
        return identity.update_app_metadata(user_id, meta)
    except IdentityError as exc:
        raise UpstreamError(str(exc))


def remove_staff(session: Session, identity: IdentityProvider, restaurant_id: str, user_id: str) -> None:
    target = get_bound_user(identity, user_id, restaurant_id)

    meta = {**target.app_metadata, "role": Role.cashier.value, "restaurant_id": None}
    try:
        identity.update_app_metadata(user_id, meta)
    except IdentityError as exc:
        raise UpstreamError(str(exc))

    config = session.exec(select(AppConfig).where(AppConfig.owner_user_id == user_id)).first()
    if config:
        config.restaurant_id = None
        config.setup_complete = False
        session.add(config)
        session.commit()
    logger.info("Revoked access of user %s to restaurant %s", user_id, restaurant_id)


def serialize_user(user: AuthUser) -> dict[str, Any]:
    return {"id": user.id, "email": user.email, "app_metadata": user.app_metadata}


def invite_staff(
    session: Session,
    identity: IdentityProvider,
    email: str,
    role: Role,
    restaurant_id: str | None,
    redirect_to: str | None = None,
) -> AuthUser:
    """
    Invite `email` and, when `restaurant_id` is given, bind the new identity
    to it with `role`.

    Binding runs as a saga: the AppConfig row is staged in the open
    transaction, metadata is written, then the transaction commits. If either
    binding step fails the row is rolled back and the invited identity is
    deleted again.
    """
    try:
        invited = identity.invite_user_by_email(email, redirect_to=redirect_to)
    except IdentityError as exc:
        raise UpstreamError(str(exc))
    if invited is None:
        raise InviteFailed("Invite succeeded but user record missing")

    if restaurant_id is None:
        logger.info("Invited %s without restaurant binding", invited.id)
        return invited

    try:
        config = session.exec(select(AppConfig).where(AppConfig.owner_user_id == invited.id)).first()
        if config is None:
            config = AppConfig(owner_user_id=invited.id)
        config.restaurant_id = restaurant_id
        config.setup_complete = True
        session.add(config)
        session.flush()

        bound = identity.update_app_metadata(
            invited.id, {"role": role.value, "restaurant_id": restaurant_id}
        )
        session.commit()
    except Exception as exc:
        session.rollback()
        compensated = _compensate_invite(identity, invited.id)
        raise InviteFailed(str(exc) or None, invited=False, compensated=compensated)

    logger.info("Invited %s as %s for restaurant %s", invited.id, role.value, restaurant_id)
    return bound


def _compensate_invite(identity: IdentityProvider, user_id: str) -> bool:
    try:
        identity.delete_user(user_id)
    except IdentityError as exc:
        logger.warning("Could not remove invited user %s after failed binding: %s", user_id, exc)
        return False
    logger.warning("Removed invited user %s after failed binding", user_id)
    return True

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import delete
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from . import customer_service, payroll_service, staff_service, wipe_service
from .db import get_session
from .email_service import Mailer, get_mailer
from .errors import Forbidden, InvalidInput, NotFound, UpstreamError
from .identity import IdentityProvider, get_identity_provider
from .models import (
    CustomerCreate,
    CustomerUpdate,
    FloorArea,
    FloorDeleteRequest,
    FloorKind,
    FloorObject,
    FloorTable,
    FullWipeRequest,
    IdRequest,
    InviteUserRequest,
    Order,
    OrderItem,
    OrdersDeleteRequest,
    PayrollShift,
    Role,
    ScheduleEmailRequest,
    ShiftCreate,
    StaffRemoveRequest,
    StaffUpdateRequest,
    SupportCase,
    SupportCaseCreate,
    SupportCaseDelete,
    SupportCasePriority,
    SupportCaseStatus,
    SupportCaseUpdate,
    utcnow,
)
from .permissions import AdminAction, AuthorizationPolicy, AuthorizedRequest, PermissionChecker, get_policy
from .realtime import publish_order_update
from .security import Requester, get_requester, is_system_owner, require_owner_email
from .settings import settings
from .tenancy import require_active_restaurant_id, resolve_restaurant_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


# ============ FLOOR PLAN ============

FLOOR_MODELS = {
    FloorKind.table: (FloorTable, "Table"),
    FloorKind.object: (FloorObject, "Object"),
    FloorKind.area: (FloorArea, "Area"),
}


@router.delete("/floor")
def delete_floor_item(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.FLOOR_EDIT))],
    body: FloorDeleteRequest | None = None,
    session: Session = Depends(get_session),
):
    """Delete a table, object or area. Deleting an area also removes what it contains."""
    body = body or FloorDeleteRequest()
    if body.kind is None:
        raise InvalidInput("Missing kind")
    item_id = (body.id or "").strip()
    if not item_id:
        raise InvalidInput("Missing id")

    model, label = FLOOR_MODELS[body.kind]
    row = session.get(model, item_id)
    if row is None:
        raise NotFound(f"{label} not found")
    if row.restaurant_id != auth.restaurant_id:
        raise Forbidden(f"{label} does not belong to the active restaurant")

    if body.kind == FloorKind.area:
        session.execute(delete(FloorTable).where(FloorTable.area_id == item_id))
        session.execute(delete(FloorObject).where(FloorObject.area_id == item_id))
    session.delete(row)
    session.commit()
    return {"ok": True}


# ============ ORDERS ============

@router.delete("/orders")
def delete_orders(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.ORDERS_DELETE))],
    body: OrdersDeleteRequest | None = None,
    session: Session = Depends(get_session),
):
    """Bulk delete orders and their items. Ids of other restaurants are ignored."""
    requested = [i.strip() for i in (body.order_ids if body and body.order_ids else []) if i and i.strip()]
    if not requested:
        raise InvalidInput("No orderIds provided")

    owned_ids = list(
        session.exec(
            select(Order.id).where(Order.id.in_(requested), Order.restaurant_id == auth.restaurant_id)
        ).all()
    )
    if not owned_ids:
        return {"deleted": 0}

    session.execute(delete(OrderItem).where(OrderItem.order_id.in_(owned_ids)))
    result = session.execute(
        delete(Order).where(Order.id.in_(owned_ids), Order.restaurant_id == auth.restaurant_id)
    )
    session.commit()

    logger.info("User %s deleted %d orders", auth.requester.id, result.rowcount)
    publish_order_update(auth.restaurant_id, {"type": "orders_deleted", "order_ids": owned_ids})
    return {"deleted": result.rowcount}


# ============ STAFF ============

@router.post("/invite-user")
def invite_user(
    owner_email: Annotated[str, Depends(require_owner_email)],
    requester: Annotated[Requester, Depends(get_requester)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    policy: Annotated[AuthorizationPolicy, Depends(get_policy)],
    body: InviteUserRequest | None = None,
    session: Session = Depends(get_session),
):
    body = body or InviteUserRequest()
    email = (body.email or "").strip()
    if not email:
        raise InvalidInput("Missing email")
    role = staff_service.parse_staff_role(body.role, default=Role.cashier)

    # The system owner invites without binding the user to any restaurant.
    restaurant_id = None
    if not is_system_owner(requester, owner_email):
        restaurant_id = require_active_restaurant_id(session, requester.id)
        policy.require(requester, restaurant_id, AdminAction.STAFF_INVITE)

    invited = staff_service.invite_staff(
        session,
        identity,
        email=email,
        role=role,
        restaurant_id=restaurant_id,
        redirect_to=settings.invite_redirect_url,
    )
    return {"invited": True, "user": staff_service.serialize_user(invited)}


@router.get("/staff")
def list_staff(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.STAFF_MANAGE))],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
):
    rows = staff_service.list_staff(identity, auth.restaurant_id)
    return {"restaurantId": auth.restaurant_id, "staff": staff_service.sort_by_email(rows)}


@router.patch("/staff")
def update_staff(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.STAFF_MANAGE))],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    body: StaffUpdateRequest | None = None,
):
    body = body or StaffUpdateRequest()
    user_id = (body.user_id or "").strip()
    if not user_id:
        raise InvalidInput("Missing userId")

    # An explicit null clears name or pin; an absent field leaves it alone.
    changes = {"role": body.role}
    for key in ("name", "pin"):
        if key in body.model_fields_set:
            changes[key] = getattr(body, key)

    staff_service.update_staff(identity, auth.restaurant_id, user_id, changes)
    return {"ok": True}


@router.delete("/staff")
def remove_staff(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.STAFF_MANAGE))],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    body: StaffRemoveRequest | None = None,
    session: Session = Depends(get_session),
):
    user_id = (body.user_id if body and body.user_id else "").strip()
    if not user_id:
        raise InvalidInput("Missing userId")

    staff_service.remove_staff(session, identity, auth.restaurant_id, user_id)
    return {"ok": True}


# ============ CUSTOMERS ============

customers_checker = PermissionChecker(AdminAction.CUSTOMERS_MANAGE, by_role=True)


@router.get("/customers")
def list_customers(
    auth: Annotated[AuthorizedRequest, Depends(customers_checker)],
    query: str | None = None,
    session: Session = Depends(get_session),
):
    customers = customer_service.search_customers(
        session, auth.restaurant_id, query, customer_service.ADMIN_LIST_LIMIT
    )
    return {"restaurantId": auth.restaurant_id, "customers": [c.model_dump(mode="json") for c in customers]}


@router.post("/customers")
def create_customer(
    auth: Annotated[AuthorizedRequest, Depends(customers_checker)],
    body: CustomerCreate | None = None,
    session: Session = Depends(get_session),
):
    customer = customer_service.create_customer(session, auth.restaurant_id, body or CustomerCreate())
    return {"ok": True, "id": customer.id}


@router.patch("/customers")
def update_customer(
    auth: Annotated[AuthorizedRequest, Depends(customers_checker)],
    body: CustomerUpdate | None = None,
    session: Session = Depends(get_session),
):
    body = body or CustomerUpdate()
    customer_id = _clean(body.id)
    if not customer_id:
        raise InvalidInput("Missing id")

    customer = customer_service.update_customer(session, auth.restaurant_id, customer_id, body)
    return {"ok": True, "id": customer.id}


@router.delete("/customers")
def delete_customer(
    auth: Annotated[AuthorizedRequest, Depends(customers_checker)],
    body: IdRequest | None = None,
    session: Session = Depends(get_session),
):
    customer_id = _clean(body.id if body else None)
    if not customer_id:
        raise InvalidInput("Missing id")

    customer_service.delete_customer(session, auth.restaurant_id, customer_id)
    return {"ok": True}


# ============ PAYROLL ============

payroll_checker = PermissionChecker(AdminAction.PAYROLL_MANAGE, by_role=True)


@router.get("/payroll/schedules")
def list_schedules(
    auth: Annotated[AuthorizedRequest, Depends(payroll_checker)],
    start: str | None = None,
    end: str | None = None,
    session: Session = Depends(get_session),
):
    shifts = payroll_service.list_shifts(
        session,
        auth.restaurant_id,
        payroll_service.parse_optional_time(start, "Invalid start"),
        payroll_service.parse_optional_time(end, "Invalid end"),
    )
    return {"restaurantId": auth.restaurant_id, "shifts": [payroll_service.shift_row(s) for s in shifts]}


@router.post("/payroll/schedules")
def create_schedule(
    auth: Annotated[AuthorizedRequest, Depends(payroll_checker)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    body: ShiftCreate | None = None,
    session: Session = Depends(get_session),
):
    body = body or ShiftCreate()
    staff_user_id = _clean(body.staff_user_id)
    if not staff_user_id:
        raise InvalidInput("Missing staffUserId")
    starts_at = payroll_service.parse_time(body.starts_at, "Invalid startsAt")
    ends_at = payroll_service.parse_time(body.ends_at, "Invalid endsAt")
    if ends_at <= starts_at:
        raise InvalidInput("endsAt must be after startsAt")
    break_minutes = payroll_service.parse_break_minutes(body.break_minutes)

    target = staff_service.get_bound_user(identity, staff_user_id, auth.restaurant_id)
    row = staff_service.staff_row(target)

    shift = PayrollShift(
        restaurant_id=auth.restaurant_id,
        staff_user_id=staff_user_id,
        staff_pin=_clean(body.staff_pin) or row["pin"],
        staff_label=_clean(body.staff_label) or row["name"] or target.email,
        starts_at=starts_at,
        ends_at=ends_at,
        break_minutes=break_minutes,
        created_by_user_id=auth.requester.id,
    )
    session.add(shift)
    session.commit()
    session.refresh(shift)
    return {"ok": True, "id": shift.id}


@router.delete("/payroll/schedules")
def delete_schedule(
    auth: Annotated[AuthorizedRequest, Depends(payroll_checker)],
    body: IdRequest | None = None,
    session: Session = Depends(get_session),
):
    shift_id = _clean(body.id if body else None)
    if not shift_id:
        raise InvalidInput("Missing id")

    shift = session.exec(
        select(PayrollShift).where(PayrollShift.id == shift_id, PayrollShift.restaurant_id == auth.restaurant_id)
    ).first()
    if shift is None:
        raise NotFound("Shift not found")
    session.delete(shift)
    session.commit()
    return {"ok": True}


@router.get("/payroll/report")
def payroll_report(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.PAYROLL_REPORT, by_role=True))],
    start: str | None = None,
    end: str | None = None,
    session: Session = Depends(get_session),
):
    """Scheduled versus clocked minutes per staff member for shifts starting in [start, end)."""
    if not _clean(start) or not _clean(end):
        raise InvalidInput("Missing start/end")
    range_start = payroll_service.parse_time(start, "Invalid start")
    range_end = payroll_service.parse_time(end, "Invalid end")

    shifts = payroll_service.list_shifts(session, auth.restaurant_id, range_start, range_end)
    entries = payroll_service.clock_entries(session, auth.restaurant_id, range_start, range_end)
    return {
        "restaurantId": auth.restaurant_id,
        "start": range_start.isoformat(),
        "end": range_end.isoformat(),
        "rows": payroll_service.build_report(shifts, entries, range_start, range_end),
    }


@router.post("/payroll/email-schedule")
async def email_schedule(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.PAYROLL_EMAIL, by_role=True))],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    mailer: Annotated[Mailer, Depends(get_mailer)],
    body: ScheduleEmailRequest | None = None,
    session: Session = Depends(get_session),
):
    """Email a staff member their shifts between `start` and `end`."""
    body = body or ScheduleEmailRequest()
    staff_user_id = _clean(body.staff_user_id)
    if not staff_user_id:
        raise InvalidInput("Missing staffUserId")
    start = payroll_service.parse_time(body.start, "Invalid start")
    end = payroll_service.parse_time(body.end, "Invalid end")

    target = await run_in_threadpool(staff_service.get_bound_user, identity, staff_user_id, auth.restaurant_id)
    if not target.email:
        raise InvalidInput("Staff user has no email")

    shifts = await run_in_threadpool(
        payroll_service.list_shifts,
        session,
        auth.restaurant_id,
        start,
        end,
        staff_user_id,
        payroll_service.SCHEDULE_EMAIL_LIMIT,
    )
    subject, text, html = payroll_service.schedule_email(shifts, start, end)
    if not await mailer(target.email, subject, html, text):
        raise UpstreamError("Failed to send email")

    logger.info("Schedule with %d shifts emailed to staff user %s", len(shifts), staff_user_id)
    return {"ok": True, "shifts": len(shifts)}


# ============ RESTAURANT ============

@router.post("/full-wipe")
def full_wipe(
    requester: Annotated[Requester, Depends(get_requester)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    policy: Annotated[AuthorizationPolicy, Depends(get_policy)],
    body: FullWipeRequest | None = None,
    session: Session = Depends(get_session),
):
    """Delete the active restaurant, its data and every account bound to it."""
    if requester.role.is_restricted or requester.role == Role.manager:
        raise Forbidden("Only the restaurant owner can perform a full wipe")

    if not wipe_service.is_confirmed(body.confirm if body else None):
        raise InvalidInput(f"Confirmation required. Type {wipe_service.WIPE_CONFIRMATION} to continue.")

    restaurant_id = require_active_restaurant_id(session, requester.id)
    policy.require(requester, restaurant_id, AdminAction.FULL_WIPE)

    result = wipe_service.full_wipe(session, identity, restaurant_id, requester.id)
    return result.to_payload()


# ============ SUPPORT ============

@router.get("/support-access")
def support_access(
    requester: Annotated[Requester, Depends(get_requester)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
    policy: Annotated[AuthorizationPolicy, Depends(get_policy)],
    session: Session = Depends(get_session),
):
    restaurant_id = resolve_restaurant_id(session, identity, requester)
    decision = policy.authorize(requester, restaurant_id, AdminAction.SUPPORT_ACCESS)
    return {"canAccessSupport": decision.allowed, "restaurantId": restaurant_id}


@router.get("/system-owner")
def system_owner(
    owner_email: Annotated[str, Depends(require_owner_email)],
    requester: Annotated[Requester, Depends(get_requester)],
):
    return {"isSystemOwner": is_system_owner(requester, owner_email)}


SUPPORT_CASE_LIMIT = 200

support_access_checker = PermissionChecker(AdminAction.SUPPORT_ACCESS, by_role=True)


def _get_case(session: Session, case_id: str, restaurant_id: str) -> SupportCase:
    case = session.exec(
        select(SupportCase).where(SupportCase.id == case_id, SupportCase.restaurant_id == restaurant_id)
    ).first()
    if case is None:
        raise NotFound("Support case not found")
    return case


@router.get("/support-cases")
def list_support_cases(
    auth: Annotated[AuthorizedRequest, Depends(support_access_checker)],
    session: Session = Depends(get_session),
):
    cases = session.exec(
        select(SupportCase)
        .where(SupportCase.restaurant_id == auth.restaurant_id)
        .order_by(SupportCase.created_at.desc())
        .limit(SUPPORT_CASE_LIMIT)
    ).all()
    return {"restaurantId": auth.restaurant_id, "cases": [c.model_dump(mode="json") for c in cases]}


@router.post("/support-cases")
def create_support_case(
    auth: Annotated[AuthorizedRequest, Depends(support_access_checker)],
    body: SupportCaseCreate | None = None,
    session: Session = Depends(get_session),
):
    body = body or SupportCaseCreate()
    subject = _clean(body.subject)
    if not subject:
        raise InvalidInput("Subject is required")

    priority = SupportCasePriority.normal
    if body.priority in (SupportCasePriority.low.value, SupportCasePriority.high.value):
        priority = SupportCasePriority(body.priority)

    case = SupportCase(
        restaurant_id=auth.restaurant_id,
        subject=subject,
        description=_clean(body.description),
        customer_name=_clean(body.customer_name),
        customer_phone=_clean(body.customer_phone),
        priority=priority,
        created_by_user_id=auth.requester.id,
    )
    session.add(case)
    session.commit()
    session.refresh(case)
    return {"ok": True, "id": case.id}


@router.patch("/support-cases")
def update_support_case(
    auth: Annotated[AuthorizedRequest, Depends(support_access_checker)],
    body: SupportCaseUpdate | None = None,
    session: Session = Depends(get_session),
):
    body = body or SupportCaseUpdate()
    case_id = _clean(body.id)
    if not case_id:
        raise InvalidInput("Missing id")

    case = _get_case(session, case_id, auth.restaurant_id)
    now = utcnow()

    if body.status in {s.value for s in SupportCaseStatus}:
        case.status = SupportCaseStatus(body.status)
        if case.status == SupportCaseStatus.closed:
            case.closed_at = now
    if body.priority in {p.value for p in SupportCasePriority}:
        case.priority = SupportCasePriority(body.priority)

    # Subject is mandatory, so a blank one is ignored instead of cleared.
    if body.subject is not None and body.subject.strip():
        case.subject = body.subject.strip()
    for field in ("description", "customer_name", "customer_phone", "internal_notes", "resolution"):
        value = getattr(body, field)
        if value is not None:
            setattr(case, field, _clean(value))

    case.updated_at = now
    session.add(case)
    session.commit()
    return {"ok": True}


@router.delete("/support-cases")
def delete_support_case(
    auth: Annotated[AuthorizedRequest, Depends(support_access_checker)],
    body: SupportCaseDelete | None = None,
    session: Session = Depends(get_session),
):
    case_id = _clean(body.id if body else None)
    if not case_id:
        raise InvalidInput("Missing id")

    case = _get_case(session, case_id, auth.restaurant_id)
    session.delete(case)
    session.commit()
    return {"ok": True}

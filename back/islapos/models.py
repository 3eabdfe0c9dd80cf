from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    owner = "owner"
    manager = "manager"
    cashier = "cashier"
    kitchen = "kitchen"
    maintenance = "maintenance"
    driver = "driver"
    security = "security"
    # Missing or unrecognized metadata value; carries no elevated permission.
    unknown = "unknown"

    @classmethod
    def from_metadata(cls, app_metadata: dict[str, Any] | None) -> "Role":
        raw = (app_metadata or {}).get("role")
        if isinstance(raw, str) and raw != cls.unknown.value:
            try:
                return cls(raw)
            except ValueError:
                pass
        return cls.unknown

    @property
    def is_restricted(self) -> bool:
        return self in RESTRICTED_ROLES

    @property
    def is_staff(self) -> bool:
        """Staff are permanently bound to the restaurant in their metadata."""
        return self not in (Role.owner, Role.unknown)


RESTRICTED_ROLES = frozenset(
    {Role.cashier, Role.kitchen, Role.maintenance, Role.driver, Role.security}
)

# Roles an inviter may hand out; owner is never granted through invitation.
STAFF_ROLES = frozenset(
    {Role.manager, Role.cashier, Role.kitchen, Role.maintenance, Role.driver, Role.security}
)


class OrderStatus(str, Enum):
    open = "open"
    preparing = "preparing"
    ready = "ready"
    paid = "paid"


class OrderType(str, Enum):
    dine_in = "dine_in"
    takeout = "takeout"
    delivery = "delivery"


class FloorKind(str, Enum):
    table = "table"
    object = "object"
    area = "area"


class TimeClockAction(str, Enum):
    clock_in = "clock_in"
    break_out = "break_out"
    break_in = "break_in"
    clock_out = "clock_out"


class SupportCaseStatus(str, Enum):
    open = "open"
    in_progress = "in_progress"
    closed = "closed"


class SupportCasePriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"


# ============ TENANCY ============

class Restaurant(SQLModel, table=True):
    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    owner_user_id: str = Field(index=True)
    email: str | None = None
    phone: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AppConfig(SQLModel, table=True):
    """Active-restaurant pointer; one row per user."""

    __tablename__ = "app_config"

    id: int | None = Field(default=None, primary_key=True)
    owner_user_id: str = Field(unique=True, index=True)
    restaurant_id: str | None = Field(default=None, foreign_key="restaurant.id")
    setup_complete: bool = Field(default=False)


class RestaurantMixin(SQLModel):
    restaurant_id: str = Field(foreign_key="restaurant.id", index=True)


# ============ FLOOR PLAN ============

class FloorArea(RestaurantMixin, table=True):
    __tablename__ = "floor_areas"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    sort_order: int = Field(default=0)


class FloorTable(RestaurantMixin, table=True):
    __tablename__ = "floor_tables"

    id: str = Field(default_factory=_uuid, primary_key=True)
    area_id: str | None = Field(default=None, foreign_key="floor_areas.id")
    label: str
    seats: int = Field(default=4)
    shape: str = Field(default="rect")  # rect, round
    x: float = Field(default=0)
    y: float = Field(default=0)
    width: float = Field(default=80)
    height: float = Field(default=80)


class FloorObject(RestaurantMixin, table=True):
    __tablename__ = "floor_objects"

    id: str = Field(default_factory=_uuid, primary_key=True)
    area_id: str | None = Field(default=None, foreign_key="floor_areas.id")
    kind: str  # wall, bar, plant, door, ...
    x: float = Field(default=0)
    y: float = Field(default=0)
    width: float = Field(default=40)
    height: float = Field(default=40)


# ============ ORDERS ============

class Order(RestaurantMixin, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=_uuid, primary_key=True)
    ticket_no: int | None = None
    status: OrderStatus = Field(default=OrderStatus.open, index=True)
    subtotal: float = Field(default=0)
    tax: float = Field(default=0)
    discount_amount: float | None = None
    total: float = Field(default=0)
    payment_method: str | None = None  # cash, card, bank_transfer, ...
    order_type: OrderType | None = None
    customer_name: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    # Delivery dispatch; status text is whatever the provider reports.
    delivery_status: str | None = None
    delivery_provider: str | None = None
    delivery_provider_delivery_id: str | None = None
    delivery_tracking_url: str | None = None
    delivery_dispatched_at: datetime | None = None


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"

    id: str = Field(default_factory=_uuid, primary_key=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    name: str
    qty: int = Field(default=1)
    price: float = Field(default=0)


class DeliveryIntegration(RestaurantMixin, table=True):
    __tablename__ = "delivery_integrations"

    id: str = Field(default_factory=_uuid, primary_key=True)
    provider: str  # e.g. "uber", "doordash"
    enabled: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


# ============ CUSTOMERS ============

class Customer(RestaurantMixin, table=True):
    __tablename__ = "customers"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    email: str = Field(index=True)  # stored lowercased; unique per restaurant by upsert
    phone: str
    birthday: str | None = None
    notes: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============ STAFF ============

class TimeClockEntry(RestaurantMixin, table=True):
    __tablename__ = "time_clock_entries"

    id: str = Field(default_factory=_uuid, primary_key=True)
    staff_user_id: str | None = None
    staff_pin: str | None = None
    staff_label: str | None = None
    action: TimeClockAction
    at: datetime
    recorded_by_user_id: str
    created_at: datetime = Field(default_factory=utcnow)


class PayrollShift(RestaurantMixin, table=True):
    """A scheduled shift; compared against time clock punches in the payroll report."""

    __tablename__ = "payroll_schedule_shifts"

    id: str = Field(default_factory=_uuid, primary_key=True)
    staff_user_id: str = Field(index=True)
    staff_pin: str | None = None
    staff_label: str | None = None
    starts_at: datetime = Field(index=True)
    ends_at: datetime
    break_minutes: int = Field(default=0)
    created_by_user_id: str
    created_at: datetime = Field(default_factory=utcnow)


class SupportCase(RestaurantMixin, table=True):
    __tablename__ = "support_cases"

    id: str = Field(default_factory=_uuid, primary_key=True)
    status: SupportCaseStatus = Field(default=SupportCaseStatus.open)
    priority: SupportCasePriority = Field(default=SupportCasePriority.normal)
    customer_name: str | None = None
    customer_phone: str | None = None
    subject: str
    description: str | None = None
    internal_notes: str | None = None
    resolution: str | None = None
    created_by_user_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    closed_at: datetime | None = None


# ============ KITCHEN DISPLAY ============

class KdsToken(RestaurantMixin, table=True):
    __tablename__ = "kds_tokens"

    id: str = Field(default_factory=_uuid, primary_key=True)
    token: str = Field(unique=True, index=True)
    name: str = Field(default="Kitchen Display")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


# ============ EDGE GATEWAY ============

class EdgeGateway(RestaurantMixin, table=True):
    __tablename__ = "edge_gateways"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str | None = None
    secret_hash: str
    last_seen_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class EdgeGatewayPairCode(RestaurantMixin, table=True):
    __tablename__ = "edge_gateway_pair_codes"

    code: str = Field(primary_key=True)
    created_by_user_id: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)


class EdgeEvent(RestaurantMixin, table=True):
    __tablename__ = "edge_events"

    # Producer-assigned id; the primary key is what makes ingestion idempotent.
    id: str = Field(primary_key=True)
    gateway_id: str = Field(foreign_key="edge_gateways.id", index=True)
    device_id: str | None = None
    type: str
    payload_json: Any = Field(default=None, sa_column=Column(JSON))
    created_at: datetime
    received_at: datetime = Field(default_factory=utcnow)


# Request Models
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FloorDeleteRequest(CamelModel):
    kind: FloorKind | None = None
    id: str | None = None


class FullWipeRequest(CamelModel):
    confirm: str | None = None


class InviteUserRequest(CamelModel):
    email: str | None = None
    role: str | None = None


class OrdersDeleteRequest(CamelModel):
    order_ids: list[str] | None = None


class ChatMessage(CamelModel):
    role: str | None = None
    content: str | None = None


class ChatContext(CamelModel):
    gateway_url: str | None = None
    restaurant_id: str | None = None


class AgentChatRequest(CamelModel):
    message: str | None = None
    history: list[ChatMessage] | None = None
    context: ChatContext | None = None


class DispatchRequest(CamelModel):
    order_id: str | None = None
    provider: str | None = None


class DeliveryWebhookRequest(BaseModel):
    order_id: str | None = PydanticField(default=None, alias="orderId")
    provider_delivery_id: str | None = None
    status: str | None = None
    tracking_url: str | None = None


class PairStartRequest(CamelModel):
    name: str | None = None


class PairCompleteRequest(CamelModel):
    code: str | None = None
    name: str | None = None


class EdgeEventIn(CamelModel):
    id: str | None = None
    device_id: str | None = None
    type: str | None = None
    payload: Any = None
    created_at: str | None = None


class PushEventsRequest(CamelModel):
    events: list[EdgeEventIn] | None = None


class KdsUpdateRequest(CamelModel):
    order_id: str | None = None
    action: str | None = None


class TimeClockRequest(CamelModel):
    restaurant_id: str | None = None
    staff_user_id: str | None = None
    staff_pin: str | None = None
    staff_label: str | None = None
    action: str | None = None
    at: str | None = None


class StaffUpdateRequest(CamelModel):
    user_id: str | None = None
    role: str | None = None
    name: str | None = None
    pin: str | None = None


class StaffRemoveRequest(CamelModel):
    user_id: str | None = None


class SupportCaseCreate(CamelModel):
    subject: str | None = None
    description: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    priority: str | None = None


class SupportCaseUpdate(CamelModel):
    id: str | None = None
    status: str | None = None
    priority: str | None = None
    subject: str | None = None
    description: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    internal_notes: str | None = None
    resolution: str | None = None


class SupportCaseDelete(CamelModel):
    id: str | None = None


class CustomerCreate(CamelModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    birthday: str | None = None
    notes: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None


class CustomerUpdate(CustomerCreate):
    id: str | None = None


class IdRequest(CamelModel):
    id: str | None = None


class ShiftCreate(CamelModel):
    staff_user_id: str | None = None
    staff_pin: str | None = None
    staff_label: str | None = None
    starts_at: str | None = None
    ends_at: str | None = None
    break_minutes: Any = None


class ScheduleEmailRequest(CamelModel):
    staff_user_id: str | None = None
    start: str | None = None
    end: str | None = None


class SendReceiptRequest(CamelModel):
    order_id: str | None = None
    email: str | None = None

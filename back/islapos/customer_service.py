import logging

from sqlalchemy import or_
from sqlmodel import Session, select

from .errors import InvalidInput, NotFound
from .models import Customer, CustomerCreate, utcnow

logger = logging.getLogger(__name__)

ADMIN_LIST_LIMIT = 300
POS_LIST_LIMIT = 50

OPTIONAL_FIELDS = (
    "birthday", "notes", "address_line1", "address_line2", "city", "state", "postal_code",
)


def _clean(value: str | None) -> str:
    return value.strip() if isinstance(value, str) else ""


def search_customers(session: Session, restaurant_id: str, query: str | None, limit: int) -> list[Customer]:
    """Newest first; `query` matches name, email or phone case-insensitively."""
    statement = select(Customer).where(Customer.restaurant_id == restaurant_id)
    term = _clean(query)
    if term:
        pattern = f"%{term}%"
        statement = statement.where(
            or_(Customer.name.ilike(pattern), Customer.email.ilike(pattern), Customer.phone.ilike(pattern))
        )
    return list(session.exec(statement.order_by(Customer.created_at.desc()).limit(limit)).all())


def required_contact(body: CustomerCreate) -> tuple[str, str, str]:
    name = _clean(body.name)
    email = _clean(body.email).lower()
    phone = _clean(body.phone)
    if not name:
        raise InvalidInput("Name is required")
    if not email:
        raise InvalidInput("Email is required")
    if not phone:
        raise InvalidInput("Phone is required")
    return name, email, phone


def create_customer(session: Session, restaurant_id: str, body: CustomerCreate) -> Customer:
    name, email, phone = required_contact(body)
    customer = Customer(restaurant_id=restaurant_id, name=name, email=email, phone=phone)
    for field in OPTIONAL_FIELDS:
        setattr(customer, field, _clean(getattr(body, field)) or None)
    session.add(customer)
    session.commit()
    session.refresh(customer)
    return customer


def update_customer(session: Session, restaurant_id: str, customer_id: str, body: CustomerCreate) -> Customer:
    """Only the fields present in the body change. Name, email and phone cannot be blanked."""
    customer = session.exec(
        select(Customer).where(Customer.id == customer_id, Customer.restaurant_id == restaurant_id)
    ).first()
    if customer is None:
        raise NotFound("Customer not found")

    for field in ("name", "email", "phone"):
        if field in body.model_fields_set:
            value = _clean(getattr(body, field))
            if not value:
                raise InvalidInput(f"{field.capitalize()} is required")
            setattr(customer, field, value.lower() if field == "email" else value)
    for field in OPTIONAL_FIELDS:
        if field in body.model_fields_set:
            setattr(customer, field, _clean(getattr(body, field)) or None)

    customer.updated_at = utcnow()
    session.add(customer)
    session.commit()
    return customer


def delete_customer(session: Session, restaurant_id: str, customer_id: str) -> None:
    customer = session.exec(
        select(Customer).where(Customer.id == customer_id, Customer.restaurant_id == restaurant_id)
    ).first()
    if customer is None:
        raise NotFound("Customer not found")
    session.delete(customer)
    session.commit()


def upsert_customer(session: Session, restaurant_id: str, body: CustomerCreate) -> Customer:
    """Point-of-sale capture: one customer per email within a restaurant."""
    name, email, phone = required_contact(body)
    customer = session.exec(
        select(Customer).where(Customer.restaurant_id == restaurant_id, Customer.email == email)
    ).first()
    if customer is None:
        customer = Customer(restaurant_id=restaurant_id, name=name, email=email, phone=phone)
    else:
        customer.name = name
        customer.phone = phone
        customer.updated_at = utcnow()
    session.add(customer)
    session.commit()
    session.refresh(customer)
    return customer


def summary(customer: Customer) -> dict:
    return {"id": customer.id, "name": customer.name, "email": customer.email, "phone": customer.phone}

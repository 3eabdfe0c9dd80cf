import copy
from typing import Any
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from islapos import models
from islapos.agent_routes import ChatCompletionClient, get_chat_client
from islapos.db import get_session
from islapos.email_service import get_mailer
from islapos.identity import AuthUser, IdentityError, get_identity_provider
from islapos.main import app
from islapos.settings import settings

OPERATOR_EMAIL = "ops@islapos.test"


class FakeIdentityProvider:
    """In-memory identity provider; tokens are `token-<user id>`."""

    def __init__(self):
        self.users: dict[str, AuthUser] = {}
        self.deleted: list[str] = []
        self.invited: list[str] = []
        self.fail_delete: set[str] = set()
        self.fail_update: set[str] = set()
        self.fail_lookup: set[str] = set()
        self.fail_list = False

    def add_user(self, email: str | None = None, **app_metadata: Any) -> AuthUser:
        user_id = str(uuid4())
        email = email or f"{user_id[:8]}@example.com"
        meta = {k: v for k, v in app_metadata.items() if v is not None}
        self.users[user_id] = AuthUser(id=user_id, email=email, app_metadata=meta)
        return self.users[user_id]

    def _copy(self, user: AuthUser) -> AuthUser:
        return AuthUser(id=user.id, email=user.email, app_metadata=copy.deepcopy(user.app_metadata))

    def get_user(self, access_token: str) -> AuthUser:
        user_id = access_token.removeprefix("token-")
        if not access_token.startswith("token-") or user_id not in self.users:
            raise IdentityError("invalid JWT: unable to parse or verify signature")
        return self._copy(self.users[user_id])

    def get_user_by_id(self, user_id: str) -> AuthUser:
        if user_id in self.fail_lookup:
            raise IdentityError("lookup unavailable")
        if user_id not in self.users:
            raise IdentityError("User not found")
        return self._copy(self.users[user_id])

    def list_users(self, page: int, per_page: int) -> list[AuthUser]:
        if self.fail_list:
            raise IdentityError("list unavailable")
        users = list(self.users.values())
        start = (page - 1) * per_page
        return [self._copy(u) for u in users[start:start + per_page]]

    def invite_user_by_email(self, email: str, redirect_to: str | None = None) -> AuthUser | None:
        if any(u.email == email for u in self.users.values()):
            raise IdentityError("A user with this email address has already been registered")
        user = self.add_user(email)
        self.invited.append(user.id)
        return self._copy(user)

    def update_app_metadata(self, user_id: str, app_metadata: dict[str, Any]) -> AuthUser:
        if user_id in self.fail_update:
            raise IdentityError("metadata update failed")
        if user_id not in self.users:
            raise IdentityError("User not found")
        self.users[user_id].app_metadata = copy.deepcopy(app_metadata)
        return self._copy(self.users[user_id])

    def delete_user(self, user_id: str) -> None:
        if user_id in self.fail_delete:
            raise IdentityError("delete failed")
        self.users.pop(user_id, None)
        self.deleted.append(user_id)


def auth(user: AuthUser) -> dict[str, str]:
    return {"Authorization": f"Bearer token-{user.id}"}


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "owner_email", OPERATOR_EMAIL)
    monkeypatch.setattr(settings, "redis_url", None)
    monkeypatch.setattr(settings, "delivery_webhook_secret", None)
    monkeypatch.setattr(settings, "app_base_url", "")
    monkeypatch.setattr(settings, "smtp_host", "")
    monkeypatch.setattr(settings, "smtp_user", "")
    monkeypatch.setattr(settings, "smtp_password", "")
    monkeypatch.setattr(settings, "email_from", "")
    return settings


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def chat_requests():
    return []


@pytest.fixture
def chat_handler(chat_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        chat_requests.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": " Restart the printer. "}}]})

    return handler


@pytest.fixture
def chat_client(chat_handler):
    return ChatCompletionClient(
        base_url="https://ai.test/v1",
        api_key="sk-test",
        model="gpt-4o-mini",
        transport=httpx.MockTransport(chat_handler),
    )


@pytest.fixture
def outbox():
    """Emails handed to the mailer, as dicts of its keyword arguments."""
    return []


@pytest.fixture
def mailer(outbox):
    async def send(to_email, subject, html_content, text_content=None):
        outbox.append({"to": to_email, "subject": subject, "html": html_content, "text": text_content})
        return True

    return send


@pytest.fixture
def client(session, identity, chat_client, mailer):
    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_chat_client] = lambda: chat_client
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_restaurant(session: Session, owner: AuthUser, name: str = "Casa Isla", active: bool = True) -> models.Restaurant:
    restaurant = models.Restaurant(name=name, owner_user_id=owner.id)
    session.add(restaurant)
    session.commit()
    session.refresh(restaurant)
    if active:
        set_active_restaurant(session, owner.id, restaurant.id)
    return restaurant


def set_active_restaurant(session: Session, user_id: str, restaurant_id: str | None) -> None:
    from sqlmodel import select

    config = session.exec(select(models.AppConfig).where(models.AppConfig.owner_user_id == user_id)).first()
    if config is None:
        config = models.AppConfig(owner_user_id=user_id)
    config.restaurant_id = restaurant_id
    config.setup_complete = restaurant_id is not None
    session.add(config)
    session.commit()


@pytest.fixture
def owner(identity):
    return identity.add_user("owner@casa.test", role="owner")


@pytest.fixture
def restaurant(session, owner):
    return create_restaurant(session, owner)


@pytest.fixture
def manager(session, identity, restaurant):
    return add_staff(session, identity, "manager", restaurant.id, "manager@casa.test")


@pytest.fixture
def cashier(session, identity, restaurant):
    return add_staff(session, identity, "cashier", restaurant.id, "cashier@casa.test")


@pytest.fixture
def other_owner(identity):
    return identity.add_user("owner@other.test", role="owner")


@pytest.fixture
def other_restaurant(session, other_owner):
    return create_restaurant(session, other_owner, name="Other Place")


def add_order(session: Session, restaurant_id: str, status=models.OrderStatus.open, items=(), **fields) -> models.Order:
    order = models.Order(restaurant_id=restaurant_id, status=status, **fields)
    session.add(order)
    session.commit()
    session.refresh(order)
    for name, qty in items:
        session.add(models.OrderItem(order_id=order.id, name=name, qty=qty))
    session.commit()
    return order


def add_staff(session: Session, identity: FakeIdentityProvider, role: str, restaurant_id: str, email: str | None = None) -> AuthUser:
    """A staff account as left behind by a completed invitation."""
    user = identity.add_user(email, role=role, restaurant_id=restaurant_id)
    set_active_restaurant(session, user.id, restaurant_id)
    return user

"""
Identity provider access.

Every route resolves its caller through an `IdentityProvider`. The production
implementation talks to Supabase Auth with the service-role key; tests inject
an in-memory provider through FastAPI dependency overrides.
"""

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterator, Protocol

from supabase import Client, create_client

from .models import Role
from .settings import settings

logger = logging.getLogger(__name__)

LIST_USERS_PAGE_SIZE = 1000


class IdentityError(Exception):
    """Raised when the identity provider rejects or fails a call."""


@dataclass
class AuthUser:
    id: str
    email: str | None = None
    app_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> Role:
        return Role.from_metadata(self.app_metadata)

    @property
    def assigned_restaurant_id(self) -> str | None:
        value = self.app_metadata.get("restaurant_id")
        if isinstance(value, str) and value:
            return value
        return None


class IdentityProvider(Protocol):
    def get_user(self, access_token: str) -> AuthUser: ...

    def get_user_by_id(self, user_id: str) -> AuthUser: ...

    def list_users(self, page: int, per_page: int) -> list[AuthUser]: ...

    def invite_user_by_email(self, email: str, redirect_to: str | None = None) -> AuthUser | None: ...

    def update_app_metadata(self, user_id: str, app_metadata: dict[str, Any]) -> AuthUser: ...

    def delete_user(self, user_id: str) -> None: ...


def iter_all_users(identity: IdentityProvider, per_page: int = LIST_USERS_PAGE_SIZE) -> Iterator[AuthUser]:
    """Walk every page of the provider's user list."""
    page = 1
    while True:
        users = identity.list_users(page=page, per_page=per_page)
        yield from users
        if len(users) < per_page:
            return
        page += 1


def users_bound_to(identity: IdentityProvider, restaurant_id: str) -> list[AuthUser]:
    return [u for u in iter_all_users(identity) if u.assigned_restaurant_id == restaurant_id]


def _to_auth_user(user: Any) -> AuthUser:
    return AuthUser(
        id=str(user.id),
        email=getattr(user, "email", None),
        app_metadata=dict(getattr(user, "app_metadata", None) or {}),
    )


class SupabaseIdentityProvider:
    """Supabase Auth admin API behind the `IdentityProvider` interface."""

    def __init__(self, client: Client):
        self._client = client

    def get_user(self, access_token: str) -> AuthUser:
        try:
            response = self._client.auth.get_user(access_token)
        except Exception as exc:
            raise IdentityError(str(exc) or "Unauthorized") from exc
        if response is None or response.user is None:
            raise IdentityError("Unauthorized")
        return _to_auth_user(response.user)

    def get_user_by_id(self, user_id: str) -> AuthUser:
        try:
            response = self._client.auth.admin.get_user_by_id(user_id)
        except Exception as exc:
            raise IdentityError(str(exc) or "User lookup failed") from exc
        if response is None or response.user is None:
            raise IdentityError("User not found")
        return _to_auth_user(response.user)

    def list_users(self, page: int, per_page: int) -> list[AuthUser]:
        try:
            users = self._client.auth.admin.list_users(page=page, per_page=per_page)
        except Exception as exc:
            raise IdentityError(str(exc) or "Failed to list users") from exc
        return [_to_auth_user(u) for u in users or []]

    def invite_user_by_email(self, email: str, redirect_to: str | None = None) -> AuthUser | None:
        options = {"redirect_to": redirect_to} if redirect_to else {}
        try:
            response = self._client.auth.admin.invite_user_by_email(email, options)
        except Exception as exc:
            raise IdentityError(str(exc) or "Invite failed") from exc
        if response is None or response.user is None:
            return None
        return _to_auth_user(response.user)

    def update_app_metadata(self, user_id: str, app_metadata: dict[str, Any]) -> AuthUser:
        try:
            response = self._client.auth.admin.update_user_by_id(
                user_id, {"app_metadata": app_metadata}
            )
        except Exception as exc:
            raise IdentityError(str(exc) or "Metadata update failed") from exc
        return _to_auth_user(response.user)

    def delete_user(self, user_id: str) -> None:
        try:
            self._client.auth.admin.delete_user(user_id)
        except Exception as exc:
            raise IdentityError(str(exc) or "Delete failed") from exc


@lru_cache
def get_identity_provider() -> IdentityProvider:
    """Process-wide provider, built on first request."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("Missing Supabase env vars: SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY")
    logger.info("Initializing Supabase identity provider")
    return SupabaseIdentityProvider(create_client(settings.supabase_url, settings.supabase_service_role_key))

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Annotated

import bcrypt
from fastapi import Depends, Request
from fastapi.security.utils import get_authorization_scheme_param

from .errors import ConfigurationError, Unauthorized
from .identity import AuthUser, IdentityError, IdentityProvider, get_identity_provider
from .models import Role
from .settings import settings

logger = logging.getLogger(__name__)


@dataclass
class Requester:
    """The verified caller of a user-authenticated request."""

    user: AuthUser
    role: Role

    @property
    def id(self) -> str:
        return self.user.id

    @property
    def email(self) -> str | None:
        return self.user.email


def get_bearer_token(request: Request) -> str:
    scheme, token = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Missing Authorization token")
    return token


def get_requester(
    token: Annotated[str, Depends(get_bearer_token)],
    identity: Annotated[IdentityProvider, Depends(get_identity_provider)],
) -> Requester:
    try:
        user = identity.get_user(token)
    except IdentityError as exc:
        raise Unauthorized(str(exc) or "Unauthorized")
    # Role is validated here and never re-read from the raw metadata bag.
    return Requester(user=user, role=user.role)


def require_owner_email() -> str:
    owner_email = settings.owner_email.strip()
    if not owner_email:
        raise ConfigurationError("Missing OWNER_EMAIL env var")
    return owner_email


def is_system_owner(requester: Requester, owner_email: str) -> bool:
    email = (requester.email or "").strip().lower()
    return bool(email) and email == owner_email.lower()


# ============ DEVICE SECRETS ============

def generate_secret() -> str:
    return secrets.token_urlsafe(32)


def _prehash(secret: str) -> bytes:
    # bcrypt only reads 72 bytes; digest first so the whole secret counts.
    return hashlib.sha256(secret.encode("utf-8")).hexdigest().encode("ascii")


def hash_secret(secret: str) -> str:
    return bcrypt.hashpw(_prehash(secret), bcrypt.gensalt()).decode("utf-8")


def verify_secret(secret: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(secret), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def verify_shared_secret(provided: str, expected: str) -> bool:
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

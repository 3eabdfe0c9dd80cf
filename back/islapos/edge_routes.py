from typing import Annotated

from fastapi import APIRouter, Depends, Header
from sqlmodel import Session

from . import edge_service
from .db import get_session
from .errors import InvalidInput
from .models import EdgeGateway, PairCompleteRequest, PairStartRequest, PushEventsRequest, as_utc
from .permissions import AdminAction, AuthorizedRequest, PermissionChecker

router = APIRouter(prefix="/edge")


@router.post("/pair/start")
def start_pairing(
    auth: Annotated[AuthorizedRequest, Depends(PermissionChecker(AdminAction.EDGE_PAIR, by_role=True))],
    body: PairStartRequest | None = None,
    session: Session = Depends(get_session),
):
    """Issue a one-hour pairing code for the caller's restaurant."""
    name = (body.name if body and body.name else "").strip()
    row = edge_service.create_pair_code(session, auth.restaurant_id, auth.requester.id)
    return {
        "code": row.code,
        "restaurantId": auth.restaurant_id,
        "name": name or None,
        "expiresAt": as_utc(row.expires_at).isoformat(),
    }


@router.post("/pair/complete")
def complete_pairing(body: PairCompleteRequest | None = None, session: Session = Depends(get_session)):
    """Redeem a pairing code. The returned secret is never shown again."""
    body = body or PairCompleteRequest()
    code = (body.code or "").strip().upper()
    if not code:
        raise InvalidInput("Missing code")
    name = (body.name or "").strip()
    return edge_service.redeem_pair_code(session, code, name or None).to_payload()


def get_gateway(
    x_gateway_id: Annotated[str | None, Header()] = None,
    x_gateway_secret: Annotated[str | None, Header()] = None,
    session: Session = Depends(get_session),
) -> EdgeGateway:
    return edge_service.authenticate_gateway(session, x_gateway_id, x_gateway_secret)


@router.post("/push-events")
def push_events(
    gateway: Annotated[EdgeGateway, Depends(get_gateway)],
    body: PushEventsRequest | None = None,
    session: Session = Depends(get_session),
):
    events = body.events if body and body.events else []
    return edge_service.ingest_events(session, gateway, events).to_payload()

"""
Edge gateway pairing and event ingestion.

A gateway is paired by redeeming a one-time code for a secret that is only
ever returned once; afterwards it authenticates with its id and that secret.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import InvalidInput, Unauthorized, UpstreamError
from .models import EdgeEvent, EdgeEventIn, EdgeGateway, EdgeGatewayPairCode, as_utc, utcnow
from .security import generate_secret, hash_secret, verify_secret

logger = logging.getLogger(__name__)

# No 0/O or 1/I, so codes survive being read aloud or retyped.
PAIR_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIR_CODE_LENGTH = 8
PAIR_CODE_TTL = timedelta(hours=1)
PAIR_CODE_ATTEMPTS = 5

INVALID_PAIR_CODE = "Invalid or expired pairing code"


def generate_pair_code() -> str:
    return "".join(secrets.choice(PAIR_CODE_ALPHABET) for _ in range(PAIR_CODE_LENGTH))


def create_pair_code(session: Session, restaurant_id: str, user_id: str) -> EdgeGatewayPairCode:
    expires_at = utcnow() + PAIR_CODE_TTL
    for _ in range(PAIR_CODE_ATTEMPTS):
        row = EdgeGatewayPairCode(
            code=generate_pair_code(),
            restaurant_id=restaurant_id,
            created_by_user_id=user_id,
            expires_at=expires_at,
        )
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("Pairing code collision, retrying")
            continue
        session.refresh(row)
        return row
    raise UpstreamError("Failed to create pairing code")


@dataclass
class PairedGateway:
    gateway_id: str
    restaurant_id: str
    secret: str

    def to_payload(self) -> dict:
        return {"gatewayId": self.gateway_id, "restaurantId": self.restaurant_id, "secret": self.secret}


def redeem_pair_code(session: Session, code: str, name: str | None = None) -> PairedGateway:
    row = session.get(EdgeGatewayPairCode, code)
    if row is None:
        raise Unauthorized(INVALID_PAIR_CODE)

    restaurant_id = row.restaurant_id
    now = utcnow()
    if as_utc(row.expires_at) < now:
        session.execute(delete(EdgeGatewayPairCode).where(EdgeGatewayPairCode.code == code))
        session.commit()
        logger.info("Discarded expired pairing code for restaurant %s", restaurant_id)
        raise Unauthorized(INVALID_PAIR_CODE)

    # Only the request whose delete removed the row may mint a secret.
    result = session.execute(delete(EdgeGatewayPairCode).where(EdgeGatewayPairCode.code == code))
    if result.rowcount != 1:
        session.rollback()
        raise Unauthorized(INVALID_PAIR_CODE)

    secret = generate_secret()
    gateway = EdgeGateway(
        restaurant_id=restaurant_id,
        name=name or None,
        secret_hash=hash_secret(secret),
        last_seen_at=now,
    )
    session.add(gateway)
    session.commit()
    session.refresh(gateway)
    logger.info("Paired edge gateway %s with restaurant %s", gateway.id, restaurant_id)
    return PairedGateway(gateway_id=gateway.id, restaurant_id=restaurant_id, secret=secret)


def authenticate_gateway(session: Session, gateway_id: str | None, secret: str | None) -> EdgeGateway:
    gateway_id = (gateway_id or "").strip()
    secret = (secret or "").strip()
    if not gateway_id or not secret:
        raise Unauthorized("Missing gateway credentials")

    gateway = session.get(EdgeGateway, gateway_id)
    if gateway is None or not verify_secret(secret, gateway.secret_hash):
        logger.info("Rejected credentials for edge gateway %s", gateway_id)
        raise Unauthorized()

    session.execute(
        update(EdgeGateway).where(EdgeGateway.id == gateway.id).values(last_seen_at=utcnow())
    )
    session.commit()
    return gateway


def _parse_created_at(raw: str | None, default: datetime) -> datetime:
    raw = (raw or "").strip()
    if not raw:
        return default
    try:
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return default


def normalize_events(gateway: EdgeGateway, events: list[EdgeEventIn]) -> list[EdgeEvent]:
    received_at = utcnow()
    rows = []
    for event in events:
        event_id = (event.id or "").strip()
        event_type = (event.type or "").strip()
        if not event_id or not event_type:
            continue
        device_id = event.device_id.strip() if event.device_id else None
        rows.append(
            EdgeEvent(
                id=event_id,
                restaurant_id=gateway.restaurant_id,
                gateway_id=gateway.id,
                device_id=device_id or None,
                type=event_type,
                payload_json=event.payload if event.payload is not None else {},
                created_at=_parse_created_at(event.created_at, received_at),
                received_at=received_at,
            )
        )
    return rows


@dataclass
class IngestResult:
    accepted: int
    duplicate: int
    ids: list[str]

    def to_payload(self) -> dict:
        return {"ok": True, "accepted": self.accepted, "duplicate": self.duplicate, "ids": self.ids}


def ingest_events(session: Session, gateway: EdgeGateway, events: list[EdgeEventIn]) -> IngestResult:
    if not events:
        return IngestResult(accepted=0, duplicate=0, ids=[])

    rows = normalize_events(gateway, events)
    if not rows:
        raise InvalidInput("No valid events")

    ids = [row.id for row in rows]
    seen = set(session.exec(select(EdgeEvent.id).where(EdgeEvent.id.in_(ids))).all())

    to_insert = []
    for row in rows:
        # Repeats inside one batch count like repeats across batches.
        if row.id in seen:
            continue
        seen.add(row.id)
        to_insert.append(row)

    if to_insert:
        session.add_all(to_insert)
        session.commit()

    logger.info(
        "Gateway %s pushed %d events (%d new)", gateway.id, len(rows), len(to_insert)
    )
    return IngestResult(accepted=len(to_insert), duplicate=len(rows) - len(to_insert), ids=ids)

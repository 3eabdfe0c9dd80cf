"""
Edge Gateway

Runs on the restaurant LAN. Pairs with the cloud using a one-time code,
queues device events in a local outbox and pushes them to the cloud in
batches. Events stay queued until the cloud acknowledges them by id.

Also drives LAN receipt and kitchen printers through a persistent print
queue that a background worker drains.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, AsyncIterator
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from .printing import (
    DEFAULT_PRINTER_PORT,
    PrintError,
    PrintWorker,
    Sender,
    build_test_ticket,
    find_printer,
    normalize_print_routes,
    normalize_printers,
    scan_lan_for_port,
    send_raw_tcp,
)
from .store import GatewayStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
EDGE_GATEWAY_PORT = int(os.getenv("EDGE_GATEWAY_PORT", "9123"))
PRINT_WORKER_TICK_MS = max(500, min(5000, int(os.getenv("PRINT_WORKER_TICK_MS", "1500"))))
PUSH_BATCH_SIZE = 500

# One push at a time, so a batch is never read while another is in flight.
push_lock = asyncio.Lock()
print_worker = PrintWorker()


def get_store() -> GatewayStore:
    return GatewayStore(os.getenv("EDGE_DATA_DIR", "./data"))


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(timeout=15.0) as client:
        yield client


def get_printer_sender() -> Sender:
    return send_raw_tcp


def get_lan_scanner():
    return scan_lan_for_port


def resolve_cloud_base_url(store: GatewayStore) -> str:
    from_env = os.getenv("CLOUD_BASE_URL", "").strip()
    if from_env:
        return from_env
    value = store.read_config().get("cloudBaseUrl")
    return value.strip() if isinstance(value, str) else ""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_created_at(raw: Any) -> str:
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            return now_iso()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.isoformat()
    return now_iso()


def error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _read_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _cloud_error(data: Any, fallback: str) -> str:
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return fallback


def _clamp(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def acknowledged_ids(data: Any, batch: list[dict[str, Any]]) -> set[str]:
    """Ids of the batch the cloud confirmed, either as accepted or as duplicates.

    Without an `ids` list the batch only counts as acknowledged when the
    counts cover all of it.
    """
    batch_ids = {e["id"] for e in batch if isinstance(e.get("id"), str)}
    if not isinstance(data, dict):
        return set()
    if isinstance(data.get("ids"), list):
        return batch_ids & {i for i in data["ids"] if isinstance(i, str)}
    total = int(data.get("accepted") or 0) + int(data.get("duplicate") or 0)
    return batch_ids if total >= len(batch) else set()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CloudConfigRequest(CamelModel):
    cloud_base_url: str | None = None


class ClaimRequest(CamelModel):
    code: str | None = None
    name: str | None = None


class EventsRequest(CamelModel):
    events: list[Any] | None = None


class PrinterRequest(CamelModel):
    name: Any = None
    ip: Any = None
    port: Any = None


class PrintRoutesRequest(CamelModel):
    receipt_printer_id: Any = None
    kitchen_printer_id: Any = None


class EnqueueRequest(CamelModel):
    kind: Any = None
    protocol: Any = None
    printer_id: Any = None
    raw_base64: Any = None
    template: Any = None
    max_attempts: Any = None


class PrinterTestRequest(CamelModel):
    printer_id: Any = None


async def print_worker_loop():
    """Drain the print queue in the background."""
    store = get_store()
    while True:
        await asyncio.sleep(PRINT_WORKER_TICK_MS / 1000)
        try:
            await print_worker.tick(store, send_raw_tcp)
        except Exception as e:
            logger.error(f"Print worker tick failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Start the print worker on startup
    task = asyncio.create_task(print_worker_loop())
    yield
    task.cancel()


app = FastAPI(title="IslaPOS Edge Gateway", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

StoreDep = Annotated[GatewayStore, Depends(get_store)]
ClientDep = Annotated[httpx.AsyncClient, Depends(get_http_client)]
SenderDep = Annotated[Sender, Depends(get_printer_sender)]


# ============ STATUS & CONFIG ============

@app.get("/health")
def health(store: StoreDep):
    config = store.read_config()
    return {
        "ok": True,
        "bound": bool(config.get("gatewayId") and config.get("secret") and config.get("restaurantId")),
        "gatewayId": config.get("gatewayId"),
        "restaurantId": config.get("restaurantId"),
        "cloudBaseUrl": resolve_cloud_base_url(store) or None,
        "pending": store.pending_count(),
        "time": now_iso(),
    }


@app.post("/config/cloud")
def set_cloud_url(store: StoreDep, body: CloudConfigRequest | None = None):
    cloud_base_url = (body.cloud_base_url if body and body.cloud_base_url else "").strip()
    if not cloud_base_url:
        return error(400, "Missing cloudBaseUrl")
    store.update_config(cloudBaseUrl=cloud_base_url)
    return {"ok": True, "cloudBaseUrl": cloud_base_url}


@app.post("/config/reset")
def reset_config(store: StoreDep):
    store.write_config({})
    logger.info("Gateway configuration reset")
    return {"ok": True}


# ============ PAIRING ============

@app.post("/pair/claim")
async def claim_pairing(store: StoreDep, client: ClientDep, body: ClaimRequest | None = None):
    """Redeem a pairing code with the cloud and persist the returned credentials."""
    cloud_base_url = await run_in_threadpool(resolve_cloud_base_url, store)
    if not cloud_base_url:
        return error(400, "Missing CLOUD_BASE_URL")

    code = (body.code if body and body.code else "").strip()
    name = (body.name if body and body.name else "").strip()
    if not code:
        return error(400, "Missing code")

    try:
        response = await client.post(
            f"{cloud_base_url.rstrip('/')}/edge/pair/complete",
            json={"code": code, "name": name},
        )
    except httpx.HTTPError as e:
        logger.error(f"Pairing request failed: {e}")
        return error(500, str(e) or "Pairing failed")

    data = _read_json(response)
    if response.is_error:
        return error(response.status_code, _cloud_error(data, "Pairing failed"))

    if not isinstance(data, dict) or not all(data.get(k) for k in ("gatewayId", "secret", "restaurantId")):
        return error(400, "Invalid pairing response")

    await run_in_threadpool(
        store.update_config,
        gatewayId=str(data["gatewayId"]),
        secret=str(data["secret"]),
        restaurantId=str(data["restaurantId"]),
        cloudBaseUrl=cloud_base_url,
        boundAt=now_iso(),
    )
    logger.info(f"Paired as gateway {data['gatewayId']} for restaurant {data['restaurantId']}")
    return {"ok": True, "gatewayId": data["gatewayId"], "restaurantId": data["restaurantId"]}


# ============ OUTBOX ============

@app.post("/events")
def queue_events(store: StoreDep, body: EventsRequest | None = None):
    if not store.read_config().get("gatewayId"):
        return error(400, "Gateway not paired")
    if body is None or body.events is None:
        return error(400, "Missing events")

    accepted = []
    for event in body.events:
        if not isinstance(event, dict):
            continue
        event_id = _text(event.get("id"))
        event_type = _text(event.get("type"))
        if not event_id or not event_type:
            continue
        device_id = event.get("deviceId")
        store.append_event({
            "id": event_id,
            "deviceId": device_id.strip() if isinstance(device_id, str) else None,
            "type": event_type,
            "payload": event.get("payload") if event.get("payload") is not None else {},
            "createdAt": normalize_created_at(event.get("createdAt")),
        })
        accepted.append(event_id)

    return {"ok": True, "accepted": len(accepted), "ids": accepted}


@app.post("/events/test")
def queue_test_event(store: StoreDep):
    if not store.read_config().get("gatewayId"):
        return error(400, "Gateway not paired")

    event_id = str(uuid4())
    store.append_event({
        "id": event_id,
        "deviceId": None,
        "type": "test_event",
        "payload": {"ok": True},
        "createdAt": now_iso(),
    })
    return {"ok": True, "queued": 1, "id": event_id}


@app.post("/sync/push")
async def push_outbox(store: StoreDep, client: ClientDep):
    """Send the head of the outbox to the cloud and remove the events it acknowledged."""
    async with push_lock:
        return await _push_batch(store, client)


async def _push_batch(store: GatewayStore, client: httpx.AsyncClient):
    config = await run_in_threadpool(store.read_config)
    if not config.get("gatewayId") or not config.get("secret"):
        return error(400, "Gateway not paired")
    cloud_base_url = await run_in_threadpool(resolve_cloud_base_url, store)
    if not cloud_base_url:
        return error(400, "Missing CLOUD_BASE_URL")

    batch = await run_in_threadpool(store.read_events, PUSH_BATCH_SIZE)
    if not batch:
        return {"ok": True, "pushed": 0}

    try:
        response = await client.post(
            f"{cloud_base_url.rstrip('/')}/edge/push-events",
            headers={
                "X-Gateway-Id": str(config["gatewayId"]),
                "X-Gateway-Secret": str(config["secret"]),
            },
            json={"events": batch},
        )
    except httpx.HTTPError as e:
        logger.error(f"Push to cloud failed: {e}")
        return error(500, str(e) or "Push failed")

    data = _read_json(response)
    if response.is_error:
        return error(response.status_code, _cloud_error(data, "Push failed"))

    accepted = int(data.get("accepted") or 0) if isinstance(data, dict) else 0
    duplicate = int(data.get("duplicate") or 0) if isinstance(data, dict) else 0
    acked = acknowledged_ids(data, batch)
    if acked:
        await run_in_threadpool(store.remove_events, acked)

    logger.info(f"Pushed {len(batch)} events ({accepted} accepted, {duplicate} duplicate)")
    return {"ok": True, "pushed": accepted + duplicate, "accepted": accepted, "duplicate": duplicate}


# ============ PRINTERS ============

@app.get("/printers")
def list_printers(store: StoreDep):
    return {"printers": normalize_printers(store.read_config())}


@app.post("/printers")
def add_printer(store: StoreDep, body: PrinterRequest | None = None):
    body = body or PrinterRequest()
    ip = _text(body.ip)
    if not ip:
        return error(400, "Missing ip")
    port = DEFAULT_PRINTER_PORT if body.port is None else _clamp(body.port, 0, 65536, 0)
    if not 0 < port < 65536:
        return error(400, "Invalid port")

    printer = {"id": str(uuid4()), "name": _text(body.name), "ip": ip, "port": port, "createdAt": now_iso()}
    config = store.read_config()
    store.update_config(printers=[*normalize_printers(config), printer])
    logger.info(f"Added printer {printer['id']} at {ip}:{port}")
    return {"ok": True, "printer": printer}


@app.delete("/printers/{printer_id}")
def remove_printer(printer_id: str, store: StoreDep):
    printers = normalize_printers(store.read_config())
    remaining = [p for p in printers if p["id"] != printer_id.strip()]
    store.update_config(printers=remaining)
    return {"ok": True, "removed": len(printers) - len(remaining)}


@app.get("/printers/discover")
async def discover_printers(
    timeout_ms: Annotated[int, Query(alias="timeoutMs")] = 250,
    concurrency: int = 50,
    scan=Depends(get_lan_scanner),
):
    timeout = max(50, min(2000, timeout_ms)) / 1000
    try:
        printers = await scan(DEFAULT_PRINTER_PORT, timeout, max(1, min(200, concurrency)))
    except OSError as e:
        return error(400, str(e) or "Scan failed")
    return {"ok": True, "printers": printers}


@app.get("/print/routes")
def get_print_routes(store: StoreDep):
    return {"ok": True, "routes": normalize_print_routes(store.read_config())}


@app.post("/print/routes")
def set_print_routes(store: StoreDep, body: PrintRoutesRequest | None = None):
    body = body or PrintRoutesRequest()
    store.update_config(printRoutes={
        "receiptPrinterId": _text(body.receipt_printer_id) or None,
        "kitchenPrinterId": _text(body.kitchen_printer_id) or None,
    })
    return {"ok": True}


async def _test_print(mode: str, store: GatewayStore, send: Sender, body: PrinterTestRequest | None):
    config = await run_in_threadpool(store.read_config)
    printer = find_printer(config, _text(body.printer_id) if body else "")
    if printer is None:
        return error(400, "Printer not found")
    try:
        await send(printer["ip"], printer["port"], build_test_ticket(mode, printer))
    except PrintError as e:
        return error(400, str(e) or "Print failed")
    return {"ok": True, "mode": mode}


@app.post("/print/test")
async def print_test_page(store: StoreDep, send: SenderDep, body: PrinterTestRequest | None = None):
    return await _test_print("escpos", store, send, body)


@app.post("/print/test-text")
async def print_test_text(store: StoreDep, send: SenderDep, body: PrinterTestRequest | None = None):
    return await _test_print("text", store, send, body)


@app.post("/print/test-pcl")
async def print_test_pcl(store: StoreDep, send: SenderDep, body: PrinterTestRequest | None = None):
    return await _test_print("pcl", store, send, body)


# ============ PRINT QUEUE ============

@app.get("/print/jobs")
def list_print_jobs(store: StoreDep, status: str | None = None, limit: int = 200):
    jobs = store.read_print_queue()
    if status and status.strip():
        jobs = [j for j in jobs if j.get("status") == status.strip()]
    return {"ok": True, "jobs": jobs[-max(1, min(1000, limit)):]}


@app.post("/print/enqueue")
async def enqueue_print_job(store: StoreDep, send: SenderDep, body: EnqueueRequest | None = None):
    body = body or EnqueueRequest()
    raw_base64 = _text(body.raw_base64) or None
    template = body.template if isinstance(body.template, dict) else None
    if not raw_base64 and template is None:
        return error(400, "Missing template or rawBase64")

    created = now_iso()
    job = {
        "id": str(uuid4()),
        "kind": _text(body.kind) or "receipt",
        "protocol": _text(body.protocol) or "escpos",
        "printerId": _text(body.printer_id) or None,
        "template": template,
        "rawBase64": raw_base64,
        "status": "queued",
        "attempts": 0,
        "maxAttempts": _clamp(body.max_attempts, 1, 25, 10),
        "nextAttemptAt": created,
        "lastError": None,
        "createdAt": created,
        "updatedAt": created,
    }
    await run_in_threadpool(store.enqueue_print_job, job)
    processed = await print_worker.tick(store, send)
    return {"ok": True, "job": job, "processed": processed}


@app.post("/print/process")
async def process_print_queue(store: StoreDep, send: SenderDep):
    return await print_worker.tick(store, send)


@app.post("/print/jobs/{job_id}/cancel")
def cancel_print_job(job_id: str, store: StoreDep):
    job = store.cancel_print_job(job_id.strip())
    if job is None:
        return error(404, "Not found")
    return {"ok": True, "job": job}


@app.post("/print/jobs/{job_id}/retry")
def retry_print_job(job_id: str, store: StoreDep):
    now = now_iso()
    job = store.update_print_job(job_id.strip(), status="queued", nextAttemptAt=now, updatedAt=now)
    if job is None:
        return error(404, "Not found")
    return {"ok": True, "job": job}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=EDGE_GATEWAY_PORT)

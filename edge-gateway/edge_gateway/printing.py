"""
LAN printer support for the edge gateway.

Printers are raw TCP endpoints (usually port 9100). Tickets are built as
ESC/POS by default, or as plain text or PCL for office printers. Jobs are
kept in a persistent queue and retried with exponential backoff.
"""
import asyncio
import base64
import binascii
import ipaddress
import logging
import socket
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from starlette.concurrency import run_in_threadpool

from .store import GatewayStore

logger = logging.getLogger(__name__)

DEFAULT_PRINTER_PORT = 9100
SEND_TIMEOUT_SECONDS = 4.0
QUEUE_KEEP_LAST = 350
QUEUE_MAX_AGE_DAYS = 10
BACKOFF_BASE_MS = 1500
BACKOFF_MAX_MS = 120_000
PRINTER_NOT_FOUND = "Printer not found (check routes or printerId)"

ESC = b"\x1b"
GS = b"\x1d"

Sender = Callable[[str, int, bytes], Awaitable[None]]


class PrintError(Exception):
    pass


# ============ CONFIG HELPERS ============

def normalize_printers(config: dict[str, Any]) -> list[dict[str, Any]]:
    raw = config.get("printers")
    printers = []
    for p in raw if isinstance(raw, list) else []:
        if not isinstance(p, dict):
            continue
        try:
            port = int(p.get("port"))
        except (TypeError, ValueError):
            continue
        printer = {
            "id": p.get("id") if isinstance(p.get("id"), str) else "",
            "name": p.get("name") if isinstance(p.get("name"), str) else "",
            "ip": p.get("ip") if isinstance(p.get("ip"), str) else "",
            "port": port,
            "createdAt": p.get("createdAt") if isinstance(p.get("createdAt"), str) else None,
        }
        if printer["id"] and printer["ip"]:
            printers.append(printer)
    return printers


def _clean_id(value: Any) -> str | None:
    return (value.strip() or None) if isinstance(value, str) else None


def normalize_print_routes(config: dict[str, Any]) -> dict[str, str | None]:
    routes = config.get("printRoutes")
    routes = routes if isinstance(routes, dict) else {}
    return {
        "receiptPrinterId": _clean_id(routes.get("receiptPrinterId")),
        "kitchenPrinterId": _clean_id(routes.get("kitchenPrinterId")),
    }


def resolve_printer_id(config: dict[str, Any], job: dict[str, Any]) -> str | None:
    """An explicit printerId wins; otherwise kitchen jobs use the kitchen route, the rest the receipt route."""
    explicit = _clean_id(job.get("printerId"))
    if explicit:
        return explicit
    routes = normalize_print_routes(config)
    kind = job.get("kind").strip() if isinstance(job.get("kind"), str) else ""
    if kind == "kitchen":
        return routes["kitchenPrinterId"]
    return routes["receiptPrinterId"]


def find_printer(config: dict[str, Any], printer_id: str | None) -> dict[str, Any] | None:
    if not printer_id:
        return None
    return next((p for p in normalize_printers(config) if p["id"] == printer_id), None)


# ============ TICKETS ============

def build_escpos_ticket(title: str, subtitle: str, lines: list[str]) -> bytes:
    parts = [
        ESC + b"@",        # initialize
        ESC + b"a\x01",    # center
        ESC + b"E\x01",    # bold on
        f"{title}\n".encode("utf-8"),
        ESC + b"E\x00",
    ]
    if subtitle:
        parts.append(f"{subtitle}\n".encode("utf-8"))
    parts.append(b"\n")
    parts.append(ESC + b"a\x00")  # left
    parts.extend(f"{line}\n".encode("utf-8") for line in lines)
    parts.append(b"\n\n\n")
    parts.append(GS + b"V\x00")  # full cut
    return b"".join(parts)


def build_text_ticket(lines: list[str]) -> bytes:
    body = "".join(f"{line}\r\n" for line in lines)
    return f"\r\n\r\n{body}\r\n\r\n\f".encode("utf-8")


def build_pcl_ticket(lines: list[str]) -> bytes:
    uel = ESC + b"%-12345X"
    body = "".join(f"{line}\r\n" for line in lines).encode("utf-8")
    return b"".join([
        uel,
        b'@PJL JOB NAME="ISLAPOS"\r\n',
        b"@PJL ENTER LANGUAGE=PCL\r\n",
        ESC + b"E",
        body,
        b"\f",
        b"\r\n@PJL EOJ\r\n",
        uel,
    ])


def build_print_data(protocol: str | None, template: Any, raw_base64: str | None) -> bytes:
    protocol = (protocol or "").lower()
    if protocol == "raw":
        if not raw_base64:
            raise PrintError("Missing rawBase64")
        try:
            return base64.b64decode(raw_base64, validate=True)
        except binascii.Error:
            raise PrintError("Invalid rawBase64")

    template = template if isinstance(template, dict) else {}
    lines = [str(line) for line in template["lines"]] if isinstance(template.get("lines"), list) else []
    if protocol == "pcl":
        return build_pcl_ticket(lines)
    if protocol == "text":
        return build_text_ticket(lines)
    title = template.get("title") if isinstance(template.get("title"), str) else "ISLAPOS"
    subtitle = template.get("subtitle") if isinstance(template.get("subtitle"), str) else ""
    return build_escpos_ticket(title, subtitle, lines)


def build_test_ticket(mode: str, printer: dict[str, Any]) -> bytes:
    now = datetime.now(timezone.utc).isoformat()
    details = [
        f"Printer: {printer['name'] or '(unnamed)'}",
        f"IP: {printer['ip']}:{printer['port']}",
        f"Time: {now}",
    ]
    if mode == "pcl":
        return build_pcl_ticket(["ISLAPOS - TEST PCL", *details])
    if mode == "text":
        return build_text_ticket(["ISLAPOS - TEST TEXT", *details])
    return build_escpos_ticket("ISLAPOS", "TEST PRINT", details)


# ============ TRANSPORT ============

async def send_raw_tcp(ip: str, port: int, data: bytes, timeout: float = SEND_TIMEOUT_SECONDS) -> None:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout)
    except asyncio.TimeoutError:
        raise PrintError("Printer connection timed out")
    except OSError as e:
        raise PrintError(str(e) or "Printer connection error")
    try:
        writer.write(data)
        await asyncio.wait_for(writer.drain(), timeout)
    except asyncio.TimeoutError:
        raise PrintError("Printer connection timed out")
    except OSError as e:
        raise PrintError(str(e) or "Printer connection error")
    finally:
        writer.close()


async def port_open(ip: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout)
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    return True


def lan_address() -> str | None:
    """IPv4 address of the interface that routes outward. No packet is sent."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        try:
            s.connect(("10.255.255.255", 1))
        except OSError:
            return None
        address = s.getsockname()[0]
    return None if address.startswith("127.") else address


def lan_hosts(address: str | None) -> list[str]:
    """Other hosts of the /24 network around `address`."""
    if not address:
        return []
    try:
        network = ipaddress.ip_network(f"{address}/24", strict=False)
    except ValueError:
        return []
    return [str(host) for host in network.hosts() if str(host) != address]


async def scan_lan_for_port(
    port: int,
    timeout: float,
    concurrency: int,
    hosts: list[str] | None = None,
    check: Callable[[str, int, float], Awaitable[bool]] = port_open,
) -> list[dict[str, Any]]:
    hosts = lan_hosts(lan_address()) if hosts is None else hosts
    limit = asyncio.Semaphore(max(1, min(200, concurrency)))

    async def scan(ip: str) -> dict[str, Any] | None:
        async with limit:
            return {"ip": ip, "port": port} if await check(ip, port, timeout) else None

    found = [r for r in await asyncio.gather(*(scan(ip) for ip in hosts)) if r]
    return sorted(found, key=lambda r: ipaddress.ip_address(r["ip"]))


# ============ QUEUE ============

def compute_backoff_ms(attempt: int) -> int:
    return max(BACKOFF_BASE_MS, min(BACKOFF_MAX_MS, BACKOFF_BASE_MS * 2 ** max(0, attempt)))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_due(job: dict[str, Any], now: datetime) -> bool:
    if job.get("status") != "queued":
        return False
    raw = job.get("nextAttemptAt") or job.get("createdAt")
    try:
        due = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return True
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due <= now


def claim_next_job(store: GatewayStore) -> tuple[dict[str, Any], dict[str, Any]] | None:
    """Mark the first due job as printing and return it with the current config."""
    now = _now()
    queue = store.read_print_queue()
    job = next((j for j in queue if _is_due(j, now)), None)
    if job is None:
        store.prune_print_queue(QUEUE_KEEP_LAST, QUEUE_MAX_AGE_DAYS)
        return None
    if not job.get("id"):
        store.write_print_queue([j for j in queue if j is not job])
        return None
    store.update_print_job(job["id"], status="printing", updatedAt=now.isoformat())
    return store.read_config(), job


def record_failure(store: GatewayStore, job: dict[str, Any], message: str) -> None:
    attempts = max(0, int(job.get("attempts") or 0)) + 1
    max_attempts = max(1, int(job.get("maxAttempts") or 10))
    terminal = attempts >= max_attempts
    next_attempt = None
    if not terminal:
        next_attempt = (_now() + timedelta(milliseconds=compute_backoff_ms(attempts - 1))).isoformat()
    store.update_print_job(
        job["id"],
        status="failed" if terminal else "queued",
        attempts=attempts,
        maxAttempts=max_attempts,
        lastError=message,
        nextAttemptAt=next_attempt,
        updatedAt=_now().isoformat(),
    )
    store.prune_print_queue(QUEUE_KEEP_LAST, QUEUE_MAX_AGE_DAYS)


def record_success(store: GatewayStore, job: dict[str, Any]) -> None:
    store.update_print_job(
        job["id"], status="succeeded", lastError=None, nextAttemptAt=None, updatedAt=_now().isoformat()
    )
    store.prune_print_queue(QUEUE_KEEP_LAST, QUEUE_MAX_AGE_DAYS)


class PrintWorker:
    """Processes at most one due job per tick. Overlapping ticks are skipped."""

    def __init__(self):
        self.lock = asyncio.Lock()

    async def tick(self, store: GatewayStore, send: Sender) -> dict[str, Any]:
        if self.lock.locked():
            return {"ok": True, "skipped": True}
        async with self.lock:
            return await self._tick(store, send)

    async def _tick(self, store: GatewayStore, send: Sender) -> dict[str, Any]:
        claimed = await run_in_threadpool(claim_next_job, store)
        if claimed is None:
            return {"ok": True, "processed": 0}
        config, job = claimed

        printer = find_printer(config, resolve_printer_id(config, job))
        if printer is None:
            await run_in_threadpool(record_failure, store, job, PRINTER_NOT_FOUND)
            return {"ok": True, "processed": 1, "failed": 1}

        try:
            data = build_print_data(job.get("protocol") or "escpos", job.get("template"), job.get("rawBase64"))
            await send(printer["ip"], printer["port"], data)
        except PrintError as e:
            logger.warning(f"Print job {job['id']} failed: {e}")
            await run_in_threadpool(record_failure, store, job, str(e) or "Print failed")
            return {"ok": True, "processed": 1, "failed": 1}

        await run_in_threadpool(record_success, store, job)
        return {"ok": True, "processed": 1, "succeeded": 1}

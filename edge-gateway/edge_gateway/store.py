"""
Local persistence for the edge gateway.

`config.json` holds the pairing state, printers and print routes.
`outbox.jsonl` is an append-only queue of events waiting to be pushed to the
cloud, one JSON object per line. `print_queue.json` holds print jobs.
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)

# Handlers run in a threadpool; rewrites of a file must not interleave with appends.
_file_lock = threading.RLock()


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class GatewayStore:
    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self.config_path = self.data_dir / "config.json"
        self.outbox_path = self.data_dir / "outbox.jsonl"
        self.print_queue_path = self.data_dir / "print_queue.json"

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    # ============ CONFIG ============

    def read_config(self) -> dict[str, Any]:
        with _file_lock:
            if not self.config_path.exists():
                return {}
            try:
                parsed = json.loads(self.config_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable config file %s", self.config_path)
                return {}
        return parsed if isinstance(parsed, dict) else {}

    def write_config(self, config: dict[str, Any]) -> None:
        with _file_lock:
            self._ensure_dir()
            self.config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")

    def update_config(self, **changes: Any) -> dict[str, Any]:
        with _file_lock:
            config = {**self.read_config(), **changes}
            self.write_config(config)
        return config

    # ============ OUTBOX ============

    def _read_lines(self) -> list[str]:
        if not self.outbox_path.exists():
            return []
        return [line for line in self.outbox_path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def append_event(self, event: dict[str, Any]) -> None:
        with _file_lock:
            self._ensure_dir()
            with self.outbox_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event) + "\n")

    def read_events(self, limit: int = 500) -> list[dict[str, Any]]:
        with _file_lock:
            lines = self._read_lines()
        events = []
        for line in lines:
            if len(events) >= limit:
                break
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt outbox line")
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events

    def remove_events(self, ids: Iterable[str]) -> int:
        """Remove acknowledged events by id. Unreadable lines are discarded too.

        Returns the number of events removed.
        """
        acked = set(ids)
        with _file_lock:
            kept = []
            removed = 0
            for line in self._read_lines():
                try:
                    parsed = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Discarding corrupt outbox line")
                    continue
                if isinstance(parsed, dict) and parsed.get("id") in acked:
                    removed += 1
                    continue
                kept.append(line)
            self._ensure_dir()
            self.outbox_path.write_text("".join(line + "\n" for line in kept), encoding="utf-8")
        return removed

    def pending_count(self) -> int:
        with _file_lock:
            return len(self._read_lines())

    # ============ PRINT QUEUE ============

    def read_print_queue(self) -> list[dict[str, Any]]:
        with _file_lock:
            if not self.print_queue_path.exists():
                return []
            try:
                parsed = json.loads(self.print_queue_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable print queue %s", self.print_queue_path)
                return []
        if not isinstance(parsed, list):
            return []
        return [job for job in parsed if isinstance(job, dict)]

    def write_print_queue(self, jobs: list[dict[str, Any]]) -> None:
        with _file_lock:
            self._ensure_dir()
            self.print_queue_path.write_text(json.dumps(jobs, indent=2), encoding="utf-8")

    def enqueue_print_job(self, job: dict[str, Any]) -> None:
        with _file_lock:
            self.write_print_queue([*self.read_print_queue(), job])

    def update_print_job(self, job_id: str, **changes: Any) -> dict[str, Any] | None:
        with _file_lock:
            jobs = self.read_print_queue()
            for index, job in enumerate(jobs):
                if job.get("id") == job_id:
                    jobs[index] = {**job, **changes}
                    self.write_print_queue(jobs)
                    return jobs[index]
        return None

    def cancel_print_job(self, job_id: str) -> dict[str, Any] | None:
        now = datetime.now(timezone.utc).isoformat()
        return self.update_print_job(job_id, status="canceled", nextAttemptAt=None, updatedAt=now)

    def prune_print_queue(self, keep_last: int = 350, max_age_days: int = 10) -> int:
        """Drop jobs older than `max_age_days`, then keep only the newest `keep_last`."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        with _file_lock:
            jobs = self.read_print_queue()
            fresh = []
            for job in jobs:
                created = _parse_time(job.get("createdAt"))
                if created is not None and created < cutoff:
                    continue
                fresh.append(job)
            fresh = fresh[-keep_last:] if keep_last > 0 else []
            if len(fresh) != len(jobs):
                self.write_print_queue(fresh)
        return len(jobs) - len(fresh)

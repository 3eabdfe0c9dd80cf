"""
Payroll schedules and the scheduled-versus-actual report.

Actual minutes come from walking a staff member's time clock punches in
order. A break is unpaid: time between `break_out` and `break_in` does not
count, and a shift still open at the end of the range is cut at the range end.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlmodel import Session, select

from .errors import InvalidInput
from .models import PayrollShift, TimeClockAction, TimeClockEntry, as_utc

MAX_BREAK_MINUTES = 480
SHIFT_LIST_LIMIT = 5000
SCHEDULE_EMAIL_LIMIT = 200


def parse_time(raw: str | None, message: str) -> datetime:
    raw = (raw or "").strip()
    if not raw:
        raise InvalidInput(message)
    try:
        return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        raise InvalidInput(message)


def parse_optional_time(raw: str | None, message: str) -> datetime | None:
    if raw is None or not raw.strip():
        return None
    return parse_time(raw, message)


def parse_break_minutes(raw: Any) -> int:
    if raw is None or raw == "":
        return 0
    try:
        minutes = float(raw)
    except (TypeError, ValueError):
        raise InvalidInput("Invalid breakMinutes")
    if not math.isfinite(minutes) or minutes < 0 or minutes > MAX_BREAK_MINUTES:
        raise InvalidInput("Invalid breakMinutes")
    return math.floor(minutes)


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(0, round((as_utc(end) - as_utc(start)).total_seconds() / 60))


def scheduled_minutes(shift: PayrollShift) -> int:
    return max(0, _minutes_between(shift.starts_at, shift.ends_at) - (shift.break_minutes or 0))


def compute_actual_minutes(entries: Iterable[TimeClockEntry], start: datetime, end: datetime) -> int:
    start, end = as_utc(start), as_utc(end)
    punches = sorted((e for e in entries if start <= as_utc(e.at) < end), key=lambda e: as_utc(e.at))

    total = 0
    clock_in: datetime | None = None
    break_out: datetime | None = None
    for entry in punches:
        at = as_utc(entry.at)
        if entry.action == TimeClockAction.clock_in:
            clock_in, break_out = at, None
        elif entry.action == TimeClockAction.break_out:
            if clock_in is not None:
                break_out = at
        elif entry.action == TimeClockAction.break_in:
            if clock_in is not None and break_out is not None:
                total += _minutes_between(clock_in, break_out)
                clock_in, break_out = at, None
        elif entry.action == TimeClockAction.clock_out:
            if clock_in is not None:
                total += _minutes_between(clock_in, break_out or at)
            clock_in, break_out = None, None

    if clock_in is not None:
        total += _minutes_between(clock_in, break_out or end)
    return total


def list_shifts(
    session: Session,
    restaurant_id: str,
    start: datetime | None,
    end: datetime | None,
    staff_user_id: str | None = None,
    limit: int = SHIFT_LIST_LIMIT,
) -> list[PayrollShift]:
    statement = select(PayrollShift).where(PayrollShift.restaurant_id == restaurant_id)
    if staff_user_id:
        statement = statement.where(PayrollShift.staff_user_id == staff_user_id)
    if start is not None:
        statement = statement.where(PayrollShift.starts_at >= start)
    if end is not None:
        statement = statement.where(PayrollShift.starts_at < end)
    return list(session.exec(statement.order_by(PayrollShift.starts_at).limit(limit)).all())


def clock_entries(session: Session, restaurant_id: str, start: datetime, end: datetime) -> list[TimeClockEntry]:
    return list(
        session.exec(
            select(TimeClockEntry)
            .where(
                TimeClockEntry.restaurant_id == restaurant_id,
                TimeClockEntry.at >= start,
                TimeClockEntry.at < end,
            )
            .order_by(TimeClockEntry.at)
        ).all()
    )


def staff_key(staff_user_id: str | None, staff_pin: str | None) -> str:
    return f"{staff_user_id or ''}::{staff_pin or ''}"


@dataclass
class _ReportRow:
    staff_user_id: str | None
    staff_pin: str | None
    staff_label: str | None
    scheduled: int = 0
    entries: list[TimeClockEntry] = field(default_factory=list)


def build_report(
    shifts: Iterable[PayrollShift],
    entries: Iterable[TimeClockEntry],
    start: datetime,
    end: datetime,
) -> list[dict[str, Any]]:
    """One row per staff member seen in either the schedule or the time clock."""
    rows: dict[str, _ReportRow] = {}

    def row_for(user_id: str | None, pin: str | None, label: str | None) -> _ReportRow:
        key = staff_key(user_id, pin)
        row = rows.get(key)
        if row is None:
            row = rows[key] = _ReportRow(user_id, pin, label)
        elif not row.staff_label and label:
            row.staff_label = label
        return row

    for shift in shifts:
        row_for(shift.staff_user_id, shift.staff_pin, shift.staff_label).scheduled += scheduled_minutes(shift)
    for entry in entries:
        row_for(entry.staff_user_id, entry.staff_pin, entry.staff_label).entries.append(entry)

    report = []
    for row in rows.values():
        actual = compute_actual_minutes(row.entries, start, end)
        report.append({
            "staffUserId": row.staff_user_id,
            "staffPin": row.staff_pin,
            "staffLabel": row.staff_label,
            "scheduledMinutes": row.scheduled,
            "actualMinutes": actual,
            "varianceMinutes": actual - row.scheduled,
        })
    return sorted(report, key=lambda r: (r["staffLabel"] or r["staffPin"] or "").lower())


def shift_row(shift: PayrollShift) -> dict[str, Any]:
    return {
        "id": shift.id,
        "staff_user_id": shift.staff_user_id,
        "staff_pin": shift.staff_pin,
        "staff_label": shift.staff_label,
        "starts_at": as_utc(shift.starts_at).isoformat(),
        "ends_at": as_utc(shift.ends_at).isoformat(),
        "break_minutes": shift.break_minutes,
        "created_at": as_utc(shift.created_at).isoformat(),
    }


def schedule_email(shifts: list[PayrollShift], start: datetime, end: datetime) -> tuple[str, str, str]:
    """Subject, plain text and HTML body of a staff member's schedule."""
    period = f"{start.date().isoformat()} - {end.date().isoformat()}"
    subject = f"Your schedule ({period})"

    lines = [
        f"{as_utc(s.starts_at):%Y-%m-%d %H:%M} - {as_utc(s.ends_at):%Y-%m-%d %H:%M} (break {s.break_minutes}m)"
        for s in shifts
    ]
    text = "\n".join(["IslaPOS Schedule", f"Week: {period}", "", *(lines or ["No shifts scheduled."])])

    cell = 'style="text-align:left;padding:8px;border-bottom:1px solid #e5e7eb;"'
    rows = "".join(
        f"<tr><td {cell}>{as_utc(s.starts_at):%Y-%m-%d %H:%M}</td>"
        f"<td {cell}>{as_utc(s.ends_at):%Y-%m-%d %H:%M}</td>"
        f"<td {cell}>{s.break_minutes}m</td></tr>"
        for s in shifts
    ) or f'<tr><td colspan="3" {cell}>No shifts scheduled.</td></tr>'
    html = f"""
    <div style="font-family: Arial, sans-serif;">
        <h2 style="margin:0 0 8px 0;">IslaPOS Schedule</h2>
        <div style="color:#374151;margin:0 0 12px 0;">Week: {period}</div>
        <table style="border-collapse:collapse;width:100%;max-width:720px;">
            <thead><tr><th {cell}>Start</th><th {cell}>End</th><th {cell}>Break</th></tr></thead>
            <tbody>{rows}</tbody>
        </table>
    </div>
    """
    return subject, text, html

from datetime import datetime, timezone

import pytest

from islapos.email_service import get_mailer
from islapos.main import app
from islapos.models import PayrollShift, TimeClockAction, TimeClockEntry
from islapos.payroll_service import build_report, compute_actual_minutes

from conftest import add_staff, auth

WEEK = {"start": "2026-05-04T00:00:00Z", "end": "2026-05-11T00:00:00Z"}


def at(hour: int, minute: int = 0, day: int = 4) -> datetime:
    return datetime(2026, 5, day, hour, minute, tzinfo=timezone.utc)


def punch(action: str, when: datetime, user_id: str | None = "u1", pin: str | None = None) -> TimeClockEntry:
    return TimeClockEntry(
        restaurant_id="r1",
        staff_user_id=user_id,
        staff_pin=pin,
        action=TimeClockAction(action),
        at=when,
        recorded_by_user_id="u1",
    )


@pytest.mark.parametrize(
    "punches, expected",
    [
        ([("clock_in", at(9)), ("break_out", at(12)), ("break_in", at(12, 30)), ("clock_out", at(17))], 450),
        ([("clock_in", at(9)), ("clock_out", at(13))], 240),
        ([("clock_in", at(9)), ("break_out", at(11)), ("clock_out", at(12))], 120),
        ([("clock_out", at(9)), ("break_in", at(10))], 0),
        ([("clock_in", at(9)), ("clock_out", at(10)), ("clock_in", at(14)), ("clock_out", at(15, 15))], 135),
    ],
)
def test_actual_minutes_walk_the_punches(punches, expected):
    entries = [punch(action, when) for action, when in punches]
    assert compute_actual_minutes(entries, at(0), at(0, day=5)) == expected


def test_open_shift_is_cut_at_range_end():
    entries = [punch("clock_in", at(22))]
    assert compute_actual_minutes(entries, at(0), at(0, day=5)) == 120


def test_punches_outside_range_are_ignored():
    entries = [punch("clock_in", at(9, day=3)), punch("clock_out", at(17, day=3)), punch("clock_in", at(9))]
    assert compute_actual_minutes(entries, at(0), at(10)) == 60


def test_report_rows_compare_schedule_with_clock():
    shift = PayrollShift(
        restaurant_id="r1",
        staff_user_id="u1",
        staff_label="Rosa",
        starts_at=at(9),
        ends_at=at(17),
        break_minutes=30,
        created_by_user_id="owner",
    )
    entries = [
        punch("clock_in", at(9, 10)),
        punch("clock_out", at(17)),
        punch("clock_in", at(10), user_id=None, pin="4321"),
        punch("clock_out", at(11), user_id=None, pin="4321"),
    ]

    rows = build_report([shift], entries, at(0), at(0, day=5))

    assert rows == [
        {
            "staffUserId": None,
            "staffPin": "4321",
            "staffLabel": None,
            "scheduledMinutes": 0,
            "actualMinutes": 60,
            "varianceMinutes": 60,
        },
        {
            "staffUserId": "u1",
            "staffPin": None,
            "staffLabel": "Rosa",
            "scheduledMinutes": 450,
            "actualMinutes": 470,
            "varianceMinutes": 20,
        },
    ]


def schedule(client, user, staff, **fields):
    body = {
        "staffUserId": staff.id,
        "startsAt": "2026-05-04T09:00:00Z",
        "endsAt": "2026-05-04T17:00:00Z",
        "breakMinutes": 30,
        **fields,
    }
    return client.post("/admin/payroll/schedules", json=body, headers=auth(user))


def test_schedule_lifecycle(client, session, owner, cashier, restaurant):
    created = schedule(client, owner, cashier, breakMinutes="45.9")
    assert created.status_code == 200
    shift_id = created.json()["id"]

    shift = session.get(PayrollShift, shift_id)
    assert shift.restaurant_id == restaurant.id
    assert shift.break_minutes == 45
    assert shift.staff_label == "cashier@casa.test"
    assert shift.created_by_user_id == owner.id

    listed = client.get("/admin/payroll/schedules", params=WEEK, headers=auth(owner)).json()
    assert listed["restaurantId"] == restaurant.id
    assert [s["id"] for s in listed["shifts"]] == [shift_id]
    assert listed["shifts"][0]["starts_at"] == "2026-05-04T09:00:00+00:00"

    later = client.get(
        "/admin/payroll/schedules", params={"start": "2026-05-05T00:00:00Z"}, headers=auth(owner)
    ).json()
    assert later["shifts"] == []

    deleted = client.request("DELETE", "/admin/payroll/schedules", json={"id": shift_id}, headers=auth(owner))
    assert deleted.json() == {"ok": True}
    assert session.get(PayrollShift, shift_id) is None


def test_schedule_validation(client, session, identity, owner, cashier, other_restaurant):
    assert schedule(client, owner, cashier, staffUserId=" ").json() == {"error": "Missing staffUserId"}
    assert schedule(client, owner, cashier, startsAt="monday").json() == {"error": "Invalid startsAt"}
    assert schedule(client, owner, cashier, endsAt=None).json() == {"error": "Invalid endsAt"}
    response = schedule(client, owner, cashier, endsAt="2026-05-04T09:00:00Z")
    assert response.json() == {"error": "endsAt must be after startsAt"}
    assert schedule(client, owner, cashier, breakMinutes="lunch").json() == {"error": "Invalid breakMinutes"}
    assert schedule(client, owner, cashier, breakMinutes=481).json() == {"error": "Invalid breakMinutes"}

    outsider = add_staff(session, identity, "cashier", other_restaurant.id)
    response = schedule(client, owner, outsider)
    assert response.status_code == 400
    assert response.json() == {"error": "User is not assigned to the active restaurant"}


def test_foreign_shift_cannot_be_deleted(client, session, identity, owner, restaurant, other_owner, other_restaurant):
    outsider = add_staff(session, identity, "cashier", other_restaurant.id)
    foreign_id = schedule(client, other_owner, outsider).json()["id"]

    response = client.request("DELETE", "/admin/payroll/schedules", json={"id": foreign_id}, headers=auth(owner))
    assert response.status_code == 404
    assert response.json() == {"error": "Shift not found"}
    assert session.get(PayrollShift, foreign_id) is not None


def test_payroll_report_endpoint(client, owner, cashier, restaurant):
    schedule(client, owner, cashier)
    for action, when in (("clock_in", "2026-05-04T09:00:00Z"), ("clock_out", "2026-05-04T16:00:00Z")):
        client.post(
            "/pos/time-clock",
            json={"staffUserId": cashier.id, "action": action, "at": when},
            headers=auth(cashier),
        )

    report = client.get("/admin/payroll/report", params=WEEK, headers=auth(owner)).json()
    assert report["restaurantId"] == restaurant.id
    assert len(report["rows"]) == 1
    row = report["rows"][0]
    assert row["staffUserId"] == cashier.id
    assert (row["scheduledMinutes"], row["actualMinutes"], row["varianceMinutes"]) == (450, 420, -30)

    response = client.get("/admin/payroll/report", params={"start": WEEK["start"]}, headers=auth(owner))
    assert response.json() == {"error": "Missing start/end"}


def test_payroll_denied_for_restricted_roles(client, cashier):
    response = client.get("/admin/payroll/schedules", headers=auth(cashier))
    assert response.status_code == 403
    assert response.json() == {"error": "Cashier accounts cannot manage payroll"}

    response = client.get("/admin/payroll/report", params=WEEK, headers=auth(cashier))
    assert response.json() == {"error": "Cashier accounts cannot view payroll reports"}

    response = client.post("/admin/payroll/email-schedule", json={}, headers=auth(cashier))
    assert response.json() == {"error": "Cashier accounts cannot email schedules"}


def test_manager_schedules_staff(client, manager, cashier):
    assert schedule(client, manager, cashier).status_code == 200


def test_email_schedule(client, outbox, owner, cashier, restaurant):
    schedule(client, owner, cashier)
    schedule(client, owner, cashier, startsAt="2026-05-12T09:00:00Z", endsAt="2026-05-12T17:00:00Z")

    response = client.post(
        "/admin/payroll/email-schedule",
        json={"staffUserId": cashier.id, **WEEK},
        headers=auth(owner),
    )
    assert response.json() == {"ok": True, "shifts": 1}

    [email] = outbox
    assert email["to"] == "cashier@casa.test"
    assert email["subject"] == "Your schedule (2026-05-04 - 2026-05-11)"
    assert "2026-05-04 09:00 - 2026-05-04 17:00 (break 30m)" in email["text"]
    assert "2026-05-12" not in email["text"]


def test_email_schedule_validation(client, identity, outbox, owner, cashier):
    def send(**body):
        return client.post("/admin/payroll/email-schedule", json=body, headers=auth(owner))

    assert send(**WEEK).json() == {"error": "Missing staffUserId"}
    assert send(staffUserId=cashier.id, start="soon", end=WEEK["end"]).json() == {"error": "Invalid start"}
    assert send(staffUserId=cashier.id, start=WEEK["start"]).json() == {"error": "Invalid end"}

    identity.users[cashier.id].email = None
    assert send(staffUserId=cashier.id, **WEEK).json() == {"error": "Staff user has no email"}
    assert outbox == []


def test_email_schedule_reports_send_failure(client, owner, cashier):
    async def failing(to_email, subject, html_content, text_content=None):
        return False

    app.dependency_overrides[get_mailer] = lambda: failing
    response = client.post(
        "/admin/payroll/email-schedule",
        json={"staffUserId": cashier.id, **WEEK},
        headers=auth(owner),
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Failed to send email"}


def test_email_schedule_requires_smtp(client, owner, cashier):
    app.dependency_overrides.pop(get_mailer)
    response = client.post(
        "/admin/payroll/email-schedule",
        json={"staffUserId": cashier.id, **WEEK},
        headers=auth(owner),
    )
    assert response.status_code == 500
    assert response.json() == {"error": "SMTP is not configured"}

from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

from ltipdesk.api.deps import get_current_employee_record, get_current_user, get_current_user_optional
from ltipdesk.main import app
from ltipdesk.models import Grant, GrantStatus, UserRole


def _create_employee(client, code: str, email: str) -> int:
    response = client.post(
        "/api/employees",
        json={
            "employee_code": code,
            "full_name": "Jane Doe",
            "email": email,
            "joining_date": "2024-01-01",
            "status": "active",
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_schedule(client, **overrides) -> dict:
    payload = {
        "name": "Standard 4-year",
        "total_duration_months": 48,
        "cliff_months": 12,
        "vesting_frequency": "monthly",
    }
    payload.update(overrides)
    response = client.post("/api/vesting-schedules", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _create_plan(client, schedule_id: int, plan_type: str = "LTIP_RSU", code: str = "LTIP-2024") -> int:
    response = client.post(
        "/api/plans",
        json={"plan_code": code, "name": "LTIP 2024", "plan_type": plan_type, "vesting_schedule_id": schedule_id},
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _create_grant(client, employee_id: int, plan_id: int, number: str = "G-0001", total_shares: int = 4800) -> dict:
    response = client.post(
        "/api/grants",
        json={
            "employee_id": employee_id,
            "plan_id": plan_id,
            "grant_number": number,
            "grant_date": "2024-01-01",
            "total_shares": total_shares,
            "vesting_start_date": "2024-01-01",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_grant_vesting_lifecycle(client) -> None:
    employee_id = _create_employee(client, "E-1001", "jane@example.com")
    schedule = _create_schedule(client)
    assert len(schedule["milestones"]) == 37
    assert Decimal(schedule["milestones"][0]["vesting_percentage"]) == Decimal("25")

    plan_id = _create_plan(client, schedule["id"])
    grant = _create_grant(client, employee_id, plan_id)
    assert grant["status"] == "pending_signature"
    grant_id = grant["id"]

    accepted = client.post(f"/api/grants/{grant_id}/accept")
    assert accepted.status_code == 200
    events = accepted.json()
    assert len(events) == 37
    assert events[0]["event_type"] == "cliff"
    assert events[0]["vesting_date"] == "2025-01-01"
    assert events[0]["shares_to_vest"] == 1200
    assert sum(event["shares_to_vest"] for event in events) == 4800
    assert Decimal(events[-1]["cumulative_percentage"]) == Decimal("100")

    listed = client.get(f"/api/grants/{grant_id}/events")
    assert [event["sequence_number"] for event in listed.json()] == list(range(37))

    refreshed = client.post("/api/vesting-events/refresh-statuses", params={"as_of": "2025-01-15"})
    assert refreshed.status_code == 200
    assert refreshed.json()["events_marked_due"] == 1

    cliff_id = events[0]["id"]
    processed = client.post(
        f"/api/vesting-events/{cliff_id}/process",
        json={"as_of": "2025-01-15", "fair_market_value_cents": 1800},
    )
    assert processed.status_code == 200
    assert processed.json()["status"] == "vested"

    early = client.post(f"/api/vesting-events/{events[5]['id']}/process", json={"as_of": "2025-01-15"})
    assert early.status_code == 409

    summary = client.get(f"/api/grants/{grant_id}/summary", params={"as_of": "2025-01-15"})
    assert summary.status_code == 200
    summary_json = summary.json()
    assert summary_json["vested_shares"] == 1200
    assert summary_json["unvested_shares"] == 3600
    assert summary_json["next_vesting_date"] == "2025-02-01"

    regenerate = client.post(f"/api/grants/{grant_id}/events/regenerate")
    assert regenerate.status_code == 409

    transferred = client.post(f"/api/vesting-events/{cliff_id}/transfer")
    assert transferred.status_code == 200
    assert transferred.json()["status"] == "transferred"

    exercised = client.post(f"/api/vesting-events/{cliff_id}/exercise")
    assert exercised.status_code == 409

    stats = client.get("/api/vesting-events/stats")
    assert stats.json()["events_by_status"]["transferred"] == 1

    dashboard = client.get("/api/dashboard/summary", params={"as_of": "2025-01-15"})
    assert dashboard.status_code == 200
    dashboard_json = dashboard.json()
    assert dashboard_json["total_grants"] == 1
    assert dashboard_json["pool_allocated"] == 4800
    assert dashboard_json["vested_shares"] == 1200
    assert dashboard_json["unvested_shares"] == 3600


def test_regeneration_before_vesting_keeps_the_same_schedule(client) -> None:
    employee_id = _create_employee(client, "E-1002", "john@example.com")
    schedule = _create_schedule(
        client,
        name="Back-loaded",
        milestones=[
            {"sequence_order": 0, "vesting_percentage": "25", "months_from_start": 12},
            {"sequence_order": 1, "vesting_percentage": "18.75", "months_from_start": 24},
            {"sequence_order": 2, "vesting_percentage": "18.75", "months_from_start": 30},
            {"sequence_order": 3, "vesting_percentage": "18.75", "months_from_start": 36},
            {"sequence_order": 4, "vesting_percentage": "18.75", "months_from_start": 48},
        ],
    )
    plan_id = _create_plan(client, schedule["id"])
    grant_id = _create_grant(client, employee_id, plan_id, total_shares=50000)["id"]

    first = client.post(f"/api/grants/{grant_id}/accept").json()
    second = client.post(f"/api/grants/{grant_id}/events/regenerate")
    assert second.status_code == 200

    def shape(rows):
        return [(row["sequence_number"], row["vesting_date"], row["shares_to_vest"]) for row in rows]

    assert shape(second.json()) == shape(first)
    assert [row["shares_to_vest"] for row in first] == [12500, 9375, 9375, 9375, 9375]


def test_accepting_twice_conflicts(client) -> None:
    employee_id = _create_employee(client, "E-1003", "sam@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"])
    grant_id = _create_grant(client, employee_id, plan_id)["id"]

    assert client.post(f"/api/grants/{grant_id}/accept").status_code == 200
    assert client.post(f"/api/grants/{grant_id}/accept").status_code == 409


def test_forfeit_closes_open_events(client) -> None:
    employee_id = _create_employee(client, "E-1004", "lee@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"])
    grant_id = _create_grant(client, employee_id, plan_id)["id"]
    client.post(f"/api/grants/{grant_id}/accept")

    forfeited = client.post(f"/api/grants/{grant_id}/forfeit")
    assert forfeited.status_code == 200
    assert forfeited.json()["status"] == "forfeited"

    events = client.get(f"/api/grants/{grant_id}/events").json()
    assert {event["status"] for event in events} == {"forfeited"}

    dashboard = client.get("/api/dashboard/summary").json()
    assert dashboard["pool_allocated"] == 0


def test_esop_events_are_exercised(client) -> None:
    employee_id = _create_employee(client, "E-1005", "kim@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"], plan_type="ESOP", code="ESOP-2024")
    response = client.post(
        "/api/grants",
        json={
            "employee_id": employee_id,
            "plan_id": plan_id,
            "grant_number": "G-ESOP-1",
            "grant_date": "2024-01-01",
            "total_shares": 4800,
            "exercise_price_cents": 250,
            "vesting_start_date": "2024-01-01",
        },
    )
    grant_id = response.json()["id"]
    cliff_id = client.post(f"/api/grants/{grant_id}/accept").json()[0]["id"]
    client.post(f"/api/vesting-events/{cliff_id}/process", json={"as_of": "2025-01-01"})

    exercised = client.post(f"/api/vesting-events/{cliff_id}/exercise")
    assert exercised.status_code == 200
    body = exercised.json()
    assert body["shares_exercised"] == 1200
    assert body["exercise_cost_cents"] == 300000
    assert body["event"]["status"] == "exercised"


def test_grant_creation_guards(client) -> None:
    employee_id = _create_employee(client, "E-1006", "ana@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"])
    _create_grant(client, employee_id, plan_id)

    duplicate = client.post(
        "/api/grants",
        json={
            "employee_id": employee_id,
            "plan_id": plan_id,
            "grant_number": "G-0001",
            "grant_date": "2024-01-01",
            "total_shares": 10,
            "vesting_start_date": "2024-01-01",
        },
    )
    assert duplicate.status_code == 409

    over_pool = client.post(
        "/api/grants",
        json={
            "employee_id": employee_id,
            "plan_id": plan_id,
            "grant_number": "G-0002",
            "grant_date": "2024-01-01",
            "total_shares": 2_000_000,
            "vesting_start_date": "2024-01-01",
        },
    )
    assert over_pool.status_code == 400

    backdated = client.post(
        "/api/grants",
        json={
            "employee_id": employee_id,
            "plan_id": plan_id,
            "grant_number": "G-0003",
            "grant_date": "2024-06-01",
            "total_shares": 10,
            "vesting_start_date": "2024-01-01",
        },
    )
    assert backdated.status_code == 422


def test_invalid_schedules_are_rejected(client) -> None:
    full_cliff = client.post(
        "/api/vesting-schedules",
        json={"name": "All cliff", "total_duration_months": 48, "cliff_months": 48},
    )
    assert full_cliff.status_code == 400

    uneven = client.post(
        "/api/vesting-schedules",
        json={"name": "Uneven", "total_duration_months": 40, "cliff_months": 12, "vesting_frequency": "quarterly"},
    )
    assert uneven.status_code == 400

    short_sum = client.post(
        "/api/vesting-schedules",
        json={
            "name": "Short",
            "milestones": [
                {"sequence_order": 0, "vesting_percentage": "50", "months_from_start": 12},
                {"sequence_order": 1, "vesting_percentage": "40", "months_from_start": 24},
            ],
        },
    )
    assert short_sum.status_code == 400
    assert "100" in short_sum.json()["detail"]

    assert client.get("/api/vesting-schedules").json() == []


def test_schedule_in_use_cannot_be_deleted(client) -> None:
    schedule_id = _create_schedule(client)["id"]
    unused_id = _create_schedule(client, name="Unused")["id"]
    _create_plan(client, schedule_id)

    assert client.delete(f"/api/vesting-schedules/{schedule_id}").status_code == 409
    assert client.delete(f"/api/vesting-schedules/{unused_id}").status_code == 204
    assert client.get(f"/api/vesting-schedules/{unused_id}").status_code == 404


def test_vesting_preview(client) -> None:
    response = client.post(
        "/api/vesting/preview",
        json={
            "total_shares": 50000,
            "vesting_start_date": "2024-01-01",
            "cliff_months": 12,
            "total_duration_months": 48,
            "vesting_frequency": "monthly",
        },
    )
    assert response.status_code == 200
    preview = response.json()
    assert preview["vesting_end_date"] == "2028-01-01"
    rows = preview["events"]
    assert len(rows) == 37
    assert rows[0]["shares"] == 12500
    assert rows[1]["shares"] == 1041
    assert rows[-1]["shares"] == 1065
    assert rows[-1]["cumulative_shares"] == 50000
    assert Decimal(rows[-1]["cumulative_percentage"]) == Decimal("100")

    invalid = client.post(
        "/api/vesting/preview",
        json={"total_shares": 100, "vesting_start_date": "2024-01-01", "cliff_months": 48, "total_duration_months": 48},
    )
    assert invalid.status_code == 400


def test_calculator_endpoints(client) -> None:
    tax = client.post(
        "/api/calculators/tax",
        json={"vested_shares": 1000, "current_price": "100", "annual_income": "120000"},
    )
    assert tax.status_code == 200
    assert Decimal(tax.json()["additional_tax_from_shares"]) == Decimal("10000")

    zakat = client.post(
        "/api/calculators/zakat",
        json={"vested_shares": 100, "current_price": "500", "cash_savings": "10000"},
    )
    assert zakat.status_code == 200
    assert zakat.json()["zakat_payable"] is True
    assert Decimal(zakat.json()["nisab_threshold"]) == Decimal("50575")


def test_employee_role_is_read_only_and_scoped(client) -> None:
    employee_id = _create_employee(client, "E-2001", "user@example.com")
    other_id = _create_employee(client, "E-2002", "other@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"])
    own_grant = _create_grant(client, employee_id, plan_id, number="G-2001")
    other_grant = _create_grant(client, other_id, plan_id, number="G-2002")
    client.post(f"/api/grants/{other_grant['id']}/accept")

    fake_employee_user = SimpleNamespace(
        id=22,
        email="user@example.com",
        full_name="Role Scoped User",
        role=UserRole.EMPLOYEE,
        employee_id=employee_id,
    )
    fake_employee_record = SimpleNamespace(
        id=employee_id,
        employee_code="E-2001",
        full_name="Role Scoped User",
        email="user@example.com",
        joining_date=date(2024, 1, 1),
        status="active",
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )

    admin_override = app.dependency_overrides[get_current_user]
    app.dependency_overrides[get_current_user] = lambda: fake_employee_user
    app.dependency_overrides[get_current_user_optional] = lambda: fake_employee_user
    app.dependency_overrides[get_current_employee_record] = lambda: fake_employee_record
    try:
        blocked_create = client.post(
            "/api/employees",
            json={
                "employee_code": "E-9999",
                "full_name": "Blocked",
                "email": "blocked@example.com",
                "joining_date": "2024-01-01",
                "status": "active",
            },
        )
        assert blocked_create.status_code == 403

        employees_visible = client.get("/api/employees")
        assert [row["email"] for row in employees_visible.json()] == ["user@example.com"]

        grants_visible = client.get("/api/grants")
        assert [row["id"] for row in grants_visible.json()] == [own_grant["id"]]

        assert client.get(f"/api/grants/{other_grant['id']}").status_code == 403
        assert client.get(f"/api/grants/{other_grant['id']}/events").status_code == 403
        assert client.get("/api/vesting-events").json() == []
        assert client.post(f"/api/grants/{other_grant['id']}/events/regenerate").status_code == 403

        accepted = client.post(f"/api/grants/{own_grant['id']}/accept")
        assert accepted.status_code == 200

        me = client.get("/api/auth/me").json()
        assert me["authenticated"] is True
        assert me["user"]["role"] == "employee"
    finally:
        app.dependency_overrides.pop(get_current_user_optional, None)
        app.dependency_overrides.pop(get_current_employee_record, None)
        app.dependency_overrides[get_current_user] = admin_override


def test_ledger_fields_lock_once_shares_settle(client) -> None:
    employee_id = _create_employee(client, "E-1101", "ola@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"])
    settled_id = _create_grant(client, employee_id, plan_id)["id"]
    open_id = _create_grant(client, employee_id, plan_id, number="G-0002")["id"]
    cliff_id = client.post(f"/api/grants/{settled_id}/accept").json()[0]["id"]
    client.post(f"/api/grants/{open_id}/accept")
    assert client.post(f"/api/vesting-events/{cliff_id}/process", json={"as_of": "2025-01-01"}).status_code == 200

    locked = client.patch(f"/api/grants/{settled_id}", json={"total_shares": 9600})
    assert locked.status_code == 409
    assert "total_shares" in locked.json()["detail"]
    assert client.get(f"/api/grants/{settled_id}").json()["total_shares"] == 4800
    assert client.patch(f"/api/grants/{settled_id}", json={"notes": "Board approved"}).status_code == 200

    resized = client.patch(f"/api/grants/{open_id}", json={"total_shares": 9600, "vesting_start_date": "2024-03-01"})
    assert resized.status_code == 200
    assert resized.json()["vesting_end_date"] == "2028-03-01"

    events = client.get(f"/api/grants/{open_id}/events").json()
    assert len(events) == 37
    assert sum(event["shares_to_vest"] for event in events) == 9600
    assert events[0]["shares_to_vest"] == 2400
    assert events[0]["vesting_date"] == "2025-03-01"


def test_schedule_cliff_percentage_sets_the_cliff_event(client) -> None:
    employee_id = _create_employee(client, "E-1102", "noor@example.com")
    schedule = _create_schedule(client, name="Half cliff", cliff_percentage="50")
    assert Decimal(schedule["milestones"][0]["vesting_percentage"]) == Decimal("50")

    plan_id = _create_plan(client, schedule["id"])
    assert "cliff_percentage" not in client.get(f"/api/plans/{plan_id}").json()

    grant_id = _create_grant(client, employee_id, plan_id)["id"]
    events = client.post(f"/api/grants/{grant_id}/accept").json()
    assert events[0]["event_type"] == "cliff"
    assert events[0]["shares_to_vest"] == 2400
    assert sum(event["shares_to_vest"] for event in events) == 4800


def test_milestones_inside_the_cliff_are_rejected(client) -> None:
    early = client.post(
        "/api/vesting-schedules",
        json={
            "name": "Early",
            "cliff_months": 12,
            "milestones": [
                {"sequence_order": 0, "vesting_percentage": "10", "months_from_start": 3},
                {"sequence_order": 1, "vesting_percentage": "90", "months_from_start": 24},
            ],
        },
    )
    assert early.status_code == 400
    assert "cliff" in early.json()["detail"]


def test_performance_events_and_partial_exercise(client) -> None:
    employee_id = _create_employee(client, "E-1103", "ravi@example.com")
    schedule = _create_schedule(client, name="Performance", schedule_type="performance_based")
    plan_id = _create_plan(client, schedule["id"], plan_type="ESOP", code="ESOP-PERF")
    response = client.post(
        "/api/grants",
        json={
            "employee_id": employee_id,
            "plan_id": plan_id,
            "grant_number": "G-PERF-1",
            "grant_date": "2024-01-01",
            "total_shares": 4800,
            "exercise_price_cents": 250,
            "vesting_start_date": "2024-01-01",
        },
    )
    events = client.post(f"/api/grants/{response.json()['id']}/accept").json()
    performance_id = events[1]["id"]
    assert events[1]["event_type"] == "performance"

    unconfirmed = client.post(f"/api/vesting-events/{performance_id}/process", json={"as_of": "2025-02-01"})
    assert unconfirmed.status_code == 409

    confirmed = client.post(
        f"/api/vesting-events/{performance_id}/process",
        json={"as_of": "2025-02-01", "performance_condition_met": True, "performance_notes": "Revenue target met"},
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["performance_condition_met"] is True
    assert confirmed.json()["performance_notes"] == "Revenue target met"

    shares = events[1]["shares_to_vest"]
    partial = client.post(f"/api/vesting-events/{performance_id}/exercise", json={"shares": 40})
    assert partial.status_code == 200
    assert partial.json()["shares_exercised"] == 40
    assert partial.json()["exercise_cost_cents"] == 10000
    assert partial.json()["event"]["status"] == "vested"
    assert partial.json()["event"]["exercised_shares"] == 40

    too_many = client.post(f"/api/vesting-events/{performance_id}/exercise", json={"shares": shares})
    assert too_many.status_code == 409

    rest = client.post(f"/api/vesting-events/{performance_id}/exercise")
    assert rest.json()["shares_exercised"] == shares - 40
    assert rest.json()["event"]["status"] == "exercised"


def test_backfill_events_for_active_grants(client, session_factory) -> None:
    employee_id = _create_employee(client, "E-1104", "mina@example.com")
    plan_id = _create_plan(client, _create_schedule(client)["id"])
    first_id = _create_grant(client, employee_id, plan_id)["id"]
    second_id = _create_grant(client, employee_id, plan_id, number="G-0002")["id"]
    _create_grant(client, employee_id, plan_id, number="G-0003")

    with session_factory() as db:
        for grant_id in (first_id, second_id):
            db.get(Grant, grant_id).status = GrantStatus.ACTIVE
        db.commit()

    missing = client.get("/api/grants/without-events")
    assert missing.status_code == 200
    assert {grant["id"] for grant in missing.json()} == {first_id, second_id}

    only_first = client.post("/api/grants/backfill-events", json={"grant_ids": [first_id], "as_of": "2025-01-15"})
    assert only_first.status_code == 200
    result = only_first.json()
    assert result["processed"] == 1
    assert result["skipped"] == 1
    assert result["errors"] == 0
    assert result["events_created"] == 37
    assert result["events_marked_due"] == 1

    events = client.get(f"/api/grants/{first_id}/events").json()
    assert events[0]["status"] == "due"
    assert [grant["id"] for grant in client.get("/api/grants/without-events").json()] == [second_id]

    remaining = client.post("/api/grants/backfill-events").json()
    assert remaining["processed"] == 1
    assert client.get("/api/grants/without-events").json() == []

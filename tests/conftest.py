from collections.abc import Callable, Generator
from datetime import date
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
import os
import sys

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTH_ENABLED", "true")

from ltipdesk.api.deps import get_current_user, get_current_user_optional, get_db_session
from ltipdesk.core.database import Base, build_engine
from ltipdesk.main import app
from ltipdesk.models import (
    Employee,
    Grant,
    IncentivePlan,
    PlanType,
    ScheduleType,
    UserRole,
    VestingFrequency,
    VestingMilestone,
    VestingSchedule,
)

ADMIN_USER = SimpleNamespace(
    id=1,
    email="admin@example.com",
    full_name="Plan Administrator",
    role=UserRole.ADMIN,
    employee_id=None,
)


@pytest.fixture()
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def client(session_factory) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: ADMIN_USER
    app.dependency_overrides[get_current_user_optional] = lambda: ADMIN_USER

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def make_grant(db_session) -> Callable[..., Grant]:
    counter = {"value": 0}

    def _make_grant(
        *,
        total_shares: int = 4800,
        plan_type: PlanType = PlanType.LTIP_RSU,
        exercise_price_cents: int = 0,
        milestones: list[tuple[str, int]] | None = None,
        cliff_months: int = 12,
        total_duration_months: int = 48,
        frequency: VestingFrequency = VestingFrequency.MONTHLY,
        schedule_type: ScheduleType = ScheduleType.TIME_BASED,
        attach_schedule_to_plan: bool = False,
    ) -> Grant:
        counter["value"] += 1
        suffix = counter["value"]

        employee = Employee(
            employee_code=f"E-{suffix:04d}",
            full_name=f"Employee {suffix}",
            email=f"employee{suffix}@example.com",
            joining_date=date(2023, 1, 1),
        )
        schedule = VestingSchedule(
            name=f"Schedule {suffix}",
            schedule_type=schedule_type,
            total_duration_months=total_duration_months,
            cliff_months=cliff_months,
            vesting_frequency=frequency,
            milestones=[
                VestingMilestone(
                    sequence_order=order, vesting_percentage=Decimal(percentage), months_from_start=months
                )
                for order, (percentage, months) in enumerate(milestones or [])
            ],
        )
        plan = IncentivePlan(
            plan_code=f"PLAN-{suffix}",
            name=f"Plan {suffix}",
            plan_type=plan_type,
            vesting_schedule=schedule if attach_schedule_to_plan else None,
        )
        grant = Grant(
            grant_number=f"G-{suffix:04d}",
            employee=employee,
            plan=plan,
            vesting_schedule=None if attach_schedule_to_plan else schedule,
            grant_date=date(2024, 1, 1),
            total_shares=total_shares,
            exercise_price_cents=exercise_price_cents,
            vesting_start_date=date(2024, 1, 1),
        )
        db_session.add(grant)
        db_session.commit()
        return grant

    return _make_grant

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from ltipdesk.api.deps import get_current_employee_record, get_current_user, get_db_session, require_admin
from ltipdesk.api.errors import ledger_errors
from ltipdesk.core.config import get_settings
from ltipdesk.models import (
    Employee,
    EmployeeStatus,
    Grant,
    GrantStatus,
    IncentivePlan,
    User,
    UserRole,
    VestingEvent,
    VestingSchedule,
)
from ltipdesk.schemas import (
    BackfillRequest,
    BackfillResult,
    GrantCreate,
    GrantRead,
    GrantUpdate,
    GrantVestingSummary,
    VestingEventRead,
)
from ltipdesk.services.vesting_events import (
    accept_grant,
    backfill_missing_events,
    close_grant,
    grants_without_events,
    regenerate_events,
    settled_events,
    summarize_grant,
)

router = APIRouter(prefix="/api/grants", tags=["grants"])
settings = get_settings()
logger = logging.getLogger(__name__)

LIVE_GRANT_STATUSES = (GrantStatus.PENDING_SIGNATURE, GrantStatus.ACTIVE, GrantStatus.COMPLETED)
LEDGER_FIELDS = ("total_shares", "vesting_start_date", "vesting_schedule_id")


def _assert_grant_access(grant: Grant, current_user: User, current_employee: Employee | None) -> None:
    if current_user.role == UserRole.ADMIN:
        return

    if current_employee is None or grant.employee_id != current_employee.id:
        raise HTTPException(status_code=403, detail="Not allowed")


def _load_grant(db: Session, grant_id: int) -> Grant:
    grant = db.scalar(
        select(Grant)
        .options(
            selectinload(Grant.employee),
            selectinload(Grant.plan).selectinload(IncentivePlan.vesting_schedule).selectinload(VestingSchedule.milestones),
            selectinload(Grant.vesting_schedule).selectinload(VestingSchedule.milestones),
            selectinload(Grant.vesting_events),
        )
        .where(Grant.id == grant_id)
    )
    if grant is None:
        raise HTTPException(status_code=404, detail="Grant not found")
    return grant


def _allocated_shares(db: Session, exclude_grant_id: int | None = None) -> int:
    stmt = select(func.coalesce(func.sum(Grant.total_shares), 0)).where(Grant.status.in_(LIVE_GRANT_STATUSES))
    if exclude_grant_id is not None:
        stmt = stmt.where(Grant.id != exclude_grant_id)
    return db.scalar(stmt) or 0


@router.post("", response_model=GrantRead, status_code=status.HTTP_201_CREATED)
def create_grant(
    payload: GrantCreate,
    db: Session = Depends(get_db_session),
    current_admin: User = Depends(require_admin),
) -> Grant:
    employee = db.get(Employee, payload.employee_id)
    if employee is None:
        raise HTTPException(status_code=404, detail="Employee not found")
    if employee.status != EmployeeStatus.ACTIVE:
        raise HTTPException(status_code=400, detail="Cannot assign grants to inactive employees")
    if employee.email.lower() == current_admin.email.lower():
        raise HTTPException(status_code=403, detail="Admins cannot assign grants to themselves")

    plan = db.get(IncentivePlan, payload.plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    if payload.vesting_schedule_id is not None and db.get(VestingSchedule, payload.vesting_schedule_id) is None:
        raise HTTPException(status_code=404, detail="Vesting schedule not found")
    if payload.vesting_schedule_id is None and plan.vesting_schedule_id is None:
        raise HTTPException(status_code=400, detail="Grant needs a vesting schedule or a plan with a template")

    number_exists = db.scalar(select(func.count()).select_from(Grant).where(Grant.grant_number == payload.grant_number))
    if number_exists:
        raise HTTPException(status_code=409, detail="Grant number already exists")

    if _allocated_shares(db) + payload.total_shares > settings.ltip_pool_size:
        raise HTTPException(status_code=400, detail="Grant exceeds available LTIP pool")

    grant = Grant(**payload.model_dump())
    db.add(grant)
    db.commit()
    db.refresh(grant)
    return grant


@router.get("", response_model=list[GrantRead])
def list_grants(
    employee_id: int | None = Query(default=None),
    status_filter: GrantStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> list[Grant]:
    stmt = select(Grant).order_by(Grant.id.desc()).limit(limit).offset(offset)
    if current_user.role == UserRole.EMPLOYEE:
        if current_employee is None:
            return []
        stmt = stmt.where(Grant.employee_id == current_employee.id)
    elif employee_id is not None:
        stmt = stmt.where(Grant.employee_id == employee_id)
    if status_filter is not None:
        stmt = stmt.where(Grant.status == status_filter)
    return list(db.scalars(stmt).all())


@router.get("/without-events", response_model=list[GrantRead])
def list_grants_without_events(
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> list[Grant]:
    return grants_without_events(db)


@router.post("/backfill-events", response_model=BackfillResult)
def backfill_events(
    payload: BackfillRequest | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> BackfillResult:
    payload = payload or BackfillRequest()
    result = backfill_missing_events(db, payload.as_of or date.today(), payload.grant_ids)
    db.commit()
    return result


@router.get("/{grant_id}", response_model=GrantRead)
def get_grant(
    grant_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> Grant:
    grant = db.get(Grant, grant_id)
    if grant is None:
        raise HTTPException(status_code=404, detail="Grant not found")
    _assert_grant_access(grant, current_user, current_employee)
    return grant


@router.patch("/{grant_id}", response_model=GrantRead)
def update_grant(
    grant_id: int,
    payload: GrantUpdate,
    db: Session = Depends(get_db_session),
    current_admin: User = Depends(require_admin),
) -> Grant:
    grant = _load_grant(db, grant_id)
    if grant.employee.email.lower() == current_admin.email.lower():
        raise HTTPException(status_code=403, detail="Admins cannot update their own grants")
    if grant.status in {GrantStatus.FORFEITED, GrantStatus.CANCELLED}:
        raise HTTPException(status_code=409, detail=f"Grant is {grant.status.value}")

    data = payload.model_dump(exclude_unset=True)
    schedule = grant.vesting_schedule
    if "vesting_schedule_id" in data:
        schedule = None
        if data["vesting_schedule_id"] is not None:
            schedule = db.get(VestingSchedule, data["vesting_schedule_id"])
            if schedule is None:
                raise HTTPException(status_code=404, detail="Vesting schedule not found")

    grant_date = data.get("grant_date", grant.grant_date)
    vesting_start_date = data.get("vesting_start_date", grant.vesting_start_date)
    if vesting_start_date < grant_date:
        raise HTTPException(status_code=400, detail="vesting_start_date cannot precede grant_date")

    changed_ledger_fields = sorted(
        field for field in LEDGER_FIELDS if field in data and data[field] != getattr(grant, field)
    )
    if changed_ledger_fields and settled_events(grant):
        raise HTTPException(
            status_code=409,
            detail=f"Grant has settled vesting events; {', '.join(changed_ledger_fields)} can no longer change",
        )

    if "total_shares" in data:
        if _allocated_shares(db, exclude_grant_id=grant_id) + data["total_shares"] > settings.ltip_pool_size:
            raise HTTPException(status_code=400, detail="Updated grant exceeds available LTIP pool")

    for key, value in data.items():
        if key != "vesting_schedule_id":
            setattr(grant, key, value)
    grant.vesting_schedule = schedule

    if changed_ledger_fields and grant.vesting_events:
        with ledger_errors():
            regenerate_events(db, grant)
        logger.info(
            "Grant %s ledger regenerated after %s changed", grant.grant_number, ", ".join(changed_ledger_fields)
        )

    db.add(grant)
    db.commit()
    db.refresh(grant)
    return grant


@router.post("/{grant_id}/accept", response_model=list[VestingEventRead])
def accept(
    grant_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> list[VestingEvent]:
    grant = _load_grant(db, grant_id)
    _assert_grant_access(grant, current_user, current_employee)

    with ledger_errors():
        events = accept_grant(db, grant)
    db.commit()
    logger.info("Grant %s accepted by user %s", grant.grant_number, current_user.id)
    return events


@router.post("/{grant_id}/forfeit", response_model=GrantRead)
def forfeit(
    grant_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> Grant:
    grant = _load_grant(db, grant_id)
    with ledger_errors():
        close_grant(grant, GrantStatus.FORFEITED)
    db.commit()
    db.refresh(grant)
    return grant


@router.post("/{grant_id}/cancel", response_model=GrantRead)
def cancel(
    grant_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> Grant:
    grant = _load_grant(db, grant_id)
    with ledger_errors():
        close_grant(grant, GrantStatus.CANCELLED)
    db.commit()
    db.refresh(grant)
    return grant


@router.get("/{grant_id}/events", response_model=list[VestingEventRead])
def list_grant_events(
    grant_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> list[VestingEvent]:
    grant = db.get(Grant, grant_id)
    if grant is None:
        raise HTTPException(status_code=404, detail="Grant not found")
    _assert_grant_access(grant, current_user, current_employee)

    events = db.scalars(
        select(VestingEvent).where(VestingEvent.grant_id == grant_id).order_by(VestingEvent.sequence_number.asc())
    ).all()
    return list(events)


@router.post("/{grant_id}/events/regenerate", response_model=list[VestingEventRead])
def regenerate(
    grant_id: int,
    db: Session = Depends(get_db_session),
    current_admin: User = Depends(require_admin),
) -> list[VestingEvent]:
    grant = _load_grant(db, grant_id)
    if grant.employee.email.lower() == current_admin.email.lower():
        raise HTTPException(status_code=403, detail="Admins cannot execute actions on their own grants")
    if grant.status != GrantStatus.ACTIVE:
        raise HTTPException(status_code=409, detail="Only active grants have vesting events to regenerate")

    with ledger_errors():
        events = regenerate_events(db, grant)
    db.commit()
    return events


@router.get("/{grant_id}/summary", response_model=GrantVestingSummary)
def grant_summary(
    grant_id: int,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> GrantVestingSummary:
    grant = _load_grant(db, grant_id)
    _assert_grant_access(grant, current_user, current_employee)

    effective_date = as_of or date.today()
    return summarize_grant(grant, effective_date)

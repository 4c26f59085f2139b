from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ltipdesk.api.deps import get_current_employee_record, get_current_user, get_db_session, require_admin
from ltipdesk.api.errors import ledger_errors
from ltipdesk.models import Employee, Grant, User, UserRole, VestingEvent, VestingEventStatus
from ltipdesk.schemas import (
    ExerciseRequest,
    ExerciseResult,
    ProcessEventRequest,
    StatusRefreshResult,
    VestingEventRead,
    VestingEventStats,
)
from ltipdesk.services.vesting_events import (
    event_stats,
    exercise_event,
    process_event,
    refresh_event_statuses,
    transfer_event,
)

router = APIRouter(prefix="/api/vesting-events", tags=["vesting-events"])


def _scoped_events(current_user: User, current_employee: Employee | None):
    stmt = select(VestingEvent).join(Grant, VestingEvent.grant_id == Grant.id)
    if current_user.role == UserRole.EMPLOYEE:
        employee_id = current_employee.id if current_employee is not None else -1
        stmt = stmt.where(Grant.employee_id == employee_id)
    return stmt


def _load_event(db: Session, event_id: int) -> VestingEvent:
    event = db.scalar(
        select(VestingEvent)
        .options(
            selectinload(VestingEvent.grant).selectinload(Grant.plan),
            selectinload(VestingEvent.grant).selectinload(Grant.vesting_events),
        )
        .where(VestingEvent.id == event_id)
    )
    if event is None:
        raise HTTPException(status_code=404, detail="Vesting event not found")
    return event


@router.get("", response_model=list[VestingEventRead])
def list_events(
    status_filter: VestingEventStatus | None = Query(default=None, alias="status"),
    due_before: date | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> list[VestingEvent]:
    stmt = _scoped_events(current_user, current_employee)
    if status_filter is not None:
        stmt = stmt.where(VestingEvent.status == status_filter)
    if due_before is not None:
        stmt = stmt.where(VestingEvent.vesting_date <= due_before)
    stmt = stmt.order_by(VestingEvent.vesting_date.asc(), VestingEvent.id.asc()).limit(limit).offset(offset)
    return list(db.scalars(stmt).all())


@router.get("/stats", response_model=VestingEventStats)
def stats(
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> VestingEventStats:
    events = db.scalars(_scoped_events(current_user, current_employee)).all()
    return event_stats(events)


@router.post("/refresh-statuses", response_model=StatusRefreshResult)
def refresh_statuses(
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> StatusRefreshResult:
    effective_date = as_of or date.today()
    marked = refresh_event_statuses(db, effective_date)
    db.commit()
    return StatusRefreshResult(as_of=effective_date, events_marked_due=marked)


@router.post("/{event_id}/process", response_model=VestingEventRead)
def process(
    event_id: int,
    payload: ProcessEventRequest,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> VestingEvent:
    event = _load_event(db, event_id)
    with ledger_errors():
        process_event(
            event,
            payload.as_of or date.today(),
            payload.fair_market_value_cents,
            performance_condition_met=payload.performance_condition_met,
            performance_notes=payload.performance_notes,
        )
    db.commit()
    db.refresh(event)
    return event


@router.post("/{event_id}/exercise", response_model=ExerciseResult)
def exercise(
    event_id: int,
    payload: ExerciseRequest | None = None,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> ExerciseResult:
    event = _load_event(db, event_id)
    if current_user.role != UserRole.ADMIN and (current_employee is None or event.grant.employee_id != current_employee.id):
        raise HTTPException(status_code=403, detail="Not allowed")

    with ledger_errors():
        shares, cost = exercise_event(event, payload.shares if payload is not None else None)
    db.commit()
    db.refresh(event)
    return ExerciseResult(
        event=VestingEventRead.model_validate(event),
        shares_exercised=shares,
        exercise_cost_cents=cost,
    )


@router.post("/{event_id}/transfer", response_model=VestingEventRead)
def transfer(
    event_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> VestingEvent:
    event = _load_event(db, event_id)
    with ledger_errors():
        transfer_event(event)
    db.commit()
    db.refresh(event)
    return event

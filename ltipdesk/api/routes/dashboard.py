from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from ltipdesk.api.deps import get_current_employee_record, get_current_user, get_db_session
from ltipdesk.core.config import get_settings
from ltipdesk.models import Employee, EmployeeStatus, Grant, GrantStatus, User, UserRole
from ltipdesk.schemas import DashboardSummary
from ltipdesk.services.vesting_events import summarize_grant

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])
settings = get_settings()

POOL_CONSUMING_STATUSES = {GrantStatus.PENDING_SIGNATURE, GrantStatus.ACTIVE, GrantStatus.COMPLETED}


@router.get("/summary", response_model=DashboardSummary)
def get_dashboard_summary(
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
    current_employee: Employee | None = Depends(get_current_employee_record),
) -> DashboardSummary:
    effective_date = as_of or date.today()

    stmt = (
        select(Grant)
        .options(selectinload(Grant.employee), selectinload(Grant.vesting_events))
        .order_by(Grant.id.desc())
    )
    if current_user.role == UserRole.EMPLOYEE:
        if current_employee is None:
            grants = []
        else:
            grants = db.scalars(stmt.where(Grant.employee_id == current_employee.id)).all()
    else:
        grants = db.scalars(stmt).all()

    grant_summaries = [summarize_grant(grant, effective_date) for grant in grants]

    if current_user.role == UserRole.EMPLOYEE:
        active_employees = 1 if current_employee and current_employee.status == EmployeeStatus.ACTIVE else 0
        total_employees = 1 if current_employee else 0
        pool_allocated = 0
        pool_remaining = 0
        pool_size = 0
    else:
        active_employees = db.scalar(
            select(func.count()).select_from(Employee).where(Employee.status == EmployeeStatus.ACTIVE)
        )
        total_employees = db.scalar(select(func.count()).select_from(Employee))
        pool_allocated = sum(grant.total_shares for grant in grants if grant.status in POOL_CONSUMING_STATUSES)
        pool_remaining = max(settings.ltip_pool_size - pool_allocated, 0)
        pool_size = settings.ltip_pool_size

    return DashboardSummary(
        as_of=effective_date,
        total_employees=total_employees or 0,
        active_employees=active_employees or 0,
        total_grants=len(grants),
        pool_size=pool_size,
        pool_allocated=pool_allocated,
        pool_remaining=pool_remaining,
        vested_shares=sum(item.vested_shares for item in grant_summaries),
        unvested_shares=sum(item.unvested_shares for item in grant_summaries),
        exercised_shares=sum(item.exercised_shares for item in grant_summaries),
        grant_summaries=grant_summaries,
    )

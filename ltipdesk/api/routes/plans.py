from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ltipdesk.api.deps import get_current_user, get_db_session, require_admin
from ltipdesk.models import IncentivePlan, PlanType, User, VestingSchedule
from ltipdesk.schemas import IncentivePlanCreate, IncentivePlanRead

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.post("", response_model=IncentivePlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: IncentivePlanCreate,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> IncentivePlan:
    code_exists = db.scalar(select(func.count()).select_from(IncentivePlan).where(IncentivePlan.plan_code == payload.plan_code))
    if code_exists:
        raise HTTPException(status_code=409, detail="Plan code already exists")

    if payload.vesting_schedule_id is not None and db.get(VestingSchedule, payload.vesting_schedule_id) is None:
        raise HTTPException(status_code=404, detail="Vesting schedule not found")

    plan = IncentivePlan(**payload.model_dump())
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@router.get("", response_model=list[IncentivePlanRead])
def list_plans(
    plan_type: PlanType | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(get_current_user),
) -> list[IncentivePlan]:
    stmt = select(IncentivePlan).order_by(IncentivePlan.id.desc())
    if plan_type is not None:
        stmt = stmt.where(IncentivePlan.plan_type == plan_type)
    return list(db.scalars(stmt).all())


@router.get("/{plan_id}", response_model=IncentivePlanRead)
def get_plan(
    plan_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(get_current_user),
) -> IncentivePlan:
    plan = db.get(IncentivePlan, plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    return plan

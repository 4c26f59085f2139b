import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from ltipdesk.api.deps import get_current_user, get_db_session, require_admin
from ltipdesk.core.config import get_settings
from ltipdesk.models import Grant, IncentivePlan, User, VestingMilestone, VestingSchedule
from ltipdesk.schemas import (
    VestingPreview,
    VestingPreviewRequest,
    VestingPreviewRow,
    VestingScheduleCreate,
    VestingScheduleRead,
)
from ltipdesk.services.vesting import (
    MILESTONE_TYPE_FOR_SCHEDULE,
    PlannedMilestone,
    VestingConfigError,
    build_vesting_table,
    milestones_for_config,
    validate_milestones,
    vesting_end_date,
)

router = APIRouter(tags=["vesting-schedules"])
settings = get_settings()
logger = logging.getLogger(__name__)


def _load_schedule(db: Session, schedule_id: int) -> VestingSchedule:
    schedule = db.scalar(
        select(VestingSchedule)
        .options(selectinload(VestingSchedule.milestones))
        .where(VestingSchedule.id == schedule_id)
    )
    if schedule is None:
        raise HTTPException(status_code=404, detail="Vesting schedule not found")
    return schedule


@router.post("/api/vesting-schedules", response_model=VestingScheduleRead, status_code=status.HTTP_201_CREATED)
def create_schedule(
    payload: VestingScheduleCreate,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> VestingSchedule:
    cliff_percentage = payload.cliff_percentage
    if cliff_percentage is None:
        cliff_percentage = settings.default_cliff_percentage

    try:
        if payload.milestones:
            if payload.cliff_months >= payload.total_duration_months:
                raise VestingConfigError("cliff_months must be shorter than total_duration_months")
            milestones = validate_milestones(
                [
                    PlannedMilestone(
                        sequence_order=item.sequence_order,
                        vesting_percentage=item.vesting_percentage,
                        months_from_start=item.months_from_start,
                        milestone_type=item.milestone_type,
                    )
                    for item in payload.milestones
                ],
                payload.cliff_months,
            )
            if milestones[-1].months_from_start > payload.total_duration_months:
                raise VestingConfigError("milestones cannot extend past total_duration_months")
        else:
            milestones = milestones_for_config(
                payload.total_duration_months,
                payload.cliff_months,
                payload.vesting_frequency,
                cliff_percentage,
                milestone_type=MILESTONE_TYPE_FOR_SCHEDULE[payload.schedule_type],
            )
    except VestingConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    schedule = VestingSchedule(
        name=payload.name,
        description=payload.description,
        schedule_type=payload.schedule_type,
        total_duration_months=payload.total_duration_months,
        cliff_months=payload.cliff_months,
        vesting_frequency=payload.vesting_frequency,
        cliff_percentage=payload.cliff_percentage,
        is_template=True,
        milestones=[
            VestingMilestone(
                milestone_type=milestone.milestone_type,
                sequence_order=milestone.sequence_order,
                vesting_percentage=milestone.vesting_percentage,
                months_from_start=milestone.months_from_start,
            )
            for milestone in milestones
        ],
    )
    db.add(schedule)
    db.commit()
    logger.info("Created vesting schedule %s with %s milestones", schedule.id, len(milestones))
    return _load_schedule(db, schedule.id)


@router.get("/api/vesting-schedules", response_model=list[VestingScheduleRead])
def list_schedules(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db_session),
    _: User = Depends(get_current_user),
) -> list[VestingSchedule]:
    stmt = (
        select(VestingSchedule)
        .options(selectinload(VestingSchedule.milestones))
        .order_by(VestingSchedule.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(stmt).all())


@router.get("/api/vesting-schedules/{schedule_id}", response_model=VestingScheduleRead)
def get_schedule(
    schedule_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(get_current_user),
) -> VestingSchedule:
    return _load_schedule(db, schedule_id)


@router.delete("/api/vesting-schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule(
    schedule_id: int,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_admin),
) -> None:
    schedule = _load_schedule(db, schedule_id)

    in_use = db.scalar(
        select(func.count()).select_from(Grant).where(Grant.vesting_schedule_id == schedule_id)
    ) or db.scalar(
        select(func.count()).select_from(IncentivePlan).where(IncentivePlan.vesting_schedule_id == schedule_id)
    )
    if in_use:
        raise HTTPException(status_code=409, detail="Vesting schedule is referenced by plans or grants")

    db.delete(schedule)
    db.commit()


@router.post("/api/vesting/preview", response_model=VestingPreview)
def preview_vesting(payload: VestingPreviewRequest, _: User = Depends(get_current_user)) -> VestingPreview:
    cliff_percentage = payload.cliff_percentage
    if cliff_percentage is None:
        cliff_percentage = settings.default_cliff_percentage

    try:
        rows = build_vesting_table(
            payload.total_shares,
            payload.vesting_start_date,
            cliff_months=payload.cliff_months,
            total_duration_months=payload.total_duration_months,
            frequency=payload.vesting_frequency,
            cliff_percentage=cliff_percentage,
        )
    except VestingConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return VestingPreview(
        total_shares=payload.total_shares,
        vesting_end_date=vesting_end_date(payload.vesting_start_date, payload.total_duration_months),
        events=[
            VestingPreviewRow(
                sequence=row.sequence,
                months_from_start=row.months_from_start,
                vesting_date=row.vesting_date,
                event_type=row.event_type,
                percentage=row.percentage,
                shares=row.shares,
                cumulative_percentage=row.cumulative_percentage,
                cumulative_shares=row.cumulative_shares,
            )
            for row in rows
        ],
    )

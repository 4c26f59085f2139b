import logging
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ltipdesk.core.config import get_settings
from ltipdesk.models import (
    Grant,
    GrantStatus,
    PlanType,
    VestingEvent,
    VestingEventStatus,
    VestingEventType,
    VestingSchedule,
    utcnow,
)
from ltipdesk.schemas import BackfillResult, GrantVestingSummary, VestingEventStats
from ltipdesk.services.vesting import (
    PlannedMilestone,
    ScheduledVest,
    VestingConfigError,
    build_vesting_table,
    expand_milestones,
)

logger = logging.getLogger(__name__)

OPEN_STATUSES = frozenset({VestingEventStatus.PENDING, VestingEventStatus.DUE})
SETTLED_STATUSES = frozenset(
    {VestingEventStatus.VESTED, VestingEventStatus.TRANSFERRED, VestingEventStatus.EXERCISED}
)
CLOSED_STATUSES = frozenset({VestingEventStatus.FORFEITED, VestingEventStatus.CANCELLED})

_CLOSING_EVENT_STATUS = {
    GrantStatus.FORFEITED: VestingEventStatus.FORFEITED,
    GrantStatus.CANCELLED: VestingEventStatus.CANCELLED,
}


class MissingScheduleError(Exception):
    pass


class RegenerationRefusedError(Exception):
    pass


class EventTransitionError(Exception):
    pass


def resolve_schedule(grant: Grant) -> VestingSchedule:
    schedule = grant.vesting_schedule
    if schedule is None and grant.plan is not None:
        schedule = grant.plan.vesting_schedule
    if schedule is None:
        raise MissingScheduleError(f"Grant {grant.grant_number} has no vesting schedule or plan template")
    return schedule


def _cliff_percentage(schedule: VestingSchedule) -> Decimal:
    if schedule.cliff_percentage is not None:
        return Decimal(schedule.cliff_percentage)
    return get_settings().default_cliff_percentage


def plan_grant_events(grant: Grant, schedule: VestingSchedule | None = None) -> list[ScheduledVest]:
    schedule = schedule or resolve_schedule(grant)
    if schedule.milestones:
        milestones = [
            PlannedMilestone(
                sequence_order=milestone.sequence_order,
                vesting_percentage=Decimal(milestone.vesting_percentage),
                months_from_start=milestone.months_from_start,
                milestone_type=milestone.milestone_type,
            )
            for milestone in schedule.milestones
        ]
        return expand_milestones(
            grant.total_shares,
            grant.vesting_start_date,
            milestones,
            schedule_type=schedule.schedule_type,
            cliff_months=schedule.cliff_months,
        )

    return build_vesting_table(
        grant.total_shares,
        grant.vesting_start_date,
        cliff_months=schedule.cliff_months,
        total_duration_months=schedule.total_duration_months,
        frequency=schedule.vesting_frequency,
        cliff_percentage=_cliff_percentage(schedule),
        schedule_type=schedule.schedule_type,
    )


def _write_events(grant: Grant, schedule: VestingSchedule, rows: list[ScheduledVest]) -> list[VestingEvent]:
    milestone_ids = {milestone.sequence_order: milestone.id for milestone in schedule.milestones}
    events = [
        VestingEvent(
            vesting_schedule_id=schedule.id,
            milestone_id=milestone_ids.get(row.milestone_order) if row.milestone_order is not None else None,
            event_type=row.event_type,
            sequence_number=row.sequence,
            vesting_date=row.vesting_date,
            vesting_percentage=row.percentage,
            shares_to_vest=row.shares,
            cumulative_percentage=row.cumulative_percentage,
            cumulative_shares_vested=row.cumulative_shares,
            status=VestingEventStatus.PENDING,
            exercised_shares=0,
            performance_condition_met=False,
        )
        for row in rows
    ]
    grant.vesting_events.extend(events)
    grant.vesting_end_date = rows[-1].vesting_date
    sync_grant_totals(grant)
    return events


def generate_events(db: Session, grant: Grant) -> list[VestingEvent]:
    if grant.vesting_events:
        raise RegenerationRefusedError(
            f"Grant {grant.grant_number} already has vesting events; regenerate them instead"
        )

    schedule = resolve_schedule(grant)
    rows = plan_grant_events(grant, schedule)
    events = _write_events(grant, schedule, rows)
    db.flush()
    logger.info("Generated %s vesting events for grant %s", len(events), grant.grant_number)
    return events


def settled_events(grant: Grant) -> list[VestingEvent]:
    return [event for event in grant.vesting_events if event.status in SETTLED_STATUSES]


def regenerate_events(db: Session, grant: Grant) -> list[VestingEvent]:
    """Replace every vesting event of a grant with a freshly computed set.

    Refused once any event has settled, since that would erase real share movements.
    The delete and the insert share one transaction; the caller commits.
    """
    settled = settled_events(grant)
    if settled:
        logger.warning(
            "Refusing to regenerate grant %s: %s vesting events already settled", grant.grant_number, len(settled)
        )
        raise RegenerationRefusedError(
            f"Grant {grant.grant_number} has {len(settled)} vested, transferred or exercised events "
            "and cannot be regenerated"
        )

    schedule = resolve_schedule(grant)
    rows = plan_grant_events(grant, schedule)

    previous = len(grant.vesting_events)
    grant.vesting_events.clear()
    # Old rows must be gone before the new ones reuse their sequence numbers.
    db.flush()

    events = _write_events(grant, schedule, rows)
    db.flush()
    logger.info(
        "Regenerated vesting events for grant %s: replaced %s with %s", grant.grant_number, previous, len(events)
    )
    return events


def accept_grant(db: Session, grant: Grant, accepted_at: datetime | None = None) -> list[VestingEvent]:
    if grant.status != GrantStatus.PENDING_SIGNATURE:
        raise EventTransitionError(f"Grant {grant.grant_number} is {grant.status.value}, not awaiting signature")

    grant.status = GrantStatus.ACTIVE
    grant.employee_acceptance_at = accepted_at or utcnow()
    return generate_events(db, grant)


def close_grant(grant: Grant, status: GrantStatus) -> int:
    event_status = _CLOSING_EVENT_STATUS.get(status)
    if event_status is None:
        raise EventTransitionError(f"Grants cannot be closed as {status.value}")
    if grant.status not in {GrantStatus.PENDING_SIGNATURE, GrantStatus.ACTIVE}:
        raise EventTransitionError(f"Grant {grant.grant_number} is already {grant.status.value}")

    closed = 0
    for event in grant.vesting_events:
        if event.status in OPEN_STATUSES:
            event.status = event_status
            closed += 1

    grant.status = status
    sync_grant_totals(grant)
    logger.info("Grant %s marked %s, %s open vesting events closed", grant.grant_number, status.value, closed)
    return closed


def refresh_event_statuses(db: Session, as_of: date) -> int:
    events = db.scalars(
        select(VestingEvent)
        .join(Grant, VestingEvent.grant_id == Grant.id)
        .where(
            Grant.status == GrantStatus.ACTIVE,
            VestingEvent.status == VestingEventStatus.PENDING,
            VestingEvent.vesting_date <= as_of,
        )
    ).all()
    for event in events:
        event.status = VestingEventStatus.DUE
    if events:
        logger.info("Marked %s vesting events due as of %s", len(events), as_of.isoformat())
    return len(events)


def process_event(
    event: VestingEvent,
    as_of: date,
    fair_market_value_cents: int | None = None,
    *,
    performance_condition_met: bool = False,
    performance_notes: str | None = None,
) -> VestingEvent:
    if event.status not in OPEN_STATUSES:
        raise EventTransitionError(f"Cannot vest an event that is {event.status.value}")
    if event.grant.status != GrantStatus.ACTIVE:
        raise EventTransitionError("Only events of active grants can vest")
    if event.vesting_date > as_of:
        raise EventTransitionError(f"Vesting date {event.vesting_date.isoformat()} has not been reached")
    if event.event_type == VestingEventType.PERFORMANCE and not performance_condition_met:
        raise EventTransitionError("Performance events need the performance condition confirmed before vesting")

    event.status = VestingEventStatus.VESTED
    event.processed_at = utcnow()
    event.fair_market_value_cents = fair_market_value_cents
    if event.event_type == VestingEventType.PERFORMANCE:
        event.performance_condition_met = True
        event.performance_notes = performance_notes
    sync_grant_totals(event.grant)
    return event


def exercise_event(event: VestingEvent, shares: int | None = None) -> tuple[int, int]:
    """Exercise some or all of a vested ESOP event; returns (shares exercised, cost in cents).

    A partial exercise leaves the event vested until its last share is exercised.
    """
    if event.grant.plan.plan_type != PlanType.ESOP:
        raise EventTransitionError("Exercise is only available for ESOP plans")
    if event.status != VestingEventStatus.VESTED:
        raise EventTransitionError("Event must be vested before exercise")

    remaining = event.shares_to_vest - event.exercised_shares
    if shares is None:
        shares = remaining
    if shares <= 0 or shares > remaining:
        raise EventTransitionError(f"Can exercise between 1 and {remaining} shares of this event")

    event.exercised_shares += shares
    event.processed_at = utcnow()
    if event.exercised_shares == event.shares_to_vest:
        event.status = VestingEventStatus.EXERCISED
    sync_grant_totals(event.grant)
    return shares, shares * event.grant.exercise_price_cents


def transfer_event(event: VestingEvent) -> VestingEvent:
    if event.grant.plan.plan_type == PlanType.ESOP:
        raise EventTransitionError("ESOP options are exercised, not transferred")
    if event.status != VestingEventStatus.VESTED:
        raise EventTransitionError("Event must be vested before transfer")

    event.status = VestingEventStatus.TRANSFERRED
    event.processed_at = utcnow()
    sync_grant_totals(event.grant)
    return event


def vested_shares_from_events(events: Iterable[VestingEvent]) -> int:
    return sum(event.shares_to_vest for event in events if event.status in SETTLED_STATUSES)


def sync_grant_totals(grant: Grant) -> None:
    grant.vested_shares = vested_shares_from_events(grant.vesting_events)

    live = [event for event in grant.vesting_events if event.status not in CLOSED_STATUSES]
    if grant.status == GrantStatus.ACTIVE and live and all(event.status in SETTLED_STATUSES for event in live):
        grant.status = GrantStatus.COMPLETED
        logger.info("Grant %s fully vested", grant.grant_number)


def event_stats(events: Iterable[VestingEvent]) -> VestingEventStats:
    counts = {status: 0 for status in VestingEventStatus}
    shares = {status: 0 for status in VestingEventStatus}
    for event in events:
        counts[event.status] += 1
        shares[event.status] += event.shares_to_vest

    return VestingEventStats(
        total_events=sum(counts.values()),
        total_shares=sum(shares.values()),
        events_by_status={status.value: count for status, count in counts.items()},
        shares_by_status={status.value: amount for status, amount in shares.items()},
        processed_events=counts[VestingEventStatus.TRANSFERRED] + counts[VestingEventStatus.EXERCISED],
    )


def summarize_grant(grant: Grant, as_of: date) -> GrantVestingSummary:
    events = sorted(grant.vesting_events, key=lambda event: event.sequence_number)
    vested = vested_shares_from_events(events)
    open_events = [event for event in events if event.status in OPEN_STATUSES]
    unvested = sum(event.shares_to_vest for event in open_events)
    closed = sum(event.shares_to_vest for event in events if event.status in CLOSED_STATUSES)
    scheduled = sum(
        event.shares_to_vest
        for event in events
        if event.status not in CLOSED_STATUSES and event.vesting_date <= as_of
    )
    upcoming = [event for event in open_events if event.vesting_date > as_of]
    next_event = upcoming[0] if upcoming else None

    return GrantVestingSummary(
        grant_id=grant.id,
        grant_number=grant.grant_number,
        employee_id=grant.employee_id,
        employee_name=grant.employee.full_name,
        status=grant.status,
        as_of=as_of,
        total_shares=grant.total_shares,
        vested_shares=vested,
        unvested_shares=unvested,
        forfeited_shares=closed,
        scheduled_to_date=scheduled,
        exercised_shares=sum(event.exercised_shares for event in events),
        next_vesting_date=next_event.vesting_date if next_event else None,
        next_vesting_shares=next_event.shares_to_vest if next_event else 0,
    )


def grants_without_events(db: Session) -> list[Grant]:
    return list(
        db.scalars(
            select(Grant)
            .where(Grant.status == GrantStatus.ACTIVE, ~Grant.vesting_events.any())
            .order_by(Grant.created_at.desc(), Grant.id.desc())
        ).all()
    )


def backfill_missing_events(db: Session, as_of: date, grant_ids: Iterable[int] | None = None) -> BackfillResult:
    selected = set(grant_ids or ())
    candidates = grants_without_events(db)

    processed = skipped = events_created = 0
    error_details: list[str] = []
    for grant in candidates:
        if selected and grant.id not in selected:
            skipped += 1
            continue
        try:
            events = generate_events(db, grant)
        except (MissingScheduleError, VestingConfigError) as exc:
            logger.warning("Could not backfill vesting events for grant %s: %s", grant.grant_number, exc)
            error_details.append(f"{grant.grant_number}: {exc}")
            continue
        processed += 1
        events_created += len(events)

    marked = refresh_event_statuses(db, as_of)
    logger.info("Backfilled %s grants with %s vesting events", processed, events_created)
    return BackfillResult(
        as_of=as_of,
        candidate_grants=len(candidates),
        processed=processed,
        skipped=skipped,
        errors=len(error_details),
        error_details=error_details,
        events_created=events_created,
        events_marked_due=marked,
    )

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from dateutil.relativedelta import relativedelta

from ltipdesk.models import MilestoneType, ScheduleType, VestingEventType, VestingFrequency

HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.0001")
DEFAULT_CLIFF_PERCENTAGE = Decimal("25")

MILESTONE_TYPE_FOR_SCHEDULE = {
    ScheduleType.TIME_BASED: MilestoneType.TIME,
    ScheduleType.PERFORMANCE_BASED: MilestoneType.PERFORMANCE,
    ScheduleType.HYBRID: MilestoneType.HYBRID,
}


class VestingConfigError(ValueError):
    pass


class ScheduleReconciliationError(RuntimeError):
    pass


@dataclass(frozen=True)
class PlannedMilestone:
    sequence_order: int
    vesting_percentage: Decimal
    months_from_start: int
    milestone_type: MilestoneType = MilestoneType.TIME


@dataclass(frozen=True)
class ScheduledVest:
    sequence: int
    months_from_start: int
    vesting_date: date
    event_type: VestingEventType
    percentage: Decimal
    shares: int
    cumulative_percentage: Decimal
    cumulative_shares: int
    milestone_order: int | None = None


@dataclass(frozen=True)
class _Allocation:
    months_from_start: int
    event_type: VestingEventType
    percentage: Decimal
    shares: int
    milestone_order: int | None = None


def add_months(start: date, months: int) -> date:
    return start + relativedelta(months=months)


def vesting_end_date(start: date, total_duration_months: int) -> date:
    return add_months(start, total_duration_months)


def frequency_in_months(frequency: VestingFrequency | str | int) -> int:
    if isinstance(frequency, int) and not isinstance(frequency, bool):
        if frequency <= 0:
            raise VestingConfigError("vesting frequency must be a positive number of months")
        return frequency
    try:
        return VestingFrequency(frequency).months
    except ValueError as exc:
        raise VestingConfigError(f"Unknown vesting frequency: {frequency!r}") from exc


def _as_percentage(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _floor_share(total_shares: int, percentage: Decimal) -> int:
    return int((Decimal(total_shares) * percentage / HUNDRED).to_integral_value(rounding=ROUND_FLOOR))


def _round_share(total_shares: int, percentage: Decimal) -> int:
    return int((Decimal(total_shares) * percentage / HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def _split_percentage(budget: Decimal, periods: int) -> list[Decimal]:
    share = (budget / periods).quantize(PERCENT_QUANTUM, rounding=ROUND_DOWN)
    return [share] * (periods - 1) + [budget - share * (periods - 1)]


def validate_schedule_config(
    total_duration_months: int,
    cliff_months: int,
    frequency: VestingFrequency | str | int,
    cliff_percentage: Decimal | int | str = DEFAULT_CLIFF_PERCENTAGE,
) -> int:
    """Check a cliff-plus-periodic configuration and return the number of post-cliff periods."""
    frequency_months = frequency_in_months(frequency)
    cliff_percentage = _as_percentage(cliff_percentage)

    if total_duration_months <= 0:
        raise VestingConfigError("total_duration_months must be positive")
    if cliff_months < 0:
        raise VestingConfigError("cliff_months cannot be negative")
    if cliff_months >= total_duration_months:
        raise VestingConfigError("cliff_months must be shorter than total_duration_months")
    if not Decimal(0) <= cliff_percentage < HUNDRED:
        raise VestingConfigError("cliff_percentage must be at least 0 and below 100")

    post_cliff_months = total_duration_months - cliff_months
    if post_cliff_months % frequency_months != 0:
        raise VestingConfigError(
            f"post-cliff span of {post_cliff_months} months is not divisible by a {frequency_months}-month frequency"
        )
    return post_cliff_months // frequency_months


def _finalize(allocations: Sequence[_Allocation], start_date: date, total_shares: int) -> list[ScheduledVest]:
    rows: list[ScheduledVest] = []
    cumulative_percentage = Decimal(0)
    cumulative_shares = 0
    for sequence, allocation in enumerate(allocations):
        cumulative_percentage += allocation.percentage
        cumulative_shares += allocation.shares
        rows.append(
            ScheduledVest(
                sequence=sequence,
                months_from_start=allocation.months_from_start,
                vesting_date=add_months(start_date, allocation.months_from_start),
                event_type=allocation.event_type,
                percentage=allocation.percentage,
                shares=allocation.shares,
                cumulative_percentage=cumulative_percentage,
                cumulative_shares=cumulative_shares,
                milestone_order=allocation.milestone_order,
            )
        )
    assert_reconciled(rows, total_shares)
    return rows


def assert_reconciled(rows: Sequence[ScheduledVest], total_shares: int) -> None:
    if not rows:
        raise ScheduleReconciliationError("schedule produced no vesting events")
    if any(row.shares < 0 for row in rows):
        raise ScheduleReconciliationError("schedule allocated a negative share count")
    allocated = sum(row.shares for row in rows)
    if allocated != total_shares:
        raise ScheduleReconciliationError(f"schedule allocated {allocated} of {total_shares} shares")
    if rows[-1].cumulative_percentage != HUNDRED:
        raise ScheduleReconciliationError(
            f"schedule closes at {rows[-1].cumulative_percentage}% instead of 100%"
        )
    for previous, current in zip(rows, rows[1:]):
        if current.vesting_date <= previous.vesting_date:
            raise ScheduleReconciliationError("vesting dates must be strictly increasing")


def build_vesting_table(
    total_shares: int,
    start_date: date,
    *,
    cliff_months: int,
    total_duration_months: int,
    frequency: VestingFrequency | str | int,
    cliff_percentage: Decimal | int | str = DEFAULT_CLIFF_PERCENTAGE,
    schedule_type: ScheduleType = ScheduleType.TIME_BASED,
) -> list[ScheduledVest]:
    """Cliff-plus-periodic vesting table.

    The cliff event takes ``floor(total * cliff_percentage / 100)`` shares, every
    post-cliff period takes an even floor share of the rest and the last period
    absorbs whatever rounding left over, so the table always sums to ``total_shares``.
    A zero percent cliff emits no cliff row, matching ``milestones_for_config``.
    """
    if total_shares < 0:
        raise VestingConfigError("total_shares cannot be negative")
    cliff_percentage = _as_percentage(cliff_percentage)
    periods = validate_schedule_config(total_duration_months, cliff_months, frequency, cliff_percentage)
    frequency_months = frequency_in_months(frequency)

    allocations: list[_Allocation] = []
    cliff_shares = 0
    cliff_share_of_total = Decimal(0)
    if cliff_months > 0 and cliff_percentage > 0:
        cliff_shares = _floor_share(total_shares, cliff_percentage)
        cliff_share_of_total = cliff_percentage
        allocations.append(
            _Allocation(
                months_from_start=cliff_months,
                event_type=VestingEventType.CLIFF,
                percentage=cliff_percentage,
                shares=cliff_shares,
            )
        )

    remaining_shares = total_shares - cliff_shares
    shares_per_period = remaining_shares // periods
    percentages = _split_percentage(HUNDRED - cliff_share_of_total, periods)
    periodic_type = _event_type_for(schedule_type, MILESTONE_TYPE_FOR_SCHEDULE[schedule_type])

    for period in range(1, periods + 1):
        is_last = period == periods
        shares = remaining_shares - shares_per_period * (periods - 1) if is_last else shares_per_period
        allocations.append(
            _Allocation(
                months_from_start=cliff_months + period * frequency_months,
                event_type=periodic_type,
                percentage=percentages[period - 1],
                shares=shares,
            )
        )

    return _finalize(allocations, start_date, total_shares)


def validate_milestones(milestones: Iterable[PlannedMilestone], cliff_months: int = 0) -> list[PlannedMilestone]:
    ordered = sorted(milestones, key=lambda milestone: milestone.sequence_order)
    if not ordered:
        raise VestingConfigError("a vesting schedule needs at least one milestone")

    orders = [milestone.sequence_order for milestone in ordered]
    if len(set(orders)) != len(orders):
        raise VestingConfigError("milestone sequence_order values must be unique")

    previous_months = 0
    for milestone in ordered:
        percentage = _as_percentage(milestone.vesting_percentage)
        if percentage <= 0 or percentage > HUNDRED:
            raise VestingConfigError(
                f"milestone {milestone.sequence_order} vesting_percentage must be above 0 and at most 100"
            )
        if milestone.months_from_start <= previous_months:
            raise VestingConfigError("milestone months_from_start must be positive and strictly increasing")
        if milestone.months_from_start < cliff_months:
            raise VestingConfigError(
                f"milestone {milestone.sequence_order} vests at month {milestone.months_from_start}, "
                f"before the {cliff_months}-month cliff"
            )
        previous_months = milestone.months_from_start

    total_percentage = sum((_as_percentage(milestone.vesting_percentage) for milestone in ordered), Decimal(0))
    if total_percentage != HUNDRED:
        raise VestingConfigError(f"milestone percentages sum to {total_percentage}, expected 100")
    return ordered


def _event_type_for(
    schedule_type: ScheduleType, milestone_type: MilestoneType
) -> VestingEventType:
    if milestone_type != MilestoneType.TIME or schedule_type == ScheduleType.PERFORMANCE_BASED:
        return VestingEventType.PERFORMANCE
    return VestingEventType.TIME_BASED


def expand_milestones(
    total_shares: int,
    start_date: date,
    milestones: Iterable[PlannedMilestone],
    *,
    schedule_type: ScheduleType = ScheduleType.TIME_BASED,
    cliff_months: int = 0,
) -> list[ScheduledVest]:
    """Turn a milestone template into dated events for one grant.

    Each milestone gets ``round(percentage / 100 * total_shares)`` shares, never more
    than is left, and the final milestone takes the exact remainder.
    """
    if total_shares < 0:
        raise VestingConfigError("total_shares cannot be negative")
    ordered = validate_milestones(milestones, cliff_months)

    allocations: list[_Allocation] = []
    allocated = 0
    for index, milestone in enumerate(ordered):
        percentage = _as_percentage(milestone.vesting_percentage)
        if index == len(ordered) - 1:
            shares = total_shares - allocated
        else:
            shares = min(_round_share(total_shares, percentage), total_shares - allocated)
        allocated += shares

        if index == 0 and cliff_months > 0 and milestone.months_from_start == cliff_months:
            event_type = VestingEventType.CLIFF
        else:
            event_type = _event_type_for(schedule_type, milestone.milestone_type)

        allocations.append(
            _Allocation(
                months_from_start=milestone.months_from_start,
                event_type=event_type,
                percentage=percentage,
                shares=shares,
                milestone_order=milestone.sequence_order,
            )
        )

    return _finalize(allocations, start_date, total_shares)


def milestones_for_config(
    total_duration_months: int,
    cliff_months: int,
    frequency: VestingFrequency | str | int,
    cliff_percentage: Decimal | int | str = DEFAULT_CLIFF_PERCENTAGE,
    milestone_type: MilestoneType = MilestoneType.TIME,
) -> list[PlannedMilestone]:
    cliff_percentage = _as_percentage(cliff_percentage)
    periods = validate_schedule_config(total_duration_months, cliff_months, frequency, cliff_percentage)
    frequency_months = frequency_in_months(frequency)

    milestones: list[PlannedMilestone] = []
    if cliff_months > 0 and cliff_percentage > 0:
        milestones.append(
            PlannedMilestone(
                sequence_order=0,
                vesting_percentage=cliff_percentage,
                months_from_start=cliff_months,
                milestone_type=milestone_type,
            )
        )
    else:
        cliff_percentage = Decimal(0)

    for period, percentage in enumerate(_split_percentage(HUNDRED - cliff_percentage, periods), start=1):
        milestones.append(
            PlannedMilestone(
                sequence_order=len(milestones),
                vesting_percentage=percentage,
                months_from_start=cliff_months + period * frequency_months,
                milestone_type=milestone_type,
            )
        )
    return milestones

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ltipdesk.core.database import Base


class UserRole(str, Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"


class EmployeeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PlanType(str, Enum):
    LTIP_RSU = "LTIP_RSU"
    LTIP_RSA = "LTIP_RSA"
    ESOP = "ESOP"


class ScheduleType(str, Enum):
    TIME_BASED = "time_based"
    PERFORMANCE_BASED = "performance_based"
    HYBRID = "hybrid"


class VestingFrequency(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    ANNUALLY = "annually"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "semi_annual": 6, "annually": 12}[self.value]


class MilestoneType(str, Enum):
    TIME = "time"
    PERFORMANCE = "performance"
    HYBRID = "hybrid"


class GrantStatus(str, Enum):
    PENDING_SIGNATURE = "pending_signature"
    ACTIVE = "active"
    COMPLETED = "completed"
    FORFEITED = "forfeited"
    CANCELLED = "cancelled"


class VestingEventType(str, Enum):
    CLIFF = "cliff"
    TIME_BASED = "time_based"
    PERFORMANCE = "performance"
    ACCELERATION = "acceleration"


class VestingEventStatus(str, Enum):
    PENDING = "pending"
    DUE = "due"
    VESTED = "vested"
    TRANSFERRED = "transferred"
    EXERCISED = "exercised"
    FORFEITED = "forfeited"
    CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole), default=UserRole.EMPLOYEE, nullable=False)
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id"), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    employee_code: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    joining_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[EmployeeStatus] = mapped_column(
        SQLEnum(EmployeeStatus), default=EmployeeStatus.ACTIVE, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    grants: Mapped[list["Grant"]] = relationship(back_populates="employee", cascade="all, delete-orphan")


class VestingSchedule(Base):
    __tablename__ = "vesting_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    schedule_type: Mapped[ScheduleType] = mapped_column(
        SQLEnum(ScheduleType), default=ScheduleType.TIME_BASED, nullable=False
    )
    total_duration_months: Mapped[int] = mapped_column(Integer, default=48, nullable=False)
    cliff_months: Mapped[int] = mapped_column(Integer, default=12, nullable=False)
    vesting_frequency: Mapped[VestingFrequency] = mapped_column(
        SQLEnum(VestingFrequency), default=VestingFrequency.MONTHLY, nullable=False
    )
    cliff_percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    is_template: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    milestones: Mapped[list["VestingMilestone"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="VestingMilestone.sequence_order",
    )


class VestingMilestone(Base):
    __tablename__ = "vesting_milestones"
    __table_args__ = (
        UniqueConstraint("vesting_schedule_id", "sequence_order"),
        CheckConstraint("vesting_percentage > 0 AND vesting_percentage <= 100", name="percentage_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    vesting_schedule_id: Mapped[int] = mapped_column(
        ForeignKey("vesting_schedules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    milestone_type: Mapped[MilestoneType] = mapped_column(
        SQLEnum(MilestoneType), default=MilestoneType.TIME, nullable=False
    )
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False)
    vesting_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    months_from_start: Mapped[int] = mapped_column(Integer, nullable=False)

    schedule: Mapped[VestingSchedule] = relationship(back_populates="milestones")


class IncentivePlan(Base):
    __tablename__ = "incentive_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    plan_code: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    plan_type: Mapped[PlanType] = mapped_column(SQLEnum(PlanType), nullable=False)
    vesting_schedule_id: Mapped[int | None] = mapped_column(ForeignKey("vesting_schedules.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    vesting_schedule: Mapped[VestingSchedule | None] = relationship()
    grants: Mapped[list["Grant"]] = relationship(back_populates="plan")


class Grant(Base):
    __tablename__ = "grants"
    __table_args__ = (CheckConstraint("total_shares >= 0", name="total_shares_nonnegative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    grant_number: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("incentive_plans.id"), nullable=False, index=True)
    vesting_schedule_id: Mapped[int | None] = mapped_column(ForeignKey("vesting_schedules.id"), nullable=True)
    grant_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_shares: Mapped[int] = mapped_column(BigInteger, nullable=False)
    exercise_price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    vesting_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    vesting_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[GrantStatus] = mapped_column(
        SQLEnum(GrantStatus), default=GrantStatus.PENDING_SIGNATURE, nullable=False, index=True
    )
    # Denormalized from the vesting events; only written alongside event mutations.
    vested_shares: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    employee_acceptance_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    employee: Mapped[Employee] = relationship(back_populates="grants")
    plan: Mapped[IncentivePlan] = relationship(back_populates="grants")
    vesting_schedule: Mapped[VestingSchedule | None] = relationship()
    vesting_events: Mapped[list["VestingEvent"]] = relationship(
        back_populates="grant",
        cascade="all, delete-orphan",
        order_by="VestingEvent.sequence_number",
    )


class VestingEvent(Base):
    __tablename__ = "vesting_events"
    __table_args__ = (
        CheckConstraint("shares_to_vest >= 0", name="shares_nonnegative"),
        CheckConstraint("exercised_shares >= 0 AND exercised_shares <= shares_to_vest", name="exercised_range"),
        UniqueConstraint("grant_id", "sequence_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    grant_id: Mapped[int] = mapped_column(ForeignKey("grants.id", ondelete="CASCADE"), nullable=False, index=True)
    vesting_schedule_id: Mapped[int | None] = mapped_column(ForeignKey("vesting_schedules.id"), nullable=True)
    milestone_id: Mapped[int | None] = mapped_column(
        ForeignKey("vesting_milestones.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[VestingEventType] = mapped_column(SQLEnum(VestingEventType), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    vesting_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    vesting_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    shares_to_vest: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cumulative_percentage: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    cumulative_shares_vested: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[VestingEventStatus] = mapped_column(
        SQLEnum(VestingEventStatus), default=VestingEventStatus.PENDING, nullable=False, index=True
    )
    fair_market_value_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exercised_shares: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    performance_condition_met: Mapped[bool] = mapped_column(default=False, nullable=False)
    performance_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    grant: Mapped[Grant] = relationship(back_populates="vesting_events")

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ltipdesk.models import (
    EmployeeStatus,
    GrantStatus,
    MilestoneType,
    PlanType,
    ScheduleType,
    UserRole,
    VestingEventStatus,
    VestingEventType,
    VestingFrequency,
)


class EmployeeBase(BaseModel):
    employee_code: str = Field(min_length=2, max_length=50)
    full_name: str = Field(min_length=2, max_length=120)
    email: str = Field(min_length=5, max_length=255)
    joining_date: date
    status: EmployeeStatus = EmployeeStatus.ACTIVE

    @model_validator(mode="after")
    def validate_email(self) -> "EmployeeBase":
        if "@" not in self.email or self.email.startswith("@") or self.email.endswith("@"):
            raise ValueError("Invalid email format")
        return self


class EmployeeCreate(EmployeeBase):
    pass


class EmployeeUpdate(BaseModel):
    employee_code: str | None = Field(default=None, min_length=2, max_length=50)
    full_name: str | None = Field(default=None, min_length=2, max_length=120)
    email: str | None = Field(default=None, min_length=5, max_length=255)
    joining_date: date | None = None
    status: EmployeeStatus | None = None

    @model_validator(mode="after")
    def validate_email(self) -> "EmployeeUpdate":
        if self.email is not None and ("@" not in self.email or self.email.startswith("@") or self.email.endswith("@")):
            raise ValueError("Invalid email format")
        return self


class EmployeeRead(EmployeeBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime
    updated_at: datetime


class VestingMilestoneIn(BaseModel):
    sequence_order: int = Field(ge=0)
    milestone_type: MilestoneType = MilestoneType.TIME
    vesting_percentage: Decimal = Field(gt=0, le=100, decimal_places=4)
    months_from_start: int = Field(gt=0, le=240)


class VestingMilestoneRead(VestingMilestoneIn):
    model_config = ConfigDict(from_attributes=True)

    id: int


class VestingScheduleCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    schedule_type: ScheduleType = ScheduleType.TIME_BASED
    total_duration_months: int = Field(default=48, gt=0, le=240)
    cliff_months: int = Field(default=12, ge=0, le=120)
    vesting_frequency: VestingFrequency = VestingFrequency.MONTHLY
    cliff_percentage: Decimal | None = Field(default=None, ge=0, lt=100, decimal_places=4)
    milestones: list[VestingMilestoneIn] = Field(default_factory=list, max_length=240)


class VestingScheduleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    schedule_type: ScheduleType
    total_duration_months: int
    cliff_months: int
    vesting_frequency: VestingFrequency
    cliff_percentage: Decimal | None
    is_template: bool
    milestones: list[VestingMilestoneRead]
    created_at: datetime


class IncentivePlanCreate(BaseModel):
    plan_code: str = Field(min_length=2, max_length=50)
    name: str = Field(min_length=2, max_length=120)
    plan_type: PlanType
    vesting_schedule_id: int | None = None


class IncentivePlanRead(IncentivePlanCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime


class GrantBase(BaseModel):
    employee_id: int
    plan_id: int
    grant_number: str = Field(min_length=2, max_length=50)
    grant_date: date
    total_shares: int = Field(ge=0)
    exercise_price_cents: int = Field(default=0, ge=0)
    vesting_start_date: date
    vesting_schedule_id: int | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def validate_dates(self) -> "GrantBase":
        if self.vesting_start_date < self.grant_date:
            raise ValueError("vesting_start_date cannot precede grant_date")
        return self


class GrantCreate(GrantBase):
    pass


class GrantUpdate(BaseModel):
    grant_date: date | None = None
    total_shares: int | None = Field(default=None, ge=0)
    exercise_price_cents: int | None = Field(default=None, ge=0)
    vesting_start_date: date | None = None
    vesting_schedule_id: int | None = None
    notes: str | None = Field(default=None, max_length=2000)


class GrantRead(GrantBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: GrantStatus
    vesting_end_date: date | None
    vested_shares: int
    employee_acceptance_at: datetime | None
    created_at: datetime
    updated_at: datetime


class VestingEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    grant_id: int
    vesting_schedule_id: int | None
    milestone_id: int | None
    event_type: VestingEventType
    sequence_number: int
    vesting_date: date
    vesting_percentage: Decimal
    shares_to_vest: int
    cumulative_percentage: Decimal
    cumulative_shares_vested: int
    status: VestingEventStatus
    fair_market_value_cents: int | None
    exercised_shares: int
    performance_condition_met: bool
    performance_notes: str | None
    processed_at: datetime | None


class VestingPreviewRequest(BaseModel):
    total_shares: int = Field(ge=0)
    vesting_start_date: date
    cliff_months: int = Field(default=12, ge=0, le=120)
    cliff_percentage: Decimal | None = Field(default=None, ge=0, lt=100, decimal_places=4)
    total_duration_months: int = Field(default=48, gt=0, le=240)
    vesting_frequency: VestingFrequency = VestingFrequency.MONTHLY


class VestingPreviewRow(BaseModel):
    sequence: int
    months_from_start: int
    vesting_date: date
    event_type: VestingEventType
    percentage: Decimal
    shares: int
    cumulative_percentage: Decimal
    cumulative_shares: int


class VestingPreview(BaseModel):
    total_shares: int
    vesting_end_date: date
    events: list[VestingPreviewRow]


class ProcessEventRequest(BaseModel):
    as_of: date | None = None
    fair_market_value_cents: int | None = Field(default=None, ge=0)
    performance_condition_met: bool = False
    performance_notes: str | None = Field(default=None, max_length=2000)


class ExerciseRequest(BaseModel):
    shares: int | None = Field(default=None, gt=0)


class ExerciseResult(BaseModel):
    event: VestingEventRead
    shares_exercised: int
    exercise_cost_cents: int


class StatusRefreshResult(BaseModel):
    as_of: date
    events_marked_due: int


class BackfillRequest(BaseModel):
    grant_ids: list[int] = Field(default_factory=list)
    as_of: date | None = None


class BackfillResult(BaseModel):
    as_of: date
    candidate_grants: int
    processed: int
    skipped: int
    errors: int
    error_details: list[str]
    events_created: int
    events_marked_due: int


class GrantVestingSummary(BaseModel):
    grant_id: int
    grant_number: str
    employee_id: int
    employee_name: str
    status: GrantStatus
    as_of: date
    total_shares: int
    vested_shares: int
    unvested_shares: int
    forfeited_shares: int
    scheduled_to_date: int
    exercised_shares: int
    next_vesting_date: date | None
    next_vesting_shares: int


class VestingEventStats(BaseModel):
    total_events: int
    total_shares: int
    events_by_status: dict[str, int]
    shares_by_status: dict[str, int]
    processed_events: int


class DashboardSummary(BaseModel):
    as_of: date
    total_employees: int
    active_employees: int
    total_grants: int
    pool_size: int
    pool_allocated: int
    pool_remaining: int
    vested_shares: int
    unvested_shares: int
    exercised_shares: int
    grant_summaries: list[GrantVestingSummary]


class TaxEstimateRequest(BaseModel):
    vested_shares: int = Field(ge=0)
    current_price: Decimal = Field(ge=0)
    exercise_price: Decimal = Field(default=Decimal(0), ge=0)
    annual_income: Decimal = Field(default=Decimal(0), ge=0)
    other_capital_gains: Decimal = Field(default=Decimal(0))


class TaxEstimate(BaseModel):
    share_gain: Decimal
    total_taxable_income: Decimal
    tax_on_salary: Decimal
    tax_on_total_income: Decimal
    additional_tax_from_shares: Decimal
    effective_tax_rate: Decimal
    net_gain_after_tax: Decimal


class ZakatEstimateRequest(BaseModel):
    vested_shares: int = Field(ge=0)
    current_price: Decimal = Field(ge=0)
    cash_savings: Decimal = Field(default=Decimal(0), ge=0)
    gold: Decimal = Field(default=Decimal(0), ge=0)
    investments: Decimal = Field(default=Decimal(0), ge=0)
    other_assets: Decimal = Field(default=Decimal(0), ge=0)
    liabilities: Decimal = Field(default=Decimal(0), ge=0)


class ZakatEstimate(BaseModel):
    share_value: Decimal
    total_assets: Decimal
    net_zakatable_wealth: Decimal
    nisab_threshold: Decimal
    zakat_payable: bool
    zakat_due: Decimal


class AuthUser(BaseModel):
    id: int
    email: str
    full_name: str
    role: UserRole
    employee_id: int | None


class AuthSession(BaseModel):
    authenticated: bool
    user: AuthUser | None = None

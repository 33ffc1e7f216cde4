"""
Pydantic schemas for the JSON columns of the billing tables.

Recognition rules and dunning steps are discriminated unions: each variant
only carries the fields valid for its kind, so a straight-line rule cannot
be saved without ``period_months`` and a cancel step cannot carry
``grace_days``.
"""
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


# ---------------------------------------------------------------------------
# Revenue recognition rules
# ---------------------------------------------------------------------------


class ImmediateRule(BaseModel):
    """Recognize the whole charge at once."""

    type: Literal["IMMEDIATE"] = "IMMEDIATE"


class StraightLineRule(BaseModel):
    """Defer the charge and recognize it in equal monthly installments."""

    type: Literal["STRAIGHT_LINE"] = "STRAIGHT_LINE"
    period_months: int = Field(..., gt=0, description="Number of monthly installments")


class UsageBasedRule(BaseModel):
    """Recognize unprocessed usage at a unit price."""

    type: Literal["USAGE_BASED"] = "USAGE_BASED"
    unit_price_cents: int = Field(..., ge=0, description="Revenue per usage unit in cents")


class Milestone(BaseModel):
    """A share of the charge recognized once its criteria are met."""

    name: str = Field(..., min_length=1)
    percentage: float = Field(..., gt=0, le=100)
    criteria: Dict[str, Any] = Field(default_factory=dict)


class MilestoneRule(BaseModel):
    """Recognize percentages of the charge as milestones are reached."""

    type: Literal["MILESTONE"] = "MILESTONE"
    milestones: List[Milestone] = Field(..., min_length=1)

    @field_validator("milestones")
    @classmethod
    def validate_milestones(cls, v: List[Milestone]) -> List[Milestone]:
        """Milestone names must be unique and percentages must not exceed 100."""
        names = [m.name for m in v]
        if len(names) != len(set(names)):
            raise ValueError("Milestone names must be unique")
        if sum(Decimal(str(m.percentage)) for m in v) > 100:
            raise ValueError("Milestone percentages must not exceed 100 in total")
        return v


RecognitionRule = Annotated[
    Union[ImmediateRule, StraightLineRule, UsageBasedRule, MilestoneRule],
    Field(discriminator="type"),
]

recognition_rule_adapter: TypeAdapter[RecognitionRule] = TypeAdapter(RecognitionRule)


class ScheduleRow(BaseModel):
    """One installment of a deferred revenue schedule."""

    period_index: int = Field(..., ge=1)
    amount_cents: int = Field(..., ge=0)


schedule_adapter: TypeAdapter[List[ScheduleRow]] = TypeAdapter(List[ScheduleRow])


# ---------------------------------------------------------------------------
# Dunning steps
# ---------------------------------------------------------------------------


class _DunningStepBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    days_past_due: int = Field(..., ge=0)
    message: Optional[str] = None
    retry_payment: bool = False


class EmailStep(_DunningStepBase):
    action: Literal["email"] = "email"
    template_key: str = "dunning_email"


class SmsStep(_DunningStepBase):
    action: Literal["sms"] = "sms"
    template_key: str = "dunning_sms"


class GracePeriodStep(_DunningStepBase):
    action: Literal["grace_period"] = "grace_period"
    grace_days: int = Field(default=7, gt=0)


class CancelStep(_DunningStepBase):
    action: Literal["cancel"] = "cancel"


DunningStep = Annotated[
    Union[EmailStep, SmsStep, GracePeriodStep, CancelStep],
    Field(discriminator="action"),
]


class DunningSteps(BaseModel):
    """Ordered step list of a dunning config."""

    steps: List[DunningStep] = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "DunningSteps":
        """Thresholds must be unique; steps are kept in ascending order."""
        thresholds = [step.days_past_due for step in self.steps]
        if len(thresholds) != len(set(thresholds)):
            raise ValueError("Dunning step thresholds (days_past_due) must be unique")
        self.steps = sorted(self.steps, key=lambda step: step.days_past_due)
        return self


DEFAULT_DUNNING_STEPS: List[Dict[str, Any]] = [
    {"action": "email", "days_past_due": 1, "retry_payment": True,
     "template_key": "payment_failed_first_notice"},
    {"action": "email", "days_past_due": 3, "retry_payment": True,
     "template_key": "payment_failed_second_notice"},
    {"action": "sms", "days_past_due": 7, "retry_payment": True,
     "template_key": "payment_failed_final_warning"},
    {"action": "grace_period", "days_past_due": 10, "grace_days": 4},
    {"action": "cancel", "days_past_due": 14,
     "message": "Subscription canceled after unpaid invoice"},
]

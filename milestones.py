from datetime import date
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from constants import (
    DEFAULT_MINIMUM_IMPACT_THRESHOLD,
    LOAN_PAYOFF_CACHE_SIZE,
    LOAN_PAYOFF_CACHE_TTL_SECONDS,
)
from models import FieldChange

MilestoneType = Literal[
    "loan_payoff",
    "offset_completion",
    "retirement_eligibility",
    "parameter_transition",
    "expense_expiration",
]
MilestoneCategory = Literal["debt", "investment", "retirement", "transition", "expense"]

_MILESTONE_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "validate_by_name": True,
    "frozen": True,
}


class BaseMilestone(BaseModel):
    """Fields shared by every milestone variant."""

    id: str
    type: MilestoneType
    date: date
    title: str
    description: str
    financial_impact: Optional[float] = Field(
        None, description="Dollar impact; positive for gains, negative for costs."
    )
    category: MilestoneCategory

    model_config = _MILESTONE_MODEL_CONFIG


class LoanPayoffMilestone(BaseMilestone):
    type: Literal["loan_payoff"] = "loan_payoff"
    category: Literal["debt"] = "debt"
    loan_id: str
    loan_name: str
    final_payment_amount: float
    total_interest_paid: float
    months_to_payoff: int


class OffsetCompletionMilestone(BaseMilestone):
    type: Literal["offset_completion"] = "offset_completion"
    category: Literal["debt"] = "debt"
    loan_id: str
    offset_amount: float
    loan_balance: float
    interest_savings_rate: float = Field(..., description="Annual interest rate in percent.")


class RetirementMilestone(BaseMilestone):
    type: Literal["retirement_eligibility"] = "retirement_eligibility"
    category: Literal["retirement"] = "retirement"
    required_assets: float
    actual_assets: float
    monthly_withdrawal_capacity: float
    years_earlier_than_target: Optional[float] = None
    person_id: Optional[str] = None
    income_share: Optional[float] = Field(
        None, description="Fraction of household income the person earned before retiring."
    )


class ParameterTransitionMilestone(BaseMilestone):
    type: Literal["parameter_transition"] = "parameter_transition"
    category: Literal["transition"] = "transition"
    transition_id: str
    parameter_changes: Dict[str, FieldChange] = Field({})
    impact_summary: str


class ExpenseExpirationMilestone(BaseMilestone):
    type: Literal["expense_expiration"] = "expense_expiration"
    category: Literal["expense"] = "expense"
    expense_id: str
    expense_name: str
    monthly_savings: float
    annual_savings: float
    expense_category: str


Milestone = Annotated[
    Union[
        LoanPayoffMilestone,
        OffsetCompletionMilestone,
        RetirementMilestone,
        ParameterTransitionMilestone,
        ExpenseExpirationMilestone,
    ],
    Field(discriminator="type"),
]


class DetectionError(BaseModel):
    code: str
    message: str
    context: Dict[str, Any] = Field({})
    severity: Literal["warning", "error", "critical"]

    model_config = _MILESTONE_MODEL_CONFIG


class MilestoneDetectionResult(BaseModel):
    milestones: List[Milestone] = Field([])
    errors: List[DetectionError] = Field([])
    warnings: List[str] = Field([])

    model_config = _MILESTONE_MODEL_CONFIG


class MilestoneDetectionConfig(BaseModel):
    """Which detectors run, and the impact threshold applied to their output."""

    detect_loan_payoffs: bool = True
    detect_offset_completion: bool = True
    detect_retirement_eligibility: bool = True
    detect_parameter_transitions: bool = True
    detect_expense_expirations: bool = True
    minimum_impact_threshold: Optional[float] = Field(
        DEFAULT_MINIMUM_IMPACT_THRESHOLD,
        ge=0,
        description="Milestones with a smaller absolute impact are dropped. None or 0 disables filtering.",
    )
    cache_size: int = Field(LOAN_PAYOFF_CACHE_SIZE, gt=0)
    cache_ttl_seconds: float = Field(LOAN_PAYOFF_CACHE_TTL_SECONDS, gt=0)

    model_config = {
        "alias_generator": to_camel,
        "validate_by_name": True,
        "validate_assignment": True,
    }

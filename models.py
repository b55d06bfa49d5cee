from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from config import ParameterCategory, ParameterTransition, UserParameters

# Engine outputs are read-only once produced.
_OUTPUT_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "validate_by_name": True,
    "frozen": True,
}


class FinancialState(BaseModel):
    """Snapshot of the household's position at the end of one period."""

    date: date
    cash: float
    investments: float
    superannuation: float
    loan_balance: float
    offset_balance: float
    net_worth: float
    cash_flow: float
    tax_paid: float
    expenses: float
    interest_saved: float
    deductible_interest: float = 0.0
    loan_balances: Dict[str, float] = Field({})
    super_balances: Dict[str, float] = Field({})
    offset_balances: Dict[str, float] = Field({})
    loan_interest_paid: Dict[str, float] = Field(
        {}, description="Interest charged this period, keyed by loan id."
    )

    model_config = _OUTPUT_MODEL_CONFIG


class FieldChange(BaseModel):
    """One parameter changed by a transition, with its value either side."""

    key: str
    category: ParameterCategory
    from_value: Any = None
    to_value: Any = None

    model_config = _OUTPUT_MODEL_CONFIG


class TransitionPoint(BaseModel):
    date: date
    state_index: int
    transition: ParameterTransition
    changes_summary: str
    changes: List[FieldChange] = Field([])

    model_config = _OUTPUT_MODEL_CONFIG


class ParameterPeriod(BaseModel):
    """Contiguous span ``[start_date, end_date)`` with constant parameters."""

    start_date: date
    end_date: Optional[date] = None
    parameters: UserParameters
    transition_id: Optional[str] = None

    model_config = _OUTPUT_MODEL_CONFIG


class FinancialWarning(BaseModel):
    message: str
    severity: Literal["warning", "alert"]
    type: Literal["debt", "cashflow", "sustainability"]

    model_config = _OUTPUT_MODEL_CONFIG


class SimulationResult(BaseModel):
    states: List[FinancialState]
    retirement_date: Optional[date] = None
    retirement_age: Optional[float] = None
    is_sustainable: bool
    warnings: List[str] = Field([])

    model_config = _OUTPUT_MODEL_CONFIG


class EnhancedSimulationResult(SimulationResult):
    transition_points: List[TransitionPoint] = Field([])
    periods: List[ParameterPeriod] = Field([])


class ComparisonMetrics(BaseModel):
    retirement_date_difference: Optional[float] = Field(
        None, description="Years between retirement dates; None if either is not achievable."
    )
    final_net_worth_difference: float
    sustainability_changed: bool

    model_config = _OUTPUT_MODEL_CONFIG


class ComparisonSimulationResult(BaseModel):
    with_transitions: EnhancedSimulationResult
    without_transitions: SimulationResult
    comparison: ComparisonMetrics

    model_config = _OUTPUT_MODEL_CONFIG

import os
import json
from datetime import date
from enum import Enum
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    Field,
    TypeAdapter,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from loguru import logger

from constants import LEGACY_LOAN_ID, LEGACY_LOAN_NAME, LEGACY_SUPER_ID


TimeInterval = Literal["week", "fortnight", "month", "year"]
PaymentFrequency = Literal["weekly", "fortnightly", "monthly", "yearly"]
HouseholdMode = Literal["single", "couple"]
ExpenseCategory = Literal[
    "housing",
    "utilities",
    "food",
    "transportation",
    "insurance",
    "entertainment",
    "healthcare",
    "personal",
    "education",
    "other",
]

# Accept the camelCase keys written by the browser front-end as well as field names.
_INPUT_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "validate_by_name": True,
    "validate_assignment": True,
}


class ConfigurationError(Exception):
    """Raised when the configuration file cannot be loaded or parsed."""


class SimulationValidationError(ConfigurationError):
    """Raised when a configuration is rejected before a simulation run starts."""


class TaxBracket(BaseModel):
    """One progressive tax band. ``max`` of None marks the unbounded top band."""

    min: float = Field(..., ge=0, description="Lower bound of the band (inclusive).")
    max: Optional[float] = Field(
        None, description="Upper bound of the band (exclusive). None for the top band."
    )
    rate: float = Field(..., ge=0, le=100, description="Marginal rate in percent.")

    model_config = _INPUT_MODEL_CONFIG

    @field_validator("max")
    @classmethod
    def check_upper_bound(cls, v: Optional[float], info: ValidationInfo) -> Optional[float]:
        lower = info.data.get("min")
        if v is not None and lower is not None and v <= lower:
            raise ValueError(f"Bracket max ({v}) must be greater than min ({lower}).")
        return v


class IncomeSource(BaseModel):
    """A salary, side income or one-off payment."""

    id: str
    label: str = ""
    amount: float = Field(..., ge=0, description="Amount per payment at the given frequency.")
    frequency: PaymentFrequency = "yearly"
    is_before_tax: bool = Field(
        True, description="Before-tax income is taxed; after-tax income is added as-is."
    )
    person_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_one_off: bool = False
    one_off_date: Optional[date] = None

    model_config = _INPUT_MODEL_CONFIG


class ExpenseItem(BaseModel):
    """A single recurring or one-off household expense."""

    id: str
    name: str = ""
    amount: float = Field(..., ge=0)
    frequency: PaymentFrequency = "monthly"
    category: ExpenseCategory = "other"
    enabled: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_one_off: bool = False
    one_off_date: Optional[date] = None

    model_config = _INPUT_MODEL_CONFIG


class SuperAccount(BaseModel):
    """A superannuation (retirement) account."""

    id: str
    label: str = ""
    balance: float = Field(0.0, ge=0)
    contribution_rate: float = Field(
        0.0, ge=0, le=100, description="Contribution as a percentage of gross income."
    )
    return_rate: float = Field(0.0, description="Expected annual return in percent.")
    person_id: Optional[str] = None

    model_config = _INPUT_MODEL_CONFIG


class Person(BaseModel):
    """A member of a multi-person household."""

    id: str
    name: str = "Person"
    current_age: float = Field(..., ge=0, le=120)
    retirement_age: float = Field(..., ge=0, le=120)
    income_sources: List[IncomeSource] = Field([])
    super_accounts: List[SuperAccount] = Field([])

    model_config = _INPUT_MODEL_CONFIG


class Loan(BaseModel):
    """An amortizing loan, optionally with an offset account."""

    id: str
    label: str = ""
    principal: float = Field(..., ge=0)
    interest_rate: float = Field(..., ge=0, description="Annual interest rate in percent.")
    payment_amount: float = Field(..., ge=0)
    payment_frequency: PaymentFrequency = "monthly"
    has_offset: bool = False
    offset_balance: float = Field(0.0, ge=0)
    is_debt_recycling: bool = Field(
        False, description="Interest is tax deductible (reported only, not applied to tax)."
    )

    model_config = _INPUT_MODEL_CONFIG


class UserParameters(BaseModel):
    """Full configuration snapshot for one simulation run.

    Every modern list field (``people``, ``income_sources``, ``expense_items``,
    ``loans``, ``super_accounts``, ``tax_brackets``) has a legacy flat-field
    fallback which is used only when the list is absent or empty.
    """

    # Household
    household_mode: HouseholdMode = "single"
    people: Optional[List[Person]] = None

    # Income (legacy flat fields first)
    annual_salary: float = Field(0.0, ge=0)
    salary_frequency: PaymentFrequency = "monthly"
    income_tax_rate: float = Field(0.0, ge=0, le=100)
    tax_brackets: Optional[List[TaxBracket]] = None
    income_sources: Optional[List[IncomeSource]] = None

    # Expenses
    monthly_living_expenses: float = Field(0.0, ge=0)
    monthly_rent_or_mortgage: float = Field(0.0, ge=0)
    expense_items: Optional[List[ExpenseItem]] = None

    # Loans
    loan_principal: float = Field(0.0, ge=0)
    loan_interest_rate: float = Field(0.0, ge=0)
    loan_payment_amount: float = Field(0.0, ge=0)
    loan_payment_frequency: PaymentFrequency = "monthly"
    use_offset_account: bool = False
    current_offset_balance: float = Field(0.0, ge=0)
    loans: Optional[List[Loan]] = None

    # Investments
    monthly_investment_contribution: float = Field(0.0, ge=0)
    investment_return_rate: float = Field(0.0, ge=-100)
    current_investment_balance: float = Field(0.0, ge=0)

    # Superannuation
    super_contribution_rate: float = Field(0.0, ge=0, le=100)
    super_return_rate: float = Field(0.0, ge=-100)
    current_super_balance: float = Field(0.0, ge=0)
    super_accounts: Optional[List[SuperAccount]] = None

    # Retirement
    desired_annual_retirement_income: float = Field(0.0, ge=0)
    current_age: float = Field(30, ge=0, le=120)
    retirement_age: float = Field(65, ge=0, le=120)

    # Simulation
    simulation_years: int = Field(..., gt=0, le=100)
    start_date: date

    model_config = _INPUT_MODEL_CONFIG

    @field_validator("retirement_age")
    @classmethod
    def check_retirement_age(cls, v: float, info: ValidationInfo) -> float:
        current = info.data.get("current_age")
        if current is not None and v < current:
            logger.warning(
                f"Retirement age ({v}) is below current age ({current}); retirement is checked from the first period."
            )
        return v

    @model_validator(mode="after")
    def check_household(self) -> "UserParameters":
        if self.household_mode == "couple" and not self.people:
            logger.warning(
                "Household mode is 'couple' but no people are configured; falling back to single-person fields."
            )
        return self

    @property
    def is_household(self) -> bool:
        return self.household_mode == "couple" and bool(self.people)


class ParameterCategory(str, Enum):
    """Closed set of parameter groups a transition can touch."""

    HOUSEHOLD = "household"
    INCOME = "income"
    TAX = "tax"
    EXPENSES = "expenses"
    LOANS = "loans"
    INVESTMENTS = "investments"
    SUPERANNUATION = "superannuation"
    RETIREMENT = "retirement"
    SIMULATION = "simulation"


PARAMETER_CATEGORIES: Dict[str, ParameterCategory] = {
    "household_mode": ParameterCategory.HOUSEHOLD,
    "people": ParameterCategory.HOUSEHOLD,
    "annual_salary": ParameterCategory.INCOME,
    "salary_frequency": ParameterCategory.INCOME,
    "income_sources": ParameterCategory.INCOME,
    "income_tax_rate": ParameterCategory.TAX,
    "tax_brackets": ParameterCategory.TAX,
    "monthly_living_expenses": ParameterCategory.EXPENSES,
    "monthly_rent_or_mortgage": ParameterCategory.EXPENSES,
    "expense_items": ParameterCategory.EXPENSES,
    "loan_principal": ParameterCategory.LOANS,
    "loan_interest_rate": ParameterCategory.LOANS,
    "loan_payment_amount": ParameterCategory.LOANS,
    "loan_payment_frequency": ParameterCategory.LOANS,
    "use_offset_account": ParameterCategory.LOANS,
    "current_offset_balance": ParameterCategory.LOANS,
    "loans": ParameterCategory.LOANS,
    "monthly_investment_contribution": ParameterCategory.INVESTMENTS,
    "investment_return_rate": ParameterCategory.INVESTMENTS,
    "current_investment_balance": ParameterCategory.INVESTMENTS,
    "super_contribution_rate": ParameterCategory.SUPERANNUATION,
    "super_return_rate": ParameterCategory.SUPERANNUATION,
    "current_super_balance": ParameterCategory.SUPERANNUATION,
    "super_accounts": ParameterCategory.SUPERANNUATION,
    "desired_annual_retirement_income": ParameterCategory.RETIREMENT,
    "retirement_age": ParameterCategory.RETIREMENT,
    "current_age": ParameterCategory.RETIREMENT,
    "simulation_years": ParameterCategory.SIMULATION,
}


def _parameter_key(key: str) -> str:
    """Maps a field name or its camelCase alias to the field name."""
    if key in PARAMETER_CATEGORIES:
        return key
    for name in PARAMETER_CATEGORIES:
        if to_camel(name) == key:
            return name
    raise ValueError(f"Unknown or non-transitionable parameter '{key}'.")


@lru_cache(maxsize=None)
def _field_adapter(name: str) -> TypeAdapter:
    field_info = UserParameters.model_fields[name]
    if field_info.metadata:
        return TypeAdapter(Annotated[(field_info.annotation, *field_info.metadata)])
    return TypeAdapter(field_info.annotation)


class ParameterTransition(BaseModel):
    """A dated partial override of ``UserParameters``."""

    id: str
    transition_date: date
    label: Optional[str] = None
    parameter_changes: Dict[str, Any] = Field(
        ..., description="Only the listed fields change; everything else carries forward."
    )

    model_config = _INPUT_MODEL_CONFIG

    @field_validator("parameter_changes")
    @classmethod
    def check_parameter_changes(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        validated: Dict[str, Any] = {}
        for key, value in v.items():
            name = _parameter_key(key)
            validated[name] = _field_adapter(name).validate_python(value)
        return validated

    def categories(self) -> Dict[str, ParameterCategory]:
        return {key: PARAMETER_CATEGORIES[key] for key in self.parameter_changes}


class SimulationConfiguration(BaseModel):
    """Base parameters plus the dated transitions applied on top of them."""

    base_parameters: UserParameters
    transitions: List[ParameterTransition] = Field([])

    model_config = _INPUT_MODEL_CONFIG


class ResolvedParameters(BaseModel):
    """Single internal shape produced once from a ``UserParameters``.

    Legacy flat fields are folded into the same list shapes the modern fields
    use, so processors never branch on which fields happen to be present.
    """

    source: UserParameters
    income_mode: Literal["household", "sources", "legacy"]
    people: List[Person]
    income_sources: List[IncomeSource]
    tax_brackets: List[TaxBracket]
    flat_tax_rate: float
    expense_mode: Literal["items", "legacy"]
    expense_items: List[ExpenseItem]
    loan_mode: Literal["multi", "legacy"]
    loans: List[Loan]
    super_accounts: List[SuperAccount]

    model_config = {"frozen": True}

    @property
    def is_household(self) -> bool:
        return self.income_mode == "household"

    def taxpayers(self) -> List[List[IncomeSource]]:
        """Income sources grouped per taxpayer; brackets apply to each group separately."""
        if self.is_household:
            return [person.income_sources for person in self.people]
        return [self.income_sources]

    def loan_by_id(self, loan_id: str) -> Optional[Loan]:
        for loan in self.loans:
            if loan.id == loan_id:
                return loan
        return None


def resolve_parameters(params: UserParameters) -> ResolvedParameters:
    """Picks the authoritative source for each concern of ``params``."""
    if params.is_household:
        income_mode = "household"
        income_sources = [
            source for person in params.people for source in person.income_sources
        ]
    elif params.income_sources:
        income_mode = "sources"
        income_sources = list(params.income_sources)
    else:
        income_mode = "legacy"
        income_sources = [
            IncomeSource(
                id="legacy-salary",
                label="Salary",
                amount=params.annual_salary,
                frequency="yearly",
                is_before_tax=True,
            )
        ]

    if params.expense_items:
        expense_mode = "items"
        expense_items = list(params.expense_items)
    else:
        expense_mode = "legacy"
        expense_items = [
            ExpenseItem(
                id="legacy-expenses",
                name="Living expenses and rent/mortgage",
                amount=params.monthly_living_expenses + params.monthly_rent_or_mortgage,
                frequency="monthly",
            )
        ]

    if params.loans:
        loan_mode = "multi"
        loans = list(params.loans)
    else:
        loan_mode = "legacy"
        loans = [
            Loan(
                id=LEGACY_LOAN_ID,
                label=LEGACY_LOAN_NAME,
                principal=params.loan_principal,
                interest_rate=params.loan_interest_rate,
                payment_amount=params.loan_payment_amount,
                payment_frequency=params.loan_payment_frequency,
                has_offset=params.use_offset_account,
                offset_balance=params.current_offset_balance,
            )
        ]

    person_accounts = []
    if params.is_household:
        for person in params.people:
            for account in person.super_accounts:
                person_accounts.append(account.model_copy(update={"person_id": person.id}))
    if person_accounts:
        super_accounts = person_accounts
    elif params.super_accounts:
        super_accounts = list(params.super_accounts)
    else:
        super_accounts = [
            SuperAccount(
                id=LEGACY_SUPER_ID,
                label="Superannuation",
                balance=params.current_super_balance,
                contribution_rate=params.super_contribution_rate,
                return_rate=params.super_return_rate,
            )
        ]

    return ResolvedParameters(
        source=params,
        income_mode=income_mode,
        people=list(params.people or []) if params.is_household else [],
        income_sources=income_sources,
        tax_brackets=sorted(params.tax_brackets or [], key=lambda b: b.min),
        flat_tax_rate=params.income_tax_rate,
        expense_mode=expense_mode,
        expense_items=expense_items,
        loan_mode=loan_mode,
        loans=loans,
        super_accounts=super_accounts,
    )


def load_config_from_json(file_path: str) -> Dict[str, Any]:
    """Loads and returns the configuration dictionary from a JSON file."""
    if not os.path.exists(file_path):
        raise ConfigurationError(f"Configuration file not found at: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Error parsing JSON file '{file_path}': {e}"
        ) from e
    except Exception as e:
        raise ConfigurationError(
            f"Unexpected error reading config file '{file_path}': {e}"
        ) from e


def parse_simulation_configuration(data: Dict[str, Any]) -> SimulationConfiguration:
    """Accepts either a bare parameter document or a base-plus-transitions document."""
    if "baseParameters" in data or "base_parameters" in data:
        return SimulationConfiguration.model_validate(data)
    return SimulationConfiguration(base_parameters=UserParameters.model_validate(data))


def load_simulation_configuration(file_path: str) -> SimulationConfiguration:
    return parse_simulation_configuration(load_config_from_json(file_path))

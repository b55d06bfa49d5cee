"""
Per-period financial processors.

Each processor is a pure function of its inputs. Functions that take a
parameter set accept either ``UserParameters`` or an already
``ResolvedParameters``; the simulation engine resolves once per parameter
period and passes the resolved shape through.
"""

from datetime import date, timedelta
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

from config import (
    ExpenseItem,
    IncomeSource,
    ResolvedParameters,
    UserParameters,
    resolve_parameters,
)
from constants import PRESERVATION_AGE, SAFE_WITHDRAWAL_RATE
from rates import (
    amount_per_interval,
    annual_to_period_rate,
    annualize,
    interval_days,
    periods_per_year,
    years_between,
)
from tax import calculate_annual_tax

ParamsLike = Union[UserParameters, ResolvedParameters]


def _resolved(params: ParamsLike) -> ResolvedParameters:
    if isinstance(params, ResolvedParameters):
        return params
    return resolve_parameters(params)


# ---------------------------------------------------------------------------
# Income
# ---------------------------------------------------------------------------

def is_income_source_active(source: IncomeSource, current_date: Optional[date]) -> bool:
    """
    Recurring sources are active inside ``[start_date, end_date)``. One-off
    sources are active only in the calendar month of their one-off date.
    Without a date every recurring source counts.
    """
    if source.is_one_off:
        if source.one_off_date is None or current_date is None:
            return False
        return (
            current_date.year == source.one_off_date.year
            and current_date.month == source.one_off_date.month
        )
    if current_date is None:
        return True
    if source.start_date and current_date < source.start_date:
        return False
    if source.end_date and current_date >= source.end_date:
        return False
    return True


def calculate_income_from_source(
    source: IncomeSource, current_date: Optional[date] = None
) -> float:
    """Annual contribution of ``source``. A firing one-off contributes its full amount."""
    if not is_income_source_active(source, current_date):
        return 0.0
    if source.is_one_off:
        return source.amount
    return annualize(source.amount, source.frequency)


def _split_income(
    sources: Sequence[IncomeSource], current_date: Optional[date], before_tax: bool
) -> Tuple[float, float]:
    """(recurring annual total, one-off total) for sources on one side of tax."""
    recurring = 0.0
    one_off = 0.0
    for source in sources:
        if source.is_before_tax != before_tax:
            continue
        amount = calculate_income_from_source(source, current_date)
        if source.is_one_off:
            one_off += amount
        else:
            recurring += amount
    return recurring, one_off


def calculate_total_annual_income(
    params: ParamsLike, current_date: Optional[date] = None
) -> float:
    """Total before-tax annual income across the household."""
    resolved = _resolved(params)
    recurring, one_off = _split_income(resolved.income_sources, current_date, True)
    return recurring + one_off


def calculate_total_annual_after_tax_income(
    params: ParamsLike, current_date: Optional[date] = None
) -> float:
    resolved = _resolved(params)
    recurring, one_off = _split_income(resolved.income_sources, current_date, False)
    return recurring + one_off


def calculate_before_tax_income(
    sources: Sequence[IncomeSource], interval: str, current_date: Optional[date] = None
) -> float:
    """Before-tax income received in one period from ``sources``."""
    recurring, one_off = _split_income(sources, current_date, True)
    return recurring / periods_per_year(interval) + one_off


def calculate_income(
    params: ParamsLike, interval: str, current_date: Optional[date] = None
) -> float:
    """
    Gross income received in one period: recurring income spread evenly over
    the year plus any one-off payment in full in the period it lands.
    """
    resolved = _resolved(params)
    ppy = periods_per_year(interval)
    before_recurring, before_one_off = _split_income(resolved.income_sources, current_date, True)
    after_recurring, after_one_off = _split_income(resolved.income_sources, current_date, False)
    return (before_recurring + after_recurring) / ppy + before_one_off + after_one_off


def _period_tax_for_sources(
    resolved: ResolvedParameters,
    sources: Sequence[IncomeSource],
    interval: str,
    current_date: Optional[date],
) -> float:
    recurring, one_off = _split_income(sources, current_date, True)
    base_tax = calculate_annual_tax(recurring, resolved.tax_brackets, resolved.flat_tax_rate)
    period_tax = base_tax / periods_per_year(interval)
    if one_off > 0:
        # A one-off payment is taxed at the margin on top of the recurring income.
        with_one_off = calculate_annual_tax(
            recurring + one_off, resolved.tax_brackets, resolved.flat_tax_rate
        )
        period_tax += with_one_off - base_tax
    return period_tax


def calculate_tax(
    params: ParamsLike, interval: str, current_date: Optional[date] = None
) -> float:
    """
    Tax payable for one period. Household mode taxes per person against the
    shared bracket table; single mode taxes the combined total once.
    """
    resolved = _resolved(params)
    return sum(
        _period_tax_for_sources(resolved, sources, interval, current_date)
        for sources in resolved.taxpayers()
    )


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------

def is_expense_active(item: ExpenseItem, current_date: Optional[date]) -> bool:
    if not item.enabled:
        return False
    if current_date is None:
        return True
    if item.start_date and current_date < item.start_date:
        return False
    if item.end_date and current_date >= item.end_date:
        return False
    return True


def calculate_expenses_from_items(
    items: Sequence[ExpenseItem],
    interval: str,
    current_date: Optional[date] = None,
    period_end: Optional[date] = None,
) -> float:
    """
    Expenses for one period starting at ``current_date``.

    A one-off item is charged in full when its date falls in
    ``[current_date, period_end)``. Without ``period_end`` the window is the
    nominal interval length in days (a month counts as 30 days).
    """
    ppy = periods_per_year(interval)
    total = 0.0
    for item in items:
        if not item.enabled:
            continue

        if item.is_one_off:
            if item.one_off_date is None or current_date is None:
                continue
            window_end = period_end or current_date + timedelta(days=interval_days(interval))
            if current_date <= item.one_off_date < window_end:
                total += item.amount
            continue

        if not is_expense_active(item, current_date):
            continue
        total += annualize(item.amount, item.frequency) / ppy
    return total


def calculate_expenses(
    params: ParamsLike,
    interval: str,
    current_date: Optional[date] = None,
    period_end: Optional[date] = None,
) -> float:
    """Expenses for one period; legacy flat fields are folded in as one monthly item."""
    resolved = _resolved(params)
    return calculate_expenses_from_items(
        resolved.expense_items, interval, current_date, period_end
    )


def monthly_expense_amount(item: ExpenseItem) -> float:
    return annualize(item.amount, item.frequency) / 12


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------

class LoanPaymentResult(NamedTuple):
    new_balance: float
    interest_paid: float
    principal_paid: float
    interest_saved: float
    deductible_interest: float


def calculate_loan_payment(
    balance: float,
    offset_balance: float,
    interest_rate: float,
    payment: float,
    interval: str,
    use_offset: bool = False,
    is_debt_recycling: bool = False,
) -> LoanPaymentResult:
    """
    Applies one period's payment to a loan.

    ``interest_rate`` is an annual decimal rate. The offset balance reduces the
    balance interest is charged on, never the principal itself.
    """
    if balance <= 0:
        return LoanPaymentResult(0.0, 0.0, 0.0, 0.0, 0.0)

    period_rate = annual_to_period_rate(interest_rate, interval)
    effective_balance = max(0.0, balance - offset_balance) if use_offset else balance

    interest_paid = effective_balance * period_rate
    interest_saved = balance * period_rate - interest_paid if use_offset else 0.0
    deductible_interest = interest_paid if is_debt_recycling else 0.0

    principal_paid = max(0.0, min(payment - interest_paid, balance))
    new_balance = max(0.0, balance - principal_paid)

    return LoanPaymentResult(
        new_balance=new_balance,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        interest_saved=interest_saved,
        deductible_interest=deductible_interest,
    )


def calculate_total_loan_payment(params: ParamsLike, interval: str) -> float:
    """Sum of every loan's scheduled payment, redistributed to ``interval``."""
    resolved = _resolved(params)
    return sum(
        amount_per_interval(loan.payment_amount, loan.payment_frequency, interval)
        for loan in resolved.loans
    )


# ---------------------------------------------------------------------------
# Investments and superannuation
# ---------------------------------------------------------------------------

def calculate_investment_growth(
    balance: float, contribution: float, return_rate: float, interval: str
) -> float:
    """
    One period of compound growth. The contribution is added at the start of
    the period and earns the same period rate as the existing balance.
    """
    period_rate = annual_to_period_rate(return_rate, interval)
    return balance * (1 + period_rate) + contribution * (1 + period_rate)


# ---------------------------------------------------------------------------
# Retirement
# ---------------------------------------------------------------------------

class RetirementOutcome(NamedTuple):
    date: Optional[date]
    age: Optional[float]


def calculate_safe_withdrawal(investments: float, superannuation: float, age: float) -> float:
    """4% of accessible assets; super only counts from preservation age."""
    accessible = investments
    if age >= PRESERVATION_AGE:
        accessible += superannuation
    return accessible * SAFE_WITHDRAWAL_RATE


def age_at(state_date: date, start_date: date, current_age: float) -> float:
    return current_age + years_between(start_date, state_date)


def find_retirement_date(
    states: Sequence,
    desired_income: float,
    current_age: float,
    retirement_age: float,
) -> RetirementOutcome:
    """
    Earliest state at or after ``retirement_age`` whose safe withdrawal covers
    ``desired_income``. Returns ``RetirementOutcome(None, None)`` when no state
    in the horizon qualifies.
    """
    if not states:
        return RetirementOutcome(None, None)

    start_date = states[0].date
    ages: List[float] = [age_at(s.date, start_date, current_age) for s in states]

    # The state closest to the target age, taken from those at or past it.
    target_index = None
    closest_diff = float("inf")
    for i, age in enumerate(ages):
        diff = abs(age - retirement_age)
        if age >= retirement_age and diff < closest_diff:
            closest_diff = diff
            target_index = i

    if target_index is not None:
        state = states[target_index]
        withdrawal = calculate_safe_withdrawal(
            state.investments, state.superannuation, ages[target_index]
        )
        if withdrawal >= desired_income:
            return RetirementOutcome(state.date, ages[target_index])

    for state, age in zip(states, ages):
        if age < retirement_age:
            continue
        if calculate_safe_withdrawal(state.investments, state.superannuation, age) >= desired_income:
            return RetirementOutcome(state.date, age)

    return RetirementOutcome(None, None)

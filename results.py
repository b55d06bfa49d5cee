import math
from datetime import date
from typing import List, NamedTuple, Optional, Sequence

import numpy as np
import pandas as pd

from constants import NEGATIVE_CASH_FLOW_STREAK, SEVERE_CASH_DEPLETION
from models import FinancialState, FinancialWarning

_STATE_COLUMNS = [
    "date",
    "cash",
    "investments",
    "superannuation",
    "loan_balance",
    "offset_balance",
    "net_worth",
    "cash_flow",
    "tax_paid",
    "expenses",
    "interest_saved",
    "deductible_interest",
]

_GROUPING_FREQUENCIES = {"week": "W", "fortnight": "2W", "month": "MS", "year": "YS"}


class NegativeCashFlowResult(NamedTuple):
    detected: bool
    consecutive_periods: int


class SustainabilityResult(NamedTuple):
    is_sustainable: bool
    has_increasing_debt: bool
    has_negative_cash_flow: bool
    consecutive_negative_periods: int
    has_net_worth_growth: bool


def format_currency(value: float, currency_symbol: str = "$", decimals: int = 2) -> str:
    formatted = f"{abs(value):,.{decimals}f}"
    return f"-{currency_symbol}{formatted}" if value < 0 else f"{currency_symbol}{formatted}"


def states_to_dataframe(states: Sequence[FinancialState]) -> pd.DataFrame:
    """One row per state, indexed by date, aggregate columns only."""
    if not states:
        return pd.DataFrame(columns=_STATE_COLUMNS).set_index("date")
    df = pd.DataFrame([s.model_dump(include=set(_STATE_COLUMNS)) for s in states])
    df["date"] = pd.to_datetime(df["date"])
    return df[_STATE_COLUMNS].set_index("date")


def yearly_summary(states: Sequence[FinancialState]) -> pd.DataFrame:
    """End-of-year balances and in-year flow totals."""
    df = states_to_dataframe(states)
    if df.empty:
        return df
    balances = ["cash", "investments", "superannuation", "loan_balance", "offset_balance", "net_worth"]
    flows = ["cash_flow", "tax_paid", "expenses", "interest_saved", "deductible_interest"]
    grouped = df.groupby(df.index.year)
    summary = pd.concat([grouped[balances].last(), grouped[flows].sum()], axis=1)
    summary.index.name = "year"
    return summary


def group_by_time_interval(states: Sequence[FinancialState], interval: str) -> List[FinancialState]:
    """
    Thins a state series to at most one state per ``interval`` bucket (the last
    state in each), always keeping the first and last states.
    """
    if not states:
        return []
    if len(states) == 1:
        return [states[0]]
    try:
        freq = _GROUPING_FREQUENCIES[interval]
    except KeyError:
        raise ValueError(f"Unknown time interval: '{interval}'") from None

    index = pd.DatetimeIndex(pd.to_datetime([s.date for s in states]))
    positions = pd.Series(np.arange(len(states)), index=index)
    keep = set(positions.resample(freq).last().dropna().astype(int).tolist())
    keep.update({0, len(states) - 1})
    return [states[i] for i in sorted(keep)]


def is_financial_state_complete(state: FinancialState) -> bool:
    values = [
        state.cash,
        state.investments,
        state.superannuation,
        state.loan_balance,
        state.net_worth,
        state.cash_flow,
    ]
    return isinstance(state.date, date) and all(
        isinstance(v, (int, float)) and math.isfinite(v) for v in values
    )


def detect_increasing_debt(states: Sequence[FinancialState]) -> bool:
    if len(states) < 2:
        return False
    return states[-1].loan_balance > states[0].loan_balance


def detect_negative_cash_flow(
    states: Sequence[FinancialState], threshold: int = NEGATIVE_CASH_FLOW_STREAK
) -> NegativeCashFlowResult:
    """Longest run of consecutive periods with negative cash flow."""
    longest = 0
    current = 0
    for state in states:
        if state.cash_flow < 0:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return NegativeCashFlowResult(longest >= threshold, longest)


def detect_net_worth_growth(states: Sequence[FinancialState]) -> bool:
    if len(states) < 2:
        return False
    return states[-1].net_worth > states[0].net_worth


def check_sustainability(states: Sequence[FinancialState]) -> SustainabilityResult:
    if len(states) < 2:
        return SustainabilityResult(True, False, False, 0, False)
    increasing_debt = detect_increasing_debt(states)
    cash_flow = detect_negative_cash_flow(states)
    negative_net_worth = states[-1].net_worth < 0
    return SustainabilityResult(
        is_sustainable=not (increasing_debt or cash_flow.detected or negative_net_worth),
        has_increasing_debt=increasing_debt,
        has_negative_cash_flow=cash_flow.detected,
        consecutive_negative_periods=cash_flow.consecutive_periods,
        has_net_worth_growth=detect_net_worth_growth(states),
    )


def find_loan_payoff_date(states: Sequence[FinancialState]) -> Optional[date]:
    if not states or states[0].loan_balance <= 0:
        return None
    for state in states:
        if state.loan_balance <= 0.01:
            return state.date
    return None


def generate_warnings(states: Sequence[FinancialState]) -> List[FinancialWarning]:
    """Warnings and alerts for trajectories that look unsustainable."""
    warnings: List[FinancialWarning] = []
    if len(states) < 2:
        return warnings

    if detect_increasing_debt(states):
        increase = states[-1].loan_balance - states[0].loan_balance
        warnings.append(
            FinancialWarning(
                message=f"Loan balance is increasing over time ({format_currency(increase)} increase). This indicates unsustainable debt growth.",
                severity="warning",
                type="debt",
            )
        )

    cash_flow = detect_negative_cash_flow(states)
    if cash_flow.detected:
        warnings.append(
            FinancialWarning(
                message=f"Sustained negative cash flow detected ({cash_flow.consecutive_periods} consecutive periods). Your expenses exceed your income.",
                severity="alert",
                type="cashflow",
            )
        )

    if not detect_net_worth_growth(states):
        decline = states[0].net_worth - states[-1].net_worth
        warnings.append(
            FinancialWarning(
                message=f"Net worth is declining over time ({format_currency(decline)} decrease). Consider reducing expenses or increasing income.",
                severity="warning",
                type="sustainability",
            )
        )

    min_cash = float(np.min([s.cash for s in states]))
    if min_cash < SEVERE_CASH_DEPLETION:
        warnings.append(
            FinancialWarning(
                message=f"Cash reserves are severely depleted (minimum: {format_currency(min_cash)}). Loan payments may be exceeding available funds.",
                severity="alert",
                type="sustainability",
            )
        )

    return warnings

from datetime import date

import pytest

from rates import advance_date
from results import (
    check_sustainability,
    detect_increasing_debt,
    detect_negative_cash_flow,
    find_loan_payoff_date,
    format_currency,
    generate_warnings,
    group_by_time_interval,
    is_financial_state_complete,
    states_to_dataframe,
    yearly_summary,
)
from tests.conftest import make_state


def _monthly(count, **series):
    start = date(2024, 1, 1)
    return [
        make_state(advance_date(start, "month", i), **{k: fn(i) for k, fn in series.items()})
        for i in range(count)
    ]


def test_format_currency():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(-1234.5) == "-$1,234.50"
    assert format_currency(120000, decimals=0) == "$120,000"


def test_grouping_keeps_last_state_of_each_bucket_plus_the_ends():
    states = _monthly(25)
    grouped = group_by_time_interval(states, "year")
    assert [states.index(s) for s in grouped] == [0, 11, 23, 24]
    assert group_by_time_interval(states, "month") == states


def test_grouping_edge_cases():
    assert group_by_time_interval([], "year") == []
    single = _monthly(1)
    assert group_by_time_interval(single, "year") == single
    with pytest.raises(ValueError):
        group_by_time_interval(_monthly(3), "decade")


def test_dataframe_and_yearly_summary():
    states = _monthly(25, net_worth=float, cash_flow=lambda i: 1.0)
    df = states_to_dataframe(states)
    assert len(df) == 25
    assert "net_worth" in df.columns

    summary = yearly_summary(states)
    assert list(summary.index) == [2024, 2025, 2026]
    assert list(summary["net_worth"]) == [11, 23, 24]
    assert list(summary["cash_flow"]) == [12, 12, 1]


def test_empty_summary():
    assert yearly_summary([]).empty


def test_state_completeness():
    assert is_financial_state_complete(make_state(date(2024, 1, 1)))
    assert not is_financial_state_complete(make_state(date(2024, 1, 1), cash=float("nan")))


def test_negative_cash_flow_streak():
    flows = [1, -1, -1, 1, -1, -1, -1, -1, 0]
    result = detect_negative_cash_flow(_monthly(len(flows), cash_flow=lambda i: float(flows[i])))
    assert result.detected
    assert result.consecutive_periods == 4

    short = detect_negative_cash_flow(_monthly(3, cash_flow=lambda i: -1.0 if i else 0.0))
    assert not short.detected


def test_sustainability_of_a_healthy_trajectory():
    states = _monthly(12, net_worth=lambda i: 1000.0 * i, loan_balance=lambda i: 5000.0 - i)
    result = check_sustainability(states)
    assert result.is_sustainable
    assert result.has_net_worth_growth
    assert not detect_increasing_debt(states)
    assert generate_warnings(states) == []


def test_warnings_for_a_failing_trajectory():
    states = _monthly(
        6,
        loan_balance=lambda i: 1000.0 + i,
        cash=lambda i: -2000.0 * i,
        cash_flow=lambda i: -2000.0,
        net_worth=lambda i: -3000.0 * i,
    )
    assert not check_sustainability(states).is_sustainable
    kinds = [(w.type, w.severity) for w in generate_warnings(states)]
    assert kinds == [
        ("debt", "warning"),
        ("cashflow", "alert"),
        ("sustainability", "warning"),
        ("sustainability", "alert"),
    ]


def test_loan_payoff_date():
    states = _monthly(5, loan_balance=lambda i: max(0.0, 300.0 - 100 * i))
    assert find_loan_payoff_date(states) == date(2024, 4, 1)
    assert find_loan_payoff_date(_monthly(3)) is None

from datetime import date

import pytest

from config import ExpenseItem, IncomeSource, Person
from processors import (
    calculate_expenses,
    calculate_expenses_from_items,
    calculate_income,
    calculate_investment_growth,
    calculate_loan_payment,
    calculate_safe_withdrawal,
    calculate_tax,
    calculate_total_annual_after_tax_income,
    calculate_total_annual_income,
    calculate_total_loan_payment,
    find_retirement_date,
    is_income_source_active,
)
from tax import default_tax_brackets
from tests.conftest import make_state


# ---------------------------------------------------------------------------
# Income and tax
# ---------------------------------------------------------------------------

def test_one_off_income_fires_only_in_its_month():
    bonus = IncomeSource(id="bonus", amount=5000, is_one_off=True, one_off_date=date(2024, 3, 15))
    assert is_income_source_active(bonus, date(2024, 3, 1))
    assert not is_income_source_active(bonus, date(2024, 4, 1))
    assert not is_income_source_active(bonus, date(2025, 3, 1))


def test_income_window_is_start_inclusive_end_exclusive():
    job = IncomeSource(id="job", amount=1000, start_date=date(2024, 2, 1), end_date=date(2024, 6, 1))
    assert not is_income_source_active(job, date(2024, 1, 1))
    assert is_income_source_active(job, date(2024, 2, 1))
    assert not is_income_source_active(job, date(2024, 6, 1))


def test_legacy_salary_spread_over_periods(make_params):
    params = make_params(annual_salary=120000, income_tax_rate=25)
    assert calculate_income(params, "month") == pytest.approx(10000)
    assert calculate_tax(params, "month") == pytest.approx(2500)
    assert calculate_income(params, "year") == pytest.approx(120000)


def test_before_and_after_tax_income_are_kept_apart(make_params):
    params = make_params(
        income_sources=[
            IncomeSource(id="job", amount=5000, frequency="monthly"),
            IncomeSource(id="rent", amount=300, frequency="weekly", is_before_tax=False),
        ],
        income_tax_rate=10,
    )
    assert calculate_total_annual_income(params) == pytest.approx(60000)
    assert calculate_total_annual_after_tax_income(params) == pytest.approx(15600)
    assert calculate_tax(params, "year") == pytest.approx(6000)
    assert calculate_income(params, "year") == pytest.approx(75600)


def test_one_off_income_is_received_in_full_and_taxed_at_the_margin(make_params):
    params = make_params(
        income_sources=[
            IncomeSource(id="job", amount=60000),
            IncomeSource(id="bonus", amount=10000, is_one_off=True, one_off_date=date(2024, 6, 10)),
        ],
        tax_brackets=default_tax_brackets(),
    )
    june = date(2024, 6, 1)
    assert calculate_income(params, "month", june) == pytest.approx(5000 + 10000)
    assert calculate_income(params, "month", date(2024, 7, 1)) == pytest.approx(5000)

    base_monthly_tax = calculate_tax(params, "month", date(2024, 7, 1))
    assert calculate_tax(params, "month", june) - base_monthly_tax == pytest.approx(3250)


def test_household_tax_is_computed_per_person(make_params):
    brackets = default_tax_brackets()
    couple = make_params(
        household_mode="couple",
        tax_brackets=brackets,
        people=[
            Person(id="a", current_age=40, retirement_age=65,
                   income_sources=[IncomeSource(id="a-job", amount=60000)]),
            Person(id="b", current_age=40, retirement_age=65,
                   income_sources=[IncomeSource(id="b-job", amount=60000)]),
        ],
    )
    single = make_params(
        tax_brackets=brackets,
        income_sources=[IncomeSource(id="job", amount=120000)],
    )
    assert calculate_tax(couple, "year") == pytest.approx(2 * 9967)
    assert calculate_tax(single, "year") == pytest.approx(29467)
    assert calculate_total_annual_income(couple) == calculate_total_annual_income(single)


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------

def test_expense_items_are_normalized_to_the_interval():
    items = [
        ExpenseItem(id="rent", amount=500, frequency="weekly"),
        ExpenseItem(id="gym", amount=600, frequency="yearly"),
        ExpenseItem(id="off", amount=999, enabled=False),
    ]
    assert calculate_expenses_from_items(items, "month") == pytest.approx(500 * 52 / 12 + 50)


def test_expense_date_window(make_params):
    items = [ExpenseItem(id="lease", amount=400, end_date=date(2024, 6, 1))]
    assert calculate_expenses_from_items(items, "month", date(2024, 5, 1)) == pytest.approx(400)
    assert calculate_expenses_from_items(items, "month", date(2024, 6, 1)) == 0


def test_one_off_expense_uses_actual_period_end_when_given():
    items = [ExpenseItem(id="trip", amount=3000, is_one_off=True, one_off_date=date(2024, 1, 31))]
    start = date(2024, 1, 1)
    # Without a period end the month is approximated as 30 days, which ends on 31 Jan.
    assert calculate_expenses_from_items(items, "month", start) == 0
    assert calculate_expenses_from_items(items, "month", start, date(2024, 2, 1)) == pytest.approx(3000)
    assert calculate_expenses_from_items(items, "month", date(2024, 2, 1), date(2024, 3, 1)) == 0


def test_legacy_expenses(make_params):
    params = make_params(monthly_living_expenses=2000, monthly_rent_or_mortgage=1500)
    assert calculate_expenses(params, "month") == pytest.approx(3500)
    assert calculate_expenses(params, "year") == pytest.approx(42000)


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------

def test_paid_off_loan_is_terminal():
    result = calculate_loan_payment(0, 1000, 0.05, 500, "month")
    assert result == (0.0, 0.0, 0.0, 0.0, 0.0)


def test_principal_never_increases():
    result = calculate_loan_payment(100000, 0, 0.12, 10, "month")
    assert result.new_balance == 100000
    assert result.principal_paid == 0


def test_final_payment_clears_the_balance():
    result = calculate_loan_payment(300, 0, 0.06, 500, "month")
    assert result.new_balance == 0
    assert result.principal_paid == 300


def test_offset_reduces_interest_not_principal():
    without = calculate_loan_payment(200000, 50000, 0.06, 1500, "month", use_offset=False)
    with_offset = calculate_loan_payment(200000, 50000, 0.06, 1500, "month", use_offset=True)

    assert with_offset.interest_paid < without.interest_paid
    assert with_offset.interest_saved == pytest.approx(without.interest_paid - with_offset.interest_paid)
    assert with_offset.interest_paid == pytest.approx(150000 * (1.06 ** (1 / 12) - 1))
    assert without.interest_saved == 0


def test_offset_larger_than_balance_removes_interest():
    result = calculate_loan_payment(10000, 25000, 0.06, 500, "month", use_offset=True)
    assert result.interest_paid == 0
    assert result.new_balance == 9500


def test_debt_recycling_reports_deductible_interest():
    result = calculate_loan_payment(100000, 0, 0.05, 1000, "month", is_debt_recycling=True)
    assert result.deductible_interest == result.interest_paid > 0


def test_total_loan_payment(make_params):
    params = make_params(loan_principal=1000, loan_payment_amount=600, loan_payment_frequency="fortnightly")
    assert calculate_total_loan_payment(params, "month") == pytest.approx(600 * 26 / 12)


# ---------------------------------------------------------------------------
# Growth and retirement
# ---------------------------------------------------------------------------

def test_yearly_growth_without_contribution():
    assert calculate_investment_growth(1000, 0, 0.07, "year") == pytest.approx(1070)


def test_contribution_earns_one_period_of_growth():
    assert calculate_investment_growth(0, 100, 0.12, "year") == pytest.approx(112)


def test_super_counts_only_from_preservation_age():
    assert calculate_safe_withdrawal(500000, 500000, 59.9) == pytest.approx(20000)
    assert calculate_safe_withdrawal(500000, 500000, 60) == pytest.approx(40000)


def _yearly_states(investments_by_year):
    return [
        make_state(date(2024 + i, 1, 1), investments=value)
        for i, value in enumerate(investments_by_year)
    ]


def test_retirement_found_when_assets_reach_target():
    states = _yearly_states([200_000 * i for i in range(11)])
    outcome = find_retirement_date(states, 40000, current_age=55, retirement_age=55)
    assert outcome.date == date(2029, 1, 1)
    assert outcome.age >= 60


def test_retirement_feasible_at_target_age():
    states = _yearly_states([2_000_000] * 11)
    outcome = find_retirement_date(states, 40000, current_age=50, retirement_age=55)
    assert outcome.date == date(2029, 1, 1)
    assert outcome.age == pytest.approx(55, abs=0.01)


def test_retirement_not_achievable_is_a_null_outcome():
    states = _yearly_states([1000] * 11)
    outcome = find_retirement_date(states, 40000, current_age=55, retirement_age=60)
    assert outcome.date is None and outcome.age is None
    assert find_retirement_date([], 40000, 55, 60) == (None, None)

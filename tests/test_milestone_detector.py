from datetime import date

import pytest

from config import (
    ExpenseItem,
    IncomeSource,
    Loan,
    ParameterTransition,
    Person,
    SimulationConfiguration,
)
from constants import LEGACY_LOAN_ID
from milestone_detector import (
    MilestoneDetector,
    create_milestone_detector,
    detect_milestones_from_simulation,
)
from milestones import MilestoneDetectionConfig
from models import TransitionPoint
from performance import PerformanceMonitor
from rates import advance_date
from simulation import SimulationEngine
from tests.conftest import make_state

START = date(2024, 1, 1)


def _monthly_states(count, **series):
    """``count`` monthly states; each keyword maps a field to a function of the index."""
    return [
        make_state(advance_date(START, "month", i), **{name: fn(i) for name, fn in series.items()})
        for i in range(count)
    ]


@pytest.fixture
def home_loan():
    return Loan(id="home", label="Home Loan", principal=100000, interest_rate=5, payment_amount=1150)


@pytest.fixture
def amortizing_states():
    def balances(i):
        return max(0.0, 100000 - 1150 * i)

    return _monthly_states(
        120,
        loan_balance=balances,
        loan_balances=lambda i: {"home": balances(i)},
    )


# ---------------------------------------------------------------------------
# Loan payoff
# ---------------------------------------------------------------------------

def test_loan_payoff_from_a_simulation(make_params):
    params = make_params(
        annual_salary=60000,
        income_tax_rate=20,
        loan_principal=10000,
        loan_interest_rate=5.5,
        loan_payment_amount=500,
        simulation_years=3,
    )
    states = SimulationEngine().run_simulation(params).states
    payoffs = MilestoneDetector().detect_loan_payoffs(states, params)

    assert len(payoffs) == 1
    milestone = payoffs[0]
    index = next(i for i, s in enumerate(states) if s.loan_balance == 0)
    assert milestone.loan_id == LEGACY_LOAN_ID
    assert milestone.date == states[index].date
    assert milestone.months_to_payoff == index
    assert milestone.final_payment_amount == pytest.approx(states[index - 1].loan_balance)
    assert milestone.total_interest_paid == pytest.approx(10000 * 0.05 * index / 12)
    assert milestone.financial_impact == milestone.total_interest_paid
    assert milestone.id == f"loan-payoff-{LEGACY_LOAN_ID}-{milestone.date.isoformat()}"


def test_bisection_and_linear_scan_agree(amortizing_states, home_loan):
    detector = MilestoneDetector()
    linear = detector.detect_single_loan_payoff(amortizing_states, home_loan, use_binary_search=False)
    binary = detector.detect_single_loan_payoff(amortizing_states, home_loan, use_binary_search=True)

    assert linear == binary
    assert linear.months_to_payoff == 87
    assert linear.date == advance_date(START, "month", 87)
    assert linear.final_payment_amount == pytest.approx(1100)
    assert linear.total_interest_paid == pytest.approx(100000 * 0.05 * 87 / 12)
    assert linear.title == "Home Loan Paid Off"


def test_loan_that_never_clears_has_no_milestone(home_loan):
    states = _monthly_states(24, loan_balances=lambda i: {"home": 100000 - 500 * i})
    assert MilestoneDetector().detect_single_loan_payoff(states, home_loan) is None
    assert MilestoneDetector().detect_single_loan_payoff(states[:1], home_loan) is None


def test_loan_starting_at_zero_has_no_milestone(home_loan):
    states = _monthly_states(12, loan_balances=lambda i: {"home": 0.0})
    assert MilestoneDetector().detect_single_loan_payoff(states, home_loan) is None


def test_payoff_scan_is_memoized_per_detector(amortizing_states, home_loan, make_params):
    params = make_params(loans=[home_loan], simulation_years=10)
    first = MilestoneDetector()
    second = MilestoneDetector()

    assert first.detect_loan_payoffs(amortizing_states, params) == first.detect_loan_payoffs(
        amortizing_states, params
    )
    assert len(first._loan_payoff_cache) == 1
    assert len(second._loan_payoff_cache) == 0

    first.clear_cache()
    assert len(first._loan_payoff_cache) == 0


def test_cache_entries_expire(amortizing_states, home_loan, make_params):
    now = [0.0]
    detector = MilestoneDetector(
        MilestoneDetectionConfig(cache_ttl_seconds=10), cache_clock=lambda: now[0]
    )
    params = make_params(loans=[home_loan], simulation_years=10)
    detector.detect_loan_payoffs(amortizing_states, params)
    assert len(detector._loan_payoff_cache) == 1
    now[0] = 11.0
    assert len(detector._loan_payoff_cache) == 0


def test_reused_detector_reports_each_runs_own_dates(home_loan, make_params):
    params = make_params(loans=[home_loan], simulation_years=10)

    def run_from(start):
        return [
            make_state(advance_date(start, "month", i), loan_balances={"home": max(0.0, 100000 - 1150 * i)})
            for i in range(120)
        ]

    detector = MilestoneDetector()
    (first,) = detector.detect_loan_payoffs(run_from(START), params)
    (later,) = detector.detect_loan_payoffs(run_from(date(2030, 6, 1)), params)
    (fresh,) = MilestoneDetector().detect_loan_payoffs(run_from(date(2030, 6, 1)), params)

    assert first.date == advance_date(START, "month", 87)
    assert later.date == advance_date(date(2030, 6, 1), "month", 87)
    assert later == fresh
    assert len(detector._loan_payoff_cache) == 2

    renamed = make_params(loans=[home_loan.model_copy(update={"label": "Mortgage"})], simulation_years=10)
    (relabelled,) = detector.detect_loan_payoffs(run_from(START), renamed)
    assert relabelled.title == "Mortgage Paid Off"


def test_legacy_loan_balance_comes_from_the_loan_map():
    legacy = Loan(id=LEGACY_LOAN_ID, principal=1000, interest_rate=5, payment_amount=200)
    states = _monthly_states(
        12,
        loan_balance=lambda i: max(0.0, 1000 - 200 * i) + 5000,
        loan_balances=lambda i: {LEGACY_LOAN_ID: max(0.0, 1000 - 200 * i), "car": 5000.0},
    )
    milestone = MilestoneDetector().detect_single_loan_payoff(states, legacy)

    assert milestone.months_to_payoff == 5
    assert milestone.final_payment_amount == pytest.approx(200)


def test_loan_added_by_a_transition_gets_a_payoff_milestone(make_params):
    car = Loan(id="car", label="Car", principal=10000, interest_rate=5.5, payment_amount=500)
    config = SimulationConfiguration(
        base_parameters=make_params(annual_salary=60000, income_tax_rate=20, simulation_years=3),
        transitions=[
            ParameterTransition(
                id="buy-car", transition_date=date(2025, 1, 1), parameter_changes={"loans": [car]}
            )
        ],
    )
    result = SimulationEngine().run_simulation_with_transitions(config)
    detector = MilestoneDetector(MilestoneDetectionConfig(minimum_impact_threshold=None))
    milestones = detector.detect_milestones(
        result.states, config.base_parameters, result.transition_points
    ).milestones

    (payoff,) = [m for m in milestones if m.type == "loan_payoff"]
    added = result.transition_points[0].state_index
    index = next(i for i, s in enumerate(result.states) if s.loan_balances.get("car") == 0)
    assert payoff.loan_id == "car"
    assert payoff.title == "Car Paid Off"
    assert payoff.date == result.states[index].date
    assert payoff.months_to_payoff == index - added + 1
    assert payoff.total_interest_paid == pytest.approx(10000 * 0.05 * (index - added + 1) / 12)


# ---------------------------------------------------------------------------
# Offset completion
# ---------------------------------------------------------------------------

def test_offset_completion_is_reported_once():
    loan = Loan(id="home", principal=100000, interest_rate=6, payment_amount=1000, has_offset=True)
    loans = [100000, 90000, 80000, 70000, 60000, 50000]
    offsets = [20000, 40000, 60000, 65000, 60000, 70000]
    states = _monthly_states(
        6,
        loan_balances=lambda i: {"home": loans[i]},
        offset_balances=lambda i: {"home": offsets[i]},
    )

    milestone = MilestoneDetector()._detect_single_offset_completion(states, loan)
    assert milestone.date == states[4].date
    assert milestone.financial_impact == pytest.approx(60000 * 0.06)
    assert milestone.offset_amount == 60000
    assert milestone.interest_savings_rate == 6


def test_loans_without_offset_are_skipped(make_params):
    loan = Loan(id="car", principal=1000, interest_rate=6, payment_amount=100)
    states = _monthly_states(
        3,
        loan_balances=lambda i: {"car": 1000.0 - i},
        offset_balances=lambda i: {"car": 5000.0},
    )
    assert MilestoneDetector().detect_offset_completion(states, make_params(loans=[loan])) == []


# ---------------------------------------------------------------------------
# Retirement
# ---------------------------------------------------------------------------

def test_single_person_retirement(make_params):
    params = make_params(
        current_age=59,
        retirement_age=60,
        desired_annual_retirement_income=40000,
        simulation_years=3,
    )
    states = _monthly_states(37, investments=lambda i: 1_200_000.0)
    milestones = MilestoneDetector().detect_retirement_eligibility(states, params)

    assert len(milestones) == 1
    milestone = milestones[0]
    assert milestone.date == date(2025, 1, 1)
    assert milestone.title == "Retirement Goal Achieved"
    assert milestone.required_assets == pytest.approx(1_000_000)
    assert milestone.financial_impact == pytest.approx(200_000)


def test_household_retirement_produces_one_event_per_person_and_one_for_the_household(make_params):
    params = make_params(
        household_mode="couple",
        desired_annual_retirement_income=50000,
        simulation_years=6,
        people=[
            Person(id="a", name="Alex", current_age=60, retirement_age=62,
                   income_sources=[IncomeSource(id="a-job", amount=80000)]),
            Person(id="b", name="Blair", current_age=60, retirement_age=64,
                   income_sources=[IncomeSource(id="b-job", amount=40000)]),
        ],
    )
    states = _monthly_states(
        73, investments=lambda i: 1_000_000.0, superannuation=lambda i: 500_000.0
    )
    alex, blair, household = MilestoneDetector().detect_retirement_eligibility(states, params)

    assert (alex.date, alex.title, alex.person_id) == (date(2026, 1, 1), "Alex Retires", "a")
    assert alex.income_share == pytest.approx(2 / 3)
    assert alex.financial_impact == pytest.approx(-80000)
    assert "Other household members continue working." in alex.description

    assert blair.date == date(2028, 1, 1)
    assert blair.income_share == pytest.approx(1 / 3)
    assert "This begins the household's retirement phase." in blair.description

    assert household.title == "Household Fully Retired"
    assert household.date == date(2028, 1, 1)
    assert household.person_id is None
    assert household.financial_impact == pytest.approx(1_500_000 - 50000 / 0.04)


def test_person_without_income_has_no_impact(make_params):
    params = make_params(
        household_mode="couple",
        simulation_years=3,
        people=[
            Person(id="a", name="Alex", current_age=60, retirement_age=61),
            Person(id="b", name="Blair", current_age=60, retirement_age=70),
        ],
    )
    states = _monthly_states(37)
    milestones = MilestoneDetector().detect_retirement_eligibility(states, params)
    assert [m.title for m in milestones] == ["Alex Retires"]
    assert milestones[0].financial_impact is None
    assert milestones[0].income_share is None


# ---------------------------------------------------------------------------
# Parameter transitions
# ---------------------------------------------------------------------------

def test_salary_transition_milestone(make_params):
    config = SimulationConfiguration(
        base_parameters=make_params(annual_salary=60000),
        transitions=[
            ParameterTransition(
                id="raise", transition_date=date(2024, 7, 1), parameter_changes={"annualSalary": 120000}
            )
        ],
    )
    result = SimulationEngine().run_simulation_with_transitions(config)
    (milestone,) = MilestoneDetector().detect_parameter_transitions(
        result.states, result.transition_points
    )

    assert milestone.id == "parameter-transition-raise"
    assert milestone.title == "Income Changes"
    assert milestone.description.startswith("Annual salary changed to $120,000.")
    assert milestone.financial_impact == pytest.approx(
        result.states[6].net_worth - result.states[5].net_worth
    )
    assert milestone.parameter_changes["annual_salary"].from_value == 60000


def test_transition_point_without_recorded_changes():
    transition = ParameterTransition(
        id="retire-early", transition_date=date(2025, 1, 1), parameter_changes={"retirementAge": 55}
    )
    point = TransitionPoint(
        date=transition.transition_date,
        state_index=99,
        transition=transition,
        changes_summary="Changed: retirement_age",
    )
    (milestone,) = MilestoneDetector().detect_parameter_transitions(_monthly_states(3), [point])

    assert milestone.title == "Retirement Planning Changes"
    assert milestone.description == "Retirement age changed to 55. Changed: retirement_age"
    assert milestone.financial_impact is None


@pytest.mark.parametrize(
    "changes,title",
    [
        ({"loanPaymentAmount": 2000}, "Loan Changes"),
        ({"monthlyInvestmentContribution": 500}, "Investment Strategy Changes"),
        ({"monthlyLivingExpenses": 100}, "Parameter Change"),
    ],
)
def test_transition_titles_follow_category(changes, title):
    transition = ParameterTransition(id="t", transition_date=date(2025, 1, 1), parameter_changes=changes)
    point = TransitionPoint(
        date=transition.transition_date, state_index=1, transition=transition, changes_summary="x"
    )
    (milestone,) = MilestoneDetector().detect_parameter_transitions(_monthly_states(3), [point])
    assert milestone.title == title


# ---------------------------------------------------------------------------
# Expense expiration
# ---------------------------------------------------------------------------

def test_expense_expiration(make_params):
    params = make_params(
        expense_items=[
            ExpenseItem(id="lease", name="Car lease", amount=500, category="transportation",
                        end_date=date(2024, 6, 1)),
            ExpenseItem(id="streaming", amount=50, end_date=date(2024, 6, 1)),
            ExpenseItem(id="later", amount=900, end_date=date(2030, 1, 1)),
            ExpenseItem(id="ongoing", amount=900),
        ]
    )
    milestones = MilestoneDetector().detect_expense_expirations(_monthly_states(13), params)

    assert len(milestones) == 1
    milestone = milestones[0]
    assert milestone.date == date(2024, 6, 1)
    assert milestone.title == "Car lease Expires"
    assert milestone.monthly_savings == pytest.approx(500)
    assert milestone.annual_savings == pytest.approx(6000)
    assert milestone.financial_impact == pytest.approx(6000)
    assert milestone.expense_category == "transportation"


def test_expense_added_by_a_transition_gets_an_expiration_milestone(make_params):
    daycare = ExpenseItem(id="daycare", name="Daycare", amount=1500, end_date=date(2025, 6, 1))
    transition = ParameterTransition(
        id="new-baby", transition_date=date(2024, 7, 1), parameter_changes={"expenseItems": [daycare]}
    )
    point = TransitionPoint(
        date=transition.transition_date,
        state_index=6,
        transition=transition,
        changes_summary="Changed: expense_items",
    )
    milestones = MilestoneDetector().detect_milestones(
        _monthly_states(25), make_params(simulation_years=2), [point]
    ).milestones

    (expiry,) = [m for m in milestones if m.type == "expense_expiration"]
    assert expiry.expense_id == "daycare"
    assert expiry.date == date(2025, 6, 1)
    assert expiry.annual_savings == pytest.approx(18000)


def test_threshold_can_be_disabled(make_params):
    params = make_params(expense_items=[ExpenseItem(id="streaming", amount=50, end_date=date(2024, 6, 1))])
    detector = MilestoneDetector(MilestoneDetectionConfig(minimum_impact_threshold=None))
    assert len(detector.detect_expense_expirations(_monthly_states(13), params)) == 1


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def test_detect_milestones_merges_sorts_and_filters(make_params, amortizing_states, home_loan):
    params = make_params(
        loans=[home_loan],
        simulation_years=10,
        expense_items=[
            ExpenseItem(id="lease", amount=500, end_date=date(2024, 6, 1)),
            ExpenseItem(id="tiny", amount=10, end_date=date(2024, 3, 1)),
        ],
    )
    result = MilestoneDetector().detect_milestones(amortizing_states, params)

    assert result.errors == []
    assert [m.type for m in result.milestones] == ["expense_expiration", "loan_payoff"]
    dates = [m.date for m in result.milestones]
    assert dates == sorted(dates)


def test_disabled_detectors_do_not_run(make_params, amortizing_states, home_loan):
    params = make_params(loans=[home_loan], simulation_years=10)
    detector = MilestoneDetector(MilestoneDetectionConfig(detect_loan_payoffs=False))
    assert detector.detect_milestones(amortizing_states, params).milestones == []


def test_failures_are_reported_not_raised(make_params):
    result = MilestoneDetector().detect_milestones(None, make_params())
    assert result.milestones == []
    assert len(result.errors) == 1
    assert result.errors[0].code == "DETECTION_FAILED"
    assert result.errors[0].severity == "critical"


def test_monitor_records_each_detector(make_params, amortizing_states, home_loan):
    monitor = PerformanceMonitor()
    MilestoneDetector(monitor=monitor).detect_milestones(
        amortizing_states, make_params(loans=[home_loan], simulation_years=10)
    )
    operations = {record["operation"] for record in monitor.records}
    assert {"milestone_detection", "loan_payoff_detection", "expense_expiration_detection"} <= operations


def test_config_updates(amortizing_states, home_loan, make_params):
    detector = create_milestone_detector()
    snapshot = detector.get_config()
    snapshot.minimum_impact_threshold = 5
    assert detector.get_config().minimum_impact_threshold == 1000

    detector.detect_loan_payoffs(amortizing_states, make_params(loans=[home_loan], simulation_years=10))
    detector.update_config(detect_retirement_eligibility=False)
    assert len(detector._loan_payoff_cache) == 1
    detector.update_config(cache_size=5)
    assert detector.get_config().cache_size == 5
    assert len(detector._loan_payoff_cache) == 0

    with pytest.raises(ValueError):
        detector.update_config(minimum_impact_threshold=-1)


def test_one_shot_helper(make_params, amortizing_states, home_loan):
    result = detect_milestones_from_simulation(
        amortizing_states, make_params(loans=[home_loan], simulation_years=10)
    )
    assert [m.type for m in result.milestones] == ["loan_payoff"]

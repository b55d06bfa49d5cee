from datetime import date
from typing import Dict, List, NamedTuple, Optional, Tuple

from loguru import logger

from config import (
    ParameterTransition,
    ResolvedParameters,
    SimulationConfiguration,
    SimulationValidationError,
    TimeInterval,
    UserParameters,
    resolve_parameters,
)
from models import (
    ComparisonMetrics,
    ComparisonSimulationResult,
    EnhancedSimulationResult,
    FinancialState,
    SimulationResult,
    TransitionPoint,
)
from performance import PerformanceMonitor, track
from processors import (
    calculate_before_tax_income,
    calculate_expenses,
    calculate_income,
    calculate_investment_growth,
    calculate_loan_payment,
    calculate_tax,
    find_retirement_date,
)
from rates import advance_date, amount_per_interval, periods_per_year, years_between
from results import check_sustainability as assess_sustainability
from results import generate_warnings
from transitions import (
    apply_transition,
    build_parameter_periods,
    describe_changes,
    simulation_end_date,
    sorted_transitions,
    summarize_changes,
)


class _Projection(NamedTuple):
    states: List[FinancialState]
    transition_points: List[TransitionPoint]
    final_parameters: UserParameters


def _net_worth(cash: float, investments: float, superannuation: float, offset: float, loans: float) -> float:
    # Offset balances are cash held against a loan, so they count as assets.
    return cash + investments + superannuation + offset - loans


class SimulationEngine:
    """
    Deterministic period-by-period projection of a household's finances.

    Each period runs the processors in a fixed order: income, tax, expenses,
    loans, investments, superannuation, then any leftover cash is parked in
    the first open offset account. Results depend only on the inputs.
    """

    def __init__(self, interval: TimeInterval = "month", monitor: Optional[PerformanceMonitor] = None):
        periods_per_year(interval)
        self.interval = interval
        self.monitor = monitor

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    @staticmethod
    def initial_state(resolved: ResolvedParameters, start_date: date) -> FinancialState:
        loan_balances = {loan.id: loan.principal for loan in resolved.loans}
        offset_balances = {loan.id: loan.offset_balance for loan in resolved.loans}
        super_balances = {account.id: account.balance for account in resolved.super_accounts}
        investments = resolved.source.current_investment_balance

        loan_total = sum(loan_balances.values())
        offset_total = sum(offset_balances.values())
        super_total = sum(super_balances.values())
        return FinancialState(
            date=start_date,
            cash=0.0,
            investments=investments,
            superannuation=super_total,
            loan_balance=loan_total,
            offset_balance=offset_total,
            net_worth=_net_worth(0.0, investments, super_total, offset_total, loan_total),
            cash_flow=0.0,
            tax_paid=0.0,
            expenses=0.0,
            interest_saved=0.0,
            loan_balances=loan_balances,
            super_balances=super_balances,
            offset_balances=offset_balances,
        )

    def calculate_time_step(
        self,
        state: FinancialState,
        resolved: ResolvedParameters,
        period_start: date,
        period_end: date,
    ) -> FinancialState:
        """Advances ``state`` by one period under ``resolved`` parameters."""
        interval = self.interval
        params = resolved.source
        cash = state.cash

        # Income and tax
        gross_income = calculate_income(resolved, interval, period_start)
        tax_paid = calculate_tax(resolved, interval, period_start)
        net_income = gross_income - tax_paid
        cash += net_income

        # Expenses
        expenses = calculate_expenses(resolved, interval, period_start, period_end)
        cash -= expenses

        # Loans, in configured order; a short period pays what cash allows.
        loan_balances: Dict[str, float] = {}
        offset_balances: Dict[str, float] = {}
        loan_interest_paid: Dict[str, float] = {}
        loan_payments = 0.0
        interest_saved = 0.0
        deductible_interest = 0.0
        for loan in resolved.loans:
            balance = state.loan_balances.get(loan.id, loan.principal)
            offset = state.offset_balances.get(loan.id, loan.offset_balance)
            offset_balances[loan.id] = offset
            if balance <= 0:
                loan_balances[loan.id] = 0.0
                continue

            scheduled = amount_per_interval(loan.payment_amount, loan.payment_frequency, interval)
            payment = scheduled if cash >= scheduled else max(0.0, cash)
            result = calculate_loan_payment(
                balance,
                offset,
                loan.interest_rate / 100,
                payment,
                interval,
                use_offset=loan.has_offset,
                is_debt_recycling=loan.is_debt_recycling,
            )
            paid = min(payment, result.interest_paid + result.principal_paid)
            if cash >= scheduled:
                cash -= paid
            else:
                cash = 0.0
            loan_payments += paid
            loan_balances[loan.id] = result.new_balance
            loan_interest_paid[loan.id] = result.interest_paid
            interest_saved += result.interest_saved
            deductible_interest += result.deductible_interest

        # Investments; the contribution is skipped when cash cannot cover it.
        contribution = params.monthly_investment_contribution * 12 / periods_per_year(interval)
        if cash <= 0 or cash < contribution:
            contribution = 0.0
        cash -= contribution
        investments = calculate_investment_growth(
            state.investments, contribution, params.investment_return_rate / 100, interval
        )

        # Superannuation, per account
        people = {person.id: person for person in resolved.people}
        super_balances: Dict[str, float] = {}
        for account in resolved.super_accounts:
            owner = people.get(account.person_id) if account.person_id else None
            sources = owner.income_sources if owner else resolved.income_sources
            before_tax = calculate_before_tax_income(sources, interval, period_start)
            super_balances[account.id] = calculate_investment_growth(
                state.super_balances.get(account.id, account.balance),
                before_tax * account.contribution_rate / 100,
                account.return_rate / 100,
                interval,
            )

        # Leftover cash goes to the first offset account with a loan still open.
        if cash > 0:
            for loan in resolved.loans:
                if loan.has_offset and loan_balances.get(loan.id, 0.0) > 0:
                    offset_balances[loan.id] += cash
                    cash = 0.0
                    break

        loan_total = sum(loan_balances.values())
        offset_total = sum(offset_balances.values())
        super_total = sum(super_balances.values())
        return FinancialState(
            date=period_end,
            cash=cash,
            investments=investments,
            superannuation=super_total,
            loan_balance=loan_total,
            offset_balance=offset_total,
            net_worth=_net_worth(cash, investments, super_total, offset_total, loan_total),
            cash_flow=net_income - expenses - loan_payments - contribution,
            tax_paid=tax_paid,
            expenses=expenses,
            interest_saved=interest_saved,
            deductible_interest=deductible_interest,
            loan_balances=loan_balances,
            super_balances=super_balances,
            offset_balances=offset_balances,
            loan_interest_paid=loan_interest_paid,
        )

    # ------------------------------------------------------------------
    # Sustainability
    # ------------------------------------------------------------------

    @staticmethod
    def check_sustainability(states: List[FinancialState]) -> Tuple[bool, List[str]]:
        """Whether the trajectory is sustainable, with the reasons when it is not."""
        assessment = assess_sustainability(states)
        reasons = []
        if assessment.has_increasing_debt:
            reasons.append("Loan balance is increasing over time")
        if assessment.has_negative_cash_flow:
            reasons.append("Sustained negative cash flow detected")
        if states and states[-1].net_worth < 0:
            reasons.append("Net worth is negative")
        return assessment.is_sustainable, reasons

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @staticmethod
    def _active_transitions(config: SimulationConfiguration) -> List[ParameterTransition]:
        base = config.base_parameters
        start = base.start_date
        end = simulation_end_date(base)

        transitions = sorted_transitions(config)
        seen = set()
        for transition in transitions:
            if transition.transition_date <= start:
                raise SimulationValidationError(
                    f"Transition '{transition.id}' on {transition.transition_date} is not after the start date {start}."
                )
            if transition.transition_date in seen:
                raise SimulationValidationError(
                    f"More than one transition is dated {transition.transition_date}."
                )
            seen.add(transition.transition_date)

        active = [t for t in transitions if t.transition_date < end]
        for skipped in transitions[len(active):]:
            logger.warning(
                f"Transition '{skipped.id}' on {skipped.transition_date} is on or after the simulation end ({end}); ignoring it."
            )
        return active

    def _project(self, config: SimulationConfiguration) -> _Projection:
        base = config.base_parameters
        transitions = self._active_transitions(config)
        start = base.start_date
        end = simulation_end_date(base)

        active = base
        resolved = resolve_parameters(active)
        states = [self.initial_state(resolved, start)]
        transition_points: List[TransitionPoint] = []
        next_transition = 0

        step = 0
        period_start = start
        while period_start < end:
            step += 1
            period_end = advance_date(start, self.interval, step)

            while (
                next_transition < len(transitions)
                and transitions[next_transition].transition_date <= period_end
            ):
                transition = transitions[next_transition]
                changes = describe_changes(active, transition)
                active = apply_transition(active, transition)
                resolved = resolve_parameters(active)
                transition_points.append(
                    TransitionPoint(
                        date=transition.transition_date,
                        state_index=len(states),
                        transition=transition,
                        changes_summary=summarize_changes(transition),
                        changes=changes,
                    )
                )
                logger.debug(
                    f"Applied transition '{transition.id}' ({summarize_changes(transition)}) at state {len(states)}"
                )
                next_transition += 1

            states.append(self.calculate_time_step(states[-1], resolved, period_start, period_end))
            period_start = period_end

        return _Projection(states, transition_points, active)

    def _summarize(self, projection: _Projection, base: UserParameters) -> dict:
        states = projection.states
        final = projection.final_parameters
        retirement = find_retirement_date(
            states,
            final.desired_annual_retirement_income,
            base.current_age,
            final.retirement_age,
        )
        is_sustainable, reasons = self.check_sustainability(states)
        warnings = reasons + [w.message for w in generate_warnings(states)]
        return {
            "states": states,
            "retirement_date": retirement.date,
            "retirement_age": retirement.age,
            "is_sustainable": is_sustainable,
            "warnings": warnings,
        }

    def run_simulation(self, params: UserParameters) -> SimulationResult:
        """Projects ``params`` unchanged over the whole horizon."""
        logger.info(
            f"Running simulation from {params.start_date} over {params.simulation_years} years ({self.interval} steps)"
        )
        with track(self.monitor, "simulation", transitions=0):
            projection = self._project(SimulationConfiguration(base_parameters=params))
            result = SimulationResult(**self._summarize(projection, params))
        logger.info(
            f"Simulation complete: {len(result.states)} states, sustainable={result.is_sustainable}"
        )
        return result

    def run_simulation_with_transitions(self, config: SimulationConfiguration) -> EnhancedSimulationResult:
        """
        Projects ``config``, switching parameters at each transition date.

        Raises:
            SimulationValidationError: if a transition is dated on or before the
                start date, or two transitions share a date.
        """
        base = config.base_parameters
        logger.info(
            f"Running simulation from {base.start_date} over {base.simulation_years} years "
            f"with {len(config.transitions)} transition(s)"
        )
        with track(self.monitor, "simulation", transitions=len(config.transitions)):
            projection = self._project(config)
            result = EnhancedSimulationResult(
                **self._summarize(projection, base),
                transition_points=projection.transition_points,
                periods=build_parameter_periods(config),
            )
        logger.info(
            f"Simulation complete: {len(result.states)} states, "
            f"{len(result.transition_points)} transition point(s), sustainable={result.is_sustainable}"
        )
        return result

    def run_comparison_simulation(self, config: SimulationConfiguration) -> ComparisonSimulationResult:
        """Runs ``config`` with and without its transitions and compares the outcomes."""
        with_transitions = self.run_simulation_with_transitions(config)
        without_transitions = self.run_simulation(config.base_parameters)

        retirement_difference = None
        if with_transitions.retirement_date and without_transitions.retirement_date:
            retirement_difference = years_between(
                without_transitions.retirement_date, with_transitions.retirement_date
            )

        final_with = with_transitions.states[-1].net_worth if with_transitions.states else 0.0
        final_without = without_transitions.states[-1].net_worth if without_transitions.states else 0.0

        return ComparisonSimulationResult(
            with_transitions=with_transitions,
            without_transitions=without_transitions,
            comparison=ComparisonMetrics(
                retirement_date_difference=retirement_difference,
                final_net_worth_difference=final_with - final_without,
                sustainability_changed=with_transitions.is_sustainable != without_transitions.is_sustainable,
            ),
        )

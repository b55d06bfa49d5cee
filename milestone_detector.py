"""
Milestone detection over a finished simulation.

The detector never alters the states it is given. Loan payoff scans are
memoized per detector instance; two detectors never share a cache.
"""

import time
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from config import (
    Loan,
    ParameterCategory,
    Person,
    ResolvedParameters,
    UserParameters,
    resolve_parameters,
)
from constants import (
    APPROXIMATE_LOAN_INTEREST_RATE,
    BINARY_SEARCH_MIN_STATES,
    LEGACY_LOAN_ID,
    SAFE_WITHDRAWAL_RATE,
)
from milestones import (
    DetectionError,
    ExpenseExpirationMilestone,
    LoanPayoffMilestone,
    Milestone,
    MilestoneDetectionConfig,
    MilestoneDetectionResult,
    OffsetCompletionMilestone,
    ParameterTransitionMilestone,
    RetirementMilestone,
)
from models import FieldChange, FinancialState, TransitionPoint
from performance import MemoizationCache, PerformanceMonitor, track
from processors import (
    calculate_safe_withdrawal,
    find_retirement_date,
    is_income_source_active,
    monthly_expense_amount,
)
from rates import add_years, annualize
from results import format_currency

ParamsLike = Union[UserParameters, ResolvedParameters]
LoanPayoffCacheKey = Tuple[Any, ...]


def _loan_balance(state: FinancialState, loan_id: str, principal: float) -> float:
    if loan_id in state.loan_balances:
        return state.loan_balances[loan_id]
    # States without per-loan maps only carry the aggregate.
    if loan_id == LEGACY_LOAN_ID and not state.loan_balances:
        return state.loan_balance
    # A loan missing from the map is not amortizing in that period.
    return principal


def _amortization_start(states: Sequence[FinancialState], loan_id: str) -> int:
    """Index of the last state before the loan's first payment."""
    if loan_id in states[0].loan_balances or not states[0].loan_balances:
        return 0
    # A loan added mid-run has already taken one payment in the first state that lists it.
    return next((i - 1 for i, s in enumerate(states) if loan_id in s.loan_balances), 0)


def _merge_by_id(items: List[Any], additions: List[Any]) -> List[Any]:
    merged = {item.id: item for item in items}
    for item in additions:
        merged[item.id] = item
    return list(merged.values())


def _offset_balance(state: FinancialState, loan_id: str) -> float:
    if loan_id in state.offset_balances:
        return state.offset_balances[loan_id]
    if loan_id == LEGACY_LOAN_ID and not state.offset_balances:
        return state.offset_balance
    return 0.0


def _closest_state(states: Sequence[FinancialState], target: date) -> FinancialState:
    return min(states, key=lambda s: abs((s.date - target).days))


class MilestoneDetector:
    """Scans a state series for loan payoffs, offset completions, retirement,
    parameter transitions and expiring expenses."""

    def __init__(
        self,
        config: Optional[MilestoneDetectionConfig] = None,
        monitor: Optional[PerformanceMonitor] = None,
        cache_clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config.model_copy() if config else MilestoneDetectionConfig()
        self.monitor = monitor
        self._cache_clock = cache_clock
        self._loan_payoff_cache: MemoizationCache[LoanPayoffCacheKey, List[LoanPayoffMilestone]] = (
            self._new_cache()
        )

    def _new_cache(self) -> MemoizationCache:
        return MemoizationCache(
            max_size=self.config.cache_size,
            ttl_seconds=self.config.cache_ttl_seconds,
            clock=self._cache_clock,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(self, **changes: Any) -> None:
        updated = MilestoneDetectionConfig.model_validate(
            {**self.config.model_dump(), **changes}
        )
        cache_changed = (
            updated.cache_size != self.config.cache_size
            or updated.cache_ttl_seconds != self.config.cache_ttl_seconds
        )
        self.config = updated
        if cache_changed:
            self._loan_payoff_cache = self._new_cache()

    def get_config(self) -> MilestoneDetectionConfig:
        return self.config.model_copy()

    def clear_cache(self) -> None:
        self._loan_payoff_cache.clear()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def detect_milestones(
        self,
        states: Sequence[FinancialState],
        params: ParamsLike,
        transition_points: Optional[Sequence[TransitionPoint]] = None,
    ) -> MilestoneDetectionResult:
        """
        Runs every enabled detector, sorts the merged events by date and drops
        those whose absolute impact is below the configured threshold.

        Never raises: a fault is reported as a critical ``DETECTION_FAILED``
        error alongside an empty milestone list.
        """
        try:
            with track(self.monitor, "milestone_detection", states=len(states)):
                milestones = self._detect_all(states, params, transition_points)
        except Exception as e:
            logger.exception(f"Milestone detection failed: {e}")
            return MilestoneDetectionResult(
                milestones=[],
                errors=[
                    DetectionError(
                        code="DETECTION_FAILED",
                        message=f"Milestone detection failed: {e}",
                        context={"error": repr(e)},
                        severity="critical",
                    )
                ],
                warnings=[],
            )

        logger.debug(f"Detected {len(milestones)} milestones over {len(states)} states")
        return MilestoneDetectionResult(milestones=milestones, errors=[], warnings=[])

    def _detect_all(
        self,
        states: Sequence[FinancialState],
        params: ParamsLike,
        transition_points: Optional[Sequence[TransitionPoint]],
    ) -> List[Milestone]:
        resolved = params if isinstance(params, ResolvedParameters) else resolve_parameters(params)
        resolved = self._with_transition_items(resolved, transition_points or [])
        milestones: List[Milestone] = []

        if self.config.detect_loan_payoffs:
            with track(self.monitor, "loan_payoff_detection"):
                milestones.extend(self.detect_loan_payoffs(states, resolved))
        if self.config.detect_offset_completion:
            with track(self.monitor, "offset_completion_detection"):
                milestones.extend(self.detect_offset_completion(states, resolved))
        if self.config.detect_retirement_eligibility:
            with track(self.monitor, "retirement_detection"):
                milestones.extend(self.detect_retirement_eligibility(states, resolved))
        if self.config.detect_parameter_transitions and transition_points:
            with track(self.monitor, "transition_detection"):
                milestones.extend(self.detect_parameter_transitions(states, transition_points))
        if self.config.detect_expense_expirations:
            with track(self.monitor, "expense_expiration_detection"):
                milestones.extend(self.detect_expense_expirations(states, resolved))

        milestones.sort(key=lambda m: m.date)

        threshold = self.config.minimum_impact_threshold
        if threshold:
            milestones = [
                m
                for m in milestones
                if m.financial_impact is None or abs(m.financial_impact) >= threshold
            ]
        return milestones

    @staticmethod
    def _with_transition_items(
        resolved: ResolvedParameters, transition_points: Sequence[TransitionPoint]
    ) -> ResolvedParameters:
        """Adds loans and expense items introduced by transitions. A later
        definition replaces an earlier one with the same id."""
        if not transition_points:
            return resolved
        loans = list(resolved.loans)
        expense_items = list(resolved.expense_items)
        for point in sorted(transition_points, key=lambda p: p.date):
            changes = point.transition.parameter_changes
            loans = _merge_by_id(loans, changes.get("loans") or [])
            expense_items = _merge_by_id(expense_items, changes.get("expense_items") or [])
        return resolved.model_copy(update={"loans": loans, "expense_items": expense_items})

    # ------------------------------------------------------------------
    # Loan payoff
    # ------------------------------------------------------------------

    @staticmethod
    def _loan_payoff_cache_key(
        states: Sequence[FinancialState], resolved: ResolvedParameters
    ) -> LoanPayoffCacheKey:
        samples = (states[0], states[len(states) // 2], states[-1])
        return (
            len(states),
            states[0].date,
            states[-1].date,
            tuple(
                (loan.id, loan.label, loan.principal)
                + tuple(_loan_balance(s, loan.id, loan.principal) for s in samples)
                for loan in resolved.loans
            ),
        )

    def detect_loan_payoffs(
        self, states: Sequence[FinancialState], params: ParamsLike
    ) -> List[LoanPayoffMilestone]:
        if len(states) < 2:
            return []
        resolved = params if isinstance(params, ResolvedParameters) else resolve_parameters(params)

        key = self._loan_payoff_cache_key(states, resolved)
        cached = self._loan_payoff_cache.get(key)
        if cached is not None:
            logger.trace("Loan payoff detection served from cache")
            return list(cached)

        milestones = []
        for loan in resolved.loans:
            milestone = self.detect_single_loan_payoff(states, loan)
            if milestone:
                milestones.append(milestone)

        self._loan_payoff_cache.set(key, list(milestones))
        return milestones

    def detect_single_loan_payoff(
        self,
        states: Sequence[FinancialState],
        loan: Loan,
        use_binary_search: Optional[bool] = None,
    ) -> Optional[LoanPayoffMilestone]:
        """
        First period at which ``loan`` reaches a zero balance. Long series are
        searched by bisection, which relies on balances never increasing.
        """
        if len(states) < 2:
            return None
        if _loan_balance(states[0], loan.id, loan.principal) <= 0:
            return None
        if _loan_balance(states[-1], loan.id, loan.principal) > 0:
            return None

        if use_binary_search is None:
            use_binary_search = len(states) > BINARY_SEARCH_MIN_STATES
        if use_binary_search:
            index = self._payoff_index_binary(states, loan)
        else:
            index = self._payoff_index_linear(states, loan)
        if index is None:
            return None
        return self._loan_payoff_milestone(states, loan, index)

    @staticmethod
    def _payoff_index_linear(states: Sequence[FinancialState], loan: Loan) -> Optional[int]:
        previous = _loan_balance(states[0], loan.id, loan.principal)
        for i in range(1, len(states)):
            current = _loan_balance(states[i], loan.id, loan.principal)
            if previous > 0 and current <= 0:
                return i
            previous = current
        return None

    @staticmethod
    def _payoff_index_binary(states: Sequence[FinancialState], loan: Loan) -> Optional[int]:
        left, right = 0, len(states) - 1
        found = None
        while left <= right:
            mid = (left + right) // 2
            if _loan_balance(states[mid], loan.id, loan.principal) <= 0:
                found = mid
                right = mid - 1
            else:
                left = mid + 1
        return found

    @staticmethod
    def _total_interest_paid(loan: Loan, months: int) -> float:
        # Flat estimate on the original principal, not a ledger sum.
        return max(0.0, loan.principal * APPROXIMATE_LOAN_INTEREST_RATE * months / 12)

    def _loan_payoff_milestone(
        self, states: Sequence[FinancialState], loan: Loan, index: int
    ) -> LoanPayoffMilestone:
        payoff_state = states[index]
        months = index - _amortization_start(states, loan.id)
        final_payment = _loan_balance(states[index - 1], loan.id, loan.principal)
        total_interest = self._total_interest_paid(loan, months)
        name = loan.label or loan.id
        return LoanPayoffMilestone(
            id=f"loan-payoff-{loan.id}-{payoff_state.date.isoformat()}",
            date=payoff_state.date,
            title=f"{name} Paid Off",
            description=f"Successfully paid off {name} with a final payment of {format_currency(final_payment)}.",
            financial_impact=total_interest,
            loan_id=loan.id,
            loan_name=name,
            final_payment_amount=final_payment,
            total_interest_paid=total_interest,
            months_to_payoff=months,
        )

    # ------------------------------------------------------------------
    # Offset completion
    # ------------------------------------------------------------------

    def detect_offset_completion(
        self, states: Sequence[FinancialState], params: ParamsLike
    ) -> List[OffsetCompletionMilestone]:
        if len(states) < 2:
            return []
        resolved = params if isinstance(params, ResolvedParameters) else resolve_parameters(params)
        milestones = []
        for loan in resolved.loans:
            if not loan.has_offset:
                continue
            milestone = self._detect_single_offset_completion(states, loan)
            if milestone:
                milestones.append(milestone)
        return milestones

    @staticmethod
    def _detect_single_offset_completion(
        states: Sequence[FinancialState], loan: Loan
    ) -> Optional[OffsetCompletionMilestone]:
        name = loan.label or loan.id
        for previous, current in zip(states, states[1:]):
            prev_loan = _loan_balance(previous, loan.id, loan.principal)
            prev_offset = _offset_balance(previous, loan.id)
            cur_loan = _loan_balance(current, loan.id, loan.principal)
            cur_offset = _offset_balance(current, loan.id)

            if prev_offset < prev_loan and cur_offset >= cur_loan > 0:
                return OffsetCompletionMilestone(
                    id=f"offset-completion-{loan.id}-{current.date.isoformat()}",
                    date=current.date,
                    title=f"{name} Offset Complete",
                    description=(
                        f"Offset account balance ({format_currency(cur_offset)}) now equals or exceeds "
                        f"the remaining loan balance ({format_currency(cur_loan)}). "
                        "Interest charges are effectively eliminated."
                    ),
                    financial_impact=cur_loan * (loan.interest_rate / 100),
                    loan_id=loan.id,
                    offset_amount=cur_offset,
                    loan_balance=cur_loan,
                    interest_savings_rate=loan.interest_rate,
                )
        return None

    # ------------------------------------------------------------------
    # Retirement
    # ------------------------------------------------------------------

    def detect_retirement_eligibility(
        self, states: Sequence[FinancialState], params: ParamsLike
    ) -> List[RetirementMilestone]:
        if not states:
            return []
        resolved = params if isinstance(params, ResolvedParameters) else resolve_parameters(params)

        if resolved.is_household:
            milestones = []
            for person in resolved.people:
                milestone = self._detect_person_retirement(states, resolved, person)
                if milestone:
                    milestones.append(milestone)
            household = self._detect_household_retirement(states, resolved)
            if household:
                milestones.append(household)
            return milestones

        source = resolved.source
        outcome = find_retirement_date(
            states,
            source.desired_annual_retirement_income,
            source.current_age,
            source.retirement_age,
        )
        if outcome.date is None:
            return []
        return [
            self._retirement_milestone(
                states,
                resolved,
                retirement_date=outcome.date,
                retirement_age=outcome.age,
                target_age=source.retirement_age,
                milestone_id=f"retirement-eligibility-{outcome.date.isoformat()}",
                title=None,
            )
        ]

    @staticmethod
    def _person_retirement_date(start: date, person: Person) -> date:
        return add_years(start, person.retirement_age - person.current_age)

    @staticmethod
    def _annual_income(person: Person, on: date) -> float:
        return sum(
            annualize(source.amount, source.frequency)
            for source in person.income_sources
            if not source.is_one_off and is_income_source_active(source, on)
        )

    def _detect_person_retirement(
        self, states: Sequence[FinancialState], resolved: ResolvedParameters, person: Person
    ) -> Optional[RetirementMilestone]:
        start, end = states[0].date, states[-1].date
        retirement_date = self._person_retirement_date(start, person)
        if not start <= retirement_date <= end:
            return None

        # Income earned up to the day before retirement.
        last_working_day = retirement_date - timedelta(days=1)
        person_income = self._annual_income(person, last_working_day)
        household_income = sum(self._annual_income(p, last_working_day) for p in resolved.people)
        income_share = person_income / household_income if household_income > 0 else None

        if person_income > 0:
            others_working = any(
                p.id != person.id and p.retirement_age > person.retirement_age
                for p in resolved.people
            )
            phase = (
                "Other household members continue working."
                if others_working
                else "This begins the household's retirement phase."
            )
            description = (
                f"{person.name} reaches retirement age {person.retirement_age:g} and stops earning "
                f"{format_currency(person_income)}/year. {phase}"
            )
        else:
            description = f"{person.name} reaches retirement age {person.retirement_age:g}."

        return self._retirement_milestone(
            states,
            resolved,
            retirement_date=retirement_date,
            retirement_age=person.retirement_age,
            target_age=person.retirement_age,
            milestone_id=f"retirement-{person.id}-{retirement_date.isoformat()}",
            title=f"{person.name} Retires",
            description=description,
            financial_impact=-person_income if person_income > 0 else None,
            person_id=person.id,
            income_share=income_share,
        )

    def _detect_household_retirement(
        self, states: Sequence[FinancialState], resolved: ResolvedParameters
    ) -> Optional[RetirementMilestone]:
        if not resolved.people:
            return None
        start, end = states[0].date, states[-1].date
        last_person = max(
            resolved.people, key=lambda p: self._person_retirement_date(start, p)
        )
        retirement_date = self._person_retirement_date(start, last_person)
        if not start <= retirement_date <= end:
            return None

        desired = resolved.source.desired_annual_retirement_income
        return self._retirement_milestone(
            states,
            resolved,
            retirement_date=retirement_date,
            retirement_age=last_person.retirement_age,
            target_age=last_person.retirement_age,
            milestone_id=f"retirement-household-{retirement_date.isoformat()}",
            title="Household Fully Retired",
            description=(
                "All household members are now retired. Full retirement income of "
                f"{format_currency(desired)}/year will be needed from investments and superannuation."
            ),
        )

    @staticmethod
    def _retirement_milestone(
        states: Sequence[FinancialState],
        resolved: ResolvedParameters,
        retirement_date: date,
        retirement_age: float,
        target_age: float,
        milestone_id: str,
        title: Optional[str],
        description: Optional[str] = None,
        financial_impact: Optional[float] = None,
        person_id: Optional[str] = None,
        income_share: Optional[float] = None,
    ) -> RetirementMilestone:
        desired = resolved.source.desired_annual_retirement_income
        state = _closest_state(states, retirement_date)
        safe_withdrawal = calculate_safe_withdrawal(
            state.investments, state.superannuation, retirement_age
        )
        required_assets = desired / SAFE_WITHDRAWAL_RATE
        actual_assets = state.investments + state.superannuation
        years_earlier = target_age - retirement_age if retirement_age < target_age else None

        if title is None:
            title = (
                f"Early Retirement Achievable ({years_earlier:.1f} years early)"
                if years_earlier
                else "Retirement Goal Achieved"
            )
        if description is None:
            coverage = f" ({safe_withdrawal / desired * 100:.1f}% of your target income)" if desired > 0 else ""
            description = (
                f"Financial independence achieved! You can safely withdraw "
                f"{format_currency(safe_withdrawal)}/year{coverage} with total assets of "
                f"{format_currency(actual_assets)}."
            )
        if financial_impact is None and person_id is None:
            financial_impact = actual_assets - required_assets

        return RetirementMilestone(
            id=milestone_id,
            date=retirement_date,
            title=title,
            description=description,
            financial_impact=financial_impact,
            required_assets=required_assets,
            actual_assets=actual_assets,
            monthly_withdrawal_capacity=safe_withdrawal / 12,
            years_earlier_than_target=years_earlier,
            person_id=person_id,
            income_share=income_share,
        )

    # ------------------------------------------------------------------
    # Parameter transitions
    # ------------------------------------------------------------------

    def detect_parameter_transitions(
        self,
        states: Sequence[FinancialState],
        transition_points: Sequence[TransitionPoint],
    ) -> List[ParameterTransitionMilestone]:
        milestones = []
        for point in transition_points:
            impact = None
            if 0 < point.state_index < len(states):
                impact = states[point.state_index].net_worth - states[point.state_index - 1].net_worth

            changes = {change.key: change for change in point.changes}
            if not changes:
                changes = {
                    key: FieldChange(key=key, category=category, to_value=point.transition.parameter_changes[key])
                    for key, category in point.transition.categories().items()
                }
            title, description = describe_transition(point, changes)

            milestones.append(
                ParameterTransitionMilestone(
                    id=f"parameter-transition-{point.transition.id}",
                    date=point.date,
                    title=title,
                    description=description,
                    financial_impact=impact,
                    transition_id=point.transition.id,
                    parameter_changes=changes,
                    impact_summary=point.changes_summary,
                )
            )
        return milestones

    # ------------------------------------------------------------------
    # Expense expiration
    # ------------------------------------------------------------------

    def detect_expense_expirations(
        self, states: Sequence[FinancialState], params: ParamsLike
    ) -> List[ExpenseExpirationMilestone]:
        if not states:
            return []
        resolved = params if isinstance(params, ResolvedParameters) else resolve_parameters(params)
        start, end = states[0].date, states[-1].date
        threshold = self.config.minimum_impact_threshold

        milestones = []
        for expense in resolved.expense_items:
            if not expense.enabled or expense.end_date is None:
                continue
            if not start <= expense.end_date <= end:
                continue

            monthly = monthly_expense_amount(expense)
            annual = monthly * 12
            if threshold and annual < threshold:
                continue

            name = expense.name or expense.id
            milestones.append(
                ExpenseExpirationMilestone(
                    id=f"expense-expiration-{expense.id}-{expense.end_date.isoformat()}",
                    date=expense.end_date,
                    title=f"{name} Expires",
                    description=(
                        f"{name} ({expense.category}) ends, saving {format_currency(monthly)}/month "
                        f"({format_currency(annual)}/year). This expense will no longer be deducted from your budget."
                    ),
                    financial_impact=annual,
                    expense_id=expense.id,
                    expense_name=name,
                    monthly_savings=monthly,
                    annual_savings=annual,
                    expense_category=expense.category,
                )
            )
        return milestones


def describe_transition(
    point: TransitionPoint, changes: Dict[str, FieldChange]
) -> Tuple[str, str]:
    """Title and description for a transition, phrased after the most significant category it touches."""
    summary = point.changes_summary
    categories = {change.category for change in changes.values()}

    if "people" in changes:
        people = changes["people"].to_value or []
        names = ", ".join(getattr(p, "name", None) or "Person" for p in people)
        if names:
            return "Household Changes", f"Household members updated: {names}. {summary}"
        return "Household Changes", f"Household configuration updated: {summary}"

    if ParameterCategory.INCOME in categories:
        if "annual_salary" in changes:
            salary = changes["annual_salary"].to_value
            return "Income Changes", f"Annual salary changed to {format_currency(salary, decimals=0)}. {summary}"
        return "Income Changes", f"Income parameters updated: {summary}"

    if ParameterCategory.RETIREMENT in categories:
        if "retirement_age" in changes:
            age = changes["retirement_age"].to_value
            return "Retirement Planning Changes", f"Retirement age changed to {age:g}. {summary}"
        if "desired_annual_retirement_income" in changes:
            income = changes["desired_annual_retirement_income"].to_value
            return (
                "Retirement Planning Changes",
                f"Desired retirement income changed to {format_currency(income, decimals=0)}/year. {summary}",
            )
        return "Retirement Planning Changes", f"Retirement planning parameters updated: {summary}"

    if ParameterCategory.LOANS in categories:
        return "Loan Changes", f"Loan parameters updated: {summary}"

    if ParameterCategory.INVESTMENTS in categories:
        return "Investment Strategy Changes", f"Investment parameters updated: {summary}"

    return point.transition.label or "Parameter Change", f"Financial parameters updated: {summary}"


def create_milestone_detector(
    config: Optional[MilestoneDetectionConfig] = None,
    monitor: Optional[PerformanceMonitor] = None,
) -> MilestoneDetector:
    return MilestoneDetector(config, monitor=monitor)


def detect_milestones_from_simulation(
    states: Sequence[FinancialState],
    params: ParamsLike,
    transition_points: Optional[Sequence[TransitionPoint]] = None,
    config: Optional[MilestoneDetectionConfig] = None,
) -> MilestoneDetectionResult:
    """One-shot detection with a fresh detector."""
    return create_milestone_detector(config).detect_milestones(states, params, transition_points)

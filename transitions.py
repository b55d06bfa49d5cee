"""
Parameter transitions: resolving the active parameter set for a date and
splitting a configuration into constant-parameter periods.

Functions here never mutate the configuration they are given; edits return a
new ``SimulationConfiguration``.
"""

import math
from datetime import date
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from loguru import logger

from config import (
    PARAMETER_CATEGORIES,
    ParameterTransition,
    SimulationConfiguration,
    UserParameters,
)
from models import FieldChange, ParameterPeriod
from rates import add_years


class ValidationResult(NamedTuple):
    is_valid: bool
    error: Optional[str] = None


def sorted_transitions(config: SimulationConfiguration) -> List[ParameterTransition]:
    return sorted(config.transitions, key=lambda t: t.transition_date)


def simulation_end_date(params: UserParameters) -> date:
    return add_years(params.start_date, params.simulation_years)


def apply_transition(params: UserParameters, transition: ParameterTransition) -> UserParameters:
    # Values were validated field-by-field when the transition was built.
    return params.model_copy(update=transition.parameter_changes)


def resolve_parameters_for_date(
    target_date: date, config: SimulationConfiguration
) -> UserParameters:
    """Base parameters with every transition dated on or before ``target_date`` applied."""
    active = config.base_parameters
    for transition in sorted_transitions(config):
        if transition.transition_date > target_date:
            break
        active = apply_transition(active, transition)
    return active


def build_parameter_periods(config: SimulationConfiguration) -> List[ParameterPeriod]:
    """Contiguous ``[start, end)`` spans; the last span is open-ended."""
    base = config.base_parameters
    transitions = sorted_transitions(config)

    if not transitions:
        return [
            ParameterPeriod(
                start_date=base.start_date,
                end_date=None,
                parameters=base,
                transition_id=None,
            )
        ]

    periods = [
        ParameterPeriod(
            start_date=base.start_date,
            end_date=transitions[0].transition_date,
            parameters=base,
            transition_id=None,
        )
    ]
    active = base
    for i, transition in enumerate(transitions):
        active = apply_transition(active, transition)
        next_date = transitions[i + 1].transition_date if i + 1 < len(transitions) else None
        periods.append(
            ParameterPeriod(
                start_date=transition.transition_date,
                end_date=next_date,
                parameters=active,
                transition_id=transition.id,
            )
        )
    return periods


def describe_changes(
    previous: UserParameters, transition: ParameterTransition
) -> List[FieldChange]:
    return [
        FieldChange(
            key=key,
            category=PARAMETER_CATEGORIES[key],
            from_value=getattr(previous, key),
            to_value=value,
        )
        for key, value in transition.parameter_changes.items()
    ]


def summarize_changes(transition: ParameterTransition) -> str:
    if transition.label:
        return transition.label
    return f"Changed: {', '.join(transition.parameter_changes)}"


def _invalid_number(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return "must be a valid number"
    if value < 0:
        return "must be a positive value"
    return None


def validate_transition(
    transition: ParameterTransition, config: SimulationConfiguration
) -> ValidationResult:
    """Checks a transition against a configuration it is about to join."""
    if not transition.parameter_changes:
        return ValidationResult(False, "At least one parameter must be specified in the transition")

    start = config.base_parameters.start_date
    end = simulation_end_date(config.base_parameters)
    if transition.transition_date <= start:
        return ValidationResult(False, "Transition date must be after the simulation start date")
    if transition.transition_date >= end:
        return ValidationResult(False, "Transition date must be before the simulation end date")

    for other in config.transitions:
        if other.id != transition.id and other.transition_date == transition.transition_date:
            return ValidationResult(False, "A transition already exists at this date")

    for key, value in transition.parameter_changes.items():
        problem = _invalid_number(value)
        if problem:
            return ValidationResult(False, f'Parameter "{key}" {problem}')

    return ValidationResult(True)


def add_transition(
    config: SimulationConfiguration, transition: ParameterTransition
) -> SimulationConfiguration:
    """Returns a new configuration including ``transition``; raises ValueError if invalid."""
    result = validate_transition(transition, config)
    if not result.is_valid:
        raise ValueError(result.error)
    transitions = sorted(
        [*config.transitions, transition], key=lambda t: t.transition_date
    )
    return config.model_copy(update={"transitions": transitions})


def update_transition(
    config: SimulationConfiguration, transition_id: str, updates: Dict[str, Any]
) -> SimulationConfiguration:
    existing = next((t for t in config.transitions if t.id == transition_id), None)
    if existing is None:
        raise ValueError(f'Transition with id "{transition_id}" not found')

    updated = ParameterTransition.model_validate(
        {**existing.model_dump(), **updates, "id": transition_id}
    )
    others = [t for t in config.transitions if t.id != transition_id]
    result = validate_transition(updated, config.model_copy(update={"transitions": others}))
    if not result.is_valid:
        raise ValueError(result.error)
    transitions = sorted([*others, updated], key=lambda t: t.transition_date)
    return config.model_copy(update={"transitions": transitions})


def remove_transition(config: SimulationConfiguration, transition_id: str) -> SimulationConfiguration:
    return config.model_copy(
        update={"transitions": [t for t in config.transitions if t.id != transition_id]}
    )


class TransitionTemplate(NamedTuple):
    id: str
    name: str
    description: str
    category: str
    generate_changes: Callable[[UserParameters], Dict[str, Any]]


TRANSITION_TEMPLATES: List[TransitionTemplate] = [
    TransitionTemplate(
        "semi-retirement",
        "Semi-Retirement",
        "Reduce work hours and income, lower expenses",
        "retirement",
        lambda p: {
            "annual_salary": p.annual_salary * 0.5,
            "monthly_living_expenses": p.monthly_living_expenses * 0.8,
        },
    ),
    TransitionTemplate(
        "full-retirement",
        "Full Retirement",
        "Stop working, rely on investments and super",
        "retirement",
        lambda p: {
            "annual_salary": 0,
            "monthly_investment_contribution": 0,
            "monthly_living_expenses": p.monthly_living_expenses * 0.7,
        },
    ),
    TransitionTemplate(
        "relocation-cheaper",
        "Relocate to Cheaper Area",
        "Move to area with lower cost of living",
        "lifestyle",
        lambda p: {
            "monthly_rent_or_mortgage": p.monthly_rent_or_mortgage * 0.7,
            "monthly_living_expenses": p.monthly_living_expenses * 0.85,
        },
    ),
    TransitionTemplate(
        "career-change-higher",
        "Career Change (Higher Income)",
        "Switch to higher-paying career",
        "career",
        lambda p: {"annual_salary": p.annual_salary * 1.3},
    ),
    TransitionTemplate(
        "career-change-lower",
        "Career Change (Lower Income)",
        "Switch to lower-paying but more fulfilling career",
        "career",
        lambda p: {"annual_salary": p.annual_salary * 0.7},
    ),
    TransitionTemplate(
        "increase-savings",
        "Increase Savings Rate",
        "Boost investment contributions",
        "financial",
        lambda p: {"monthly_investment_contribution": p.monthly_investment_contribution * 1.5},
    ),
]


def transition_from_template(
    template_id: str,
    transition_id: str,
    transition_date: date,
    current: UserParameters,
) -> ParameterTransition:
    template = next((t for t in TRANSITION_TEMPLATES if t.id == template_id), None)
    if template is None:
        raise ValueError(f"Unknown transition template '{template_id}'")
    logger.debug(f"Building transition '{transition_id}' from template '{template_id}'")
    return ParameterTransition(
        id=transition_id,
        transition_date=transition_date,
        label=template.name,
        parameter_changes=template.generate_changes(current),
    )

from typing import Optional

import pandas as pd
from loguru import logger

from config import SimulationConfiguration, resolve_parameters
from milestones import MilestoneDetectionResult
from models import EnhancedSimulationResult
from results import format_currency, yearly_summary


def log_input_parameters(config: SimulationConfiguration) -> None:
    """Logs the input parameters for the simulation."""
    params = config.base_parameters
    resolved = resolve_parameters(params)
    logger.info("--- Input Parameters ---")
    logger.info(f"Start Date: {params.start_date} | Horizon: {params.simulation_years} years")
    logger.info(
        f"Household: {params.household_mode} (income from {resolved.income_mode}, "
        f"expenses from {resolved.expense_mode}, loans from {resolved.loan_mode})"
    )

    for person in resolved.people:
        logger.info(
            f"  - {person.name}: age {person.current_age:g}, retires at {person.retirement_age:g}, "
            f"{len(person.income_sources)} income source(s), {len(person.super_accounts)} super account(s)"
        )
    for source in resolved.income_sources:
        kind = "one-off" if source.is_one_off else source.frequency
        tax = "before tax" if source.is_before_tax else "after tax"
        logger.info(f"Income: {source.label or source.id}: {format_currency(source.amount)} ({kind}, {tax})")

    if resolved.tax_brackets:
        logger.info(f"Tax: {len(resolved.tax_brackets)} progressive brackets")
    else:
        logger.info(f"Tax: flat {resolved.flat_tax_rate:.2f}%")

    for item in resolved.expense_items:
        if item.enabled:
            logger.info(f"Expense: {item.name or item.id}: {format_currency(item.amount)} {item.frequency}")
    for loan in resolved.loans:
        if loan.principal > 0:
            offset = f", offset {format_currency(loan.offset_balance)}" if loan.has_offset else ""
            logger.info(
                f"Loan: {loan.label or loan.id}: {format_currency(loan.principal)} at {loan.interest_rate:.2f}%, "
                f"paying {format_currency(loan.payment_amount)} {loan.payment_frequency}{offset}"
            )

    logger.info(
        f"Investments: {format_currency(params.current_investment_balance)} "
        f"+ {format_currency(params.monthly_investment_contribution)}/month at {params.investment_return_rate:.2f}%"
    )
    for account in resolved.super_accounts:
        logger.info(
            f"Super: {account.label or account.id}: {format_currency(account.balance)}, "
            f"contributing {account.contribution_rate:.2f}% at {account.return_rate:.2f}%"
        )
    logger.info(
        f"Retirement target: {format_currency(params.desired_annual_retirement_income)}/year "
        f"from age {params.retirement_age:g} (currently {params.current_age:g})"
    )

    for transition in config.transitions:
        logger.info(
            f"Transition on {transition.transition_date}: {transition.label or ', '.join(transition.parameter_changes)}"
        )
    logger.info("--- End of Input Parameters ---")


def log_simulation_results(
    result: EnhancedSimulationResult,
    detection: Optional[MilestoneDetectionResult] = None,
) -> None:
    """Logs the final results of the simulation."""
    logger.info("--- Simulation Results ---")
    if result.retirement_date:
        logger.info(f"Retirement achievable on {result.retirement_date} at age {result.retirement_age:.1f}")
    else:
        logger.info("Retirement income target not reached within the simulation horizon")
    logger.info(f"Sustainable: {'yes' if result.is_sustainable else 'no'}")
    for warning in result.warnings:
        logger.warning(warning)

    summary = yearly_summary(result.states)
    if not summary.empty:
        logger.info("Year-end position ($):")
        with pd.option_context("display.float_format", "{:,.0f}".format, "display.width", 160):
            for line in summary[["cash", "investments", "superannuation", "loan_balance", "net_worth"]].to_string().splitlines():
                logger.info(f"  {line}")

    if detection is None:
        return
    logger.info(f"Milestones ({len(detection.milestones)}):")
    for milestone in detection.milestones:
        impact = (
            f" [{format_currency(milestone.financial_impact, decimals=0)}]"
            if milestone.financial_impact is not None
            else ""
        )
        logger.info(f"  {milestone.date}  {milestone.title}{impact}")
    for error in detection.errors:
        logger.error(f"Milestone detection {error.severity}: {error.code} - {error.message}")

import math
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from config import ConfigurationError, TaxBracket, load_config_from_json
from constants import DEFAULT_AU_TAX_BRACKETS

BracketLike = Union[TaxBracket, Dict[str, Any]]


def default_tax_brackets() -> List[TaxBracket]:
    """Australian resident brackets for 2024-25."""
    return [TaxBracket.model_validate(b) for b in DEFAULT_AU_TAX_BRACKETS]


def _coerce_brackets(brackets: Sequence[BracketLike]) -> List[TaxBracket]:
    coerced = [
        b if isinstance(b, TaxBracket) else TaxBracket.model_validate(b)
        for b in brackets
    ]
    return sorted(coerced, key=lambda b: b.min)


def calculate_tax_with_brackets(income: float, brackets: Sequence[BracketLike]) -> float:
    """
    Progressive tax on ``income``. Each band taxes only the slice of income that
    falls inside it; iteration stops at the first band the income does not reach.
    Band contiguity is assumed, not validated.
    """
    total_tax = 0.0
    for bracket in _coerce_brackets(brackets):
        if income <= bracket.min:
            break
        upper = bracket.max if bracket.max is not None else math.inf
        taxable_in_bracket = min(income, upper) - bracket.min
        if taxable_in_bracket > 0:
            total_tax += taxable_in_bracket * (bracket.rate / 100)
    return total_tax


def calculate_flat_tax(income: float, rate: float) -> float:
    return max(0.0, income) * (rate / 100)


def calculate_annual_tax(
    annual_income: float,
    brackets: Optional[Sequence[BracketLike]],
    flat_rate: float,
) -> float:
    """Bracket tax when brackets are supplied, otherwise the flat-rate fallback."""
    if brackets:
        return calculate_tax_with_brackets(annual_income, brackets)
    return calculate_flat_tax(annual_income, flat_rate)


def load_tax_brackets(file_path: Optional[str] = None) -> List[TaxBracket]:
    """
    Loads a bracket table from a JSON file holding either a list of brackets or
    ``{"brackets": [...]}``. Without a path the built-in default table is returned.
    """
    if file_path is None:
        return default_tax_brackets()

    data = load_config_from_json(file_path)
    raw = data.get("brackets") if isinstance(data, dict) else data
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError(f"No tax brackets found in '{file_path}'.")
    try:
        brackets = _coerce_brackets(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid tax bracket in '{file_path}': {e}") from e
    logger.info(f"Loaded {len(brackets)} tax brackets from {file_path}")
    return brackets

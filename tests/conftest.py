from datetime import date
from pathlib import Path

import pytest

from config import UserParameters
from models import FinancialState

REPO_ROOT = Path(__file__).resolve().parent.parent


def make_state(state_date: date, **values) -> FinancialState:
    """A state with every balance zero unless given."""
    fields = {
        "cash": 0.0,
        "investments": 0.0,
        "superannuation": 0.0,
        "loan_balance": 0.0,
        "offset_balance": 0.0,
        "net_worth": 0.0,
        "cash_flow": 0.0,
        "tax_paid": 0.0,
        "expenses": 0.0,
        "interest_saved": 0.0,
    }
    fields.update(values)
    return FinancialState(date=state_date, **fields)


@pytest.fixture
def sample_config_path() -> Path:
    return REPO_ROOT / "config.json"


@pytest.fixture
def make_params():
    """Builds ``UserParameters`` on a 2024-01-01 start with overrides."""

    def _make(**overrides) -> UserParameters:
        values = {"start_date": date(2024, 1, 1), "simulation_years": 1}
        values.update(overrides)
        return UserParameters(**values)

    return _make

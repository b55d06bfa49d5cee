# constants.py

MONTHS_PER_YEAR: int = 12
DAYS_PER_YEAR: float = 365.25
SMALL_EPSILON: float = 1e-6

PERIODS_PER_YEAR = {
    "week": 52,
    "fortnight": 26,
    "month": 12,
    "year": 1,
}

FREQUENCY_MULTIPLIERS = {
    "weekly": 52,
    "fortnightly": 26,
    "monthly": 12,
    "yearly": 1,
}

# Length of one interval in days when checking one-off expense windows.
# A month is approximated as 30 days.
INTERVAL_DAYS = {
    "week": 7,
    "fortnight": 14,
    "month": 30,
    "year": 365,
}

SAFE_WITHDRAWAL_RATE: float = 0.04
PRESERVATION_AGE: int = 60

LEGACY_LOAN_ID: str = "legacy-loan"
LEGACY_LOAN_NAME: str = "Primary Loan"
LEGACY_SUPER_ID: str = "legacy-super"

# Milestone detection
DEFAULT_MINIMUM_IMPACT_THRESHOLD: float = 1000.0
BINARY_SEARCH_MIN_STATES: int = 50
LOAN_PAYOFF_CACHE_SIZE: int = 50
LOAN_PAYOFF_CACHE_TTL_SECONDS: float = 5 * 60
APPROXIMATE_LOAN_INTEREST_RATE: float = 0.05
FAR_FUTURE_YEARS: int = 50

# Sustainability
NEGATIVE_CASH_FLOW_STREAK: int = 3
SEVERE_CASH_DEPLETION: float = -1000.0

# Default Australian resident tax brackets for 2024-25 (rates in percent).
DEFAULT_AU_TAX_BRACKETS = [
    {"min": 0, "max": 18200, "rate": 0},
    {"min": 18200, "max": 45000, "rate": 19},
    {"min": 45000, "max": 120000, "rate": 32.5},
    {"min": 120000, "max": 180000, "rate": 37},
    {"min": 180000, "max": None, "rate": 45},
]

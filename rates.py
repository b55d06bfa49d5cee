from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from constants import DAYS_PER_YEAR, FREQUENCY_MULTIPLIERS, INTERVAL_DAYS, PERIODS_PER_YEAR


def periods_per_year(interval: str) -> int:
    """Number of simulation periods of ``interval`` in one year."""
    try:
        return PERIODS_PER_YEAR[interval]
    except KeyError:
        raise ValueError(f"Unknown time interval: '{interval}'") from None


def annual_to_period_rate(annual_rate: float, interval: str) -> float:
    """
    Converts an annual rate (as a decimal, e.g. 0.07) to the equivalent
    compounding rate for one period of ``interval``.
    """
    return (1 + annual_rate) ** (1 / periods_per_year(interval)) - 1


def annualize(amount: float, frequency: str) -> float:
    try:
        return amount * FREQUENCY_MULTIPLIERS[frequency]
    except KeyError:
        raise ValueError(f"Unknown payment frequency: '{frequency}'") from None


def amount_per_interval(amount: float, frequency: str, interval: str) -> float:
    """Redistributes a payment to ``interval`` by way of its annual total."""
    return annualize(amount, frequency) / periods_per_year(interval)


def interval_days(interval: str) -> int:
    try:
        return INTERVAL_DAYS[interval]
    except KeyError:
        raise ValueError(f"Unknown time interval: '{interval}'") from None


def advance_date(start: date, interval: str, steps: int = 1) -> date:
    """
    Date ``steps`` periods after ``start``. Always offsets from ``start`` so that
    month-end dates do not drift (31 Jan -> 29 Feb -> 31 Mar).
    """
    if interval == "week":
        return start + timedelta(days=7 * steps)
    if interval == "fortnight":
        return start + timedelta(days=14 * steps)
    if interval == "month":
        return start + relativedelta(months=steps)
    if interval == "year":
        return start + relativedelta(years=steps)
    raise ValueError(f"Unknown time interval: '{interval}'")


def add_years(start: date, years: float) -> date:
    """Adds a possibly fractional number of years, rounding the remainder to whole months."""
    whole_years = int(years)
    months = int(round((years - whole_years) * 12))
    return start + relativedelta(years=whole_years, months=months)


def years_between(start: date, end: date) -> float:
    return (end - start).days / DAYS_PER_YEAR

"""
Regulatory Filing Platform
Financial statistics used by filing validation and reporting.

All return inputs are percentages (5.2 means +5.2%), matching the way
composite and fund performance is reported on the forms. Functions are pure
and return plain floats so results can be stored in JSON columns.

Includes:
- Concentration (HHI, top-N share)
- Return statistics (annualized return, volatility, sample std)
- Relative statistics (tracking error, information ratio, correlation)
- Composite dispersion
"""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np

# Minimum number of member portfolios before dispersion is meaningful
MIN_PORTFOLIOS_FOR_DISPERSION = 6

MONTHS_PER_YEAR = 12

# Trailing window for the three-year standard deviation
THREE_YEAR_MONTHS = 36


def _as_array(values: Iterable[float] | None) -> np.ndarray:
    if values is None:
        return np.array([], dtype=float)
    return np.asarray([float(v) for v in values if v is not None], dtype=float)


# =========================
# CONCENTRATION
# =========================

def herfindahl_index(values: Iterable[float]) -> float:
    """
    Herfindahl-Hirschman index over a set of exposures.

    Formula: HHI = Σ (share_i × 100)²  → 0 .. 10 000
    Non-positive exposures are ignored; an empty or zero total yields 0.
    """
    arr = _as_array(values)
    arr = arr[arr > 0]
    total = arr.sum()
    if total <= 0:
        return 0.0
    shares = arr / total * 100
    return float(np.sum(shares ** 2))


def concentration(values: Iterable[float], top_n: int) -> float:
    """Percentage of the total held in the ``top_n`` largest exposures."""
    arr = _as_array(values)
    total = arr.sum()
    if total <= 0 or top_n <= 0:
        return 0.0
    top = np.sort(arr)[::-1][:top_n]
    return float(top.sum() / total * 100)


# =========================
# RETURN STATISTICS
# =========================

def sample_std(values: Iterable[float]) -> float:
    """Sample standard deviation (n−1). Fewer than two points → 0."""
    arr = _as_array(values)
    if arr.size < 2:
        return 0.0
    return float(np.std(arr, ddof=1))


def annualized_return(period_returns: Sequence[float]) -> float:
    """
    Geometric average of annual returns.

    Formula: ((Π (1 + r/100)) ^ (1/n) − 1) × 100
    """
    arr = _as_array(period_returns)
    if arr.size == 0:
        return 0.0
    growth = np.prod(1 + arr / 100)
    if growth <= 0:
        return -100.0
    return float((growth ** (1 / arr.size) - 1) * 100)


def annualized_volatility(monthly_returns: Sequence[float]) -> float:
    """
    Annualized volatility from monthly returns.

    Formula: sqrt(population variance × 12)
    """
    arr = _as_array(monthly_returns)
    if arr.size == 0:
        return 0.0
    return float(np.sqrt(np.var(arr) * MONTHS_PER_YEAR))


def three_year_std(monthly_returns: Sequence[float]) -> float | None:
    """Sample std of the trailing 36 monthly returns, or None if history is shorter."""
    arr = _as_array(monthly_returns)
    if arr.size < THREE_YEAR_MONTHS:
        return None
    return sample_std(arr[-THREE_YEAR_MONTHS:])


def dispersion(portfolio_returns: Sequence[float]) -> float:
    """
    Internal dispersion of a composite: sample std of member portfolio returns.

    Returns 0 when the composite holds fewer than
    MIN_PORTFOLIOS_FOR_DISPERSION portfolios.
    """
    arr = _as_array(portfolio_returns)
    if arr.size < MIN_PORTFOLIOS_FOR_DISPERSION:
        return 0.0
    return sample_std(arr)


# =========================
# RELATIVE STATISTICS
# =========================

def _paired(a: Sequence[float], b: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
    x, y = _as_array(a), _as_array(b)
    n = min(x.size, y.size)
    return x[:n], y[:n]


def tracking_error(returns: Sequence[float], benchmark: Sequence[float]) -> float:
    """Sample std of the period-by-period active return."""
    r, b = _paired(returns, benchmark)
    if r.size < 2:
        return 0.0
    return sample_std(r - b)


def information_ratio(returns: Sequence[float], benchmark: Sequence[float]) -> float:
    """Annualized excess return divided by tracking error."""
    r, b = _paired(returns, benchmark)
    te = tracking_error(r, b)
    if te == 0:
        return 0.0
    excess = annualized_return(r) - annualized_return(b)
    return float(excess / te)


def correlation(a: Sequence[float], b: Sequence[float]) -> float:
    """Pearson correlation. Degenerate inputs (n < 2 or zero variance) → 0."""
    x, y = _paired(a, b)
    if x.size < 2 or np.std(x) == 0 or np.std(y) == 0:
        return 0.0
    return float(np.corrcoef(x, y)[0, 1])

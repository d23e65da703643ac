# market_generator.py
#
# Generates one joint draw of annual asset-class returns and inflation per
# simulated year. Cross-asset correlation comes from the historical matrix in
# config/market_assumptions.py via a Cholesky factor computed once at import.
#

from typing import Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from drawdown.config.market_assumptions import asset_classes, asset_params, corr_matrix
from drawdown.models import PlanValidationError, ReturnSample

ALLOCATION_TOLERANCE = 1e-6


def cholesky_decomposition(matrix: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Lower-triangular L with L @ L.T == matrix.

    Diagonal terms are clamped with max(0, ...) so round-off on a PSD matrix
    never reaches sqrt of a negative; a zero pivot divides by 1 instead.

    Args:
        matrix: Symmetric, unit-diagonal correlation matrix.

    Returns:
        NDArray: the lower-triangular factor.
    """
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise PlanValidationError(f"Correlation matrix must be square, got shape {matrix.shape}.")
    if not np.allclose(matrix, matrix.T):
        raise PlanValidationError("Correlation matrix must be symmetric.")
    if not np.allclose(np.diag(matrix), 1.0):
        raise PlanValidationError("Correlation matrix must have a unit diagonal.")

    n = matrix.shape[0]
    L = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1):
            s = sum(L[i, k] * L[j, k] for k in range(j))
            if i == j:
                L[i, j] = np.sqrt(max(0.0, matrix[i, i] - s))
            else:
                L[i, j] = (matrix[i, j] - s) / (L[j, j] or 1.0)
    return L


# Computed once; every draw reuses it.
CHOLESKY_L = cholesky_decomposition(corr_matrix)


def correlate(independent_z: NDArray, L: Optional[NDArray] = None) -> NDArray:
    """correlated_z[i] = sum_{j<=i} L[i, j] * independent_z[j]. Works on (..., N) arrays."""
    L = CHOLESKY_L if L is None else L
    return np.asarray(independent_z, dtype=float) @ L.T


def generate_correlated_returns(
    independent_z: NDArray,
    L: Optional[NDArray] = None,
    params: Mapping[str, Tuple[float, float]] = asset_params,
) -> ReturnSample:
    """
    Converts six independent standard-normal draws into one year's returns.

    Args:
        independent_z: Draws ordered as config.market_assumptions.asset_classes.
        L: Cholesky factor (defaults to the historical matrix's).
        params: {asset_class: (mean, std)}.

    Returns:
        ReturnSample with inflation floored at 0.
    """
    z = correlate(independent_z, L)
    values = {}
    for idx, name in enumerate(asset_classes):
        mu, sigma = params[name]
        values[name] = mu + sigma * z[idx]
    values["inflation"] = max(0.0, values["inflation"])
    return ReturnSample(**values)


def draw_return_sample(rng: np.random.Generator, L: Optional[NDArray] = None) -> ReturnSample:
    """One fresh joint draw for one simulated year."""
    return generate_correlated_returns(rng.standard_normal(len(asset_classes)), L)


def generate_return_path(n_years: int, rng: np.random.Generator) -> list[ReturnSample]:
    """
    A whole trial's worth of yearly samples.

    Generate random shocks: [n_years, 6 assets] @ [6, 6]
    """
    shocks = rng.standard_normal((n_years, len(asset_classes)))
    return [generate_correlated_returns(row) for row in shocks]


def portfolio_return(sample: ReturnSample, allocation: Mapping[str, float]) -> float:
    """
    Allocation-weighted sum of asset-class returns. Weights are not renormalized.
    """
    total = sum(allocation.values())
    if abs(total - 1.0) > ALLOCATION_TOLERANCE:
        raise PlanValidationError(f"Allocation weights sum to {total:.6f}, expected 1.")

    returns = sample.asset_returns()
    unknown = set(allocation) - set(returns)
    if unknown:
        raise PlanValidationError(f"Unknown asset classes in allocation: {sorted(unknown)}.")

    return float(sum(returns[name] * weight for name, weight in allocation.items()))


def calculate_annual_inflation(
    annual_inflation_rate: float,
    prior_year_inflation_index: float,
) -> tuple[float, float]:
    """
    Rolls the cumulative inflation index forward one year.

    Returns:
        tuple[float, float]: (annual_inflation_rate, current_cumulative_index)
    """
    current_cumulative_index = prior_year_inflation_index * (1 + annual_inflation_rate)
    return annual_inflation_rate, current_cumulative_index

# engine/rmd_tables.py

"""
Required Minimum Distribution lookup supporting:
- 2022+ IRS Uniform Lifetime Table
- SECURE 2.0 start ages (73 for those born before 1960, 75 otherwise)
"""

from typing import Dict, List, Optional, Tuple

# =============================================================================
# FULL 2022+ IRS UNIFORM LIFETIME TABLE (AGES 72-120)
# =============================================================================
UNIFORM_LIFETIME_TABLE_2022: Dict[int, float] = {
    72: 27.4, 73: 26.5, 74: 25.5, 75: 24.6, 76: 23.7, 77: 22.9,
    78: 22.0, 79: 21.1, 80: 20.2, 81: 19.4, 82: 18.5, 83: 17.7,
    84: 16.8, 85: 16.0, 86: 15.2, 87: 14.4, 88: 13.7, 89: 12.9,
    90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1, 94: 9.5, 95: 8.9,
    96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8, 100: 6.4, 101: 6.0,
    102: 5.6, 103: 5.2, 104: 4.9, 105: 4.6, 106: 4.3, 107: 4.1,
    108: 3.9, 109: 3.7, 110: 3.5, 111: 3.4, 112: 3.3, 113: 3.1,
    114: 3.0, 115: 2.9, 116: 2.8, 117: 2.7, 118: 2.5, 119: 2.3,
    120: 2.0,
}

TABLE_MAX_AGE = max(UNIFORM_LIFETIME_TABLE_2022)
DEFAULT_RMD_START_AGE = 73

# =============================================================================
# START AGE
# =============================================================================

def get_rmd_start_age(birth_year: Optional[int]) -> Tuple[int, str]:
    """
    SECURE 2.0 RMD start age.

    Parameters
    ----------
    birth_year : int | None
        Owner's birth year. None assumes the earlier (age 73) schedule.

    Returns
    -------
    tuple[int, str]
        (start_age, reason)
    """
    if birth_year is None:
        return DEFAULT_RMD_START_AGE, "Birth year unknown: assuming RMDs begin at age 73"
    if birth_year <= 1959:
        return 73, "Born before 1960: RMDs begin at age 73"
    return 75, "Born 1960+: RMDs begin at age 75"


# =============================================================================
# MAIN FUNCTIONS
# =============================================================================

def get_rmd_factor(age: int, birth_year: Optional[int] = None) -> float:
    """
    Returns the IRS divisor for RMD calculations.

    Parameters
    ----------
    age : int
        Age in the distribution calendar year.
    birth_year : int | None
        Used to determine the SECURE Act RMD starting age.

    Returns
    -------
    float
        RMD divisor for the given age, or 0.0 if RMDs have not started.
    """
    rmd_start_age, _ = get_rmd_start_age(birth_year)
    if age < rmd_start_age:
        return 0.0

    # Ages past the end of the table keep the last divisor
    return UNIFORM_LIFETIME_TABLE_2022[min(int(age), TABLE_MAX_AGE)]


def calculate_rmd(age: int, prior_year_balance: float, birth_year: Optional[int] = None) -> float:
    """RMD = prior year-end balance / divisor; 0 below the start age or with no balance."""
    if prior_year_balance <= 0:
        return 0.0
    divisor = get_rmd_factor(age, birth_year)
    if divisor <= 0:
        return 0.0
    return prior_year_balance / divisor


def project_rmds(
    current_age: int,
    birth_year: int,
    balance: float,
    expected_return: float = 0.06,
    end_age: int = 100,
    current_year: Optional[int] = None,
) -> List[Dict[str, float]]:
    """
    Year-by-year RMD schedule for one pre-tax balance.

    Before the start age the balance only grows; afterwards each year's RMD is
    taken from the prior year-end balance and the remainder grows.
    """
    if current_year is None:
        current_year = birth_year + current_age

    projections = []
    cumulative = 0.0
    for age in range(current_age, end_age + 1):
        divisor = get_rmd_factor(age, birth_year)
        if divisor == 0.0:
            balance *= 1 + expected_return
            continue

        rmd_amount = balance / divisor
        cumulative += rmd_amount
        projections.append({
            "year": current_year + (age - current_age),
            "age": age,
            "prior_year_balance": balance,
            "divisor": divisor,
            "rmd_amount": rmd_amount,
            "cumulative_rmd": cumulative,
        })
        balance = (balance - rmd_amount) * (1 + expected_return)

    return projections


__all__ = [
    "UNIFORM_LIFETIME_TABLE_2022",
    "get_rmd_start_age",
    "get_rmd_factor",
    "calculate_rmd",
    "project_rmds",
]

# tax_planning.py
#
# Planning targets: how much more ordinary income fits under a bracket
# ceiling or an IRMAA tier. tax_engine.py does the actual tax arithmetic.
#

from typing import Tuple

import numpy as np

from drawdown.engine.tax_engine import bracket_ceiling
from drawdown.utils.tax_utils import get_indexed_federal_constants, TaxFilingStatus


def get_tax_planning_targets(
    year: int,
    inflation_index: float,
    tax_strategy: str,
    irmaa_strategy: str,
    filing_status: TaxFilingStatus,
) -> Tuple[float, float]:
    """
    Determines the target gross-income ceiling for a bracket strategy
    (e.g. "fill_22_percent") and the MAGI ceiling for an IRMAA strategy
    (e.g. "fill_IRMAA_1") for the year. Unknown names mean no limit.
    """
    constants = get_indexed_federal_constants(year, inflation_index, filing_status)
    std_deduction = constants["std_deduction"]

    # Bracket ceilings are in taxable-income terms; add the deduction back for gross income
    fill_targets = {
        f"fill_{key}": bounds[1] + std_deduction
        for key, bounds in constants["ord_dict"].items()
        if np.isfinite(bounds[1])
    }

    fill_thresholds = {
        f"fill_IRMAA_{i + 1}": threshold
        for i, threshold in enumerate(constants["irmaa_thresholds"])
    }

    tax_target = fill_targets.get(tax_strategy, float('inf'))
    irmaa_target = fill_thresholds.get(irmaa_strategy, float('inf'))

    return tax_target, irmaa_target


def bracket_fill_room(
    base_income: float,
    target_rate: float,
    filing_status: TaxFilingStatus,
    max_amount: float = np.inf,
    year: int = 2026,
    inflation_index: float = 1.0,
) -> float:
    """
    Extra ordinary income that keeps taxable income at or under the ceiling
    of the target_rate bracket, capped at max_amount.
    """
    constants = get_indexed_federal_constants(year, inflation_index, filing_status)
    ceiling = bracket_ceiling(target_rate, filing_status, constants["ord_list"])
    # Unused standard deduction is room too
    room = max(0.0, ceiling + constants["std_deduction"] - base_income)
    return min(room, max_amount)

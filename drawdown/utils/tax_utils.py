# utils/tax_utils.py
import numpy as np
from typing import List, Tuple, Dict, Literal, Union

from drawdown.models import TaxBracket, IrmaaBracket, PlanValidationError

# Define the acceptable set of filing statuses for type hinting
TaxFilingStatus = Literal["single", "married_filing_jointly"]
BASE_YEAR = 2026 # Base year for all estimated Federal constants

# =============================================================================
# 1. Federal Ordinary Income Tax Brackets (2026 Projected)
# =============================================================================

ORDINARY_BRACKETS_2026: Dict[TaxFilingStatus, List[Tuple[float, float, float]]] = {
    "married_filing_jointly": [
        (0, 24_000, 0.10), (24_000, 97_450, 0.12), (97_450, 201_200, 0.22),
        (201_200, 383_900, 0.24), (383_900, 487_450, 0.32), (487_450, 731_200, 0.35),
        (731_200, np.inf, 0.37),
    ],
    "single": [
        (0, 12_000, 0.10), (12_000, 48_725, 0.12), (48_725, 100_600, 0.22),
        (100_600, 191_950, 0.24), (191_950, 243_725, 0.32), (243_725, 609_350, 0.35),
        (609_350, np.inf, 0.37),
    ],
}

# =============================================================================
# 2. Standard Deduction (2026 Projected)
# =============================================================================
STANDARD_DEDUCTION_2026: Dict[TaxFilingStatus, float] = {
    "single": 15_225,
    "married_filing_jointly": 30_450,
}

# =============================================================================
# 3. Medicare IRMAA Tiers (2026), selected on MAGI from two years prior
# =============================================================================

# (label, single_max, joint_max, part_b_monthly, part_d_surcharge_monthly)
IRMAA_TIERS_2026: List[Tuple[str, float, float, float, float]] = [
    ("Standard",     109_000, 218_000, 202.90,  0.00),
    ("Tier 1",       137_000, 274_000, 284.10, 13.70),
    ("Tier 2",       171_000, 342_000, 405.80, 35.30),
    ("Tier 3",       205_000, 410_000, 527.50, 57.00),
    ("Tier 4",       500_000, 750_000, 649.20, 78.60),
    ("Tier 5 (Max)", np.inf,  np.inf,  678.00, 85.00),
]

MEDICARE_PART_B_STANDARD = IRMAA_TIERS_2026[0][3]

# Social Security Taxation Thresholds (Statutory and NOT indexed)
SS_TAX_THRESHOLDS: Dict[str, List[Tuple[float, float, float]]] = {
    "single": [(0, 25000, 0.0), (25000, 34000, 0.50), (34000, np.inf, 0.85)],
    "married_filing_jointly": [(0, 32000, 0.0), (32000, 44000, 0.50), (44000, np.inf, 0.85)],
}


# =============================================================================
# 4. Table builders and validation
# =============================================================================

def validate_brackets(brackets: List[TaxBracket]) -> List[TaxBracket]:
    """
    Checks that a bracket list partitions [0, inf) with no gaps or overlaps.

    Raises PlanValidationError naming the first offending bracket.
    """
    if not brackets:
        raise PlanValidationError("Bracket list is empty.")
    if brackets[0].lower != 0:
        raise PlanValidationError(
            f"First bracket must start at 0, got {brackets[0].lower}."
        )
    for prev, curr in zip(brackets, brackets[1:]):
        if not prev.upper > prev.lower:
            raise PlanValidationError(
                f"Bracket {prev.label} has non-increasing bounds ({prev.lower}, {prev.upper})."
            )
        if curr.lower != prev.upper:
            raise PlanValidationError(
                f"Bracket {curr.label} starts at {curr.lower} but {prev.label} ends at {prev.upper}."
            )
    if np.isfinite(brackets[-1].upper):
        raise PlanValidationError("Last bracket must be unbounded.")
    return brackets


def validate_irmaa_brackets(brackets: List[IrmaaBracket]) -> List[IrmaaBracket]:
    """
    Same partition check as validate_brackets, run on the single and the
    joint MAGI bounds of an IRMAA tier list.
    """
    if not brackets:
        raise PlanValidationError("IRMAA tier list is empty.")
    for filing_status in ("single", "married_filing_jointly"):
        bounds = [b.bounds(filing_status) for b in brackets]
        if bounds[0][0] != 0:
            raise PlanValidationError(
                f"First IRMAA tier must start at 0 ({filing_status}), got {bounds[0][0]}."
            )
        for prev, curr, (lower, upper), (next_lower, _) in zip(brackets, brackets[1:], bounds, bounds[1:]):
            if not upper > lower:
                raise PlanValidationError(
                    f"IRMAA tier {prev.label} has non-increasing {filing_status} bounds ({lower}, {upper})."
                )
            if next_lower != upper:
                raise PlanValidationError(
                    f"IRMAA tier {curr.label} starts at {next_lower} but {prev.label} ends at {upper} ({filing_status})."
                )
        if np.isfinite(bounds[-1][1]):
            raise PlanValidationError("Last IRMAA tier must be unbounded.")
    return brackets


def build_brackets(raw: List[Tuple[float, float, float]], inflation_factor: float = 1.0) -> List[TaxBracket]:
    """Turns (low, high, rate) tuples into validated TaxBracket records, indexed by inflation_factor."""
    brackets = []
    for low, high, rate in raw:
        inflated_low = low * inflation_factor
        inflated_high = high * inflation_factor if np.isfinite(high) else np.inf
        brackets.append(TaxBracket(inflated_low, inflated_high, rate))
    return validate_brackets(brackets)


def build_irmaa_brackets(inflation_factor: float = 1.0) -> List[IrmaaBracket]:
    brackets = []
    single_min = joint_min = 0.0
    for label, single_max, joint_max, part_b, part_d in IRMAA_TIERS_2026:
        s_max = single_max * inflation_factor if np.isfinite(single_max) else np.inf
        j_max = joint_max * inflation_factor if np.isfinite(joint_max) else np.inf
        brackets.append(IrmaaBracket(single_min, s_max, joint_min, j_max, part_b, part_d, label))
        single_min, joint_min = s_max, j_max
    return validate_irmaa_brackets(brackets)


FEDERAL_BRACKETS_MFJ = build_brackets(ORDINARY_BRACKETS_2026["married_filing_jointly"])
FEDERAL_BRACKETS_SINGLE = build_brackets(ORDINARY_BRACKETS_2026["single"])
IRMAA_BRACKETS_2026 = build_irmaa_brackets()


# =============================================================================
# 5. Core Utility Function (Returns all indexed Federal values)
# =============================================================================

def get_indexed_federal_constants(
    year: int,
    inflation_index: float,
    filing_status: TaxFilingStatus,
) -> Dict[str, Union[float, List, Dict]]:
    """
    Returns a dictionary of the Federal brackets, deduction and IRMAA tiers
    indexed to the simulation year.
    """
    if filing_status not in ORDINARY_BRACKETS_2026:
        raise PlanValidationError(f"Unsupported filing status '{filing_status}'.")

    # Determine inflation factor: 1.0 if before BASE_YEAR, else cumulative index
    inflation_factor = inflation_index if year > BASE_YEAR else 1.0

    if inflation_factor == 1.0:
        brackets = FEDERAL_BRACKETS_MFJ if filing_status == "married_filing_jointly" else FEDERAL_BRACKETS_SINGLE
        irmaa = IRMAA_BRACKETS_2026
    else:
        brackets = build_brackets(ORDINARY_BRACKETS_2026[filing_status], inflation_factor)
        irmaa = build_irmaa_brackets(inflation_factor)

    # Planning targets look brackets up as e.g. "22_percent"
    ord_dict = {f"{int(round(b.rate * 100))}_percent": [b.lower, b.upper] for b in brackets}

    return {
        "ord_list": brackets,
        "ord_dict": ord_dict,
        "std_deduction": STANDARD_DEDUCTION_2026[filing_status] * inflation_factor,
        "irmaa_brackets": irmaa,
        "irmaa_thresholds": [b.bounds(filing_status)[1] for b in irmaa[:-1]],
    }

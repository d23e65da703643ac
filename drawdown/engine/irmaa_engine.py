# engine/irmaa_engine.py
"""
Medicare IRMAA (Income-Related Monthly Adjustment Amount) determination.

Premiums for year Y are set from MAGI reported for year Y - 2, so every
determination here reads a MAGI history keyed by calendar year rather than
the current year's income.
"""
import logging
from typing import List, Mapping, Optional

import numpy as np

from drawdown.config.planning_assumptions import (
    irmaa_lookback_years,
    irmaa_safety_buffer,
    irmaa_warning_threshold,
    medicare_part_d_base,
)
from drawdown.models import (
    IrmaaBracket,
    IrmaaBracketChange,
    IrmaaCliffWarning,
    IrmaaDetermination,
    IrmaaResult,
    IrmaaThreshold,
)
from drawdown.utils.currency import format_currency_output
from drawdown.utils.tax_utils import (
    IRMAA_BRACKETS_2026,
    MEDICARE_PART_B_STANDARD,
    TaxFilingStatus,
    validate_irmaa_brackets,
)

logger = logging.getLogger(__name__)


def calculate_magi(
    social_security_income: float = 0.0,
    pension_income: float = 0.0,
    rmd_amount: float = 0.0,
    investment_income: float = 0.0,
    other_taxable_income: float = 0.0,
    tax_exempt_interest: float = 0.0,
) -> float:
    """
    MAGI for IRMAA purposes. 85% of Social Security is included and
    tax-exempt interest is added back even though it is not federally taxed.
    """
    return (
        social_security_income * 0.85
        + pension_income
        + rmd_amount
        + investment_income
        + other_taxable_income
        + tax_exempt_interest
    )


def _resolve_brackets(brackets: Optional[List[IrmaaBracket]]) -> List[IrmaaBracket]:
    # Caller-supplied tables are checked before use; the 2026 defaults were checked at import
    return IRMAA_BRACKETS_2026 if brackets is None else validate_irmaa_brackets(brackets)


def _bracket_index(magi: float, filing_status: TaxFilingStatus, brackets: List[IrmaaBracket]) -> int:
    # First bracket whose upper bound exceeds MAGI wins; past every bound, the highest applies
    for i, bracket in enumerate(brackets):
        if magi < bracket.bounds(filing_status)[1]:
            return i
    else:
        return len(brackets) - 1


def find_irmaa_bracket(
    magi: float,
    filing_status: TaxFilingStatus,
    brackets: Optional[List[IrmaaBracket]] = None,
) -> IrmaaBracket:
    brackets = _resolve_brackets(brackets)
    return brackets[_bracket_index(magi, filing_status, brackets)]


def calculate_irmaa(
    magi: float,
    filing_status: TaxFilingStatus,
    part_d_base: float = medicare_part_d_base,
    brackets: Optional[List[IrmaaBracket]] = None,
) -> IrmaaResult:
    """Per-person Part B / Part D premiums for the tier MAGI falls in."""
    bracket = find_irmaa_bracket(magi, filing_status, brackets)

    monthly_part_b = bracket.part_b_monthly
    monthly_part_d = part_d_base + bracket.part_d_surcharge
    annual_premium = (monthly_part_b + monthly_part_d) * 12
    standard_annual = (MEDICARE_PART_B_STANDARD + part_d_base) * 12

    return IrmaaResult(
        bracket=bracket,
        monthly_part_b=monthly_part_b,
        monthly_part_d=monthly_part_d,
        annual_premium=annual_premium,
        surcharge_amount=annual_premium - standard_annual,
        is_above_standard=bracket.part_b_monthly > MEDICARE_PART_B_STANDARD,
    )


def get_next_irmaa_threshold(
    magi: float,
    filing_status: TaxFilingStatus,
    brackets: Optional[List[IrmaaBracket]] = None,
) -> Optional[IrmaaThreshold]:
    """Distance from MAGI to the next tier's lower bound; None in the top tier."""
    brackets = _resolve_brackets(brackets)
    idx = _bracket_index(magi, filing_status, brackets)
    if idx == len(brackets) - 1:
        return None

    threshold = brackets[idx].bounds(filing_status)[1]
    return IrmaaThreshold(
        threshold=threshold,
        headroom=threshold - magi,
        next_bracket_label=brackets[idx + 1].label,
    )


def check_irmaa_bracket_change(
    current_magi: float,
    proposed_increase: float,
    filing_status: TaxFilingStatus,
    brackets: Optional[List[IrmaaBracket]] = None,
) -> Optional[IrmaaBracketChange]:
    """Tier jump caused by adding proposed_increase to current_magi, or None."""
    brackets = _resolve_brackets(brackets)
    before = calculate_irmaa(current_magi, filing_status, brackets=brackets)
    after = calculate_irmaa(current_magi + proposed_increase, filing_status, brackets=brackets)
    if after.bracket.label == before.bracket.label:
        return None

    threshold = after.bracket.bounds(filing_status)[0]
    return IrmaaBracketChange(
        previous_bracket=before.bracket,
        new_bracket=after.bracket,
        magi_threshold_exceeded=threshold,
        trigger_amount=current_magi + proposed_increase - threshold,
        annual_premium_increase=after.annual_premium - before.annual_premium,
    )


def check_irmaa_cliff(
    current_magi: float,
    proposed_increase: float,
    filing_status: TaxFilingStatus,
    warning_threshold: float = irmaa_warning_threshold,
    brackets: Optional[List[IrmaaBracket]] = None,
) -> Optional[IrmaaCliffWarning]:
    """
    Warns when a proposed income increase crosses into a higher tier, or,
    failing that, when the resulting MAGI sits within warning_threshold of the
    next tier.
    """
    change = check_irmaa_bracket_change(current_magi, proposed_increase, filing_status, brackets)
    if change is not None:
        return IrmaaCliffWarning(
            current_bracket=change.previous_bracket.label,
            next_bracket=change.new_bracket.label,
            headroom=0.0,
            threshold_amount=change.magi_threshold_exceeded,
            annual_premium_increase=change.annual_premium_increase,
            message=(
                f"Income of {format_currency_output(proposed_increase)} exceeds the "
                f"{change.new_bracket.label} IRMAA threshold by "
                f"{format_currency_output(change.trigger_amount)}. Medicare premiums rise "
                f"{format_currency_output(change.annual_premium_increase)}/year."
            ),
        )

    resulting_magi = current_magi + proposed_increase
    nxt = get_next_irmaa_threshold(resulting_magi, filing_status, brackets)
    if nxt is not None and nxt.headroom < warning_threshold:
        return IrmaaCliffWarning(
            current_bracket=find_irmaa_bracket(resulting_magi, filing_status, brackets).label,
            next_bracket=nxt.next_bracket_label,
            headroom=nxt.headroom,
            threshold_amount=nxt.threshold,
            annual_premium_increase=0.0,
            message=(
                f"Warning: Only {format_currency_output(nxt.headroom)} headroom before "
                f"{nxt.next_bracket_label} IRMAA bracket."
            ),
        )
    return None


def determine_irmaa(
    premium_year: int,
    magi_history: Mapping[int, float],
    filing_status: TaxFilingStatus,
    warning_threshold: float = irmaa_warning_threshold,
    persons_covered: int = 1,
    part_d_base: float = medicare_part_d_base,
    brackets: Optional[List[IrmaaBracket]] = None,
    lookback_years: int = irmaa_lookback_years,
) -> IrmaaDetermination:
    """
    IRMAA tier for premium_year from the MAGI reported lookback_years earlier.

    A year missing from magi_history counts as zero MAGI. crossed_cliff is set
    when the tier differs from the one the previous lookback year selects.
    """
    lookback_year = premium_year - lookback_years
    magi = magi_history.get(lookback_year, 0.0)
    previous_magi = magi_history.get(lookback_year - 1, 0.0)

    result = calculate_irmaa(magi, filing_status, part_d_base, brackets)
    previous_bracket = find_irmaa_bracket(previous_magi, filing_status, brackets)
    crossed_cliff = result.bracket.label != previous_bracket.label

    if crossed_cliff:
        logger.debug(
            f"IRMAA {premium_year}: {previous_bracket.label} -> {result.bracket.label} "
            f"(MAGI {lookback_year} = {magi:,.0f})"
        )

    return IrmaaDetermination(
        premium_year=premium_year,
        lookback_year=lookback_year,
        magi=magi,
        bracket=result.bracket,
        annual_premium=result.annual_premium * persons_covered,
        surcharge=result.surcharge_amount * persons_covered,
        crossed_cliff=crossed_cliff,
        previous_bracket_label=previous_bracket.label,
        warning=check_irmaa_cliff(magi, 0.0, filing_status, warning_threshold, brackets),
    )


def irmaa_safe_conversion_limit(
    base_magi: float,
    filing_status: TaxFilingStatus,
    buffer: float = irmaa_safety_buffer,
    brackets: Optional[List[IrmaaBracket]] = None,
) -> float:
    """Additional income that keeps MAGI `buffer` under the next tier (inf in the top tier)."""
    nxt = get_next_irmaa_threshold(base_magi, filing_status, brackets)
    if nxt is None:
        return np.inf
    return max(0.0, nxt.headroom - buffer)

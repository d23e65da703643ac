"""
U.S. federal + single-state income tax calculator for retirement planning.
It contains the tax formulas, relying on the (optionally indexed) constants
provided by utils.tax_utils.

Two approximations are deliberate and downstream comparisons depend on them:
state tax on a graduated-rate state uses the flat top marginal rate, and
long-term gains on taxable-account draws are handled upstream as a flat share
of the withdrawal (see withdrawal_engine).
"""
from typing import List, Optional, Tuple
import logging

import numpy as np

from drawdown.config.planning_assumptions import default_graduated_state_rate
from drawdown.models import StateTaxRule, TaxBracket, TaxPosition
from drawdown.utils.tax_utils import (
    get_indexed_federal_constants,
    FEDERAL_BRACKETS_MFJ,
    FEDERAL_BRACKETS_SINGLE,
    STANDARD_DEDUCTION_2026,
    TaxFilingStatus,
    validate_brackets,
)

logger = logging.getLogger(__name__)

# Rule types already reported as unsupported, so each is logged once per process
_warned_rate_types = set()


# --- 1. Internal Helper Functions ---

def _default_tables(filing_status: TaxFilingStatus) -> Tuple[List[TaxBracket], float]:
    if filing_status == "married_filing_jointly":
        return FEDERAL_BRACKETS_MFJ, STANDARD_DEDUCTION_2026["married_filing_jointly"]
    return FEDERAL_BRACKETS_SINGLE, STANDARD_DEDUCTION_2026["single"]


def _progressive_tax(taxable_income: float, brackets: List[TaxBracket]) -> float:
    """Sum of (min(income, upper) - lower) * rate over every bracket the income reaches."""
    tax = 0.0
    for bracket in brackets:
        if taxable_income <= bracket.lower:
            break
        tax += (min(taxable_income, bracket.upper) - bracket.lower) * bracket.rate
    return tax


def _containing_bracket(taxable_income: float, brackets: List[TaxBracket]) -> int:
    """Index of the bracket with lower <= income < upper (a boundary belongs to the bracket above)."""
    for idx, bracket in enumerate(brackets):
        if taxable_income < bracket.upper:
            return idx
    return len(brackets) - 1


# --- 2. Public calculators ---

def calculate_tax_position(
    gross_income: float,
    filing_status: TaxFilingStatus,
    brackets: Optional[List[TaxBracket]] = None,
    standard_deduction: Optional[float] = None,
) -> TaxPosition:
    """
    Applies the standard deduction, then walks the bracket list.

    Returns the total tax, the containing bracket (marginal rate), the
    effective rate (0 when taxable income is 0) and the room left before the
    next bracket boundary (inf in the top bracket).
    """
    default_brackets, default_deduction = _default_tables(filing_status)
    brackets = default_brackets if brackets is None else validate_brackets(brackets)
    standard_deduction = default_deduction if standard_deduction is None else standard_deduction

    taxable_income = max(0.0, gross_income - standard_deduction)
    total_tax = _progressive_tax(taxable_income, brackets)

    idx = _containing_bracket(taxable_income, brackets)
    current = brackets[idx]
    next_bracket = brackets[idx + 1] if idx + 1 < len(brackets) else None

    bracket_space = np.inf if not np.isfinite(current.upper) else current.upper - taxable_income
    effective_rate = total_tax / taxable_income if taxable_income > 0 else 0.0

    return TaxPosition(
        gross_income=gross_income,
        taxable_income=taxable_income,
        total_tax=total_tax,
        current_bracket=current,
        marginal_rate=current.rate,
        effective_rate=effective_rate,
        bracket_space=bracket_space,
        next_bracket=next_bracket,
    )


def bracket_ceiling(
    target_rate: float,
    filing_status: TaxFilingStatus,
    brackets: Optional[List[TaxBracket]] = None,
) -> float:
    """
    Taxable-income ceiling of the highest bracket taxed at or below target_rate.
    inf when the target is at or above the top rate.
    """
    brackets = _default_tables(filing_status)[0] if brackets is None else validate_brackets(brackets)
    eligible = [b for b in brackets if b.rate <= target_rate + 1e-12]
    if not eligible:
        return 0.0
    return eligible[-1].upper


def calculate_state_tax(
    taxable_income: float,
    state_rule: Optional[StateTaxRule],
    social_security_income: float,
    age: int,
) -> float:
    """
    Flat-rate approximation of one state's income tax.

    Social Security is removed (at its 85% federally taxable share) when the
    state does not tax it; the retirement exclusion applies from age 60.
    """
    if state_rule is None or state_rule.rate_type == "none":
        return 0.0

    if state_rule.rate_type == "flat":
        rate = state_rule.base_rate / 100
    elif state_rule.rate_type == "graduated":
        rate = (state_rule.top_marginal_rate or default_graduated_state_rate) / 100
    else:
        if state_rule.rate_type not in _warned_rate_types:
            _warned_rate_types.add(state_rule.rate_type)
            logger.warning(
                f"State Tax Calculations Not Available for rate type '{state_rule.rate_type}' "
                f"({state_rule.state_code}). Defaulting to $0 state income taxes."
            )
        return 0.0

    adjusted_income = taxable_income
    if not state_rule.social_security_taxable:
        adjusted_income -= social_security_income * 0.85

    if state_rule.retirement_exclusion_amount > 0 and age >= 60:
        adjusted_income -= min(max(adjusted_income, 0.0), state_rule.retirement_exclusion_amount)

    return max(0.0, adjusted_income) * rate


# --- 3. Main Orchestrator Function ---

def calculate_taxes(
    year: int,
    inflation_index: float,
    filing_status: TaxFilingStatus,
    state_rule: Optional[StateTaxRule],
    age: int,
    gross_income: float,
    social_security_income: float,
    medicare_irmaa: float = 0.0,
) -> Tuple[float, float, float, TaxPosition]:
    """
    Calculates all annual taxes (Federal, State) plus any Medicare IRMAA
    surcharge the caller has already determined.

    Args:
        gross_income: Federally taxable gross income (taxable SS share included).
        social_security_income: Total SS benefit, used by the state rule.

    Returns:
        tuple: (total_tax_owed, federal_tax, state_tax, federal_position)
    """

    # 1. Fetch indexed Federal constants
    constants = get_indexed_federal_constants(year, inflation_index, filing_status)

    # 2. Federal position on the indexed tables
    position = calculate_tax_position(
        gross_income,
        filing_status,
        brackets=constants["ord_list"],
        standard_deduction=constants["std_deduction"],
    )
    federal_tax = position.total_tax

    # 3. State Income Tax
    state_tax = calculate_state_tax(gross_income, state_rule, social_security_income, age)

    # 4. Total Tax Owed
    total_tax_owed = federal_tax + state_tax + medicare_irmaa

    return total_tax_owed, federal_tax, state_tax, position

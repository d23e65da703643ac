# engine/accounts_income.py

from typing import Dict, List, Optional, Sequence, Tuple

from drawdown.engine.rmd_tables import get_rmd_factor
from drawdown.models import Account, PlannerInputs, RmdResult
from drawdown.utils.tax_utils import SS_TAX_THRESHOLDS


# ----------------------------------------------------------------------
# RMDs
# ----------------------------------------------------------------------
def compute_rmds(
    age: int,
    birth_year: Optional[int],
    accounts: Sequence[Account],
    balances: Dict[str, float],
) -> Tuple[float, List[RmdResult]]:
    """
    Compute the year's RMDs for every eligible pre-tax account.

    Returns:
        total_rmds (float): sum of RMDs across accounts for the year
        rmd_by_account (list[RmdResult]): one record per account with an RMD
    Notes:
    - Only 'pretax' accounts carry RMDs.
    - Accounts excluded from withdrawals are left untouched.
    - balances holds prior year-end balances keyed by account id.
    """
    divisor = get_rmd_factor(age, birth_year)
    if divisor <= 0:
        return 0.0, []

    total_rmds = 0.0
    rmd_by_account = []
    for acct in accounts:
        if acct.tax_type != "pretax" or acct.exclude_from_withdrawals:
            continue
        prior_balance = balances.get(acct.id, 0.0)
        if prior_balance <= 0:
            continue

        rmd_amount = prior_balance / divisor
        rmd_by_account.append(RmdResult(acct.id, acct.name, rmd_amount, prior_balance, divisor))
        total_rmds += rmd_amount

    return total_rmds, rmd_by_account


class AccountsIncomeEngine:
    """Non-portfolio income for one plan: salary, Social Security, pension."""

    def __init__(self, inputs: PlannerInputs):
        self.inputs = inputs

    # ----------------------------------------------------------------------
    # Social Security: SS_TAX_THRESHOLDS from tax_utils.py (NOT indexed)
    # ----------------------------------------------------------------------
    def compute_taxable_ss(self, total_ss_benefit: float, other_agi: float, filing_status: str) -> float:
        """
        IRS Worksheet 1 logic using statutory (non-indexed) thresholds.
        """
        brackets = SS_TAX_THRESHOLDS.get(filing_status, SS_TAX_THRESHOLDS["married_filing_jointly"])
        provisional_income = other_agi + 0.5 * total_ss_benefit

        taxable = 0.0
        for low, high, rate in brackets:
            if provisional_income <= low:
                break
            segment = min(provisional_income, high) - low
            taxable += segment * rate
            if provisional_income <= high:
                break

        return min(taxable, 0.85 * total_ss_benefit)

    # ----------------------------------------------------------------------
    # Social Security Benefit
    # ----------------------------------------------------------------------
    def compute_ss_benefit(self, age: int, inflation_index: float) -> float:
        """Annual benefit, inflation-indexed, from the claiming age on."""
        if age < self.inputs.social_security_age:
            return 0.0
        return self.inputs.social_security_income * inflation_index

    # ----------------------------------------------------------------------
    # Pension
    # ----------------------------------------------------------------------
    def compute_pension_income(self, age: int) -> float:
        # Pensions here carry no COLA
        if age < self.inputs.retirement_age:
            return 0.0
        return self.inputs.pension_income

    # ----------------------------------------------------------------------
    # Salary
    # ----------------------------------------------------------------------
    def compute_salary_income(self, age: int, inflation_index: float) -> float:
        if age >= self.inputs.retirement_age:
            return 0.0
        return self.inputs.annual_income * inflation_index

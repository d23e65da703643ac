# withdrawal_engine.py
#
# Decides which accounts fund each year's spending gap. RMDs come out first;
# whatever gap remains is handed to one of two interchangeable strategies
# (ordered waterfall, bracket filling) chosen by PlanSettings.
#
import logging
from typing import Dict, List, Mapping, Optional, Sequence

from drawdown.config.planning_assumptions import (
    bracket_fill_target,
    irmaa_warning_threshold,
    ltcg_taxable_fraction,
)
from drawdown.engine.accounts_income import compute_rmds
from drawdown.engine.irmaa_engine import check_irmaa_cliff
from drawdown.engine.tax_engine import calculate_tax_position
from drawdown.engine.tax_planning import bracket_fill_room
from drawdown.models import (
    Account,
    AnnualWithdrawalSummary,
    GapFillResult,
    PlannerInputs,
    PlanSettings,
    PlanValidationError,
    WithdrawalResult,
)
from drawdown.utils.tax_utils import BASE_YEAR, get_indexed_federal_constants

logger = logging.getLogger(__name__)

TYPE_ORDERS = {
    "traditional": ("taxable", "pretax", "roth"),
    "reverse": ("roth", "pretax", "taxable"),
}
UNRANKED_PRIORITY = 999


def taxable_portion(tax_type: str, amount: float) -> float:
    """Share of a withdrawal that counts as ordinary income this year."""
    if tax_type == "pretax":
        return amount
    if tax_type == "taxable":
        # Flat LTCG approximation: no basis tracking
        return amount * ltcg_taxable_fraction
    return 0.0


def get_sorted_accounts_for_withdrawal(
    accounts: Sequence[Account],
    order: str = "traditional",
    custom_order: Optional[Mapping[str, int]] = None,
) -> List[Account]:
    """
    Withdrawal sequence for the waterfall.

    Excluded accounts never appear. Within a tax type (or a custom priority)
    accounts are visited in ascending expected return, so the money expected
    to grow fastest is spent last. sorted() is stable, so exact ties keep the
    caller's account order.
    """
    eligible = [a for a in accounts if not a.exclude_from_withdrawals]

    if order == "custom":
        priorities = custom_order or {}
        return sorted(eligible, key=lambda a: (priorities.get(a.id, UNRANKED_PRIORITY), a.expected_return))

    if order not in TYPE_ORDERS:
        raise PlanValidationError(f"Unknown withdrawal order '{order}'.")
    type_order = TYPE_ORDERS[order]
    return sorted(eligible, key=lambda a: (type_order.index(a.tax_type), a.expected_return))


def _build_results(
    drawn: Dict[str, float],
    taxable: Dict[str, float],
    balances: Dict[str, float],
    accounts_by_id: Mapping[str, Account],
) -> List[WithdrawalResult]:
    # One record per account touched, in the order accounts were first drawn
    return [
        WithdrawalResult(
            account_id=acct_id,
            account_name=accounts_by_id[acct_id].name,
            account_type=accounts_by_id[acct_id].tax_type,
            withdrawal_amount=amount,
            remaining_balance=balances[acct_id],
            taxable_amount=taxable[acct_id],
        )
        for acct_id, amount in drawn.items()
    ]


# =============================================================================
# ORDERED WATERFALL
# =============================================================================

def process_withdrawals(
    spending_gap: float,
    accounts: Sequence[Account],
    balances: Mapping[str, float],
    order: str = "traditional",
    custom_order: Optional[Mapping[str, int]] = None,
) -> GapFillResult:
    """
    Fills spending_gap by draining accounts in withdrawal order.

    Each account gives min(remaining gap, balance). Whatever is left once
    every eligible account is empty is returned as unfunded_gap; running out
    of money is a result, not an error.
    """
    working = dict(balances)
    accounts_by_id = {a.id: a for a in accounts}
    drawn: Dict[str, float] = {}
    taxable: Dict[str, float] = {}

    remaining = max(0.0, spending_gap)
    for acct in get_sorted_accounts_for_withdrawal(accounts, order, custom_order):
        if remaining <= 0:
            break
        available = working.get(acct.id, 0.0)
        if available <= 0:
            continue

        amt = min(remaining, available)
        working[acct.id] = available - amt
        remaining -= amt
        drawn[acct.id] = amt
        taxable[acct.id] = taxable_portion(acct.tax_type, amt)

    return GapFillResult(
        withdrawals=_build_results(drawn, taxable, working, accounts_by_id),
        unfunded_gap=remaining,
        balances=working,
    )


# =============================================================================
# BRACKET FILLING
# =============================================================================

def process_tax_optimized_withdrawals(
    spending_gap: float,
    accounts: Sequence[Account],
    balances: Mapping[str, float],
    base_income: float = 0.0,
    filing_status: str = "married_filing_jointly",
    target_bracket: float = bracket_fill_target,
    warning_threshold: float = irmaa_warning_threshold,
    year: int = BASE_YEAR,
    inflation_index: float = 1.0,
    allow_bracket_overflow: bool = True,
) -> GapFillResult:
    """
    Bracket-filling withdrawal sequence.

    1. Taxable accounts first; 15% of each draw counts as income.
    2. Pre-tax accounts up to the ceiling of `target_bracket`, with the room
       recomputed from the running taxable income after every account. An
       IRMAA cliff check runs before each pre-tax draw; the first warning
       found is kept.
    3. Roth accounts cover what is left, tax free.
    4. With allow_bracket_overflow, pre-tax money beyond the ceiling is used
       before the shortfall is reported as unfunded.

    base_income is the year's ordinary income before these withdrawals
    (Social Security share, pension, RMDs already taken).
    """
    working = dict(balances)
    accounts_by_id = {a.id: a for a in accounts}
    constants = get_indexed_federal_constants(year, inflation_index, filing_status)

    def _position(income):
        return calculate_tax_position(
            income,
            filing_status,
            brackets=constants["ord_list"],
            standard_deduction=constants["std_deduction"],
        )

    eligible = sorted(
        (a for a in accounts if not a.exclude_from_withdrawals),
        key=lambda a: a.expected_return,
    )
    by_type = {t: [a for a in eligible if a.tax_type == t] for t in ("taxable", "pretax", "roth")}

    drawn: Dict[str, float] = {}
    taxable: Dict[str, float] = {}
    brackets_used: List[str] = []
    irmaa_warning = None

    remaining = max(0.0, spending_gap)
    running_income = base_income

    def _take(acct: Account, amt: float) -> None:
        nonlocal remaining, running_income
        working[acct.id] -= amt
        remaining -= amt
        taxed = taxable_portion(acct.tax_type, amt)
        running_income += taxed
        drawn[acct.id] = drawn.get(acct.id, 0.0) + amt
        taxable[acct.id] = taxable.get(acct.id, 0.0) + taxed

        position = _position(running_income)
        if taxed <= 0 or position.taxable_income <= 0:
            return
        # A draw that ends exactly on a boundary was taxed in the bracket below it
        idx = constants["ord_list"].index(position.current_bracket)
        if idx > 0 and position.taxable_income <= position.current_bracket.lower + 1e-6:
            idx -= 1
        label = constants["ord_list"][idx].label
        if label not in brackets_used:
            brackets_used.append(label)

    def _check_irmaa(amt: float) -> None:
        nonlocal irmaa_warning
        if irmaa_warning is not None:
            return
        irmaa_warning = check_irmaa_cliff(
            running_income, amt, filing_status, warning_threshold, constants["irmaa_brackets"]
        )

    # --- 1. Taxable accounts ---
    for acct in by_type["taxable"]:
        if remaining <= 0:
            break
        amt = min(remaining, working.get(acct.id, 0.0))
        if amt > 0:
            _take(acct, amt)

    # --- 2. Pre-tax accounts up to the target bracket ceiling ---
    for acct in by_type["pretax"]:
        if remaining <= 0:
            break
        room = bracket_fill_room(
            running_income, target_bracket, filing_status,
            year=year, inflation_index=inflation_index,
        )
        amt = min(remaining, working.get(acct.id, 0.0), room)
        if amt <= 0:
            continue
        _check_irmaa(amt)
        _take(acct, amt)

    # --- 3. Roth accounts ---
    for acct in by_type["roth"]:
        if remaining <= 0:
            break
        amt = min(remaining, working.get(acct.id, 0.0))
        if amt > 0:
            _take(acct, amt)

    # --- 4. Pre-tax beyond the target, before declaring a shortfall ---
    if allow_bracket_overflow:
        for acct in by_type["pretax"]:
            if remaining <= 0:
                break
            amt = min(remaining, working.get(acct.id, 0.0))
            if amt <= 0:
                continue
            _check_irmaa(amt)
            _take(acct, amt)

    final_position = _position(running_income)
    return GapFillResult(
        withdrawals=_build_results(drawn, taxable, working, accounts_by_id),
        unfunded_gap=remaining,
        balances=working,
        brackets_used=brackets_used,
        irmaa_warning=irmaa_warning,
        tax_burden=final_position.total_tax,
        marginal_rate=final_position.marginal_rate,
    )


# =============================================================================
# STRATEGY INTERFACE
# =============================================================================

class WithdrawalStrategy:
    """Common call shape for the gap-filling strategies."""
    name = ""

    def fill_gap(
        self,
        spending_gap: float,
        accounts: Sequence[Account],
        balances: Mapping[str, float],
        base_income: float = 0.0,
        filing_status: str = "married_filing_jointly",
        year: int = BASE_YEAR,
        inflation_index: float = 1.0,
    ) -> GapFillResult:
        raise NotImplementedError


class OrderedWaterfall(WithdrawalStrategy):
    name = "waterfall"

    def __init__(self, order: str = "traditional", custom_order: Optional[Mapping[str, int]] = None):
        self.order = order
        self.custom_order = dict(custom_order or {})

    def fill_gap(self, spending_gap, accounts, balances, base_income=0.0,
                 filing_status="married_filing_jointly", year=BASE_YEAR, inflation_index=1.0):
        return process_withdrawals(spending_gap, accounts, balances, self.order, self.custom_order)


class BracketFilling(WithdrawalStrategy):
    name = "bracket_filling"

    def __init__(
        self,
        target_bracket: float = bracket_fill_target,
        warning_threshold: float = irmaa_warning_threshold,
        allow_bracket_overflow: bool = True,
    ):
        self.target_bracket = target_bracket
        self.warning_threshold = warning_threshold
        self.allow_bracket_overflow = allow_bracket_overflow

    def fill_gap(self, spending_gap, accounts, balances, base_income=0.0,
                 filing_status="married_filing_jointly", year=BASE_YEAR, inflation_index=1.0):
        return process_tax_optimized_withdrawals(
            spending_gap,
            accounts,
            balances,
            base_income=base_income,
            filing_status=filing_status,
            target_bracket=self.target_bracket,
            warning_threshold=self.warning_threshold,
            year=year,
            inflation_index=inflation_index,
            allow_bracket_overflow=self.allow_bracket_overflow,
        )


def get_withdrawal_strategy(settings: PlanSettings) -> WithdrawalStrategy:
    if settings.withdrawal_strategy == "waterfall":
        return OrderedWaterfall(settings.withdrawal_order, settings.custom_order)
    if settings.withdrawal_strategy == "bracket_filling":
        return BracketFilling(settings.target_bracket, settings.irmaa_warning_threshold)
    raise PlanValidationError(f"Unknown withdrawal strategy '{settings.withdrawal_strategy}'.")


# =============================================================================
# ANNUAL PROCESSING
# =============================================================================

def process_annual_withdrawals(
    year: int,
    age: int,
    spending_gap: float,
    accounts: Sequence[Account],
    balances: Mapping[str, float],
    settings: PlanSettings,
    birth_year: Optional[int] = None,
    base_income: float = 0.0,
    filing_status: str = "married_filing_jointly",
    inflation_index: float = 1.0,
    strategy: Optional[WithdrawalStrategy] = None,
) -> AnnualWithdrawalSummary:
    """
    One year of withdrawals: RMDs, excess-RMD sweep, then the gap strategy.

    rmd_applied + total_withdrawals + unfunded_gap == spending_gap.
    """
    working = dict(balances)
    strategy = strategy or get_withdrawal_strategy(settings)

    # --- 1. RMDs are mandatory whatever the spending need ---
    total_rmd, rmd_by_account = compute_rmds(age, birth_year, accounts, working)
    for rmd in rmd_by_account:
        working[rmd.account_id] -= rmd.rmd_amount

    gap = max(0.0, spending_gap)
    rmd_applied = min(total_rmd, gap)
    gap_after_rmd = gap - rmd_applied

    # --- 2. Excess RMD sweep to the single excess-income owner ---
    rmd_excess = max(0.0, total_rmd - gap)
    excess_saved = 0.0
    rule = settings.excess_income
    if rule is not None and rmd_excess > 0:
        if rule.target_account_id not in working:
            raise PlanValidationError(
                f"Excess income owner '{rule.target_account_id}' is not a plan account."
            )
        excess_saved = rmd_excess * rule.save_percentage / 100
        working[rule.target_account_id] += excess_saved
        logger.debug(f"{year}: swept {excess_saved:,.0f} of excess RMD into {rule.target_account_id}")

    # --- 3. Remaining gap through the selected strategy ---
    fill = strategy.fill_gap(
        gap_after_rmd,
        accounts,
        working,
        base_income=base_income + total_rmd,
        filing_status=filing_status,
        year=year,
        inflation_index=inflation_index,
    )

    total_withdrawals = fill.total_withdrawn
    return AnnualWithdrawalSummary(
        year=year,
        age=age,
        total_rmd=total_rmd,
        rmd_by_account=rmd_by_account,
        rmd_excess=rmd_excess,
        excess_saved=excess_saved,
        spending_gap=gap,
        gap_after_rmd=gap_after_rmd,
        withdrawals=fill.withdrawals,
        total_withdrawals=total_withdrawals,
        funded_gap=rmd_applied + total_withdrawals,
        unfunded_gap=fill.unfunded_gap,
        ending_balances=fill.balances,
        total_taxable_withdrawals=total_rmd + fill.taxable_withdrawn,
        brackets_used=fill.brackets_used,
        irmaa_warning=fill.irmaa_warning,
    )


def project_lifetime_withdrawals(
    start_year: int,
    start_age: int,
    spending_gaps: Sequence[float],
    accounts: Sequence[Account],
    settings: PlanSettings,
    birth_year: Optional[int] = None,
    filing_status: str = "married_filing_jointly",
    base_incomes: Optional[Sequence[float]] = None,
) -> List[AnnualWithdrawalSummary]:
    """
    Runs process_annual_withdrawals over consecutive years. Ending balances
    grow at each account's expected return before the next year starts.
    """
    balances = {a.id: a.balance for a in accounts}
    growth = {a.id: a.expected_return for a in accounts}
    strategy = get_withdrawal_strategy(settings)

    summaries = []
    for offset, gap in enumerate(spending_gaps):
        base_income = base_incomes[offset] if base_incomes is not None else 0.0
        summary = process_annual_withdrawals(
            start_year + offset,
            start_age + offset,
            gap,
            accounts,
            balances,
            settings,
            birth_year=birth_year,
            base_income=base_income,
            filing_status=filing_status,
            strategy=strategy,
        )
        summaries.append(summary)
        balances = {k: v * (1 + growth.get(k, 0.0)) for k, v in summary.ending_balances.items()}

    return summaries


class WithdrawalEngine:
    """
    Per-plan withdrawal logic: binds a plan's accounts and settings to the
    annual processing above so the simulator can call it once per year.
    """
    def __init__(self, inputs: PlannerInputs):
        self.inputs = inputs
        self.accounts = list(inputs.accounts)
        self.strategy = get_withdrawal_strategy(inputs.settings)

    def process_year(
        self,
        year: int,
        age: int,
        spending_gap: float,
        balances: Mapping[str, float],
        base_income: float = 0.0,
        inflation_index: float = 1.0,
    ) -> AnnualWithdrawalSummary:
        return process_annual_withdrawals(
            year,
            age,
            spending_gap,
            self.accounts,
            balances,
            self.inputs.settings,
            birth_year=self.inputs.birth_year,
            base_income=base_income,
            filing_status=self.inputs.filing_status,
            inflation_index=inflation_index,
            strategy=self.strategy,
        )

    def fund_additional(
        self,
        amount: float,
        balances: Mapping[str, float],
        base_income: float = 0.0,
        year: int = BASE_YEAR,
        inflation_index: float = 1.0,
    ) -> GapFillResult:
        """Second pass for a cost found after the year's withdrawals (taxes, premiums)."""
        return self.strategy.fill_gap(
            amount,
            self.accounts,
            balances,
            base_income=base_income,
            filing_status=self.inputs.filing_status,
            year=year,
            inflation_index=inflation_index,
        )


# models.py
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from drawdown.config.market_assumptions import default_allocation
from drawdown.config.planning_assumptions import (
    irmaa_warning_threshold,
    bracket_fill_target,
    max_annual_conversion,
    default_nsims,
    guardrail_trigger_ratio,
    guardrail_recovery_ratio,
    guardrail_spending_cut,
)

TaxTreatment = Literal["taxable", "pretax", "roth"]
TAX_TREATMENTS: Tuple[str, ...] = ("taxable", "pretax", "roth")

WITHDRAWAL_STRATEGIES: Tuple[str, ...] = ("waterfall", "bracket_filling")
WITHDRAWAL_ORDERS: Tuple[str, ...] = ("traditional", "reverse", "custom")


class PlanValidationError(ValueError):
    """Raised when plan inputs break an invariant the engine depends on."""


# =============================================================================
# Accounts
# =============================================================================

@dataclass
class Account:
    id: str
    name: str
    tax_type: str
    balance: float
    expected_return: float = 0.06
    exclude_from_withdrawals: bool = False

    def __post_init__(self):
        if self.tax_type not in TAX_TREATMENTS:
            raise PlanValidationError(
                f"Account '{self.id}' has unknown tax treatment '{self.tax_type}'. "
                f"Expected one of {TAX_TREATMENTS}."
            )
        if self.balance is None or self.balance < 0:
            raise PlanValidationError(
                f"Account '{self.id}' has a negative balance ({self.balance})."
            )
        self.balance = float(self.balance)
        self.expected_return = float(self.expected_return)


# =============================================================================
# Tax tables
# =============================================================================

@dataclass(frozen=True)
class TaxBracket:
    lower: float
    upper: float
    rate: float
    label: str = ""

    def __post_init__(self):
        if not self.label:
            object.__setattr__(self, "label", f"{self.rate * 100:.0f}%")


@dataclass(frozen=True)
class IrmaaBracket:
    single_min: float
    single_max: float
    joint_min: float
    joint_max: float
    part_b_monthly: float
    part_d_surcharge: float
    label: str

    def bounds(self, filing_status: str) -> Tuple[float, float]:
        """(lower, upper) MAGI bounds for the filer type."""
        if filing_status == "married_filing_jointly":
            return self.joint_min, self.joint_max
        return self.single_min, self.single_max


@dataclass(frozen=True)
class StateTaxRule:
    """
    One state's income-tax rule as supplied by the state rules table.
    Rates are percentages (5.75 means 5.75%).
    """
    state_code: str
    rate_type: str = "none"
    base_rate: float = 0.0
    top_marginal_rate: float = 0.0
    social_security_taxable: bool = False
    retirement_exclusion_amount: float = 0.0
    state_name: str = ""


@dataclass(frozen=True)
class TaxPosition:
    gross_income: float
    taxable_income: float
    total_tax: float
    current_bracket: TaxBracket
    marginal_rate: float
    effective_rate: float
    bracket_space: float
    next_bracket: Optional[TaxBracket]


# =============================================================================
# Medicare / IRMAA
# =============================================================================

@dataclass(frozen=True)
class IrmaaResult:
    bracket: IrmaaBracket
    monthly_part_b: float
    monthly_part_d: float
    annual_premium: float
    surcharge_amount: float
    is_above_standard: bool


@dataclass(frozen=True)
class IrmaaThreshold:
    threshold: float
    headroom: float
    next_bracket_label: str


@dataclass(frozen=True)
class IrmaaBracketChange:
    previous_bracket: IrmaaBracket
    new_bracket: IrmaaBracket
    magi_threshold_exceeded: float
    trigger_amount: float
    annual_premium_increase: float


@dataclass(frozen=True)
class IrmaaCliffWarning:
    current_bracket: str
    next_bracket: str
    headroom: float
    threshold_amount: float
    annual_premium_increase: float
    message: str


@dataclass(frozen=True)
class IrmaaDetermination:
    premium_year: int
    lookback_year: int
    magi: float
    bracket: IrmaaBracket
    annual_premium: float
    surcharge: float
    crossed_cliff: bool
    previous_bracket_label: str
    warning: Optional[IrmaaCliffWarning] = None


# =============================================================================
# Withdrawals
# =============================================================================

@dataclass(frozen=True)
class RmdResult:
    account_id: str
    account_name: str
    rmd_amount: float
    prior_year_balance: float
    divisor: float


@dataclass(frozen=True)
class WithdrawalResult:
    account_id: str
    account_name: str
    account_type: str
    withdrawal_amount: float
    remaining_balance: float
    taxable_amount: float


@dataclass
class GapFillResult:
    """What a withdrawal strategy did with one year's spending gap."""
    withdrawals: List[WithdrawalResult]
    unfunded_gap: float
    balances: Dict[str, float]
    brackets_used: List[str] = field(default_factory=list)
    irmaa_warning: Optional[IrmaaCliffWarning] = None
    tax_burden: float = 0.0
    marginal_rate: float = 0.0

    @property
    def total_withdrawn(self) -> float:
        return sum(w.withdrawal_amount for w in self.withdrawals)

    @property
    def taxable_withdrawn(self) -> float:
        return sum(w.taxable_amount for w in self.withdrawals)


@dataclass
class AnnualWithdrawalSummary:
    year: int
    age: int
    total_rmd: float
    rmd_by_account: List[RmdResult]
    rmd_excess: float
    excess_saved: float
    spending_gap: float
    gap_after_rmd: float
    withdrawals: List[WithdrawalResult]
    total_withdrawals: float
    funded_gap: float
    unfunded_gap: float
    ending_balances: Dict[str, float]
    total_taxable_withdrawals: float
    brackets_used: List[str] = field(default_factory=list)
    irmaa_warning: Optional[IrmaaCliffWarning] = None

    @property
    def rmd_applied(self) -> float:
        """Portion of the year's RMDs that went toward the spending gap."""
        return min(self.total_rmd, self.spending_gap)


# =============================================================================
# Roth conversions
# =============================================================================

@dataclass(frozen=True)
class IrmaaImpact:
    lookback_year: int
    magi_for_irmaa: float
    bracket_label: str
    surcharge: float
    crossed_cliff: bool


@dataclass(frozen=True)
class ConversionYear:
    year: int
    age: int
    conversion_amount: float
    from_accounts: Tuple[Tuple[str, float], ...]
    tax_bill: float
    federal_tax: float
    state_tax: float
    effective_rate: float
    marginal_rate: float
    cumulative_converted: float
    remaining_pre_tax: float
    projected_roth_balance: float
    rmd_with_conversion: float
    rmd_without_conversion: float
    irmaa_impact: IrmaaImpact
    tax_adjusted_net_worth: float


@dataclass(frozen=True)
class OptimizationResult:
    strategy: str
    years: Tuple[ConversionYear, ...]
    total_converted: float
    total_tax_paid: float
    average_effective_rate: float
    lifetime_tax_with_conversions: float
    lifetime_tax_baseline: float
    lifetime_tax_savings: float
    estate_value_with_conversions: float
    estate_value_baseline: float
    estate_value_increase: float
    rmd_reduction_total: float
    spendable_wealth_increase: float
    heirs_tax_reduction: float
    heirs_tax_reduction_percent: float
    irmaa_surcharges_incurred: float
    conversion_schedule: Tuple[Tuple[int, float], ...]
    cumulative_tax_by_year: Tuple[Dict[str, float], ...]


@dataclass
class StrategyComparison:
    strategy: str
    label: str
    description: str
    lifetime_tax_savings: float
    estate_value_increase: float
    irmaa_surcharges: float
    total_converted: float
    recommended: bool = False
    result: Optional[OptimizationResult] = None


# =============================================================================
# Buckets
# =============================================================================

@dataclass(frozen=True)
class BucketState:
    bucket: str
    current_value: float
    target_value: float
    target_years: float
    percent_full: float
    ytd_return: float
    is_underfunded: bool


@dataclass(frozen=True)
class RefillAction:
    condition: str
    source_bucket: Optional[str]
    amount: float
    reason: str
    can_execute: bool


@dataclass(frozen=True)
class BucketAnalysis:
    buckets: Tuple[BucketState, ...]
    total_portfolio_value: float
    annual_expenses: float
    total_years_covered: float
    refill_recommendation: RefillAction
    sequence_risk_protected: bool


# =============================================================================
# Market
# =============================================================================

@dataclass(frozen=True)
class ReturnSample:
    domestic_stocks: float
    intl_stocks: float
    bonds: float
    real_estate: float
    cash: float
    inflation: float

    def asset_returns(self) -> Dict[str, float]:
        """Per-asset-class returns keyed the same way as an allocation."""
        return {
            "domestic_stocks": self.domestic_stocks,
            "intl_stocks": self.intl_stocks,
            "bonds": self.bonds,
            "real_estate": self.real_estate,
            "cash": self.cash,
        }


# =============================================================================
# Plan settings and inputs
# =============================================================================

@dataclass(frozen=True)
class ExcessIncomeRule:
    target_account_id: str
    save_percentage: float


@dataclass
class PlanSettings:
    # At most one flow owns the excess-income rule; set/clear replace it whole.
    excess_income: Optional[ExcessIncomeRule] = None
    withdrawal_strategy: str = "waterfall"
    withdrawal_order: str = "traditional"
    custom_order: Dict[str, int] = field(default_factory=dict)
    target_bracket: float = bracket_fill_target
    irmaa_warning_threshold: float = irmaa_warning_threshold

    def __post_init__(self):
        if self.withdrawal_strategy not in WITHDRAWAL_STRATEGIES:
            raise PlanValidationError(
                f"Unknown withdrawal strategy '{self.withdrawal_strategy}'."
            )
        if self.withdrawal_order not in WITHDRAWAL_ORDERS:
            raise PlanValidationError(
                f"Unknown withdrawal order '{self.withdrawal_order}'."
            )

    @property
    def excess_income_owner(self) -> Optional[str]:
        return self.excess_income.target_account_id if self.excess_income else None

    def set_excess_income_owner(self, target_account_id: str, save_percentage: float = 100.0) -> None:
        """Make `target_account_id` the only recipient of swept excess income."""
        if not 0.0 <= save_percentage <= 100.0:
            raise PlanValidationError(
                f"Excess income save percentage must be within 0-100, got {save_percentage}."
            )
        self.excess_income = ExcessIncomeRule(target_account_id, float(save_percentage))

    def clear_excess_income_owner(self) -> None:
        self.excess_income = None


@dataclass
class PlannerInputs:
    # Core
    current_year: int
    current_age: int
    retirement_age: int
    life_expectancy: int
    filing_status: str

    # Portfolio & spending
    accounts: List[Account]
    annual_spending: float

    birth_year: Optional[int] = None
    state_rule: Optional[StateTaxRule] = None

    # Income
    annual_income: float = 0.0
    social_security_income: float = 0.0
    social_security_age: int = 67
    pension_income: float = 0.0
    other_income: float = 0.0
    tax_exempt_interest: float = 0.0

    # Strategy
    settings: PlanSettings = field(default_factory=PlanSettings)
    allocation: Dict[str, float] = field(default_factory=lambda: dict(default_allocation))
    roth_strategy: Optional[str] = None
    roth_target_bracket: float = 0.22
    max_annual_conversion: float = max_annual_conversion

    # MAGI reported for the two years before current_year (IRMAA lookback seed)
    magi_1: float = 0.0
    magi_2: float = 0.0
    medicare_start_age: int = 65

    # Spending guardrails, as ratios of the balance at retirement
    use_guardrails: bool = True
    guardrail_trigger: float = guardrail_trigger_ratio
    guardrail_recovery: float = guardrail_recovery_ratio
    guardrail_cut: float = guardrail_spending_cut

    # Trials
    nsims: int = default_nsims
    seed: Optional[int] = None
    n_workers: int = 1
    return_trajectories: bool = True

    def __post_init__(self):
        if self.birth_year is None:
            self.birth_year = self.current_year - self.current_age
        if self.filing_status not in ("single", "married_filing_jointly"):
            raise PlanValidationError(f"Unsupported filing status '{self.filing_status}'.")
        if self.life_expectancy < self.current_age:
            raise PlanValidationError("life_expectancy must not precede current_age.")
        if self.annual_spending < 0:
            raise PlanValidationError("annual_spending must be non-negative.")
        ids = [a.id for a in self.accounts]
        if len(ids) != len(set(ids)):
            raise PlanValidationError(f"Duplicate account ids in {ids}.")
        owner = self.settings.excess_income_owner
        if owner is not None and owner not in ids:
            raise PlanValidationError(f"Excess income owner '{owner}' is not a plan account.")
        if not 0 < self.guardrail_trigger <= self.guardrail_recovery:
            raise PlanValidationError("guardrail_trigger must be positive and no higher than guardrail_recovery.")
        if not 0 <= self.guardrail_cut < 1:
            raise PlanValidationError("guardrail_cut must be in [0, 1).")

    def account_map(self) -> Dict[str, Account]:
        return {a.id: a for a in self.accounts}

    def to_dict(self) -> Dict[str, Any]:
        """Flat view for logging and tabular summaries."""
        return {
            "current_year": self.current_year,
            "current_age": self.current_age,
            "retirement_age": self.retirement_age,
            "life_expectancy": self.life_expectancy,
            "filing_status": self.filing_status,
            "annual_spending": self.annual_spending,
            "accounts": len(self.accounts),
            "withdrawal_strategy": self.settings.withdrawal_strategy,
            "roth_strategy": self.roth_strategy,
            "nsims": self.nsims,
            "seed": self.seed,
        }

# engine/roth_optimizer.py
"""
Multi-year Roth conversion planning.

One loop (run_conversion_plan) walks the conversion window, from five years
before retirement up to the year before RMDs start. The four strategies only
differ in the amount_for_year function they pass in; every other rule (caps,
allocation order, IRMAA lookback, lifetime projection) is shared.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from drawdown.config.planning_assumptions import (
    conversion_affordability_margin,
    conversion_materiality_floor,
    conversion_tax_rate_estimate,
    estate_horizon_age,
    future_tax_rate,
    heirs_tax_rate,
    max_annual_conversion,
    pretax_projection_growth,
    roth_growth_rate,
    strategy_bracket_ceilings,
)
from drawdown.engine.irmaa_engine import determine_irmaa, irmaa_safe_conversion_limit
from drawdown.engine.rmd_tables import calculate_rmd, get_rmd_start_age
from drawdown.engine.tax_engine import calculate_state_tax, calculate_tax_position
from drawdown.engine.tax_planning import bracket_fill_room
from drawdown.models import (
    Account,
    ConversionYear,
    IrmaaImpact,
    OptimizationResult,
    PlannerInputs,
    PlanValidationError,
    StateTaxRule,
    StrategyComparison,
)

logger = logging.getLogger(__name__)

# (year, age, base_income, pretax_balance, magi_history) -> target conversion
AmountForYear = Callable[[int, int, float, float, Mapping[int, float]], float]


@dataclass
class ConversionParams:
    current_year: int
    current_age: int
    retirement_age: int
    life_expectancy: int
    accounts: List[Account]
    filing_status: str = "married_filing_jointly"
    birth_year: Optional[int] = None
    state_rule: Optional[StateTaxRule] = None
    brokerage_balance: float = 0.0
    annual_income: float = 0.0
    social_security_income: float = 0.0
    target_bracket: float = strategy_bracket_ceilings["tax_bracket_limit"]
    max_annual_conversion: float = max_annual_conversion
    medicare_start_age: int = 65
    prior_magi: Dict[int, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.birth_year is None:
            self.birth_year = self.current_year - self.current_age
        # Only pre-tax money converts
        self.accounts = [a for a in self.accounts if a.tax_type == "pretax" and not a.exclude_from_withdrawals]

    @property
    def rmd_start_age(self) -> int:
        return get_rmd_start_age(self.birth_year)[0]

    @classmethod
    def from_inputs(cls, inputs: PlannerInputs) -> "ConversionParams":
        brokerage = sum(
            a.balance for a in inputs.accounts
            if a.tax_type == "taxable" and not a.exclude_from_withdrawals
        )
        return cls(
            current_year=inputs.current_year,
            current_age=inputs.current_age,
            retirement_age=inputs.retirement_age,
            life_expectancy=inputs.life_expectancy,
            accounts=list(inputs.accounts),
            filing_status=inputs.filing_status,
            birth_year=inputs.birth_year,
            state_rule=inputs.state_rule,
            brokerage_balance=brokerage,
            annual_income=inputs.annual_income,
            social_security_income=inputs.social_security_income,
            target_bracket=inputs.roth_target_bracket,
            max_annual_conversion=inputs.max_annual_conversion,
            medicare_start_age=inputs.medicare_start_age,
            prior_magi={
                inputs.current_year - 1: inputs.magi_1,
                inputs.current_year - 2: inputs.magi_2,
            },
        )


# --- 1. Tax helpers ---

def _federal_tax(gross_income: float, filing_status: str):
    position = calculate_tax_position(gross_income, filing_status)
    return position.total_tax, position.marginal_rate


def _bracket_ceiling_amount(base_income: float, target_rate: float, filing_status: str, cap: float) -> float:
    """
    Conversion that brings gross income up to the ceiling of the highest
    bracket taxed at or below target_rate (any rate, not only a bracket rate).
    """
    return bracket_fill_room(base_income, target_rate, filing_status, max_amount=cap)


# --- 2. Core loop ---

def run_conversion_plan(params: ConversionParams, amount_for_year: AmountForYear, strategy: str = "") -> OptimizationResult:
    """
    Simulates the conversion window year by year, then projects both the
    converted and the unconverted pre-tax balances through RMD age.

    Each year's target from amount_for_year is capped by the remaining
    pre-tax balance, the annual maximum, what the brokerage account can pay
    tax on, and the pre-tax total the plan started with. Years that land
    below the materiality floor convert nothing and are not recorded, but
    balances still grow through them.
    """
    fs = params.filing_status
    persons_covered = 2 if fs == "married_filing_jointly" else 1
    rmd_start_age = params.rmd_start_age

    balances = {a.id: a.balance for a in params.accounts}
    baseline = dict(balances)
    initial_pretax = sum(balances.values())

    roth_balance = 0.0
    cumulative_converted = 0.0
    total_tax_paid = 0.0
    available_brokerage = params.brokerage_balance
    irmaa_surcharges = 0.0
    cumulative_optimized_tax = 0.0
    cumulative_baseline_tax = 0.0
    warned_unaffordable = False

    years: List[ConversionYear] = []
    cumulative_tax_by_year: List[Dict[str, float]] = []
    magi_history: Dict[int, float] = dict(params.prior_magi)

    start_age = max(params.current_age, params.retirement_age - 5)
    end_age = min(rmd_start_age - 1, params.life_expectancy)
    last_age = start_age - 1

    # Highest-return money converts first
    by_return = sorted(params.accounts, key=lambda a: a.expected_return, reverse=True)

    for age in range(start_age, end_age + 1):
        year = params.current_year + (age - params.current_age)
        pretax_total = sum(balances.values())
        if pretax_total <= 0:
            break
        last_age = age

        base_income = params.social_security_income if age >= params.retirement_age else params.annual_income

        # --- Target and caps ---
        target = amount_for_year(year, age, base_income, pretax_total, magi_history)
        affordable = available_brokerage / conversion_tax_rate_estimate * conversion_affordability_margin
        conversion = min(
            target,
            pretax_total,
            params.max_annual_conversion,
            affordable,
            initial_pretax - cumulative_converted,
        )

        if conversion < conversion_materiality_floor:
            if affordable < conversion_materiality_floor and target >= conversion_materiality_floor and not warned_unaffordable:
                warned_unaffordable = True
                logger.warning(
                    f"Brokerage balance {available_brokerage:,.0f} cannot fund tax on a conversion at age {age}; "
                    f"conversions are skipped until it can."
                )
            logger.debug(f"{year}: conversion {max(conversion, 0.0):,.0f} below floor, skipped")
            magi_history[year] = base_income
            balances = {k: v * (1 + _growth(params.accounts, k)) for k, v in balances.items()}
            baseline = {k: v * (1 + _growth(params.accounts, k)) for k, v in baseline.items()}
            roth_balance *= 1 + roth_growth_rate
            continue

        # --- Allocation across accounts ---
        from_accounts = []
        remaining = conversion
        for acct in by_return:
            available = balances[acct.id]
            if available <= 0 or remaining <= 0:
                continue
            take = min(available, remaining)
            from_accounts.append((acct.id, take))
            balances[acct.id] = available - take
            remaining -= take
        actual = conversion - remaining

        # --- Taxes attributable to the conversion ---
        total_income = base_income + actual
        federal_with, marginal_rate = _federal_tax(total_income, fs)
        federal_base, _ = _federal_tax(base_income, fs)
        state_with = calculate_state_tax(total_income, params.state_rule, params.social_security_income, age)
        state_base = calculate_state_tax(base_income, params.state_rule, params.social_security_income, age)
        conversion_federal = federal_with - federal_base
        conversion_state = state_with - state_base
        tax_bill = conversion_federal + conversion_state

        # --- IRMAA two-year lookback ---
        magi_history[year] = total_income
        irmaa = determine_irmaa(year, magi_history, fs, persons_covered=persons_covered)
        if age >= params.medicare_start_age:
            irmaa_surcharges += irmaa.surcharge

        # --- Balances ---
        available_brokerage -= tax_bill
        roth_balance = roth_balance * (1 + roth_growth_rate) + actual
        cumulative_converted += actual
        total_tax_paid += tax_bill

        balances = {k: v * (1 + _growth(params.accounts, k)) for k, v in balances.items()}
        baseline = {k: v * (1 + _growth(params.accounts, k)) for k, v in baseline.items()}

        remaining_pretax = sum(balances.values())
        baseline_pretax = sum(baseline.values())

        cumulative_optimized_tax += tax_bill
        cumulative_baseline_tax += federal_base + state_base
        cumulative_tax_by_year.append({
            "year": year,
            "baseline": cumulative_baseline_tax,
            "optimized": cumulative_optimized_tax,
        })

        years.append(ConversionYear(
            year=year,
            age=age,
            conversion_amount=actual,
            from_accounts=tuple(from_accounts),
            tax_bill=tax_bill,
            federal_tax=conversion_federal,
            state_tax=conversion_state,
            effective_rate=tax_bill / actual if actual > 0 else 0.0,
            marginal_rate=marginal_rate,
            cumulative_converted=cumulative_converted,
            remaining_pre_tax=remaining_pretax,
            projected_roth_balance=roth_balance,
            rmd_with_conversion=calculate_rmd(age, remaining_pretax, params.birth_year),
            rmd_without_conversion=calculate_rmd(age, baseline_pretax, params.birth_year),
            irmaa_impact=IrmaaImpact(
                lookback_year=irmaa.lookback_year,
                magi_for_irmaa=irmaa.magi,
                bracket_label=irmaa.bracket.label,
                surcharge=irmaa.surcharge,
                crossed_cliff=irmaa.crossed_cliff,
            ),
            tax_adjusted_net_worth=roth_balance + available_brokerage + remaining_pretax * (1 - future_tax_rate),
        ))

    final_pretax = sum(balances.values())
    baseline_pretax = sum(baseline.values())

    # --- Lifetime projection through RMD years ---
    lifetime_with = total_tax_paid
    lifetime_baseline = 0.0
    rmd_reduction_total = 0.0
    pretax_with, pretax_without = final_pretax, baseline_pretax
    for age in range(rmd_start_age, params.life_expectancy + 1):
        rmd_with = calculate_rmd(age, pretax_with, params.birth_year)
        rmd_without = calculate_rmd(age, pretax_without, params.birth_year)
        rmd_reduction_total += rmd_without - rmd_with
        lifetime_with += _federal_tax(rmd_with + params.social_security_income, fs)[0]
        lifetime_baseline += _federal_tax(rmd_without + params.social_security_income, fs)[0]
        pretax_with = (pretax_with - rmd_with) * (1 + pretax_projection_growth)
        pretax_without = (pretax_without - rmd_without) * (1 + pretax_projection_growth)

    # --- Estate at the horizon age ---
    horizon = max(0, estate_horizon_age - (last_age + 1))
    estate_with = (
        roth_balance * (1 + roth_growth_rate) ** horizon
        + final_pretax * (1 + pretax_projection_growth) ** horizon
        + available_brokerage
    )
    estate_baseline = baseline_pretax * (1 + pretax_projection_growth) ** horizon + params.brokerage_balance

    heirs_tax_optimized = final_pretax * heirs_tax_rate
    heirs_tax_baseline = baseline_pretax * heirs_tax_rate
    heirs_tax_reduction = heirs_tax_baseline - heirs_tax_optimized

    return OptimizationResult(
        strategy=strategy,
        years=tuple(years),
        total_converted=cumulative_converted,
        total_tax_paid=total_tax_paid,
        average_effective_rate=total_tax_paid / cumulative_converted if cumulative_converted > 0 else 0.0,
        lifetime_tax_with_conversions=lifetime_with,
        lifetime_tax_baseline=lifetime_baseline,
        lifetime_tax_savings=lifetime_baseline - lifetime_with,
        estate_value_with_conversions=estate_with,
        estate_value_baseline=estate_baseline,
        estate_value_increase=estate_with - estate_baseline,
        rmd_reduction_total=rmd_reduction_total,
        spendable_wealth_increase=roth_balance + (lifetime_baseline - lifetime_with),
        heirs_tax_reduction=heirs_tax_reduction,
        heirs_tax_reduction_percent=heirs_tax_reduction / heirs_tax_baseline * 100 if heirs_tax_baseline > 0 else 0.0,
        irmaa_surcharges_incurred=irmaa_surcharges,
        conversion_schedule=tuple((y.year, y.conversion_amount) for y in years),
        cumulative_tax_by_year=tuple(cumulative_tax_by_year),
    )


def _growth(accounts: Sequence[Account], account_id: str) -> float:
    for acct in accounts:
        if acct.id == account_id:
            return acct.expected_return
    return 0.0


# --- 3. Strategies ---

def _highest_estate(params: ConversionParams) -> AmountForYear:
    rate = strategy_bracket_ceilings["highest_estate"]
    return lambda year, age, base, pretax, history: _bracket_ceiling_amount(base, rate, params.filing_status, pretax)


def _lowest_lifetime_tax(params: ConversionParams) -> AmountForYear:
    rate = strategy_bracket_ceilings["lowest_lifetime_tax"]
    return lambda year, age, base, pretax, history: _bracket_ceiling_amount(base, rate, params.filing_status, pretax)


def _tax_bracket_limit(params: ConversionParams) -> AmountForYear:
    return lambda year, age, base, pretax, history: _bracket_ceiling_amount(
        base, params.target_bracket, params.filing_status, pretax
    )


def _irmaa_bracket_limit(params: ConversionParams) -> AmountForYear:
    rate = strategy_bracket_ceilings["irmaa_bracket_limit"]

    def amount(year, age, base, pretax, history):
        irmaa_room = irmaa_safe_conversion_limit(base, params.filing_status)
        return min(irmaa_room, _bracket_ceiling_amount(base, rate, params.filing_status, pretax))

    return amount


STRATEGIES = {
    "highest_estate": (
        "Maximize Estate",
        "Aggressive conversions to maximize net worth at age 100",
        _highest_estate,
    ),
    "lowest_lifetime_tax": (
        "Minimize Lifetime Tax",
        "Conservative conversions filling only 10-12% brackets",
        _lowest_lifetime_tax,
    ),
    "tax_bracket_limit": (
        "Fill Tax Bracket",
        "Convert up to the {target:.0f}% bracket ceiling",
        _tax_bracket_limit,
    ),
    "irmaa_bracket_limit": (
        "Avoid IRMAA",
        "Stay under Medicare premium surcharge thresholds",
        _irmaa_bracket_limit,
    ),
}


def optimize_roth_conversions(params: ConversionParams, strategy: str) -> OptimizationResult:
    if strategy not in STRATEGIES:
        raise PlanValidationError(
            f"Unknown Roth conversion strategy '{strategy}'. Expected one of {list(STRATEGIES)}."
        )
    factory = STRATEGIES[strategy][2]
    return run_conversion_plan(params, factory(params), strategy)


def compare_all_strategies(params: ConversionParams) -> List[StrategyComparison]:
    """
    Runs every strategy on the same inputs. The one with the largest
    lifetime tax savings is flagged as recommended (first wins a tie); all
    four rows are returned.
    """
    rows = []
    for name, (label, description, _) in STRATEGIES.items():
        result = optimize_roth_conversions(params, name)
        rows.append(StrategyComparison(
            strategy=name,
            label=label,
            description=description.format(target=params.target_bracket * 100),
            lifetime_tax_savings=result.lifetime_tax_savings,
            estate_value_increase=result.estate_value_increase,
            irmaa_surcharges=result.irmaa_surcharges_incurred,
            total_converted=result.total_converted,
            result=result,
        ))

    best = int(np.argmax([r.lifetime_tax_savings for r in rows]))
    rows[best].recommended = True
    logger.info(f"Roth strategy comparison: recommended '{rows[best].strategy}'")
    return rows


def comparison_frame(comparisons: Sequence[StrategyComparison]) -> pd.DataFrame:
    """Side-by-side table of the strategy comparison, one row per strategy."""
    return pd.DataFrame([
        {
            "Strategy": c.strategy,
            "Label": c.label,
            "Lifetime Tax Savings": c.lifetime_tax_savings,
            "Estate Value Increase": c.estate_value_increase,
            "IRMAA Surcharges": c.irmaa_surcharges,
            "Total Converted": c.total_converted,
            "Recommended": c.recommended,
        }
        for c in comparisons
    ]).set_index("Strategy")

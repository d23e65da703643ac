# engine/bucket_engine.py
"""
Three-bucket spending strategy.

    cash    1-3 years of expenses
    bonds   4-10 years
    growth  11+ years

Each year the cash bucket is refilled from whichever of the other two had a
positive year: growth first, then bonds. When both are down, refills stop and
cash is spent down on its own (sequence-risk protection).

Year-to-date returns are fractions throughout (0.05 means +5%).
"""
from typing import Dict, List, Mapping, Optional

from drawdown.config.planning_assumptions import (
    bonds_refill_cap,
    bucket_percent_full_display_cap,
    bucket_target_years,
    bucket_underfunded_ratio,
    growth_refill_cap,
)
from drawdown.models import BucketAnalysis, BucketState, RefillAction
from drawdown.utils.currency import format_percent_output

BUCKETS = ("cash", "bonds", "growth")

# Asset classes held by each bucket
BUCKET_ASSET_CLASSES = {
    "cash": ("cash",),
    "bonds": ("bonds",),
    "growth": ("domestic_stocks", "intl_stocks", "real_estate"),
}


def map_allocation_to_buckets(holdings: Mapping[str, float]) -> Dict[str, float]:
    """Dollar holdings by asset class -> dollar value per bucket."""
    if sum(holdings.values()) == 0:
        return {b: 0.0 for b in BUCKETS}
    return {
        bucket: float(sum(holdings.get(cls, 0.0) for cls in classes))
        for bucket, classes in BUCKET_ASSET_CLASSES.items()
    }


def calculate_bucket_status(
    current_values: Mapping[str, float],
    target_years: Mapping[str, float],
    ytd_returns: Mapping[str, float],
    annual_expenses: float,
) -> List[BucketState]:
    states = []
    for bucket in BUCKETS:
        current_value = current_values.get(bucket, 0.0)
        years = target_years.get(bucket, 0.0)
        target_value = annual_expenses * years
        percent_full = current_value / target_value * 100 if target_value > 0 else 100.0

        states.append(BucketState(
            bucket=bucket,
            current_value=current_value,
            target_value=target_value,
            target_years=years,
            percent_full=min(percent_full, bucket_percent_full_display_cap),
            ytd_return=ytd_returns.get(bucket, 0.0),
            is_underfunded=current_value < bucket_underfunded_ratio * target_value,
        ))
    return states


def determine_refill_action(buckets: List[BucketState]) -> RefillAction:
    """
    The yearly refill decision. Exactly one of four outcomes:

    cash_full                cash at or above target, nothing to do
    growth_up                sell growth gains, at most 10% of the bucket
    bonds_up                 growth flat/down, bonds up: sell bonds, at most 15%
    sequence_risk_protected  both flat/down: no refill, source is None
    """
    by_name = {b.bucket: b for b in buckets}
    cash, bonds, growth = by_name["cash"], by_name["bonds"], by_name["growth"]

    refill_needed = max(0.0, cash.target_value - cash.current_value)

    if refill_needed <= 0:
        return RefillAction(
            condition="cash_full",
            source_bucket=None,
            amount=0.0,
            reason="Cash bucket is fully funded. No refill needed.",
            can_execute=False,
        )

    if growth.ytd_return > 0:
        available_gains = growth.current_value * growth.ytd_return
        amount = min(refill_needed, available_gains, growth.current_value * growth_refill_cap)
        return RefillAction(
            condition="growth_up",
            source_bucket="growth",
            amount=amount,
            reason=f"Growth bucket is up {format_percent_output(growth.ytd_return)} YTD. Sell gains to refill cash.",
            can_execute=amount > 0,
        )

    if bonds.ytd_return > 0:
        amount = min(refill_needed, bonds.current_value * bonds_refill_cap)
        return RefillAction(
            condition="bonds_up",
            source_bucket="bonds",
            amount=amount,
            reason=(
                f"Growth is down {format_percent_output(abs(growth.ytd_return))}, but bonds are up "
                f"{format_percent_output(bonds.ytd_return)}. Sell bonds to preserve equity."
            ),
            can_execute=amount > 0,
        )

    return RefillAction(
        condition="sequence_risk_protected",
        source_bucket=None,
        amount=0.0,
        reason=(
            f"Both growth ({format_percent_output(growth.ytd_return)}) and bonds ({format_percent_output(bonds.ytd_return)}) are down. "
            f"Suspend refills to avoid selling at a loss."
        ),
        can_execute=False,
    )


def analyze_buckets(
    holdings: Mapping[str, float],
    annual_expenses: float,
    ytd_returns: Mapping[str, float],
    target_years: Optional[Mapping[str, float]] = None,
) -> BucketAnalysis:
    target_years = bucket_target_years if target_years is None else target_years

    current_values = map_allocation_to_buckets(holdings)
    buckets = calculate_bucket_status(current_values, target_years, ytd_returns, annual_expenses)
    action = determine_refill_action(buckets)

    total_years_covered = sum(
        b.current_value / annual_expenses if annual_expenses > 0 else 0.0 for b in buckets
    )

    return BucketAnalysis(
        buckets=tuple(buckets),
        total_portfolio_value=sum(holdings.values()),
        annual_expenses=annual_expenses,
        total_years_covered=total_years_covered,
        refill_recommendation=action,
        sequence_risk_protected=action.condition == "sequence_risk_protected",
    )

"""
drawdown: retirement drawdown planning.

Correlated market returns, RMDs, federal/state tax with Medicare IRMAA,
withdrawal sequencing, Roth conversion planning and a bucket refill model,
combined in a Monte Carlo simulator.
"""
from drawdown.models import (
    Account,
    PlannerInputs,
    PlanSettings,
    PlanValidationError,
    StateTaxRule,
)
from drawdown.engine import (
    ConversionParams,
    RetirementSimulator,
    WithdrawalEngine,
    analyze_buckets,
    calculate_taxes,
    compare_all_strategies,
    optimize_roth_conversions,
)
from drawdown.utils.input_adapter import get_planner_inputs

__version__ = "0.1.0"

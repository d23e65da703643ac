# engine/__init__.py

# Expose the simulator and the per-year calculators the surrounding app calls.
from .tax_engine import calculate_taxes, calculate_tax_position
from .withdrawal_engine import WithdrawalEngine, process_annual_withdrawals
from .roth_optimizer import ConversionParams, compare_all_strategies, optimize_roth_conversions
from .bucket_engine import analyze_buckets
from .simulator import RetirementSimulator

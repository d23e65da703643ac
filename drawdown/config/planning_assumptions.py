# config/planning_assumptions.py
# Planning defaults. Every engine function that uses one of these takes a
# keyword override, so callers should not mutate them.

# Withdrawals
ltcg_taxable_fraction = 0.15           # taxable-account draws: flat LTCG approximation
bracket_fill_target = 0.12             # bracket-filling default ceiling

# IRMAA
irmaa_lookback_years = 2
irmaa_warning_threshold = 25_000       # headroom below which a warning is raised
irmaa_safety_buffer = 1_000            # stay this far under the next tier when converting
medicare_part_d_base = 35.00           # monthly

# Roth conversion optimizer
max_annual_conversion = 200_000
conversion_materiality_floor = 5_000
conversion_tax_rate_estimate = 0.25    # tax assumed when sizing what brokerage can pay for
conversion_affordability_margin = 0.85
roth_growth_rate = 0.07
pretax_projection_growth = 0.05
future_tax_rate = 0.22                 # tax-adjusted net worth haircut on pre-tax money
heirs_tax_rate = 0.25
estate_horizon_age = 100
default_graduated_state_rate = 5.0     # percent, when a graduated rule has no top rate

strategy_bracket_ceilings = {
    "highest_estate": 0.32,
    "lowest_lifetime_tax": 0.12,
    "tax_bracket_limit": 0.22,         # overridden by the caller's target bracket
    "irmaa_bracket_limit": 0.24,
}

# Bucket strategy
bucket_target_years = {"cash": 2, "bonds": 7, "growth": 15}
bucket_underfunded_ratio = 0.80
growth_refill_cap = 0.10
bonds_refill_cap = 0.15
bucket_percent_full_display_cap = 150.0

# Trials
default_nsims = 1000
percentile_levels = (5, 25, 50, 75, 95)

# Spending guardrails (stochastic projection)
guardrail_trigger_ratio = 0.80         # of the retirement-start balance
guardrail_recovery_ratio = 0.90
guardrail_spending_cut = 0.10
inflation_scenario_levels = (10, 50, 90)

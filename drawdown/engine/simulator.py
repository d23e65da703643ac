# engine.simulator.py

import copy
import logging
import math
import multiprocessing as mp
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from drawdown.config.planning_assumptions import inflation_scenario_levels, percentile_levels
from drawdown.engine.accounts_income import AccountsIncomeEngine
from drawdown.engine.bucket_engine import BUCKET_ASSET_CLASSES, analyze_buckets
from drawdown.engine.irmaa_engine import calculate_magi, determine_irmaa
from drawdown.engine.market_generator import (
    calculate_annual_inflation,
    draw_return_sample,
    portfolio_return,
)
from drawdown.engine.roth_optimizer import ConversionParams, optimize_roth_conversions
from drawdown.engine.tax_engine import calculate_taxes
from drawdown.engine.withdrawal_engine import WithdrawalEngine
from drawdown.models import PlannerInputs, ReturnSample
from drawdown.utils.tax_utils import get_indexed_federal_constants

logger = logging.getLogger(__name__)

LOG_EVERY_N_TRIALS = 100


def percentile_by_sorted_index(values: Sequence[float], pct: float) -> float:
    """values sorted ascending, then the element at floor(n * pct / 100)."""
    ordered = np.sort(np.asarray(values, dtype=float))
    if ordered.size == 0:
        return 0.0
    idx = min(ordered.size - 1, int(math.floor(ordered.size * pct / 100)))
    return float(ordered[idx])


def _run_trial(simulator: "RetirementSimulator", trial_index: int, seed_seq: np.random.SeedSequence) -> Dict[str, Any]:
    # Module-level so multiprocessing can pickle it
    return simulator._run_one_path(trial_index, np.random.default_rng(seed_seq))


class RetirementSimulator:
    """
    Runs Monte Carlo trials of the drawdown plan: correlated market returns,
    RMDs, scheduled Roth conversions, IRMAA with its two-year lookback,
    withdrawals and taxes, year by year until life expectancy.

    Every trial owns its balances, MAGI history and random generator, so
    trials can run in any order (or in parallel) and still reproduce exactly
    for a given seed.
    """

    def __init__(self, inputs: PlannerInputs):
        # -----------------------
        # STEP 1: Initialize Inputs and Core Attributes
        # -----------------------
        self.inputs = inputs
        self.nsims = int(inputs.nsims)
        self.filing_status = inputs.filing_status
        self.allocation = dict(inputs.allocation)
        self.persons_covered = 2 if inputs.filing_status == "married_filing_jointly" else 1

        # -----------------------
        # STEP 2: Initial Balances
        # -----------------------
        self.accounts = list(inputs.accounts)
        self.initial_balances = {a.id: a.balance for a in self.accounts}

        # -----------------------
        # STEP 3: Simulation Timeframe
        # -----------------------
        self.current_year = inputs.current_year
        self.num_years = inputs.life_expectancy - inputs.current_age + 1
        self.years = [self.current_year + i for i in range(self.num_years)]

        # -----------------------
        # STEP 4: Income and Withdrawal Engines
        # -----------------------
        self.income_engine = AccountsIncomeEngine(inputs)
        self.withdrawal_engine = WithdrawalEngine(inputs)

        # -----------------------
        # STEP 5: Roth conversion schedule (deterministic, shared by every trial)
        # -----------------------
        self.conversion_schedule: Dict[int, float] = {}
        self.roth_destination: Optional[str] = next(
            (a.id for a in self.accounts if a.tax_type == "roth"), None
        )
        if inputs.roth_strategy:
            if self.roth_destination is None:
                logger.warning("Roth strategy selected but the plan has no Roth account; conversions skipped.")
            else:
                result = optimize_roth_conversions(ConversionParams.from_inputs(inputs), inputs.roth_strategy)
                self.conversion_schedule = dict(result.conversion_schedule)

        self.trials: List[Dict[str, Any]] = []
        self.results: Dict[str, Any] = {}

    # =========================================================================
    # 1. CORE SIMULATION RUNNER
    # =========================================================================
    def run_simulation(self) -> Dict[str, Any]:
        """Runs every trial and returns the summary dictionary."""
        seeds = np.random.SeedSequence(self.inputs.seed).spawn(self.nsims)
        n_workers = max(1, int(self.inputs.n_workers))

        logger.info(
            f"Running {self.nsims} trials over {self.num_years} years "
            f"({self.inputs.settings.withdrawal_strategy}, {n_workers} worker(s))"
        )

        if n_workers > 1:
            with mp.Pool(n_workers) as pool:
                self.trials = pool.starmap(
                    _run_trial, [(self, i, seed) for i, seed in enumerate(seeds)]
                )
        else:
            self.trials = []
            for i, seed in enumerate(seeds):
                if i % LOG_EVERY_N_TRIALS == 0:
                    logger.info(f"Starting trial batch at {i}/{self.nsims}")
                self.trials.append(_run_trial(self, i, seed))

        self.results = self._summarize_results()
        return self.results

    # =========================================================================
    # 2. SINGLE PATH LOGIC
    # =========================================================================
    def _run_one_path(self, trial_index: int, rng: np.random.Generator) -> Dict[str, Any]:
        inputs = self.inputs
        fs = self.filing_status

        balances = copy.deepcopy(self.initial_balances)
        magi_history = {
            self.current_year - 1: inputs.magi_1,
            self.current_year - 2: inputs.magi_2,
        }
        inflation_index = 1.0
        lifetime_tax = 0.0
        total_unfunded = 0.0

        # Guardrail state; the reference balance is taken in the first retired year
        retirement_start_balance: Optional[float] = None
        guardrail_active = False
        guardrail_years: List[int] = []

        end_balances = np.zeros(self.num_years)
        records = []
        first_year_inflation = 0.0

        for i in range(self.num_years):
            year = self.current_year + i
            age = inputs.current_age + i
            sample = draw_return_sample(rng)
            if i == 0:
                first_year_inflation = sample.inflation

            # --- STEP 1: Income ---
            salary = self.income_engine.compute_salary_income(age, inflation_index)
            ss_benefit = self.income_engine.compute_ss_benefit(age, inflation_index)
            pension = self.income_engine.compute_pension_income(age)
            other = inputs.other_income

            # --- STEP 2: Spending need, Medicare premiums from MAGI two years back ---
            spending = inputs.annual_spending * inflation_index
            medicare_premium = 0.0
            irmaa = None
            if age >= inputs.medicare_start_age:
                constants = get_indexed_federal_constants(year, inflation_index, fs)
                irmaa = determine_irmaa(
                    year,
                    magi_history,
                    fs,
                    warning_threshold=inputs.settings.irmaa_warning_threshold,
                    persons_covered=self.persons_covered,
                    brackets=constants["irmaa_brackets"],
                )
                medicare_premium = irmaa.annual_premium

            # --- STEP 2b: Spending guardrail on the start-of-year balance ---
            guardrail_applied = False
            if inputs.use_guardrails and age >= inputs.retirement_age:
                start_value = sum(balances.values())
                if retirement_start_balance is None:
                    retirement_start_balance = start_value
                if not guardrail_active and start_value < retirement_start_balance * inputs.guardrail_trigger:
                    guardrail_active = True
                    guardrail_years.append(age - inputs.retirement_age)
                    logger.debug(
                        f"Trial {trial_index}: guardrail triggered in {year} "
                        f"({start_value:,.0f} vs {retirement_start_balance:,.0f} at retirement)"
                    )
                if guardrail_active:
                    spending *= 1 - inputs.guardrail_cut
                    guardrail_applied = True
                    if start_value >= retirement_start_balance * inputs.guardrail_recovery:
                        guardrail_active = False

            # --- STEP 3: Scheduled Roth conversion ---
            conversion = self._apply_conversion(balances, self.conversion_schedule.get(year, 0.0))

            # --- STEP 4: Withdrawals ---
            cash_in = salary + ss_benefit + pension + other
            gap = max(0.0, spending + medicare_premium - cash_in)
            ordinary_base = salary + pension + other + conversion
            base_income = ordinary_base + self.income_engine.compute_taxable_ss(ss_benefit, ordinary_base, fs)

            summary = self.withdrawal_engine.process_year(
                year, age, gap, balances, base_income=base_income, inflation_index=inflation_index
            )
            balances = summary.ending_balances

            # --- STEP 5: Taxes, paid by a second pass through the same strategy ---
            other_agi = ordinary_base + summary.total_taxable_withdrawals
            taxable_ss = self.income_engine.compute_taxable_ss(ss_benefit, other_agi, fs)
            gross_income = other_agi + taxable_ss
            total_tax, federal_tax, state_tax, position = calculate_taxes(
                year, inflation_index, fs, inputs.state_rule, age, gross_income, ss_benefit
            )
            tax_fill = self.withdrawal_engine.fund_additional(
                total_tax, balances, base_income=gross_income, year=year, inflation_index=inflation_index
            )
            balances = tax_fill.balances
            unfunded = summary.unfunded_gap + tax_fill.unfunded_gap

            # --- STEP 6: MAGI for the IRMAA determination two years from now ---
            magi = calculate_magi(
                social_security_income=ss_benefit,
                pension_income=pension,
                rmd_amount=summary.total_rmd,
                investment_income=summary.total_taxable_withdrawals - summary.total_rmd + tax_fill.taxable_withdrawn,
                other_taxable_income=salary + other + conversion,
                tax_exempt_interest=inputs.tax_exempt_interest,
            )
            magi_history[year] = magi

            # --- STEP 7: Bucket refill decision on this year's returns ---
            portfolio_value = sum(balances.values())
            buckets = analyze_buckets(
                {cls: portfolio_value * w for cls, w in self.allocation.items()},
                spending,
                self._bucket_returns(sample),
            )

            # --- STEP 8: Growth and inflation ---
            port_ret = portfolio_return(sample, self.allocation)
            balances = {k: v * (1 + port_ret) for k, v in balances.items()}
            _, inflation_index = calculate_annual_inflation(sample.inflation, inflation_index)

            lifetime_tax += total_tax
            total_unfunded += unfunded
            end_balances[i] = sum(balances.values())

            records.append({
                "year": year,
                "age": age,
                "portfolio_return": port_ret,
                "inflation": sample.inflation,
                "spending": spending,
                "guardrail_active": guardrail_applied,
                "salary": salary,
                "social_security": ss_benefit,
                "pension": pension,
                "rmd": summary.total_rmd,
                "roth_conversion": conversion,
                "withdrawals": summary.total_withdrawals + tax_fill.total_withdrawn,
                "unfunded_gap": unfunded,
                "federal_tax": federal_tax,
                "state_tax": state_tax,
                "total_tax": total_tax,
                "marginal_rate": position.marginal_rate,
                "magi": magi,
                "medicare_premium": medicare_premium,
                "irmaa_bracket": irmaa.bracket.label if irmaa else None,
                "irmaa_cliff": irmaa.crossed_cliff if irmaa else False,
                "bucket_refill": buckets.refill_recommendation.condition,
                "end_balance": end_balances[i],
            })

        return {
            "trial": trial_index,
            "end_balances": end_balances,
            "lifetime_tax": lifetime_tax,
            "total_unfunded": total_unfunded,
            "guardrail_years": guardrail_years,
            "first_year_inflation": first_year_inflation,
            "records": records,
        }

    # =========================================================================
    # 3. HELPER METHODS
    # =========================================================================
    def _apply_conversion(self, balances: Dict[str, float], amount: float) -> float:
        """Moves up to `amount` from pre-tax accounts (highest return first) into the Roth destination."""
        if amount <= 0 or self.roth_destination is None:
            return 0.0
        sources = sorted(
            (a for a in self.accounts if a.tax_type == "pretax" and not a.exclude_from_withdrawals),
            key=lambda a: a.expected_return,
            reverse=True,
        )
        remaining = amount
        for acct in sources:
            take = min(remaining, balances[acct.id])
            if take <= 0:
                continue
            balances[acct.id] -= take
            remaining -= take
        converted = amount - remaining
        balances[self.roth_destination] += converted
        return converted

    def _bucket_returns(self, sample: ReturnSample) -> Dict[str, float]:
        returns = sample.asset_returns()
        growth_classes = BUCKET_ASSET_CLASSES["growth"]
        growth_weight = sum(self.allocation.get(c, 0.0) for c in growth_classes)
        if growth_weight > 0:
            growth = sum(returns[c] * self.allocation.get(c, 0.0) for c in growth_classes) / growth_weight
        else:
            growth = 0.0
        return {"cash": sample.cash, "bonds": sample.bonds, "growth": growth}

    def _summarize_results(self) -> Dict[str, Any]:
        """
        Success rate, balance percentiles by year and per-trial totals.
        """
        if not self.trials:
            return {
                "success_rate": 0.0,
                "median_end_balance": 0.0,
                "percentiles": {},
                "portfolio_paths": np.array([]),
                "mean_lifetime_tax": 0.0,
                "mean_unfunded_gap": 0.0,
                "guardrail_activations": 0,
                "guardrail_events": [],
                "inflation_scenarios": {"low": 0.0, "median": 0.0, "high": 0.0},
                "conversion_schedule": dict(self.conversion_schedule),
                "years": self.years,
            }

        portfolio_paths = np.vstack([t["end_balances"] for t in self.trials])
        portfolio_end = portfolio_paths[:, -1]

        percentiles = {
            f"p{p}": np.array([percentile_by_sorted_index(portfolio_paths[:, j], p) for j in range(self.num_years)])
            for p in percentile_levels
        }

        # Activations by year in retirement, as a share of all trials
        activations = Counter(y for t in self.trials for y in t["guardrail_years"])
        guardrail_events = [
            {
                "year_in_retirement": y,
                "activations": activations[y],
                "percentage": activations[y] / len(self.trials) * 100,
            }
            for y in sorted(activations)
        ]

        first_year_inflation = [t["first_year_inflation"] for t in self.trials]
        low, median, high = (
            percentile_by_sorted_index(first_year_inflation, p) * 100 for p in inflation_scenario_levels
        )

        result = {
            "success_rate": float(np.mean(portfolio_end > 0) * 100),
            "median_end_balance": float(np.median(portfolio_end)),
            "percentiles": percentiles,
            "portfolio_paths": portfolio_paths,
            "mean_lifetime_tax": float(np.mean([t["lifetime_tax"] for t in self.trials])),
            "mean_unfunded_gap": float(np.mean([t["total_unfunded"] for t in self.trials])),
            "guardrail_activations": sum(activations.values()),
            "guardrail_events": guardrail_events,
            "inflation_scenarios": {"low": low, "median": median, "high": high},
            "conversion_schedule": dict(self.conversion_schedule),
            "years": self.years,
        }

        if not self.inputs.return_trajectories:
            # Keep one trial's detail for reporting, drop the rest
            for t in self.trials[1:]:
                t["records"] = []

        logger.info(
            f"Simulation complete: success {result['success_rate']:.1f}%, "
            f"median end balance {result['median_end_balance']:,.0f}"
        )
        return result

    def yearly_records(self, trial: int = 0) -> pd.DataFrame:
        """Per-year detail of one trial as a DataFrame indexed by year."""
        if not self.trials:
            raise RuntimeError("run_simulation() has not been called.")
        return pd.DataFrame(self.trials[trial]["records"]).set_index("year")

    def percentile_frame(self) -> pd.DataFrame:
        """Balance percentiles by year (columns p5 ... p95)."""
        if not self.trials:
            raise RuntimeError("run_simulation() has not been called.")
        return pd.DataFrame(self.results["percentiles"], index=pd.Index(self.years, name="year"))

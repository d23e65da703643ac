"""Tests for the Monte Carlo drawdown simulator."""

import numpy as np
import pandas as pd
import pytest

from drawdown.engine.simulator import RetirementSimulator, percentile_by_sorted_index
from drawdown.engine import simulator as sim_module
from drawdown.models import Account, PlannerInputs, PlanSettings, PlanValidationError, ReturnSample

MFJ = "married_filing_jointly"


def _base_inputs(**overrides):
    params = dict(
        current_year=2026,
        current_age=65,
        retirement_age=65,
        life_expectancy=75,
        filing_status=MFJ,
        accounts=[
            Account("brk", "Brokerage", "taxable", 400_000, expected_return=0.05),
            Account("ira", "Traditional IRA", "pretax", 800_000, expected_return=0.06),
            Account("roth", "Roth IRA", "roth", 100_000, expected_return=0.07),
        ],
        annual_spending=70_000,
        social_security_income=30_000,
        social_security_age=67,
        nsims=25,
        seed=42,
    )
    params.update(overrides)
    return PlannerInputs(**params)


def test_percentile_by_sorted_index():
    values = [10, 1, 9, 2, 8, 3, 7, 4, 6, 5]
    assert percentile_by_sorted_index(values, 50) == 6
    assert percentile_by_sorted_index(values, 0) == 1
    assert percentile_by_sorted_index(values, 100) == 10
    assert percentile_by_sorted_index(values, 5) == 1
    assert percentile_by_sorted_index([], 50) == 0.0


def test_seeded_runs_reproduce():
    first = RetirementSimulator(_base_inputs()).run_simulation()
    second = RetirementSimulator(_base_inputs()).run_simulation()
    assert np.array_equal(first["portfolio_paths"], second["portfolio_paths"])
    assert first["success_rate"] == second["success_rate"]

    other = RetirementSimulator(_base_inputs(seed=7)).run_simulation()
    assert not np.array_equal(first["portfolio_paths"], other["portfolio_paths"])


def test_summary_shape_and_ordering():
    sim = RetirementSimulator(_base_inputs())
    results = sim.run_simulation()
    assert results["portfolio_paths"].shape == (25, 11)
    assert 0.0 <= results["success_rate"] <= 100.0
    assert results["years"] == list(range(2026, 2037))
    p = results["percentiles"]
    assert set(p) == {"p5", "p25", "p50", "p75", "p95"}
    assert np.all(p["p5"] <= p["p50"])
    assert np.all(p["p50"] <= p["p95"])
    assert results["mean_lifetime_tax"] > 0

    frame = sim.percentile_frame()
    assert list(frame.columns) == ["p5", "p25", "p50", "p75", "p95"]
    assert frame.index.name == "year"


def test_yearly_records():
    sim = RetirementSimulator(_base_inputs())
    with pytest.raises(RuntimeError):
        sim.yearly_records()
    sim.run_simulation()
    records = sim.yearly_records()
    assert isinstance(records, pd.DataFrame)
    assert list(records.index) == list(range(2026, 2037))
    for column in ("age", "spending", "rmd", "withdrawals", "total_tax", "magi",
                   "medicare_premium", "irmaa_bracket", "bucket_refill", "end_balance"):
        assert column in records.columns
    # Social Security starts at 67, RMDs at 75 for a 1961 birth year
    assert records.loc[2026, "social_security"] == 0.0
    assert records.loc[2028, "social_security"] > 0
    assert (records["rmd"].loc[:2035] == 0).all()
    assert records.loc[2036, "rmd"] > 0
    # Two people on Medicare from the first year
    assert records.loc[2026, "medicare_premium"] > 0
    assert set(records["bucket_refill"]) <= {"cash_full", "growth_up", "bonds_up", "sequence_risk_protected"}


def test_trajectories_dropped_on_request():
    sim = RetirementSimulator(_base_inputs(return_trajectories=False))
    sim.run_simulation()
    assert len(sim.yearly_records(0)) == 11
    assert all(t["records"] == [] for t in sim.trials[1:])


def test_unaffordable_spending_reports_shortfall():
    inputs = _base_inputs(
        accounts=[Account("brk", "Brokerage", "taxable", 50_000)],
        annual_spending=1_000_000,
    )
    results = RetirementSimulator(inputs).run_simulation()
    assert results["success_rate"] == 0.0
    assert results["mean_unfunded_gap"] > 0


def test_roth_strategy_schedules_conversions():
    inputs = _base_inputs(
        current_age=60,
        life_expectancy=70,
        annual_income=60_000,
        roth_strategy="lowest_lifetime_tax",
        nsims=5,
    )
    sim = RetirementSimulator(inputs)
    assert sim.conversion_schedule[2026] == pytest.approx(127_900 - 60_000)
    results = sim.run_simulation()
    assert results["conversion_schedule"] == sim.conversion_schedule
    records = sim.yearly_records()
    assert records.loc[2026, "roth_conversion"] == pytest.approx(127_900 - 60_000)


def test_roth_strategy_without_roth_account(caplog):
    inputs = _base_inputs(
        accounts=[Account("ira", "IRA", "pretax", 500_000)],
        roth_strategy="highest_estate",
        nsims=2,
    )
    sim = RetirementSimulator(inputs)
    assert sim.conversion_schedule == {}
    assert "no Roth account" in caplog.text


def test_bracket_filling_strategy_runs():
    inputs = _base_inputs(settings=PlanSettings(withdrawal_strategy="bracket_filling", target_bracket=0.22))
    results = RetirementSimulator(inputs).run_simulation()
    assert results["portfolio_paths"].shape == (25, 11)


def test_parallel_matches_serial():
    serial = RetirementSimulator(_base_inputs(nsims=4)).run_simulation()
    parallel = RetirementSimulator(_base_inputs(nsims=4, n_workers=2)).run_simulation()
    assert np.allclose(serial["portfolio_paths"], parallel["portfolio_paths"])


def _flat_market_inputs(**overrides):
    # One taxable account held in cash; draws stay under the standard deduction
    params = dict(
        filing_status="single",
        accounts=[Account("brk", "Brokerage", "taxable", 100_000)],
        annual_spending=10_000,
        social_security_income=0.0,
        life_expectancy=70,
        allocation={"cash": 1.0},
        medicare_start_age=100,
    )
    params.update(overrides)
    return _base_inputs(**params)


def _fixed_returns(monkeypatch, cash_returns):
    samples = iter(ReturnSample(0.0, 0.0, 0.0, 0.0, r, 0.0) for r in cash_returns)
    monkeypatch.setattr(sim_module, "draw_return_sample", lambda rng: next(samples))


def test_guardrail_cuts_spending_below_trigger(monkeypatch):
    monkeypatch.setattr(sim_module, "draw_return_sample", lambda rng: ReturnSample(0.0, 0.0, 0.0, 0.0, 0.0, 0.0))
    sim = RetirementSimulator(_flat_market_inputs(nsims=3))
    results = sim.run_simulation()

    # 70,000 at the start of 2029 is the first balance under 80% of 100,000
    records = sim.yearly_records()
    assert list(records["spending"]) == pytest.approx([10_000] * 3 + [9_000] * 3)
    assert list(records["guardrail_active"]) == [False] * 3 + [True] * 3
    assert records.loc[2031, "end_balance"] == pytest.approx(43_000)

    assert results["guardrail_activations"] == 3
    assert results["guardrail_events"] == [{"year_in_retirement": 3, "activations": 3, "percentage": 100.0}]
    assert results["inflation_scenarios"] == {"low": 0.0, "median": 0.0, "high": 0.0}


def test_guardrail_lifts_after_recovery(monkeypatch):
    # A 50% year takes 61,000 to 91,500, above the 90,000 recovery line
    _fixed_returns(monkeypatch, [0.0, 0.0, 0.0, 0.5, 0.0, 0.0])
    sim = RetirementSimulator(_flat_market_inputs(nsims=1))
    results = sim.run_simulation()

    records = sim.yearly_records()
    assert list(records["spending"]) == pytest.approx([10_000, 10_000, 10_000, 9_000, 9_000, 10_000])
    assert list(records["guardrail_active"]) == [False, False, False, True, True, False]
    assert results["guardrail_activations"] == 1


def test_guardrails_can_be_disabled(monkeypatch):
    monkeypatch.setattr(sim_module, "draw_return_sample", lambda rng: ReturnSample(0.0, 0.0, 0.0, 0.0, 0.0, 0.0))
    sim = RetirementSimulator(_flat_market_inputs(nsims=2, use_guardrails=False))
    results = sim.run_simulation()
    assert (sim.yearly_records()["spending"] == 10_000).all()
    assert results["guardrail_activations"] == 0
    assert results["guardrail_events"] == []


def test_guardrail_settings_validated():
    with pytest.raises(PlanValidationError):
        _base_inputs(guardrail_trigger=0.95, guardrail_recovery=0.90)
    with pytest.raises(PlanValidationError):
        _base_inputs(guardrail_cut=1.0)


def test_guardrail_events_and_inflation_scenarios():
    results = RetirementSimulator(_base_inputs(nsims=40, annual_spending=150_000)).run_simulation()
    assert results["guardrail_activations"] == sum(e["activations"] for e in results["guardrail_events"])
    for event in results["guardrail_events"]:
        assert event["year_in_retirement"] >= 1
        assert event["percentage"] == pytest.approx(event["activations"] / 40 * 100)
    scenarios = results["inflation_scenarios"]
    assert scenarios["low"] <= scenarios["median"] <= scenarios["high"]
    assert scenarios["low"] < scenarios["high"]

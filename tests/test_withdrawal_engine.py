"""Tests for RMD handling, the waterfall and the bracket-filling withdrawal strategies."""

import numpy as np
import pytest

from drawdown.engine import withdrawal_engine as we
from drawdown.models import Account, PlannerInputs, PlanSettings, PlanValidationError

MFJ = "married_filing_jointly"


def _base_accounts():
    return [
        Account("brk", "Brokerage", "taxable", 100_000, expected_return=0.05),
        Account("ira", "Traditional IRA", "pretax", 500_000, expected_return=0.06),
        Account("roth", "Roth IRA", "roth", 50_000, expected_return=0.07),
    ]


def _balances(accounts):
    return {a.id: a.balance for a in accounts}


def _withdrawn(result, account_id):
    return sum(w.withdrawal_amount for w in result.withdrawals if w.account_id == account_id)


def test_example_rmd_then_waterfall():
    """Age 74, $500k pre-tax: RMD $19,607.84 leaves $20,392.16 of a $40,000 gap."""
    accounts = _base_accounts()
    summary = we.process_annual_withdrawals(
        2026, 74, 40_000, accounts, _balances(accounts), PlanSettings(), birth_year=1952
    )
    assert summary.total_rmd == pytest.approx(19_607.84, abs=0.01)
    assert summary.rmd_by_account[0].divisor == 25.5
    assert summary.gap_after_rmd == pytest.approx(20_392.16, abs=0.01)
    assert summary.total_withdrawals == pytest.approx(20_392.16, abs=0.01)
    assert [w.account_id for w in summary.withdrawals] == ["brk"]
    assert summary.unfunded_gap == 0.0
    assert summary.ending_balances["ira"] == pytest.approx(500_000 - 19_607.84, abs=0.01)
    assert summary.ending_balances["roth"] == 50_000


@pytest.mark.parametrize("strategy", ["waterfall", "bracket_filling"])
@pytest.mark.parametrize("seed", range(8))
def test_conservation_of_spending_gap(strategy, seed):
    rng = np.random.default_rng(seed)
    accounts = [
        Account(f"a{i}", f"Account {i}", tax_type, float(rng.uniform(0, 200_000)),
                expected_return=float(rng.uniform(0.0, 0.1)))
        for i, tax_type in enumerate(["taxable", "pretax", "pretax", "roth", "taxable"])
    ]
    gap = float(rng.uniform(0, 900_000))
    age = int(rng.integers(60, 95))
    summary = we.process_annual_withdrawals(
        2026, age, gap, accounts, _balances(accounts),
        PlanSettings(withdrawal_strategy=strategy), birth_year=2026 - age,
        base_income=float(rng.uniform(0, 100_000)),
    )
    assert summary.rmd_applied + summary.total_withdrawals + summary.unfunded_gap == pytest.approx(gap)
    assert summary.unfunded_gap >= 0
    assert all(v >= -1e-9 for v in summary.ending_balances.values())


@pytest.mark.parametrize("strategy", ["waterfall", "bracket_filling"])
def test_excluded_account_is_never_touched(strategy):
    accounts = [
        Account("house_fund", "House Fund", "taxable", 1_000_000, expected_return=0.0,
                exclude_from_withdrawals=True),
        Account("old_401k", "Old 401k", "pretax", 800_000, exclude_from_withdrawals=True),
        Account("ira", "IRA", "pretax", 20_000),
    ]
    summary = we.process_annual_withdrawals(
        2026, 80, 100_000, accounts, _balances(accounts),
        PlanSettings(withdrawal_strategy=strategy), birth_year=1946,
    )
    assert summary.ending_balances["house_fund"] == 1_000_000
    assert summary.ending_balances["old_401k"] == 800_000
    assert all(r.account_id != "old_401k" for r in summary.rmd_by_account)
    assert all(w.account_id not in ("house_fund", "old_401k") for w in summary.withdrawals)
    assert summary.unfunded_gap == pytest.approx(80_000)


def test_unfunded_gap_is_reported():
    accounts = [Account("brk", "Brokerage", "taxable", 10_000)]
    result = we.process_withdrawals(50_000, accounts, _balances(accounts))
    assert result.total_withdrawn == 10_000
    assert result.unfunded_gap == 40_000
    assert result.balances["brk"] == 0.0


def test_within_type_low_return_first():
    accounts = [
        Account("fast", "Fast", "taxable", 50_000, expected_return=0.09),
        Account("slow", "Slow", "taxable", 50_000, expected_return=0.02),
    ]
    result = we.process_withdrawals(60_000, accounts, _balances(accounts))
    assert [w.account_id for w in result.withdrawals] == ["slow", "fast"]
    assert _withdrawn(result, "slow") == 50_000
    assert _withdrawn(result, "fast") == 10_000


def test_order_options():
    accounts = _base_accounts()
    traditional = we.get_sorted_accounts_for_withdrawal(accounts, "traditional")
    reverse = we.get_sorted_accounts_for_withdrawal(accounts, "reverse")
    custom = we.get_sorted_accounts_for_withdrawal(accounts, "custom", {"ira": 1, "brk": 2})
    assert [a.id for a in traditional] == ["brk", "ira", "roth"]
    assert [a.id for a in reverse] == ["roth", "ira", "brk"]
    # Unranked accounts go last
    assert [a.id for a in custom] == ["ira", "brk", "roth"]
    with pytest.raises(PlanValidationError):
        we.get_sorted_accounts_for_withdrawal(accounts, "random")


def test_taxable_portion_approximation():
    accounts = _base_accounts()
    result = we.process_withdrawals(120_000, accounts, _balances(accounts))
    by_id = {w.account_id: w for w in result.withdrawals}
    assert by_id["brk"].taxable_amount == pytest.approx(15_000)
    assert by_id["ira"].taxable_amount == pytest.approx(20_000)
    assert result.taxable_withdrawn == pytest.approx(35_000)


def test_excess_rmd_sweep():
    accounts = _base_accounts()
    accounts[1] = Account("ira", "Traditional IRA", "pretax", 1_000_000)
    settings = PlanSettings()
    settings.set_excess_income_owner("brk", 50)
    summary = we.process_annual_withdrawals(
        2026, 80, 10_000, accounts, _balances(accounts), settings, birth_year=1946
    )
    rmd = 1_000_000 / 20.2
    assert summary.total_rmd == pytest.approx(rmd)
    assert summary.rmd_excess == pytest.approx(rmd - 10_000)
    assert summary.excess_saved == pytest.approx((rmd - 10_000) * 0.5)
    assert summary.ending_balances["brk"] == pytest.approx(100_000 + (rmd - 10_000) * 0.5)
    assert summary.total_withdrawals == 0.0
    assert summary.rmd_applied == pytest.approx(10_000)


def test_excess_owner_must_be_an_account():
    accounts = _base_accounts()
    settings = PlanSettings()
    settings.set_excess_income_owner("nowhere")
    with pytest.raises(PlanValidationError):
        we.process_annual_withdrawals(2026, 80, 0, accounts, _balances(accounts), settings, birth_year=1946)


def test_excess_owner_is_single_field():
    settings = PlanSettings()
    settings.set_excess_income_owner("brk")
    settings.set_excess_income_owner("roth", 25)
    assert settings.excess_income_owner == "roth"
    assert settings.excess_income.save_percentage == 25
    settings.clear_excess_income_owner()
    assert settings.excess_income_owner is None
    with pytest.raises(PlanValidationError):
        settings.set_excess_income_owner("roth", 150)


def test_bracket_filling_stops_at_target_ceiling():
    accounts = [
        Account("brk", "Brokerage", "taxable", 10_000),
        Account("ira", "IRA", "pretax", 500_000),
        Account("roth", "Roth", "roth", 500_000),
    ]
    result = we.process_tax_optimized_withdrawals(
        150_000, accounts, _balances(accounts), base_income=0.0, filing_status=MFJ, target_bracket=0.12
    )
    # 1,500 of income from the brokerage draw, then pre-tax up to 97,450 taxable
    assert _withdrawn(result, "brk") == pytest.approx(10_000)
    assert _withdrawn(result, "ira") == pytest.approx(97_450 + 30_450 - 1_500)
    assert _withdrawn(result, "roth") == pytest.approx(150_000 - 10_000 - 126_400)
    assert result.unfunded_gap == 0.0
    assert result.brackets_used == ["12%"]
    assert result.tax_burden == pytest.approx(2_400 + 73_450 * 0.12)


def test_bracket_filling_overflow():
    accounts = [
        Account("brk", "Brokerage", "taxable", 10_000),
        Account("ira", "IRA", "pretax", 500_000),
    ]
    kwargs = dict(base_income=0.0, filing_status=MFJ, target_bracket=0.12)
    spilled = we.process_tax_optimized_withdrawals(200_000, accounts, _balances(accounts), **kwargs)
    assert _withdrawn(spilled, "ira") == pytest.approx(190_000)
    assert len([w for w in spilled.withdrawals if w.account_id == "ira"]) == 1
    assert spilled.unfunded_gap == 0.0
    assert "22%" in spilled.brackets_used

    capped = we.process_tax_optimized_withdrawals(
        200_000, accounts, _balances(accounts), allow_bracket_overflow=False, **kwargs
    )
    assert capped.unfunded_gap == pytest.approx(200_000 - 10_000 - 126_400)


def test_bracket_filling_keeps_first_irmaa_warning():
    accounts = [
        Account("a", "IRA A", "pretax", 30_000, expected_return=0.03),
        Account("b", "IRA B", "pretax", 200_000, expected_return=0.05),
    ]
    result = we.process_tax_optimized_withdrawals(
        230_000, accounts, _balances(accounts), base_income=200_000, filing_status=MFJ, target_bracket=0.32
    )
    assert result.irmaa_warning is not None
    assert result.irmaa_warning.next_bracket == "Tier 1"
    assert result.unfunded_gap == pytest.approx(0.0)


def test_strategy_factory():
    assert isinstance(we.get_withdrawal_strategy(PlanSettings()), we.OrderedWaterfall)
    filling = we.get_withdrawal_strategy(PlanSettings(withdrawal_strategy="bracket_filling", target_bracket=0.22))
    assert isinstance(filling, we.BracketFilling)
    assert filling.target_bracket == 0.22
    with pytest.raises(PlanValidationError):
        PlanSettings(withdrawal_strategy="proportional")


def test_lifetime_projection_grows_balances():
    accounts = [Account("brk", "Brokerage", "taxable", 100_000, expected_return=0.10)]
    summaries = we.project_lifetime_withdrawals(2026, 65, [10_000, 10_000, 10_000], accounts, PlanSettings())
    assert [s.year for s in summaries] == [2026, 2027, 2028]
    assert summaries[0].ending_balances["brk"] == pytest.approx(90_000)
    assert summaries[1].ending_balances["brk"] == pytest.approx(90_000 * 1.1 - 10_000)
    assert summaries[2].ending_balances["brk"] == pytest.approx((90_000 * 1.1 - 10_000) * 1.1 - 10_000)


def test_engine_class_binds_plan():
    inputs = PlannerInputs(
        current_year=2026, current_age=74, retirement_age=65, life_expectancy=90,
        filing_status=MFJ, accounts=_base_accounts(), annual_spending=40_000, birth_year=1952,
    )
    engine = we.WithdrawalEngine(inputs)
    summary = engine.process_year(2026, 74, 40_000, _balances(inputs.accounts))
    assert summary.total_withdrawals == pytest.approx(20_392.16, abs=0.01)

    extra = engine.fund_additional(5_000, summary.ending_balances)
    assert extra.total_withdrawn == pytest.approx(5_000)
    assert extra.balances["brk"] == pytest.approx(100_000 - 20_392.16 - 5_000, abs=0.01)

"""Tests for the RMD calculator."""

import math

import pytest

from drawdown.engine import rmd_tables as rmd


def test_rmd_start_age():
    """SECURE 2.0 start ages: 73 through the 1959 cohort, 75 afterwards."""
    assert rmd.get_rmd_start_age(1951)[0] == 73
    assert rmd.get_rmd_start_age(1959)[0] == 73
    assert rmd.get_rmd_start_age(1960)[0] == 75
    assert rmd.get_rmd_start_age(None)[0] == 73
    assert "75" in rmd.get_rmd_start_age(1965)[1]


def test_example_age_74():
    """Age 74 with $500,000: divisor 25.5, RMD $19,607.84."""
    assert rmd.get_rmd_factor(74, 1952) == 25.5
    amount = rmd.calculate_rmd(74, 500_000, 1952)
    assert amount == pytest.approx(19_607.84, abs=0.01)


@pytest.mark.parametrize("age", [60, 65, 70, 72])
def test_no_rmd_before_start_age(age):
    assert rmd.calculate_rmd(age, 500_000, 1952) == 0.0


@pytest.mark.parametrize("age", [73, 74])
def test_no_rmd_before_75_for_1960_cohort(age):
    assert rmd.calculate_rmd(age, 500_000, 1962) == 0.0


def test_rmd_positive_and_increasing_with_age():
    """Same balance: the divisor shrinks with age so the RMD grows."""
    amounts = [rmd.calculate_rmd(age, 250_000, 1950) for age in range(73, 121)]
    assert all(a > 0 for a in amounts)
    assert all(later > earlier for earlier, later in zip(amounts, amounts[1:]))


def test_rmd_decreases_as_divisor_increases():
    divisors = sorted(set(rmd.UNIFORM_LIFETIME_TABLE_2022.values()))
    results = [100_000 / d for d in divisors]
    assert all(b < a for a, b in zip(results, results[1:]))


def test_ages_past_table_use_last_divisor():
    assert rmd.get_rmd_factor(125, 1950) == rmd.UNIFORM_LIFETIME_TABLE_2022[120]
    assert math.isclose(rmd.calculate_rmd(130, 10_000, 1950), 10_000 / 2.0)


def test_zero_balance_has_no_rmd():
    assert rmd.calculate_rmd(80, 0.0, 1950) == 0.0


def test_project_rmds_schedule():
    schedule = rmd.project_rmds(70, 1956, 400_000, expected_return=0.05, end_age=76, current_year=2026)
    assert [row["age"] for row in schedule] == [73, 74, 75, 76]
    assert schedule[0]["year"] == 2029
    # Balance grew three years untouched before the first RMD
    assert schedule[0]["prior_year_balance"] == pytest.approx(400_000 * 1.05 ** 3)
    assert schedule[0]["rmd_amount"] == pytest.approx(schedule[0]["prior_year_balance"] / 26.5)
    assert schedule[-1]["cumulative_rmd"] == pytest.approx(sum(r["rmd_amount"] for r in schedule))


@pytest.mark.parametrize("birth_year", [1940, 1951, 1959])
def test_start_age_reason_names_pre_1960_cohort(birth_year):
    age, reason = rmd.get_rmd_start_age(birth_year)
    assert age == 73
    assert reason == "Born before 1960: RMDs begin at age 73"

"""Tests for MAGI, IRMAA tiers and the two-year lookback."""

import math

import pytest

from drawdown.engine import irmaa_engine as irmaa
from drawdown.models import IrmaaBracket, PlanValidationError
from drawdown.utils.tax_utils import validate_irmaa_brackets

MFJ = "married_filing_jointly"
STANDARD_ANNUAL = (202.90 + 35.00) * 12


def test_magi_adds_back_tax_exempt_interest():
    magi = irmaa.calculate_magi(
        social_security_income=40_000,
        pension_income=20_000,
        rmd_amount=30_000,
        investment_income=5_000,
        tax_exempt_interest=10_000,
    )
    assert magi == pytest.approx(34_000 + 20_000 + 30_000 + 5_000 + 10_000)


@pytest.mark.parametrize(
    "magi,label",
    [
        (0, "Standard"),
        (217_999, "Standard"),
        (218_000, "Tier 1"),
        (300_000, "Tier 2"),
        (749_999, "Tier 4"),
        (10_000_000, "Tier 5 (Max)"),
    ],
)
def test_find_bracket_joint(magi, label):
    assert irmaa.find_irmaa_bracket(magi, MFJ).label == label


def test_calculate_irmaa_standard_and_tier1():
    std = irmaa.calculate_irmaa(100_000, "single")
    assert std.annual_premium == pytest.approx(STANDARD_ANNUAL)
    assert std.surcharge_amount == pytest.approx(0.0)
    assert not std.is_above_standard

    tier1 = irmaa.calculate_irmaa(120_000, "single")
    assert tier1.monthly_part_d == pytest.approx(48.70)
    assert tier1.annual_premium == pytest.approx((284.10 + 48.70) * 12)
    assert tier1.surcharge_amount == pytest.approx((284.10 + 48.70) * 12 - STANDARD_ANNUAL)
    assert tier1.is_above_standard


def test_next_threshold():
    nxt = irmaa.get_next_irmaa_threshold(200_000, MFJ)
    assert nxt.threshold == 218_000
    assert nxt.headroom == pytest.approx(18_000)
    assert nxt.next_bracket_label == "Tier 1"
    assert irmaa.get_next_irmaa_threshold(1_000_000, MFJ) is None


def test_bracket_change():
    change = irmaa.check_irmaa_bracket_change(200_000, 30_000, MFJ)
    assert change.previous_bracket.label == "Standard"
    assert change.new_bracket.label == "Tier 1"
    assert change.magi_threshold_exceeded == 218_000
    assert change.trigger_amount == pytest.approx(12_000)
    assert change.annual_premium_increase == pytest.approx((284.10 + 13.70 - 202.90) * 12)
    assert irmaa.check_irmaa_bracket_change(100_000, 10_000, MFJ) is None


def test_cliff_warning_on_crossing():
    warning = irmaa.check_irmaa_cliff(200_000, 30_000, MFJ)
    assert warning is not None
    assert warning.next_bracket == "Tier 1"
    assert warning.annual_premium_increase > 0


def test_headroom_warning_without_crossing():
    """Close to the next tier still warns, even though no tier changes."""
    warning = irmaa.check_irmaa_cliff(200_000, 0.0, MFJ)
    assert warning is not None
    assert warning.headroom == pytest.approx(18_000)
    assert warning.annual_premium_increase == 0.0
    assert irmaa.check_irmaa_cliff(150_000, 10_000, MFJ) is None
    # Threshold is configurable
    assert irmaa.check_irmaa_cliff(200_000, 0.0, MFJ, warning_threshold=10_000) is None


def test_lookback_is_exactly_two_years():
    """A single high-MAGI year only shows up in the premium year two years later."""
    history = {2024: 0.0, 2025: 0.0, 2026: 500_000.0, 2027: 0.0, 2028: 0.0}
    results = {y: irmaa.determine_irmaa(y, history, MFJ) for y in range(2027, 2031)}

    assert results[2028].lookback_year == 2026
    assert results[2028].surcharge > 0
    assert results[2028].crossed_cliff
    for year in (2027, 2029, 2030):
        assert results[year].surcharge == pytest.approx(0.0)


def test_missing_history_counts_as_zero():
    det = irmaa.determine_irmaa(2030, {}, MFJ)
    assert det.magi == 0.0
    assert det.bracket.label == "Standard"
    assert not det.crossed_cliff


def test_determination_scales_with_persons_covered():
    history = {2026: 300_000.0}
    one = irmaa.determine_irmaa(2028, history, MFJ, persons_covered=1)
    two = irmaa.determine_irmaa(2028, history, MFJ, persons_covered=2)
    assert two.surcharge == pytest.approx(2 * one.surcharge)
    assert two.annual_premium == pytest.approx(2 * one.annual_premium)


def test_safe_conversion_limit():
    assert irmaa.irmaa_safe_conversion_limit(200_000, MFJ) == pytest.approx(17_000)
    assert irmaa.irmaa_safe_conversion_limit(217_500, MFJ) == 0.0
    assert math.isinf(irmaa.irmaa_safe_conversion_limit(1_000_000, MFJ))


def _tiers(**last_overrides):
    last = dict(single_min=100_000, single_max=math.inf, joint_min=200_000, joint_max=math.inf,
                part_b_monthly=300.0, part_d_surcharge=20.0, label="Tier 1")
    last.update(last_overrides)
    return [
        IrmaaBracket(0, 100_000, 0, 200_000, 202.90, 0.0, "Standard"),
        IrmaaBracket(**last),
    ]


@pytest.mark.parametrize(
    "overrides",
    [
        {"joint_min": 210_000},             # gap in the joint bounds
        {"single_min": 90_000},             # overlap in the single bounds
        {"joint_max": 500_000},             # bounded top tier
    ],
)
def test_supplied_tiers_are_validated(overrides):
    tiers = _tiers(**overrides)
    with pytest.raises(PlanValidationError):
        validate_irmaa_brackets(tiers)
    with pytest.raises(PlanValidationError):
        irmaa.find_irmaa_bracket(150_000, MFJ, brackets=tiers)
    with pytest.raises(PlanValidationError):
        irmaa.get_next_irmaa_threshold(150_000, MFJ, brackets=tiers)
    with pytest.raises(PlanValidationError):
        irmaa.determine_irmaa(2026, {2024: 150_000}, MFJ, brackets=tiers)


def test_supplied_tiers_are_used():
    tiers = _tiers()
    assert validate_irmaa_brackets(tiers) is tiers
    assert irmaa.find_irmaa_bracket(250_000, MFJ, brackets=tiers).label == "Tier 1"
    assert irmaa.find_irmaa_bracket(150_000, "single", brackets=tiers).label == "Tier 1"
    nxt = irmaa.get_next_irmaa_threshold(150_000, MFJ, brackets=tiers)
    assert nxt.threshold == 200_000
    with pytest.raises(PlanValidationError):
        validate_irmaa_brackets([])

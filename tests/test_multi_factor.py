"""
tests/test_multi_factor.py
==========================
Invariant tests for the multi-factor correlator:
  1. Factor weights sum to 100; a bad weight set fails loudly.
  2. A factor without 3 samples scores a neutral 50 "Insufficient data";
     a factor that blows up scores 50 "Analysis failed". Neither fails the cycle.
  3. A one-way run in a stable market is FAKE_DROP (+20) / FAKE_RISE (−15).
  4. Overall score is the weighted mean; direction thresholds 60 / 40.
  5. Same snapshot in → same signal out.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from venuewatch.errors import InvariantViolation
from venuewatch.strategy import engine_config as cfg
from venuewatch.strategy.multi_factor import (
    WEIGHTS,
    Direction,
    FactorName,
    FactorScore,
    ManipulationType,
    MultiFactorCorrelator,
    correlation,
    tick_run,
)
from venuewatch.strategy.tick_history import TickHistory

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _snapshot(prices, refs=None, step=10):
    h = TickHistory()
    for i, p in enumerate(prices):
        h.record_asset_price(p, T0 + timedelta(seconds=i * step))
    for name, values in (refs or {}).items():
        for i, v in enumerate(values):
            h.record_reference(name, v, T0 + timedelta(seconds=i * step))
    return h.snapshot(now=T0 + timedelta(seconds=max(len(prices) - 1, 0) * step))


def _correlator():
    return MultiFactorCorrelator("spot", "haven", "fx")


def _factor(name, score, direction=Direction.NEUTRAL):
    return FactorScore(name, score, direction, WEIGHTS[name], "")


FLAT_REFS = {"spot": [2000.0, 2000.0, 2000.0], "haven": [50.0, 50.0, 50.0]}


# ─────────────────────────────────────────────────────────────────────────────
# 1.  Weights
# ─────────────────────────────────────────────────────────────────────────────

class TestWeights:

    def test_weights_sum_to_100(self):
        assert sum(WEIGHTS.values()) == 100
        assert WEIGHTS[FactorName.PRIMARY_CORRELATION] == 35
        assert WEIGHTS[FactorName.SECONDARY_CORRELATION] == 20
        assert WEIGHTS[FactorName.CURRENCY_IMPACT] == 25
        assert WEIGHTS[FactorName.MANIPULATION] == 20

    def test_bad_weight_config_rejected(self):
        with pytest.raises(InvariantViolation):
            cfg.check_weights({"A": 50, "B": 40})

    def test_combine_refuses_partial_factor_set(self):
        factors = [_factor(FactorName.PRIMARY_CORRELATION, 50), _factor(FactorName.MANIPULATION, 50)]
        with pytest.raises(InvariantViolation):
            MultiFactorCorrelator.combine(factors)


# ─────────────────────────────────────────────────────────────────────────────
# 2.  Degraded inputs
# ─────────────────────────────────────────────────────────────────────────────

class TestDegradedInputs:

    def test_insufficient_data_is_neutral(self):
        signal = _correlator().analyze(_snapshot([100.0, 99.0]))
        assert [f.score for f in signal.factors] == [50.0, 50.0, 50.0, 50.0]
        assert all(f.description == "Insufficient data" for f in signal.factors)
        assert signal.overall_score == 50
        assert signal.market_direction == Direction.NEUTRAL
        assert signal.manipulation_type == ManipulationType.NONE
        assert signal.confidence_boost == 0

    def test_zero_reference_price_is_analysis_failed(self):
        snap = _snapshot([100.0, 100.1, 100.2], refs={"spot": [0.0, 1.0, 2.0]})
        signal = _correlator().analyze(snap)
        primary = signal.factor(FactorName.PRIMARY_CORRELATION)
        assert primary.score == 50
        assert primary.description == "Analysis failed"

    def test_factors_use_only_the_lookback_window(self):
        h = TickHistory()
        h.record_reference("spot", 1000.0, T0 - timedelta(minutes=30))
        for i, v in enumerate([2000.0, 2000.0, 2000.0]):
            h.record_reference("spot", v, T0 + timedelta(seconds=i * 10))
        for i, p in enumerate([100.0, 100.0, 100.0]):
            h.record_asset_price(p, T0 + timedelta(seconds=i * 10))
        signal = _correlator().analyze(h.snapshot(now=T0 + timedelta(seconds=20)))
        # the stale 1000 would read as a +100% move
        assert signal.factor(FactorName.PRIMARY_CORRELATION).direction == Direction.NEUTRAL


# ─────────────────────────────────────────────────────────────────────────────
# 3.  Manipulation
# ─────────────────────────────────────────────────────────────────────────────

class TestManipulation:

    def test_drop_run_in_stable_market_is_fake_drop(self):
        signal = _correlator().analyze(_snapshot([100.0, 99.8, 99.6, 99.4, 99.2], refs=FLAT_REFS))
        manip = signal.factor(FactorName.MANIPULATION)
        assert signal.manipulation_type == ManipulationType.FAKE_DROP
        assert signal.is_manipulated
        assert manip.score == 80
        assert manip.direction == Direction.BULLISH
        assert signal.confidence_boost == 20
        assert signal.overall_score == pytest.approx((50 * 35 + 50 * 20 + 50 * 25 + 80 * 20) / 100)

    def test_rise_run_in_stable_market_is_fake_rise(self):
        signal = _correlator().analyze(_snapshot([100.0, 100.2, 100.4, 100.6, 100.8], refs=FLAT_REFS))
        assert signal.manipulation_type == ManipulationType.FAKE_RISE
        assert signal.factor(FactorName.MANIPULATION).score == 25
        assert signal.confidence_boost == -15

    def test_single_large_drop_counts_as_fake_drop(self):
        signal = _correlator().analyze(_snapshot([100.0, 100.0, 99.5], refs=FLAT_REFS))
        assert signal.manipulation_type == ManipulationType.FAKE_DROP
        assert signal.factor(FactorName.MANIPULATION).score == 70
        assert signal.is_manipulated

    def test_drop_run_with_reference_falling_is_not_manipulation(self):
        refs = {"spot": [2000.0, 1995.0, 1990.0], "haven": [50.0, 50.0, 50.0]}
        signal = _correlator().analyze(_snapshot([100.0, 99.8, 99.6, 99.4, 99.2], refs=refs))
        assert signal.factor(FactorName.PRIMARY_CORRELATION).direction == Direction.BEARISH
        assert signal.manipulation_type == ManipulationType.NONE
        assert signal.confidence_boost == 0

    def test_tick_run_skips_noise_and_stops_on_reversal(self):
        snap = _snapshot([100.0, 100.5, 100.3, 100.28, 100.1, 99.9])
        # newest first: −0.2, −0.18, −0.02 (noise), −0.2, +0.5
        assert tick_run(snap.asset_ticks) == (3, 0)


# ─────────────────────────────────────────────────────────────────────────────
# 4.  Scoring
# ─────────────────────────────────────────────────────────────────────────────

class TestScoring:

    def test_asset_following_rising_reference_is_bullish(self):
        refs = {"spot": [2000.0, 2005.0, 2010.0]}
        signal = _correlator().analyze(_snapshot([100.0, 100.25, 100.5], refs=refs))
        primary = signal.factor(FactorName.PRIMARY_CORRELATION)
        assert primary.direction == Direction.BULLISH
        assert primary.score == pytest.approx(100.0)

    def test_asset_diverging_from_rising_reference(self):
        refs = {"spot": [2000.0, 2005.0, 2010.0]}
        signal = _correlator().analyze(_snapshot([100.0, 99.9, 99.8], refs=refs))
        assert signal.factor(FactorName.PRIMARY_CORRELATION).score == 30

    def test_currency_move_flags_currency_driven(self):
        refs = {**FLAT_REFS, "fx": [1300.0, 1302.0, 1304.0]}
        signal = _correlator().analyze(_snapshot([100.0, 100.2, 100.3], refs=refs))
        currency = signal.factor(FactorName.CURRENCY_IMPACT)
        assert currency.score == 70
        assert currency.direction == Direction.BULLISH
        assert signal.currency_driven is True

    @pytest.mark.parametrize("score, expected", [
        (70, Direction.BULLISH),
        (60, Direction.BULLISH),
        (50, Direction.NEUTRAL),
        (40, Direction.BEARISH),
        (20, Direction.BEARISH),
    ])
    def test_direction_thresholds(self, score, expected):
        factors = [_factor(name, score) for name in FactorName]
        signal = MultiFactorCorrelator.combine(factors)
        assert signal.overall_score == pytest.approx(score)
        assert signal.market_direction == expected

    def test_correlation_ratio(self):
        assert correlation(0.5, 1.0) == pytest.approx(0.5)
        assert correlation(-0.5, 1.0) == pytest.approx(-0.5)
        assert correlation(0.001, 1.0) == 0.0

    def test_scores_stay_in_range(self):
        snap = _snapshot([100.0, 90.0, 80.0, 70.0], refs={"spot": [10.0, 20.0, 40.0], "fx": [1.0, 0.5, 0.2]})
        signal = _correlator().analyze(snap)
        assert 0 <= signal.overall_score <= 100
        assert all(0 <= f.score <= 100 for f in signal.factors)

    def test_same_snapshot_same_signal(self):
        snap = _snapshot([100.0, 99.8, 99.6, 99.4, 99.2], refs=FLAT_REFS)
        correlator = _correlator()
        assert correlator.analyze(snap).to_dict() == correlator.analyze(snap).to_dict()

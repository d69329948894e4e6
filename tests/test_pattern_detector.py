"""
tests/test_pattern_detector.py
==============================
Invariant tests for the pattern detector:
  1. Fewer than 3 ticks → nothing detected, confidence 0, HOLD.
  2. Each shape fires on its textbook sequence with the documented confidence.
  3. DROP_BOTTOM is suppressed when a rise interrupts the drop run.
  4. Overall confidence = 0.7 × strongest + 0.3 × mean; everything stays in 0–100.
  5. Every pattern type is covered by a suggestion rule; the rule table is ordered.
  6. Same snapshot in → same analysis out.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from venuewatch.errors import InvariantViolation
from venuewatch.strategy.pattern_detector import (
    SUGGESTION_RULES,
    Action,
    PatternDetector,
    PatternType,
    check_rule_coverage,
    suggest,
)
from venuewatch.strategy.tick_history import TickHistory

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _snapshot(prices, step=10, refs=None):
    """prices oldest → newest, one tick every `step` seconds."""
    h = TickHistory()
    for i, p in enumerate(prices):
        h.record_asset_price(p, T0 + timedelta(seconds=i * step))
    for name, values in (refs or {}).items():
        for i, v in enumerate(values):
            h.record_reference(name, v, T0 + timedelta(seconds=i * step))
    return h.snapshot(now=T0 + timedelta(seconds=(len(prices) - 1) * step))


def _detector():
    return PatternDetector(primary_reference="spot")


# ─────────────────────────────────────────────────────────────────────────────
# 1.  Not enough data
# ─────────────────────────────────────────────────────────────────────────────

class TestInsufficientTicks:

    @pytest.mark.parametrize("prices", [[], [100.0], [100.0, 101.0]])
    def test_under_three_ticks_holds(self, prices):
        result = _detector().analyze(_snapshot(prices))
        assert result.detected is False
        assert result.overall_confidence == 0
        assert result.suggestion == Action.HOLD
        assert result.patterns == []

    def test_flat_market_reports_small_baseline(self):
        """No shape on a flat line → min(n × 3, 25), HOLD."""
        result = _detector().analyze(_snapshot([100.0] * 5))
        assert result.detected is False
        assert result.overall_confidence == 15
        assert result.suggestion == Action.HOLD

    def test_baseline_caps_at_25(self):
        result = _detector().analyze(_snapshot([100.0] * 20))
        assert result.overall_confidence == 25


# ─────────────────────────────────────────────────────────────────────────────
# 2.  Shapes
# ─────────────────────────────────────────────────────────────────────────────

class TestRun:

    def test_run_length_counts_newest_same_sign_deltas(self):
        snap = _snapshot([100.0, 100.5, 100.4, 100.3, 100.2])
        count, magnitude, sign = PatternDetector.run_length(snap.asset_ticks)
        assert count == 3
        assert sign == -1
        assert magnitude == pytest.approx(0.3)

    def test_three_drops_is_multi_bearish_sell(self):
        result = _detector().analyze(_snapshot([100.0, 100.5, 100.4, 100.3, 100.2]))
        assert result.types == frozenset({PatternType.MULTI_BEARISH})
        assert result.confidence_of(PatternType.MULTI_BEARISH) == pytest.approx(86.5)
        assert result.suggestion == Action.SELL
        # single pattern → overall equals its confidence
        assert result.overall_confidence == pytest.approx(86.5)

    def test_rising_run_is_multi_bullish_hold(self):
        result = _detector().analyze(_snapshot([99.8, 99.9, 100.0, 100.1]))
        assert result.has(PatternType.MULTI_BULLISH)
        assert result.suggestion == Action.HOLD


class TestShock:

    def test_single_tick_drop_over_threshold(self):
        result = _detector().analyze(_snapshot([100.0, 100.0, 100.0, 99.5]))
        assert result.has(PatternType.SUDDEN_DROP)
        assert result.confidence_of(PatternType.SUDDEN_DROP) == pytest.approx(40 + 0.5 * 30)
        assert result.suggestion == Action.HOLD

    def test_small_move_is_not_a_shock(self):
        result = _detector().analyze(_snapshot([100.0, 100.0, 100.0, 99.9]))
        assert not result.has(PatternType.SUDDEN_DROP)


class TestDivergence:

    def test_asset_moves_alone_is_manipulation(self):
        """Asset −0.8% while the reference holds −0.05% → MANIPULATION at 68."""
        snap = _snapshot(
            [100.0, 99.8, 99.6, 99.4, 99.2],
            refs={"spot": [2000.0, 1999.5, 1999.0]},
        )
        result = _detector().analyze(snap)
        assert result.confidence_of(PatternType.MANIPULATION) == pytest.approx(68.0)
        assert result.has(PatternType.MULTI_BEARISH)
        # bearish run inside a manipulation → wait, don't sell
        assert result.suggestion == Action.HOLD

    def test_asset_following_reference_is_market_driven(self):
        snap = _snapshot(
            [100.0, 100.1, 100.05, 100.2, 100.3],
            refs={"spot": [2000.0, 2005.0, 2010.0]},
        )
        result = _detector().analyze(snap)
        assert result.confidence_of(PatternType.MARKET_DRIVEN) == 60
        assert not result.has(PatternType.MANIPULATION)

    def test_missing_reference_skips_divergence_only(self):
        snap = _snapshot([100.0, 100.5, 100.4, 100.3, 100.2], refs={"spot": [2000.0]})
        result = _detector().analyze(snap)
        assert not result.has(PatternType.MANIPULATION)
        assert result.has(PatternType.MULTI_BEARISH)


class TestRecovery:

    def test_recovered_more_than_half_is_buy(self):
        result = _detector().analyze(_snapshot([101.0, 99.0, 100.0, 100.5]))
        assert result.confidence_of(PatternType.RECOVERY) == pytest.approx(72.5)
        assert result.suggestion == Action.BUY

    def test_shallow_recovery_ignored(self):
        result = _detector().analyze(_snapshot([101.0, 99.0, 99.4, 99.8]))
        assert not result.has(PatternType.RECOVERY)


class TestDropBottom:

    PRICES = [100.4, 100.0, 99.5, 98.9, 99.2]

    def test_bounce_after_three_drops(self):
        result = _detector().analyze(_snapshot(self.PRICES))
        assert result.confidence_of(PatternType.DROP_BOTTOM) == pytest.approx(87.3, abs=0.01)
        assert result.suggestion == Action.BUY

    def test_rise_inside_the_drops_suppresses_it(self):
        result = _detector().analyze(_snapshot([100.4, 100.0, 100.1, 98.9, 99.2]))
        assert not result.has(PatternType.DROP_BOTTOM)

    def test_no_bounce_no_bottom(self):
        result = _detector().analyze(_snapshot([100.4, 100.0, 99.5, 98.9, 98.8]))
        assert not result.has(PatternType.DROP_BOTTOM)


# ─────────────────────────────────────────────────────────────────────────────
# 3.  Aggregation
# ─────────────────────────────────────────────────────────────────────────────

class TestAggregation:

    SCENARIOS = [
        [100.4, 100.0, 99.5, 98.9, 99.2],
        [100.0, 100.5, 100.4, 100.3, 100.2],
        [101.0, 99.0, 100.0, 100.5],
        [100.0, 90.0, 80.0, 70.0, 120.0],
    ]

    @pytest.mark.parametrize("prices", SCENARIOS)
    def test_overall_blends_max_and_mean(self, prices):
        result = _detector().analyze(_snapshot(prices))
        confidences = [p.confidence for p in result.patterns]
        expected = max(confidences) * 0.7 + sum(confidences) / len(confidences) * 0.3
        assert result.overall_confidence == pytest.approx(expected)

    @pytest.mark.parametrize("prices", SCENARIOS)
    def test_confidences_within_bounds(self, prices):
        result = _detector().analyze(_snapshot(prices))
        assert 0 <= result.overall_confidence <= 100
        assert all(0 <= p.confidence <= 100 for p in result.patterns)

    def test_patterns_sorted_strongest_first(self):
        result = _detector().analyze(_snapshot([100.4, 100.0, 99.5, 98.9, 99.2]))
        confidences = [p.confidence for p in result.patterns]
        assert confidences == sorted(confidences, reverse=True)

    def test_same_snapshot_same_result(self):
        snap = _snapshot([100.4, 100.0, 99.5, 98.9, 99.2], refs={"spot": [2000.0, 2000.0, 2000.0]})
        detector = _detector()
        assert detector.analyze(snap).to_dict() == detector.analyze(snap).to_dict()

    def test_window_ignores_ticks_older_than_ten_minutes(self):
        # one stale crash 20 minutes back, then a flat line
        prices = [50.0] + [100.0] * 5
        h = TickHistory()
        h.record_asset_price(prices[0], T0 - timedelta(minutes=20))
        for i, p in enumerate(prices[1:]):
            h.record_asset_price(p, T0 + timedelta(seconds=i * 10))
        result = _detector().analyze(h.snapshot(now=T0 + timedelta(seconds=40)))
        assert result.tick_count == 5
        assert result.detected is False


# ─────────────────────────────────────────────────────────────────────────────
# 4.  Suggestion rules
# ─────────────────────────────────────────────────────────────────────────────

class TestSuggestionRules:

    def test_every_type_has_a_rule(self):
        check_rule_coverage()

    def test_missing_rule_is_an_invariant_violation(self):
        trimmed = tuple(r for r in SUGGESTION_RULES if PatternType.MARKET_DRIVEN not in r[0])
        with pytest.raises(InvariantViolation):
            check_rule_coverage(trimmed)

    @pytest.mark.parametrize("types, expected", [
        ({PatternType.DROP_BOTTOM, PatternType.MULTI_BEARISH},  Action.BUY),
        ({PatternType.RECOVERY, PatternType.SUDDEN_SPIKE},      Action.BUY),
        ({PatternType.MULTI_BEARISH},                           Action.SELL),
        ({PatternType.MULTI_BEARISH, PatternType.MANIPULATION}, Action.HOLD),
        ({PatternType.SUDDEN_SPIKE, PatternType.MULTI_BULLISH}, Action.SELL),
        ({PatternType.MULTI_BULLISH},                           Action.HOLD),
        ({PatternType.SUDDEN_DROP},                             Action.HOLD),
        ({PatternType.MARKET_DRIVEN},                           Action.HOLD),
        (set(),                                                 Action.HOLD),
    ])
    def test_first_matching_rule_wins(self, types, expected):
        assert suggest(frozenset(types)) == expected

"""
Pattern Detector

Scans the last ten minutes of asset ticks for short-term price shapes:

  1. Consecutive-move run     MULTI_BEARISH / MULTI_BULLISH
  2. Single-tick shock        SUDDEN_DROP / SUDDEN_SPIKE
  3. Cross-venue divergence   MANIPULATION / MARKET_DRIVEN
  4. Recovery                 RECOVERY
  5. Bottom reversal          DROP_BOTTOM

Each shape carries its own confidence (0–100). The overall confidence blends
the strongest shape with the average of all of them, and an ordered rule
table turns the set of shapes into a BUY / SELL / HOLD suggestion.

A pattern is NOT an order. The decision gate decides whether it is worth
acting on once the multi-factor correlator has had its say.

The detector is stateless: the same snapshot always yields the same analysis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from . import engine_config as cfg
from ..errors import DataInsufficientError, InvariantViolation
from .tick_history import MarketSnapshot, PriceTick

logger = logging.getLogger(__name__)


class Action(Enum):
    BUY  = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PatternType(Enum):
    MULTI_BEARISH = "MULTI_BEARISH"
    MULTI_BULLISH = "MULTI_BULLISH"
    SUDDEN_DROP   = "SUDDEN_DROP"
    SUDDEN_SPIKE  = "SUDDEN_SPIKE"
    MANIPULATION  = "MANIPULATION"
    MARKET_DRIVEN = "MARKET_DRIVEN"
    RECOVERY      = "RECOVERY"
    DROP_BOTTOM   = "DROP_BOTTOM"


@dataclass(frozen=True)
class DetectedPattern:
    type:        PatternType
    confidence:  float          # 0–100
    description: str

    def to_dict(self) -> dict:
        return {
            "type":        self.type.value,
            "confidence":  round(self.confidence, 2),
            "description": self.description,
        }


@dataclass
class PatternAnalysis:
    detected:           bool
    overall_confidence: float
    suggestion:         Action
    patterns:           List[DetectedPattern] = field(default_factory=list)
    tick_count:         int = 0

    @property
    def types(self) -> FrozenSet[PatternType]:
        return frozenset(p.type for p in self.patterns)

    def has(self, pattern_type: PatternType) -> bool:
        return pattern_type in self.types

    def confidence_of(self, pattern_type: PatternType) -> Optional[float]:
        for p in self.patterns:
            if p.type == pattern_type:
                return p.confidence
        return None

    def to_dict(self) -> dict:
        return {
            "detected":           self.detected,
            "overall_confidence": round(self.overall_confidence, 2),
            "suggestion":         self.suggestion.value,
            "patterns":           [p.to_dict() for p in self.patterns],
            "tick_count":         self.tick_count,
        }


# ── Suggestion rules ───────────────────────────────────────────────────────
# (requires, excludes, suggestion). First match wins; nothing matched → HOLD.
# MARKET_DRIVEN and a lone SUDDEN_DROP are listed so every type has a rule.

_P = PatternType

SUGGESTION_RULES: Tuple[Tuple[FrozenSet[PatternType], FrozenSet[PatternType], Action], ...] = (
    (frozenset({_P.DROP_BOTTOM}),                     frozenset(),                  Action.BUY),
    (frozenset({_P.RECOVERY}),                        frozenset(),                  Action.BUY),
    (frozenset({_P.MULTI_BEARISH}),                   frozenset({_P.MANIPULATION}), Action.SELL),
    (frozenset({_P.MULTI_BEARISH, _P.MANIPULATION}),  frozenset(),                  Action.HOLD),
    (frozenset({_P.SUDDEN_SPIKE}),                    frozenset(),                  Action.SELL),
    (frozenset({_P.MULTI_BULLISH}),                   frozenset(),                  Action.HOLD),
    (frozenset({_P.SUDDEN_DROP, _P.MANIPULATION}),    frozenset(),                  Action.HOLD),
    (frozenset({_P.SUDDEN_DROP}),                     frozenset(),                  Action.HOLD),
    (frozenset({_P.MARKET_DRIVEN}),                   frozenset(),                  Action.HOLD),
)


def check_rule_coverage(rules=SUGGESTION_RULES) -> None:
    covered = set()
    for requires, excludes, _ in rules:
        covered |= requires | excludes
    missing = set(PatternType) - covered
    if missing:
        raise InvariantViolation(
            f"pattern types without a suggestion rule: {sorted(m.value for m in missing)}"
        )


check_rule_coverage()


def suggest(types: FrozenSet[PatternType]) -> Action:
    for requires, excludes, action in SUGGESTION_RULES:
        if requires <= types and not (excludes & types):
            return action
    return Action.HOLD


def _pct(newest: float, oldest: float) -> float:
    if oldest == 0:
        raise DataInsufficientError("zero reference price")
    return (newest - oldest) / oldest * 100


class PatternDetector:
    """
    Detects short-term shapes in a MarketSnapshot.

    primary_reference is the instrument the divergence check compares against.
    """

    def __init__(self, primary_reference: Optional[str] = None):
        self.primary_reference = primary_reference or cfg.PRIMARY_REFERENCE

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def analyze(self, snapshot: MarketSnapshot) -> PatternAnalysis:
        ticks = snapshot.asset_window(cfg.PATTERN_LOOKBACK_MINUTES, cfg.PATTERN_MAX_TICKS)
        n = len(ticks)
        if n < cfg.PATTERN_MIN_TICKS:
            return PatternAnalysis(
                detected=False, overall_confidence=0.0, suggestion=Action.HOLD, tick_count=n,
            )

        patterns = self.detect_all(ticks, snapshot)
        if not patterns:
            return PatternAnalysis(
                detected=False,
                overall_confidence=float(min(n * 3, 25)),
                suggestion=Action.HOLD,
                tick_count=n,
            )

        confidences = np.array([p.confidence for p in patterns], dtype=float)
        overall = float(
            confidences.max() * cfg.OVERALL_MAX_WEIGHT + confidences.mean() * cfg.OVERALL_MEAN_WEIGHT
        )
        analysis = PatternAnalysis(
            detected=True,
            overall_confidence=overall,
            suggestion=suggest(frozenset(p.type for p in patterns)),
            patterns=patterns,
            tick_count=n,
        )
        logger.debug(
            f"patterns: {[p.type.value for p in patterns]} overall={overall:.1f} "
            f"→ {analysis.suggestion.value}"
        )
        return analysis

    def detect_all(
        self, ticks: Sequence[PriceTick], snapshot: Optional[MarketSnapshot] = None
    ) -> List[DetectedPattern]:
        """All shapes present in a newest-first window, sorted by confidence descending."""
        results: List[DetectedPattern] = []
        for detector in (
            self._detect_run,
            self._detect_shock,
            self._detect_recovery,
            self._detect_drop_bottom,
        ):
            try:
                found = detector(ticks)
            except DataInsufficientError:
                found = None
            if found is not None:
                results.append(found)
        if snapshot is not None:
            try:
                found = self._detect_divergence(ticks, snapshot)
            except DataInsufficientError:
                found = None
            if found is not None:
                results.append(found)
        results.sort(key=lambda p: p.confidence, reverse=True)
        return results

    # ------------------------------------------------------------------ #
    # Consecutive-move run
    # ------------------------------------------------------------------ #

    @staticmethod
    def run_length(ticks: Sequence[PriceTick]) -> Tuple[int, float, int]:
        """
        (count, total magnitude, sign) of the newest same-signed delta run.
        The oldest tick of the scanned slice is skipped: its delta points outside it.
        """
        scanned = ticks[:cfg.RUN_SCAN_TICKS]
        if len(scanned) < 2:
            return 0, 0.0, 0
        sign = int(np.sign(scanned[0].delta_from_prev))
        if sign == 0:
            return 0, 0.0, 0
        count, magnitude = 0, 0.0
        for tick in scanned[:-1]:
            if int(np.sign(tick.delta_from_prev)) != sign:
                break
            count += 1
            magnitude += abs(tick.delta_from_prev)
        return count, magnitude, sign

    def _detect_run(self, ticks: Sequence[PriceTick]) -> Optional[DetectedPattern]:
        count, magnitude, sign = self.run_length(ticks)
        if count < cfg.RUN_MIN_LENGTH:
            return None
        confidence = min(40 + count * 15 + magnitude * 5, 95)
        if sign < 0:
            return DetectedPattern(
                PatternType.MULTI_BEARISH, confidence,
                f"{count} consecutive drops totalling {magnitude:.2f}",
            )
        return DetectedPattern(
            PatternType.MULTI_BULLISH, confidence,
            f"{count} consecutive rises totalling {magnitude:.2f}",
        )

    # ------------------------------------------------------------------ #
    # Single-tick shock
    # ------------------------------------------------------------------ #

    def _detect_shock(self, ticks: Sequence[PriceTick]) -> Optional[DetectedPattern]:
        if len(ticks) < 2:
            raise DataInsufficientError("shock needs 2 ticks")
        newest = ticks[0]
        pct = abs(newest.percent_delta)
        if pct <= cfg.SHOCK_PERCENT:
            return None
        confidence = min(40 + pct * 30, 95)
        if newest.delta_from_prev < 0:
            return DetectedPattern(
                PatternType.SUDDEN_DROP, confidence, f"sudden drop of {pct:.2f}% in one tick",
            )
        return DetectedPattern(
            PatternType.SUDDEN_SPIKE, confidence, f"sudden spike of {pct:.2f}% in one tick",
        )

    # ------------------------------------------------------------------ #
    # Cross-venue divergence
    # ------------------------------------------------------------------ #

    def _detect_divergence(
        self, ticks: Sequence[PriceTick], snapshot: MarketSnapshot
    ) -> Optional[DetectedPattern]:
        oldest = ticks[-1]
        refs = snapshot.reference_window(self.primary_reference, since=oldest.timestamp)
        if len(refs) < 2:
            raise DataInsufficientError(f"divergence needs 2 {self.primary_reference} samples")

        asset_change = _pct(ticks[0].value, oldest.value)
        ref_change = _pct(refs[0].value, refs[-1].value)

        if abs(ref_change) < cfg.DIVERGENCE_REF_STABLE_PCT and abs(asset_change) > cfg.DIVERGENCE_ASSET_MOVED_PCT:
            return DetectedPattern(
                PatternType.MANIPULATION,
                min(60 + abs(asset_change) * 10, 95),
                f"asset moved {asset_change:+.2f}% while {self.primary_reference} "
                f"held {ref_change:+.2f}%",
            )
        if abs(ref_change) > cfg.DIVERGENCE_REF_STABLE_PCT and np.sign(ref_change) == np.sign(asset_change):
            return DetectedPattern(
                PatternType.MARKET_DRIVEN,
                cfg.MARKET_DRIVEN_CONFIDENCE,
                f"asset {asset_change:+.2f}% following {self.primary_reference} {ref_change:+.2f}%",
            )
        return None

    # ------------------------------------------------------------------ #
    # Recovery
    # ------------------------------------------------------------------ #

    def _detect_recovery(self, ticks: Sequence[PriceTick]) -> Optional[DetectedPattern]:
        if len(ticks) < 4:
            raise DataInsufficientError("recovery needs 4 ticks")
        p0, p1, p2, p3 = (t.value for t in ticks[:4])
        if not (p3 > p2 and p2 < p1 and p1 < p0):
            return None
        recovered = (p0 - p2) / (p3 - p2) * 100
        if recovered <= cfg.RECOVERY_MIN_PERCENT:
            return None
        return DetectedPattern(
            PatternType.RECOVERY,
            min(50 + recovered * 0.3, 85),
            f"recovered {recovered:.0f}% of the drop",
        )

    # ------------------------------------------------------------------ #
    # Bottom reversal
    # ------------------------------------------------------------------ #

    def _detect_drop_bottom(self, ticks: Sequence[PriceTick]) -> Optional[DetectedPattern]:
        if len(ticks) < 4:
            raise DataInsufficientError("bottom reversal needs 4 ticks")
        if ticks[0].delta_from_prev <= 0:
            return None

        drops = 0
        for tick in ticks[1:min(len(ticks), cfg.DROP_BOTTOM_SCAN_TICKS)]:
            if tick.delta_from_prev < 0:
                drops += 1
            else:
                break
        if drops < cfg.DROP_BOTTOM_MIN_DROPS:
            return None

        values = [t.value for t in ticks[:4]]
        peak = max(values[1:4])
        total_drop = (peak - min(values)) / peak * 100 if peak else 0.0
        return DetectedPattern(
            PatternType.DROP_BOTTOM,
            min(60 + drops * 8 + total_drop * 3, 95),
            f"bounce after {drops} drops ({total_drop:.2f}% down)",
        )

"""
Multi-Factor Correlator

Scores the asset's recent move against independent reference instruments to
tell organic market movement from a move made on one venue only:

  1. Primary Correlation    (35)  the global spot reference
  2. Secondary Correlation  (20)  the safe-haven reference
  3. Currency Impact        (25)  the quote-currency exchange rate
  4. Manipulation           (20)  one-way tick runs in a stable market

Overall score = Σ(score × weight) / Σ weight, 0–100.

Each factor reads its own 15-minute window and needs 3 samples; with fewer
it scores a neutral 50 and notes "Insufficient data". A factor that blows up
on bad numbers scores 50 "Analysis failed". Neither case fails the cycle.

Pure function of the snapshot. Run it as often as you like.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from . import engine_config as cfg
from ..errors import DataInsufficientError, InvariantViolation
from .tick_history import MarketSnapshot, PriceTick

logger = logging.getLogger(__name__)


class FactorName(Enum):
    PRIMARY_CORRELATION   = "PRIMARY_CORRELATION"
    SECONDARY_CORRELATION = "SECONDARY_CORRELATION"
    CURRENCY_IMPACT       = "CURRENCY_IMPACT"
    MANIPULATION          = "MANIPULATION"


class Direction(Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class ManipulationType(Enum):
    FAKE_DROP = "FAKE_DROP"
    FAKE_RISE = "FAKE_RISE"
    NONE      = "NONE"


# ── Result ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FactorScore:
    factor:      FactorName
    score:       float        # 0–100
    direction:   Direction
    weight:      int
    description: str

    def to_dict(self) -> dict:
        return {
            "factor":      self.factor.value,
            "score":       round(self.score, 2),
            "direction":   self.direction.value,
            "weight":      self.weight,
            "description": self.description,
        }


@dataclass
class CombinedSignal:
    overall_score:     float
    market_direction:  Direction
    manipulation_type: ManipulationType
    confidence_boost:  float
    factors:           List[FactorScore] = field(default_factory=list)
    currency_driven:   bool = False

    @property
    def is_manipulated(self) -> bool:
        return self.manipulation_type != ManipulationType.NONE

    def factor(self, name: FactorName) -> Optional[FactorScore]:
        for f in self.factors:
            if f.factor == name:
                return f
        return None

    def to_dict(self) -> dict:
        return {
            "overall_score":     round(self.overall_score, 2),
            "market_direction":  self.market_direction.value,
            "is_manipulated":    self.is_manipulated,
            "manipulation_type": self.manipulation_type.value,
            "confidence_boost":  self.confidence_boost,
            "currency_driven":   self.currency_driven,
            "factors":           [f.to_dict() for f in self.factors],
        }


WEIGHTS: Dict[FactorName, int] = {
    FactorName(name): weight for name, weight in cfg.factor_weights().items()
}


# ── Helpers ────────────────────────────────────────────────────────────────

def pct_change(values: Sequence[float]) -> float:
    """Percent change newest vs oldest of a newest-first series."""
    if len(values) < cfg.FACTOR_MIN_SAMPLES:
        raise DataInsufficientError(f"{len(values)} samples < {cfg.FACTOR_MIN_SAMPLES}")
    oldest = values[-1]
    if oldest == 0:
        raise ZeroDivisionError("oldest sample is zero")
    return (values[0] - oldest) / oldest * 100


def correlation(a: float, b: float) -> float:
    """
    Ratio of the smaller to the larger move, positive when both move the same
    way. 0 when either move is too small to mean anything.
    """
    if abs(a) < cfg.CORRELATION_MIN_CHANGE_PCT or abs(b) < cfg.CORRELATION_MIN_CHANGE_PCT:
        return 0.0
    ratio = min(abs(a), abs(b)) / max(abs(a), abs(b))
    return ratio if (a > 0) == (b > 0) else -ratio


def _same_sign(a: float, b: float) -> bool:
    return (a > 0 and b > 0) or (a < 0 and b < 0)


def _neutral(factor: FactorName, note: str) -> FactorScore:
    return FactorScore(factor, 50.0, Direction.NEUTRAL, WEIGHTS[factor], note)


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


# ── Factor scorers ─────────────────────────────────────────────────────────

def _primary_score(asset_change: float, ref_change: float) -> Tuple[float, Direction, str]:
    corr = correlation(asset_change, ref_change)
    if ref_change > cfg.PRIMARY_MOVE_PCT:
        if asset_change > 0:
            return 70 + corr * 30, Direction.BULLISH, f"reference up {ref_change:+.2f}%, asset follows (corr {corr:.2f})"
        return 30.0, Direction.BULLISH, f"reference up {ref_change:+.2f}%, asset diverges {asset_change:+.2f}%"
    if ref_change < -cfg.PRIMARY_MOVE_PCT:
        if asset_change < 0:
            return 30.0, Direction.BEARISH, f"reference down {ref_change:+.2f}%, asset follows"
        return 60 + abs(corr) * 20, Direction.BEARISH, f"reference down {ref_change:+.2f}%, asset holds {asset_change:+.2f}%"
    return 50.0, Direction.NEUTRAL, f"reference flat {ref_change:+.2f}%"


def _secondary_score(asset_change: float, ref_change: float) -> Tuple[float, Direction, str]:
    follows = "follows" if _same_sign(asset_change, ref_change) else "diverges"
    if ref_change > cfg.SECONDARY_MOVE_PCT:
        return 75.0, Direction.BULLISH, f"safe haven up {ref_change:+.2f}%, asset {follows}"
    if ref_change < -cfg.SECONDARY_MOVE_PCT:
        return 30.0, Direction.BEARISH, f"safe haven down {ref_change:+.2f}%, asset {follows}"
    return 50.0, Direction.NEUTRAL, f"safe haven flat {ref_change:+.2f}%"


def _currency_score(asset_change: float, rate_change: float) -> Tuple[float, Direction, str, bool]:
    driven = (
        abs(rate_change) > cfg.CURRENCY_DRIVEN_PCT
        and abs(asset_change) > cfg.CURRENCY_DRIVEN_PCT
        and _same_sign(rate_change, asset_change)
    )
    suffix = " (currency-driven)" if driven else ""
    if rate_change > cfg.CURRENCY_MOVE_PCT:
        return 70.0, Direction.BULLISH, f"rate up {rate_change:+.2f}%{suffix}", driven
    if rate_change < -cfg.CURRENCY_MOVE_PCT:
        return 35.0, Direction.BEARISH, f"rate down {rate_change:+.2f}%{suffix}", driven
    return 50.0, Direction.NEUTRAL, f"rate flat {rate_change:+.2f}%{suffix}", driven


def tick_run(ticks: Sequence[PriceTick]) -> Tuple[int, int]:
    """
    (drops, rises) in the newest one-way run over the last ten ticks.
    Deltas inside the noise band are skipped; the first opposite move ends the run.
    """
    drops = rises = 0
    for tick in ticks[:cfg.MANIPULATION_SCAN_TICKS]:
        d = tick.delta_from_prev
        if abs(d) <= cfg.MANIPULATION_NOISE_DELTA:
            continue
        if d < 0:
            if rises:
                break
            drops += 1
        else:
            if drops:
                break
            rises += 1
    return drops, rises


def _manipulation_score(
    ticks: Sequence[PriceTick],
    asset_change: float,
    primary: FactorScore,
    secondary: FactorScore,
) -> Tuple[float, Direction, str, ManipulationType]:
    drops, rises = tick_run(ticks)
    stable = primary.direction == Direction.NEUTRAL and secondary.direction == Direction.NEUTRAL

    if stable and drops >= cfg.MANIPULATION_MIN_RUN:
        return 80.0, Direction.BULLISH, f"{drops} drops in a stable market, expect reversion", ManipulationType.FAKE_DROP
    if stable and rises >= cfg.MANIPULATION_MIN_RUN and secondary.direction != Direction.BULLISH:
        return 25.0, Direction.BEARISH, f"{rises} rises in a stable market", ManipulationType.FAKE_RISE
    if stable and abs(asset_change) > cfg.MANIPULATION_SINGLE_MOVE_PCT:
        if asset_change < 0:
            return 70.0, Direction.BULLISH, f"single {asset_change:+.2f}% drop in a stable market", ManipulationType.FAKE_DROP
        return 35.0, Direction.BEARISH, f"single {asset_change:+.2f}% rise in a stable market", ManipulationType.FAKE_RISE
    return 50.0, Direction.NEUTRAL, "no one-venue move", ManipulationType.NONE


# ── Correlator ─────────────────────────────────────────────────────────────

class MultiFactorCorrelator:

    def __init__(
        self,
        primary_reference: Optional[str] = None,
        secondary_reference: Optional[str] = None,
        currency_reference: Optional[str] = None,
    ):
        self.primary_reference   = primary_reference or cfg.PRIMARY_REFERENCE
        self.secondary_reference = secondary_reference or cfg.SECONDARY_REFERENCE
        self.currency_reference  = currency_reference or cfg.CURRENCY_REFERENCE

    def analyze(self, snapshot: MarketSnapshot) -> CombinedSignal:
        since = snapshot.captured_at - timedelta(minutes=cfg.FACTOR_LOOKBACK_MINUTES)
        ticks = tuple(t for t in snapshot.asset_ticks if t.timestamp >= since)[:cfg.FACTOR_MAX_SAMPLES]
        asset_values = [t.value for t in ticks]

        def refs(instrument: str) -> List[float]:
            window = snapshot.reference_window(instrument, since, cfg.FACTOR_MAX_SAMPLES)
            return [r.value for r in window]

        primary = self._guarded(
            FactorName.PRIMARY_CORRELATION,
            lambda: _primary_score(pct_change(asset_values), pct_change(refs(self.primary_reference))),
        )
        secondary = self._guarded(
            FactorName.SECONDARY_CORRELATION,
            lambda: _secondary_score(pct_change(asset_values), pct_change(refs(self.secondary_reference))),
        )

        currency_result: Dict[str, bool] = {}

        def _currency():
            score, direction, note, driven = _currency_score(
                pct_change(asset_values), pct_change(refs(self.currency_reference))
            )
            currency_result["driven"] = driven
            return score, direction, note

        currency = self._guarded(FactorName.CURRENCY_IMPACT, _currency)
        currency_driven = currency_result.get("driven", False)

        manipulation_result: Dict[str, ManipulationType] = {}

        def _manipulation():
            score, direction, note, mtype = _manipulation_score(
                ticks, pct_change(asset_values), primary, secondary
            )
            manipulation_result["type"] = mtype
            return score, direction, note

        manipulation = self._guarded(FactorName.MANIPULATION, _manipulation)
        manipulation_type = manipulation_result.get("type", ManipulationType.NONE)

        factors = [primary, secondary, currency, manipulation]
        return self.combine(factors, manipulation_type, currency_driven)

    @staticmethod
    def combine(
        factors: List[FactorScore],
        manipulation_type: ManipulationType = ManipulationType.NONE,
        currency_driven: bool = False,
    ) -> CombinedSignal:
        total_weight = sum(f.weight for f in factors)
        if total_weight != 100:
            logger.critical(f"multi_factor: factor weights sum to {total_weight}")
            raise InvariantViolation(f"factor weights sum to {total_weight}, expected 100")
        overall = sum(f.score * f.weight for f in factors) / total_weight

        if overall >= cfg.OVERALL_BULLISH_SCORE:
            direction = Direction.BULLISH
        elif overall <= cfg.OVERALL_BEARISH_SCORE:
            direction = Direction.BEARISH
        else:
            direction = Direction.NEUTRAL

        if manipulation_type == ManipulationType.FAKE_DROP:
            boost = cfg.BOOST_FAKE_DROP
        elif manipulation_type == ManipulationType.FAKE_RISE:
            boost = cfg.BOOST_FAKE_RISE
        else:
            boost = 0.0

        return CombinedSignal(
            overall_score=overall,
            market_direction=direction,
            manipulation_type=manipulation_type,
            confidence_boost=boost,
            factors=factors,
            currency_driven=currency_driven,
        )

    # ── Internal ───────────────────────────────────────────────────────

    @staticmethod
    def _guarded(factor: FactorName, scorer) -> FactorScore:
        try:
            score, direction, note = scorer()
        except DataInsufficientError:
            return _neutral(factor, "Insufficient data")
        except InvariantViolation:
            raise
        except Exception as exc:
            logger.warning(f"multi_factor: {factor.value} analysis failed: {exc}")
            return _neutral(factor, "Analysis failed")
        return FactorScore(factor, _clamp(score), direction, WEIGHTS[factor], note)

"""
engine_config.py — Single Source of Truth for All Engine Thresholds
=====================================================================

THIS IS THE ONLY PLACE THESE CONSTANTS ARE DEFINED.

The pattern detector, the multi-factor correlator, the decision gate, the
trade sizer and the orchestrator all import from here. If you need to change
a threshold, change it HERE.

Environment-driven values (reference instrument ids, state directory) are read
once at import from the project .env via python-dotenv.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

from ..errors import InvariantViolation

load_dotenv(Path(__file__).resolve().parents[2] / ".env")

# ── Pattern detector ───────────────────────────────────────────────────────
# Ticks newer than this (relative to the newest tick) are scanned for shapes.
PATTERN_LOOKBACK_MINUTES: int = 10
PATTERN_MAX_TICKS: int = 30

# Fewer ticks than this → detected=False, confidence 0, HOLD.
PATTERN_MIN_TICKS: int = 3

# Consecutive-move run: only the newest RUN_SCAN_TICKS are inspected.
RUN_SCAN_TICKS: int = 5
RUN_MIN_LENGTH: int = 2

# Single-tick shock: newest |percent delta| above this is a shock.
SHOCK_PERCENT: float = 0.2

# Cross-venue divergence thresholds (percent change over the window).
DIVERGENCE_REF_STABLE_PCT: float = 0.15
DIVERGENCE_ASSET_MOVED_PCT: float = 0.25
MARKET_DRIVEN_CONFIDENCE: float = 60.0

# Recovery: share of the drop recovered (percent).
RECOVERY_MIN_PERCENT: float = 50.0

# Bottom-reversal: consecutive prior drops before the newest positive tick.
DROP_BOTTOM_MIN_DROPS: int = 3
DROP_BOTTOM_SCAN_TICKS: int = 10

# Overall confidence blend: max × 0.7 + mean × 0.3.
OVERALL_MAX_WEIGHT: float = 0.7
OVERALL_MEAN_WEIGHT: float = 0.3

# Patterns at or above this overall confidence are kept for similarity lookups.
PATTERN_EVENT_MIN_CONFIDENCE: float = 70.0
SIMILAR_PATTERN_DAYS: int = 7
SIMILAR_PATTERN_LIMIT: int = 10

# ── Multi-factor correlator ────────────────────────────────────────────────
FACTOR_LOOKBACK_MINUTES: int = 15
FACTOR_MAX_SAMPLES: int = 30
FACTOR_MIN_SAMPLES: int = 3

# Factor weights. Must sum to exactly 100 (checked below).
WEIGHT_PRIMARY_CORRELATION: int = 35
WEIGHT_SECONDARY_CORRELATION: int = 20
WEIGHT_CURRENCY_IMPACT: int = 25
WEIGHT_MANIPULATION: int = 20

# Primary reference: moves inside ±0.1% are neutral; tiny changes carry no correlation.
PRIMARY_MOVE_PCT: float = 0.1
CORRELATION_MIN_CHANGE_PCT: float = 0.01

# Secondary reference (safe-haven proxy): moves inside ±0.15% are neutral.
SECONDARY_MOVE_PCT: float = 0.15

# Currency rate: moves inside ±0.2% are neutral; ±0.1% co-moves mark "currency driven".
CURRENCY_MOVE_PCT: float = 0.2
CURRENCY_DRIVEN_PCT: float = 0.1

# Manipulation: deltas within ±0.05 price units are noise; 3+ one-way moves in a
# stable market, or a single >0.3% move, mark a fake move.
MANIPULATION_SCAN_TICKS: int = 10
MANIPULATION_NOISE_DELTA: float = 0.05
MANIPULATION_MIN_RUN: int = 3
MANIPULATION_SINGLE_MOVE_PCT: float = 0.3

OVERALL_BULLISH_SCORE: float = 60.0
OVERALL_BEARISH_SCORE: float = 40.0

BOOST_FAKE_DROP: float = 20.0
BOOST_FAKE_RISE: float = -15.0

# ── Decision gate ──────────────────────────────────────────────────────────
# Per-account cooldown shared by advisor calls and the fast path.
ADVISOR_COOLDOWN_SECONDS: int = 120

# Fast path: high-confidence bottom reversal on a fake drop skips the advisor.
FAST_PATH_MIN_CONFIDENCE: float = 85.0
FAST_PATH_SIZE_PERCENT: float = 3.0

# Advisor unreachable → pattern suggestion at this fraction of overall confidence.
FALLBACK_CONFIDENCE_FACTOR: float = 0.8
FALLBACK_SIZE_PERCENT: float = 1.0

ADVISOR_MIN_SIZE_PERCENT: float = 1.0
ADVISOR_MAX_SIZE_PERCENT: float = 5.0
ADVISOR_TIMEOUT_SECONDS: int = 30
ADVISOR_TEMPERATURE: float = 0.3
ADVISOR_MAX_TOKENS: int = 500
ADVISOR_RECENT_PRICES: int = 10
ADVISOR_RECENT_DECISIONS: int = 5
# Decisions held in memory for the advisor context; the JSONL file keeps all.
RECENT_DECISIONS_KEPT: int = 1000

# ── Trading ────────────────────────────────────────────────────────────────
# 1% per leg. A round trip needs more than a 2% move to break even.
FEE_RATE: float = 0.01

# Orders below either minimum are rejected before they reach the venue.
MIN_TRADE_VALUE: float = 100_000.0
MIN_TRADE_QUANTITY: float = 0.01

# Order execution is abandoned (state untouched) after this many seconds.
ORDER_TIMEOUT_SECONDS: int = 20

# ── Account defaults ───────────────────────────────────────────────────────
DEFAULT_MIN_CONFIDENCE: float = 70.0
MIN_CONFIDENCE_FLOOR: float = 50.0
DEFAULT_TRADE_PERCENT: float = 5.0
DEFAULT_MAX_LOSS_PERCENT: float = 10.0
HIGH_CONFIDENCE_SPLIT: float = 80.0

# ── Orchestrator ───────────────────────────────────────────────────────────
CYCLE_INTERVAL_SECONDS: int = 10
STOPPED_LOG_EVERY_CYCLES: int = 30
ALERT_THROTTLE_SECONDS: int = 60
STATUS_EVERY_SECONDS: int = 300

# ── Prediction outcomes ────────────────────────────────────────────────────
OUTCOME_SHORT_MINUTES: int = 5
OUTCOME_LONG_MINUTES: int = 10
OUTCOME_MOVE_PCT: float = 0.1     # BUY correct above +0.1%, SELL below −0.1%
OUTCOME_HOLD_BAND_PCT: float = 0.3  # HOLD correct while |change| < 0.3%
PREDICTION_RETENTION_DAYS: int = 30

# ── Reference instruments ──────────────────────────────────────────────────
PRIMARY_REFERENCE: str = os.getenv("PRIMARY_REFERENCE", "global_spot")
SECONDARY_REFERENCE: str = os.getenv("SECONDARY_REFERENCE", "gold")
CURRENCY_REFERENCE: str = os.getenv("CURRENCY_REFERENCE", "fx_rate")

STATE_DIR: Path = Path(
    os.getenv("VENUEWATCH_STATE_DIR", Path(__file__).resolve().parents[2] / "runtime_state")
)


def factor_weights() -> dict:
    return {
        "PRIMARY_CORRELATION":   WEIGHT_PRIMARY_CORRELATION,
        "SECONDARY_CORRELATION": WEIGHT_SECONDARY_CORRELATION,
        "CURRENCY_IMPACT":       WEIGHT_CURRENCY_IMPACT,
        "MANIPULATION":          WEIGHT_MANIPULATION,
    }


def check_weights(weights: dict) -> None:
    total = sum(weights.values())
    if total != 100:
        raise InvariantViolation(f"factor weights sum to {total}, expected 100: {weights}")


check_weights(factor_weights())

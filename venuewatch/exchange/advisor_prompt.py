"""
Advisor Prompt — renders the decision context into the advisor's user prompt.

Sections:
  CURRENT MARKET STATE       asset price and every reference instrument
  WALLET STATUS              cash / asset balances and what one trade would use
  DETECTED PATTERNS          detector output + its suggestion
  MULTI-FACTOR ANALYSIS      correlator factors, manipulation flag, boost
  RECENT PRICE MOVEMENTS     newest ticks with their deltas
  RECENT DECISIONS / TRADES  what the engine did lately
  SIMILAR PATTERNS           same-type sightings from the last week
  FEES                       1% per leg, 2% round trip — trade only above that

The advisor must answer with one JSON object; advisor_client validates it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..risk.trade_sizer import break_even_move_pct
from ..strategy import engine_config as cfg
from ..strategy.multi_factor import CombinedSignal
from ..strategy.pattern_detector import PatternAnalysis
from ..strategy.tick_history import MarketSnapshot

SYSTEM_PROMPT = (
    "You are a precise trading advisor. Always respond with valid JSON only. "
    "No markdown, no explanations outside JSON."
)


@dataclass
class AdvisorContext:
    snapshot:         MarketSnapshot
    pattern_analysis: PatternAnalysis
    combined_signal:  CombinedSignal
    balances:         Dict[str, float]
    trade_percent:    float = cfg.DEFAULT_TRADE_PERCENT
    recent_decisions: List[dict] = field(default_factory=list)
    recent_trades:    List[dict] = field(default_factory=list)
    similar_patterns: List[dict] = field(default_factory=list)
    prediction_notes: List[str] = field(default_factory=list)


def _fmt(value: Optional[float], digits: int = 2) -> str:
    return f"{value:,.{digits}f}" if value is not None else "N/A"


def _price_lines(snapshot: MarketSnapshot, n: int) -> str:
    ticks = snapshot.asset_ticks[:n]
    if not ticks:
        return "No data available"
    return "\n".join(
        f"{t.timestamp.strftime('%H:%M:%S')}: {t.value:,.2f} ({t.delta_from_prev:+.2f})"
        for t in ticks
    )


def _decision_lines(decisions: List[dict]) -> str:
    if not decisions:
        return "No recent decisions"
    return "\n".join(
        f"{d.get('ts', '?')[:19]}: {d.get('route', '?')} → {d.get('action', '?')} "
        f"({d.get('confidence') or 0:.0f}%)"
        for d in decisions[:cfg.ADVISOR_RECENT_DECISIONS]
    )


def _trade_lines(trades: List[dict]) -> str:
    if not trades:
        return "No recent trades"
    return "\n".join(
        f"{t['timestamp'][:16]}: {t['action']} {t['quantity']:.2f} @ {t['unit_price']:,.2f} "
        f"(confidence: {t['confidence']:.0f}%)"
        for t in trades[:5]
    )


def _similar_lines(events: List[dict]) -> str:
    if not events:
        return "No similar patterns found"
    return "\n".join(
        f"{e['ts'][:16]}: {e['pattern_type']} ({e['confidence']}%) → {e.get('suggestion', 'N/A')}"
        for e in events[:5]
    )


def build_prompt(ctx: AdvisorContext) -> str:
    snap = ctx.snapshot
    pa = ctx.pattern_analysis
    cs = ctx.combined_signal
    cash = ctx.balances.get("cash", 0.0)
    asset = ctx.balances.get("asset", 0.0)

    refs = "\n".join(
        f"- **{name}**: {_fmt(snap.latest_reference(name))}" for name in sorted(snap.references)
    ) or "- no reference prices"

    patterns = "\n".join(
        f"- **{p.type.value}** ({p.confidence:.0f}%): {p.description}" for p in pa.patterns
    ) or "- none"

    factors = "\n".join(
        f"- **{f.factor.value}** (weight {f.weight}): {f.score:.0f} {f.direction.value} — {f.description}"
        for f in cs.factors
    )

    predictions = "\n".join(ctx.prediction_notes[:10]) or "No verified predictions yet"

    return f"""You are advising a short-term trading engine on a single venue.
Your goal is to maximize profit by telling venue-only manipulation apart from real market moves.

## CURRENT MARKET STATE
- **Asset price**: {_fmt(snap.latest_price)}
{refs}

## WALLET STATUS
- **Cash balance**: {cash:,.2f}
- **Asset balance**: {asset:,.4f}
- **Available for one trade ({ctx.trade_percent:.0f}%)**: {cash * ctx.trade_percent / 100:,.2f}

## DETECTED PATTERNS
{patterns}
- **Pattern suggestion**: {pa.suggestion.value}
- **Overall confidence**: {pa.overall_confidence:.1f}%

## MULTI-FACTOR ANALYSIS
{factors}
- **Overall score**: {cs.overall_score:.1f} ({cs.market_direction.value})
- **Manipulation**: {cs.manipulation_type.value} (boost {cs.confidence_boost:+.0f})
- **Currency driven**: {'yes' if cs.currency_driven else 'no'}

## RECENT PRICE MOVEMENTS
{_price_lines(snap, cfg.ADVISOR_RECENT_PRICES)}

## RECENT DECISIONS
{_decision_lines(ctx.recent_decisions)}

## RECENT TRADES
{_trade_lines(ctx.recent_trades)}

## HISTORICAL SIMILAR PATTERNS
{_similar_lines(ctx.similar_patterns)}

## PAST PREDICTION OUTCOMES
{predictions}

## TRADING FEE CONSIDERATION
- **Fee per transaction**: {cfg.FEE_RATE * 100:.0f}% of transaction value
- **Round-trip fee (BUY + SELL)**: {break_even_move_pct():.0f}% total
- Only recommend a trade if the expected move exceeds the round-trip fee; otherwise HOLD.

## KEY SIGNALS
- DROP_BOTTOM = first rise after several drops, strong BUY
- MULTI_BEARISH with MANIPULATION = HOLD, wait for the bottom
- MULTI_BEARISH without manipulation = SELL, the market is falling
- RECOVERY = BUY, bottom confirmed

## YOUR TASK
Respond with one JSON object only:
{{
  "action": "BUY" | "SELL" | "HOLD",
  "confidence": number (0-100),
  "volume_percent": number ({cfg.ADVISOR_MIN_SIZE_PERCENT:.0f}-{cfg.ADVISOR_MAX_SIZE_PERCENT:.0f}),
  "reasoning": "string (mention fees)",
  "expected_outcome": "string (expected % move)"
}}"""

"""
Decision Gate — merges the pattern analysis and the correlator signal into
one decision per account, and decides whether the advisor is worth paying for.

    adjusted = pattern overall confidence + correlator boost   (not clamped)

Gate order (first hit wins):
  1. ABSTAIN    no pattern / adjusted < account min confidence / suggestion HOLD
  2. ABSTAIN    this account was routed to the advisor or the fast path less
                than 120 s ago
  3. FAST_PATH  DROP_BOTTOM ≥ 85 on a FAKE_DROP → BUY at 3%, advisor skipped;
                starts the cooldown like an advisor call
  4. ADVISOR    validated advisor answer
     FALLBACK   advisor failed or answered garbage → pattern suggestion at
                80% of the pattern confidence, size 1%

Every decision, abstentions included, is appended to the decision log.
The cooldown clock is per account and injectable for tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..errors import ExternalCallFailure, InvariantViolation, ValidationError
from ..exchange.advisor_client import AdvisorResult
from ..exchange.advisor_prompt import AdvisorContext
from ..strategy import engine_config as cfg
from ..strategy.multi_factor import CombinedSignal, ManipulationType
from ..strategy.pattern_detector import Action, PatternAnalysis, PatternType
from ..strategy.tick_history import MarketSnapshot
from .account_settings import AccountSettings
from .decision_log import DecisionLog

logger = logging.getLogger(__name__)


class GateRoute(Enum):
    ABSTAIN   = "ABSTAIN"
    FAST_PATH = "FAST_PATH"
    ADVISOR   = "ADVISOR"
    FALLBACK  = "FALLBACK"


@dataclass
class GateDecision:
    route:               GateRoute
    action:              Action
    confidence:          float
    adjusted_confidence: float
    size_percent:        Optional[float] = None
    reasoning:           str = ""
    expected_outcome:    str = ""
    advisor:             Optional[AdvisorResult] = None

    @property
    def actionable(self) -> bool:
        return self.route != GateRoute.ABSTAIN and self.action != Action.HOLD

    def to_dict(self) -> dict:
        return {
            "route":               self.route.value,
            "action":              self.action.value,
            "confidence":          round(self.confidence, 2),
            "adjusted_confidence": round(self.adjusted_confidence, 2),
            "size_percent":        self.size_percent,
            "reasoning":           self.reasoning,
            "expected_outcome":    self.expected_outcome,
            "advisor":             self.advisor.to_dict() if self.advisor else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DecisionGate:
    """
    Parameters
    ----------
    advisor : object with get_decision(AdvisorContext) -> AdvisorResult
    decision_log : DecisionLog
    clock : callable returning an aware datetime (defaults to UTC now)
    """

    def __init__(
        self,
        advisor,
        decision_log: DecisionLog,
        clock: Callable[[], datetime] = _utcnow,
        cooldown_seconds: float = cfg.ADVISOR_COOLDOWN_SECONDS,
    ):
        self.advisor = advisor
        self.decision_log = decision_log
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds
        self.last_advisor_call_at: Dict[str, datetime] = {}

    # ── Public API ─────────────────────────────────────────────────────

    def decide(
        self,
        account_id: str,
        snapshot: MarketSnapshot,
        analysis: PatternAnalysis,
        signal: CombinedSignal,
        settings: AccountSettings,
        balances: Dict[str, float],
        recent_trades: Optional[List[dict]] = None,
    ) -> GateDecision:
        decision = self._route(account_id, snapshot, analysis, signal, settings, balances, recent_trades)
        self.decision_log.log_decision(
            account_id,
            {
                **decision.to_dict(),
                "price":              snapshot.latest_price,
                "pattern_confidence": round(analysis.overall_confidence, 2),
                "suggestion":         analysis.suggestion.value,
                "patterns":           [p.type.value for p in analysis.patterns],
                "manipulation_type":  signal.manipulation_type.value,
                "confidence_boost":   signal.confidence_boost,
                "overall_score":      round(signal.overall_score, 2),
            },
            now=self.clock(),
        )
        return decision

    def cooldown_remaining(self, account_id: str) -> float:
        last = self.last_advisor_call_at.get(account_id)
        if last is None:
            return 0.0
        elapsed = (self.clock() - last).total_seconds()
        return max(0.0, self.cooldown_seconds - elapsed)

    @staticmethod
    def is_fast_path(analysis: PatternAnalysis, signal: CombinedSignal) -> bool:
        bottom = analysis.confidence_of(PatternType.DROP_BOTTOM)
        return (
            bottom is not None
            and bottom >= cfg.FAST_PATH_MIN_CONFIDENCE
            and signal.manipulation_type == ManipulationType.FAKE_DROP
        )

    # ── Internal ───────────────────────────────────────────────────────

    def _route(
        self,
        account_id: str,
        snapshot: MarketSnapshot,
        analysis: PatternAnalysis,
        signal: CombinedSignal,
        settings: AccountSettings,
        balances: Dict[str, float],
        recent_trades: Optional[List[dict]],
    ) -> GateDecision:
        adjusted = analysis.overall_confidence + signal.confidence_boost
        if adjusted > 100 or adjusted < 0:
            logger.debug(f"gate: adjusted confidence {adjusted:.1f} outside 0–100 (left unclamped)")

        def abstain(reason: str) -> GateDecision:
            return GateDecision(
                route=GateRoute.ABSTAIN,
                action=Action.HOLD,
                confidence=analysis.overall_confidence,
                adjusted_confidence=adjusted,
                reasoning=reason,
            )

        if not analysis.detected:
            return abstain("no pattern detected")
        if adjusted < settings.min_confidence:
            return abstain(f"adjusted confidence {adjusted:.1f} < {settings.min_confidence:.0f}")
        if analysis.suggestion == Action.HOLD:
            return abstain("pattern suggests HOLD — advisor skipped")

        remaining = self.cooldown_remaining(account_id)
        if remaining > 0:
            return abstain(f"advisor cooldown ({remaining:.0f}s left)")

        self.last_advisor_call_at[account_id] = self.clock()
        if self.is_fast_path(analysis, signal):
            logger.info(f"⚡ fast path for {account_id}: DROP_BOTTOM on FAKE_DROP → BUY")
            return GateDecision(
                route=GateRoute.FAST_PATH,
                action=Action.BUY,
                confidence=adjusted,
                adjusted_confidence=adjusted,
                size_percent=cfg.FAST_PATH_SIZE_PERCENT,
                reasoning="bottom reversal after a fake drop",
                expected_outcome="recovery toward the pre-drop price",
            )

        context = AdvisorContext(
            snapshot=snapshot,
            pattern_analysis=analysis,
            combined_signal=signal,
            balances=balances,
            trade_percent=settings.trade_percent,
            recent_decisions=self.decision_log.get_recent_decisions(
                cfg.ADVISOR_RECENT_DECISIONS, account_id=account_id
            ),
            recent_trades=recent_trades or [],
            similar_patterns=self._similar(analysis),
            prediction_notes=self.decision_log.predictions_for_prompt(),
        )

        try:
            result = self.advisor.get_decision(context)
        except (ExternalCallFailure, ValidationError) as exc:
            logger.warning(f"gate: advisor unavailable for {account_id}: {exc} — falling back")
            return self._fallback(analysis, adjusted, str(exc))
        except InvariantViolation:
            raise
        except Exception as exc:
            logger.error(f"gate: advisor crashed for {account_id}: {exc}", exc_info=True)
            return self._fallback(analysis, adjusted, str(exc))

        logger.info(
            f"🤖 advisor for {account_id}: {result.action.value} ({result.confidence:.1f}%) — {result.reasoning}"
        )
        return GateDecision(
            route=GateRoute.ADVISOR,
            action=result.action,
            confidence=result.confidence,
            adjusted_confidence=adjusted,
            size_percent=result.size_percent,
            reasoning=result.reasoning,
            expected_outcome=result.expected_outcome,
            advisor=result,
        )

    def _similar(self, analysis: PatternAnalysis) -> List[dict]:
        if not analysis.patterns:
            return []
        main = max(analysis.patterns, key=lambda p: p.confidence)
        return self.decision_log.similar_patterns(main.type.value, now=self.clock())

    @staticmethod
    def _fallback(analysis: PatternAnalysis, adjusted: float, error: str) -> GateDecision:
        descriptions = "; ".join(p.description for p in analysis.patterns)
        return GateDecision(
            route=GateRoute.FALLBACK,
            action=analysis.suggestion,
            confidence=analysis.overall_confidence * cfg.FALLBACK_CONFIDENCE_FACTOR,
            adjusted_confidence=adjusted,
            size_percent=cfg.FALLBACK_SIZE_PERCENT,
            reasoning=f"advisor unavailable ({error}). Pattern analysis: {descriptions}",
            expected_outcome="based on pattern analysis only",
        )

"""
Decision Log — append-only memory of what the engine saw and what it chose.

Three files under runtime_state/:

  decision_log.jsonl    every gate decision (route, action, confidences, inputs)
  pattern_events.jsonl  strong pattern sightings (overall confidence ≥ 70),
                        queried by type for the advisor's "similar patterns"
  predictions.json      every actionable decision as a prediction; the
                        orchestrator fills in the price 5 and 10 minutes later
                        and marks it correct or wrong

A prediction is correct when, 10 minutes on:
  BUY   price rose more than 0.1%
  SELL  price fell more than 0.1%
  HOLD  price stayed within ±0.3%

Predictions older than 30 days are pruned. The advisor only ever reads these
views; nothing here feeds back into the detector or correlator.

directory=None keeps everything in memory (tests, dry runs).
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..strategy import engine_config as cfg
from ..strategy.pattern_detector import PatternAnalysis
from .json_store import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DECISIONS_NAME = "decision_log.jsonl"
PATTERNS_NAME = "pattern_events.jsonl"
PREDICTIONS_NAME = "predictions.json"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def prediction_correct(action: str, change_pct: float) -> bool:
    if action == "BUY":
        return change_pct > cfg.OUTCOME_MOVE_PCT
    if action == "SELL":
        return change_pct < -cfg.OUTCOME_MOVE_PCT
    return abs(change_pct) < cfg.OUTCOME_HOLD_BAND_PCT


class DecisionLog:

    def __init__(
        self,
        directory: Optional[Path] = cfg.STATE_DIR,
        keep_decisions: int = cfg.RECENT_DECISIONS_KEPT,
    ):
        self.directory = Path(directory) if directory else None
        self._lock = threading.Lock()
        self._decisions: deque = deque(maxlen=keep_decisions)
        self._patterns: List[dict] = []
        self._predictions: List[dict] = []
        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._predictions = read_json(self.directory / PREDICTIONS_NAME) or []
            self._decisions.extend(self._tail(DECISIONS_NAME, keep_decisions))

    # ── Decisions ──────────────────────────────────────────────────────

    def log_decision(self, account_id: str, details: dict, now: Optional[datetime] = None) -> dict:
        entry = {
            "ts":         (now or _now()).isoformat(),
            "account_id": account_id,
            **details,
        }
        with self._lock:
            self._decisions.append(entry)
        self._write_line(DECISIONS_NAME, entry)
        return entry

    def get_recent_decisions(self, n: int = 30, account_id: Optional[str] = None) -> List[dict]:
        """Newest first, out of the last keep_decisions entries."""
        with self._lock:
            entries = list(self._decisions)
        if account_id is not None:
            entries = [e for e in entries if e.get("account_id") == account_id]
        return list(reversed(entries[-n:]))

    # ── Pattern events ─────────────────────────────────────────────────

    def log_pattern_event(
        self,
        analysis: PatternAnalysis,
        price: float,
        references: Optional[Dict[str, Optional[float]]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        """Keep strong sightings only. The strongest pattern names the event."""
        if not analysis.detected or analysis.overall_confidence < cfg.PATTERN_EVENT_MIN_CONFIDENCE:
            return None
        main = max(analysis.patterns, key=lambda p: p.confidence)
        entry = {
            "ts":           (now or _now()).isoformat(),
            "pattern_type": main.type.value,
            "confidence":   round(analysis.overall_confidence, 2),
            "price":        price,
            "references":   references or {},
            "suggestion":   analysis.suggestion.value,
            "patterns":     [p.to_dict() for p in analysis.patterns],
        }
        self._append(PATTERNS_NAME, self._patterns, entry)
        logger.info(f"📌 pattern event {main.type.value} @ {price:,.2f} ({entry['confidence']}%)")
        return entry

    def similar_patterns(
        self,
        pattern_type: str,
        days: int = cfg.SIMILAR_PATTERN_DAYS,
        limit: int = cfg.SIMILAR_PATTERN_LIMIT,
        now: Optional[datetime] = None,
    ) -> List[dict]:
        """Same main type in the last `days`, newest first."""
        since = (now or _now()) - timedelta(days=days)
        matches = [
            e for e in self._read(PATTERNS_NAME, self._patterns)
            if e.get("pattern_type") == pattern_type and datetime.fromisoformat(e["ts"]) >= since
        ]
        return list(reversed(matches))[:limit]

    # ── Predictions ────────────────────────────────────────────────────

    def record_prediction(
        self,
        account_id: str,
        route: str,
        action: str,
        confidence: float,
        price: float,
        patterns: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        prediction = {
            "id":                  uuid.uuid4().hex,
            "created_at":          (now or _now()).isoformat(),
            "account_id":          account_id,
            "route":               route,
            "action":              action,
            "confidence":          round(confidence, 2),
            "price":               price,
            "patterns":            patterns or [],
            "price_after_short":   None,
            "price_after_long":    None,
            "was_correct":         None,
        }
        with self._lock:
            self._predictions.append(prediction)
            self._persist_predictions()
        return prediction["id"]

    def evaluate_outcomes(self, current_price: float, now: Optional[datetime] = None) -> List[dict]:
        """Fill in due 5/10-minute prices. Returns predictions finalized by this call."""
        now = now or _now()
        short = timedelta(minutes=cfg.OUTCOME_SHORT_MINUTES)
        long_ = timedelta(minutes=cfg.OUTCOME_LONG_MINUTES)
        finalized = []
        with self._lock:
            changed = False
            for p in self._predictions:
                if p["was_correct"] is not None:
                    continue
                age = now - datetime.fromisoformat(p["created_at"])
                if p["price_after_short"] is None and age >= short:
                    p["price_after_short"] = current_price
                    changed = True
                if age >= long_:
                    p["price_after_long"] = current_price
                    change = (current_price - p["price"]) / p["price"] * 100 if p["price"] else 0.0
                    p["was_correct"] = prediction_correct(p["action"], change)
                    finalized.append(dict(p))
                    changed = True
            if changed:
                self._persist_predictions()
        for p in finalized:
            logger.info(
                f"🎯 prediction {p['action']} @ {p['price']:,.2f} → {p['price_after_long']:,.2f} "
                f"{'CORRECT' if p['was_correct'] else 'WRONG'}"
            )
        return finalized

    def prediction_stats(self, days: int = 7, now: Optional[datetime] = None) -> dict:
        since = (now or _now()) - timedelta(days=days)
        with self._lock:
            recent = [
                dict(p) for p in self._predictions
                if datetime.fromisoformat(p["created_at"]) >= since
            ]
        evaluated = [p for p in recent if p["was_correct"] is not None]
        correct = [p for p in evaluated if p["was_correct"]]

        by_action = []
        for action in ("BUY", "SELL", "HOLD"):
            subset = [p for p in evaluated if p["action"] == action]
            hits = sum(1 for p in subset if p["was_correct"])
            by_action.append({
                "action":   action,
                "total":    len(subset),
                "correct":  hits,
                "accuracy": round(hits / len(subset) * 100, 1) if subset else 0.0,
            })

        return {
            "total_predictions":   len(recent),
            "correct_predictions": len(correct),
            "accuracy":            round(len(correct) / len(evaluated) * 100, 1) if evaluated else 0.0,
            "by_action":           by_action,
            "avg_confidence":      round(sum(p["confidence"] for p in recent) / len(recent), 1) if recent else 0.0,
        }

    def predictions_for_prompt(self, limit: int = 20) -> List[str]:
        with self._lock:
            done = [p for p in self._predictions if p["was_correct"] is not None]
        lines = []
        for p in reversed(done[-limit:]):
            change = (p["price_after_long"] - p["price"]) / p["price"] * 100 if p["price"] else 0.0
            lines.append(
                f"{p['created_at'][:16]} | {p['action']} @ {p['confidence']:.0f}% | "
                f"price {p['price']:,.0f} | 10min {change:+.2f}% | "
                f"{'CORRECT' if p['was_correct'] else 'WRONG'}"
            )
        return lines

    def cleanup_predictions(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or _now()) - timedelta(days=cfg.PREDICTION_RETENTION_DAYS)
        with self._lock:
            before = len(self._predictions)
            self._predictions = [
                p for p in self._predictions if datetime.fromisoformat(p["created_at"]) >= cutoff
            ]
            removed = before - len(self._predictions)
            if removed:
                self._persist_predictions()
        if removed:
            logger.info(f"🧹 removed {removed} predictions older than {cfg.PREDICTION_RETENTION_DAYS} days")
        return removed

    # ── Internal ───────────────────────────────────────────────────────

    def _append(self, name: str, memory: List[dict], entry: dict) -> None:
        if self.directory is None:
            with self._lock:
                memory.append(entry)
            return
        self._write_line(name, entry)

    def _write_line(self, name: str, entry: dict) -> None:
        if self.directory is None:
            return
        with self._lock:
            try:
                with open(self.directory / name, "a") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
            except OSError as exc:
                logger.error(f"decision_log: failed to append to {name}: {exc}")

    def _read(self, name: str, memory: List[dict]) -> List[dict]:
        if self.directory is None:
            with self._lock:
                return list(memory)
        path = self.directory / name
        if not path.exists():
            return []
        with open(path) as f:
            return self._parse(name, f)

    def _tail(self, name: str, n: int) -> List[dict]:
        """Last n entries of a JSONL file, without parsing the rest."""
        path = self.directory / name
        if not path.exists():
            return []
        with open(path) as f:
            return self._parse(name, deque(f, maxlen=n))

    @staticmethod
    def _parse(name: str, lines) -> List[dict]:
        entries = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except ValueError:
                logger.warning(f"decision_log: skipping bad line in {name}")
        return entries

    def _persist_predictions(self) -> None:
        if self.directory is not None:
            atomic_write_json(self.directory / PREDICTIONS_NAME, self._predictions, prefix="predictions_")

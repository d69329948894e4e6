"""
Tick History — ordered price observations for the monitored asset and the
reference instruments.

The ingestion side calls record_asset_price() / record_reference() as prices
arrive. Each decision cycle calls snapshot(), which returns an immutable
MarketSnapshot (newest-first tuples) that the pattern detector and the
multi-factor correlator can read concurrently without locking.

Ticks are never mutated once recorded. Retention is bounded by max_ticks.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_MAX_TICKS = 2_000


@dataclass(frozen=True)
class PriceTick:
    value:              float
    timestamp:          datetime
    delta_from_prev:    float = 0.0
    percent_delta:      float = 0.0
    seconds_since_last: float = 0.0

    def to_dict(self) -> dict:
        return {
            "value":              self.value,
            "timestamp":          self.timestamp.isoformat(),
            "delta_from_prev":    round(self.delta_from_prev, 6),
            "percent_delta":      round(self.percent_delta, 6),
            "seconds_since_last": round(self.seconds_since_last, 1),
        }


@dataclass(frozen=True)
class ReferencePrice:
    instrument_id: str
    value:         float
    timestamp:     datetime


@dataclass(frozen=True)
class MarketSnapshot:
    """Immutable view of the history at one instant. Sequences are newest-first."""
    captured_at: datetime
    asset_ticks: Tuple[PriceTick, ...] = ()
    references:  Dict[str, Tuple[ReferencePrice, ...]] = field(default_factory=dict)

    @property
    def latest_price(self) -> Optional[float]:
        return self.asset_ticks[0].value if self.asset_ticks else None

    def latest_reference(self, instrument_id: str) -> Optional[float]:
        series = self.references.get(instrument_id) or ()
        return series[0].value if series else None

    def asset_window(self, minutes: float, max_ticks: int) -> Tuple[PriceTick, ...]:
        """Ticks no older than `minutes` before the newest tick, capped at max_ticks."""
        if not self.asset_ticks:
            return ()
        cutoff = self.asset_ticks[0].timestamp - timedelta(minutes=minutes)
        window = [t for t in self.asset_ticks if t.timestamp >= cutoff]
        return tuple(window[:max_ticks])

    def reference_window(
        self, instrument_id: str, since: datetime, max_samples: Optional[int] = None
    ) -> Tuple[ReferencePrice, ...]:
        series = self.references.get(instrument_id) or ()
        window = [r for r in series if r.timestamp >= since]
        if max_samples is not None:
            window = window[:max_samples]
        return tuple(window)

    def to_frame(self) -> pd.DataFrame:
        """Asset ticks as a DataFrame indexed by timestamp (oldest first)."""
        if not self.asset_ticks:
            return pd.DataFrame(columns=["value", "delta_from_prev", "percent_delta"])
        rows = [
            {
                "timestamp":       t.timestamp,
                "value":           t.value,
                "delta_from_prev": t.delta_from_prev,
                "percent_delta":   t.percent_delta,
            }
            for t in reversed(self.asset_ticks)
        ]
        return pd.DataFrame(rows).set_index("timestamp")


class TickHistory:
    """
    Append-only store. Thread-safe for one writer and many snapshot readers.
    """

    def __init__(self, max_ticks: int = DEFAULT_MAX_TICKS):
        self._lock = threading.Lock()
        self._asset: deque = deque(maxlen=max_ticks)
        self._refs: Dict[str, deque] = {}
        self._max_ticks = max_ticks

    # ── Write ─────────────────────────────────────────────────────────

    def record_asset_price(self, value: float, timestamp: Optional[datetime] = None) -> PriceTick:
        ts = timestamp or datetime.now(timezone.utc)
        with self._lock:
            prev = self._asset[-1] if self._asset else None
            if prev is not None and ts < prev.timestamp:
                logger.warning(
                    f"tick_history: out-of-order tick {ts.isoformat()} < {prev.timestamp.isoformat()} — dropped"
                )
                return prev
            if prev is None:
                tick = PriceTick(value=value, timestamp=ts)
            else:
                delta = value - prev.value
                pct = (delta / prev.value * 100) if prev.value else 0.0
                tick = PriceTick(
                    value=value,
                    timestamp=ts,
                    delta_from_prev=delta,
                    percent_delta=pct,
                    seconds_since_last=(ts - prev.timestamp).total_seconds(),
                )
            self._asset.append(tick)
        return tick

    def record_reference(
        self, instrument_id: str, value: float, timestamp: Optional[datetime] = None
    ) -> ReferencePrice:
        ref = ReferencePrice(
            instrument_id=instrument_id,
            value=value,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        with self._lock:
            series = self._refs.setdefault(instrument_id, deque(maxlen=self._max_ticks))
            if not series or ref.timestamp >= series[-1].timestamp:
                series.append(ref)
                return ref
            # Late sample: keep the series ordered by timestamp.
            idx = len(series)
            while idx > 0 and series[idx - 1].timestamp > ref.timestamp:
                idx -= 1
            if len(series) == series.maxlen:
                if idx == 0:
                    logger.debug(f"tick_history: {instrument_id} sample older than retention — dropped")
                    return ref
                series.popleft()
                idx -= 1
            series.insert(idx, ref)
        return ref

    # ── Read ──────────────────────────────────────────────────────────

    def snapshot(self, now: Optional[datetime] = None) -> MarketSnapshot:
        with self._lock:
            asset = tuple(reversed(self._asset))
            refs = {k: tuple(reversed(v)) for k, v in self._refs.items()}
        return MarketSnapshot(
            captured_at=now or datetime.now(timezone.utc),
            asset_ticks=asset,
            references=refs,
        )

    def __len__(self) -> int:
        return len(self._asset)


ASSET_INSTRUMENT = "asset"


def load_ticks_csv(history: TickHistory, path) -> int:
    """
    Replay a CSV of observations into a history.
    Columns: timestamp, instrument, value. instrument "asset" is the traded asset;
    anything else is a reference instrument id. Returns rows loaded.
    """
    df = pd.read_csv(path)
    missing = {"timestamp", "instrument", "value"} - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing columns {sorted(missing)}")
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df = df.sort_values("timestamp", kind="stable")
    for row in df.itertuples(index=False):
        ts = row.timestamp.to_pydatetime()
        if row.instrument == ASSET_INSTRUMENT:
            history.record_asset_price(float(row.value), ts)
        else:
            history.record_reference(str(row.instrument), float(row.value), ts)
    logger.info(f"tick_history: replayed {len(df)} rows from {path}")
    return len(df)

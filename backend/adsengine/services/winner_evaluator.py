"""
Winner Evaluator — scores ad-sets by core-signal rate and picks a winner.

Algorithm:
- Keep ad-sets with spend >= min_spend and impressions >= min_impressions
- Fewer than 2 qualifying ad-sets: no winner (no comparison baseline)
- rate = core_signal_count / max(spend, EPSILON)
- The best ad-set (rate desc, spend desc, creative_id asc) wins iff
  rate >= median_rate * (1 + improvement_pct / 100)

Everything here is pure: same input, same verdict.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

EPSILON = 1e-6


@dataclass(frozen=True)
class AdSetMetric:
    ad_set_id: str
    creative_id: str
    spend: float
    impressions: int
    core_signal_count: int

    @property
    def rate(self) -> float:
        return compute_rate(self.core_signal_count, self.spend)


@dataclass(frozen=True)
class WinnerThresholds:
    min_spend: float = 10.0
    min_impressions: int = 1000
    improvement_pct: float = 15.0

    @property
    def multiplier(self) -> float:
        return 1 + self.improvement_pct / 100


@dataclass(frozen=True)
class WinnerVerdict:
    ad_set_id: str
    creative_id: str
    rate: float
    median_rate: float
    spend: float
    qualifying_count: int

    def to_details(self) -> dict:
        return {
            "ad_set_id": self.ad_set_id,
            "creative_id": self.creative_id,
            "rate": round(self.rate, 6),
            "median_rate": round(self.median_rate, 6),
            "spend": round(self.spend, 2),
            "qualifying_adsets": self.qualifying_count,
        }


def compute_rate(core_signal_count: int, spend: float) -> float:
    return core_signal_count / max(spend, EPSILON)


def median(values: list[float]) -> float:
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        raise ValueError("median of empty sequence")
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def qualifying(metrics: Iterable[AdSetMetric], thresholds: WinnerThresholds) -> list[AdSetMetric]:
    return [
        m for m in metrics
        if m.spend >= thresholds.min_spend and m.impressions >= thresholds.min_impressions
    ]


def median_rate(metrics: Iterable[AdSetMetric], thresholds: WinnerThresholds) -> Optional[float]:
    """Median rate across qualifying ad-sets, or None below the 2-ad-set minimum."""
    rows = qualifying(metrics, thresholds)
    if len(rows) < 2:
        return None
    return median([m.rate for m in rows])


def _rank_key(m: AdSetMetric):
    return (-m.rate, -m.spend, str(m.creative_id))


def evaluate(metrics: Iterable[AdSetMetric], thresholds: WinnerThresholds) -> Optional[WinnerVerdict]:
    rows = qualifying(metrics, thresholds)
    if len(rows) < 2:
        return None

    baseline = median([m.rate for m in rows])
    best = min(rows, key=_rank_key)
    if best.rate < baseline * thresholds.multiplier:
        return None
    # All-zero traffic: 0 >= 0 * k, but nothing actually converted
    if best.core_signal_count <= 0:
        return None

    return WinnerVerdict(
        ad_set_id=best.ad_set_id,
        creative_id=best.creative_id,
        rate=best.rate,
        median_rate=baseline,
        spend=best.spend,
        qualifying_count=len(rows),
    )


def find_losers(metrics: Iterable[AdSetMetric], min_spend: float) -> list[AdSetMetric]:
    """Ad-sets that spent at least twice the minimum without a single core signal."""
    losers = [m for m in metrics if m.spend >= min_spend * 2 and m.core_signal_count == 0]
    return sorted(losers, key=lambda m: (-m.spend, str(m.ad_set_id)))

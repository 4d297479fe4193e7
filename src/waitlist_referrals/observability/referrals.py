from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class ReferralMetricsSnapshot:
    referrals: Dict[str, int]
    points: Dict[str, int]
    rewards: Dict[str, int]
    side_effects: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "referrals": dict(self.referrals),
            "points": dict(self.points),
            "rewards": dict(self.rewards),
            "side_effects": dict(self.side_effects),
        }


class ReferralObservabilityStore:
    """Collect referral, scoring and reward telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._referrals: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._rewards: Dict[str, int] = defaultdict(int)
        self._side_effects: Dict[str, int] = defaultdict(int)

    def record_referral_outcome(self, outcome: str) -> None:
        with self._lock:
            self._referrals[outcome] += 1

    def record_points_awarded(self, event: str, points: int) -> None:
        with self._lock:
            self._points[f"awards:{event}"] += 1
            self._points[f"points:{event}"] += points

    def record_reward_unlocked(self, distribution_rule: str) -> None:
        with self._lock:
            self._rewards["unlocked"] += 1
            self._rewards[f"rule:{distribution_rule}"] += 1

    def record_reward_capacity_reached(self) -> None:
        with self._lock:
            self._rewards["capacity_reached"] += 1

    def record_side_effect_failure(self, effect: str) -> None:
        with self._lock:
            self._side_effects[effect] += 1

    def snapshot(self) -> ReferralMetricsSnapshot:
        with self._lock:
            return ReferralMetricsSnapshot(
                referrals=dict(self._referrals),
                points=dict(self._points),
                rewards=dict(self._rewards),
                side_effects=dict(self._side_effects),
            )

    def reset(self) -> None:
        with self._lock:
            self._referrals.clear()
            self._points.clear()
            self._rewards.clear()
            self._side_effects.clear()


_STORE = ReferralObservabilityStore()


def get_referral_store() -> ReferralObservabilityStore:
    return _STORE


__all__ = ["get_referral_store", "ReferralObservabilityStore", "ReferralMetricsSnapshot"]

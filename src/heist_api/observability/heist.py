from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class HeistSnapshot:
    outcomes: Dict[str, int]
    errors: Dict[str, int]
    retries: Dict[str, int]
    side_effect_failures: Dict[str, int]
    points_transferred: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "outcomes": dict(self.outcomes),
            "errors": dict(self.errors),
            "retries": dict(self.retries),
            "sideEffectFailures": dict(self.side_effect_failures),
            "pointsTransferred": self.points_transferred,
        }


class HeistObservabilityStore:
    """Collect heist executor telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._outcomes: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, int] = defaultdict(int)
        self._retries: Dict[str, int] = defaultdict(int)
        self._side_effect_failures: Dict[str, int] = defaultdict(int)
        self._points_transferred = 0

    def record_outcome(self, status: str, points_stolen: int = 0) -> None:
        with self._lock:
            self._outcomes[status] += 1
            self._points_transferred += max(points_stolen, 0)

    def record_error(self, code: str) -> None:
        with self._lock:
            self._errors[code] += 1

    def record_retry(self, reason: str) -> None:
        with self._lock:
            self._retries[reason] += 1

    def record_side_effect_failure(self, label: str) -> None:
        with self._lock:
            self._side_effect_failures[label] += 1

    def snapshot(self) -> HeistSnapshot:
        with self._lock:
            return HeistSnapshot(
                outcomes=dict(self._outcomes),
                errors=dict(self._errors),
                retries=dict(self._retries),
                side_effect_failures=dict(self._side_effect_failures),
                points_transferred=self._points_transferred,
            )

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._errors.clear()
            self._retries.clear()
            self._side_effect_failures.clear()
            self._points_transferred = 0


_STORE = HeistObservabilityStore()


def get_heist_store() -> HeistObservabilityStore:
    return _STORE


__all__ = ["get_heist_store", "HeistObservabilityStore", "HeistSnapshot"]

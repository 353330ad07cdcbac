"""
In-process counters for the booking workflow, exported as Prometheus text.

Families:
- booking_status_transitions_total{from_status, to_status}
- booking_status_conflicts_total{operation}
- crew_assignments_total{outcome}: assigned, accepted, rejected, refused
- notifications_created_total{type}

Usage:
    from carwash.lib.metrics import get_metrics_collector

    get_metrics_collector().increment_transitions("confirmed", "crew_assigned")
    text = get_metrics_collector().export_prometheus()
"""

from collections import Counter, defaultdict
from threading import Lock
from typing import DefaultDict, Dict, Tuple

LabelSet = Tuple[Tuple[str, str], ...]

TRANSITIONS = "booking_status_transitions_total"
CONFLICTS = "booking_status_conflicts_total"
ASSIGNMENTS = "crew_assignments_total"
NOTIFICATIONS = "notifications_created_total"

HELP_TEXTS = {
    TRANSITIONS: "Total number of booking status transitions",
    CONFLICTS: "Total number of booking writes rejected as concurrent modifications",
    ASSIGNMENTS: "Total number of crew assignment events",
    NOTIFICATIONS: "Total number of notifications created",
}


def _label_set(labels: Dict[str, str]) -> LabelSet:
    return tuple(sorted((key, str(value).lower()) for key, value in labels.items()))


class MetricsCollector:
    """Thread-safe counter registry, one Counter per metric family."""

    def __init__(self):
        self._lock = Lock()
        self._families: DefaultDict[str, Counter] = defaultdict(Counter)

    def _increment(self, family: str, amount: int = 1, **labels: str) -> None:
        with self._lock:
            self._families[family][_label_set(labels)] += amount

    def increment_transitions(self, from_status: str, to_status: str, amount: int = 1):
        """Count a committed booking status change."""
        self._increment(TRANSITIONS, amount, from_status=from_status, to_status=to_status)

    def increment_conflicts(self, operation: str, amount: int = 1):
        self._increment(CONFLICTS, amount, operation=operation)

    def increment_assignments(self, outcome: str, amount: int = 1):
        """
        Count crew assignment events.

        Args:
            outcome: assigned, accepted, rejected, or refused (capacity/busy)
            amount: Increment amount
        """
        self._increment(ASSIGNMENTS, amount, outcome=outcome)

    def increment_notifications(self, notification_type: str, amount: int = 1):
        self._increment(NOTIFICATIONS, amount, type=notification_type)

    def get_counter_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        with self._lock:
            family = self._families.get(metric_name)
            return family[_label_set(labels)] if family else 0

    def export_prometheus(self) -> str:
        """
        Render every non-empty family in the Prometheus text exposition format.

        Families are sorted by name and samples by label values, so the output
        is stable between scrapes.
        """
        with self._lock:
            snapshot = {name: dict(samples) for name, samples in self._families.items() if samples}

        lines = []
        for name in sorted(snapshot):
            lines.append(f"# HELP {name} {HELP_TEXTS.get(name, 'Counter metric')}")
            lines.append(f"# TYPE {name} counter")
            for label_set, value in sorted(snapshot[name].items()):
                rendered = ",".join(f'{key}="{val}"' for key, val in label_set)
                lines.append(f"{name}{{{rendered}}} {value}")
            lines.append("")
        return "\n".join(lines)

    def reset_all(self):
        with self._lock:
            self._families.clear()


_metrics_collector: MetricsCollector | None = None
_metrics_lock = Lock()


def get_metrics_collector() -> MetricsCollector:
    """Process-wide collector, created on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        with _metrics_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics():
    """Zero the process-wide collector (tests)."""
    with _metrics_lock:
        if _metrics_collector is not None:
            _metrics_collector.reset_all()

"""
repvote/metrics.py

Prometheus metrics collection for repvote.

Counts poll and vote traffic from hub notifications and settlement
outcomes reported by the VotingService, and renders them in the
Prometheus text exposition format.
"""

import time
import logging
from typing import Any, Dict, Optional

from .protocol.notifications import ClaimPaid, NotificationHub, PollCreated, VoteRecorded

logger = logging.getLogger("repvote.metrics")


class MetricsCollector:
    """
    Prometheus metrics collector for repvote.

    Usage:
        metrics = MetricsCollector()
        metrics.attach(hub)

        metrics.record_outcome("vote", "confirmed", latency_seconds=0.4)
        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "repvote_polls_created_total": {
            "type": "counter",
            "help": "Total number of polls created",
        },
        "repvote_votes_recorded_total": {
            "type": "counter",
            "help": "Total number of votes recorded by poll ledgers",
        },
        "repvote_weight_recorded_total": {
            "type": "counter",
            "help": "Sum of recorded vote weights (1.0 == 1e18)",
        },
        "repvote_votes_rejected_total": {
            "type": "counter",
            "help": "Vote submissions that did not settle, by error category",
        },
        "repvote_claims_paid_total": {
            "type": "counter",
            "help": "Total number of successful claims",
        },
        "repvote_paid_amount_total": {
            "type": "counter",
            "help": "Total token amount paid out by claims",
        },
        "repvote_settlements_total": {
            "type": "counter",
            "help": "Settlement outcomes by kind and status",
        },
        "repvote_confirmation_latency_seconds": {
            "type": "histogram",
            "help": "Time from submission to settled outcome",
        },
        "repvote_uptime_seconds": {
            "type": "counter",
            "help": "Process uptime in seconds",
        },
    }

    LATENCY_BUCKETS = [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]

    def __init__(self):
        self._start_time = time.time()
        self._hub: Optional[NotificationHub] = None
        self.reset_counters()

    def attach(self, hub: NotificationHub) -> None:
        """Count PollCreated / VoteRecorded / ClaimPaid notifications from a hub."""
        self._hub = hub
        hub.add_listener(self._on_event)

    def detach(self) -> None:
        if self._hub is not None:
            self._hub.remove_listener(self._on_event)
            self._hub = None

    def _on_event(self, event: Any) -> None:
        if isinstance(event, PollCreated):
            self._polls_created += 1
        elif isinstance(event, VoteRecorded):
            self._votes_recorded += 1
            self._weight_recorded += event.weight
        elif isinstance(event, ClaimPaid):
            self._claims_paid += 1
            self._paid_amount += event.amount

    def record_outcome(
        self,
        kind: str,
        status: str,
        latency_seconds: Optional[float] = None,
        category: Optional[str] = None,
    ) -> None:
        """
        Record a settlement outcome.

        Args:
            kind: "vote" or "claim"
            status: "confirmed", "rejected" or "failed"
            latency_seconds: Submission-to-outcome time
            category: Error category for non-confirmed votes
        """
        key = (kind, status)
        self._outcomes[key] = self._outcomes.get(key, 0) + 1
        if kind == "vote" and status != "confirmed":
            category = category or status
            self._rejections[category] = self._rejections.get(category, 0) + 1
        if latency_seconds is not None:
            self.record_latency(latency_seconds)

    def record_latency(self, latency_seconds: float) -> None:
        self._latency_sum += latency_seconds
        self._latency_count += 1
        for bucket in self.LATENCY_BUCKETS:
            if latency_seconds <= bucket:
                self._latency_counts[bucket] += 1
                break
        else:
            self._latency_counts[float('inf')] += 1

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        def header(name: str) -> None:
            metric_def = self.METRICS.get(name, {})
            lines.append(f"# HELP {name} {metric_def.get('help', '')}")
            lines.append(f"# TYPE {name} {metric_def.get('type', 'gauge')}")

        def add_metric(name: str, value: float) -> None:
            header(name)
            lines.append(f"{name} {value}")

        def add_labelled(name: str, samples: Dict[Any, int], label_names: tuple) -> None:
            header(name)
            for key, value in sorted(samples.items()):
                key = key if isinstance(key, tuple) else (key,)
                label_str = ",".join(f'{k}="{v}"' for k, v in zip(label_names, key))
                lines.append(f"{name}{{{label_str}}} {value}")

        add_metric("repvote_polls_created_total", self._polls_created)
        add_metric("repvote_votes_recorded_total", self._votes_recorded)
        add_metric("repvote_weight_recorded_total", self._weight_recorded)
        add_labelled("repvote_votes_rejected_total", self._rejections, ("category",))
        add_metric("repvote_claims_paid_total", self._claims_paid)
        add_metric("repvote_paid_amount_total", self._paid_amount)
        add_labelled("repvote_settlements_total", self._outcomes, ("kind", "status"))

        # Confirmation latency histogram
        name = "repvote_confirmation_latency_seconds"
        header(name)
        cumulative = 0
        for bucket in self.LATENCY_BUCKETS:
            cumulative += self._latency_counts[bucket]
            lines.append(f'{name}_bucket{{le="{bucket}"}} {cumulative}')
        cumulative += self._latency_counts[float('inf')]
        lines.append(f'{name}_bucket{{le="+Inf"}} {cumulative}')
        lines.append(f"{name}_sum {self._latency_sum}")
        lines.append(f"{name}_count {self._latency_count}")

        add_metric("repvote_uptime_seconds", time.time() - self._start_time)

        return "\n".join(lines) + "\n"

    def get_stats(self) -> Dict[str, Any]:
        """
        Get metrics as a dictionary (for JSON API).

        Returns:
            Dictionary of metric values
        """
        return {
            "polls_created": self._polls_created,
            "votes_recorded": self._votes_recorded,
            "weight_recorded": self._weight_recorded,
            "votes_rejected": dict(self._rejections),
            "claims_paid": self._claims_paid,
            "paid_amount": self._paid_amount,
            "settlements": {f"{kind}:{status}": count for (kind, status), count in self._outcomes.items()},
            "confirmation_latency_count": self._latency_count,
            "uptime_seconds": time.time() - self._start_time,
        }

    def reset_counters(self) -> None:
        """Reset all counters (useful for testing)."""
        self._polls_created = 0
        self._votes_recorded = 0
        self._weight_recorded = 0
        self._claims_paid = 0
        self._paid_amount = 0
        self._rejections: Dict[str, int] = {}
        self._outcomes: Dict[tuple, int] = {}
        self._latency_counts = {b: 0 for b in self.LATENCY_BUCKETS}
        self._latency_counts[float('inf')] = 0
        self._latency_sum = 0.0
        self._latency_count = 0

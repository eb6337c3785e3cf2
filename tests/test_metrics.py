"""
repvote/tests/test_metrics.py

Unit tests for the Prometheus metrics collector.
"""

from repvote.metrics import MetricsCollector
from repvote.protocol.notifications import ClaimPaid, NotificationHub, PollCreated, VoteRecorded


def poll_created(poll_id="p1"):
    return PollCreated(poll_id=poll_id, question="Q?", creator="alice", end_time=10)


class TestMetricsCollector:
    """Test MetricsCollector."""

    def test_counts_hub_events(self):
        hub = NotificationHub()
        metrics = MetricsCollector()
        metrics.attach(hub)

        hub.publish(poll_created())
        hub.publish(VoteRecorded(poll_id="p1", identity="alice", option=0, credits=9, weight=3, timestamp=1))
        hub.publish(ClaimPaid(poll_id="p1", identity="alice", amount=9, timestamp=2))

        stats = metrics.get_stats()
        assert stats["polls_created"] == 1
        assert stats["votes_recorded"] == 1
        assert stats["weight_recorded"] == 3
        assert stats["paid_amount"] == 9

        metrics.detach()
        hub.publish(poll_created("p2"))
        assert metrics.get_stats()["polls_created"] == 1

    def test_rejections_by_category(self):
        metrics = MetricsCollector()
        metrics.record_outcome("vote", "failed", category="validation")
        metrics.record_outcome("vote", "failed", category="validation")
        metrics.record_outcome("vote", "rejected")
        metrics.record_outcome("claim", "failed", category="state")

        stats = metrics.get_stats()
        assert stats["votes_rejected"] == {"validation": 2, "rejected": 1}
        assert stats["settlements"]["vote:failed"] == 2

    def test_prometheus_output(self):
        metrics = MetricsCollector()
        metrics.record_outcome("vote", "confirmed", latency_seconds=0.3)
        metrics.record_outcome("vote", "failed", latency_seconds=120.0, category="transport")

        output = metrics.collect()

        assert "# TYPE repvote_votes_recorded_total counter" in output
        assert 'repvote_settlements_total{kind="vote",status="confirmed"} 1' in output
        assert 'repvote_votes_rejected_total{category="transport"} 1' in output
        assert 'repvote_confirmation_latency_seconds_bucket{le="0.25"} 0' in output
        assert 'repvote_confirmation_latency_seconds_bucket{le="0.5"} 1' in output
        assert 'repvote_confirmation_latency_seconds_bucket{le="60.0"} 1' in output
        assert 'repvote_confirmation_latency_seconds_bucket{le="+Inf"} 2' in output
        assert "repvote_confirmation_latency_seconds_count 2" in output
        assert output.endswith("\n")

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.record_outcome("vote", "confirmed", latency_seconds=1.0)
        metrics.reset_counters()
        assert metrics.get_stats()["settlements"] == {}
        assert metrics.get_stats()["confirmation_latency_count"] == 0

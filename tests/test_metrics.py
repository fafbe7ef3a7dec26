"""Tests for the metrics collector."""

from prometheus_client import generate_latest

from posvault.observability.metrics import MetricsCollector


class TestMetricsCollector:

    def test_instances_do_not_collide(self):
        first = MetricsCollector()
        second = MetricsCollector()
        first.backups.labels(status="success").inc()
        assert first.sample("posvault_backups_total", {"status": "success"}) == 1.0
        assert second.sample("posvault_backups_total", {"status": "success"}) == 0.0

    def test_unobserved_sample_is_zero(self):
        assert MetricsCollector().sample("posvault_rollbacks_total", {"status": "failed"}) == 0.0

    def test_build_info(self):
        metrics = MetricsCollector()
        metrics.set_build_info("1.0.0", "device_a", "development")
        assert metrics.sample(
            "posvault_build_info",
            {"version": "1.0.0", "device_id": "device_a", "environment": "development"},
        ) == 1.0

    def test_exposition(self):
        metrics = MetricsCollector()
        metrics.pending_events.set(4)
        metrics.records_skipped.labels(table="users").inc(2)
        text = generate_latest(metrics.registry).decode()
        assert "posvault_sync_pending_events 4.0" in text
        assert 'posvault_restore_records_skipped_total{table="users"} 2.0' in text

"""
Unit tests for metrics collection and Prometheus export.
"""

import pytest
from mailroom.lib.metrics import MetricsCollector, get_metrics_collector, reset_metrics


@pytest.fixture
def metrics():
    """Fresh metrics collector for each test."""
    return MetricsCollector()


@pytest.mark.unit
def test_metrics_collector_initialization(metrics):
    assert metrics.export_prometheus() == ""


@pytest.mark.unit
def test_increment_emails(metrics):
    metrics.increment_emails(campaign_type="promotional", status="sent")
    metrics.increment_emails(campaign_type="promotional", status="sent", amount=4)
    metrics.increment_emails(campaign_type="promotional", status="failed")

    assert metrics.get_counter_value(
        "campaign_emails_total", {"campaign_type": "promotional", "status": "sent"}
    ) == 5
    assert metrics.get_counter_value(
        "campaign_emails_total", {"campaign_type": "promotional", "status": "failed"}
    ) == 1


@pytest.mark.unit
def test_zero_amount_is_ignored(metrics):
    metrics.increment_emails("lifecycle", "sent", amount=0)

    assert metrics.export_prometheus() == ""


@pytest.mark.unit
def test_increment_chunks_transitions_stalls_and_runs(metrics):
    metrics.increment_chunks("completed")
    metrics.increment_transitions("draft", "sending")
    metrics.increment_stalls()
    metrics.increment_stalls()
    metrics.increment_cron_runs("skipped")

    assert metrics.get_counter_value("campaign_chunks_total", {"outcome": "completed"}) == 1
    assert metrics.get_counter_value(
        "campaign_transitions_total", {"from_status": "draft", "to_status": "sending"}
    ) == 1
    assert metrics.get_counter_value("campaign_stalls_total", {}) == 2
    assert metrics.get_counter_value("email_cron_runs_total", {"outcome": "skipped"}) == 1


@pytest.mark.unit
def test_export_prometheus_format(metrics):
    metrics.increment_emails("preorder-conversion", "sent")
    metrics.increment_stalls()

    output = metrics.export_prometheus()

    assert "# HELP campaign_emails_total Campaign recipients processed by outcome" in output
    assert "# TYPE campaign_emails_total counter" in output
    assert 'campaign_emails_total{campaign_type="preorder-conversion",status="sent"} 1' in output
    # Unlabelled counters have no braces
    assert "\ncampaign_stalls_total 1\n" in output


@pytest.mark.unit
def test_export_prometheus_metrics_sorted_by_name(metrics):
    metrics.increment_cron_runs("completed")
    metrics.increment_chunks("processed")

    output = metrics.export_prometheus()

    assert output.index("campaign_chunks_total") < output.index("email_cron_runs_total")


@pytest.mark.unit
def test_reset_all_clears_counters(metrics):
    metrics.increment_emails("promotional", "sent", amount=100)

    metrics.reset_all()

    assert metrics.get_counter_value(
        "campaign_emails_total", {"campaign_type": "promotional", "status": "sent"}
    ) == 0
    assert metrics.export_prometheus() == ""


@pytest.mark.unit
def test_get_metrics_collector_singleton():
    collector1 = get_metrics_collector()
    collector2 = get_metrics_collector()

    assert collector1 is collector2


@pytest.mark.unit
def test_reset_metrics_clears_singleton():
    get_metrics_collector().increment_stalls()

    reset_metrics()

    assert get_metrics_collector().get_counter_value("campaign_stalls_total", {}) == 0


@pytest.mark.unit
def test_case_normalization(metrics):
    metrics.increment_emails("PROMOTIONAL", "Sent")

    assert metrics.get_counter_value(
        "campaign_emails_total", {"campaign_type": "promotional", "status": "sent"}
    ) == 1


@pytest.mark.unit
def test_nonexistent_counter_returns_zero(metrics):
    assert metrics.get_counter_value("nonexistent_metric", {"label": "value"}) == 0

"""
Prometheus-compatible metrics for the campaign engine.

Tracks:
- Campaign email outcomes (sent, failed, unsubscribed-excluded)
- Chunks processed and campaign status transitions
- Stalled campaigns and cron runs

Usage:
    from mailroom.lib.metrics import get_metrics_collector

    metrics = get_metrics_collector()
    metrics.increment_emails(campaign_type="promotional", status="sent")
    prometheus_output = metrics.export_prometheus()
"""

from typing import Dict, Tuple
from threading import Lock


class MetricsCollector:
    """
    Prometheus-style counters, thread-safe for concurrent increments.

    Counters:
    - campaign_emails_total: per-recipient outcomes (labels: campaign_type, status)
    - campaign_chunks_total: processed chunks (labels: outcome)
    - campaign_transitions_total: lifecycle transitions (labels: from_status, to_status)
    - campaign_stalls_total: stalled campaigns detected
    - email_cron_runs_total: cron invocations (labels: outcome)
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = {}

    def _get_counter_key(self, metric_name: str, labels: Dict[str, str]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        sorted_labels = tuple(sorted(labels.items()))
        return (metric_name, sorted_labels)

    def _increment(self, metric_name: str, labels: Dict[str, str], amount: int = 1):
        key = self._get_counter_key(metric_name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def _get_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        key = self._get_counter_key(metric_name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    # ===== Campaign Metrics =====

    def increment_emails(self, campaign_type: str, status: str, amount: int = 1):
        """
        Increment per-recipient outcome counter.

        Args:
            campaign_type: preorder-conversion, lifecycle or promotional
            status: sent, failed or unsubscribed-excluded
            amount: Increment amount (default 1)
        """
        if amount <= 0:
            return
        labels = {
            "campaign_type": campaign_type.lower(),
            "status": status.lower(),
        }
        self._increment("campaign_emails_total", labels, amount)

    def increment_chunks(self, outcome: str = "processed", amount: int = 1):
        """Increment processed chunk counter (outcome: processed, completed, skipped)."""
        self._increment("campaign_chunks_total", {"outcome": outcome.lower()}, amount)

    def increment_transitions(self, from_status: str, to_status: str):
        """Count a lifecycle transition."""
        labels = {"from_status": from_status.lower(), "to_status": to_status.lower()}
        self._increment("campaign_transitions_total", labels)

    def increment_stalls(self, amount: int = 1):
        """Count stalled campaigns detected by the cron."""
        self._increment("campaign_stalls_total", {}, amount)

    def increment_cron_runs(self, outcome: str = "completed"):
        """Count cron invocations (outcome: completed, skipped, failed)."""
        self._increment("email_cron_runs_total", {"outcome": outcome.lower()})

    # ===== Export =====

    def export_prometheus(self) -> str:
        """
        Export all metrics in Prometheus text format.

        Returns:
            Prometheus-compatible text output
        """
        output_lines = []

        metrics_by_name: Dict[str, list] = {}
        with self._lock:
            for (metric_name, labels_tuple), value in self._counters.items():
                metrics_by_name.setdefault(metric_name, []).append((dict(labels_tuple), value))

        for metric_name in sorted(metrics_by_name.keys()):
            output_lines.append(f"# HELP {metric_name} {self._get_help_text(metric_name)}")
            output_lines.append(f"# TYPE {metric_name} counter")

            for labels_dict, value in sorted(metrics_by_name[metric_name], key=lambda x: str(x[0])):
                if labels_dict:
                    labels_str = ",".join([f'{k}="{v}"' for k, v in sorted(labels_dict.items())])
                    output_lines.append(f"{metric_name}{{{labels_str}}} {value}")
                else:
                    output_lines.append(f"{metric_name} {value}")

            output_lines.append("")

        return "\n".join(output_lines)

    def _get_help_text(self, metric_name: str) -> str:
        help_texts = {
            "campaign_emails_total": "Campaign recipients processed by outcome",
            "campaign_chunks_total": "Campaign chunks processed",
            "campaign_transitions_total": "Campaign lifecycle transitions",
            "campaign_stalls_total": "Stalled sending campaigns detected",
            "email_cron_runs_total": "Email cron invocations",
        }
        return help_texts.get(metric_name, "Counter metric")

    def get_counter_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        """Get current value of a specific counter."""
        return self._get_value(metric_name, labels)

    def reset_all(self):
        """Reset all counters (for testing)."""
        with self._lock:
            self._counters.clear()


# Global singleton instance
_metrics_collector: MetricsCollector | None = None
_metrics_lock = Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton."""
    global _metrics_collector
    if _metrics_collector is None:
        with _metrics_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics():
    """Reset global metrics collector (for testing)."""
    with _metrics_lock:
        if _metrics_collector is not None:
            _metrics_collector.reset_all()

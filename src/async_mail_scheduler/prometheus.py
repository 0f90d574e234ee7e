# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail scheduler.

All metrics use the ``gms_`` prefix.

Metrics exposed:
    - ``gms_sent_total``: Messages delivered.
    - ``gms_retried_total``: Failed attempts that were rescheduled.
    - ``gms_failed_total``: Messages abandoned, labeled by ``reason``
      (``exhausted`` or ``permanent``).
    - ``gms_skipped_total``: Dispatches skipped because the claim was lost.
    - ``gms_ticks_total``: Scheduler ticks executed.
    - ``gms_due_messages``: Messages due for dispatch at the last tick.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Prometheus metrics collector for the scheduler and dispatcher.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private
                registry is created when omitted, so several engines can
                live in one process (and in tests).
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("gms_sent_total", "Total delivered messages", registry=self.registry)
        self.retried = Counter("gms_retried_total", "Total failed attempts rescheduled", registry=self.registry)
        self.failed = Counter(
            "gms_failed_total",
            "Total messages abandoned after a failed attempt",
            ["reason"],
            registry=self.registry,
        )
        self.skipped = Counter("gms_skipped_total", "Total dispatches skipped on a lost claim", registry=self.registry)
        self.ticks = Counter("gms_ticks_total", "Total scheduler ticks", registry=self.registry)
        self.due = Gauge("gms_due_messages", "Messages due for dispatch", registry=self.registry)

    def inc_sent(self) -> None:
        self.sent.inc()

    def inc_retried(self) -> None:
        self.retried.inc()

    def inc_failed(self, reason: str) -> None:
        """Increment the abandoned counter.

        Args:
            reason: ``exhausted`` or ``permanent``; falls back to "unknown".
        """
        self.failed.labels(reason=reason or "unknown").inc()

    def inc_skipped(self) -> None:
        self.skipped.inc()

    def inc_ticks(self) -> None:
        self.ticks.inc()

    def set_due(self, value: int) -> None:
        self.due.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)

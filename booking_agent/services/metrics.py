"""CloudWatch custom metrics emitter with background batching.

Two families of metrics are published:

* ``ExternalAPI/*`` for every call to an external collaborator
  (``nexhealth``, ``anthropic``): request count, latency, error count.
* ``ToolCall/*`` for every tool call the dispatcher answers: count per tool
  and outcome (``success`` or an error category), and latency per tool.

Design
------
* Data points are collected in a thread-safe in-memory buffer.
* When enabled, a daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS``.  Otherwise points are logged at DEBUG and
  dropped on flush.
* Each ``put_metric_data`` call sends up to 1 000 data points.

Usage
-----
>>> metrics = MetricsClient()
>>> metrics.record_success("nexhealth", "GET /appointment_slots", latency_ms=123.4)
>>> metrics.record_tool_call("hold_slot", outcome="CONFLICT", latency_ms=410.0)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "DentalVoiceBooking"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**values: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in values.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External collaborators ─────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external API call."""
        now = datetime.now(UTC)
        self._append("ExternalAPI/RequestCount", _dims(Service=service, Status="success"), 1, "Count", now)
        self._append(
            "ExternalAPI/Latency", _dims(Service=service, Operation=operation),
            latency_ms, "Milliseconds", now,
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external API call."""
        now = datetime.now(UTC)
        self._append("ExternalAPI/RequestCount", _dims(Service=service, Status="failure"), 1, "Count", now)
        self._append("ExternalAPI/ErrorCount", _dims(Service=service, ErrorType=error_type), 1, "Count", now)
        if latency_ms > 0:
            self._append(
                "ExternalAPI/Latency", _dims(Service=service, Operation=operation),
                latency_ms, "Milliseconds", now,
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Tool calls ────────────────────────────────────────────────────

    def record_tool_call(self, tool: str, outcome: str, latency_ms: float) -> None:
        """Record one answered tool call.  *outcome* is ``success`` or a category."""
        now = datetime.now(UTC)
        self._append("ToolCall/Count", _dims(Tool=tool, Outcome=outcome), 1, "Count", now)
        self._append("ToolCall/Latency", _dims(Tool=tool), latency_ms, "Milliseconds", now)
        logger.debug("Metric: tool %s outcome=%s latency=%.1fms", tool, outcome, latency_ms)

    # ── Flushing ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def _append(
        self,
        name: str,
        dimensions: list[dict[str, str]],
        value: float,
        unit: str,
        timestamp: datetime,
    ) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)

"""Prometheus metrics for ingestion, the worker pool and the tool layer.

All counters live in one module so registration happens exactly once per
process.  Routers and services simply ``from orgpilot.metrics import …``
and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Gauge
from prometheus_client import Histogram

slack_events_total = Counter(
    "slack_events_total",
    "Slack event deliveries received",
    labelnames=("outcome",),  # accepted | duplicate | ignored
)

jobs_finished_total = Counter(
    "jobs_finished_total",
    "Jobs that reached a terminal status",
    labelnames=("status",),
)

queue_retries_total = Counter(
    "queue_retries_total",
    "Queue entries rescheduled after a worker failure",
)

tool_calls_total = Counter(
    "tool_calls_total",
    "Tool executions requested by the model",
    labelnames=("tool", "outcome"),  # ok | error
)

cache_lookups_total = Counter(
    "cache_lookups_total",
    "Cache lookups by tier",
    labelnames=("tier", "result"),  # hit | miss
)

dispatch_queue_depth = Gauge(
    "dispatch_queue_depth",
    "Queue entries waiting or being worked on",
)

agent_turns = Histogram(
    "agent_turns",
    "Model turns used per agent loop run",
    buckets=(1, 2, 3, 4, 5, 6, 8, 10),
)

__all__ = [
    "agent_turns",
    "cache_lookups_total",
    "dispatch_queue_depth",
    "jobs_finished_total",
    "queue_retries_total",
    "slack_events_total",
    "tool_calls_total",
]

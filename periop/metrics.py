"""Prometheus metrics shared across the service."""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


WINDOW_EVALUATIONS_TOTAL = _get_or_create_metric(
    Counter,
    "periop_window_evaluations_total",
    "Instruction windows evaluated while listing notifications",
    ("active",),
)

WINDOW_DEGRADED_TOTAL = _get_or_create_metric(
    Counter,
    "periop_window_degraded_total",
    "Instruction windows that could not be interpreted",
    ("reason",),
)

PILL_CHECKS_TOTAL = _get_or_create_metric(
    Counter,
    "periop_pill_checks_total",
    "Pill photos checked against the prescribed medication list",
    ("outcome",),
)

GUIDELINE_BROADCASTS_TOTAL = _get_or_create_metric(
    Counter,
    "periop_guideline_broadcasts_total",
    "Guideline update events pushed to websocket clients",
    ("action",),
)


__all__ = [
    "WINDOW_EVALUATIONS_TOTAL",
    "WINDOW_DEGRADED_TOTAL",
    "PILL_CHECKS_TOTAL",
    "GUIDELINE_BROADCASTS_TOTAL",
]

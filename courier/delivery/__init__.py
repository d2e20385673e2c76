"""Delivery-status reconciliation and provider health."""

from .health import HealthState, ProviderHealthService, classify
from .reconciler import DeliveryReconciler, ReconcileOutcome
from .status import can_transition, normalize_raw_status, rank

__all__ = [
    "DeliveryReconciler",
    "HealthState",
    "ProviderHealthService",
    "ReconcileOutcome",
    "can_transition",
    "classify",
    "normalize_raw_status",
    "rank",
]

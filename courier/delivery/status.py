"""Delivery-status lifecycle ordering and raw provider status mapping."""

from __future__ import annotations

from ..models import DeliveryStatus

RANKS: dict[str, int] = {
    DeliveryStatus.QUEUED.value: 0,
    DeliveryStatus.SENT.value: 1,
    DeliveryStatus.DELIVERED.value: 2,
    DeliveryStatus.FAILED.value: 2,
}

TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value})

RAW_STATUS_MAP: dict[str, str] = {
    "accepted": DeliveryStatus.QUEUED.value,
    "queued": DeliveryStatus.QUEUED.value,
    "scheduled": DeliveryStatus.QUEUED.value,
    "sending": DeliveryStatus.SENT.value,
    "sent": DeliveryStatus.SENT.value,
    "delivered": DeliveryStatus.DELIVERED.value,
    "read": DeliveryStatus.DELIVERED.value,
    "received": DeliveryStatus.DELIVERED.value,
    "failed": DeliveryStatus.FAILED.value,
    "undelivered": DeliveryStatus.FAILED.value,
    "canceled": DeliveryStatus.FAILED.value,
    "bounced": DeliveryStatus.FAILED.value,
}


def rank(status: str | None) -> int:
    """Lifecycle position; unknown or missing statuses rank below queued."""

    if status is None:
        return -1
    return RANKS.get(status, -1)


def can_transition(current: str | None, proposed: str) -> bool:
    """Whether ``proposed`` may replace ``current``.

    Only forward moves are accepted, so callbacks arriving out of order can
    never pull a message back. ``delivered`` and ``failed`` share the terminal
    rank and exclude each other once set.
    """

    if proposed not in RANKS or proposed == current:
        return False
    if rank(proposed) > rank(current):
        return True
    return current == DeliveryStatus.SENT.value and proposed in TERMINAL_STATUSES


def normalize_raw_status(raw_status: str | None) -> str | None:
    """Map a provider status string onto :class:`DeliveryStatus`, or ``None``."""

    if not raw_status:
        return None
    return RAW_STATUS_MAP.get(raw_status.strip().lower())


__all__ = ["RANKS", "RAW_STATUS_MAP", "TERMINAL_STATUSES", "can_transition", "normalize_raw_status", "rank"]

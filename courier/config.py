"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


@dataclasses.dataclass(frozen=True)
class Settings:
    """Settings shared by the API, the services and the outbox worker."""

    database_url: str | None
    default_phone_region: str = "US"
    outbox_batch_size: int = 10
    outbox_poll_interval_seconds: float = 0.0
    outbox_max_attempts: int = 5
    outbox_retry_base_seconds: int = 30
    system_participant_name: str = "Courier Assistant"
    preview_length: int = 140


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable '{name}' must be an integer.") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment with defaults for development."""

    poll_raw = os.getenv("OUTBOX_POLL_INTERVAL_SECONDS", "0").strip() or "0"
    try:
        poll_interval = float(poll_raw)
    except ValueError as exc:
        raise RuntimeError(
            "Environment variable 'OUTBOX_POLL_INTERVAL_SECONDS' must be a number."
        ) from exc
    return Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        default_phone_region=(os.getenv("DEFAULT_PHONE_REGION") or "US").upper(),
        outbox_batch_size=max(1, _get_int("OUTBOX_BATCH_SIZE", 10)),
        outbox_poll_interval_seconds=max(0.0, poll_interval),
        outbox_max_attempts=max(1, _get_int("OUTBOX_MAX_ATTEMPTS", 5)),
        outbox_retry_base_seconds=max(1, _get_int("OUTBOX_RETRY_BASE_SECONDS", 30)),
        system_participant_name=os.getenv("SYSTEM_PARTICIPANT_NAME", "Courier Assistant"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["Settings", "get_settings", "reset_settings_cache"]

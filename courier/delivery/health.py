"""Provider health derived from the last success and failure timestamps."""

from __future__ import annotations

import datetime as dt
import enum
import logging
from typing import Any

from sqlalchemy import case, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..models import ProviderHealthRecord

logger = logging.getLogger(__name__)


class HealthState(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def classify(record: ProviderHealthRecord | None) -> HealthState:
    """Unknown without signals; degraded while the latest signal is a failure."""

    if record is None or (record.last_success_at is None and record.last_failure_at is None):
        return HealthState.UNKNOWN
    if record.last_failure_at is not None and (
        record.last_success_at is None or record.last_failure_at > record.last_success_at
    ):
        return HealthState.DEGRADED
    return HealthState.HEALTHY


class ProviderHealthService:
    """Upsert and read :class:`ProviderHealthRecord` rows."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def record_success(self, provider: str, *, at: dt.datetime | None = None) -> None:
        self._upsert(provider, "last_success_at", at or _utcnow())

    def record_failure(self, provider: str, detail: str | None = None, *, at: dt.datetime | None = None) -> None:
        self._upsert(provider, "last_failure_at", at or _utcnow(), last_failure_detail=detail)

    def get(self, provider: str) -> ProviderHealthRecord | None:
        return self._session.get(ProviderHealthRecord, provider, populate_existing=True)

    def get_provider_health(self, provider: str) -> HealthState:
        return classify(self.get(provider))

    def list_provider_health(self) -> list[tuple[ProviderHealthRecord, HealthState]]:
        records = self._session.scalars(
            select(ProviderHealthRecord)
            .order_by(ProviderHealthRecord.provider)
            .execution_options(populate_existing=True)
        )
        return [(record, classify(record)) for record in records]

    def _upsert(self, provider: str, column: str, moment: dt.datetime, **extra: Any) -> None:
        """Insert or merge one signal; an older ``moment`` never replaces a newer one."""

        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:  # pragma: no cover - only the two supported backends
            raise RuntimeError(f"Unsupported dialect for provider health: {dialect}")
        stored = ProviderHealthRecord.__table__.c
        stmt = insert(ProviderHealthRecord).values(
            provider=provider, updated_at=_utcnow(), **{column: moment}, **extra
        )
        newer = or_(stored[column].is_(None), stmt.excluded[column] >= stored[column])
        merged: dict[str, Any] = {"updated_at": stmt.excluded.updated_at}
        for name in (column, *extra):
            merged[name] = case((newer, stmt.excluded[name]), else_=stored[name])
        stmt = stmt.on_conflict_do_update(index_elements=[ProviderHealthRecord.provider], set_=merged)
        self._session.execute(stmt)
        logger.debug("provider_health.updated provider=%s signal=%s at=%s", provider, column, moment.isoformat())


__all__ = ["HealthState", "ProviderHealthService", "classify"]

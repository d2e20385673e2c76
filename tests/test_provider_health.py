import datetime as dt

from courier.delivery import HealthState, ProviderHealthService, classify
from courier.models import ProviderHealthRecord


def test_health_lifecycle_unknown_degraded_healthy(session, now):
    health = ProviderHealthService(session)

    assert health.get_provider_health("twilio") is HealthState.UNKNOWN

    health.record_failure("twilio", "timeout", at=now)
    assert health.get_provider_health("twilio") is HealthState.DEGRADED

    health.record_success("twilio", at=now + dt.timedelta(minutes=1))
    assert health.get_provider_health("twilio") is HealthState.HEALTHY

    record = health.get("twilio")
    assert record.last_failure_detail == "timeout"
    assert record.last_success_at == now + dt.timedelta(minutes=1)


def test_failure_newer_than_success_degrades(session, now):
    health = ProviderHealthService(session)
    health.record_success("sendgrid", at=now)
    assert health.get_provider_health("sendgrid") is HealthState.HEALTHY

    health.record_failure("sendgrid", "550 mailbox unavailable", at=now + dt.timedelta(seconds=1))

    assert health.get_provider_health("sendgrid") is HealthState.DEGRADED


def test_upsert_keeps_one_row_per_provider(session, now):
    health = ProviderHealthService(session)
    for offset in range(3):
        health.record_success("meta", at=now + dt.timedelta(seconds=offset))
    health.record_success("twilio", at=now)

    listed = health.list_provider_health()

    assert [record.provider for record, _ in listed] == ["meta", "twilio"]
    assert listed[0][0].last_success_at == now + dt.timedelta(seconds=2)
    assert all(state is HealthState.HEALTHY for _, state in listed)


def test_classify_edge_cases(now):
    assert classify(None) is HealthState.UNKNOWN
    assert classify(ProviderHealthRecord(provider="x")) is HealthState.UNKNOWN
    assert classify(ProviderHealthRecord(provider="x", last_failure_at=now)) is HealthState.DEGRADED
    assert classify(ProviderHealthRecord(provider="x", last_success_at=now)) is HealthState.HEALTHY
    assert (
        classify(ProviderHealthRecord(provider="x", last_success_at=now, last_failure_at=now))
        is HealthState.HEALTHY
    )


def test_late_signals_never_move_timestamps_backwards(session, now):
    health = ProviderHealthService(session)
    health.record_failure("twilio", "30008 unknown error", at=now)
    health.record_success("twilio", at=now + dt.timedelta(minutes=5))

    health.record_success("twilio", at=now - dt.timedelta(minutes=5))
    health.record_failure("twilio", "30003 unreachable", at=now - dt.timedelta(minutes=1))

    record = health.get("twilio")
    assert health.get_provider_health("twilio") is HealthState.HEALTHY
    assert record.last_success_at == now + dt.timedelta(minutes=5)
    assert record.last_failure_at == now
    assert record.last_failure_detail == "30008 unknown error"


def test_newer_failure_replaces_detail(session, now):
    health = ProviderHealthService(session)
    health.record_failure("sendgrid", "timeout", at=now)
    health.record_failure("sendgrid", "550 mailbox unavailable", at=now + dt.timedelta(seconds=30))

    record = health.get("sendgrid")
    assert record.last_failure_at == now + dt.timedelta(seconds=30)
    assert record.last_failure_detail == "550 mailbox unavailable"

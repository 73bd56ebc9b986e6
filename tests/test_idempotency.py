"""Ledger contract: first-writer-wins claims and the fail-open/fail-soft policy."""

from unittest.mock import MagicMock

import pytest
import redis
from sqlalchemy.dialects import postgresql

from paystream.common.metrics import idempotency_fail_open_total, idempotency_record_failures_total
from paystream.services.payments.idempotency import RedisIdempotencyLedger, SqlIdempotencyLedger
from paystream.services.payments.models import IdempotencyKey


def counter_value(counter, **labels) -> float:
    return counter.labels(**labels)._value.get()


def test_claim_is_first_writer_wins(ledger):
    assert ledger.claim("k", "p1") == "p1"
    assert ledger.claim("k", "p2") == "p1"
    assert ledger.lookup("k") == "p1"


def test_release_only_drops_own_claim(ledger):
    ledger.claim("k", "p1")

    ledger.release("k", "p2")
    assert ledger.lookup("k") == "p1"

    ledger.release("k", "p1")
    assert ledger.lookup("k") is None


def test_blank_key_is_never_recorded(ledger):
    assert ledger.lookup("") is None
    assert ledger.claim("", "p1") == "p1"
    ledger.record("", "p1")
    assert ledger.entries == {}


def test_lookup_fails_open_and_counts(ledger):
    ledger.down = True
    before = counter_value(idempotency_fail_open_total, service="test", operation="lookup")

    assert ledger.lookup("k") is None
    assert counter_value(idempotency_fail_open_total, service="test", operation="lookup") == before + 1


def test_claim_fails_open_with_callers_id(ledger):
    ledger.down = True

    assert ledger.claim("k", "p1") == "p1"


def test_record_fails_soft_and_counts(ledger):
    ledger.claim("k", "p1")
    ledger.record_down = True
    before = counter_value(idempotency_record_failures_total, service="test", operation="record")

    ledger.record("k", "p1")

    assert counter_value(idempotency_record_failures_total, service="test", operation="record") == before + 1


@pytest.fixture
def redis_client():
    client = MagicMock(spec=redis.Redis)
    client.refresh = MagicMock(return_value=1)
    client.delete_if_owner = MagicMock(return_value=1)
    client.register_script.side_effect = [client.refresh, client.delete_if_owner]
    return client


@pytest.fixture
def redis_ledger(redis_client):
    return RedisIdempotencyLedger(redis_client, ttl_seconds=120, service_name="test")


def test_redis_claim_uses_set_nx_with_ttl(redis_ledger, redis_client):
    redis_client.set.return_value = True

    assert redis_ledger.claim("k", "p1") == "p1"
    redis_client.set.assert_called_once_with("idempotency:payment:k", "p1", nx=True, ex=120)


def test_redis_claim_returns_existing_owner(redis_ledger, redis_client):
    redis_client.set.return_value = None
    redis_client.get.return_value = "p0"

    assert redis_ledger.claim("k", "p1") == "p0"


def test_redis_claim_retries_when_owner_vanishes(redis_ledger, redis_client):
    redis_client.set.side_effect = [None, True]
    redis_client.get.return_value = None

    assert redis_ledger.claim("k", "p1") == "p1"
    assert redis_client.set.call_count == 2


def test_redis_lookup_fails_open_on_connection_error(redis_ledger, redis_client):
    redis_client.get.side_effect = redis.ConnectionError("refused")

    assert redis_ledger.lookup("k") is None


def test_redis_record_refreshes_ttl_for_owner(redis_ledger, redis_client):
    redis_ledger.record("k", "p1")

    redis_client.refresh.assert_called_once_with(keys=["idempotency:payment:k"], args=["p1", 120])


def test_redis_record_for_lost_claim_fails_soft(redis_ledger, redis_client):
    redis_client.refresh.return_value = 0
    before = counter_value(idempotency_record_failures_total, service="test", operation="record")

    redis_ledger.record("k", "p1")

    assert counter_value(idempotency_record_failures_total, service="test", operation="record") == before + 1


def test_redis_release_is_owner_guarded(redis_ledger, redis_client):
    redis_ledger.release("k", "p1")

    redis_client.delete_if_owner.assert_called_once_with(keys=["idempotency:payment:k"], args=["p1"])


def test_sql_ledger_lookup_fails_open_when_database_is_down():
    session_factory = MagicMock(side_effect=ConnectionError("could not connect"))
    sql_ledger = SqlIdempotencyLedger(session_factory, ttl_seconds=60, service_name="test")

    assert sql_ledger.lookup("k") is None
    assert sql_ledger.claim("k", "p1") == "p1"
    sql_ledger.record("k", "p1")
    sql_ledger.release("k", "p1")


def test_sql_ledger_claim_returns_existing_owner():
    db = MagicMock()
    # ON CONFLICT did nothing (live row), then the owner read finds it.
    db.execute.return_value.scalar_one_or_none.side_effect = [None, "p0"]
    session_factory = MagicMock()
    session_factory.return_value.__enter__.return_value = db
    sql_ledger = SqlIdempotencyLedger(session_factory, ttl_seconds=60, service_name="test")

    assert sql_ledger.claim("k", "p1") == "p0"
    db.commit.assert_called_once()


def bound_values(execute_call) -> set:
    statement = execute_call.args[0]
    return set(statement.compile(dialect=postgresql.dialect()).params.values())


def test_sql_ledger_stores_long_keys_as_fixed_length_digest():
    long_key = "k" * 300
    db = MagicMock()
    db.execute.return_value.scalar_one_or_none.side_effect = [None, "p1"]
    session_factory = MagicMock()
    session_factory.return_value.__enter__.return_value = db
    sql_ledger = SqlIdempotencyLedger(session_factory, ttl_seconds=60, service_name="test")
    digest = SqlIdempotencyLedger.key_digest(long_key)

    assert sql_ledger.lookup(long_key) is None
    assert sql_ledger.claim(long_key, "p1") == "p1"

    assert len(digest) == IdempotencyKey.__table__.c.idempotency_key.type.length == 64
    lookup_call, claim_call = db.execute.call_args_list
    assert digest in bound_values(lookup_call)
    assert digest in bound_values(claim_call)
    assert long_key not in bound_values(claim_call)


def test_key_digest_separates_keys():
    assert SqlIdempotencyLedger.key_digest("a" * 300) == SqlIdempotencyLedger.key_digest("a" * 300)
    assert SqlIdempotencyLedger.key_digest("a" * 300) != SqlIdempotencyLedger.key_digest("a" * 301)

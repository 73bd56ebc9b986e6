"""Idempotency ledger: idempotency key -> payment id, first writer wins.

Fault policy, applied by `IdempotencyLedger` for every backend:

* `lookup` and `claim` fail open. A backing-store fault reads as "key not seen"
  (or "claim won"), so creation proceeds. During a ledger outage a retried
  request can therefore create a second payment; availability is preferred over
  strict deduplication here.
* `record` and `release` fail soft. The payment is already committed (or
  already failed) when they run, so a fault is logged and counted and the
  request still returns its result.

Backends only implement the underscore primitives and may raise freely.
"""

import hashlib
from datetime import datetime, timedelta, timezone

import redis
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert

from paystream.common.config import settings
from paystream.common.logging import logger
from paystream.common.metrics import idempotency_fail_open_total, idempotency_record_failures_total
from paystream.services.payments.models import IdempotencyKey


class IdempotencyLedger:
    """Fault policy wrapper around a backend's compare-and-set primitives."""

    backend = "abstract"

    def __init__(self, ttl_seconds: int = settings.idempotency_ttl_seconds, service_name: str = "payments") -> None:
        self.ttl_seconds = ttl_seconds
        self.service_name = service_name

    def lookup(self, key: str | None) -> str | None:
        """Return the payment id mapped to `key`, or None. Never raises."""

        if not key:
            return None
        try:
            return self._lookup(key)
        except Exception as exc:
            self._fail_open("lookup", key, exc)
            return None

    def claim(self, key: str, payment_id: str) -> str:
        """Atomically map `key` to `payment_id` if unmapped; return the owner."""

        if not key:
            return payment_id
        try:
            return self._claim(key, payment_id)
        except Exception as exc:
            self._fail_open("claim", key, exc)
            return payment_id

    def record(self, key: str, payment_id: str) -> None:
        """Mark the claim completed and restart its TTL."""

        if not key:
            return
        try:
            self._record(key, payment_id)
            logger.info("idempotency_recorded key=%s payment_id=%s", key, payment_id)
        except Exception as exc:
            self._fail_soft("record", key, payment_id, exc)

    def release(self, key: str, payment_id: str) -> None:
        """Drop a claim still owned by `payment_id` so a retry can proceed."""

        if not key:
            return
        try:
            self._release(key, payment_id)
            logger.info("idempotency_released key=%s payment_id=%s", key, payment_id)
        except Exception as exc:
            self._fail_soft("release", key, payment_id, exc)

    def purge_expired(self, limit: int = 1000) -> int:
        return 0

    def _fail_open(self, operation: str, key: str, exc: Exception) -> None:
        logger.warning(
            "idempotency_%s_failed_open backend=%s key=%s error=%s",
            operation,
            self.backend,
            key,
            exc,
        )
        idempotency_fail_open_total.labels(service=self.service_name, operation=operation).inc()

    def _fail_soft(self, operation: str, key: str, payment_id: str, exc: Exception) -> None:
        logger.error(
            "idempotency_%s_failed backend=%s key=%s payment_id=%s error=%s",
            operation,
            self.backend,
            key,
            payment_id,
            exc,
        )
        idempotency_record_failures_total.labels(service=self.service_name, operation=operation).inc()

    def _lookup(self, key: str) -> str | None:
        raise NotImplementedError

    def _claim(self, key: str, payment_id: str) -> str:
        raise NotImplementedError

    def _record(self, key: str, payment_id: str) -> None:
        raise NotImplementedError

    def _release(self, key: str, payment_id: str) -> None:
        raise NotImplementedError


class SqlIdempotencyLedger(IdempotencyLedger):
    """`idempotency_keys` table, keyed by sha256 of the client key; claims use
    `INSERT ... ON CONFLICT`.

    An expired row is replaced inside the same statement, so expiry never opens
    a window where two writers both believe they own a key.
    """

    backend = "postgres"
    max_claim_attempts = 3

    def __init__(self, session_factory, **kwargs) -> None:
        super().__init__(**kwargs)
        self.session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def key_digest(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def _lookup(self, key: str) -> str | None:
        with self.session_factory() as db:
            return db.execute(
                select(IdempotencyKey.payment_id).where(
                    IdempotencyKey.idempotency_key == self.key_digest(key),
                    IdempotencyKey.expires_at > self._now(),
                )
            ).scalar_one_or_none()

    def _claim(self, key: str, payment_id: str) -> str:
        digest = self.key_digest(key)
        for _ in range(self.max_claim_attempts):
            now = self._now()
            stmt = insert(IdempotencyKey).values(
                idempotency_key=digest,
                payment_id=payment_id,
                state="RESERVED",
                created_at=int(now.timestamp() * 1000),
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[IdempotencyKey.idempotency_key],
                set_={
                    "payment_id": stmt.excluded.payment_id,
                    "state": stmt.excluded.state,
                    "created_at": stmt.excluded.created_at,
                    "expires_at": stmt.excluded.expires_at,
                },
                where=IdempotencyKey.expires_at <= now,
            ).returning(IdempotencyKey.payment_id)
            with self.session_factory() as db:
                claimed = db.execute(stmt).scalar_one_or_none()
                db.commit()
                if claimed is not None:
                    return claimed
                owner = db.execute(
                    select(IdempotencyKey.payment_id).where(IdempotencyKey.idempotency_key == digest)
                ).scalar_one_or_none()
            if owner is not None:
                return owner
            # Owner released between our insert and read; try again.
        raise RuntimeError(f"could not settle idempotency claim for key {key}")

    def _record(self, key: str, payment_id: str) -> None:
        with self.session_factory() as db:
            result = db.execute(
                update(IdempotencyKey)
                .where(IdempotencyKey.idempotency_key == self.key_digest(key), IdempotencyKey.payment_id == payment_id)
                .values(state="COMPLETED", expires_at=self._now() + timedelta(seconds=self.ttl_seconds))
            )
            if result.rowcount != 1:
                raise RuntimeError(f"claim for key {key} is no longer owned by {payment_id}")
            db.commit()

    def _release(self, key: str, payment_id: str) -> None:
        with self.session_factory() as db:
            db.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.idempotency_key == self.key_digest(key),
                    IdempotencyKey.payment_id == payment_id,
                )
            )
            db.commit()

    def purge_expired(self, limit: int = 1000) -> int:
        """Delete up to `limit` expired rows; returns how many went."""

        with self.session_factory() as db:
            expired = (
                select(IdempotencyKey.idempotency_key)
                .where(IdempotencyKey.expires_at <= self._now())
                .limit(limit)
                .scalar_subquery()
            )
            result = db.execute(delete(IdempotencyKey).where(IdempotencyKey.idempotency_key.in_(expired)))
            db.commit()
            return result.rowcount or 0


# Compare-and-act scripts: only the owner of a claim may refresh or drop it.
_REFRESH_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

_DELETE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisIdempotencyLedger(IdempotencyLedger):
    """Redis keys with native expiry; claims use `SET NX EX`."""

    backend = "redis"
    max_claim_attempts = 3

    def __init__(self, client: redis.Redis, prefix: str = "idempotency:payment", **kwargs) -> None:
        super().__init__(**kwargs)
        self.client = client
        self.prefix = prefix
        self._refresh = client.register_script(_REFRESH_IF_OWNER)
        self._delete = client.register_script(_DELETE_IF_OWNER)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _lookup(self, key: str) -> str | None:
        return self.client.get(self._key(key))

    def _claim(self, key: str, payment_id: str) -> str:
        redis_key = self._key(key)
        for _ in range(self.max_claim_attempts):
            if self.client.set(redis_key, payment_id, nx=True, ex=self.ttl_seconds):
                return payment_id
            owner = self.client.get(redis_key)
            if owner is not None:
                return owner
        raise RuntimeError(f"could not settle idempotency claim for key {key}")

    def _record(self, key: str, payment_id: str) -> None:
        if not self._refresh(keys=[self._key(key)], args=[payment_id, self.ttl_seconds]):
            raise RuntimeError(f"claim for key {key} is no longer owned by {payment_id}")

    def _release(self, key: str, payment_id: str) -> None:
        self._delete(keys=[self._key(key)], args=[payment_id])

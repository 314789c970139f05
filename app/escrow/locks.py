"""
Concurrency control for escrow operations.

1. **Order lock** (order_lock / DistributedLock)
   - Redis mutual exclusion keyed by order id, shared by API requests,
     webhook handlers and background sweeps
   - Held across the processor call so two workers never issue the same
     capture or refund concurrently
   - Not re-entrant: only public entry points acquire it
   - Extended before each processor call (extend_order_lock) so retries
     with backoff cannot outlive the TTL

2. **Optimistic locking** (check_version)
   - Order.version increments on every save
   - Callers that read an order earlier (API clients, admin actions)
     pass the version they saw; a mismatch raises StaleRecordError

Usage:
    from escrow.locks import order_lock

    with order_lock(order_id):
        with transaction.atomic():
            order = Order.objects.select_for_update().get(pk=order_id)
            ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from contextvars import ContextVar, Token
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction
from django_redis import get_redis_connection

from escrow.exceptions import LockAcquisitionError, OrderNotFound, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lock with a TTL and an ownership token.

    The TTL bounds how long a crashed worker can block an order. The token
    makes release and extend no-ops for anyone but the owner.

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Seconds before Redis drops the lock on its own
        blocking: Wait for the lock instead of failing immediately
        timeout: Maximum wait in seconds when blocking
    """

    # Compare-and-delete
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Compare-and-expire
    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Take the lock.

        Raises:
            LockAcquisitionError: Lock is held elsewhere (after waiting
                up to ``timeout`` in blocking mode)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if not self.blocking:
            if self._try_acquire(redis):
                return True
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )

        deadline = time.monotonic() + self.timeout
        while True:
            if self._try_acquire(redis):
                return True
            if time.monotonic() >= deadline:
                break
            time.sleep(self.POLL_INTERVAL)

        self._token = None
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """Release the lock if we own it. Safe to call more than once."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """
        Reset the remaining TTL (not added to it).

        Used before a slow processor call so the lock outlives it.
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


_held_order_lock: ContextVar[OrderLock | None] = ContextVar("escrow_held_order_lock", default=None)


class OrderLock(DistributedLock):
    """
    DistributedLock for one order, visible to the services running under it.

    While held it is the context's current order lock, so
    extend_order_lock() can push back its expiry before a processor call.
    """

    def __init__(self, order_id: Any, **kwargs: Any) -> None:
        super().__init__(f"escrow:order:{order_id}", **kwargs)
        self.order_id = str(order_id)
        self._context_token: Token | None = None

    def __enter__(self) -> OrderLock:
        super().__enter__()
        self._context_token = _held_order_lock.set(self)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        if self._context_token is not None:
            _held_order_lock.reset(self._context_token)
            self._context_token = None
        return super().__exit__(exc_type, exc_val, exc_tb)


def order_lock(order_id: Any, blocking: bool = True) -> OrderLock:
    """
    Lock serializing every mutation of one order.

    TTL and wait timeout come from EscrowSettings. Background sweeps pass
    ``blocking=False`` so a busy order is skipped and picked up next run.
    """
    from escrow.conf import get_escrow_settings

    conf = get_escrow_settings()
    return OrderLock(
        order_id,
        ttl=conf.order_lock_ttl,
        blocking=blocking,
        timeout=conf.order_lock_timeout,
    )


def extend_order_lock(order_id: Any) -> bool:
    """
    Reset the TTL of the order lock held by this context.

    Called before every processor call, which may sleep through retries.
    Returns False when the context holds no lock for the order (services
    driven directly from a shell or a test).

    Raises:
        LockAcquisitionError: The lock expired and was taken by someone else
    """
    lock = _held_order_lock.get()
    if lock is None or lock.order_id != str(order_id):
        return False
    if not lock.extend():
        raise LockAcquisitionError(
            f"Lock '{lock.key}' expired before the processor call",
            details={"key": lock.key, "order_id": lock.order_id},
        )
    return True


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(model_class: type[T], pk: Any, expected_version: int) -> T:
    """
    Lock a row for update, verifying it is still at ``expected_version``.

    Must be called inside transaction.atomic(); the row lock is held until
    the surrounding transaction ends.

    Raises:
        OrderNotFound: No row with that primary key
        StaleRecordError: The row has moved past ``expected_version``
    """
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("check_version() requires an open transaction")

    instance = (
        model_class.objects.select_for_update()
        .filter(pk=pk, version=expected_version)
        .first()
    )
    if instance is not None:
        return instance

    current = model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
    if current is None:
        raise OrderNotFound(
            f"{model_class.__name__} {pk} not found",
            details={"pk": str(pk)},
        )
    raise StaleRecordError(
        f"{model_class.__name__} {pk} has been modified "
        f"(expected version {expected_version}, current {current})",
        details={
            "pk": str(pk),
            "expected_version": expected_version,
            "current_version": current,
        },
    )


__all__ = [
    "DistributedLock",
    "OrderLock",
    "order_lock",
    "extend_order_lock",
    "check_version",
]

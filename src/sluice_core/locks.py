# src/sluice_core/locks.py

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .cache import Cache
from .models import Lock, utcnow

logger = logging.getLogger(__name__)

LOCK_PREFIX = "etl:lock:"
DEFAULT_LOCK_TTL = 7200


class LockOutcome(str, Enum):
    GRANTED = "granted"
    ALREADY_HELD = "already_held"


@dataclass
class LockResult:
    outcome: LockOutcome
    lock: Optional[Lock] = None

    @property
    def granted(self) -> bool:
        return self.outcome == LockOutcome.GRANTED


def lock_key(dataset_id) -> str:
    return f"{LOCK_PREFIX}{dataset_id}"


class LockManager:
    """
    Dataset-scoped mutual exclusion across worker processes.

    A lock is a single cache key set with NX and a TTL, so a crashed worker's
    lock expires on its own after `ttl` seconds.
    """

    def __init__(self, cache: Cache, default_ttl: int = DEFAULT_LOCK_TTL):
        self.cache = cache
        self.default_ttl = default_ttl

    def acquire(self, dataset_id, holder: str, ttl: Optional[int] = None) -> LockResult:
        ttl = ttl or self.default_ttl
        lock = Lock(dataset_id=dataset_id, holder=holder, acquired_at=utcnow(), ttl=ttl)
        payload = json.dumps({"holder": holder, "acquired_at": lock.acquired_at.isoformat(), "ttl": ttl})

        if self.cache.set_nx(lock_key(dataset_id), payload, ttl):
            logger.info(f"Lock acquired for dataset {dataset_id} by {holder}")
            return LockResult(LockOutcome.GRANTED, lock)

        current = self.get(dataset_id)
        logger.info(f"Lock for dataset {dataset_id} already held by {current.holder if current else 'unknown'}")
        return LockResult(LockOutcome.ALREADY_HELD, current)

    def release(self, dataset_id, holder: str) -> bool:
        """Remove the lock only if `holder` owns it."""
        key = lock_key(dataset_id)
        raw = self.cache.get(key)
        if raw is None:
            return False
        if _parse(dataset_id, raw).holder != holder:
            logger.warning(f"Not releasing lock for dataset {dataset_id}: held by another worker")
            return False
        released = self.cache.delete_if_equals(key, raw)
        if released:
            logger.info(f"Lock released for dataset {dataset_id}")
        return released

    def get(self, dataset_id) -> Optional[Lock]:
        key = lock_key(dataset_id)
        raw = self.cache.get(key)
        if raw is None:
            return None
        lock = _parse(dataset_id, raw)
        lock.remaining_ttl = self.cache.ttl(key)
        return lock

    def list(self) -> List[Lock]:
        locks = []
        for key in self.cache.keys(f"{LOCK_PREFIX}*"):
            dataset_id = _dataset_id_from_key(key)
            lock = self.get(dataset_id)
            if lock is not None:
                locks.append(lock)
        return locks

    def force_clear(self, dataset_id) -> bool:
        """Operator recovery. Does not touch job state."""
        cleared = self.cache.delete(lock_key(dataset_id))
        if cleared:
            logger.warning(f"Lock for dataset {dataset_id} force-cleared")
        return cleared

    def force_clear_all(self) -> int:
        count = sum(1 for key in self.cache.keys(f"{LOCK_PREFIX}*") if self.cache.delete(key))
        if count:
            logger.warning(f"Force-cleared {count} lock(s)")
        return count


def _dataset_id_from_key(key: str):
    raw = key[len(LOCK_PREFIX):]
    return int(raw) if raw.isdigit() else raw


def _parse(dataset_id, raw: str) -> Lock:
    try:
        data = json.loads(raw)
        return Lock(
            dataset_id=dataset_id,
            holder=data.get("holder", "unknown"),
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            ttl=int(data.get("ttl", 0)),
        )
    except (ValueError, KeyError, TypeError, AttributeError):
        logger.debug(f"Unrecognized lock payload for dataset {dataset_id}: {raw!r}")
        return Lock(dataset_id=dataset_id, holder=str(raw), acquired_at=utcnow(), ttl=0)

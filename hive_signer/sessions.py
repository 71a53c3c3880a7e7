"""
Reservation storage for two-phase account provisioning.

A reservation binds an account name to the four public keys handed out by
prepare. Finalize may use it exactly once, and only before it expires.

Lookups of missing, expired and used reservations produce the same negative
result so probing clients learn nothing about which ids exist.

The in-memory store is process-local. A deployment with more than one
process must use a shared store with atomic conditional writes, such as
``RedisSessionStore``.
"""

import dataclasses
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .keys import public_keys_equal
from .util import generate_id

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 15 * 60
CLEANUP_BUFFER_SECONDS = 60
USED_RETENTION_SECONDS = 60 * 60


@dataclass(frozen=True)
class Reservation:
    """
    A pending provisioning request.

    Immutable except ``used``, which the owning store flips once. Stores
    hand out copies.
    """
    session_id: str
    subject_name: str
    public_keys: Dict[str, str]
    created_at: float
    expires_at: float
    issuer_name: str
    used: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reservation":
        return cls(
            session_id=data["session_id"],
            subject_name=data["subject_name"],
            public_keys=dict(data["public_keys"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            issuer_name=data["issuer_name"],
            used=bool(data.get("used", False)),
        )


class SessionStore(ABC):
    """
    Abstract interface for reservations.

    Implementations must make ``consume`` atomic: of any number of
    concurrent calls for one id, at most one returns True.
    """

    @abstractmethod
    def create(self, subject_name: str, public_keys: Dict[str, str], issuer_name: str) -> Reservation:
        """Allocate a fresh reservation."""
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[Reservation]:
        """Return the reservation if present and not expired."""
        pass

    @abstractmethod
    def consume(self, session_id: str) -> bool:
        """
        Atomically mark a reservation as used.

        Returns:
            True on the first use of a live reservation
            False if missing, expired or already used
        """
        pass

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def sweep_expired(self) -> int:
        """Remove records past their purge time. Returns count removed."""
        pass

    def matches(self, session_id: str, public_keys: Dict[str, str]) -> bool:
        """True iff a live, unused reservation holds exactly these keys."""
        reservation = self.get(session_id)
        if reservation is None or reservation.used:
            return False
        return public_keys_equal(reservation.public_keys, public_keys)


class InMemorySessionStore(SessionStore):
    """
    In-memory reservation table guarded by a single lock.

    Each record carries a purge time: ``expires_at`` plus a cleanup buffer,
    or one hour after use for audit. ``sweep_expired`` enforces it.
    """

    def __init__(
        self,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        cleanup_buffer_seconds: int = CLEANUP_BUFFER_SECONDS,
        used_retention_seconds: int = USED_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl_seconds
        self._cleanup_buffer = cleanup_buffer_seconds
        self._used_retention = used_retention_seconds
        self._clock = clock
        self._sessions: Dict[str, Reservation] = {}
        self._purge_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def create(self, subject_name: str, public_keys: Dict[str, str], issuer_name: str) -> Reservation:
        now = self._clock()
        reservation = Reservation(
            session_id=generate_id(16),
            subject_name=subject_name,
            public_keys=dict(public_keys),
            created_at=now,
            expires_at=now + self._ttl,
            issuer_name=issuer_name,
        )
        with self._lock:
            self._sessions[reservation.session_id] = reservation
            self._purge_at[reservation.session_id] = reservation.expires_at + self._cleanup_buffer
        return dataclasses.replace(reservation, public_keys=dict(public_keys))

    def _live(self, session_id: str, now: float) -> Optional[Reservation]:
        # caller holds the lock
        reservation = self._sessions.get(session_id)
        if reservation is None:
            return None
        if reservation.is_expired(now):
            # used records are kept for audit until the sweeper purges them
            if not reservation.used:
                self._sessions.pop(session_id, None)
                self._purge_at.pop(session_id, None)
            return None
        return reservation

    def get(self, session_id: str) -> Optional[Reservation]:
        with self._lock:
            reservation = self._live(session_id, self._clock())
            if reservation is None:
                return None
            return dataclasses.replace(reservation, public_keys=dict(reservation.public_keys))

    def consume(self, session_id: str) -> bool:
        with self._lock:
            now = self._clock()
            reservation = self._live(session_id, now)
            if reservation is None or reservation.used:
                return False
            self._sessions[session_id] = dataclasses.replace(reservation, used=True)
            self._purge_at[session_id] = now + self._used_retention
            return True

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        active = used = expired = 0
        with self._lock:
            total = len(self._sessions)
            for reservation in self._sessions.values():
                if reservation.is_expired(now):
                    expired += 1
                elif reservation.used:
                    used += 1
                else:
                    active += 1
        return {
            "total_sessions": total,
            "active_sessions": active,
            "used_sessions": used,
            "expired_sessions": expired,
        }

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            # used reservations stay until their audit retention runs out
            doomed = [
                sid for sid, reservation in self._sessions.items()
                if (reservation.is_expired(now) and not reservation.used)
                or self._purge_at.get(sid, 0) <= now
            ]
            for sid in doomed:
                del self._sessions[sid]
                self._purge_at.pop(sid, None)
        return len(doomed)


class RedisSessionStore(SessionStore):
    """
    Redis-backed reservation store for multi-process deployments.

    - Reservation JSON stored with a PX TTL (expiry + cleanup buffer)
    - Single use enforced by ``SET <id>:used 1 NX``
    - Redis handles purging

    Requires: redis-py client instance (injected).
    """

    def __init__(
        self,
        redis_client,
        key_prefix: str = "hive_signer:session:",
        ttl_seconds: int = SESSION_TTL_SECONDS,
        cleanup_buffer_seconds: int = CLEANUP_BUFFER_SECONDS,
        used_retention_seconds: int = USED_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._ttl = ttl_seconds
        self._cleanup_buffer = cleanup_buffer_seconds
        self._used_retention = used_retention_seconds
        self._clock = clock

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def create(self, subject_name: str, public_keys: Dict[str, str], issuer_name: str) -> Reservation:
        now = self._clock()
        reservation = Reservation(
            session_id=generate_id(16),
            subject_name=subject_name,
            public_keys=dict(public_keys),
            created_at=now,
            expires_at=now + self._ttl,
            issuer_name=issuer_name,
        )
        ttl_ms = int((self._ttl + self._cleanup_buffer) * 1000)
        self.redis.set(self._key(reservation.session_id), json.dumps(reservation.to_dict()), px=ttl_ms)
        return reservation

    def get(self, session_id: str) -> Optional[Reservation]:
        raw = self.redis.get(self._key(session_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        reservation = Reservation.from_dict(json.loads(raw))
        if reservation.is_expired(self._clock()):
            self.redis.delete(self._key(session_id))
            return None
        used = bool(self.redis.exists(self._key(session_id) + ":used"))
        return dataclasses.replace(reservation, used=used)

    def consume(self, session_id: str) -> bool:
        reservation = self.get(session_id)
        if reservation is None or reservation.used:
            return False
        ttl_ms = int(self._used_retention * 1000)
        # SET NX is the atomic single-use guard
        result = self.redis.set(self._key(session_id) + ":used", "1", nx=True, px=ttl_ms)
        return bool(result)

    def stats(self) -> Dict[str, int]:
        # ":used" markers outlive their reservation; only reservation keys count
        now = self._clock()
        total = active = used = expired = 0
        for key in self.redis.scan_iter(match=f"{self.key_prefix}*"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            if key.endswith(":used"):
                continue
            raw = self.redis.get(key)
            if raw is None:
                continue
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            total += 1
            if Reservation.from_dict(json.loads(raw)).is_expired(now):
                expired += 1
            elif self.redis.exists(key + ":used"):
                used += 1
            else:
                active += 1
        return {
            "total_sessions": total,
            "active_sessions": active,
            "used_sessions": used,
            "expired_sessions": expired,
        }

    def sweep_expired(self) -> int:
        # Redis handles expiration automatically via TTL
        return 0


class SessionSweeper:
    """
    Runs ``sweep_expired`` on a daemon thread at a fixed interval.

    ``extra_tasks`` are further housekeeping callables (for example rate
    limiter pruning) run on the same schedule; each returns a count.
    """

    def __init__(self, store: SessionStore, interval_seconds: float = 60.0,
                 extra_tasks: Iterable[Callable[[], int]] = ()):
        self._store = store
        self._interval = interval_seconds
        self._tasks: List[Callable[[], int]] = [store.sweep_expired, *extra_tasks]
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="session-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1)
            self._thread = None

    def run_once(self) -> int:
        """Run every task once. Returns the total count removed."""
        removed = 0
        for task in self._tasks:
            try:
                removed += task() or 0
            except Exception:
                logger.exception("Sweep task %s failed", getattr(task, "__qualname__", task))
        return removed

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            removed = self.run_once()
            if removed:
                logger.debug("Swept %d expired entries", removed)

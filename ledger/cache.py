import threading
import time
from typing import Any, Callable, Hashable, TypeVar

from .models import Transaction

T = TypeVar("T")

Scope = tuple[str, str]


class BalanceCache:
    """Read-through cache for balance and history reads.

    Entries are grouped by ``(user_id, currency_code)`` scope. The engine
    calls ``invalidate_transaction`` after every commit, which drops the
    scope and bumps its generation so that a read which started before the
    commit cannot store its (now stale) result afterwards.

    Expired entries are dropped when read. Once ``max_entries`` is reached,
    storing sweeps every expired entry and then evicts the oldest ones.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[tuple[Scope, Hashable], tuple[float, Any]] = {}
        self._generations: dict[Scope, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def remember(self, scope: Scope, key: Hashable, loader: Callable[[], T]) -> T:
        if self.ttl_seconds <= 0:
            return loader()
        now = self._clock()
        with self._lock:
            entry = self._entries.get((scope, key))
            if entry is not None:
                if entry[0] > now:
                    self.hits += 1
                    return entry[1]
                del self._entries[(scope, key)]
            self.misses += 1
            generation = self._generations.get(scope, 0)

        value = loader()

        with self._lock:
            if self._generations.get(scope, 0) == generation:
                if len(self._entries) >= self.max_entries:
                    self._evict(now)
                self._entries[(scope, key)] = (now + self.ttl_seconds, value)
        return value

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge(self._clock())

    def invalidate(self, user_id: str, currency_code: str) -> None:
        scope = (user_id, currency_code)
        with self._lock:
            self._generations[scope] = self._generations.get(scope, 0) + 1
            for entry_key in [k for k in self._entries if k[0] == scope]:
                del self._entries[entry_key]

    def invalidate_transaction(self, txn: Transaction) -> None:
        self.invalidate(txn.user_id, txn.currency_code)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()

    def _purge(self, now: float) -> int:
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for entry_key in expired:
            del self._entries[entry_key]
        return len(expired)

    def _evict(self, now: float) -> None:
        self._purge(now)
        # Every entry shares one TTL, so insertion order approximates expiry order.
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]

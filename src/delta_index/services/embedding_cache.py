"""
Embedding Cache Service

Bounded, TTL'd key -> vector store keyed by content digest. Avoids recomputing
embeddings for chunk bodies that were already embedded, across runs when a
snapshot path is configured.

Bounds are enforced on insertion: while the entry count or the approximate
byte total would exceed the policy, the eviction strategy picks a victim
(least recently accessed by default). Expired entries are treated as absent
on access and removed by a background sweep thread.
"""

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..index_exceptions import CacheCorruptionError
from ..logging_config import configure_logger_for_debug_trace, get_state_directory
from ..models import CacheEntry, CacheStats

logger = configure_logger_for_debug_trace(__name__)


SNAPSHOT_VERSION = 1
DEFAULT_SNAPSHOT_FILENAME = "embedding_cache.json"


@dataclass
class CachePolicy:
    """
    Capacity and lifetime limits for the embedding cache.

    Attributes:
        max_entries: Maximum number of entries
        max_bytes: Maximum approximate byte total of all entries
        ttl_seconds: Entry lifetime measured from generation; None disables expiry
        cleanup_interval_seconds: Period of the background expiry sweep
        persist_interval_seconds: Optional autosave period on the sweep thread
    """
    max_entries: int = 10000
    max_bytes: int = 100 * 1024 * 1024
    ttl_seconds: Optional[float] = 7 * 24 * 60 * 60
    cleanup_interval_seconds: float = 60 * 60
    persist_interval_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if self.max_bytes < 1:
            raise ValueError("max_bytes must be >= 1")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CachePolicy":
        """Build a policy from ConfigLoader.get_cache_config() output."""
        ttl = config.get("cache_ttl_seconds", 7 * 24 * 60 * 60)
        persist = config.get("cache_persist_interval_seconds") or None
        return cls(
            max_entries=int(config.get("cache_max_entries", 10000)),
            max_bytes=int(config.get("cache_max_bytes", 100 * 1024 * 1024)),
            ttl_seconds=float(ttl) if ttl else None,
            cleanup_interval_seconds=float(config.get("cache_cleanup_interval_seconds", 3600)),
            persist_interval_seconds=float(persist) if persist else None,
        )


class EvictionStrategy(ABC):
    """
    Chooses which entry to evict when the cache is over a bound.

    ::: This is-in-layer Service-Layer.
    ::: This is a strategy.
    ::: This is stateless.
    """

    @abstractmethod
    def select_victim(self, entries: Dict[str, CacheEntry]) -> Optional[str]:
        """Return the key to evict, or None if entries is empty."""
        pass


class LeastRecentlyAccessedStrategy(EvictionStrategy):
    """
    Evicts the entry with the oldest last access.

    ::: This is-in-layer Service-Layer.
    ::: This is a strategy.
    ::: This is stateless.

    Ties on the timestamp are broken by the cache's access sequence, so the
    order is strict even with a coarse clock.
    """

    def select_victim(self, entries: Dict[str, CacheEntry]) -> Optional[str]:
        if not entries:
            return None
        return min(
            entries.values(),
            key=lambda e: (e.last_accessed_at, e.access_seq)
        ).key


def estimate_entry_size(entry: CacheEntry) -> int:
    """Approximate in-memory size: 8 bytes per component plus JSON metadata."""
    metadata = json.dumps({
        "key": entry.key,
        "model": entry.model,
        "generated_at": entry.generated_at,
    })
    return len(entry.vector) * 8 + len(metadata)


class EmbeddingCache:
    """
    Bounded, TTL'd, persisted embedding cache.

    ::: This is-in-layer Service-Layer.
    ::: This is a cache.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    All state is guarded by one re-entrant lock; insertion, eviction, the
    expiry sweep and access bookkeeping never interleave.
    """

    def __init__(
        self,
        policy: Optional[CachePolicy] = None,
        snapshot_path: Optional[Union[str, Path]] = None,
        strategy: Optional[EvictionStrategy] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            policy: Capacity and TTL limits (defaults to CachePolicy())
            snapshot_path: JSON snapshot file; None disables persistence
            strategy: Eviction strategy (defaults to least recently accessed)
            clock: Time source returning seconds (injectable for tests)
        """
        self.policy = policy or CachePolicy()
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self.strategy = strategy or LeastRecentlyAccessedStrategy()
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._total_bytes = 0
        self._access_seq = 0

        self._hits = 0
        self._requests = 0
        self._evictions = 0
        self._expirations = 0

        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._last_persist = clock()

    @classmethod
    def default_snapshot_path(cls) -> Path:
        return get_state_directory() / DEFAULT_SNAPSHOT_FILENAME

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self, start_sweeper: bool = True) -> int:
        """
        Load the snapshot (if configured) and start the background sweep.

        Args:
            start_sweeper: Start the periodic expiry sweep thread

        Returns:
            Number of entries loaded from the snapshot
        """
        loaded = self._load_snapshot()
        if start_sweeper and self.policy.cleanup_interval_seconds > 0:
            self._start_sweeper()
        return loaded

    def shutdown(self) -> None:
        """Stop the sweep thread and persist the cache."""
        self._stop_event.set()
        if self._sweeper is not None and self._sweeper.is_alive():
            self._sweeper.join(timeout=5.0)
        self._sweeper = None
        self.save()

    def _start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="EmbeddingCacheSweeper",
            daemon=True
        )
        self._sweeper.start()
        logger.debug(
            f"[Cache] Sweeper started (interval={self.policy.cleanup_interval_seconds}s)"
        )

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.policy.cleanup_interval_seconds):
            try:
                removed = self.sweep_expired()
                if removed:
                    logger.debug(f"[Cache] Sweep removed {removed} expired entries")
                persist_every = self.policy.persist_interval_seconds
                if persist_every and self._clock() - self._last_persist >= persist_every:
                    self.save()
            except Exception as e:
                logger.error(f"[Cache] Sweep failed: {e}")

    # =========================================================================
    # Access
    # =========================================================================

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        ttl = self.policy.ttl_seconds
        return ttl is not None and now - entry.generated_at > ttl

    def _next_seq(self) -> int:
        self._access_seq += 1
        return self._access_seq

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.approx_byte_size
        return entry

    def _live_entry(self, key: str, now: float) -> Optional[CacheEntry]:
        """Return the entry if present and unexpired; expired entries are removed."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, now):
            self._remove(key)
            self._expirations += 1
            return None
        return entry

    def has(self, key: str) -> bool:
        """Check presence without touching access statistics."""
        with self._lock:
            return self._live_entry(key, self._clock()) is not None

    def get(self, key: str, model: Optional[str] = None) -> Optional[CacheEntry]:
        """
        Look up an entry. A hit updates access_count and last_accessed_at.

        Args:
            key: Content digest
            model: When given, an entry produced by another model is a miss

        Returns:
            The cached entry, or None on a miss, expired entry or model mismatch
        """
        with self._lock:
            now = self._clock()
            self._requests += 1
            entry = self._live_entry(key, now)
            if entry is None or (model is not None and entry.model != model):
                return None
            entry.access_count += 1
            entry.last_accessed_at = now
            entry.access_seq = self._next_seq()
            self._hits += 1
            return entry

    def set(self, key: str, entry: CacheEntry) -> bool:
        """
        Insert or replace an entry, evicting until both bounds hold.

        Returns:
            False if the entry alone exceeds max_bytes and was not stored
        """
        entry.key = key
        entry.approx_byte_size = estimate_entry_size(entry)
        if entry.approx_byte_size > self.policy.max_bytes:
            logger.warning(
                f"[Cache] Entry {key[:12]} ({entry.approx_byte_size} bytes) exceeds "
                f"max_bytes={self.policy.max_bytes}; not cached"
            )
            return False

        with self._lock:
            now = self._clock()
            self._remove(key)
            if not entry.last_accessed_at:
                entry.last_accessed_at = now
            entry.access_seq = self._next_seq()

            while self._entries and (
                len(self._entries) + 1 > self.policy.max_entries
                or self._total_bytes + entry.approx_byte_size > self.policy.max_bytes
            ):
                victim = self.strategy.select_victim(self._entries)
                if victim is None:
                    break
                self._remove(victim)
                self._evictions += 1
                logger.debug(f"[Cache] Evicted {victim[:12]}")

            self._entries[key] = entry
            self._total_bytes += entry.approx_byte_size
            return True

    def put(self, key: str, vector: List[float], model: str) -> bool:
        """Convenience wrapper creating a fresh entry generated now."""
        now = self._clock()
        return self.set(key, CacheEntry(
            key=key,
            vector=list(vector),
            model=model,
            generated_at=now,
            last_accessed_at=now,
        ))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total_bytes = 0

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
            for key in expired:
                self._remove(key)
            self._expirations += len(expired)
            return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                count=len(self._entries),
                total_bytes=self._total_bytes,
                hit_rate=self._hits / self._requests if self._requests else 0.0,
                hits=self._hits,
                requests=self._requests,
                evictions=self._evictions,
                expirations=self._expirations,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self) -> bool:
        """
        Write the snapshot atomically (temp file, then replace).

        Returns:
            True if written, False if persistence is disabled or failed
        """
        if self.snapshot_path is None:
            return False

        with self._lock:
            payload = {
                "version": SNAPSHOT_VERSION,
                "entries": {k: e.to_dict() for k, e in self._entries.items()},
            }
            count = len(self._entries)

        tmp_path = self.snapshot_path.with_name(self.snapshot_path.name + ".tmp")
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.snapshot_path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[Cache] Failed to save snapshot {self.snapshot_path}: {e}")
            return False

        self._last_persist = self._clock()
        logger.debug(f"[Cache] Saved {count} entries to {self.snapshot_path}")
        return True

    def _load_snapshot(self) -> int:
        if self.snapshot_path is None or not self.snapshot_path.exists():
            return 0

        try:
            with open(self.snapshot_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"[Cache] Ignoring unreadable snapshot {self.snapshot_path}: {e}")
            return 0

        if not isinstance(data, dict) or not isinstance(data.get("entries"), dict):
            logger.warning(f"[Cache] Ignoring snapshot with unexpected layout: {self.snapshot_path}")
            return 0
        if data.get("version") != SNAPSHOT_VERSION:
            logger.warning(f"[Cache] Ignoring snapshot version {data.get('version')}")
            return 0

        now = self._clock()
        loaded = 0
        dropped = 0
        for key, raw in data["entries"].items():
            try:
                entry = CacheEntry.from_dict(key, raw)
            except CacheCorruptionError as e:
                logger.debug(f"[Cache] {e}")
                dropped += 1
                continue
            if self._is_expired(entry, now):
                dropped += 1
                continue
            if self.set(key, entry):
                loaded += 1

        if dropped:
            logger.info(f"[Cache] Dropped {dropped} malformed or expired snapshot entries")
        logger.info(f"[Cache] Loaded {loaded} entries from {self.snapshot_path}")
        return loaded


__all__ = [
    "CachePolicy",
    "EvictionStrategy",
    "LeastRecentlyAccessedStrategy",
    "EmbeddingCache",
    "estimate_entry_size",
]

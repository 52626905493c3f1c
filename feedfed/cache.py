# feedfed/cache.py
"""
Remote actor key cache.

Holds public keys fetched from remote actor documents, keyed by actor URI.
Entries expire after their TTL and can be invalidated explicitly, e.g. when
a signature stops verifying because the remote actor rotated its key.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .fs import atomic_write

logger = logging.getLogger(__name__)

DEFAULT_TTL = 3600.0


@dataclass
class CacheEntry:
    """A cached remote public key."""
    actor_uri: str
    public_key_pem: str
    fetched_at: float
    ttl: float = DEFAULT_TTL
    key_id: str = ""
    inbox: Optional[str] = None

    def expired(self, now: float) -> bool:
        return now - self.fetched_at >= self.ttl

    def to_dict(self) -> Dict:
        return {
            "actor_uri": self.actor_uri,
            "public_key_pem": self.public_key_pem,
            "fetched_at": self.fetched_at,
            "ttl": self.ttl,
            "key_id": self.key_id,
            "inbox": self.inbox,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CacheEntry":
        return cls(
            actor_uri=data["actor_uri"],
            public_key_pem=data["public_key_pem"],
            fetched_at=data["fetched_at"],
            ttl=data.get("ttl", DEFAULT_TTL),
            key_id=data.get("key_id", ""),
            inbox=data.get("inbox"),
        )


@dataclass
class CacheStats:
    """Statistics about cache usage."""
    total_entries: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    hit_rate: float = 0.0

    def record_hit(self):
        self.hits += 1
        self._update_rate()

    def record_miss(self):
        self.misses += 1
        self._update_rate()

    def _update_rate(self):
        total = self.hits + self.misses
        self.hit_rate = self.hits / total if total > 0 else 0.0


class KeyCache:
    """
    TTL cache of remote public keys.

    Safe for concurrent use. With cache_dir set, the cache is persisted:

        cache_dir/
            index.json           # Cache entries
    """

    def __init__(
        self,
        cache_dir: Optional[Path | str] = None,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.ttl = ttl
        self.stats = CacheStats()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._load_index()

    def _index_path(self) -> Path:
        return self.cache_dir / "index.json"

    def _load_index(self):
        """Load cache index from disk."""
        index_path = self._index_path()
        if index_path.exists():
            try:
                with open(index_path) as f:
                    data = json.load(f)
                self._entries = {
                    k: CacheEntry.from_dict(v)
                    for k, v in data.get("entries", {}).items()
                }
                self.stats.total_entries = len(self._entries)
            except (json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Failed to load key cache index: {e}")
                self._entries = {}

    def _save_index(self):
        """Save cache index to disk."""
        if self.cache_dir is None:
            return
        data = {
            "entries": {k: v.to_dict() for k, v in self._entries.items()},
        }
        atomic_write(self._index_path(), json.dumps(data, indent=2))

    def get(self, actor_uri: str) -> Optional[CacheEntry]:
        """
        Get the cached entry for an actor.

        Returns None on a miss or when the entry has expired; expired
        entries are evicted.
        """
        with self._lock:
            entry = self._entries.get(actor_uri)
            if entry is None:
                self.stats.record_miss()
                return None

            if entry.expired(self._clock()):
                logger.debug(f"Key cache entry expired: {actor_uri}")
                self._remove_entry(actor_uri)
                self.stats.record_miss()
                return None

            self.stats.record_hit()
            return entry

    def put(
        self,
        actor_uri: str,
        public_key_pem: str,
        key_id: str = "",
        inbox: Optional[str] = None,
    ) -> CacheEntry:
        """Store or refresh a key."""
        entry = CacheEntry(
            actor_uri=actor_uri,
            public_key_pem=public_key_pem,
            fetched_at=self._clock(),
            ttl=self.ttl,
            key_id=key_id,
            inbox=inbox,
        )
        with self._lock:
            self._entries[actor_uri] = entry
            self.stats.total_entries = len(self._entries)
            self._save_index()
        logger.debug(f"Cached key: {actor_uri}")
        return entry

    def peek(self, actor_uri: str) -> Optional[CacheEntry]:
        """Get an entry without affecting stats or expiry."""
        with self._lock:
            return self._entries.get(actor_uri)

    def invalidate(self, actor_uri: str) -> bool:
        """Evict an actor's key."""
        with self._lock:
            return self._remove_entry(actor_uri)

    def _remove_entry(self, actor_uri: str) -> bool:
        if actor_uri not in self._entries:
            return False
        del self._entries[actor_uri]
        self.stats.evictions += 1
        self.stats.total_entries = len(self._entries)
        self._save_index()
        return True

    def prune(self) -> int:
        """Remove all expired entries. Returns number removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for actor_uri, entry in list(self._entries.items()):
                if entry.expired(now):
                    self._remove_entry(actor_uri)
                    removed += 1
        return removed

    def clear(self):
        """Clear all cached entries."""
        with self._lock:
            self._entries.clear()
            self._save_index()
            self.stats = CacheStats()

    def list_entries(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, actor_uri: str) -> bool:
        with self._lock:
            return actor_uri in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

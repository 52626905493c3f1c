# feedfed/followers.py
"""
Followers and following relationships of local actors.

Rendered as ActivityPub OrderedCollections for the followers pages.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .fs import atomic_write

FOLLOWERS = "followers"
FOLLOWING = "following"


class FollowerStore:
    """
    Relationship storage.

    Structure:
        store_dir/
            followers.json    # {actor_id: {"followers": [...], "following": [...]}}
    """

    def __init__(self, store_dir: Optional[Path | str] = None):
        self.store_dir = Path(store_dir) if store_dir is not None else None
        self._lock = threading.Lock()
        self._relations: Dict[str, Dict[str, List[str]]] = {}
        if self.store_dir is not None:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _path(self) -> Path:
        return self.store_dir / "followers.json"

    def _load(self):
        path = self._path()
        if path.exists():
            with open(path) as f:
                self._relations = json.load(f).get("actors", {})

    def _save(self):
        if self.store_dir is None:
            return
        atomic_write(self._path(), json.dumps({"version": "1.0", "actors": self._relations}, indent=2))

    def _add(self, actor_id: str, kind: str, other: str) -> bool:
        with self._lock:
            relation = self._relations.setdefault(actor_id, {FOLLOWERS: [], FOLLOWING: []})
            if other in relation[kind]:
                return False
            relation[kind].append(other)
            self._save()
            return True

    def _remove(self, actor_id: str, kind: str, other: str) -> bool:
        with self._lock:
            relation = self._relations.get(actor_id)
            if relation is None or other not in relation[kind]:
                return False
            relation[kind].remove(other)
            self._save()
            return True

    def _list(self, actor_id: str, kind: str) -> List[str]:
        with self._lock:
            return list(self._relations.get(actor_id, {}).get(kind, []))

    def add_follower(self, actor_id: str, follower: str) -> bool:
        """Record that follower follows actor_id. Returns False if already recorded."""
        return self._add(actor_id, FOLLOWERS, follower)

    def remove_follower(self, actor_id: str, follower: str) -> bool:
        return self._remove(actor_id, FOLLOWERS, follower)

    def followers(self, actor_id: str) -> List[str]:
        return self._list(actor_id, FOLLOWERS)

    def add_following(self, actor_id: str, followed: str) -> bool:
        return self._add(actor_id, FOLLOWING, followed)

    def remove_following(self, actor_id: str, followed: str) -> bool:
        return self._remove(actor_id, FOLLOWING, followed)

    def following(self, actor_id: str) -> List[str]:
        return self._list(actor_id, FOLLOWING)

    def remove_actor(self, actor_id: str):
        with self._lock:
            if self._relations.pop(actor_id, None) is not None:
                self._save()

    def collection(self, actor_id: str, kind: str) -> Dict[str, Any]:
        """ActivityPub OrderedCollection for followers or following."""
        if kind not in (FOLLOWERS, FOLLOWING):
            raise ValueError(f"Unknown collection: {kind}")
        items = self._list(actor_id, kind)
        return {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": f"{actor_id}/{kind}",
            "type": "OrderedCollection",
            "totalItems": len(items),
            "orderedItems": items,
        }

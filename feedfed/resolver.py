# feedfed/resolver.py
"""
Actor public key resolution.

Local actors are answered from the KeyStore without touching the network.
Remote actors are fetched once, cached in a KeyCache, and shared between
concurrent callers: simultaneous lookups of the same URI coalesce into a
single outbound fetch (single-flight).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .cache import KeyCache
from .client import FederationClient
from .errors import ResolutionError
from .keys import KeyStore

logger = logging.getLogger(__name__)

SOURCE_LOCAL = "local"
SOURCE_CACHE = "cache"
SOURCE_FETCH = "fetch"


@dataclass
class ResolvedKey:
    """A public key and where it came from (local, cache or fetch)."""
    actor_uri: str
    public_key_pem: str
    source: str


class _Call:
    """An in-progress fetch shared by concurrent callers."""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[ResolvedKey] = None
        self.error: Optional[BaseException] = None


class ActorResolver:
    """
    Resolves actor URIs to public keys.

    Args:
        keystore: Local actors
        cache: Remote key cache (shared instance)
        client: HTTP client for actor document fetches
    """

    def __init__(self, keystore: KeyStore, cache: KeyCache, client: FederationClient):
        self.keystore = keystore
        self.cache = cache
        self.client = client
        self._lock = threading.Lock()
        self._inflight: Dict[str, _Call] = {}

    def resolve(self, actor_uri: str, force_refresh: bool = False) -> str:
        """
        Return the current public key PEM for an actor.

        Raises:
            ResolutionError: the key could not be obtained
        """
        return self.lookup(actor_uri, force_refresh).public_key_pem

    def lookup(self, actor_uri: str, force_refresh: bool = False) -> ResolvedKey:
        """Like resolve(), but also reports where the key came from."""
        # Local keys are never cached, so a cache probe would always miss.
        local = self.keystore.get(actor_uri)
        if local is not None:
            return ResolvedKey(actor_uri, local.public_key_pem, SOURCE_LOCAL)

        if not force_refresh:
            entry = self.cache.get(actor_uri)
            if entry is not None:
                return ResolvedKey(actor_uri, entry.public_key_pem, SOURCE_CACHE)

        return self._fetch_once(actor_uri)

    def is_local(self, actor_uri: str) -> bool:
        return actor_uri in self.keystore

    def invalidate(self, actor_uri: str) -> bool:
        """Drop a cached remote key."""
        return self.cache.invalidate(actor_uri)

    def grace_keys(self, actor_uri: str) -> List[str]:
        """Deprecated keys of a local actor that are still accepted."""
        return [d.public_key_pem for d in self.keystore.deprecated_keys(actor_uri)]

    def inbox(self, actor_uri: str) -> Optional[str]:
        """Inbox URL for an actor, fetching its document if needed."""
        local = self.keystore.get(actor_uri)
        if local is not None:
            return local.inbox
        entry = self.cache.peek(actor_uri)
        if entry is None or entry.inbox is None:
            self.lookup(actor_uri, force_refresh=entry is not None)
            entry = self.cache.peek(actor_uri)
        return entry.inbox if entry else None

    def _fetch_once(self, actor_uri: str) -> ResolvedKey:
        with self._lock:
            call = self._inflight.get(actor_uri)
            leader = call is None
            if leader:
                call = _Call()
                self._inflight[actor_uri] = call

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise ResolutionError(str(call.error) or f"Could not resolve {actor_uri}")
            return call.result

        try:
            call.result = self._fetch(actor_uri)
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                del self._inflight[actor_uri]
            call.done.set()
        return call.result

    def _fetch(self, actor_uri: str) -> ResolvedKey:
        if urlparse(actor_uri).scheme not in ("http", "https"):
            raise ResolutionError(f"Unsupported actor URI: {actor_uri}")

        logger.debug(f"Fetching actor {actor_uri}")
        try:
            document = self.client.fetch_actor(actor_uri)
        except (ConnectionError, RuntimeError, ValueError) as e:
            logger.warning(f"Actor fetch failed for {actor_uri}: {e}")
            raise ResolutionError(f"Could not fetch {actor_uri}") from e

        if document.get("id") != actor_uri:
            raise ResolutionError(f"Actor document id does not match {actor_uri}")

        public_key_pem, key_id = _extract_public_key(document, actor_uri)
        try:
            serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        except (ValueError, UnsupportedAlgorithm) as e:
            raise ResolutionError(f"Unusable public key for {actor_uri}") from e

        inbox = document.get("inbox")
        self.cache.put(
            actor_uri,
            public_key_pem,
            key_id=key_id,
            inbox=inbox if isinstance(inbox, str) else None,
        )
        return ResolvedKey(actor_uri, public_key_pem, SOURCE_FETCH)


def _extract_public_key(document: Dict[str, Any], actor_uri: str) -> Tuple[str, str]:
    """
    Pick the actor's own key out of publicKey.

    publicKey may be a single object or a list of objects.
    """
    public_key = document.get("publicKey")
    candidates = public_key if isinstance(public_key, list) else [public_key]

    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        owner = candidate.get("owner", actor_uri)
        pem = candidate.get("publicKeyPem")
        if owner == actor_uri and isinstance(pem, str) and pem:
            return pem, candidate.get("id", "")

    raise ResolutionError(f"No public key owned by {actor_uri}")

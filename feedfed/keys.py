# feedfed/keys.py
"""
Per-actor key management.

An Actor is a local identity with:
- Canonical URI and username
- RSA key pair for HTTP Signatures
- ActivityPub-compliant JSON-LD representation

The private half of each key pair never leaves the KeyStore except through
KeyStore.private_key(), which requires an explicit signing purpose.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import KeyGenerationError
from .fs import atomic_write

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
DEFAULT_ROTATION_GRACE = 86400.0


class KeyPurpose(Enum):
    """Reasons a caller may ask for private key material."""
    SIGNING = "signing"


def _generate_keypair(key_size: int = KEY_SIZE) -> tuple[str, str]:
    """Generate RSA key pair, returned as (private PKCS8 PEM, public SPKI PEM)."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem.decode("utf-8"), public_pem.decode("utf-8")


def _slug(actor_id: str) -> str:
    return hashlib.sha256(actor_id.encode("utf-8")).hexdigest()[:32]


def key_id_for(actor_id: str) -> str:
    """Key ID for HTTP Signatures."""
    return f"{actor_id}#main-key"


@dataclass
class DeprecatedKey:
    """A rotated-out public key, still accepted until expires_at."""
    public_key_pem: str
    deprecated_at: float
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_key_pem": self.public_key_pem,
            "deprecated_at": self.deprecated_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeprecatedKey":
        return cls(
            public_key_pem=data["public_key_pem"],
            deprecated_at=data["deprecated_at"],
            expires_at=data["expires_at"],
        )


@dataclass
class Actor:
    """
    A local ActivityPub Actor (public view).

    Attributes:
        actor_id: Canonical actor URI (e.g., "https://example.com/users/alice")
        username: Local username
        public_key_pem: PEM-encoded SPKI public key
        display_name: Human-readable name
        created_at: Timestamp of creation
    """
    actor_id: str
    username: str
    public_key_pem: str
    display_name: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def domain(self) -> str:
        return urlparse(self.actor_id).netloc

    @property
    def handle(self) -> str:
        """Fediverse handle."""
        return f"@{self.username}@{self.domain}"

    @property
    def key_id(self) -> str:
        return key_id_for(self.actor_id)

    @property
    def inbox(self) -> str:
        return f"{self.actor_id}/inbox"

    @property
    def outbox(self) -> str:
        return f"{self.actor_id}/outbox"

    @property
    def followers(self) -> str:
        return f"{self.actor_id}/followers"

    @property
    def following(self) -> str:
        return f"{self.actor_id}/following"

    def to_activitypub(self) -> Dict[str, Any]:
        """Return ActivityPub JSON-LD representation."""
        return {
            "@context": [
                "https://www.w3.org/ns/activitystreams",
                "https://w3id.org/security/v1",
            ],
            "type": "Person",
            "id": self.actor_id,
            "preferredUsername": self.username,
            "name": self.display_name or self.username,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "followers": self.followers,
            "following": self.following,
            "publicKey": {
                "id": self.key_id,
                "owner": self.actor_id,
                "publicKeyPem": self.public_key_pem,
            },
        }


@dataclass
class _KeyRecord:
    actor: Actor
    deprecated: List[DeprecatedKey] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.actor.username,
            "display_name": self.actor.display_name,
            "public_key": self.actor.public_key_pem,
            "created_at": self.actor.created_at,
            "deprecated": [d.to_dict() for d in self.deprecated],
        }

    @classmethod
    def from_dict(cls, actor_id: str, data: Dict[str, Any]) -> "_KeyRecord":
        actor = Actor(
            actor_id=actor_id,
            username=data["username"],
            public_key_pem=data["public_key"],
            display_name=data.get("display_name", ""),
            created_at=data.get("created_at", time.time()),
        )
        deprecated = [DeprecatedKey.from_dict(d) for d in data.get("deprecated", [])]
        return cls(actor=actor, deprecated=deprecated)


class KeyStore:
    """
    Persistent storage for actor key pairs.

    Structure:
        store_dir/
            actors.json                 # Public index of all actors
            keys/
                <slug>.private.pem      # Mode 600

    With store_dir=None everything is kept in memory.
    """

    def __init__(
        self,
        store_dir: Optional[Path | str] = None,
        rotation_grace: float = DEFAULT_ROTATION_GRACE,
        key_size: int = KEY_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.store_dir = Path(store_dir) if store_dir is not None else None
        self.rotation_grace = rotation_grace
        self.key_size = key_size
        self._clock = clock
        self._lock = threading.RLock()
        self._records: Dict[str, _KeyRecord] = {}
        self._private: Dict[str, str] = {}
        if self.store_dir is not None:
            self._keys_dir().mkdir(parents=True, exist_ok=True)
            self._load()

    def _index_path(self) -> Path:
        return self.store_dir / "actors.json"

    def _keys_dir(self) -> Path:
        return self.store_dir / "keys"

    def _key_path(self, actor_id: str) -> Path:
        return self._keys_dir() / f"{_slug(actor_id)}.private.pem"

    def _load(self):
        """Load the actor index from disk."""
        index_path = self._index_path()
        if index_path.exists():
            with open(index_path) as f:
                data = json.load(f)
            self._records = {
                actor_id: _KeyRecord.from_dict(actor_id, record)
                for actor_id, record in data.get("actors", {}).items()
            }

    def _save(self):
        """Save the actor index to disk."""
        if self.store_dir is None:
            return
        data = {
            "version": "1.0",
            "actors": {
                actor_id: record.to_dict()
                for actor_id, record in self._records.items()
            },
        }
        atomic_write(self._index_path(), json.dumps(data, indent=2))

    def _write_private(self, actor_id: str, pem: str):
        if self.store_dir is None:
            self._private[actor_id] = pem
        else:
            atomic_write(self._key_path(actor_id), pem, mode=0o600)

    def _read_private(self, actor_id: str) -> Optional[str]:
        if self.store_dir is None:
            return self._private.get(actor_id)
        path = self._key_path(actor_id)
        if not path.exists():
            return None
        return path.read_text()

    def _delete_private(self, actor_id: str):
        if self.store_dir is None:
            self._private.pop(actor_id, None)
        else:
            self._key_path(actor_id).unlink(missing_ok=True)

    def generate(
        self,
        actor_id: str,
        username: str = None,
        display_name: str = None,
    ) -> Actor:
        """
        Create and store a key pair for an actor.

        Idempotent: an actor that already has a key pair is returned
        unchanged. On any failure nothing is left behind.

        Raises:
            KeyGenerationError: key generation or storage failed
            ValueError: username belongs to another actor
        """
        with self._lock:
            existing = self._records.get(actor_id)
            if existing is not None:
                return existing.actor

            username = username or actor_id.rstrip("/").rsplit("/", 1)[-1]
            for record in self._records.values():
                if record.actor.username == username:
                    raise ValueError(f"Username {username} already taken")

            try:
                private_pem, public_pem = _generate_keypair(self.key_size)
            except Exception as e:
                raise KeyGenerationError(f"Key generation failed for {actor_id}") from e

            actor = Actor(
                actor_id=actor_id,
                username=username,
                public_key_pem=public_pem,
                display_name=display_name or username,
                created_at=self._clock(),
            )
            try:
                self._write_private(actor_id, private_pem)
                self._records[actor_id] = _KeyRecord(actor=actor)
                self._save()
            except OSError as e:
                self._records.pop(actor_id, None)
                self._delete_private(actor_id)
                raise KeyGenerationError(f"Key storage failed for {actor_id}") from e

            logger.info(f"Generated key pair for {actor_id}")
            return actor

    def rotate(self, actor_id: str) -> Actor:
        """
        Replace an actor's key pair.

        The previous public key stays retrievable through deprecated_keys()
        for rotation_grace seconds. The previous private key is discarded.
        """
        with self._lock:
            record = self._records.get(actor_id)
            if record is None:
                raise KeyError(f"Actor {actor_id} not found")

            try:
                private_pem, public_pem = _generate_keypair(self.key_size)
            except Exception as e:
                raise KeyGenerationError(f"Key generation failed for {actor_id}") from e

            now = self._clock()
            old_actor = record.actor
            old_deprecated = list(record.deprecated)
            old_private = self._read_private(actor_id)

            record.deprecated.append(DeprecatedKey(
                public_key_pem=old_actor.public_key_pem,
                deprecated_at=now,
                expires_at=now + self.rotation_grace,
            ))
            record.actor = Actor(
                actor_id=old_actor.actor_id,
                username=old_actor.username,
                public_key_pem=public_pem,
                display_name=old_actor.display_name,
                created_at=old_actor.created_at,
            )
            try:
                self._write_private(actor_id, private_pem)
                self._save()
            except OSError as e:
                record.actor = old_actor
                record.deprecated = old_deprecated
                if old_private is not None:
                    self._write_private(actor_id, old_private)
                raise KeyGenerationError(f"Key storage failed for {actor_id}") from e

            logger.info(f"Rotated key pair for {actor_id}")
            return record.actor

    def get(self, actor_id: str) -> Optional[Actor]:
        """Get an actor's public record."""
        with self._lock:
            record = self._records.get(actor_id)
            return record.actor if record else None

    def get_by_username(self, username: str) -> Optional[Actor]:
        with self._lock:
            for record in self._records.values():
                if record.actor.username == username:
                    return record.actor
            return None

    def list(self) -> List[Actor]:
        """List all actors (public records only)."""
        with self._lock:
            return [r.actor for r in self._records.values()]

    def public_key(self, actor_id: str) -> Optional[str]:
        actor = self.get(actor_id)
        return actor.public_key_pem if actor else None

    def private_key(self, actor_id: str, purpose: KeyPurpose) -> Optional[str]:
        """
        Return an actor's private key PEM.

        This is the only read path that exposes private key material.

        Raises:
            PermissionError: purpose is not KeyPurpose.SIGNING
        """
        if purpose is not KeyPurpose.SIGNING:
            raise PermissionError("Private keys are only released for signing")
        with self._lock:
            if actor_id not in self._records:
                return None
            return self._read_private(actor_id)

    def deprecated_keys(self, actor_id: str) -> List[DeprecatedKey]:
        """Rotated-out keys whose grace window has not ended."""
        now = self._clock()
        with self._lock:
            record = self._records.get(actor_id)
            if record is None:
                return []
            return [d for d in record.deprecated if d.expires_at > now]

    def purge_expired(self) -> int:
        """Discard deprecated keys past their grace window."""
        now = self._clock()
        removed = 0
        with self._lock:
            for record in self._records.values():
                keep = [d for d in record.deprecated if d.expires_at > now]
                removed += len(record.deprecated) - len(keep)
                record.deprecated = keep
            if removed:
                self._save()
        return removed

    def delete(self, actor_id: str) -> bool:
        """Remove an actor and its key material."""
        with self._lock:
            if self._records.pop(actor_id, None) is None:
                return False
            self._delete_private(actor_id)
            self._save()
            logger.info(f"Deleted actor {actor_id}")
            return True

    def __contains__(self, actor_id: str) -> bool:
        with self._lock:
            return actor_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


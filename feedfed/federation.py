# feedfed/federation.py
"""
Wiring of the federation trust layer.

Connects key storage, key resolution, signing, verification and delivery
into one object that the HTTP server and CLI drive.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from . import activity as ap
from .cache import KeyCache
from .client import FederationClient
from .config import FederationConfig
from .delivery import DeliveryQueue, DeliveryTask
from .errors import ResolutionError, VerificationError
from .followers import FollowerStore
from .handlers import InboxContext, get_handler
from .keys import Actor, KeyStore
from .resolver import ActorResolver
from .signatures import SignatureSigner
from .verifier import SignatureVerifier

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")

ActivityCallback = Callable[[Dict[str, Any], str], None]


@dataclass
class InboxResult:
    """
    Outcome of an inbox delivery.

    Attributes:
        accepted: Whether the activity was verified and processed
        status: HTTP status to answer with
        actor_id: Verified signer (only when accepted)
        activity: Parsed activity (only when accepted)
        error: Rejection reason (never contains key material)
        handled: Whether a handler changed local state
    """
    accepted: bool
    status: int
    actor_id: Optional[str] = None
    activity: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    handled: bool = False


class Federation:
    """
    Federation services for one instance.

    Integrates:
    - KeyStore: Local actors and their key pairs
    - KeyCache + ActorResolver: Public keys of remote actors
    - SignatureSigner / SignatureVerifier: HTTP Signatures
    - DeliveryQueue: Outbound delivery with retry
    - FollowerStore: Follow relationships
    """

    def __init__(
        self,
        config: FederationConfig = None,
        client: FederationClient = None,
        clock: Callable[[], float] = time.time,
        on_activity: Optional[ActivityCallback] = None,
    ):
        self.config = config or FederationConfig()
        cfg = self.config
        self.client = client or FederationClient(timeout=cfg.request_timeout)

        self.keys = KeyStore(cfg.path("keys"), rotation_grace=cfg.rotation_grace, clock=clock)
        self.key_cache = KeyCache(cfg.path("key_cache"), ttl=cfg.key_cache_ttl, clock=clock)
        self.resolver = ActorResolver(self.keys, self.key_cache, self.client)
        self.signer = SignatureSigner(self.keys)
        self.verifier = SignatureVerifier(self.resolver, max_skew=cfg.max_clock_skew, clock=clock)
        self.queue = DeliveryQueue(
            self.signer,
            self.client,
            store_dir=cfg.path("delivery"),
            workers=cfg.delivery.workers,
            max_attempts=cfg.delivery.max_attempts,
            backoff_base=cfg.delivery.backoff_base,
            backoff_cap=cfg.delivery.backoff_cap,
            jitter=cfg.delivery.jitter,
            archive_limit=cfg.delivery.archive_limit,
            clock=clock,
        )
        self.followers = FollowerStore(cfg.path("followers"))
        self._on_activity = on_activity

    def set_activity_callback(self, callback: ActivityCallback):
        """Set the collaborator that receives every verified activity."""
        self._on_activity = callback

    def start(self):
        self.queue.start()

    def stop(self):
        self.queue.stop()

    def create_actor(self, username: str, display_name: str = None) -> Actor:
        """
        Create a local actor with a fresh key pair.

        Nothing is stored if key generation fails.

        Raises:
            ValueError: invalid or taken username
            KeyGenerationError: key pair could not be created
        """
        if not USERNAME_RE.match(username):
            raise ValueError(f"Invalid username: {username!r}")
        if self.keys.get_by_username(username) is not None:
            raise ValueError(f"Actor {username} already exists")
        return self.keys.generate(self.config.actor_id(username), username, display_name)

    def get_actor(self, username: str) -> Optional[Actor]:
        return self.keys.get_by_username(username)

    def actor_document(self, username: str) -> Optional[Dict[str, Any]]:
        """Public ActivityPub document for a local actor."""
        actor = self.get_actor(username)
        return actor.to_activitypub() if actor else None

    def rotate_key(self, username: str) -> Actor:
        actor = self._require(username)
        return self.keys.rotate(actor.actor_id)

    def delete_actor(self, username: str) -> bool:
        """Remove an actor, abandoning its pending deliveries."""
        actor = self.get_actor(username)
        if actor is None:
            return False
        cancelled = self.queue.cancel_actor(actor.actor_id)
        if cancelled:
            logger.info(f"Cancelled {cancelled} deliveries of {actor.actor_id}")
        self.followers.remove_actor(actor.actor_id)
        return self.keys.delete(actor.actor_id)

    def _require(self, username: str) -> Actor:
        actor = self.get_actor(username)
        if actor is None:
            raise KeyError(f"Actor {username} not found")
        return actor

    def receive(
        self,
        username: str,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> InboxResult:
        """
        Verify and process a request to a local inbox.

        Any failure rejects the request before local state is touched.
        """
        local = self.get_actor(username)
        if local is None:
            return InboxResult(False, 404, error="Unknown actor")

        try:
            actor_id = self.verifier.verify(method, path, headers, body)
        except VerificationError as e:
            logger.info(f"Rejected inbox request for {username}: {type(e).__name__}: {e}")
            return InboxResult(False, e.status, error=type(e).__name__)

        try:
            activity = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return InboxResult(False, 400, error="Invalid JSON")
        if not isinstance(activity, dict):
            return InboxResult(False, 400, error="Activity must be a JSON object")

        if ap.object_id(activity.get("actor")) != actor_id:
            logger.info(f"Rejected inbox request for {username}: signed by {actor_id}, "
                        f"claims {ap.object_id(activity.get('actor'))}")
            return InboxResult(False, 403, error="ActorMismatch")

        handled = False
        activity_type = activity.get("type")
        handler = get_handler(activity_type) if isinstance(activity_type, str) else None
        if handler is not None:
            context = InboxContext(
                local_actor=local,
                followers=self.followers,
                queue=self.queue,
                resolver=self.resolver,
            )
            handled = handler.handle(activity, actor_id, context)
        else:
            logger.debug(f"No handler for {activity_type} activity")

        if self._on_activity:
            self._on_activity(activity, actor_id)

        return InboxResult(True, 202, actor_id=actor_id, activity=activity, handled=handled)

    def send(self, username: str, activity: Dict[str, Any], inboxes: Iterable[str]) -> List[DeliveryTask]:
        """Queue one activity for several inboxes. Duplicate inboxes are sent once."""
        actor = self._require(username)
        payload = json.dumps(activity).encode("utf-8")
        tasks = []
        seen = set()
        for inbox in inboxes:
            if inbox in seen:
                continue
            seen.add(inbox)
            tasks.append(self.queue.enqueue(actor.actor_id, inbox, payload))
        return tasks

    def send_to_followers(self, username: str, activity: Dict[str, Any]) -> List[DeliveryTask]:
        """Queue an activity for the inbox of every follower."""
        actor = self._require(username)
        inboxes = []
        for follower in self.followers.followers(actor.actor_id):
            try:
                inbox = self.resolver.inbox(follower)
            except ResolutionError as e:
                logger.warning(f"Skipping follower {follower}: {e}")
                continue
            if inbox:
                inboxes.append(inbox)
        return self.send(username, activity, inboxes)

    def follow(self, username: str, remote_actor: str) -> DeliveryTask:
        """
        Send a Follow to a remote actor.

        Raises:
            ResolutionError: the remote actor's inbox could not be found
        """
        actor = self._require(username)
        inbox = self.resolver.inbox(remote_actor)
        if inbox is None:
            raise ResolutionError(f"No inbox for {remote_actor}")
        return self.send(username, ap.follow(actor.actor_id, remote_actor), [inbox])[0]

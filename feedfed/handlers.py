# feedfed/handlers.py
"""
Inbox activity handlers and registry.

Handlers process activities that have already passed signature
verification. They are registered by activity type and looked up when an
activity arrives at a local inbox.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from . import activity as ap
from .delivery import DeliveryQueue
from .errors import ResolutionError
from .followers import FollowerStore
from .keys import Actor
from .resolver import ActorResolver

logger = logging.getLogger(__name__)

# Global handler registry
_HANDLERS: Dict[str, Type["ActivityHandler"]] = {}


@dataclass
class InboxContext:
    """What a handler may act on for the receiving local actor."""
    local_actor: Actor
    followers: FollowerStore
    queue: DeliveryQueue
    resolver: ActorResolver


class ActivityHandler(ABC):
    """
    Base class for inbox handlers.

    Subclasses implement handle() for one activity type.
    """

    @abstractmethod
    def handle(
        self,
        activity: Dict[str, Any],
        actor_id: str,
        context: InboxContext,
    ) -> bool:
        """
        Process a verified activity.

        Args:
            activity: The activity JSON
            actor_id: Verified signer of the request
            context: Receiving actor and services

        Returns:
            True if the activity changed local state
        """
        pass


def register_handler(activity_type: str) -> Callable:
    """
    Decorator to register a handler for an activity type.

    Usage:
        @register_handler("Follow")
        class FollowHandler(ActivityHandler):
            ...
    """
    def decorator(cls: Type[ActivityHandler]) -> Type[ActivityHandler]:
        if activity_type in _HANDLERS:
            logger.warning(f"Overwriting handler for {activity_type}")
        _HANDLERS[activity_type] = cls
        return cls
    return decorator


def get_handler(activity_type: str) -> Optional[ActivityHandler]:
    """
    Get a handler instance for an activity type.

    Returns None if no handler is registered.
    """
    handler_cls = _HANDLERS.get(activity_type)
    if handler_cls is None:
        return None
    return handler_cls()


def list_handlers() -> Dict[str, Type[ActivityHandler]]:
    """List all registered handlers."""
    return dict(_HANDLERS)


def clear_handlers():
    """Clear all registered handlers (for testing)."""
    _HANDLERS.clear()


def register_builtin_handlers():
    """(Re-)register the Follow and Accept handlers."""
    register_handler("Follow")(FollowHandler)
    register_handler("Accept")(AcceptHandler)


class FollowHandler(ActivityHandler):
    """Record a new follower and send back a signed Accept."""

    def handle(self, activity, actor_id, context):
        local = context.local_actor
        if ap.object_id(activity.get("object")) != local.actor_id:
            logger.debug(f"Follow from {actor_id} is not addressed to {local.actor_id}")
            return False

        added = context.followers.add_follower(local.actor_id, actor_id)

        try:
            inbox = context.resolver.inbox(actor_id)
        except ResolutionError as e:
            logger.warning(f"Cannot accept follow from {actor_id}: {e}")
            return added
        if inbox is None:
            logger.warning(f"Cannot accept follow from {actor_id}: no inbox")
            return added

        context.queue.enqueue(local.actor_id, inbox, ap.accept(local.actor_id, activity))
        logger.info(f"{actor_id} now follows {local.actor_id}")
        return added


class AcceptHandler(ActivityHandler):
    """Record that a Follow we sent was accepted."""

    def handle(self, activity, actor_id, context):
        local = context.local_actor
        follow = activity.get("object")
        if not isinstance(follow, dict) or follow.get("type") != "Follow":
            return False
        if follow.get("actor") != local.actor_id:
            return False
        if ap.object_id(follow.get("object")) != actor_id:
            return False
        return context.followers.add_following(local.actor_id, actor_id)


register_builtin_handlers()

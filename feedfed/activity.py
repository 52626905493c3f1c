# feedfed/activity.py
"""
Builders for the activities the federation layer itself emits.

Only Follow and Accept are produced here; everything else is supplied by
application code as a ready-made activity dict.
"""

import time
import uuid
from typing import Any, Dict

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"


def _published() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def new_activity_id(actor_id: str) -> str:
    """Unique activity URI under the actor's namespace."""
    return f"{actor_id}/activities/{uuid.uuid4()}"


def build_activity(activity_type: str, actor_id: str, obj: Any, **extra: Any) -> Dict[str, Any]:
    """Return an ActivityStreams activity."""
    activity = {
        "@context": AS_CONTEXT,
        "id": new_activity_id(actor_id),
        "type": activity_type,
        "actor": actor_id,
        "object": obj,
        "published": _published(),
    }
    activity.update(extra)
    return activity


def follow(actor_id: str, target_actor: str) -> Dict[str, Any]:
    return build_activity("Follow", actor_id, target_actor, to=[target_actor])


def accept(actor_id: str, follow_activity: Dict[str, Any]) -> Dict[str, Any]:
    """Accept a Follow, echoing the original activity."""
    return build_activity(
        "Accept",
        actor_id,
        follow_activity,
        to=[follow_activity.get("actor")],
    )


def object_id(obj: Any) -> Any:
    """The id of an embedded object, or the value itself if it is a reference."""
    if isinstance(obj, dict):
        return obj.get("id")
    return obj

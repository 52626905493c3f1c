# tests/test_handlers.py
"""Tests for inbox handlers and the handler registry."""

import json

import pytest

from feedfed import activity as ap
from feedfed.cache import KeyCache
from feedfed.delivery import DeliveryQueue
from feedfed.followers import FOLLOWERS, FOLLOWING, FollowerStore
from feedfed.handlers import (
    AcceptHandler,
    ActivityHandler,
    FollowHandler,
    InboxContext,
    clear_handlers,
    get_handler,
    list_handlers,
    register_builtin_handlers,
    register_handler,
)
from feedfed.keys import KeyStore
from feedfed.resolver import ActorResolver
from feedfed.signatures import SignatureSigner

ALICE = "https://social.example/users/alice"
BOB = "https://remote.example/users/bob"


class TestHandlerRegistry:
    """Test handler registration."""

    def setup_method(self):
        """Clear registry before each test."""
        clear_handlers()

    def teardown_method(self):
        """Restore built-in handlers after each test."""
        clear_handlers()
        register_builtin_handlers()

    def test_register_handler(self):
        @register_handler("Like")
        class LikeHandler(ActivityHandler):
            def handle(self, activity, actor_id, context):
                return True

        handler = get_handler("Like")
        assert isinstance(handler, LikeHandler)

    def test_get_unregistered(self):
        assert get_handler("Announce") is None

    def test_list_handlers(self):
        register_builtin_handlers()
        assert set(list_handlers()) == {"Follow", "Accept"}

    def test_overwrite(self):
        register_builtin_handlers()

        @register_handler("Follow")
        class CustomFollow(ActivityHandler):
            def handle(self, activity, actor_id, context):
                return False

        assert isinstance(get_handler("Follow"), CustomFollow)


@pytest.fixture
def context(client, clock):
    keys = KeyStore(clock=clock)
    local = keys.generate(ALICE)
    remote = KeyStore().generate(BOB)
    client.add_actor(remote)
    return InboxContext(
        local_actor=local,
        followers=FollowerStore(),
        queue=DeliveryQueue(SignatureSigner(keys), client, clock=clock),
        resolver=ActorResolver(keys, KeyCache(clock=clock), client),
    )


class TestFollowHandler:
    """Incoming Follow requests."""

    def test_follow_recorded_and_accepted(self, context):
        follow = ap.follow(BOB, ALICE)
        assert FollowHandler().handle(follow, BOB, context) is True

        assert context.followers.followers(ALICE) == [BOB]
        tasks = context.queue.list_tasks()
        assert len(tasks) == 1
        assert tasks[0].target_inbox == f"{BOB}/inbox"
        accept = json.loads(tasks[0].payload)
        assert accept["type"] == "Accept"
        assert accept["actor"] == ALICE
        assert accept["object"]["id"] == follow["id"]

    def test_follow_for_someone_else_ignored(self, context):
        follow = ap.follow(BOB, "https://social.example/users/carol")
        assert FollowHandler().handle(follow, BOB, context) is False
        assert context.followers.followers(ALICE) == []
        assert context.queue.list_tasks() == []

    def test_repeat_follow_accepted_again(self, context):
        follow = ap.follow(BOB, ALICE)
        FollowHandler().handle(follow, BOB, context)
        assert FollowHandler().handle(follow, BOB, context) is False
        assert context.followers.followers(ALICE) == [BOB]
        assert len(context.queue.list_tasks()) == 2

    def test_unresolvable_follower(self, context, client):
        del client.documents[BOB]
        assert FollowHandler().handle(ap.follow(BOB, ALICE), BOB, context) is True
        assert context.queue.list_tasks() == []


class TestAcceptHandler:
    """Incoming Accept of a Follow we sent."""

    def test_accept_recorded(self, context):
        follow = ap.follow(ALICE, BOB)
        accept = ap.accept(BOB, follow)
        assert AcceptHandler().handle(accept, BOB, context) is True
        assert context.followers.following(ALICE) == [BOB]

    def test_accept_from_wrong_actor(self, context):
        follow = ap.follow(ALICE, BOB)
        accept = ap.accept("https://remote.example/users/mallory", follow)
        assert AcceptHandler().handle(accept, "https://remote.example/users/mallory", context) is False
        assert context.followers.following(ALICE) == []

    def test_accept_by_reference_ignored(self, context):
        accept = ap.build_activity("Accept", BOB, "https://social.example/activities/1")
        assert AcceptHandler().handle(accept, BOB, context) is False


class TestFollowerStore:
    """Test relationship storage."""

    def test_add_remove(self):
        store = FollowerStore()
        assert store.add_follower(ALICE, BOB) is True
        assert store.add_follower(ALICE, BOB) is False
        assert store.followers(ALICE) == [BOB]
        assert store.remove_follower(ALICE, BOB) is True
        assert store.followers(ALICE) == []

    def test_collection(self):
        store = FollowerStore()
        store.add_following(ALICE, BOB)
        collection = store.collection(ALICE, FOLLOWING)
        assert collection["type"] == "OrderedCollection"
        assert collection["id"] == f"{ALICE}/following"
        assert collection["totalItems"] == 1
        assert collection["orderedItems"] == [BOB]
        assert store.collection(ALICE, FOLLOWERS)["totalItems"] == 0

    def test_unknown_collection(self):
        with pytest.raises(ValueError):
            FollowerStore().collection(ALICE, "likes")

    def test_persistence(self, temp_dir):
        FollowerStore(temp_dir).add_follower(ALICE, BOB)
        assert FollowerStore(temp_dir).followers(ALICE) == [BOB]

    def test_remove_actor(self, temp_dir):
        store = FollowerStore(temp_dir)
        store.add_follower(ALICE, BOB)
        store.remove_actor(ALICE)
        assert FollowerStore(temp_dir).followers(ALICE) == []

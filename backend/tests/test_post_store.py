"""Tests for the exchange post store and its snapshot subscriptions."""

import pytest

from changeswap import geohash
from changeswap.config import settings
from changeswap.errors import NotAuthorized, NotFound, StateConflict, ValidationError
from changeswap.models.audit_log import AuditLog
from changeswap.models.match_request import MatchRequest
from changeswap.models.notification import Notification
from changeswap.services import match_service, matcher, post_store
from changeswap.services.matcher import Location
from changeswap.services.post_store import PostFilters
from changeswap.services.snapshot_broker import SnapshotBroker
from conftest import MANILA, MANILA_NEARBY


def offer(db, user, lat=MANILA[0], lng=MANILA[1], **overrides):
    fields = dict(
        give_amount=1000, give_type="bill", need_amount=1000, need_type="coins", lat=lat, lng=lng,
    )
    fields.update(overrides)
    return post_store.create_post(db, user.id, **fields)


class TestCreatePost:
    """Test post creation and validation."""

    def test_create_sets_geohash_and_status(self, db, alice):
        post = offer(db, alice)
        assert post.status == "active"
        assert post.geohash == geohash.encode(*MANILA, 5)
        assert post.created_at is not None

    def test_invalid_location_writes_nothing(self, db, alice):
        with pytest.raises(ValidationError):
            offer(db, alice, lat=123.0)
        assert post_store.list_user_posts(db, alice.id) == []

    @pytest.mark.parametrize("overrides", [
        {"give_amount": 0},
        {"need_amount": -5},
        {"give_type": "gold"},
        {"need_type": None},
        {"need_breakdown": [500, 200]},
    ])
    def test_invalid_fields_rejected(self, db, alice, overrides):
        with pytest.raises(ValidationError):
            offer(db, alice, **overrides)

    def test_breakdown_stored(self, db, alice):
        post = offer(db, alice, need_breakdown=[500, 500])
        view = post_store.to_view(post)
        assert view.need_breakdown == (500.0, 500.0)


class TestUpdateAndWithdraw:
    """Test owner edits and soft deletes."""

    def test_owner_edit_retags_geohash(self, db, alice):
        post = offer(db, alice)
        updated = post_store.update_post(db, post.id, alice.id, {"lat": MANILA_NEARBY[0], "lng": MANILA_NEARBY[1]})
        assert updated.geohash == geohash.encode(*MANILA_NEARBY, 5)

    def test_non_owner_cannot_edit(self, db, alice, bob):
        post = offer(db, alice)
        with pytest.raises(NotAuthorized):
            post_store.update_post(db, post.id, bob.id, {"notes": "mine now"})

    def test_unknown_field_rejected(self, db, alice):
        post = offer(db, alice)
        with pytest.raises(ValidationError):
            post_store.update_post(db, post.id, alice.id, {"status": "closed"})

    def test_withdraw_closes_and_declines_pending(self, db, alice, bob):
        post = offer(db, alice)
        request = match_service.create_match_request(db, bob.id, post.id)
        withdrawn = post_store.withdraw_post(db, post.id, alice.id)
        assert withdrawn.status == "closed"
        db.expire_all()
        assert db.get(MatchRequest, request.id).status == "declined"

    def test_withdraw_notifies_and_audits_declines(self, db, alice, bob):
        post = offer(db, alice)
        request = match_service.create_match_request(db, bob.id, post.id)
        post_store.withdraw_post(db, post.id, alice.id)
        db.expire_all()
        declined = db.query(Notification).filter(
            Notification.user_id == bob.id, Notification.type == "match_declined"
        ).count()
        assert declined == 1
        audited = db.query(AuditLog).filter(
            AuditLog.entity_id == request.id, AuditLog.action == "declined"
        ).one()
        assert audited.actor_id == alice.id

    def test_withdraw_twice_is_noop(self, db, alice):
        post = offer(db, alice)
        post_store.withdraw_post(db, post.id, alice.id)
        assert post_store.withdraw_post(db, post.id, alice.id).status == "closed"

    def test_cannot_withdraw_matched_post(self, db, alice, bob):
        post = offer(db, alice)
        request = match_service.create_match_request(db, bob.id, post.id)
        match_service.accept_match_request(db, request.id, alice.id)
        with pytest.raises(StateConflict):
            post_store.withdraw_post(db, post.id, alice.id)

    def test_missing_post(self, db, alice):
        with pytest.raises(NotFound):
            post_store.get_post(db, "nope")


class TestCompareAndSet:
    """Test the conditional status flip."""

    def test_only_first_flip_wins(self, db, alice):
        post = offer(db, alice)
        assert post_store.compare_and_set_status(db, post.id, "active", "matched") is True
        assert post_store.compare_and_set_status(db, post.id, "active", "matched") is False
        db.commit()
        db.expire_all()
        assert post_store.get_post(db, post.id).status == "matched"


class TestQueries:
    """Test one-shot queries and snapshots."""

    def test_active_posts_exclude_user_and_inactive(self, db, alice, bob):
        offer(db, alice)
        kept = offer(db, bob)
        closed = offer(db, bob)
        post_store.withdraw_post(db, closed.id, bob.id)
        posts = post_store.list_active_posts(db, exclude_user_id=alice.id)
        assert [p.id for p in posts] == [kept.id]

    def test_prefix_narrowing(self, db, alice, bob):
        near = offer(db, bob, lat=MANILA_NEARBY[0], lng=MANILA_NEARBY[1])
        offer(db, bob, lat=10.31, lng=123.89)  # Cebu
        prefixes = geohash.covering_prefixes(*MANILA, radius_km=3.0)
        posts = post_store.list_active_posts(db, exclude_user_id=alice.id, prefixes=prefixes)
        assert [p.id for p in posts] == [near.id]

    def test_snapshot_carries_owner_summary(self, db, alice, bob):
        offer(db, bob)
        views = post_store.snapshot(db, PostFilters(exclude_user_id=alice.id))
        assert len(views) == 1
        assert views[0].owner_name == "Bob"
        assert views[0].owner_rating == 0.0

    def test_snapshot_keeps_older_nearby_posts(self, db, alice, bob):
        """Many newer distant posts do not push an older nearby one out of the feed."""
        near = offer(db, bob, lat=MANILA_NEARBY[0], lng=MANILA_NEARBY[1])
        for _ in range(settings.MAX_FEED_SIZE + 5):
            offer(db, bob, lat=40.71, lng=-74.0)  # New York
        views = post_store.snapshot(db, PostFilters(exclude_user_id=alice.id))
        assert len(views) == settings.MAX_FEED_SIZE + 6
        ranked = matcher.rank_feed(views, Location(*MANILA), alice.id)
        assert ranked[0].post.id == near.id


class TestSubscription:
    """Test snapshot subscriptions."""

    def test_first_call_returns_current_snapshot(self, db, session_factory, alice, bob):
        offer(db, bob)
        sub = post_store.subscribe(PostFilters(exclude_user_id=alice.id), session_factory, SnapshotBroker())
        first = sub.next_snapshot(timeout=0)
        assert len(first) == 1

    def test_change_delivers_new_snapshot(self, db, session_factory, alice, bob):
        local = SnapshotBroker()
        sub = post_store.subscribe(PostFilters(exclude_user_id=alice.id), session_factory, local)
        assert sub.next_snapshot(timeout=0) == ()
        offer(db, bob)
        local.publish(post_store.POSTS)
        assert len(sub.next_snapshot(timeout=1)) == 1

    def test_duplicate_notifications_do_not_repeat_snapshot(self, db, session_factory, alice, bob):
        local = SnapshotBroker()
        offer(db, bob)
        sub = post_store.subscribe(PostFilters(exclude_user_id=alice.id), session_factory, local)
        sub.next_snapshot(timeout=0)
        local.publish(post_store.POSTS)
        local.publish(post_store.POSTS)
        assert sub.next_snapshot(timeout=0.05) is None

    def test_timeout_without_changes(self, db, session_factory, alice):
        sub = post_store.subscribe(PostFilters(exclude_user_id=alice.id), session_factory, SnapshotBroker())
        sub.next_snapshot(timeout=0)
        assert sub.next_snapshot(timeout=0.01) is None

    def test_closed_subscription_yields_nothing(self, session_factory, alice):
        sub = post_store.subscribe(PostFilters(exclude_user_id=alice.id), session_factory, SnapshotBroker())
        sub.close()
        assert sub.next_snapshot(timeout=0) is None
        assert list(sub) == []

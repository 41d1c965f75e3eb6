"""Tests for active exchanges and mutual completion with ratings."""

import pytest

from changeswap.errors import NotAuthorized, NotFound, StateConflict, ValidationError
from changeswap.models.active_exchange import ActiveExchange
from changeswap.models.chat_message import ChatMessage
from changeswap.models.exchange_history import ExchangeHistoryRecord
from changeswap.models.notification import Notification
from changeswap.models.user import User
from changeswap.models.user_rating import UserRating
from changeswap.services import chat_service, completion_service, exchange_service, match_service, post_store
from conftest import MANILA, MANILA_NEARBY


@pytest.fixture
def exchange(db, alice, bob):
    """Alice offers a ₱1000 bill for coins; Bob, 1.5 km away, offers the mirror and requests."""
    alice_post = post_store.create_post(
        db, alice.id, give_amount=1000, give_type="bill", need_amount=1000, need_type="coins",
        lat=MANILA[0], lng=MANILA[1],
    )
    bob_post = post_store.create_post(
        db, bob.id, give_amount=1000, give_type="coins", need_amount=1000, need_type="bill",
        lat=MANILA_NEARBY[0], lng=MANILA_NEARBY[1],
    )
    request = match_service.create_match_request(db, bob.id, alice_post.id, requester_post_id=bob_post.id)
    active = match_service.accept_match_request(db, request.id, alice.id)
    return active.id, alice_post.id, bob_post.id


def aggregates(db, *users):
    db.expire_all()
    return {
        u.display_name: (
            db.get(User, u.id).rating_sum,
            db.get(User, u.id).total_ratings,
            db.get(User, u.id).completed_exchanges,
        )
        for u in users
    }


class TestActiveExchanges:
    """Test the per-user view of live exchanges."""

    def test_both_parties_see_exchange(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        for user, partner in ((alice, bob), (bob, alice)):
            views = exchange_service.list_active_exchanges(db, user.id)
            assert [v["id"] for v in views] == [exchange_id]
            assert views[0]["partner_id"] == partner.id

    def test_initiator_flags(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        bob_view = exchange_service.list_active_exchanges(db, bob.id)[0]
        alice_view = exchange_service.list_active_exchanges(db, alice.id)[0]
        assert bob_view["is_initiator"] and bob_view["can_complete"]
        assert not alice_view["is_initiator"] and not alice_view["can_complete"]

    def test_outsider_cannot_read(self, db, carol, exchange):
        exchange_id, _, _ = exchange
        with pytest.raises(NotAuthorized):
            exchange_service.get_active_exchange(db, exchange_id, carol.id)

    def test_partner_can_complete_after_start(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        exchange_service.start_completion(db, exchange_id, bob.id)
        active = exchange_service.get_active_exchange(db, exchange_id, alice.id)
        assert exchange_service.can_submit_completion(active, alice.id)

    def test_only_initiator_starts_completion(self, db, alice, exchange):
        exchange_id, _, _ = exchange
        with pytest.raises(NotAuthorized):
            exchange_service.start_completion(db, exchange_id, alice.id)

    def test_start_completion_is_idempotent(self, db, bob, exchange):
        exchange_id, _, _ = exchange
        first = exchange_service.start_completion(db, exchange_id, bob.id).completion_started_at
        second = exchange_service.start_completion(db, exchange_id, bob.id).completion_started_at
        assert first == second


class TestSubmitCompletion:
    """Test individual submissions."""

    def test_partner_waits_for_initiator(self, db, alice, exchange):
        exchange_id, _, _ = exchange
        with pytest.raises(StateConflict):
            exchange_service.submit_completion(db, exchange_id, alice.id, 5)

    def test_first_submission_keeps_exchange_open(self, db, alice, bob, exchange):
        exchange_id, alice_post, _ = exchange
        result = exchange_service.submit_completion(db, exchange_id, bob.id, 5, "Smooth swap")
        assert result.status == "recorded"
        assert result.my_completed and not result.partner_completed
        assert not result.exchange_closed
        db.expire_all()
        active = db.get(ActiveExchange, exchange_id)
        assert active.party_a.completed and active.party_a.rating == 5
        assert not active.party_b.completed
        assert post_store.get_post(db, alice_post).status == "matched"

    def test_partner_rating_counted_immediately(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        exchange_service.submit_completion(db, exchange_id, bob.id, 5)
        assert aggregates(db, alice)["Alice"] == (5.0, 1, 1)

    def test_repeat_submission_is_noop(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        exchange_service.submit_completion(db, exchange_id, bob.id, 5)
        again = exchange_service.submit_completion(db, exchange_id, bob.id, 1)
        assert again.status == "already_recorded"
        assert aggregates(db, alice)["Alice"] == (5.0, 1, 1)
        assert db.query(UserRating).count() == 1

    @pytest.mark.parametrize("rating", [0, 6, 3.5, True, None])
    def test_invalid_rating_rejected(self, db, bob, exchange, rating):
        exchange_id, _, _ = exchange
        with pytest.raises(ValidationError):
            exchange_service.submit_completion(db, exchange_id, bob.id, rating)

    def test_outsider_rejected(self, db, carol, exchange):
        exchange_id, _, _ = exchange
        with pytest.raises(NotAuthorized):
            exchange_service.submit_completion(db, exchange_id, carol.id, 4)

    def test_unknown_exchange(self, db, bob):
        with pytest.raises(NotFound):
            exchange_service.submit_completion(db, "missing", bob.id, 4)


class TestMutualCompletion:
    """Test closing an exchange once both parties are in."""

    def _finish(self, db, exchange_id, first, first_rating, second, second_rating):
        exchange_service.submit_completion(db, exchange_id, first.id, first_rating)
        return exchange_service.submit_completion(db, exchange_id, second.id, second_rating)

    def test_second_submission_closes_everything(self, db, alice, bob, exchange):
        exchange_id, alice_post, bob_post = exchange
        exchange_service.start_completion(db, exchange_id, bob.id)
        result = self._finish(db, exchange_id, alice, 4, bob, 5)

        assert result.status == "closed" and result.exchange_closed
        db.expire_all()
        assert db.get(ActiveExchange, exchange_id) is None
        assert post_store.get_post(db, alice_post).status == "closed"
        assert post_store.get_post(db, bob_post).status == "closed"
        assert db.query(ChatMessage).filter(ChatMessage.match_id == exchange_id).count() == 0
        completed = db.query(Notification).filter(Notification.type == "exchange_completed").count()
        assert completed == 2

    def test_each_party_gets_one_history_row(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        self._finish(db, exchange_id, bob, 5, alice, 4)
        rows = db.query(ExchangeHistoryRecord).filter(ExchangeHistoryRecord.match_id == exchange_id).all()
        assert sorted((r.rater_user_id, r.partner_user_id, r.rating) for r in rows) == sorted([
            (bob.id, alice.id, 5),
            (alice.id, bob.id, 4),
        ])
        history = completion_service.list_history(db, alice.id)
        assert [h.partner_name for h in history] == ["Bob"]

    def test_order_does_not_matter(self, db, make_user):
        """Both submission orders end in the same aggregates."""
        outcomes = []
        for order in ("initiator_first", "partner_first"):
            owner = make_user("Owner")
            requester = make_user("Requester")
            post = post_store.create_post(
                db, owner.id, give_amount=1000, give_type="bill", need_amount=1000,
                need_type="coins", lat=MANILA[0], lng=MANILA[1],
            )
            request = match_service.create_match_request(db, requester.id, post.id)
            match_service.accept_match_request(db, request.id, owner.id)
            exchange_service.start_completion(db, request.id, requester.id)
            if order == "initiator_first":
                self._finish(db, request.id, requester, 3, owner, 5)
            else:
                self._finish(db, request.id, owner, 5, requester, 3)
            totals = aggregates(db, owner, requester)
            outcomes.append((totals["Owner"], totals["Requester"]))
        assert outcomes[0] == outcomes[1] == ((3.0, 1, 1), (5.0, 1, 1))

    def test_resubmission_after_close_is_noop(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        self._finish(db, exchange_id, bob, 5, alice, 4)
        again = exchange_service.submit_completion(db, exchange_id, alice.id, 1)
        assert again.status == "already_recorded"
        assert again.exchange_closed
        assert aggregates(db, bob)["Bob"] == (4.0, 1, 1)

    def test_average_rating_on_read(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        self._finish(db, exchange_id, bob, 5, alice, 4)
        summary = completion_service.get_rating_summary(db, alice.id)
        assert summary["average_rating"] == 5.0
        assert summary["completed_exchanges"] == 1

    def test_chat_closed_with_exchange(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange
        chat_service.post_message(db, exchange_id, alice.id, "See you at the 7-Eleven")
        self._finish(db, exchange_id, bob, 5, alice, 5)
        with pytest.raises(NotFound):
            chat_service.list_messages(db, exchange_id, alice.id)


class TestManilaScenario:
    """Requester rates 5 first, owner rates 4 second."""

    def test_scenario(self, db, alice, bob, exchange):
        exchange_id, _, _ = exchange

        first = exchange_service.submit_completion(db, exchange_id, bob.id, 5)
        db.expire_all()
        active = db.get(ActiveExchange, exchange_id)
        assert (active.party_a.completed, active.party_b.completed) == (True, False)
        assert first.status == "recorded"

        second = exchange_service.submit_completion(db, exchange_id, alice.id, 4)
        assert second.exchange_closed
        db.expire_all()
        assert db.query(ActiveExchange).count() == 0
        assert db.query(ExchangeHistoryRecord).count() == 2
        assert db.get(User, alice.id).average_rating == 5.0
        assert db.get(User, bob.id).average_rating == 4.0


class TestRequesterPostAlreadyClaimed:
    """Test an exchange whose requester post was claimed by another exchange first."""

    @pytest.fixture
    def two_exchanges(self, db, alice, bob, carol):
        """Bob offers his coins to Alice, but Carol's request on Bob's post is accepted first."""
        alice_post = post_store.create_post(
            db, alice.id, give_amount=1000, give_type="bill", need_amount=1000, need_type="coins",
            lat=MANILA[0], lng=MANILA[1],
        )
        bob_post = post_store.create_post(
            db, bob.id, give_amount=1000, give_type="coins", need_amount=1000, need_type="bill",
            lat=MANILA_NEARBY[0], lng=MANILA_NEARBY[1],
        )
        to_alice = match_service.create_match_request(db, bob.id, alice_post.id, requester_post_id=bob_post.id)
        to_bob = match_service.create_match_request(db, carol.id, bob_post.id)
        carol_exchange = match_service.accept_match_request(db, to_bob.id, bob.id)
        alice_exchange = match_service.accept_match_request(db, to_alice.id, alice.id)
        return alice_exchange.id, carol_exchange.id, alice_post.id, bob_post.id

    def test_claimed_post_not_recorded(self, db, two_exchanges):
        alice_exchange, _, alice_post, bob_post = two_exchanges
        db.expire_all()
        exchange = db.get(ActiveExchange, alice_exchange)
        assert exchange.post_id == alice_post
        assert exchange.requester_post_id is None
        assert post_store.get_post(db, bob_post).status == "matched"

    def test_completion_leaves_other_exchange_post(self, db, alice, bob, two_exchanges):
        alice_exchange, carol_exchange, alice_post, bob_post = two_exchanges
        exchange_service.submit_completion(db, alice_exchange, bob.id, 5)
        result = exchange_service.submit_completion(db, alice_exchange, alice.id, 5)

        assert result.exchange_closed
        db.expire_all()
        assert post_store.get_post(db, alice_post).status == "closed"
        assert post_store.get_post(db, bob_post).status == "matched"
        assert db.get(ActiveExchange, carol_exchange) is not None

    def test_retirement_leaves_other_exchange_post(self, db, two_exchanges):
        alice_exchange, carol_exchange, alice_post, bob_post = two_exchanges
        exchange_service.retire_exchange(db, db.get(ActiveExchange, alice_exchange))
        db.commit()

        db.expire_all()
        assert post_store.get_post(db, alice_post).status == "active"
        assert post_store.get_post(db, bob_post).status == "matched"
        assert db.get(ActiveExchange, carol_exchange) is not None

"""Order state machine tests: legality, ownership and the exclusive claim."""

import threading

import pytest

from marketplace.models.schemas import Actor, OrderStatus, Role
from marketplace.services.order_service import OrderNotFoundError, fetch_order
from marketplace.services.order_state import (
    TRANSITIONS,
    AlreadyClaimedError,
    InvalidTransitionError,
    OrderAccessError,
    OrderStateMachine,
    allowed_transitions,
)


@pytest.fixture
def machine(db, notifier):
    return OrderStateMachine(db, notifier)


def _order(seed, status, courier_id=None):
    return seed.order("buyer-1", "store-1", "owner-1", status=status, courier_id=courier_id)


class TestTransitionTable:

    def test_allowed_from_pending_confirmation(self):
        assert allowed_transitions(OrderStatus.PENDING_CONFIRMATION) == {
            OrderStatus.PENDING_PAYMENT: Role.STORE,
            OrderStatus.REJECTED: Role.STORE,
            OrderStatus.CANCELLED: Role.BUYER,
        }

    @pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.REJECTED, OrderStatus.CANCELLED])
    def test_terminal_states_have_no_exit(self, status):
        assert allowed_transitions(status) == {}

    def test_every_pair_outside_table_is_rejected(self, db, machine, seed, parties):
        """No actor can perform a transition missing from the table."""
        actors = list(parties.values())
        for frm in OrderStatus.ALL:
            for to in OrderStatus.ALL:
                if (frm, to) in TRANSITIONS or to == OrderStatus.IN_DELIVERY:
                    continue
                order_id = _order(seed, frm, courier_id="courier-1")
                for actor in actors:
                    with pytest.raises(InvalidTransitionError):
                        machine.update_status(order_id, actor, to)
                assert fetch_order(db, order_id).status == frm


class TestStoreTransitions:

    def test_owner_confirms(self, db, machine, seed, parties, notifications):
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        order = machine.update_status(order_id, parties["owner"], OrderStatus.PENDING_PAYMENT)
        assert order.status == OrderStatus.PENDING_PAYMENT
        assert notifications("buyer-1", "order_confirmed") == 1

    def test_owner_rejects(self, machine, seed, parties, notifications):
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        order = machine.update_status(order_id, parties["owner"], OrderStatus.REJECTED)
        assert order.status == OrderStatus.REJECTED
        assert notifications("buyer-1", "order_rejected") == 1

    def test_other_store_owner_forbidden(self, db, machine, seed, parties):
        intruder = seed.user("owner-2", Role.STORE)
        seed.store("store-2", "owner-2")
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        with pytest.raises(InvalidTransitionError) as exc:
            machine.update_status(order_id, intruder, OrderStatus.PENDING_PAYMENT)
        assert exc.value.forbidden is True
        assert fetch_order(db, order_id).status == OrderStatus.PENDING_CONFIRMATION

    def test_ownership_read_fresh(self, db, machine, seed, parties):
        """A store handed to another owner is no longer controlled by the old one."""
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        conn = db.connect()
        try:
            conn.execute("UPDATE stores SET owner_id = 'owner-9' WHERE id = 'store-1'")
            conn.commit()
        finally:
            conn.close()
        with pytest.raises(InvalidTransitionError):
            machine.update_status(order_id, parties["owner"], OrderStatus.PENDING_PAYMENT)

    def test_buyer_cannot_confirm(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        with pytest.raises(InvalidTransitionError) as exc:
            machine.update_status(order_id, parties["buyer"], OrderStatus.PENDING_PAYMENT)
        assert exc.value.forbidden is True

    def test_stale_request_fails(self, db, machine, seed, parties):
        """Confirming an order that was already rejected is a state conflict."""
        order_id = _order(seed, OrderStatus.REJECTED)
        with pytest.raises(InvalidTransitionError) as exc:
            machine.update_status(order_id, parties["owner"], OrderStatus.PENDING_PAYMENT)
        assert exc.value.forbidden is False
        assert "Rechazado" in str(exc.value)


class TestBuyerCancel:

    def test_buyer_cancels_before_confirmation(self, machine, seed, parties, notifications):
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        order = machine.update_status(order_id, parties["buyer"], OrderStatus.CANCELLED)
        assert order.status == OrderStatus.CANCELLED
        assert notifications("owner-1", "order_cancelled") == 1

    def test_other_buyer_cannot_cancel(self, machine, seed, parties):
        stranger = seed.user("buyer-2", Role.BUYER)
        order_id = _order(seed, OrderStatus.PENDING_CONFIRMATION)
        with pytest.raises(InvalidTransitionError):
            machine.update_status(order_id, stranger, OrderStatus.CANCELLED)

    def test_cannot_cancel_after_confirmation(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.PENDING_PAYMENT)
        with pytest.raises(InvalidTransitionError):
            machine.update_status(order_id, parties["buyer"], OrderStatus.CANCELLED)


class TestSettlementOnlyTransition:

    @pytest.mark.parametrize("who", ["buyer", "owner", "courier", "admin"])
    def test_nobody_can_mark_preparing(self, db, machine, seed, parties, who):
        order_id = _order(seed, OrderStatus.PENDING_PAYMENT)
        with pytest.raises(InvalidTransitionError):
            machine.update_status(order_id, parties[who], OrderStatus.IN_PREPARATION)
        assert fetch_order(db, order_id).status == OrderStatus.PENDING_PAYMENT


class TestCourierFlow:

    def test_claim_and_deliver(self, db, machine, seed, parties, notifications):
        order_id = _order(seed, OrderStatus.IN_PREPARATION)

        claimed = machine.claim_order(order_id, parties["courier"])
        assert claimed.status == OrderStatus.IN_DELIVERY
        assert claimed.courier_id == "courier-1"
        assert claimed.courier_name == "Marcos"
        assert claimed.taken_at is not None

        delivered = machine.update_status(order_id, parties["courier"], OrderStatus.DELIVERED)
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.delivered_at is not None
        assert notifications("buyer-1", "order_delivered") == 1

    def test_update_status_in_delivery_routes_to_claim(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_PREPARATION)
        order = machine.update_status(order_id, parties["courier"], OrderStatus.IN_DELIVERY)
        assert order.courier_id == "courier-1"

    def test_second_claim_loses(self, db, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_PREPARATION)
        machine.claim_order(order_id, parties["courier"])
        with pytest.raises(AlreadyClaimedError, match="pedido ya no disponible"):
            machine.claim_order(order_id, parties["rival"])
        assert fetch_order(db, order_id).courier_id == "courier-1"

    def test_concurrent_claims_have_one_winner(self, db, notifier, seed, parties):
        order_id = _order(seed, OrderStatus.IN_PREPARATION)
        couriers = [Actor(f"c-{i}", Role.DELIVERY, f"Courier {i}") for i in range(8)]
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(couriers))

        def attempt(actor):
            machine = OrderStateMachine(db, notifier)
            barrier.wait()
            try:
                machine.claim_order(order_id, actor)
                outcome = ("won", actor.user_id)
            except AlreadyClaimedError:
                outcome = ("lost", actor.user_id)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(c,)) for c in couriers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [uid for outcome, uid in results if outcome == "won"]
        assert len(winners) == 1
        assert fetch_order(db, order_id).courier_id == winners[0]

    def test_claim_before_payment_is_invalid(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.PENDING_PAYMENT)
        with pytest.raises(InvalidTransitionError):
            machine.claim_order(order_id, parties["courier"])

    def test_only_couriers_claim(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_PREPARATION)
        with pytest.raises(InvalidTransitionError) as exc:
            machine.claim_order(order_id, parties["buyer"])
        assert exc.value.forbidden is True

    def test_only_assigned_courier_delivers(self, db, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_DELIVERY, courier_id="courier-1")
        with pytest.raises(InvalidTransitionError):
            machine.update_status(order_id, parties["rival"], OrderStatus.DELIVERED)
        assert fetch_order(db, order_id).status == OrderStatus.IN_DELIVERY

    def test_unknown_order(self, machine, parties):
        with pytest.raises(OrderNotFoundError):
            machine.claim_order("missing", parties["courier"])

    def test_available_orders(self, machine, seed, parties):
        ready = _order(seed, OrderStatus.IN_PREPARATION)
        _order(seed, OrderStatus.IN_PREPARATION, courier_id="courier-2")
        _order(seed, OrderStatus.PENDING_PAYMENT)
        assert [o.id for o in machine.available_orders()] == [ready]


class TestOrderVisibility:

    def test_parties_can_read(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_DELIVERY, courier_id="courier-1")
        for who in ("buyer", "owner", "courier", "admin"):
            assert machine.get_order_for(order_id, parties[who]).id == order_id

    def test_strangers_cannot_read(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_DELIVERY, courier_id="courier-1")
        with pytest.raises(OrderAccessError):
            machine.get_order_for(order_id, parties["rival"])

    def test_couriers_see_unclaimed_ready_orders(self, machine, seed, parties):
        order_id = _order(seed, OrderStatus.IN_PREPARATION)
        assert machine.get_order_for(order_id, parties["rival"]).id == order_id

from datetime import timedelta

import pytest

from database import DBSession
from models import BuyingOrder, utcnow
from relay import FillerRelay
from schemas import OrderKind, OrderStatus, TxStatus

from conftest import BUYER, FILLER, HASH_A, HASH_B, OTHER, SELLER, make_voucher


@pytest.fixture
def relay(queue, orders):
    return FillerRelay(queue, orders, interval=60)


# ---------------------------- Activation -----------------------------

def test_confirmed_deposit_activates_order(relay, orders, queue, confirm):
    order, tx_id = orders.create_selling_order(SELLER, 'XOC', '10', 100)
    confirm(tx_id)
    report = relay.tick()
    assert report.activated == [order.order_id]
    assert tx_id in report.acknowledged
    stored = orders.get_selling_order(order.order_id)
    assert stored.status == OrderStatus.ACTIVE.value
    assert stored.settlement_hash == HASH_A
    assert queue.require(tx_id).acknowledged


def test_tick_is_idempotent(relay, orders, confirm):
    _, tx_id = orders.create_selling_order(SELLER, 'XOC', '10', 100)
    confirm(tx_id)
    relay.tick()
    second = relay.tick()
    assert not second.changed
    assert second.acknowledged == []


def test_open_deposit_is_left_alone(relay, orders, queue):
    order, tx_id = orders.create_selling_order(SELLER, 'XOC', '10', 100)
    queue.update_status(tx_id, TxStatus.SUBMITTED)
    report = relay.tick()
    assert report.activated == []
    assert orders.get_selling_order(order.order_id).status == OrderStatus.PENDING.value
    assert not queue.require(tx_id).acknowledged


@pytest.mark.parametrize('final', [TxStatus.REJECTED, TxStatus.FAILED])
def test_failed_deposit_cancels_pending_order(relay, orders, queue, final):
    order, tx_id = orders.create_buying_order(BUYER, 'MXNe', '5', make_voucher())[:2]
    queue.update_status(tx_id, final)
    report = relay.tick()
    assert report.cancelled == [order.order_id]
    assert orders.get_buying_order(order.order_id).status == OrderStatus.CANCELLED.value


def test_confirmed_deposit_of_cancelled_order_is_only_reported(relay, orders, queue, confirm):
    order, tx_id = orders.create_selling_order(SELLER, 'XOC', '10', 100)
    orders.cancel(OrderKind.SELLING, order.order_id, SELLER)
    confirm(tx_id)
    report = relay.tick()
    assert report.activated == []
    assert tx_id in report.skipped
    assert orders.get_selling_order(order.order_id).status == OrderStatus.CANCELLED.value


def test_expiration_runs_first(relay, orders, active_selling_order):
    order = active_selling_order()
    report = relay.tick(now=utcnow() + timedelta(days=8))
    assert report.expired == [f"selling:{order.order_id}"]


# ------------------------------- Fills -------------------------------

def test_confirmed_fill_marks_buying_order_filled(relay, orders, queue, active_buying_order):
    order, _ = active_buying_order()
    tx_id = orders.begin_buying_fill(order.order_id, FILLER)
    queue.update_status(tx_id, TxStatus.CONFIRMED, HASH_B)
    report = relay.tick()
    assert report.filled == [order.order_id]
    stored = orders.get_buying_order(order.order_id)
    assert stored.filled_by == FILLER
    assert stored.filler_tx_hash == HASH_B


def test_failed_fill_leaves_order_active(relay, orders, queue, active_buying_order):
    order, _ = active_buying_order()
    tx_id = orders.begin_buying_fill(order.order_id, FILLER)
    queue.update_status(tx_id, TxStatus.FAILED)
    report = relay.tick()
    assert report.filled == []
    assert orders.get_buying_order(order.order_id).status == OrderStatus.ACTIVE.value
    assert queue.require(tx_id).acknowledged


def test_open_fill_entry_self_heals_when_order_already_filled(relay, orders, queue, active_buying_order):
    order, _ = active_buying_order()
    tx_id = orders.begin_buying_fill(order.order_id, FILLER)
    queue.update_status(tx_id, TxStatus.SUBMITTED)
    orders.mark_filled(OrderKind.BUYING, order.order_id, FILLER, HASH_B)

    report = relay.tick()
    assert report.healed == [tx_id]
    tx = queue.require(tx_id)
    assert tx.status == TxStatus.CONFIRMED
    assert tx.hash == HASH_B
    assert tx.acknowledged


def test_duplicate_fill_is_skipped(relay, orders, queue, active_buying_order):
    order, _ = active_buying_order()
    first = orders.begin_buying_fill(order.order_id, FILLER)
    second = orders.begin_buying_fill(order.order_id, OTHER)
    queue.update_status(first, TxStatus.CONFIRMED, HASH_B)
    queue.update_status(second, TxStatus.CONFIRMED, HASH_A)

    report = relay.tick()
    assert report.filled == [order.order_id]
    assert second in report.skipped
    assert orders.get_buying_order(order.order_id).filled_by == FILLER


# ----------------------------- Settlement ----------------------------

def test_confirmed_release_records_fill_settlement(relay, orders, queue, active_selling_order):
    order = active_selling_order()
    fill, _ = orders.submit_selling_fill(order.order_id, FILLER, make_voucher(reference='R-1'))
    queue.update_status(fill.settlement_tx_id, TxStatus.CONFIRMED, HASH_B)
    report = relay.tick()
    assert fill.settlement_tx_id in report.settled
    assert orders.get_fill(order.order_id, fill.fill_id).settlement_hash == HASH_B


def test_payout_enqueued_after_image_download(relay, orders, queue, filled_buying_order, engine):
    order, _ = filled_buying_order()
    assert relay.tick().payouts == []
    with DBSession(engine) as s:
        stored = s.get(BuyingOrder, order.order_id)
        stored.image_consumed_at = utcnow()
        s.add(stored)
        s.commit()

    report = relay.tick()
    assert len(report.payouts) == 1
    assert relay.tick().payouts == []
    assert queue.require(report.payouts[0]).tx_type == 'release_buying_order'


def test_errors_are_isolated_per_entry(relay, orders, queue, confirm, monkeypatch):
    first, first_tx = orders.create_selling_order(SELLER, 'XOC', '10', 100)
    second, second_tx = orders.create_selling_order(OTHER, 'XOC', '10', 100)
    confirm(first_tx)
    confirm(second_tx)
    original = orders.activate

    def flaky_activate(kind, order_id, tx_hash):
        if order_id == first.order_id:
            raise RuntimeError('database hiccup')
        return original(kind, order_id, tx_hash)

    monkeypatch.setattr(orders, 'activate', flaky_activate)
    report = relay.tick()
    assert report.activated == [second.order_id]
    assert report.errors[0]['tx_id'] == first_tx
    assert not queue.require(first_tx).acknowledged

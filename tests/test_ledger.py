"""Tests for ledger.sql — SqlLedger persistence and status transitions."""

import pytest

from fakes import TOKEN, USDC, USER, tx_hash
from ledger.models import (
    DuplicatePurchase,
    InvalidTransition,
    Purchase,
    PurchaseNotFound,
    PurchaseStatus,
    can_transition,
)
from ledger.sql import SqlLedger


def _purchase(n=1, status=PurchaseStatus.HELD, purchase_time=1000.0, **overrides):
    fields = dict(
        tx_hash=tx_hash(n),
        token_address=TOKEN,
        token_symbol="TKN",
        token_name="Token",
        token_decimals=18,
        stablecoin_address=USDC,
        stablecoin_symbol="USDC",
        amount_in="1000",
        amount_out=str(10**30),
        chain_id=1,
        purchase_time=purchase_time,
        auto_sell_time=purchase_time + 3600,
        wallet_address=USER,
        status=status,
    )
    fields.update(overrides)
    return Purchase(**fields)


class TestPurchaseModel:
    def test_terminal_states_have_no_exits(self):
        for target in PurchaseStatus:
            assert not can_transition(PurchaseStatus.SOLD, target)
            assert not can_transition(PurchaseStatus.CANCELLED, target)

    def test_sell_amount(self):
        assert _purchase().sell_amount == 10**30
        assert _purchase(amount_out="0").sell_amount is None
        assert _purchase(amount_out="n/a").sell_amount is None

    def test_auto_sell_timing(self):
        purchase = _purchase()
        assert not purchase.is_auto_sell_due(now=4599)
        assert purchase.is_auto_sell_due(now=4600)
        assert purchase.time_until_auto_sell(now=4000) == 600
        assert purchase.time_until_auto_sell(now=9999) == 0

    def test_can_cancel(self):
        assert _purchase(status=PurchaseStatus.PENDING).can_cancel
        assert _purchase(status=PurchaseStatus.HELD).can_cancel
        assert not _purchase(status=PurchaseStatus.SELLING).can_cancel


class TestSqlLedger:
    def test_insert_and_get_round_trip(self, ledger):
        purchase = _purchase()
        ledger.insert(purchase)
        assert ledger.get(purchase.tx_hash) == purchase

    def test_large_amounts_survive(self, ledger):
        ledger.insert(_purchase(amount_out=str(2**256 - 1)))
        assert ledger.get(tx_hash(1)).sell_amount == 2**256 - 1

    def test_insert_never_overwrites(self, ledger):
        ledger.insert(_purchase(status=PurchaseStatus.SELLING))
        sold = ledger.update_sold(tx_hash(1), tx_hash(50))
        seen = []
        ledger.subscribe(seen.append)

        with pytest.raises(DuplicatePurchase):
            ledger.insert(_purchase(token_symbol="NEW"))

        assert ledger.get(tx_hash(1)) == sold
        assert len(ledger.list_all()) == 1
        assert seen == []

    def test_missing_purchase(self, ledger):
        assert ledger.get(tx_hash(9)) is None
        with pytest.raises(PurchaseNotFound):
            ledger.update_status(tx_hash(9), PurchaseStatus.HELD)

    def test_update_status_enforces_state_machine(self, ledger):
        ledger.insert(_purchase(status=PurchaseStatus.SOLD))
        with pytest.raises(InvalidTransition):
            ledger.update_status(tx_hash(1), PurchaseStatus.HELD)

    def test_transition_is_compare_and_set(self, ledger):
        ledger.insert(_purchase())

        moved = ledger.transition(tx_hash(1), {PurchaseStatus.HELD}, PurchaseStatus.SELLING)
        again = ledger.transition(tx_hash(1), {PurchaseStatus.HELD}, PurchaseStatus.SELLING)

        assert moved.status is PurchaseStatus.SELLING
        assert again is None

    def test_transition_rejects_illegal_target(self, ledger):
        ledger.insert(_purchase(status=PurchaseStatus.SELLING))
        with pytest.raises(InvalidTransition):
            ledger.transition(tx_hash(1), {PurchaseStatus.SELLING}, PurchaseStatus.CANCELLED)

    def test_update_sold_sets_hash(self, ledger):
        ledger.insert(_purchase(status=PurchaseStatus.SELLING))
        sold = ledger.update_sold(tx_hash(1), tx_hash(50))
        assert sold.status is PurchaseStatus.SOLD
        assert sold.sell_tx_hash == tx_hash(50)

    def test_worker_id_and_sell_tx(self, ledger):
        ledger.insert(_purchase())
        ledger.update_worker_id(tx_hash(1), "auto_sell_x")
        ledger.record_sell_tx(tx_hash(1), tx_hash(7))
        stored = ledger.get(tx_hash(1))
        assert stored.worker_id == "auto_sell_x"
        assert stored.sell_tx_hash == tx_hash(7)
        assert stored.status is PurchaseStatus.HELD

    def test_queries(self, ledger):
        ledger.insert(_purchase(1, PurchaseStatus.HELD, purchase_time=1000))
        ledger.insert(_purchase(2, PurchaseStatus.SELLING, purchase_time=2000))
        ledger.insert(_purchase(3, PurchaseStatus.SOLD, purchase_time=3000))
        ledger.insert(
            _purchase(4, PurchaseStatus.HELD, purchase_time=4000, wallet_address=TOKEN)
        )

        assert [p.tx_hash for p in ledger.list_all()] == [tx_hash(n) for n in (4, 3, 2, 1)]
        assert {p.tx_hash for p in ledger.list_active()} == {tx_hash(n) for n in (1, 2, 4)}
        assert [p.tx_hash for p in ledger.list_by_wallet(USER)] == [
            tx_hash(n) for n in (3, 2, 1)
        ]
        assert ledger.held_count() == 2
        assert [p.tx_hash for p in ledger.pending_auto_sells(now=5000)] == [tx_hash(1)]

    def test_subscribe_and_unsubscribe(self, ledger):
        seen = []
        unsubscribe = ledger.subscribe(lambda p: seen.append(p.status))

        ledger.insert(_purchase(status=PurchaseStatus.PENDING))
        ledger.transition(tx_hash(1), {PurchaseStatus.PENDING}, PurchaseStatus.HELD)
        unsubscribe()
        ledger.update_status(tx_hash(1), PurchaseStatus.CANCELLED)

        assert seen == [PurchaseStatus.PENDING, PurchaseStatus.HELD]

    def test_failing_listener_does_not_break_writes(self, ledger):
        def boom(_):
            raise RuntimeError("listener down")

        ledger.subscribe(boom)
        ledger.insert(_purchase())
        assert ledger.get(tx_hash(1)) is not None

    def test_survives_reopen(self, tmp_path):
        from core.db import create_db_engine

        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        first = create_db_engine(url)
        SqlLedger(first).insert(_purchase())
        first.dispose()

        second = create_db_engine(url)
        try:
            assert SqlLedger(second).get(tx_hash(1)).status is PurchaseStatus.HELD
        finally:
            second.dispose()

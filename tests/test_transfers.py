"""
Test suite for the transfer engine

Covers the balance rules (conservation, no negative balances, the
insufficient-funds guard), transaction visibility, paging and concurrent
transfers on both local backends.
"""

import random
import threading

import pytest

from coinbook.audit import AuditTrail, AuditEventType
from coinbook.entries import EntryStore
from coinbook.errors import Conflict, InsufficientFunds, InvalidArgument, NotFound
from coinbook.storage import InMemoryStorage, SQLiteStorage
from coinbook.transfers import TransferEngine


COIN = 1
ALICE = 1
BOB = 2
CAROL = 3


class TestTransfer:
    """Single transfers"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.entries = EntryStore(self.storage)
        self.engine = TransferEngine(self.storage, self.entries, self.audit_trail)
        self.entries.credit_or_create(ALICE, COIN, 10)
        self.entries.open_entry(BOB, COIN)

    def test_gift_then_overdraw(self):
        transaction = self.engine.transfer(COIN, ALICE, BOB, 4, "thanks")

        assert self.entries.balance(ALICE, COIN) == 6
        assert self.entries.balance(BOB, COIN) == 4
        assert transaction.amount == 4
        assert transaction.message == "thanks"
        assert transaction.sender_id == ALICE
        assert transaction.receiver_id == BOB

        with pytest.raises(InsufficientFunds):
            self.engine.transfer(COIN, ALICE, BOB, 100)

        assert self.entries.balance(ALICE, COIN) == 6
        assert self.entries.balance(BOB, COIN) == 4
        assert self.storage.count("transactions") == 1

    def test_receiver_entry_created_on_first_credit(self):
        assert self.entries.get_entry(CAROL, COIN) is None
        self.engine.transfer(COIN, ALICE, CAROL, 3)
        assert self.entries.balance(CAROL, COIN) == 3

    def test_sender_without_entry(self):
        with pytest.raises(InsufficientFunds):
            self.engine.transfer(COIN, CAROL, ALICE, 1)
        assert self.entries.get_entry(CAROL, COIN) is None

    def test_entire_balance(self):
        self.engine.transfer(COIN, ALICE, BOB, 10)
        assert self.entries.balance(ALICE, COIN) == 0

    def test_self_transfer_rejected(self):
        with pytest.raises(Conflict):
            self.engine.transfer(COIN, ALICE, ALICE, 1)
        assert self.entries.balance(ALICE, COIN) == 10

    @pytest.mark.parametrize("amount", [0, -3, 2.5])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidArgument):
            self.engine.transfer(COIN, ALICE, BOB, amount)

    def test_message_length(self):
        self.engine.transfer(COIN, ALICE, BOB, 1, "m" * 64)
        with pytest.raises(InvalidArgument):
            self.engine.transfer(COIN, ALICE, BOB, 1, "m" * 65)

    def test_transaction_is_audited(self):
        transaction = self.engine.transfer(COIN, ALICE, BOB, 2)
        events = self.audit_trail.get_events_for_entity("transaction", transaction.external_id)

        assert len(events) == 1
        assert events[0].event_type == AuditEventType.TRANSFER_COMPLETED
        assert events[0].metadata["amount"] == 2

    def test_failed_transfer_leaves_no_audit_event(self):
        with pytest.raises(InsufficientFunds):
            self.engine.transfer(COIN, ALICE, BOB, 11)
        assert self.audit_trail.count_events() == 0

    def test_timestamp_and_identifier(self):
        first = self.engine.transfer(COIN, ALICE, BOB, 1)
        second = self.engine.transfer(COIN, ALICE, BOB, 1)

        assert first.external_id != second.external_id
        assert second.id > first.id
        assert first.created_at.microsecond % 1000 == 0


class TestTransactionReads:
    """Viewing and searching transactions"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.entries = EntryStore(self.storage)
        self.engine = TransferEngine(self.storage, self.entries)
        self.entries.credit_or_create(ALICE, COIN, 100)

    def test_parties_can_view(self):
        transaction = self.engine.transfer(COIN, ALICE, BOB, 5)
        assert self.engine.get_transaction(transaction.external_id, ALICE) == transaction
        assert self.engine.get_transaction(transaction.external_id, BOB) == transaction

    def test_others_cannot_view(self):
        transaction = self.engine.transfer(COIN, ALICE, BOB, 5)
        with pytest.raises(NotFound):
            self.engine.get_transaction(transaction.external_id, CAROL)
        with pytest.raises(NotFound):
            self.engine.get_transaction("missing", ALICE)

    def test_search_pages(self):
        for _ in range(12):
            self.engine.transfer(COIN, ALICE, BOB, 1)
        self.engine.transfer(COIN, ALICE, CAROL, 1)

        first = self.engine.search_transactions(BOB)
        assert len(first.items) == 10
        assert [t.id for t in first.items] == sorted((t.id for t in first.items), reverse=True)
        assert first.next_cursor == first.items[-1].id - 1

        second = self.engine.search_transactions(BOB, cursor=first.next_cursor)
        assert len(second.items) == 2
        assert second.next_cursor == 0

        assert len(self.engine.search_transactions(ALICE, page_size=20).items) == 13
        assert len(self.engine.search_transactions(CAROL).items) == 1


def run_random_transfers(engine, users, rounds, seed):
    rng = random.Random(seed)
    for _ in range(rounds):
        sender, receiver = rng.sample(users, 2)
        try:
            engine.transfer(COIN, sender, receiver, rng.randint(1, 40))
        except InsufficientFunds:
            pass


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "transfers.db")
    yield storage
    storage.close()


class TestConcurrentTransfers:
    """Conservation under concurrent transfers"""

    def test_supply_is_conserved(self, backend):
        entries = EntryStore(backend)
        engine = TransferEngine(backend, entries)
        users = [ALICE, BOB, CAROL, 4]
        for user in users:
            entries.credit_or_create(user, COIN, 50)

        threads = [
            threading.Thread(target=run_random_transfers, args=(engine, users, 40, seed))
            for seed in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert entries.total_supply(COIN) == 200
        assert all(entries.balance(user, COIN) >= 0 for user in users)

        # Every balance is explained by the transaction log
        for user in users:
            page = engine.search_transactions(user, page_size=1000)
            received = sum(t.amount for t in page.items if t.receiver_id == user)
            sent = sum(t.amount for t in page.items if t.sender_id == user)
            assert entries.balance(user, COIN) == 50 + received - sent

"""
Entry Store Module

Holds one balance record per (user, coin) pair and is the only place balances
change. Entry records are stored under the composite key "<user>:<coin>", so
lookup-or-create can never produce a second entry for the same pair.
"""

from dataclasses import dataclass
from typing import List, Optional

from .errors import InsufficientFunds, InvalidArgument
from .storage import StorageInterface, StorageRecord, utc_now
from .logging_config import get_logger, log_action


def entry_key(user_id: int, coin_id: int) -> str:
    """Storage key of the entry for a (user, coin) pair"""
    return f"{user_id}:{coin_id}"


def require_positive_amount(amount: int) -> int:
    """Amounts are positive integers; booleans do not count"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidArgument("Amount must be a positive integer")
    return amount


@dataclass
class Entry(StorageRecord):
    """A user's balance in one coin"""
    user_id: int
    coin_id: int
    amount: int = 0

    @property
    def storage_key(self) -> str:
        return entry_key(self.user_id, self.coin_id)


class EntryStore:
    """
    Reads and mutates entries.

    Mutating calls are meant to run inside a storage scope opened by the
    caller; each one re-reads the entry with its row lock before writing.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "entries"
        self.logger = get_logger("coinbook.entries")

    def get_entry(self, user_id: int, coin_id: int) -> Optional[Entry]:
        """Entry for the pair, or None (a balance of zero)"""
        data = self.storage.load(self.table_name, entry_key(user_id, coin_id))
        if data:
            return Entry.from_dict(data)
        return None

    def get_entry_for_update(self, user_id: int, coin_id: int) -> Optional[Entry]:
        """Entry for the pair, row-locked until the current scope ends"""
        data = self.storage.load_for_update(self.table_name, entry_key(user_id, coin_id))
        if data:
            return Entry.from_dict(data)
        return None

    def lock_entry(self, user_id: int, coin_id: int) -> Entry:
        """
        Entry for the pair, row-locked until the current scope ends.

        A missing entry is first inserted with a zero balance so the lock
        always covers a real row; if another writer inserts the same key in
        the meantime, its row is kept and locked instead.
        """
        entry = self.get_entry_for_update(user_id, coin_id)
        if entry:
            return entry
        with self.storage.atomic():
            self.storage.insert_if_absent(
                self.table_name, entry_key(user_id, coin_id),
                self._new_entry(user_id, coin_id, 0).to_dict()
            )
            return self.get_entry_for_update(user_id, coin_id)

    def balance(self, user_id: int, coin_id: int) -> int:
        entry = self.get_entry(user_id, coin_id)
        return entry.amount if entry else 0

    def debit(self, user_id: int, coin_id: int, amount: int) -> Entry:
        """
        Remove amount from an entry.

        Raises:
            InvalidArgument: amount is not a positive integer
            InsufficientFunds: the entry is missing or holds less than amount
        """
        require_positive_amount(amount)
        with self.storage.atomic():
            entry = self.get_entry_for_update(user_id, coin_id)
            available = entry.amount if entry else 0
            if available < amount:
                raise InsufficientFunds(available=available, requested=amount)

            entry.amount -= amount
            entry.updated_at = utc_now()
            self._save(entry)

        log_action(
            self.logger, "debug", "Entry debited",
            user_id=user_id, action="debit", resource=f"entry:{entry.storage_key}",
            extra={"amount": amount, "balance": entry.amount}
        )
        return entry

    def credit_or_create(self, user_id: int, coin_id: int, amount: int) -> Entry:
        """Add amount to an entry, creating it with amount as its opening balance"""
        require_positive_amount(amount)
        with self.storage.atomic():
            entry = self.lock_entry(user_id, coin_id)
            entry.amount += amount
            entry.updated_at = utc_now()
            self._save(entry)

        log_action(
            self.logger, "debug", "Entry credited",
            user_id=user_id, action="credit", resource=f"entry:{entry.storage_key}",
            extra={"amount": amount, "balance": entry.amount}
        )
        return entry

    def open_entry(self, user_id: int, coin_id: int) -> Entry:
        """Make sure a (possibly zero) entry exists for the pair"""
        with self.storage.atomic():
            return self.lock_entry(user_id, coin_id)

    def list_for_user(self, user_id: int) -> List[Entry]:
        """All entries held by a user, ordered by coin"""
        entries = [Entry.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        return sorted(entries, key=lambda e: e.coin_id)

    def list_for_coin(self, coin_id: int) -> List[Entry]:
        entries = [Entry.from_dict(d) for d in self.storage.find(self.table_name, {"coin_id": coin_id})]
        return sorted(entries, key=lambda e: e.user_id)

    def total_supply(self, coin_id: int) -> int:
        """Sum of every balance held in a coin"""
        return sum(entry.amount for entry in self.list_for_coin(coin_id))

    def _new_entry(self, user_id: int, coin_id: int, amount: int) -> Entry:
        now = utc_now()
        return Entry(
            id=self.storage.next_id(self.table_name),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            coin_id=coin_id,
            amount=amount
        )

    def _save(self, entry: Entry) -> None:
        if entry.amount < 0:
            raise InvalidArgument("Entry amount cannot be negative")
        self.storage.save(self.table_name, entry.storage_key, entry.to_dict())

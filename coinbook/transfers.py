"""
Transfer Engine Module

Moves an amount of one coin from a sender's entry to a receiver's entry and
appends an immutable Transaction record. The debit, the credit and the record
are written inside one storage scope: either all of them happen or none do.
"""

import uuid
from dataclasses import dataclass
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .entries import EntryStore, entry_key, require_positive_amount
from .errors import Conflict, InvalidArgument, NotFound
from .pagination import Page, paginate
from .storage import StorageInterface, StorageRecord, utc_now
from .logging_config import get_logger, log_action


MESSAGE_MAX_LENGTH = 64


def validate_message(message: Optional[str]) -> str:
    """Messages are optional and at most 64 characters"""
    if message is None:
        return ""
    if not isinstance(message, str) or len(message) > MESSAGE_MAX_LENGTH:
        raise InvalidArgument(f"Message must be at most {MESSAGE_MAX_LENGTH} characters")
    return message


@dataclass
class Transaction(StorageRecord):
    """
    Completed movement of value. Never updated or deleted.

    sender_id and receiver_id are Optional because the users they point to
    may be gone by the time the record is read.
    """
    external_id: str
    sender_id: Optional[int]
    receiver_id: Optional[int]
    coin_id: int
    amount: int
    message: str = ""

    def involves(self, user_id: int) -> bool:
        return user_id in (self.sender_id, self.receiver_id)


class TransferEngine:
    """Atomic value transfers between entries"""

    def __init__(self, storage: StorageInterface, entries: EntryStore,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.entries = entries
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self.logger = get_logger("coinbook.transfers")

    def transfer(
        self,
        coin_id: int,
        sender_id: int,
        receiver_id: int,
        amount: int,
        message: Optional[str] = ""
    ) -> Transaction:
        """
        Move amount of a coin from sender to receiver

        Args:
            coin_id: Internal key of the coin
            sender_id: Internal key of the paying user
            receiver_id: Internal key of the receiving user
            amount: Positive integer amount
            message: Free text, at most 64 characters

        Returns:
            The appended Transaction

        Raises:
            InvalidArgument: amount or message is invalid
            Conflict: sender and receiver are the same user
            InsufficientFunds: the sender's entry is missing or too small
        """
        require_positive_amount(amount)
        message = validate_message(message)
        if sender_id == receiver_id:
            raise Conflict("Cannot transfer to yourself")

        with self.storage.atomic():
            # Lock both rows in key order so opposing transfers cannot deadlock;
            # a missing receiver row is created here so the lock covers it
            for user_id in sorted((sender_id, receiver_id), key=lambda u: entry_key(u, coin_id)):
                self.entries.lock_entry(user_id, coin_id)

            self.entries.debit(sender_id, coin_id, amount)
            self.entries.credit_or_create(receiver_id, coin_id, amount)

            now = utc_now()
            transaction = Transaction(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                external_id=str(uuid.uuid4()),
                sender_id=sender_id,
                receiver_id=receiver_id,
                coin_id=coin_id,
                amount=amount,
                message=message
            )
            self.storage.save(self.table_name, transaction.storage_key, transaction.to_dict())

            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.TRANSFER_COMPLETED,
                    entity_type="transaction",
                    entity_id=transaction.external_id,
                    metadata={
                        "coin_id": coin_id,
                        "sender_id": sender_id,
                        "receiver_id": receiver_id,
                        "amount": amount
                    },
                    user_id=sender_id
                )

        log_action(
            self.logger, "info", "Transfer completed",
            user_id=sender_id, action="transfer", resource=f"transaction:{transaction.external_id}",
            extra={"coin_id": coin_id, "receiver_id": receiver_id, "amount": amount}
        )
        return transaction

    def find_transaction(self, external_id: str) -> Optional[Transaction]:
        matches = self.storage.find(self.table_name, {"external_id": str(external_id)})
        if matches:
            return Transaction.from_dict(matches[0])
        return None

    def get_transaction(self, external_id: str, viewer_id: int) -> Transaction:
        """Transaction by external id, visible only to its sender and receiver"""
        transaction = self.find_transaction(external_id)
        if transaction is None or not transaction.involves(viewer_id):
            raise NotFound("Transaction not found")
        return transaction

    def transactions_for_user(self, user_id: int) -> List[Transaction]:
        """Every transaction the user sent or received"""
        sent = self.storage.find(self.table_name, {"sender_id": user_id})
        received = self.storage.find(self.table_name, {"receiver_id": user_id})
        by_key = {data['id']: Transaction.from_dict(data) for data in sent + received}
        return list(by_key.values())

    def search_transactions(self, user_id: int, cursor: Optional[int] = None,
                            page_size: int = 10) -> Page[Transaction]:
        """One page of the user's transactions, newest first"""
        return paginate(self.transactions_for_user(user_id), key=lambda t: t.id,
                        cursor=cursor, page_size=page_size)

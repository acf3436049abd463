"""
Request Workflow Module

A charge request asks another user (the sender) to pay the requester. The
sender either accepts it, which runs a transfer and retires the request in the
same storage scope, or declines it, which only retires it. Retired requests
are deleted, so a second accept or decline finds nothing.
"""

import uuid
from dataclasses import dataclass
from typing import List, Optional

from .audit import AuditTrail, AuditEventType
from .entries import require_positive_amount
from .errors import Conflict, NotFound
from .pagination import Page, paginate
from .storage import StorageInterface, StorageRecord, utc_now
from .transfers import Transaction, TransferEngine, validate_message
from .logging_config import get_logger, log_action


@dataclass
class ChargeRequest(StorageRecord):
    """Pending request for sender to pay requester"""
    external_id: str
    requester_id: int
    sender_id: int
    coin_id: int
    amount: int
    message: str = ""


class RequestWorkflow:
    """Create, accept, decline and search pending charge requests"""

    def __init__(self, storage: StorageInterface, transfers: TransferEngine,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.transfers = transfers
        self.audit_trail = audit_trail
        self.table_name = "requests"
        self.logger = get_logger("coinbook.charge_requests")

    def create_request(
        self,
        requester_id: int,
        sender_id: int,
        coin_id: int,
        amount: int,
        message: Optional[str] = ""
    ) -> ChargeRequest:
        """
        Record a pending request. No entry is touched.

        Raises:
            InvalidArgument: amount or message is invalid
            Conflict: requester and sender are the same user
        """
        require_positive_amount(amount)
        message = validate_message(message)
        if requester_id == sender_id:
            raise Conflict("Cannot request a payment from yourself")

        with self.storage.atomic():
            now = utc_now()
            request = ChargeRequest(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                external_id=str(uuid.uuid4()),
                requester_id=requester_id,
                sender_id=sender_id,
                coin_id=coin_id,
                amount=amount,
                message=message
            )
            self.storage.save(self.table_name, request.storage_key, request.to_dict())
            self._audit(AuditEventType.REQUEST_CREATED, request, requester_id)

        log_action(
            self.logger, "info", "Charge request created",
            user_id=requester_id, action="create_request", resource=f"request:{request.external_id}",
            extra={"coin_id": coin_id, "sender_id": sender_id, "amount": amount}
        )
        return request

    def get_request(self, external_id: str) -> Optional[ChargeRequest]:
        matches = self.storage.find(self.table_name, {"external_id": str(external_id)})
        if matches:
            return ChargeRequest.from_dict(matches[0])
        return None

    def _lock_request(self, external_id: str, acting_user_id: int) -> ChargeRequest:
        """
        Find the request and take its row lock.

        Only the user asked to pay may resolve a request; anyone else is told
        it does not exist.
        """
        found = self.get_request(external_id)
        if found is None:
            raise NotFound("Request not found")

        data = self.storage.load_for_update(self.table_name, found.storage_key)
        if data is None:
            raise NotFound("Request not found")
        request = ChargeRequest.from_dict(data)
        if request.sender_id != acting_user_id:
            raise NotFound("Request not found")
        return request

    def accept_request(self, external_id: str, acting_user_id: int) -> Transaction:
        """
        Pay a request and retire it

        Returns:
            The Transaction moving the amount from sender to requester

        Raises:
            NotFound: no such request, or acting user is not its sender
            InsufficientFunds: the sender cannot pay; the request stays pending
        """
        with self.storage.atomic():
            request = self._lock_request(external_id, acting_user_id)
            transaction = self.transfers.transfer(
                request.coin_id,
                request.sender_id,
                request.requester_id,
                request.amount,
                request.message
            )
            self.storage.delete(self.table_name, request.storage_key)
            self._audit(
                AuditEventType.REQUEST_ACCEPTED, request, acting_user_id,
                transaction_id=transaction.external_id
            )

        log_action(
            self.logger, "info", "Charge request accepted",
            user_id=acting_user_id, action="accept_request", resource=f"request:{request.external_id}",
            extra={"transaction_id": transaction.external_id, "amount": request.amount}
        )
        return transaction

    def decline_request(self, external_id: str, acting_user_id: int) -> ChargeRequest:
        """Retire a request without paying it"""
        with self.storage.atomic():
            request = self._lock_request(external_id, acting_user_id)
            self.storage.delete(self.table_name, request.storage_key)
            self._audit(AuditEventType.REQUEST_DECLINED, request, acting_user_id)

        log_action(
            self.logger, "info", "Charge request declined",
            user_id=acting_user_id, action="decline_request", resource=f"request:{request.external_id}"
        )
        return request

    def pending_for_sender(self, user_id: int) -> List[ChargeRequest]:
        return [ChargeRequest.from_dict(d) for d in self.storage.find(self.table_name, {"sender_id": user_id})]

    def search_requests(self, user_id: int, cursor: Optional[int] = None,
                        page_size: int = 10) -> Page[ChargeRequest]:
        """One page of requests the user has been asked to pay, newest first"""
        return paginate(self.pending_for_sender(user_id), key=lambda r: r.id,
                        cursor=cursor, page_size=page_size)

    def _audit(self, event_type: AuditEventType, request: ChargeRequest,
               user_id: int, **extra) -> None:
        if not self.audit_trail:
            return
        metadata = {
            "coin_id": request.coin_id,
            "requester_id": request.requester_id,
            "sender_id": request.sender_id,
            "amount": request.amount
        }
        metadata.update(extra)
        self.audit_trail.log_event(
            event_type,
            entity_type="request",
            entity_id=request.external_id,
            metadata=metadata,
            user_id=user_id
        )

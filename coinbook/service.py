"""
Service Facade Module

Operation surface for callers that have already authenticated a user. Each
operation resolves external identifiers, runs inside exactly one storage
scope and reports its result as an Outcome: domain errors never escape as
exceptions.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

from .audit import AuditTrail, AuditEventType
from .charge_requests import RequestWorkflow
from .config import CoinbookConfig, get_config
from .entries import EntryStore
from .errors import CoinbookError, ErrorCode, InvalidArgument, StoreFailure, Unauthorized
from .governance import CoinGovernance
from .registry import Coin, DEFAULT_COIN_ID, IdentityRegistry, User
from .roles import CoinAction, PermissionEngine, Role
from .schemas import AddRole, AssignRole, CreateCoin, RequestAction, SetPermission, SubmitTransaction, UpdateCoin
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine
from .logging_config import get_logger, log_action, setup_logging


@dataclass
class Outcome:
    """Result of a facade operation; status is None on success"""
    status: Optional[ErrorCode] = None
    value: Any = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is None

    @classmethod
    def success(cls, value: Any = None) -> 'Outcome':
        return cls(value=value)

    @classmethod
    def failure(cls, error: CoinbookError) -> 'Outcome':
        return cls(status=error.code, message=str(error))


@dataclass
class Holding:
    """A coin and the caller's balance in it"""
    coin: Coin
    amount: int


@dataclass
class RoleHolding:
    """A coin and the caller's role on it"""
    coin: Coin
    role: Role


class CoinbookService:
    """
    Wires the engines together over one storage backend.

    Construction seeds the default coin (key 1) and its unassigned Owner role
    if they are not there yet.
    """

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[CoinbookConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.logger = get_logger("coinbook.service")

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.registry = IdentityRegistry(self.storage)
        self.entries = EntryStore(self.storage)
        self.permissions = PermissionEngine(self.storage, self.config.default_permission_level)
        self.transfers = TransferEngine(self.storage, self.entries, self.audit_trail)
        self.requests = RequestWorkflow(self.storage, self.transfers, self.audit_trail)
        self.governance = CoinGovernance(self.storage, self.registry, self.permissions, self.audit_trail)

        self.default_coin = self.governance.ensure_default_coin(
            self.config.default_coin_name, self.config.default_coin_symbol
        )

    def close(self) -> None:
        self.storage.close()

    def _run(self, action: str, operation: Callable[[], Any],
             actor_id: Optional[int] = None) -> Outcome:
        """Run operation in one scope and turn domain errors into an Outcome"""
        try:
            with self.storage.atomic():
                value = operation()
        except CoinbookError as e:
            level = "error" if isinstance(e, StoreFailure) else "warning"
            log_action(
                self.logger, level, f"{action} failed: {e}",
                user_id=actor_id, action=action, extra={"status": e.code.value}
            )
            return Outcome.failure(e)
        return Outcome.success(value)

    def _actor(self, actor_id: int) -> User:
        user = self.registry.get_user(actor_id)
        if user is None:
            raise Unauthorized("Unknown caller")
        return user

    # Registration

    def register_user(self, name: str) -> Outcome:
        """Create a user holding an empty entry in the default coin"""
        def operation():
            user = self.registry.create_user(name)
            self.entries.open_entry(user.id, DEFAULT_COIN_ID)
            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.USER_REGISTERED, "user", user.account_id, user_id=user.id
                )
            return user
        return self._run("register_user", operation)

    # Value transfer

    def transfer(self, actor_id: int, coin: str, target_account_id: str,
                 amount: int, message: str = "") -> Outcome:
        """Pay amount of a coin to the user behind target_account_id"""
        def operation():
            sender = self._actor(actor_id)
            coin_id = self.registry.resolve_coin(coin).id
            receiver = self.registry.resolve_user(target_account_id)
            return self.transfers.transfer(coin_id, sender.id, receiver.id, amount, message)
        return self._run("transfer", operation, actor_id)

    def create_request(self, actor_id: int, coin: str, target_account_id: str,
                       amount: int, message: str = "") -> Outcome:
        """Ask the user behind target_account_id to pay the caller"""
        def operation():
            requester = self._actor(actor_id)
            coin_id = self.registry.resolve_coin(coin).id
            sender = self.registry.resolve_user(target_account_id)
            return self.requests.create_request(requester.id, sender.id, coin_id, amount, message)
        return self._run("create_request", operation, actor_id)

    def submit(self, actor_id: int, submission: SubmitTransaction) -> Outcome:
        """Transfer, or create a request when submission.charging is set"""
        if submission.charging:
            return self.create_request(actor_id, submission.coin, submission.target,
                                       submission.amount, submission.message)
        return self.transfer(actor_id, submission.coin, submission.target,
                             submission.amount, submission.message)

    def accept_request(self, actor_id: int, request_id: str) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            return self.requests.accept_request(request_id, actor.id)
        return self._run("accept_request", operation, actor_id)

    def decline_request(self, actor_id: int, request_id: str) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            return self.requests.decline_request(request_id, actor.id)
        return self._run("decline_request", operation, actor_id)

    def accept(self, actor_id: int, action: RequestAction) -> Outcome:
        return self.accept_request(actor_id, action.request_id)

    def decline(self, actor_id: int, action: RequestAction) -> Outcome:
        return self.decline_request(actor_id, action.request_id)

    # Reads

    def list_entries(self, actor_id: int) -> Outcome:
        """The caller's balances as Holding values, ordered by coin"""
        def operation():
            actor = self._actor(actor_id)
            holdings = []
            for entry in self.entries.list_for_user(actor.id):
                coin = self.registry.get_coin(entry.coin_id)
                if coin:
                    holdings.append(Holding(coin=coin, amount=entry.amount))
            return holdings
        return self._run("list_entries", operation, actor_id)

    def search_transactions(self, actor_id: int, cursor: Optional[int] = None) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            return self.transfers.search_transactions(actor.id, cursor, self.config.page_size)
        return self._run("search_transactions", operation, actor_id)

    def search_requests(self, actor_id: int, cursor: Optional[int] = None) -> Outcome:
        """Requests the caller has been asked to pay"""
        def operation():
            actor = self._actor(actor_id)
            return self.requests.search_requests(actor.id, cursor, self.config.page_size)
        return self._run("search_requests", operation, actor_id)

    def get_transaction(self, actor_id: int, transaction_id: str) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            return self.transfers.get_transaction(transaction_id, actor.id)
        return self._run("get_transaction", operation, actor_id)

    def list_roles(self, actor_id: int) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            holdings = []
            for _, role in self.permissions.list_roles_for_user(actor.id):
                coin = self.registry.get_coin(role.coin_id)
                if coin:
                    holdings.append(RoleHolding(coin=coin, role=role))
            return holdings
        return self._run("list_roles", operation, actor_id)

    # Governance

    def create_coin(self, actor_id: int, name: str, symbol: str) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            return self.governance.create_coin(name, symbol, actor.id)
        return self._run("create_coin", operation, actor_id)

    def update_coin(self, actor_id: int, coin: str, name: Optional[str] = None,
                    symbol: Optional[str] = None) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            coin_id = self.registry.resolve_coin(coin).id
            return self.governance.update_coin(coin_id, actor.id, name=name, symbol=symbol)
        return self._run("update_coin", operation, actor_id)

    def add_role(self, actor_id: int, coin: str, name: str, level: int) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            coin_id = self.registry.resolve_coin(coin).id
            return self.governance.add_role(coin_id, actor.id, name, level)
        return self._run("add_role", operation, actor_id)

    def assign_role(self, actor_id: int, coin: str, target_account_id: str,
                    role_id: int) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            coin_id = self.registry.resolve_coin(coin).id
            target = self.registry.resolve_user(target_account_id)
            return self.governance.assign_role(coin_id, actor.id, target.id, role_id)
        return self._run("assign_role", operation, actor_id)

    def set_permission(self, actor_id: int, coin: str,
                       action: Union[CoinAction, str], level: int) -> Outcome:
        def operation():
            actor = self._actor(actor_id)
            try:
                coin_action = CoinAction(action)
            except ValueError:
                raise InvalidArgument(f"Unknown action: {action}")
            coin_id = self.registry.resolve_coin(coin).id
            return self.governance.set_permission(coin_id, actor.id, coin_action, level)
        return self._run("set_permission", operation, actor_id)

    # Validated input models, one per governance operation

    def submit_coin(self, actor_id: int, submission: CreateCoin) -> Outcome:
        return self.create_coin(actor_id, submission.name, submission.symbol)

    def submit_coin_update(self, actor_id: int, coin: str, submission: UpdateCoin) -> Outcome:
        return self.update_coin(actor_id, coin, name=submission.name, symbol=submission.symbol)

    def submit_role(self, actor_id: int, coin: str, submission: AddRole) -> Outcome:
        return self.add_role(actor_id, coin, submission.name, submission.level)

    def submit_role_assignment(self, actor_id: int, coin: str, submission: AssignRole) -> Outcome:
        return self.assign_role(actor_id, coin, submission.target, submission.role_id)

    def submit_permission(self, actor_id: int, coin: str, submission: SetPermission) -> Outcome:
        return self.set_permission(actor_id, coin, submission.action, submission.level)

    def coins(self) -> List[Coin]:
        """Every coin, ordered by key"""
        return self.registry.list_coins()


def create_service(config: Optional[CoinbookConfig] = None) -> CoinbookService:
    """Build a service from configuration, setting up logging and storage"""
    config = config or get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    return CoinbookService(create_storage(config.database_url), config)

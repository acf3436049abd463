"""
Identity & Coin Registry Module

Resolves external identifiers (account UUIDs, coin UUIDs) to internal integer
keys and stores coin names and symbols. Users are created by the registration
collaborator; everything else only reads them.
"""

import re
import uuid
from dataclasses import dataclass
from typing import List, Optional

from .errors import InvalidArgument, NotFound, StoreFailure
from .storage import StorageInterface, StorageRecord, utc_now
from .logging_config import get_logger, log_action


DEFAULT_COIN_ID = 1

COIN_NAME_PATTERN = re.compile(r"^[A-Za-z0-9 ]+$")
COIN_NAME_MIN_LENGTH = 3
COIN_NAME_MAX_LENGTH = 45
COIN_SYMBOL_MAX_LENGTH = 3


@dataclass
class User(StorageRecord):
    """Account holder. account_id is the stable external identifier."""
    account_id: str
    name: str


@dataclass
class Coin(StorageRecord):
    """A named currency type"""
    external_id: str
    name: str
    symbol: str

    @property
    def is_default(self) -> bool:
        return self.id == DEFAULT_COIN_ID


def validate_coin_name(name: str) -> str:
    """Coin names are 3-45 characters of letters, digits and spaces"""
    if not isinstance(name, str) or not COIN_NAME_MIN_LENGTH <= len(name) <= COIN_NAME_MAX_LENGTH:
        raise InvalidArgument(
            f"Coin name must be between {COIN_NAME_MIN_LENGTH} and {COIN_NAME_MAX_LENGTH} characters"
        )
    if not COIN_NAME_PATTERN.match(name):
        raise InvalidArgument("Coin name may only contain letters, digits and spaces")
    return name


def validate_coin_symbol(symbol: str) -> str:
    """Coin symbols are 1-3 characters"""
    if not isinstance(symbol, str) or not 1 <= len(symbol) <= COIN_SYMBOL_MAX_LENGTH:
        raise InvalidArgument(f"Coin symbol must be between 1 and {COIN_SYMBOL_MAX_LENGTH} characters")
    return symbol


class IdentityRegistry:
    """Lookup and storage of users and coins"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.users_table = "users"
        self.coins_table = "coins"
        self.logger = get_logger("coinbook.registry")

    # Users

    def create_user(self, name: str) -> User:
        """Create a user with a freshly generated account identifier"""
        if not name or not name.strip():
            raise InvalidArgument("User name must not be empty")

        now = utc_now()
        user = User(
            id=self.storage.next_id(self.users_table),
            created_at=now,
            updated_at=now,
            account_id=str(uuid.uuid4()),
            name=name
        )
        self.storage.save(self.users_table, user.storage_key, user.to_dict())

        log_action(
            self.logger, "info", "User created",
            user_id=user.id, action="create_user", resource=f"user:{user.account_id}"
        )
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        """Get user by internal key"""
        data = self.storage.load(self.users_table, str(user_id))
        if data:
            return User.from_dict(data)
        return None

    def require_user(self, user_id: int) -> User:
        """Get user by internal key or raise NotFound"""
        user = self.get_user(user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def resolve_user(self, account_id: str) -> User:
        """Resolve an account identifier to its user"""
        matches = self.storage.find(self.users_table, {"account_id": str(account_id)})
        if not matches:
            raise NotFound("User not found")
        return User.from_dict(matches[0])

    # Coins

    def create_coin(self, name: str, symbol: str) -> Coin:
        """Create the coin row only; owner roles are the governance layer's concern"""
        validate_coin_name(name)
        validate_coin_symbol(symbol)
        return self._save_new_coin(self.storage.next_id(self.coins_table), name, symbol)

    def seed_default_coin(self, name: str, symbol: str) -> Coin:
        """
        Make sure the default coin exists with internal key 1.

        Returns the existing coin untouched when it is already present.
        """
        existing = self.get_coin(DEFAULT_COIN_ID)
        if existing:
            return existing

        validate_coin_name(name)
        validate_coin_symbol(symbol)
        key = self.storage.next_id(self.coins_table)
        if key != DEFAULT_COIN_ID:
            raise StoreFailure("Coin keys were allocated before the default coin was seeded")
        return self._save_new_coin(key, name, symbol)

    def _save_new_coin(self, key: int, name: str, symbol: str) -> Coin:
        now = utc_now()
        coin = Coin(
            id=key,
            created_at=now,
            updated_at=now,
            external_id=str(uuid.uuid4()),
            name=name,
            symbol=symbol
        )
        self.storage.save(self.coins_table, coin.storage_key, coin.to_dict())
        return coin

    def get_coin(self, coin_id: int) -> Optional[Coin]:
        """Get coin by internal key"""
        data = self.storage.load(self.coins_table, str(coin_id))
        if data:
            return Coin.from_dict(data)
        return None

    def require_coin(self, coin_id: int) -> Coin:
        """Get coin by internal key or raise NotFound"""
        coin = self.get_coin(coin_id)
        if not coin:
            raise NotFound("Coin not found")
        return coin

    def resolve_coin(self, external_id: str) -> Coin:
        """Resolve a coin's external identifier"""
        matches = self.storage.find(self.coins_table, {"external_id": str(external_id)})
        if not matches:
            raise NotFound("Coin not found")
        return Coin.from_dict(matches[0])

    def list_coins(self) -> List[Coin]:
        coins = [Coin.from_dict(data) for data in self.storage.load_all(self.coins_table)]
        return sorted(coins, key=lambda c: c.id)

    def update_coin(self, coin: Coin, name: Optional[str] = None,
                    symbol: Optional[str] = None) -> Coin:
        """Apply a new name and/or symbol to a coin row"""
        if name is not None:
            coin.name = validate_coin_name(name)
        if symbol is not None:
            coin.symbol = validate_coin_symbol(symbol)
        coin.updated_at = utc_now()
        self.storage.save(self.coins_table, coin.storage_key, coin.to_dict())
        return coin

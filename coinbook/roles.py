"""
Role & Permission Engine Module

Per-coin roles ordered by level (lower level = more privileged), per-coin
permission requirements, and the authorization decision that gates every
coin-mutating action other than coin creation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

from .errors import InvalidArgument, Unauthorized
from .storage import StorageInterface, StorageRecord, utc_now
from .logging_config import get_logger, log_action


OWNER_LEVEL = 0
OWNER_ROLE_NAME = "Owner"
ROLE_NAME_MAX_LENGTH = 32


class CoinAction(Enum):
    """Coin-mutating actions that can be gated by a permission level"""
    EDIT_COIN_INFO = "EDIT_COIN_INFO"
    DELETE_COIN = "DELETE_COIN"
    ADD_ROLE = "ADD_ROLE"
    EDIT_ROLES = "EDIT_ROLES"
    ASSIGN_ROLE = "ASSIGN_ROLE"
    ADD_ITEM = "ADD_ITEM"
    DELETE_ITEM = "DELETE_ITEM"
    EDIT_ITEMS = "EDIT_ITEMS"


@dataclass
class Role(StorageRecord):
    """Named privilege tier of one coin"""
    coin_id: int
    name: str
    level: int

    def outranks(self, level: int) -> bool:
        """At least as privileged as the given level"""
        return self.level <= level


@dataclass
class UserRole(StorageRecord):
    """Binding of a user to a role (coin_id is copied from the role for lookups)"""
    user_id: int
    role_id: int
    coin_id: int


@dataclass
class CoinPermission(StorageRecord):
    """Level required on one coin for one action"""
    coin_id: int
    action: CoinAction
    level: int

    @property
    def storage_key(self) -> str:
        return f"{self.coin_id}:{self.action.value}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoinPermission':
        data = dict(data)
        data['action'] = CoinAction(data['action'])
        return super().from_dict(data)


def _require_level(level: int) -> int:
    if isinstance(level, bool) or not isinstance(level, int) or level < OWNER_LEVEL:
        raise InvalidArgument(f"Level must be an integer >= {OWNER_LEVEL}")
    return level


class PermissionEngine:
    """
    Stores roles, bindings and permission rows and answers authorization
    questions against them.

    Actions with no permission row fall back to default_level, which is the
    Owner level unless configured otherwise.
    """

    def __init__(self, storage: StorageInterface, default_level: int = OWNER_LEVEL):
        self.storage = storage
        self.default_level = _require_level(default_level)
        self.roles_table = "roles"
        self.user_roles_table = "user_roles"
        self.permissions_table = "permissions"
        self.logger = get_logger("coinbook.roles")

    # Roles

    def create_role(self, coin_id: int, name: str, level: int) -> Role:
        """Create a role on a coin"""
        if not name or len(name) > ROLE_NAME_MAX_LENGTH:
            raise InvalidArgument(f"Role name must be between 1 and {ROLE_NAME_MAX_LENGTH} characters")
        _require_level(level)

        now = utc_now()
        role = Role(
            id=self.storage.next_id(self.roles_table),
            created_at=now,
            updated_at=now,
            coin_id=coin_id,
            name=name,
            level=level
        )
        self.storage.save(self.roles_table, role.storage_key, role.to_dict())

        log_action(
            self.logger, "info", f"Role created: {name}",
            action="create_role", resource=f"role:{role.id}",
            extra={"coin_id": coin_id, "level": level}
        )
        return role

    def get_role(self, role_id: int) -> Optional[Role]:
        data = self.storage.load(self.roles_table, str(role_id))
        if data:
            return Role.from_dict(data)
        return None

    def roles_for_coin(self, coin_id: int) -> List[Role]:
        roles = [Role.from_dict(d) for d in self.storage.find(self.roles_table, {"coin_id": coin_id})]
        return sorted(roles, key=lambda r: (r.level, r.id))

    # Bindings

    def bind_role(self, user_id: int, role: Role) -> UserRole:
        """Bind a user to a role"""
        now = utc_now()
        binding = UserRole(
            id=self.storage.next_id(self.user_roles_table),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            role_id=role.id,
            coin_id=role.coin_id
        )
        self.storage.save(self.user_roles_table, binding.storage_key, binding.to_dict())

        log_action(
            self.logger, "info", f"Role {role.name} bound",
            user_id=user_id, action="bind_role", resource=f"role:{role.id}",
            extra={"coin_id": role.coin_id, "level": role.level}
        )
        return binding

    def unbind_roles(self, user_id: int, coin_id: int) -> int:
        """Remove every binding of a user on one coin; returns how many went"""
        removed = 0
        for data in self.storage.find(self.user_roles_table, {"user_id": user_id, "coin_id": coin_id}):
            if self.storage.delete(self.user_roles_table, str(data['id'])):
                removed += 1
        return removed

    def assign_owner_role(self, coin_id: int, user_id: int) -> Role:
        """Create the Owner role of a new coin and bind its creator to it"""
        with self.storage.atomic():
            role = self.create_role(coin_id, OWNER_ROLE_NAME, OWNER_LEVEL)
            self.bind_role(user_id, role)
        return role

    def list_roles_for_user(self, user_id: int) -> List[Tuple[UserRole, Role]]:
        """Every (binding, role) pair of a user across coins"""
        pairs = []
        for data in self.storage.find(self.user_roles_table, {"user_id": user_id}):
            binding = UserRole.from_dict(data)
            role = self.get_role(binding.role_id)
            # Bindings to deleted roles are ignored
            if role:
                pairs.append((binding, role))
        pairs.sort(key=lambda pair: (pair[1].coin_id, pair[1].level))
        return pairs

    def role_for(self, coin_id: int, user_id: int) -> Optional[Role]:
        """The user's most privileged role on a coin, if any"""
        best = None
        for data in self.storage.find(self.user_roles_table, {"user_id": user_id, "coin_id": coin_id}):
            role = self.get_role(data['role_id'])
            if role and role.coin_id == coin_id and (best is None or role.level < best.level):
                best = role
        return best

    # Permissions

    def set_permission(self, coin_id: int, action: CoinAction, level: int) -> CoinPermission:
        """Create or replace the permission row for (coin, action)"""
        _require_level(level)
        now = utc_now()
        existing = self.get_permission(coin_id, action)
        permission = CoinPermission(
            id=existing.id if existing else self.storage.next_id(self.permissions_table),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            coin_id=coin_id,
            action=action,
            level=level
        )
        self.storage.save(self.permissions_table, permission.storage_key, permission.to_dict())
        return permission

    def get_permission(self, coin_id: int, action: CoinAction) -> Optional[CoinPermission]:
        data = self.storage.load(self.permissions_table, f"{coin_id}:{action.value}")
        if data:
            return CoinPermission.from_dict(data)
        return None

    def required_level(self, coin_id: int, action: CoinAction) -> int:
        """Level needed for an action, falling back to the default"""
        permission = self.get_permission(coin_id, action)
        return permission.level if permission else self.default_level

    def authorize(self, coin_id: int, user_id: int, action: CoinAction) -> bool:
        """Allowed iff the user holds a role whose level is <= the required level"""
        role = self.role_for(coin_id, user_id)
        if role is None:
            return False
        return role.outranks(self.required_level(coin_id, action))

    def require(self, coin_id: int, user_id: int, action: CoinAction) -> Role:
        """
        Authorize or raise.

        Returns:
            The role that granted the action

        Raises:
            Unauthorized: no role on the coin, or the role's level is too high
        """
        role = self.role_for(coin_id, user_id)
        required = self.required_level(coin_id, action)
        if role is None or not role.outranks(required):
            log_action(
                self.logger, "warning", f"Permission denied for {action.value}",
                user_id=user_id, action=action.value, resource=f"coin:{coin_id}",
                extra={"required_level": required, "role_level": role.level if role else None}
            )
            raise Unauthorized(f"Not permitted to perform {action.value} on this coin")
        return role

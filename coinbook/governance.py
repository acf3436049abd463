"""
Coin Governance Module

Coin creation and every permission-gated coin mutation: renaming a coin,
changing its symbol, and administering its roles and permission levels.
"""

from typing import Optional

from .audit import AuditTrail, AuditEventType
from .errors import InvalidArgument, NotFound, Unauthorized
from .registry import Coin, IdentityRegistry
from .roles import CoinAction, CoinPermission, OWNER_LEVEL, OWNER_ROLE_NAME, PermissionEngine, Role, UserRole
from .storage import StorageInterface
from .logging_config import get_logger, log_action


class CoinGovernance:
    """
    Creates coins and applies governed changes to them.

    Coin creation needs no permission; the creator becomes the coin's owner.
    Everything else goes through the permission engine first.
    """

    def __init__(
        self,
        storage: StorageInterface,
        registry: IdentityRegistry,
        permissions: PermissionEngine,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.registry = registry
        self.permissions = permissions
        self.audit_trail = audit_trail
        self.logger = get_logger("coinbook.governance")

    def ensure_default_coin(self, name: str, symbol: str) -> Coin:
        """Seed coin key 1 and its Owner role, which nobody holds yet"""
        with self.storage.atomic():
            coin = self.registry.seed_default_coin(name, symbol)
            if not self.permissions.roles_for_coin(coin.id):
                self.permissions.create_role(coin.id, OWNER_ROLE_NAME, OWNER_LEVEL)
                self._audit(AuditEventType.COIN_CREATED, "coin", coin.external_id,
                            {"name": coin.name, "symbol": coin.symbol, "default": True})
        return coin

    def create_coin(self, name: str, symbol: str, creator_id: int) -> Coin:
        """
        Create a coin owned by its creator

        Raises:
            InvalidArgument: name or symbol is malformed
        """
        with self.storage.atomic():
            coin = self.registry.create_coin(name, symbol)
            role = self.permissions.assign_owner_role(coin.id, creator_id)
            self._audit(AuditEventType.COIN_CREATED, "coin", coin.external_id,
                        {"name": name, "symbol": symbol, "owner_role_id": role.id}, creator_id)

        log_action(
            self.logger, "info", f"Coin created: {name}",
            user_id=creator_id, action="create_coin", resource=f"coin:{coin.external_id}",
            extra={"symbol": symbol}
        )
        return coin

    def update_coin(self, coin_id: int, user_id: int, name: Optional[str] = None,
                    symbol: Optional[str] = None) -> Coin:
        """
        Rename a coin and/or change its symbol

        Raises:
            InvalidArgument: neither field given, or a field is malformed
            NotFound: no such coin
            Unauthorized: user may not edit this coin's info
        """
        if name is None and symbol is None:
            raise InvalidArgument("Nothing to update: give a name or a symbol")

        with self.storage.atomic():
            coin = self.registry.require_coin(coin_id)
            self.permissions.require(coin.id, user_id, CoinAction.EDIT_COIN_INFO)
            before = {"name": coin.name, "symbol": coin.symbol}
            coin = self.registry.update_coin(coin, name=name, symbol=symbol)
            self._audit(AuditEventType.COIN_UPDATED, "coin", coin.external_id,
                        {"before": before, "after": {"name": coin.name, "symbol": coin.symbol}}, user_id)

        log_action(
            self.logger, "info", "Coin updated",
            user_id=user_id, action="update_coin", resource=f"coin:{coin.external_id}",
            extra={"name": coin.name, "symbol": coin.symbol}
        )
        return coin

    def add_role(self, coin_id: int, actor_id: int, name: str, level: int) -> Role:
        """Add a role no more privileged than the actor's own"""
        with self.storage.atomic():
            coin = self.registry.require_coin(coin_id)
            actor_role = self.permissions.require(coin.id, actor_id, CoinAction.ADD_ROLE)
            if isinstance(level, int) and level < actor_role.level:
                raise Unauthorized("Cannot create a role more privileged than your own")
            role = self.permissions.create_role(coin.id, name, level)
            self._audit(AuditEventType.ROLE_CREATED, "role", role.id,
                        {"coin_id": coin.id, "name": name, "level": level}, actor_id)

        log_action(
            self.logger, "info", f"Role {name} added at level {level}",
            user_id=actor_id, action="add_role", resource=f"coin:{coin.external_id}",
            extra={"role_id": role.id}
        )
        return role

    def assign_role(self, coin_id: int, actor_id: int, target_user_id: int, role_id: int) -> UserRole:
        """
        Bind target user to a role of this coin, replacing their previous binding

        Raises:
            NotFound: coin, user or role does not exist (or the role belongs elsewhere)
            Unauthorized: actor lacks ASSIGN_ROLE, the role outranks the actor,
                or the target already outranks the actor
        """
        with self.storage.atomic():
            coin = self.registry.require_coin(coin_id)
            self.registry.require_user(target_user_id)
            actor_role = self.permissions.require(coin.id, actor_id, CoinAction.ASSIGN_ROLE)

            role = self.permissions.get_role(role_id)
            if role is None or role.coin_id != coin.id:
                raise NotFound("Role not found")
            if role.level < actor_role.level:
                raise Unauthorized("Cannot grant a role more privileged than your own")
            current = self.permissions.role_for(coin.id, target_user_id)
            if current is not None and current.level < actor_role.level:
                raise Unauthorized("Cannot change the role of a more privileged user")

            self.permissions.unbind_roles(target_user_id, coin.id)
            binding = self.permissions.bind_role(target_user_id, role)
            self._audit(AuditEventType.ROLE_ASSIGNED, "role", role.id,
                        {"coin_id": coin.id, "target_user_id": target_user_id, "level": role.level}, actor_id)

        log_action(
            self.logger, "info", f"Role {role.name} assigned",
            user_id=actor_id, action="assign_role", resource=f"coin:{coin.external_id}",
            extra={"role_id": role.id, "target_user_id": target_user_id}
        )
        return binding

    def set_permission(self, coin_id: int, actor_id: int, action: CoinAction, level: int) -> CoinPermission:
        """Change the level an action requires on this coin"""
        with self.storage.atomic():
            coin = self.registry.require_coin(coin_id)
            self.permissions.require(coin.id, actor_id, CoinAction.EDIT_ROLES)
            permission = self.permissions.set_permission(coin.id, action, level)
            self._audit(AuditEventType.PERMISSION_SET, "coin", coin.external_id,
                        {"action": action, "level": level}, actor_id)

        log_action(
            self.logger, "info", f"Permission {action.value} set to level {level}",
            user_id=actor_id, action="set_permission", resource=f"coin:{coin.external_id}"
        )
        return permission

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id,
               metadata: dict, user_id: Optional[int] = None) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata, user_id)

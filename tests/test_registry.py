"""
Test suite for the identity and coin registry
"""

import pytest

from coinbook.errors import InvalidArgument, NotFound, StoreFailure
from coinbook.registry import DEFAULT_COIN_ID, IdentityRegistry, validate_coin_name, validate_coin_symbol
from coinbook.storage import InMemoryStorage


class TestUsers:
    """Test user creation and lookup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.registry = IdentityRegistry(self.storage)

    def test_create_and_resolve(self):
        alice = self.registry.create_user("Alice")
        bob = self.registry.create_user("Bob")

        assert alice.id == 1
        assert bob.id == 2
        assert alice.account_id != bob.account_id
        assert self.registry.resolve_user(alice.account_id) == alice
        assert self.registry.get_user(bob.id) == bob

    def test_unknown_account(self):
        with pytest.raises(NotFound):
            self.registry.resolve_user("00000000-0000-0000-0000-000000000000")
        with pytest.raises(NotFound):
            self.registry.require_user(42)
        assert self.registry.get_user(42) is None

    def test_blank_name_rejected(self):
        with pytest.raises(InvalidArgument):
            self.registry.create_user("   ")


class TestCoins:
    """Test coin rows and validation"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.registry = IdentityRegistry(self.storage)

    def test_seed_default_coin(self):
        coin = self.registry.seed_default_coin("Universal Coin", "μ")
        assert coin.id == DEFAULT_COIN_ID
        assert coin.is_default

        again = self.registry.seed_default_coin("Other Name", "O")
        assert again == coin
        assert len(self.registry.list_coins()) == 1

    def test_seed_after_other_coins_fails(self):
        self.registry.create_coin("Early Coin", "E")
        self.storage.delete("coins", "1")
        with pytest.raises(StoreFailure):
            self.registry.seed_default_coin("Universal Coin", "μ")

    def test_create_and_resolve(self):
        self.registry.seed_default_coin("Universal Coin", "μ")
        coin = self.registry.create_coin("Team Points", "TP")

        assert coin.id == 2
        assert not coin.is_default
        assert self.registry.resolve_coin(coin.external_id) == coin
        assert self.registry.require_coin(2) == coin
        assert [c.id for c in self.registry.list_coins()] == [1, 2]

    def test_unknown_coin(self):
        with pytest.raises(NotFound):
            self.registry.require_coin(9)
        with pytest.raises(NotFound):
            self.registry.resolve_coin("missing")

    def test_update_coin(self):
        coin = self.registry.create_coin("Team Points", "TP")
        updated = self.registry.update_coin(coin, name="Team Score")

        assert updated.name == "Team Score"
        assert updated.symbol == "TP"
        assert self.registry.get_coin(coin.id).name == "Team Score"

    @pytest.mark.parametrize("name", ["ab", "x" * 46, "Bad!Name", "", "tab\tname"])
    def test_invalid_names(self, name):
        with pytest.raises(InvalidArgument):
            validate_coin_name(name)

    @pytest.mark.parametrize("name", ["abc", "x" * 45, "Coin 2024"])
    def test_valid_names(self, name):
        assert validate_coin_name(name) == name

    @pytest.mark.parametrize("symbol", ["", "ABCD"])
    def test_invalid_symbols(self, symbol):
        with pytest.raises(InvalidArgument):
            validate_coin_symbol(symbol)

    def test_invalid_coin_writes_nothing(self):
        with pytest.raises(InvalidArgument):
            self.registry.create_coin("no", "N")
        assert self.registry.list_coins() == []

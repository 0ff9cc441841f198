"""Tests for token sealing at rest."""

import base64

from authflow.services.token_vault import TokenVault


class TestTokenVault:
    def test_seal_then_open(self, store, config, logger):
        vault = TokenVault(store, config, logger, identity="host:user")
        sealed = vault.seal("bearer-secret")
        assert "bearer-secret" not in sealed
        assert vault.open(sealed) == "bearer-secret"

    def test_sealing_twice_gives_different_ciphertexts(self, store, config, logger):
        vault = TokenVault(store, config, logger, identity="host:user")
        assert vault.seal("t") != vault.seal("t")

    def test_second_vault_on_same_store_can_open(self, store, config, logger):
        sealed = TokenVault(store, config, logger, identity="host:user").seal("t")
        assert TokenVault(store, config, logger, identity="host:user").open(sealed) == "t"

    def test_other_identity_cannot_open(self, store, config, logger):
        sealed = TokenVault(store, config, logger, identity="host:user").seal("t")
        assert TokenVault(store, config, logger, identity="other:user").open(sealed) is None

    def test_tampered_value_opens_to_none(self, store, config, logger):
        vault = TokenVault(store, config, logger, identity="host:user")
        raw = bytearray(base64.urlsafe_b64decode(vault.seal("token")))
        raw[-1] ^= 0x01
        assert vault.open(base64.urlsafe_b64encode(bytes(raw)).decode()) is None

    def test_garbage_and_empty_input(self, store, config, logger):
        vault = TokenVault(store, config, logger, identity="host:user")
        assert vault.open(None) is None
        assert vault.open("") is None
        assert vault.open("not base64 !!") is None
        assert vault.open(base64.urlsafe_b64encode(b"short").decode()) is None

    def test_corrupt_salt_is_regenerated(self, store, config, logger):
        store.set("vault.salt", "abcd")
        vault = TokenVault(store, config, logger, identity="host:user")
        assert vault.open(vault.seal("t")) == "t"
        assert len(bytes.fromhex(store.get("vault.salt"))) == 32

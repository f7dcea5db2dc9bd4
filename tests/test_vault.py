"""
Tests for deposit key generation, encryption and release.
"""

import pytest

from hellomix_settlement.address import MAINNET, TESTNET, is_valid_btc_address
from hellomix_settlement import keys
from hellomix_settlement.errors import (
    ConfigurationError,
    KeyDecryptionError,
    KeyGenerationError,
    NotFoundError,
)
from hellomix_settlement.keys import (
    P2PKH,
    KeyCipher,
    ReleasedKey,
    compressed_pubkey,
    derive_address,
    hash160,
)
from hellomix_settlement.vault import AddressKeyVault

from conftest import MASTER_KEY

SECRET_ONE = (1).to_bytes(32, "big")


class TestKeyDerivation:
    """Known vectors for private key 1."""

    def test_compressed_pubkey(self) -> None:
        assert compressed_pubkey(SECRET_ONE).hex() == (
            "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )

    def test_hash160(self) -> None:
        assert hash160(compressed_pubkey(SECRET_ONE)).hex() == (
            "751e76e8199196d454941c45d1b3a323f1433bd6"
        )

    def test_hash160_empty_input(self) -> None:
        assert hash160(b"").hex() == "b472a266d0bd89c13706a4132ccfb16f7c3b9fcb"

    def test_hash160_without_ripemd160(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def missing(name: str, *args, **kwargs):
            raise ValueError(f"unsupported hash type {name}")

        monkeypatch.setattr(keys.hashlib, "new", missing)
        with pytest.raises(KeyGenerationError):
            derive_address(SECRET_ONE)

    def test_p2wpkh_address(self) -> None:
        assert derive_address(SECRET_ONE) == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"

    def test_p2pkh_address(self) -> None:
        assert derive_address(SECRET_ONE, MAINNET, P2PKH) == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

    def test_wif(self) -> None:
        key = ReleasedKey(address="", secret=SECRET_ONE, network=MAINNET)
        assert key.to_wif() == "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"

    def test_repr_hides_secret(self) -> None:
        key = ReleasedKey(address="bc1qexample", secret=SECRET_ONE)
        assert SECRET_ONE.hex() not in repr(key)


class TestKeyCipher:
    """AES-GCM at-rest encryption."""

    def test_round_trip(self) -> None:
        cipher = KeyCipher(MASTER_KEY)
        encrypted = cipher.encrypt(SECRET_ONE, "bc1qaddr")
        assert cipher.decrypt(encrypted, "bc1qaddr") == SECRET_ONE

    def test_fresh_nonce_per_encryption(self) -> None:
        cipher = KeyCipher(MASTER_KEY)
        assert cipher.encrypt(SECRET_ONE, "bc1qaddr") != cipher.encrypt(SECRET_ONE, "bc1qaddr")

    def test_ciphertext_bound_to_address(self) -> None:
        cipher = KeyCipher(MASTER_KEY)
        encrypted = cipher.encrypt(SECRET_ONE, "bc1qaddr")
        with pytest.raises(KeyDecryptionError):
            cipher.decrypt(encrypted, "bc1qother")

    def test_tampered_ciphertext(self) -> None:
        cipher = KeyCipher(MASTER_KEY)
        encrypted = cipher.encrypt(SECRET_ONE, "bc1qaddr")
        flipped = encrypted[:-2] + ("00" if encrypted[-2:] != "00" else "01")
        with pytest.raises(KeyDecryptionError):
            cipher.decrypt(flipped, "bc1qaddr")

    def test_malformed_ciphertext(self) -> None:
        with pytest.raises(KeyDecryptionError):
            KeyCipher(MASTER_KEY).decrypt("zz", "bc1qaddr")

    def test_empty_master_key(self) -> None:
        with pytest.raises(ConfigurationError):
            KeyCipher("")


class TestAddressKeyVault:
    """Deposit address issuance and key release."""

    def test_generate_persists_before_returning(self, db, vault: AddressKeyVault) -> None:
        address = vault.generate_deposit_address()

        assert is_valid_btc_address(address, MAINNET)
        key = db.get_active_key(address)
        assert key is not None
        assert key.request_id is None

    def test_no_plaintext_in_store(self, db, vault: AddressKeyVault) -> None:
        address = vault.generate_deposit_address()
        released = vault.release_private_key(address)

        stored = db.get_active_key(address).encrypted_private_key
        assert released.secret.hex() not in stored

    def test_release_round_trip(self, vault: AddressKeyVault) -> None:
        """The released key controls the address it was issued for."""
        address = vault.generate_deposit_address()
        released = vault.release_private_key(address)

        assert len(released.secret) == 32
        assert derive_address(released.secret, MAINNET) == address

    def test_addresses_are_unique(self, vault: AddressKeyVault) -> None:
        addresses = {vault.generate_deposit_address() for _ in range(10)}
        assert len(addresses) == 10

    def test_testnet_p2pkh(self, db) -> None:
        vault = AddressKeyVault(db, MASTER_KEY, network=TESTNET, address_type=P2PKH)
        address = vault.generate_deposit_address()

        assert address[0] in "mn"
        assert is_valid_btc_address(address, TESTNET)
        assert derive_address(vault.release_private_key(address).secret, TESTNET, P2PKH) == address

    def test_release_unknown_address(self, vault: AddressKeyVault) -> None:
        with pytest.raises(NotFoundError):
            vault.release_private_key("bc1qunknown")

    def test_release_after_deactivate(self, db, vault: AddressKeyVault) -> None:
        address = vault.generate_deposit_address()
        vault.deactivate(address)

        with pytest.raises(NotFoundError):
            vault.release_private_key(address)
        assert vault.list_active() == []

    def test_wrong_master_key(self, db, vault: AddressKeyVault) -> None:
        address = vault.generate_deposit_address()
        other = AddressKeyVault(db, "another-master-secret")

        with pytest.raises(KeyDecryptionError):
            other.release_private_key(address)

    def test_bind_to_request(self, vault: AddressKeyVault) -> None:
        address = vault.generate_deposit_address()
        vault.bind_to_request(address, "req-1")

        key = vault.get_key_for_request("req-1")
        assert key is not None
        assert key.address == address

        # A bound key cannot be bound again.
        with pytest.raises(NotFoundError):
            vault.bind_to_request(address, "req-2")

"""
secp256k1 key material and at-rest encryption for deposit keys.

Private keys are encrypted with AES-256-GCM. The data key is derived from
the operator master secret with HKDF-SHA256, every encryption uses a fresh
96-bit nonce, and the deposit address is bound as associated data so a
ciphertext cannot be replayed under another address.
"""

import hashlib
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .address import MAINNET, base58check_encode, p2pkh_address, p2wpkh_address
from .errors import ConfigurationError, KeyDecryptionError, KeyGenerationError

_CURVE = ec.SECP256K1()
_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

NONCE_SIZE = 12
KEY_SIZE = 32
HKDF_INFO = b"hellomix/deposit-key/v1"

P2WPKH = "p2wpkh"
P2PKH = "p2pkh"
ADDRESS_TYPES = (P2WPKH, P2PKH)


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    try:
        return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()
    except ValueError as e:
        raise KeyGenerationError(f"ripemd160 unavailable: {e}") from e


def generate_secret() -> bytes:
    """Generate a random 32-byte secp256k1 private key."""
    try:
        private_key = ec.generate_private_key(_CURVE)
    except Exception as e:
        raise KeyGenerationError(f"failed to generate private key: {e}") from e
    return private_key.private_numbers().private_value.to_bytes(32, "big")


def compressed_pubkey(secret: bytes) -> bytes:
    value = int.from_bytes(secret, "big")
    if not 1 <= value < _CURVE_ORDER:
        raise KeyGenerationError("private key out of range")
    private_key = ec.derive_private_key(value, _CURVE)
    return private_key.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    )


def derive_address(secret: bytes, network: str = MAINNET, address_type: str = P2WPKH) -> str:
    """Derive the single-signature address controlled by `secret`."""
    pubkey_hash = hash160(compressed_pubkey(secret))
    if address_type == P2WPKH:
        return p2wpkh_address(pubkey_hash, network)
    if address_type == P2PKH:
        return p2pkh_address(pubkey_hash, network)
    raise KeyGenerationError(f"unsupported address type: {address_type}")


@dataclass
class ReleasedKey:
    """Decrypted key material for one deposit address."""

    address: str
    secret: bytes
    network: str = MAINNET

    def to_wif(self) -> str:
        """Wallet import format, compressed-pubkey flavour."""
        prefix = b"\x80" if self.network == MAINNET else b"\xef"
        return base58check_encode(prefix + self.secret + b"\x01")

    def __repr__(self) -> str:
        return f"ReleasedKey(address={self.address!r}, network={self.network!r})"


class KeyCipher:
    """AES-GCM encryption of private keys under a master-secret-derived key."""

    def __init__(self, master_secret: str):
        if not master_secret:
            raise ConfigurationError("WALLET_MASTER_KEY not set")

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=HKDF_INFO,
        )
        self._aead = AESGCM(hkdf.derive(master_secret.encode("utf-8")))

    def encrypt(self, secret: bytes, address: str) -> str:
        """Encrypt a private key. Returns hex(nonce || ciphertext)."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, secret, address.encode("utf-8"))
        return (nonce + ciphertext).hex()

    def decrypt(self, encrypted: str, address: str) -> bytes:
        try:
            data = bytes.fromhex(encrypted)
        except ValueError as e:
            raise KeyDecryptionError(f"malformed ciphertext for {address}") from e

        if len(data) <= NONCE_SIZE:
            raise KeyDecryptionError(f"ciphertext too short for {address}")

        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, address.encode("utf-8"))
        except InvalidTag as e:
            raise KeyDecryptionError(f"key for {address} failed authentication") from e


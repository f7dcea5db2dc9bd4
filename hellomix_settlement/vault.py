"""
One-time deposit addresses backed by encrypted private keys.
"""

from typing import Optional

import structlog

from .address import MAINNET
from .db import ExchangeDatabase
from .errors import NotFoundError
from .keys import P2WPKH, KeyCipher, ReleasedKey, derive_address, generate_secret
from .models import DepositKey, utcnow

logger = structlog.get_logger()


class AddressKeyVault:
    """
    Issues deposit addresses and guards their private keys.

    Plaintext key material only exists inside a single generate or
    release call. The store holds nonce and ciphertext only.
    """

    def __init__(
        self,
        store: ExchangeDatabase,
        master_secret: str,
        network: str = MAINNET,
        address_type: str = P2WPKH,
    ):
        self.store = store
        self.network = network
        self.address_type = address_type
        self._cipher = KeyCipher(master_secret)

    def generate_deposit_address(self) -> str:
        """
        Create a key pair, persist its encrypted private key and return the
        address.

        Raises KeyGenerationError if the key cannot be created and
        PersistenceError if it cannot be stored. In both cases no address
        is handed out.
        """
        secret = generate_secret()
        address = derive_address(secret, self.network, self.address_type)
        encrypted = self._cipher.encrypt(secret, address)

        self.store.insert_deposit_key(
            DepositKey(
                address=address,
                encrypted_private_key=encrypted,
                created_at=utcnow(),
            )
        )

        logger.info(
            "deposit_address_generated",
            address=address,
            network=self.network,
            address_type=self.address_type,
        )
        return address

    def release_private_key(self, address: str) -> ReleasedKey:
        """Decrypt the active key for `address`, for forwarding the deposit."""
        key = self.store.get_active_key(address)
        if key is None:
            raise NotFoundError("active deposit key", address)

        secret = self._cipher.decrypt(key.encrypted_private_key, address)
        logger.warning("deposit_key_released", address=address, request_id=key.request_id)
        return ReleasedKey(address=address, secret=secret, network=self.network)

    def bind_to_request(self, address: str, request_id: str) -> None:
        self.store.bind_key(address, request_id)

    def deactivate(self, address: str) -> None:
        """Soft-revoke a deposit key. The row is kept for audit."""
        self.store.deactivate_key(address)

    def get_key_for_request(self, request_id: str) -> Optional[DepositKey]:
        return self.store.get_key_for_request(request_id)

    def list_active(self) -> list[DepositKey]:
        return self.store.list_active_keys()

"""
Address encoding and validation.

Bitcoin addresses are checked in full (base58check and bech32/bech32m
checksums). Other assets get shape checks: EVM-style hex for ETH and its
tokens, prefix and length heuristics for Cardano and Solana.
"""

import hashlib
import re
from typing import Optional

# Bech32 charset
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

# Base58 charset
BASE58_CHARSET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

MAINNET = "mainnet"
TESTNET = "testnet"

# (p2pkh version, p2sh version, bech32 hrp)
NETWORK_PARAMS = {
    MAINNET: (0x00, 0x05, "bc"),
    TESTNET: (0x6F, 0xC4, "tb"),
}

_EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

EVM_ASSETS = frozenset({"ETH", "USDT", "USDC", "MATIC"})


def sha256d(data: bytes) -> bytes:
    """Double SHA256 hash (Bitcoin standard)."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _bech32_polymod(values: list[int]) -> int:
    """Internal Bech32 polymod calculation."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            if (b >> i) & 1:
                chk ^= GEN[i]
    return chk


def _bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for checksum calculation."""
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _bech32_create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = _bech32_hrp_expand(hrp) + data
    polymod = _bech32_polymod(values + [0] * 6) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_decode(addr: str) -> Optional[tuple[str, list[int], int]]:
    """
    Decode a bech32 or bech32m string.

    Returns (hrp, data, checksum_const) or None if invalid.
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in addr):
        return None
    if addr.lower() != addr and addr.upper() != addr:
        return None

    addr = addr.lower()
    pos = addr.rfind("1")
    if pos < 1 or pos + 7 > len(addr) or len(addr) > 90:
        return None

    hrp = addr[:pos]
    data_part = addr[pos + 1 :]

    if not all(c in BECH32_CHARSET for c in data_part):
        return None

    data = [BECH32_CHARSET.index(c) for c in data_part]

    const = _bech32_polymod(_bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        return None

    return hrp, data[:-6], const


def bech32_encode(hrp: str, data: list[int], const: int = BECH32_CONST) -> str:
    combined = data + _bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in combined)


def convertbits(data: list[int], frombits: int, tobits: int, pad: bool = True) -> Optional[list[int]]:
    """Convert between bit sizes."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def decode_segwit_address(addr: str, hrp: str) -> Optional[tuple[int, bytes]]:
    """
    Decode a segwit address for the given HRP.

    Returns (witness_version, witness_program) or None if invalid.
    """
    result = bech32_decode(addr)
    if result is None:
        return None

    got_hrp, data, const = result
    if got_hrp != hrp or len(data) < 1:
        return None

    witness_version = data[0]
    if witness_version > 16:
        return None
    # BIP-350: v0 uses bech32, v1+ uses bech32m
    if (witness_version == 0) != (const == BECH32_CONST):
        return None

    decoded = convertbits(data[1:], 5, 8, False)
    if decoded is None or not 2 <= len(decoded) <= 40:
        return None

    program = bytes(decoded)
    if witness_version == 0 and len(program) not in (20, 32):
        return None

    return witness_version, program


def encode_segwit_address(hrp: str, witness_version: int, program: bytes) -> str:
    const = BECH32_CONST if witness_version == 0 else BECH32M_CONST
    data = [witness_version] + (convertbits(list(program), 8, 5) or [])
    return bech32_encode(hrp, data, const)


def base58_encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    encoded = ""
    while num > 0:
        num, rem = divmod(num, 58)
        encoded = BASE58_CHARSET[rem] + encoded
    # Leading zero bytes map to leading '1's
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + encoded


def base58check_encode(payload: bytes) -> str:
    return base58_encode(payload + sha256d(payload)[:4])


def base58check_decode(addr: str) -> Optional[bytes]:
    """
    Decode a base58check encoded 25-byte address.

    Returns version byte + payload (without checksum) or None if invalid.
    """
    num = 0
    for c in addr:
        if c not in BASE58_CHARSET:
            return None
        num = num * 58 + BASE58_CHARSET.index(c)

    try:
        combined = num.to_bytes(25, "big")
    except OverflowError:
        return None

    checksum = combined[-4:]
    data = combined[:-4]

    if checksum != sha256d(data)[:4]:
        return None

    return data


def p2pkh_address(pubkey_hash: bytes, network: str = MAINNET) -> str:
    version, _, _ = NETWORK_PARAMS[network]
    return base58check_encode(bytes([version]) + pubkey_hash)


def p2wpkh_address(pubkey_hash: bytes, network: str = MAINNET) -> str:
    _, _, hrp = NETWORK_PARAMS[network]
    return encode_segwit_address(hrp, 0, pubkey_hash)


def is_valid_btc_address(addr: str, network: str = MAINNET) -> bool:
    """
    Full Bitcoin address check for one network.

    Accepts P2PKH, P2SH (base58check) and segwit v0/v1+ (bech32/bech32m).
    """
    if not addr or network not in NETWORK_PARAMS:
        return False

    p2pkh_version, p2sh_version, hrp = NETWORK_PARAMS[network]

    if addr.lower().startswith(hrp + "1"):
        return decode_segwit_address(addr, hrp) is not None

    if not 26 <= len(addr) <= 35:
        return False

    decoded = base58check_decode(addr)
    if decoded is None:
        return False
    return decoded[0] in (p2pkh_version, p2sh_version)


def is_valid_evm_address(addr: str) -> bool:
    return bool(_EVM_ADDRESS.match(addr))


def is_valid_cardano_address(addr: str) -> bool:
    """Shelley (addr1...) or Byron (Ae2/DdzFF...) shape, 50-120 characters."""
    if not 50 <= len(addr) <= 120:
        return False
    return addr.startswith("addr") or addr.startswith(("Ae", "Dd"))


def is_valid_solana_address(addr: str) -> bool:
    """Base58 public key, 32-44 characters."""
    if not 32 <= len(addr) <= 44:
        return False
    return all(c in BASE58_CHARSET for c in addr)


def validate_address(addr: str, currency: str, network: str = MAINNET) -> bool:
    """Validate a destination address for the given asset."""
    if not addr:
        return False
    if currency == "BTC":
        return is_valid_btc_address(addr, network)
    if currency in EVM_ASSETS:
        return is_valid_evm_address(addr)
    if currency == "ADA":
        return is_valid_cardano_address(addr)
    if currency == "SOL":
        return is_valid_solana_address(addr)
    return False

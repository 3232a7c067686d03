"""
tokengate - Address codec

Classify Bitcoin addresses, derive addresses from public keys, and build
the scriptPubKeys used by the BIP-322 virtual transactions.
"""

from typing import Optional

import base58
from bip_utils import Bech32ChecksumError, SegwitBech32Decoder, SegwitBech32Encoder
from coincurve import PublicKey

from .gate_types import AddressType, Network
from .hashing import hash160, tagged_hash

NETWORK_PARAMS = {
    Network.MAINNET: {"p2pkh": 0x00, "p2sh": 0x05, "hrp": "bc"},
    Network.TESTNET: {"p2pkh": 0x6F, "p2sh": 0xC4, "hrp": "tb"},
}

OP_0 = 0x00
OP_1 = 0x51
OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC
OP_RETURN = 0x6A


# =============================================================================
# CLASSIFICATION
# =============================================================================

def classify_address(address: str) -> AddressType:
    """Address type from its prefix. P2SH is assumed to wrap P2WPKH."""
    address = (address or "").strip()
    lower = address.lower()
    if lower.startswith(("bc1q", "tb1q")):
        return AddressType.P2WPKH
    if lower.startswith(("bc1p", "tb1p")):
        return AddressType.P2TR
    if address[:1] in ("1", "m", "n"):
        return AddressType.P2PKH
    if address[:1] in ("3", "2"):
        return AddressType.P2SH_P2WPKH
    return AddressType.UNKNOWN


def detect_network(address: str) -> Network:
    address = (address or "").strip()
    if address[:1] in ("m", "n", "2") or address.lower().startswith("tb1"):
        return Network.TESTNET
    return Network.MAINNET


def addresses_match(a: str, b: str) -> bool:
    """Case-insensitive comparison, for every address type."""
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


# =============================================================================
# SCRIPTS
# =============================================================================

def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return bytes([OP_DUP, OP_HASH160, 20]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    return bytes([OP_0, 20]) + pubkey_hash


def p2sh_script(script_hash: bytes) -> bytes:
    return bytes([OP_HASH160, 20]) + script_hash + bytes([OP_EQUAL])


def p2tr_script(output_key: bytes) -> bytes:
    return bytes([OP_1, 32]) + output_key


def nested_redeem_script(pubkey: bytes) -> bytes:
    """Redeem script of a P2SH-wrapped P2WPKH output."""
    return p2wpkh_script(hash160(pubkey))


def xonly(pubkey: bytes) -> Optional[bytes]:
    """x-only form of a 32 byte or 33 byte compressed key."""
    if len(pubkey) == 32:
        return pubkey
    if len(pubkey) == 33 and pubkey[0] in (2, 3):
        return pubkey[1:]
    return None


def taproot_output_key(internal_key: bytes) -> Optional[bytes]:
    """
    BIP-86 key path tweak: Q = P + H_TapTweak(P)*G, P lifted with even y.

    Returns:
        32 byte x-only output key, or None if P is not on the curve
    """
    internal_key = xonly(internal_key)
    if internal_key is None:
        return None
    tweak = tagged_hash("TapTweak", internal_key)
    try:
        point = PublicKey(b"\x02" + internal_key)
        return point.add(tweak).format(compressed=True)[1:]
    except ValueError:
        return None


def script_pubkey(pubkey: bytes, address_type: AddressType) -> Optional[bytes]:
    """scriptPubKey paying to pubkey under the given address type."""
    if address_type == AddressType.P2PKH:
        return p2pkh_script(hash160(pubkey))
    if address_type == AddressType.P2WPKH:
        return p2wpkh_script(hash160(pubkey))
    if address_type == AddressType.P2SH_P2WPKH:
        return p2sh_script(hash160(nested_redeem_script(pubkey)))
    if address_type == AddressType.P2TR:
        output_key = taproot_output_key(pubkey)
        return p2tr_script(output_key) if output_key else None
    return None


# =============================================================================
# DERIVATION
# =============================================================================

def derive_address(pubkey: bytes, address_type: AddressType,
                   network: Network = Network.MAINNET) -> Optional[str]:
    """
    Derive the address of pubkey for one address type.

    SegWit and Taproot need a compressed (or x-only for P2TR) key; an
    uncompressed key only has a P2PKH address.
    """
    params = NETWORK_PARAMS[network]
    compressed = len(pubkey) == 33

    if address_type == AddressType.P2PKH:
        if len(pubkey) not in (33, 65):
            return None
        payload = bytes([params["p2pkh"]]) + hash160(pubkey)
        return base58.b58encode_check(payload).decode()

    if address_type == AddressType.P2WPKH:
        if not compressed:
            return None
        return SegwitBech32Encoder.Encode(params["hrp"], 0, hash160(pubkey))

    if address_type == AddressType.P2SH_P2WPKH:
        if not compressed:
            return None
        payload = bytes([params["p2sh"]]) + hash160(nested_redeem_script(pubkey))
        return base58.b58encode_check(payload).decode()

    if address_type == AddressType.P2TR:
        output_key = taproot_output_key(pubkey)
        if output_key is None:
            return None
        return SegwitBech32Encoder.Encode(params["hrp"], 1, output_key)

    return None


def decode_address(address: str) -> Optional[bytes]:
    """
    scriptPubKey of an address, or None if it does not decode.
    """
    address = (address or "").strip()
    address_type = classify_address(address)
    network = detect_network(address)
    params = NETWORK_PARAMS[network]

    if address_type in (AddressType.P2WPKH, AddressType.P2TR):
        # witness v0 carries a bech32 checksum, v1 and up bech32m
        try:
            version, program = SegwitBech32Decoder.Decode(params["hrp"], address.lower())
        except (ValueError, Bech32ChecksumError):
            return None
        if version == 0 and len(program) == 20:
            return p2wpkh_script(program)
        if version == 1 and len(program) == 32:
            return p2tr_script(program)
        return None

    if address_type in (AddressType.P2PKH, AddressType.P2SH_P2WPKH):
        try:
            payload = base58.b58decode_check(address)
        except ValueError:
            return None
        if len(payload) != 21:
            return None
        if payload[0] == params["p2pkh"]:
            return p2pkh_script(payload[1:])
        if payload[0] == params["p2sh"]:
            return p2sh_script(payload[1:])
    return None

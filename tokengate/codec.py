"""
tokengate - Byte codecs

CompactSize varints, DER signatures, witness stacks and the textual
signature formats wallets emit. Every parser here is total: malformed
input returns None instead of raising.
"""

import base64
import binascii
import re
from typing import List, Optional, Tuple

from .gate_types import AddressType, SignatureComponents, SignatureScheme

HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

TAPROOT_PREFIX = "tr:"
SIGHASH_ALL = 0x01


# =============================================================================
# VARINT (Bitcoin CompactSize)
# =============================================================================

def encode_varint(n: int) -> bytes:
    """Encode n as a CompactSize integer (1, 3 or 5 bytes)."""
    if n < 0 or n > 0xFFFFFFFF:
        raise ValueError(f"varint out of range: {n}")
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    return b"\xfe" + n.to_bytes(4, "little")


def decode_varint(data: bytes, offset: int = 0) -> Optional[Tuple[int, int]]:
    """Decode a CompactSize integer at offset. Returns (value, next_offset)."""
    if offset >= len(data):
        return None
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    end = offset + 1 + width
    if end > len(data):
        return None
    return int.from_bytes(data[offset + 1:end], "little"), end


# =============================================================================
# DER
# =============================================================================

def parse_der(sig: bytes) -> Optional[Tuple[bytes, bytes]]:
    """
    Parse a DER encoded ECDSA signature.

    Returns:
        (r, s), each left-padded to exactly 32 bytes, or None
    """
    if len(sig) < 8 or sig[0] != 0x30 or sig[1] != len(sig) - 2:
        return None

    pos = 2
    values = []
    for _ in range(2):
        if pos + 2 > len(sig) or sig[pos] != 0x02:
            return None
        length = sig[pos + 1]
        pos += 2
        if length == 0 or length > 33 or pos + length > len(sig):
            return None
        value = sig[pos:pos + length]
        pos += length
        if length == 33:
            # Only a sign-padding zero may push an integer past 32 bytes
            if value[0] != 0:
                return None
            value = value[1:]
        values.append(value.rjust(32, b"\x00"))

    if pos != len(sig):
        return None
    return values[0], values[1]


def _der_int(value: bytes) -> bytes:
    value = value.lstrip(b"\x00") or b"\x00"
    if value[0] & 0x80:
        value = b"\x00" + value
    return b"\x02" + bytes([len(value)]) + value


def encode_der(r: bytes, s: bytes) -> bytes:
    """Minimal DER encoding of (r, s)."""
    body = _der_int(r) + _der_int(s)
    return b"\x30" + bytes([len(body)]) + body


# =============================================================================
# WITNESS STACK
# =============================================================================

def parse_witness_stack(data: bytes) -> Optional[List[bytes]]:
    """Parse varint count + varint-length-prefixed items. Trailing bytes fail."""
    decoded = decode_varint(data)
    if decoded is None:
        return None
    count, pos = decoded
    items = []
    for _ in range(count):
        decoded = decode_varint(data, pos)
        if decoded is None:
            return None
        length, pos = decoded
        if pos + length > len(data):
            return None
        items.append(data[pos:pos + length])
        pos += length
    if pos != len(data):
        return None
    return items


def looks_like_witness(data: bytes) -> bool:
    """A BIP-322 full signature: stack with at least two items."""
    if not data or data[0] < 2:
        return False
    stack = parse_witness_stack(data)
    return stack is not None and len(stack) >= 2


def split_witness_signature(item: bytes) -> bytes:
    """Drop the trailing SIGHASH_ALL byte from a witness signature item."""
    if item and item[-1] == SIGHASH_ALL:
        return item[:-1]
    return item


# =============================================================================
# SIGNATURE TEXT
# =============================================================================

def is_hex(text: str) -> bool:
    return bool(HEX_RE.match(text)) and len(text) % 2 == 0


def decode_signature(text: str, allow_hex: bool = False) -> Optional[bytes]:
    """
    Decode a signature string.

    Base64 is the standard encoding. With allow_hex, an even-length string
    of hex digits is read as hex first (some wallets export hex).
    """
    text = (text or "").strip()
    if not text:
        return None
    if allow_hex and is_hex(text):
        return bytes.fromhex(text)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


def split_tagged_schnorr(text: str) -> Optional[Tuple[bytes, bytes]]:
    """
    Parse 'tr:<sig_hex>:<xonly_pubkey_hex>'.

    A 127 digit signature is accepted and left-padded with '0' (some
    exporters drop the leading zero nibble).
    """
    if not text.startswith(TAPROOT_PREFIX):
        return None
    parts = text[len(TAPROOT_PREFIX):].split(":")
    if len(parts) != 2:
        return None
    sig_hex, pub_hex = parts
    if len(sig_hex) == 127:
        sig_hex = "0" + sig_hex
    if len(sig_hex) != 128 or len(pub_hex) != 64:
        return None
    if not (is_hex(sig_hex) and is_hex(pub_hex)):
        return None
    return bytes.fromhex(sig_hex), bytes.fromhex(pub_hex)


def decode_recovery_flag(flag: int) -> Optional[Tuple[int, bool, AddressType]]:
    """
    Decode a BIP-137 header byte.

    27-30 P2PKH uncompressed, 31-34 P2PKH compressed,
    35-38 P2SH-P2WPKH, 39-42 P2WPKH.

    Returns:
        (recovery_id, compressed, address_type) or None outside 27-42
    """
    if 27 <= flag <= 30:
        return flag - 27, False, AddressType.P2PKH
    if 31 <= flag <= 34:
        return flag - 31, True, AddressType.P2PKH
    if 35 <= flag <= 38:
        return flag - 35, True, AddressType.P2SH_P2WPKH
    if 39 <= flag <= 42:
        return flag - 39, True, AddressType.P2WPKH
    return None


def parse_signature(text: str) -> Optional[SignatureComponents]:
    """
    Identify and split a signature into its components.

    Used for diagnostics; the verifiers do their own parsing.
    """
    text = (text or "").strip()
    tagged = split_tagged_schnorr(text)
    if tagged is not None:
        sig, pubkey = tagged
        return SignatureComponents(SignatureScheme.SCHNORR, schnorr_sig=sig, pubkey=pubkey)

    raw = decode_signature(text, allow_hex=True)
    if raw is None:
        return None

    if len(raw) == 65:
        decoded = decode_recovery_flag(raw[0])
        if decoded is None:
            return None
        recovery_id, compressed, _ = decoded
        return SignatureComponents(
            SignatureScheme.RECOVERABLE,
            r=raw[1:33], s=raw[33:65],
            recovery_id=recovery_id, compressed=compressed, flag=raw[0],
        )

    if looks_like_witness(raw):
        stack = parse_witness_stack(raw)
        rs = parse_der(split_witness_signature(stack[0]))
        if rs is None:
            return None
        return SignatureComponents(SignatureScheme.WITNESS, r=rs[0], s=rs[1], pubkey=stack[1])

    return None

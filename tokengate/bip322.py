"""
tokengate - BIP-322 verification

Virtual transaction builders (to_spend / to_sign), signature hashes and
the two BIP-322 verifiers:

  Simple: 'tr:<schnorr_sig>:<xonly_pubkey>', Schnorr over the message hash
  Full:   base64 witness stack [der_sig || sighash, pubkey], ECDSA over the
          to_sign sighash (P2PKH, P2WPKH, P2SH-P2WPKH)

Transaction ids are kept in internal byte order (plain sha256d output),
which is the order an outpoint serializes in.
"""

import logging

from coincurve import PublicKeyXOnly

from .addresses import (
    OP_RETURN, addresses_match, classify_address, derive_address,
    detect_network, p2pkh_script, script_pubkey,
)
from .codec import (
    SIGHASH_ALL, encode_der, encode_varint, parse_der, parse_witness_stack,
    split_tagged_schnorr, split_witness_signature,
)
from .gate_types import AddressType, FailureKind, VerificationMethod, VerificationResult
from .hashing import bip322_message_hash, hash160, sha256d
from .recovery import verify_ecdsa

log = logging.getLogger(__name__)

VERSION = (0).to_bytes(4, "little")
SEQUENCE = (0).to_bytes(4, "little")
LOCKTIME = (0).to_bytes(4, "little")
ZERO_AMOUNT = (0).to_bytes(8, "little")
NULL_OUTPOINT = b"\x00" * 32 + b"\xff\xff\xff\xff"
OP_RETURN_SCRIPT = bytes([OP_RETURN])

FULL_TYPES = (AddressType.P2PKH, AddressType.P2WPKH, AddressType.P2SH_P2WPKH)


# =============================================================================
# VIRTUAL TRANSACTIONS
# =============================================================================

def _script(script: bytes) -> bytes:
    return encode_varint(len(script)) + script


def build_to_spend(message_hash: bytes, spk: bytes) -> bytes:
    """
    Serialize the to_spend transaction.

    version 0, one input spending 000..000:0xffffffff with scriptSig
    OP_0 PUSH32 <message_hash>, one zero value output paying spk.
    """
    script_sig = b"\x00\x20" + message_hash
    return (
        VERSION
        + b"\x01" + NULL_OUTPOINT + _script(script_sig) + SEQUENCE
        + b"\x01" + ZERO_AMOUNT + _script(spk)
        + LOCKTIME
    )


def txid(raw_tx: bytes) -> bytes:
    """Transaction id in internal byte order."""
    return sha256d(raw_tx)


def display_txid(raw_tx: bytes) -> str:
    """Transaction id as block explorers print it."""
    return txid(raw_tx)[::-1].hex()


def build_to_sign(to_spend_id: bytes, script_sig: bytes = b"") -> bytes:
    """
    Serialize the to_sign transaction (without witness).

    One input spending to_spend:0, one zero value OP_RETURN output.
    """
    outpoint = to_spend_id + (0).to_bytes(4, "little")
    return (
        VERSION
        + b"\x01" + outpoint + _script(script_sig) + SEQUENCE
        + b"\x01" + ZERO_AMOUNT + _script(OP_RETURN_SCRIPT)
        + LOCKTIME
    )


def legacy_sighash(to_spend_id: bytes, spk: bytes) -> bytes:
    """SIGHASH_ALL digest of to_sign with the spent scriptPubKey as scriptSig."""
    preimage = build_to_sign(to_spend_id, script_sig=spk) + SIGHASH_ALL.to_bytes(4, "little")
    return sha256d(preimage)


def witness_v0_sighash(to_spend_id: bytes, pubkey: bytes) -> bytes:
    """BIP-143 SIGHASH_ALL digest for a P2WPKH (or nested) spend of to_spend:0."""
    outpoint = to_spend_id + (0).to_bytes(4, "little")
    script_code = p2pkh_script(hash160(pubkey))
    hash_prevouts = sha256d(outpoint)
    hash_sequence = sha256d(SEQUENCE)
    hash_outputs = sha256d(ZERO_AMOUNT + _script(OP_RETURN_SCRIPT))
    preimage = (
        VERSION
        + hash_prevouts
        + hash_sequence
        + outpoint
        + _script(script_code)
        + ZERO_AMOUNT
        + SEQUENCE
        + hash_outputs
        + LOCKTIME
        + SIGHASH_ALL.to_bytes(4, "little")
    )
    return sha256d(preimage)


# =============================================================================
# VERIFIERS
# =============================================================================

def verify_simple(message: str, signature: str, address: str) -> VerificationResult:
    """Verify a 'tr:<sig>:<pubkey>' Schnorr signature against a P2TR claim."""
    method = VerificationMethod.BIP322_SIMPLE
    parts = split_tagged_schnorr(signature.strip())
    if parts is None:
        return VerificationResult.fail(FailureKind.FORMAT, "malformed tr: signature", method)
    sig, pubkey = parts

    derived = derive_address(pubkey, AddressType.P2TR, detect_network(address))
    if derived is None:
        return VerificationResult.fail(FailureKind.RECOVERY, "public key not on curve", method)

    try:
        valid = PublicKeyXOnly(pubkey).verify(sig, bip322_message_hash(message))
    except ValueError as e:
        log.debug(f"schnorr verify error: {e}")
        valid = False
    if not valid:
        return VerificationResult.fail(FailureKind.RECOVERY, "schnorr signature invalid", method)

    if not addresses_match(derived, address):
        return VerificationResult.fail(
            FailureKind.MISMATCH, f"derived {derived} does not match claimed address", method)

    return VerificationResult.ok(method, AddressType.P2TR, "schnorr signature valid")


def verify_full(message: str, raw: bytes, address: str) -> VerificationResult:
    """Verify a BIP-322 full witness [sig, pubkey] against the claimed address."""
    method = VerificationMethod.BIP322_FULL
    stack = parse_witness_stack(raw)
    if stack is None or len(stack) < 2:
        return VerificationResult.fail(FailureKind.FORMAT, "malformed witness stack", method)

    rs = parse_der(split_witness_signature(stack[0]))
    if rs is None:
        return VerificationResult.fail(FailureKind.FORMAT, "malformed DER signature", method)
    pubkey = stack[1]
    if len(pubkey) not in (33, 65):
        return VerificationResult.fail(FailureKind.FORMAT, "bad witness public key length", method)

    address_type = classify_address(address)
    if address_type not in FULL_TYPES:
        return VerificationResult.fail(
            FailureKind.FORMAT, f"full witness not supported for {address_type.value}", method)

    derived = derive_address(pubkey, address_type, detect_network(address))
    if derived is None or not addresses_match(derived, address):
        return VerificationResult.fail(
            FailureKind.MISMATCH, "witness public key does not match claimed address", method)

    spk = script_pubkey(pubkey, address_type)
    to_spend_id = txid(build_to_spend(bip322_message_hash(message), spk))
    if address_type == AddressType.P2PKH:
        digest = legacy_sighash(to_spend_id, spk)
    else:
        digest = witness_v0_sighash(to_spend_id, pubkey)

    if not verify_ecdsa(pubkey, encode_der(*rs), digest):
        return VerificationResult.fail(FailureKind.RECOVERY, "witness signature invalid", method)

    log.debug(f"BIP-322 full verified for {address_type.value}")
    return VerificationResult.ok(method, address_type, "witness signature valid")

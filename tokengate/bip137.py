"""
tokengate - Legacy / BIP-137 verification

65-byte recoverable signatures: header flag || r || s over the legacy
"Bitcoin Signed Message" hash.

verify_bip137() honours the flag (standard behaviour). verify_loose()
ignores it and tries every recovery id and compression, which is what
Ledger and Sparrow need for Taproot addresses: they sign with the
internal key using a P2PKH flag. Only used in permissive mode.
"""

import logging

from .addresses import addresses_match, classify_address, derive_address, detect_network
from .codec import decode_recovery_flag
from .gate_types import AddressType, FailureKind, VerificationMethod, VerificationResult
from .hashing import legacy_message_hash
from .recovery import recover_pubkey

log = logging.getLogger(__name__)

COMPRESSED_ONLY = (AddressType.P2WPKH, AddressType.P2SH_P2WPKH, AddressType.P2TR)


def verify_bip137(message: str, raw: bytes, address: str) -> VerificationResult:
    """
    Standard verification: the flag picks recovery id, compression and
    address type, and that type must be the type of the claimed address.
    """
    if len(raw) != 65:
        return VerificationResult.fail(FailureKind.FORMAT, f"expected 65 bytes, got {len(raw)}")

    decoded = decode_recovery_flag(raw[0])
    if decoded is None:
        return VerificationResult.fail(FailureKind.FORMAT, f"invalid header flag {raw[0]}")
    recovery_id, compressed, flag_type = decoded

    method = VerificationMethod.LEGACY_P2PKH if flag_type == AddressType.P2PKH \
        else VerificationMethod.BIP137

    claim_type = classify_address(address)
    if flag_type != claim_type:
        return VerificationResult.fail(
            FailureKind.MISMATCH,
            f"flag {raw[0]} is for {flag_type.value}, address is {claim_type.value}", method)

    pubkey = recover_pubkey(raw[1:], legacy_message_hash(message), recovery_id, compressed)
    if pubkey is None:
        return VerificationResult.fail(FailureKind.RECOVERY, "public key recovery failed", method)

    derived = derive_address(pubkey, flag_type, detect_network(address))
    if derived is None or not addresses_match(derived, address):
        return VerificationResult.fail(
            FailureKind.MISMATCH, "recovered key does not match claimed address", method)

    return VerificationResult.ok(method, flag_type, f"flag {raw[0]}, recid {recovery_id}")


def verify_loose(message: str, raw: bytes, address: str) -> VerificationResult:
    """
    Non-standard fallback: ignore the flag, try recovery ids 0-3 with both
    compressions, accept any derived address equal to the claim.
    """
    method = VerificationMethod.LOOSE_BIP137
    if len(raw) != 65:
        return VerificationResult.fail(FailureKind.FORMAT, f"expected 65 bytes, got {len(raw)}", method)

    claim_type = classify_address(address)
    if claim_type == AddressType.UNKNOWN:
        return VerificationResult.fail(FailureKind.FORMAT, "unsupported address", method)

    network = detect_network(address)
    msg_hash = legacy_message_hash(message)
    recovered_any = False

    for recovery_id in range(4):
        for compressed in (True, False):
            if not compressed and claim_type in COMPRESSED_ONLY:
                continue
            pubkey = recover_pubkey(raw[1:], msg_hash, recovery_id, compressed)
            if pubkey is None:
                continue
            recovered_any = True
            derived = derive_address(pubkey, claim_type, network)
            if derived is not None and addresses_match(derived, address):
                log.debug(f"loose match: recid={recovery_id} compressed={compressed} "
                          f"type={claim_type.value}")
                return VerificationResult.ok(
                    method, claim_type,
                    f"flag ignored, recid {recovery_id}, "
                    f"{'compressed' if compressed else 'uncompressed'} key")

    if not recovered_any:
        return VerificationResult.fail(FailureKind.RECOVERY, "no public key recoverable", method)
    return VerificationResult.fail(
        FailureKind.MISMATCH, "no recovered key matches claimed address", method)

"""
tokengate - Public key recovery

The only place that calls into the curve library for ECDSA recovery.
Bad input never raises out of here; it yields None.
"""

import logging
from typing import Optional

from coincurve import PublicKey

log = logging.getLogger(__name__)


def recover_pubkey(sig64: bytes, msg_hash: bytes, recovery_id: int,
                   compressed: bool = True) -> Optional[bytes]:
    """
    Recover the signer's public key from a compact (r || s) signature.

    Args:
        sig64: 64 bytes r || s
        msg_hash: 32 byte digest that was signed
        recovery_id: 0..3
        compressed: return the 33 byte SEC encoding, else the 65 byte one

    Returns:
        SEC encoded public key, or None
    """
    if len(sig64) != 64 or len(msg_hash) != 32:
        return None
    if not 0 <= recovery_id <= 3:
        return None
    try:
        key = PublicKey.from_signature_and_message(
            sig64 + bytes([recovery_id]), msg_hash, hasher=None)
    except (ValueError, TypeError) as e:
        log.debug(f"recovery failed (recid={recovery_id}): {e}")
        return None
    return key.format(compressed=compressed)


def verify_ecdsa(pubkey: bytes, der_sig: bytes, msg_hash: bytes) -> bool:
    """Verify a DER signature over a precomputed 32 byte digest."""
    try:
        return PublicKey(pubkey).verify(der_sig, msg_hash, hasher=None)
    except (ValueError, TypeError) as e:
        log.debug(f"ecdsa verify error: {e}")
        return False

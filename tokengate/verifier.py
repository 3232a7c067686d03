"""
tokengate - Signature verification dispatcher

Runs one AddressClaim through an ordered chain of verifiers and stops at
the first success:

  1. 'tr:' tagged signature         -> BIP-322 Simple (Schnorr)
  2. witness stack (>= 2 items)     -> BIP-322 Full
  3. 65-byte recoverable signature  -> BIP-137 / legacy
                                       (+ loose BIP-137 when permissive)
  4. permissive only: retry with a normalized message / signature and
     with common trailing whitespace the signing wallet may have added

Nothing here raises on bad input. Every failure is a VerificationResult.

Usage:
    result = verify_message(address, message, signature)
    if result.valid:
        print(result.label)
"""

import base64
import logging
import re
from typing import List, Tuple

from .addresses import classify_address, decode_address
from .bip137 import verify_bip137, verify_loose
from .bip322 import verify_full, verify_simple
from .codec import TAPROOT_PREFIX, decode_signature, is_hex, looks_like_witness, parse_signature
from .config import mask_secret
from .gate_types import (
    AddressClaim, AddressType, FailureKind, VerificationMode, VerificationResult,
)
from .messages import normalize_message, trailing_variants

log = logging.getLogger(__name__)

WHITESPACE_RE = re.compile(r"\s+")


def normalize_signature(signature: str) -> str:
    """Strip whitespace (wrapped base64) and convert hex to base64."""
    signature = WHITESPACE_RE.sub("", signature or "")
    if signature.startswith(TAPROOT_PREFIX):
        return signature
    if is_hex(signature):
        return base64.b64encode(bytes.fromhex(signature)).decode()
    return signature


def _attempt(address: str, message: str, signature: str,
             mode: VerificationMode) -> VerificationResult:
    """One pass through the verifier chain, no message rewriting."""
    address = (address or "").strip()
    signature = (signature or "").strip()
    if not address or not signature:
        return VerificationResult.fail(FailureKind.FORMAT, "empty address or signature")

    if classify_address(address) == AddressType.UNKNOWN or decode_address(address) is None:
        return VerificationResult.fail(FailureKind.FORMAT, "unsupported or malformed address")

    if signature.startswith(TAPROOT_PREFIX):
        return verify_simple(message, signature, address)

    raw = decode_signature(signature, allow_hex=mode == VerificationMode.PERMISSIVE)
    if raw is None:
        return VerificationResult.fail(FailureKind.FORMAT, "signature is not valid base64")

    if looks_like_witness(raw):
        return verify_full(message, raw, address)

    if len(raw) == 65:
        result = verify_bip137(message, raw, address)
        if result.valid or mode == VerificationMode.STRICT:
            return result
        loose = verify_loose(message, raw, address)
        if loose.valid:
            log.info(f"Verified {address} in compatibility mode ({loose.details})")
            return loose
        return result

    return VerificationResult.fail(FailureKind.FORMAT, f"unrecognized signature length {len(raw)}")


def _retry_candidates(message: str, signature: str) -> List[Tuple[str, str]]:
    candidates = []
    normalized = (normalize_message(message), normalize_signature(signature))
    if normalized != (message, signature):
        candidates.append(normalized)
    for variant in trailing_variants(message):
        candidates.append((variant, signature))
    return candidates


def verify_message(address: str, message: str, signature: str,
                   mode: VerificationMode = VerificationMode.PERMISSIVE) -> VerificationResult:
    """
    Verify that `signature` over `message` was made by the key behind `address`.

    Args:
        address: claimed Bitcoin address (P2PKH, P2SH-P2WPKH, P2WPKH, P2TR)
        message: message text as the user submitted it
        signature: base64 (or hex when permissive) signature, or 'tr:<sig>:<pub>'
        mode: STRICT for standards only, PERMISSIVE adds compatibility paths

    Returns:
        VerificationResult (never raises)
    """
    message = message if message is not None else ""
    result = _attempt(address, message, signature, mode)
    if result.valid or mode == VerificationMode.STRICT:
        log.debug(f"verify {address}: {result.label} valid={result.valid}")
        return result

    for candidate_message, candidate_signature in _retry_candidates(message, signature or ""):
        retry = _attempt(address, candidate_message, candidate_signature, mode)
        if retry.valid:
            retry.normalized = True
            retry.details = f"{retry.details} (after message/signature normalization)".strip()
            log.info(f"Verified {address} after normalization ({retry.label})")
            return retry

    log.debug(f"verify {address} failed: {result.details} sig={mask_secret(signature or '')}")
    return result


def verify_claim(claim: AddressClaim,
                 mode: VerificationMode = VerificationMode.PERMISSIVE) -> VerificationResult:
    return verify_message(claim.address, claim.message, claim.signature, mode)


def verification_report(address: str, message: str, signature: str) -> dict:
    """
    Diagnostic view of a claim: strict and permissive outcomes side by
    side, plus the parsed signature.
    """
    strict = verify_message(address, message, signature, VerificationMode.STRICT)
    permissive = verify_message(address, message, signature, VerificationMode.PERMISSIVE)
    components = parse_signature(signature or "")
    return {
        "address": address,
        "address_type": classify_address(address or "").value,
        "signature_scheme": components.scheme.value if components else None,
        "signature_flag": components.flag if components else None,
        "strict": strict.to_dict(),
        "permissive": permissive.to_dict(),
        "standard_compliant": strict.valid,
        "compatibility_only": permissive.valid and not strict.valid,
    }

"""
tokengate

Token-gated chat membership: prove ownership of a Bitcoin address with a
signed message, optionally hold a minimum Counterparty asset balance, and
stay compliant.

Architecture:
  - Verification is pure: one claim in, one VerificationResult out,
    never an exception (BIP-137 / legacy, BIP-322 Simple and Full)
  - Policies are versioned by hash; members verified under an older
    policy are grandfathered until an explicit enforce()
  - Chat platform and balance lookups are external (ChatPlatform,
    CounterpartyClient); sweeps bound their concurrency

Usage:
    from tokengate import verify_message, VerificationMode

    result = verify_message(address, message, signature)
    strict = verify_message(address, message, signature, VerificationMode.STRICT)

    engine = ComplianceEngine(GateStore("state.json"), TelegramClient(token),
                              CounterpartyClient())
    await engine.enforce(chat_id)
"""

from .gate_types import (
    AddressClaim, AddressType, FailureKind, JoinRequest, JoinRequestStatus, Member,
    MemberState, Network, OnFail, Policy, PolicyKind, VerificationMethod,
    VerificationMode, VerificationResult,
)
from .errors import (
    BalanceAPIError, DMBlockedError, GateError, PolicyError, StateConflictError,
    TelegramError, UpstreamError,
)
from .verifier import verification_report, verify_claim, verify_message
from .addresses import addresses_match, classify_address, derive_address, detect_network
from .balances import BalanceRow, CounterpartyClient, aggregate, to_atomic
from .policy import (
    PolicyOutcome, is_grandfathered, make_policy, passes_token_policy, policy_from_json,
    policy_hash,
)
from .store import GateStore
from .compliance import ChatPlatform, ComplianceEngine
from .rate_limiter import RateLimiter
from .config import Config

__version__ = "0.4.0"
__all__ = [
    # Types
    "AddressClaim", "AddressType", "FailureKind", "JoinRequest", "JoinRequestStatus",
    "Member", "MemberState", "Network", "OnFail", "Policy", "PolicyKind",
    "VerificationMethod", "VerificationMode", "VerificationResult",
    # Errors
    "GateError", "PolicyError", "StateConflictError", "UpstreamError",
    "BalanceAPIError", "TelegramError", "DMBlockedError",
    # Verification
    "verify_message", "verify_claim", "verification_report",
    "classify_address", "derive_address", "detect_network", "addresses_match",
    # Balances / policy
    "BalanceRow", "CounterpartyClient", "aggregate", "to_atomic",
    "PolicyOutcome", "make_policy", "policy_from_json", "policy_hash",
    "is_grandfathered", "passes_token_policy",
    # Compliance
    "GateStore", "ChatPlatform", "ComplianceEngine", "RateLimiter", "Config",
]

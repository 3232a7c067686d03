"""
tokengate - Policies

Policy construction and validation, the policy version hash used for
grandfathering, and evaluation of one member against a policy.
"""

import hashlib
import json
import logging
import re
from enum import Enum
from typing import Callable, List, Optional

from .balances import BalanceRow, aggregate, normalize_amount, to_atomic
from .errors import PolicyError
from .gate_types import Member, MemberState, OnFail, Policy, PolicyKind

log = logging.getLogger(__name__)

NO_POLICY_HASH = "basic-default"
ASSET_RE = re.compile(r"^[A-Z0-9.]{1,250}$")

# fetch(address, asset, verbose, include_unconfirmed) -> rows
BalanceFetcher = Callable[..., List[BalanceRow]]


class PolicyOutcome(Enum):
    COMPLIANT = "compliant"
    NO_ADDRESS = "not_verified"
    INSUFFICIENT_BALANCE = "balance_insufficient"

    @property
    def passed(self) -> bool:
        return self is PolicyOutcome.COMPLIANT


# =============================================================================
# CONSTRUCTION
# =============================================================================

def make_policy(chat_id: int, kind: str = "basic", asset: Optional[str] = None,
                min_amount=None, include_unconfirmed: bool = False,
                on_fail: str = "restrict", recheck_every: str = "24h") -> Policy:
    """
    Build a validated Policy.

    Raises:
        PolicyError: unknown kind/on_fail, missing or bad asset, bad amount
    """
    try:
        policy_kind = PolicyKind(kind)
    except ValueError:
        raise PolicyError(f"unknown policy type {kind!r}")
    try:
        action = OnFail(on_fail)
    except ValueError:
        raise PolicyError(f"unknown onFail action {on_fail!r}")

    if policy_kind == PolicyKind.BASIC:
        return Policy(chat_id=chat_id, kind=policy_kind, on_fail=action,
                      recheck_every=recheck_every)

    if not asset:
        raise PolicyError("token policy requires an asset")
    asset = asset.strip().upper()
    if not ASSET_RE.match(asset):
        raise PolicyError(f"invalid asset name {asset!r}")
    if min_amount is None:
        raise PolicyError("token policy requires minAmount")
    try:
        amount = normalize_amount(min_amount)
    except ValueError as e:
        raise PolicyError(str(e))
    if to_atomic(amount, 8) <= 0:
        raise PolicyError("minAmount must be positive")

    return Policy(chat_id=chat_id, kind=policy_kind, asset=asset, min_amount=amount,
                  include_unconfirmed=bool(include_unconfirmed), on_fail=action,
                  recheck_every=recheck_every)


def policy_from_json(chat_id: int, payload: dict) -> Policy:
    """
    Policy from the admin JSON form, e.g.
    {"type": "token", "asset": "XCP", "minAmount": "1", "onFail": "restrict"}
    """
    if not isinstance(payload, dict):
        raise PolicyError("policy must be a JSON object")
    return make_policy(
        chat_id,
        kind=payload.get("type", "basic"),
        asset=payload.get("asset"),
        min_amount=payload.get("minAmount"),
        include_unconfirmed=payload.get("includeUnconfirmed", False),
        on_fail=payload.get("onFail", "restrict"),
        recheck_every=payload.get("recheckEvery", "24h"),
    )


# =============================================================================
# VERSION HASH / GRANDFATHERING
# =============================================================================

def policy_hash(policy: Optional[Policy]) -> str:
    """
    Stable 16 hex char digest of the fields that decide admission.

    Field order and amount spelling ('1' vs '1.0') do not change it.
    """
    if policy is None:
        return NO_POLICY_HASH
    min_amount = policy.min_amount
    if min_amount is not None:
        min_amount = normalize_amount(min_amount)
    fields = {
        "type": policy.kind.value,
        "asset": policy.asset.upper() if policy.asset else None,
        "minAmount": min_amount,
        "includeUnconfirmed": bool(policy.include_unconfirmed),
        "onFail": policy.on_fail.value,
    }
    encoded = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()[:16]


def is_grandfathered(member_hash: Optional[str], current_hash: str) -> bool:
    """No hash, or a hash from an older policy, exempts from automatic checks."""
    if not member_hash:
        return True
    return member_hash != current_hash


# =============================================================================
# EVALUATION
# =============================================================================

def passes_token_policy(address: str, policy: Policy, fetch: BalanceFetcher) -> bool:
    """
    True if address holds at least policy.min_amount of policy.asset.

    Raises:
        UpstreamError: balance lookup failed
    """
    rows = fetch(address, policy.asset, verbose=True,
                 include_unconfirmed=policy.include_unconfirmed)
    atomic, decimals = aggregate(rows)
    required = to_atomic(policy.min_amount, decimals)
    log.debug(f"{address}: {atomic} >= {required} {policy.asset} (decimals={decimals})")
    return atomic >= required


def evaluate_address(address: Optional[str], policy: Optional[Policy],
                     fetch: BalanceFetcher) -> PolicyOutcome:
    if not address:
        return PolicyOutcome.NO_ADDRESS
    if policy is None or policy.kind == PolicyKind.BASIC:
        return PolicyOutcome.COMPLIANT
    if passes_token_policy(address, policy, fetch):
        return PolicyOutcome.COMPLIANT
    return PolicyOutcome.INSUFFICIENT_BALANCE


def evaluate_member(member: Member, policy: Optional[Policy],
                    fetch: BalanceFetcher) -> PolicyOutcome:
    """Basic passes iff the member is verified and has an address; token checks the balance."""
    if policy is None or policy.kind == PolicyKind.BASIC:
        if member.state != MemberState.VERIFIED:
            return PolicyOutcome.NO_ADDRESS
    return evaluate_address(member.address, policy, fetch)

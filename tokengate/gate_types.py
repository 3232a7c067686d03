"""
tokengate - Data Types

Verification results, policies and the per-chat membership records
(members, join requests, attestations, audit entries).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
import json
import time


class AddressType(Enum):
    """Bitcoin address type, classified by prefix"""
    P2PKH = "p2pkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"
    P2TR = "p2tr"
    UNKNOWN = "unknown"


class Network(Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class VerificationMethod(Enum):
    """Scheme that produced a successful verification"""
    LEGACY_P2PKH = "legacy"
    BIP137 = "bip137"
    BIP322_SIMPLE = "bip322-simple"
    BIP322_FULL = "bip322-full"
    LOOSE_BIP137 = "loose-bip137"


class FailureKind(Enum):
    """Why a verification failed"""
    FORMAT = "format"        # undecodable input, bad flag, bad DER, bad lengths
    MISMATCH = "mismatch"    # decoded fine, but derived address != claim
    RECOVERY = "recovery"    # curve math failed (no key, bad signature)


class VerificationMode(Enum):
    """STRICT = standards only, PERMISSIVE = loose BIP-137 + message retries"""
    STRICT = "strict"
    PERMISSIVE = "permissive"


class SignatureScheme(Enum):
    RECOVERABLE = "recoverable"    # 65-byte legacy / BIP-137
    SCHNORR = "schnorr"            # tr:<sig>:<pubkey>
    WITNESS = "witness"            # BIP-322 full witness stack


class PolicyKind(Enum):
    BASIC = "basic"
    TOKEN = "token"


class OnFail(Enum):
    """Action applied to a member who fails policy"""
    RESTRICT = "restrict"
    KICK = "soft_kick"


class MemberState(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    RESTRICTED = "restricted"
    KICKED = "kicked"


class JoinRequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    EXPIRED = "expired"


# =============================================================================
# VERIFICATION
# =============================================================================

@dataclass(frozen=True)
class AddressClaim:
    """An address, the message claimed to be signed, and the signature text."""
    address: str
    message: str
    signature: str


@dataclass
class VerificationResult:
    """
    Outcome of verifying one AddressClaim.

    Failures are values, never exceptions: `failure` tells the kind and
    `details` carries a human readable reason.
    """
    valid: bool
    method: Optional[VerificationMethod] = None
    address_type: Optional[AddressType] = None
    details: str = ""
    failure: Optional[FailureKind] = None
    normalized: bool = False

    @classmethod
    def ok(cls, method: VerificationMethod, address_type: AddressType,
           details: str = "") -> "VerificationResult":
        return cls(valid=True, method=method, address_type=address_type, details=details)

    @classmethod
    def fail(cls, failure: FailureKind, details: str,
             method: Optional[VerificationMethod] = None) -> "VerificationResult":
        return cls(valid=False, method=method, details=details, failure=failure)

    @property
    def label(self) -> str:
        """Short label such as 'BIP-137 (p2wpkh)' for logs and API responses."""
        if self.method is None:
            return "none"
        if self.method in (VerificationMethod.BIP137, VerificationMethod.BIP322_FULL) \
                and self.address_type is not None:
            return f"{self.method.value} ({self.address_type.value})"
        return self.method.value

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "method": self.method.value if self.method else None,
            "address_type": self.address_type.value if self.address_type else None,
            "details": self.details,
            "failure": self.failure.value if self.failure else None,
            "normalized": self.normalized,
        }


@dataclass
class SignatureComponents:
    """
    Parsed signature.

    For recoverable and witness signatures `r` and `s` are always exactly
    32 bytes (left-zero-padded). Schnorr signatures carry `schnorr_sig`
    (64 bytes) and the x-only `pubkey` instead.
    """
    scheme: SignatureScheme
    r: bytes = b""
    s: bytes = b""
    recovery_id: Optional[int] = None
    compressed: Optional[bool] = None
    flag: Optional[int] = None
    schnorr_sig: bytes = b""
    pubkey: bytes = b""

    def __post_init__(self):
        for name in ("r", "s"):
            value = getattr(self, name)
            if value and len(value) != 32:
                raise ValueError(f"{name} must be 32 bytes, got {len(value)}")
        if self.recovery_id is not None and not 0 <= self.recovery_id <= 3:
            raise ValueError(f"recovery id out of range: {self.recovery_id}")


# =============================================================================
# POLICY & MEMBERSHIP
# =============================================================================

@dataclass
class Policy:
    """
    Admission policy for one chat (at most one per chat).

    BASIC only requires a verified address, TOKEN additionally requires
    holding at least `min_amount` of `asset`.
    """
    chat_id: int
    kind: PolicyKind = PolicyKind.BASIC
    asset: Optional[str] = None
    min_amount: Optional[str] = None
    include_unconfirmed: bool = False
    on_fail: OnFail = OnFail.RESTRICT
    recheck_every: str = "24h"
    created_ts: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "kind": self.kind.value,
            "asset": self.asset,
            "min_amount": self.min_amount,
            "include_unconfirmed": self.include_unconfirmed,
            "on_fail": self.on_fail.value,
            "recheck_every": self.recheck_every,
            "created_ts": self.created_ts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Policy":
        return cls(
            chat_id=int(data["chat_id"]),
            kind=PolicyKind(data.get("kind", "basic")),
            asset=data.get("asset"),
            min_amount=data.get("min_amount"),
            include_unconfirmed=bool(data.get("include_unconfirmed", False)),
            on_fail=OnFail(data.get("on_fail", "restrict")),
            recheck_every=data.get("recheck_every", "24h"),
            created_ts=data.get("created_ts", int(time.time())),
        )


@dataclass
class Member:
    """Tracked chat member, keyed by (chat_id, user_id)."""
    chat_id: int
    user_id: int
    address: Optional[str] = None
    state: MemberState = MemberState.PENDING
    policy_hash: Optional[str] = None
    dm_failure: bool = False
    username: Optional[str] = None
    last_checked_at: Optional[float] = None
    restricted_at: Optional[float] = None
    joined_at: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple:
        return (self.chat_id, self.user_id)

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "address": self.address,
            "state": self.state.value,
            "policy_hash": self.policy_hash,
            "dm_failure": self.dm_failure,
            "username": self.username,
            "last_checked_at": self.last_checked_at,
            "restricted_at": self.restricted_at,
            "joined_at": self.joined_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Member":
        return cls(
            chat_id=int(data["chat_id"]),
            user_id=int(data["user_id"]),
            address=data.get("address"),
            state=MemberState(data.get("state", "pending")),
            policy_hash=data.get("policy_hash"),
            dm_failure=bool(data.get("dm_failure", False)),
            username=data.get("username"),
            last_checked_at=data.get("last_checked_at"),
            restricted_at=data.get("restricted_at"),
            joined_at=data.get("joined_at", time.time()),
        )


@dataclass
class JoinRequest:
    """Pending request to enter a chat; one per (chat_id, user_id)."""
    chat_id: int
    user_id: int
    requested_at: float
    expires_at: float
    status: JoinRequestStatus = JoinRequestStatus.PENDING
    processed_at: Optional[float] = None
    username: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.chat_id, self.user_id)

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True while pending and past its expiry."""
        now = time.time() if now is None else now
        return self.status == JoinRequestStatus.PENDING and now > self.expires_at

    def is_terminal(self) -> bool:
        return self.status != JoinRequestStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "requested_at": self.requested_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "processed_at": self.processed_at,
            "username": self.username,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JoinRequest":
        return cls(
            chat_id=int(data["chat_id"]),
            user_id=int(data["user_id"]),
            requested_at=float(data["requested_at"]),
            expires_at=float(data["expires_at"]),
            status=JoinRequestStatus(data.get("status", "pending")),
            processed_at=data.get("processed_at"),
            username=data.get("username"),
        )


@dataclass
class Attestation:
    """Proof that user_id controlled address at verified_at."""
    chat_id: int
    user_id: int
    address: str
    verified_at: float
    expires_at: float
    chain: str = "BTC"
    method: str = ""

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "address": self.address,
            "chain": self.chain,
            "method": self.method,
            "verified_at": self.verified_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attestation":
        return cls(
            chat_id=int(data["chat_id"]),
            user_id=int(data["user_id"]),
            address=data["address"],
            verified_at=float(data["verified_at"]),
            expires_at=float(data["expires_at"]),
            chain=data.get("chain", "BTC"),
            method=data.get("method", ""),
        )


@dataclass
class AuditEntry:
    """Append-only audit log line."""
    chat_id: int
    event: str
    level: str = "info"
    user_id: Optional[int] = None
    metadata: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "user_id": self.user_id,
            "level": self.level,
            "event": self.event,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        return cls(
            chat_id=int(data["chat_id"]),
            event=data["event"],
            level=data.get("level", "info"),
            user_id=data.get("user_id"),
            metadata=data.get("metadata") or {},
            timestamp=float(data.get("timestamp", time.time())),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

"""
Shared fixtures: in-memory chat platform, scripted balance source, and a
compliance engine wired to both.
"""

import asyncio
import base64

import pytest
from coincurve import PrivateKey

from tokengate.addresses import derive_address, script_pubkey
from tokengate.balances import BalanceRow
from tokengate.bip322 import build_to_spend, legacy_sighash, txid, witness_v0_sighash
from tokengate.codec import encode_varint
from tokengate.compliance import ChatPlatform, ComplianceEngine
from tokengate.errors import DMBlockedError, StateConflictError, UpstreamError
from tokengate.gate_types import AddressType, Network
from tokengate.hashing import bip322_message_hash, legacy_message_hash, sha256
from tokengate.store import GateStore

CHAT_ID = -1001234567890
NOW = 1_700_000_000.0


class FakeChat(ChatPlatform):
    """Records every side effect; behaviour is scripted per user."""

    def __init__(self):
        self.calls = []
        self.statuses = {}          # user_id -> status
        self.admins = set()
        self.dm_blocked = set()
        self.conflicts = set()      # users whose join request is already processed
        self.failing = set()        # users whose calls raise UpstreamError
        self.member_count = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def _track(self, name, chat_id, user_id):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.calls.append((name, chat_id, user_id))
            if user_id in self.failing:
                raise UpstreamError(f"{name} failed")
        finally:
            self.in_flight -= 1

    def actions(self, name):
        return [user_id for (n, _, user_id) in self.calls if n == name]

    async def approve(self, chat_id, user_id):
        await self._track("approve", chat_id, user_id)
        if user_id in self.conflicts:
            raise StateConflictError("already processed")

    async def decline(self, chat_id, user_id):
        await self._track("decline", chat_id, user_id)
        if user_id in self.conflicts:
            raise StateConflictError("already processed")

    async def restrict(self, chat_id, user_id):
        await self._track("restrict", chat_id, user_id)

    async def unrestrict(self, chat_id, user_id):
        await self._track("unrestrict", chat_id, user_id)

    async def remove(self, chat_id, user_id):
        await self._track("remove", chat_id, user_id)

    async def get_member_status(self, chat_id, user_id):
        await self._track("get_member_status", chat_id, user_id)
        if user_id in self.admins:
            return "administrator"
        return self.statuses.get(user_id, "member")

    async def get_member_count(self, chat_id):
        return self.member_count

    async def send_dm(self, user_id, text):
        self.calls.append(("send_dm", None, user_id))
        if user_id in self.dm_blocked:
            raise DMBlockedError("sendMessage", "Forbidden: bot can't initiate conversation")


class FakeBalances:
    """address -> atomic quantity (or an exception to raise)."""

    def __init__(self, holdings=None, divisible=True):
        self.holdings = dict(holdings or {})
        self.divisible = divisible
        self.calls = []

    def __call__(self, address, asset, verbose=True, include_unconfirmed=False):
        self.calls.append((address, asset, include_unconfirmed))
        value = self.holdings.get(address, 0)
        if isinstance(value, Exception):
            raise value
        return [BalanceRow(quantity=value, divisible=self.divisible, asset=asset)]


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Wallet:
    """
    Signs the way a wallet does, so tests get genuine signatures for any
    address type instead of canned strings.
    """

    # BIP-137 header base per address type (compressed keys)
    FLAG_BASE = {
        AddressType.P2PKH: 31,
        AddressType.P2SH_P2WPKH: 35,
        AddressType.P2WPKH: 39,
    }

    def __init__(self, seed=b"tokengate test wallet"):
        self.key = PrivateKey(sha256(seed))
        self.pubkey = self.key.public_key.format(compressed=True)
        self.pubkey_uncompressed = self.key.public_key.format(compressed=False)

    def address(self, address_type, network=Network.MAINNET):
        return derive_address(self.pubkey, address_type, network)

    def legacy_address(self):
        """P2PKH address of the uncompressed key."""
        return derive_address(self.pubkey_uncompressed, AddressType.P2PKH)

    def sign_bip137(self, message, address_type=AddressType.P2PKH, compressed=True):
        recoverable = self.key.sign_recoverable(legacy_message_hash(message), hasher=None)
        sig64, recovery_id = recoverable[:64], recoverable[64]
        base = self.FLAG_BASE[address_type] if compressed else 27
        return base64.b64encode(bytes([base + recovery_id]) + sig64).decode()

    def sign_bip322_full(self, message, address_type=AddressType.P2WPKH):
        """Base64 witness [der_sig || SIGHASH_ALL, pubkey]."""
        spk = script_pubkey(self.pubkey, address_type)
        to_spend_id = txid(build_to_spend(bip322_message_hash(message), spk))
        if address_type == AddressType.P2PKH:
            digest = legacy_sighash(to_spend_id, spk)
        else:
            digest = witness_v0_sighash(to_spend_id, self.pubkey)
        der = self.key.sign(digest, hasher=None) + b"\x01"
        witness = (encode_varint(2) + encode_varint(len(der)) + der
                   + encode_varint(len(self.pubkey)) + self.pubkey)
        return base64.b64encode(witness).decode()


@pytest.fixture
def chat():
    """Fresh fake chat platform."""
    return FakeChat()


@pytest.fixture
def balances():
    """Empty balance source; tests fill in holdings."""
    return FakeBalances()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def wallet():
    return Wallet()


@pytest.fixture
def store():
    """In-memory store (no file)."""
    return GateStore(None)


@pytest.fixture
def engine(store, chat, balances, clock):
    """Engine with the fakes and a controllable clock."""
    return ComplianceEngine(store, chat, balances, concurrency=3, call_timeout=5,
                            verify_url="https://gate.example", clock=clock)


def run(coro):
    return asyncio.run(coro)

"""
tokengate - Message hashing

Hash constructions for the legacy "Bitcoin Signed Message" format and
BIP-322 tagged hashes.
"""

import hashlib

from .codec import encode_varint

MESSAGE_MAGIC = b"\x18Bitcoin Signed Message:\n"
BIP322_TAG = "BIP0322-signed-message"


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    return sha256(sha256(data))


def ripemd160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", data).digest()


def hash160(data: bytes) -> bytes:
    return ripemd160(sha256(data))


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = sha256(tag.encode())
    return sha256(tag_digest + tag_digest + data)


def legacy_message_hash(message: str) -> bytes:
    """Double SHA-256 over magic prefix, varint length and UTF-8 message."""
    payload = message.encode("utf-8")
    return sha256d(MESSAGE_MAGIC + encode_varint(len(payload)) + payload)


def bip322_message_hash(message: str) -> bytes:
    return tagged_hash(BIP322_TAG, message.encode("utf-8"))

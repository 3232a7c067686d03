"""
tokengate - Verification messages

The text users sign, and the rewrites tried when a wallet altered it.
"""

from typing import List

DEFAULT_DOMAIN = "telegram.xcp.io"

# Wallets that append a line ending or space when signing
TRAILING_VARIANTS = (" ", "\n", "\r\n")


def normalize_message(message: str) -> str:
    """Trim and convert CRLF / CR line endings to LF."""
    return message.replace("\r\n", "\n").replace("\r", "\n").strip()


def expected_message(user_id: int, chat_id: int, domain: str = DEFAULT_DOMAIN) -> str:
    return f"Verify: {domain} | User: {user_id} | Chat: {chat_id}"


def is_valid_message(message: str, user_id: int, chat_id: int,
                     domain: str = DEFAULT_DOMAIN) -> bool:
    """Normalized comparison with the message this user was asked to sign."""
    if not message:
        return False
    return normalize_message(message) == normalize_message(
        expected_message(user_id, chat_id, domain))


def trailing_variants(message: str) -> List[str]:
    """message + each trailing suffix it does not already end with."""
    return [message + suffix for suffix in TRAILING_VARIANTS if not message.endswith(suffix)]

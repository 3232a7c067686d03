"""
tokengate - Telegram Bot API client

ChatPlatform implementation over the Bot API (httpx, async).

Usage:
    async with TelegramClient(token) as tg:
        await tg.approve(chat_id, user_id)
"""

import logging
from typing import Any, Optional

import httpx

from .compliance import ChatPlatform
from .config import mask_secret
from .errors import DMBlockedError, StateConflictError, TelegramError

log = logging.getLogger(__name__)

# Everything off: used for restrictChatMember
RESTRICTED_PERMISSIONS = {
    "can_send_messages": False,
    "can_send_audios": False,
    "can_send_documents": False,
    "can_send_photos": False,
    "can_send_videos": False,
    "can_send_video_notes": False,
    "can_send_voice_notes": False,
    "can_send_polls": False,
    "can_send_other_messages": False,
    "can_add_web_page_previews": False,
    "can_change_info": False,
    "can_invite_users": False,
    "can_pin_messages": False,
}

# Regular member rights, when the chat has no default permissions
DEFAULT_MEMBER_PERMISSIONS = {
    "can_send_messages": True,
    "can_send_audios": True,
    "can_send_documents": True,
    "can_send_photos": True,
    "can_send_videos": True,
    "can_send_video_notes": True,
    "can_send_voice_notes": True,
    "can_send_polls": True,
    "can_send_other_messages": True,
    "can_add_web_page_previews": True,
    "can_change_info": False,
    "can_invite_users": False,
    "can_pin_messages": False,
    "can_manage_topics": False,
}

ALREADY_PROCESSED = ("HIDE_REQUESTER_MISSING", "USER_ALREADY_PARTICIPANT")
DM_BLOCKED = ("bot can't initiate conversation", "bot was blocked by the user",
              "user is deactivated")


class TelegramClient(ChatPlatform):
    """Bot API client. Each method maps to one Bot API call."""

    def __init__(self, token: str, api_base: str = "https://api.telegram.org",
                 timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        if not token:
            raise ValueError("Telegram bot token is required")
        self.base_url = f"{api_base.rstrip('/')}/bot{token}"
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        await self._client.aclose()

    async def call(self, method: str, **params) -> Any:
        """
        POST one Bot API method.

        Raises:
            TelegramError: transport failure or ok=false
        """
        body = {k: v for k, v in params.items() if v is not None}
        try:
            resp = await self._client.post(f"{self.base_url}/{method}", json=body)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            # httpx errors can carry the request URL, which contains the token
            raise TelegramError(method, str(e).replace(self._token, mask_secret(self._token)))

        if not data.get("ok"):
            description = data.get("description", f"HTTP {resp.status_code}")
            raise TelegramError(method, description, data.get("error_code"))
        return data.get("result")

    # =========================================================================
    # JOIN REQUESTS
    # =========================================================================

    async def _resolve(self, method: str, chat_id: int, user_id: int):
        try:
            return await self.call(method, chat_id=chat_id, user_id=user_id)
        except TelegramError as e:
            if any(marker in e.description for marker in ALREADY_PROCESSED):
                raise StateConflictError(f"{method}: request already processed or expired")
            raise

    async def approve(self, chat_id: int, user_id: int):
        return await self._resolve("approveChatJoinRequest", chat_id, user_id)

    async def decline(self, chat_id: int, user_id: int):
        return await self._resolve("declineChatJoinRequest", chat_id, user_id)

    # =========================================================================
    # MEMBERS
    # =========================================================================

    async def restrict(self, chat_id: int, user_id: int):
        return await self.call("restrictChatMember", chat_id=chat_id, user_id=user_id,
                               permissions=RESTRICTED_PERMISSIONS)

    async def unrestrict(self, chat_id: int, user_id: int):
        """Give back the chat's default permissions."""
        permissions = DEFAULT_MEMBER_PERMISSIONS
        try:
            chat = await self.call("getChat", chat_id=chat_id)
            if chat and chat.get("permissions"):
                permissions = chat["permissions"]
        except TelegramError as e:
            log.warning(f"getChat {chat_id} failed, using default permissions: {e}")
        return await self.call("restrictChatMember", chat_id=chat_id, user_id=user_id,
                               permissions=permissions)

    async def remove(self, chat_id: int, user_id: int):
        """Soft kick: unbanChatMember on a member removes them without a ban."""
        return await self.call("unbanChatMember", chat_id=chat_id, user_id=user_id)

    async def get_member_status(self, chat_id: int, user_id: int) -> str:
        member = await self.call("getChatMember", chat_id=chat_id, user_id=user_id)
        return (member or {}).get("status", "left")

    async def get_member_count(self, chat_id: int) -> int:
        return int(await self.call("getChatMemberCount", chat_id=chat_id))

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def send_dm(self, user_id: int, text: str):
        try:
            return await self.call("sendMessage", chat_id=user_id, text=text,
                                   disable_web_page_preview=True)
        except TelegramError as e:
            if any(marker in e.description for marker in DM_BLOCKED):
                raise DMBlockedError("sendMessage", e.description, e.error_code)
            raise

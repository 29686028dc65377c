"""
Обертка над aiogram Bot: все обращения бота к Telegram.

Права участника описываются несколькими структурно разными наборами
(PermissionEncoding): Bot API в разных версиях принимал разные формы одного
и того же запроса, поэтому сервис ограничений перебирает их.
"""
from dataclasses import dataclass
from typing import Optional

from aiogram import Bot
from aiogram.types import ChatMember, ChatPermissions, InlineKeyboardMarkup, Message

_MEDIA_FIELDS = (
    "can_send_audios",
    "can_send_documents",
    "can_send_photos",
    "can_send_videos",
    "can_send_video_notes",
    "can_send_voice_notes",
    "can_send_polls",
)


@dataclass(frozen=True)
class PermissionEncoding:
    """Набор прав и режим их применения."""

    name: str
    permissions: ChatPermissions
    independent: bool


def _granular(allowed: bool) -> ChatPermissions:
    fields = {name: allowed for name in _MEDIA_FIELDS}
    return ChatPermissions(
        can_send_messages=allowed,
        can_send_other_messages=allowed,
        can_add_web_page_previews=allowed,
        **fields,
    )


def _legacy(allowed: bool) -> ChatPermissions:
    # Без use_independent_chat_permissions Telegram выводит права на медиа из этих полей
    return ChatPermissions(
        can_send_messages=allowed,
        can_send_other_messages=allowed,
        can_add_web_page_previews=allowed,
    )


RESTRICT_ENCODINGS = (
    PermissionEncoding("granular", _granular(False), independent=True),
    PermissionEncoding("legacy", _legacy(False), independent=False),
)

UNRESTRICT_ENCODINGS = (
    PermissionEncoding("granular", _granular(True), independent=True),
    PermissionEncoding("legacy", _legacy(True), independent=False),
    PermissionEncoding("messages_only", ChatPermissions(can_send_messages=True), independent=False),
)


class ChatPlatform:
    """Операции Telegram, которые нужны машине состояний верификации."""

    def __init__(self, bot: Bot):
        self.bot = bot
        self._bot_username: Optional[str] = None

    async def restrict_member(self, chat_id: int, user_id: int, encoding: PermissionEncoding) -> bool:
        return await self.bot.restrict_chat_member(
            chat_id=chat_id,
            user_id=user_id,
            permissions=encoding.permissions,
            use_independent_chat_permissions=encoding.independent,
        )

    async def unrestrict_member(self, chat_id: int, user_id: int, encoding: PermissionEncoding) -> bool:
        return await self.restrict_member(chat_id, user_id, encoding)

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> Message:
        return await self.bot.send_message(chat_id, text, reply_markup=reply_markup)

    async def ban_member(self, chat_id: int, user_id: int) -> bool:
        return await self.bot.ban_chat_member(chat_id, user_id)

    async def unban_member(self, chat_id: int, user_id: int) -> bool:
        return await self.bot.unban_chat_member(chat_id, user_id, only_if_banned=True)

    async def get_chat_title(self, chat_id: int) -> Optional[str]:
        chat = await self.bot.get_chat(chat_id)
        return chat.title

    async def get_chat_member(self, chat_id: int, user_id: int) -> ChatMember:
        return await self.bot.get_chat_member(chat_id, user_id)

    async def get_bot_username(self) -> str:
        if self._bot_username is None:
            me = await self.bot.get_me()
            self._bot_username = me.username
        return self._bot_username

# shared/messaging.py

import abc
import logging
from typing import Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ChatMemberStatus, ChatType, ParseMode
from telegram.error import BadRequest, Forbidden, TelegramError

from shared.bot_instance import get_bot
from shared.models import RenderedPayload, SendResult
from shared.rendering import format_payload_text
from shared.utils import escape_markdown_v2

logger = logging.getLogger(__name__)


class Messenger(abc.ABC):
    """Внешняя платформа сообщений: отправка, обновление, проверка канала, уведомления."""

    @abc.abstractmethod
    async def send_message(self, channel: str, payload: RenderedPayload) -> SendResult:
        ...

    @abc.abstractmethod
    async def update_message(self, channel: str, message_ref: str, payload: RenderedPayload) -> SendResult:
        ...

    @abc.abstractmethod
    async def verify_channel_accessible(self, channel: str) -> bool:
        ...

    @abc.abstractmethod
    async def notify(self, actor_id: str, text: str) -> SendResult:
        ...


def build_keyboard(payload: RenderedPayload) -> Optional[InlineKeyboardMarkup]:
    if not payload.actions:
        return None
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(action.label, callback_data=action.action_id)]
        for action in payload.actions
    ])


class TelegramMessenger(Messenger):
    """Messenger поверх python-telegram-bot."""

    def __init__(self, bot: Optional[Bot] = None):
        self._bot = bot

    @property
    def bot(self) -> Bot:
        return self._bot or get_bot()

    async def send_message(self, channel: str, payload: RenderedPayload) -> SendResult:
        try:
            logger.info(f"📤 Отправка сообщения в чат {channel}")
            message = await self.bot.send_message(
                chat_id=channel,
                text=format_payload_text(payload, escape_markdown_v2),
                parse_mode=ParseMode.MARKDOWN_V2,
                reply_markup=build_keyboard(payload),
            )
            logger.info(f"✅ Сообщение отправлено в чат {channel}, ID: {message.message_id}")
            return SendResult(ok=True, message_ref=str(message.message_id))
        except (BadRequest, Forbidden) as e:
            logger.error(f"❌ Чат {channel} отклонил сообщение: {e}")
            return SendResult(ok=False, error=str(e))
        except TelegramError as e:
            logger.error(f"❌ Ошибка Telegram API при отправке в {channel}: {e}")
            return SendResult(ok=False, error=str(e))

    async def update_message(self, channel: str, message_ref: str, payload: RenderedPayload) -> SendResult:
        try:
            await self.bot.edit_message_text(
                chat_id=channel,
                message_id=int(message_ref),
                text=format_payload_text(payload, escape_markdown_v2),
                parse_mode=ParseMode.MARKDOWN_V2,
                reply_markup=build_keyboard(payload),
            )
            return SendResult(ok=True, message_ref=message_ref)
        except BadRequest as e:
            if "message is not modified" in str(e).lower():
                return SendResult(ok=True, message_ref=message_ref)
            logger.warning(f"⚠️ Не удалось обновить сообщение {message_ref} в чате {channel}: {e}")
            return SendResult(ok=False, message_ref=message_ref, error=str(e))
        except TelegramError as e:
            logger.warning(f"⚠️ Ошибка Telegram API при обновлении {message_ref}: {e}")
            return SendResult(ok=False, message_ref=message_ref, error=str(e))

    async def verify_channel_accessible(self, channel: str) -> bool:
        """В канал бот может писать только администратором, в группу будучи участником."""
        try:
            bot = self.bot
            chat = await bot.get_chat(channel)
            member = await bot.get_chat_member(channel, bot.id)
        except (BadRequest, Forbidden) as e:
            logger.warning(f"⚠️ Чат {channel} недоступен: {e}")
            return False
        except TelegramError as e:
            logger.error(f"❌ Ошибка проверки чата {channel}: {e}")
            return False

        if chat.type == ChatType.CHANNEL:
            ok = member.status in (ChatMemberStatus.ADMINISTRATOR, ChatMemberStatus.OWNER)
        else:
            ok = member.status not in (ChatMemberStatus.LEFT, ChatMemberStatus.BANNED)
        if ok:
            logger.info(f"✅ Доступ к чату {channel} подтверждён. Название: {chat.title}")
        else:
            logger.warning(f"⚠️ Бот не может писать в чат {channel} (статус {member.status})")
        return ok

    async def notify(self, actor_id: str, text: str) -> SendResult:
        try:
            message = await self.bot.send_message(chat_id=actor_id, text=text)
            return SendResult(ok=True, message_ref=str(message.message_id))
        except TelegramError as e:
            logger.warning(f"⚠️ Не удалось уведомить {actor_id}: {e}")
            return SendResult(ok=False, error=str(e))

from typing import Optional

from telegram import Bot

from config import BOT_TOKEN

_bot_instance: Optional[Bot] = None


def get_bot() -> Bot:
    global _bot_instance
    if _bot_instance is None:
        _bot_instance = Bot(token=BOT_TOKEN)
    return _bot_instance


def set_bot(bot: Bot):
    """Подменяет общий экземпляр ботом приложения, чтобы не открывать второе соединение."""
    global _bot_instance
    _bot_instance = bot

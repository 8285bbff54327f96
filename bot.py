# bot.py

import asyncio
import logging
from functools import wraps

import uvicorn
from telegram import Update, InlineKeyboardMarkup, InlineKeyboardButton
from telegram.ext import (
    Application, CommandHandler, MessageHandler, ContextTypes,
    ConversationHandler, filters, CallbackQueryHandler
)

from config import (
    BOT_TOKEN, AUTHORIZED_USER_IDS, DATABASE_PATH, LOG_LEVEL, LOG_FORMAT, LOG_DATEFMT,
    WEB_API_ENABLED, WEB_API_PORT
)
from scheduler_logic import SchedulerCore
from shared.bot_instance import set_bot
from shared.database import MessageStore
from shared.errors import InvalidOption, ValidationError
from shared.messaging import TelegramMessenger
from shared.models import (
    InteractionEvent, InteractionKind, MessageType, Repeat, MAX_POLL_OPTIONS
)
from shared.rendering import render_payload, format_payload_text, parse_action_id
from shared.utils import parse_user_datetime

logger = logging.getLogger(__name__)

(SELECT_TYPE, SELECT_CHANNEL, INPUT_TITLE, INPUT_TEXT, INPUT_OPTIONS,
 INPUT_ALERTS, INPUT_WHEN, SELECT_REPEAT, CONFIRM) = range(9)

TYPE_LABELS = {
    MessageType.CAPACITY: "📊 Загрузка команды",
    MessageType.POLL_SINGLE: "🔘 Опрос (один вариант)",
    MessageType.POLL_MULTIPLE: "☑️ Опрос (несколько вариантов)",
    MessageType.POLL_OPEN: "💬 Открытый вопрос",
    MessageType.HELP: "🙋 Кнопка помощи",
    MessageType.CUSTOM: "📝 Объявление",
}
REPEAT_LABELS = {
    Repeat.NONE: "Один раз",
    Repeat.DAILY: "Ежедневно",
    Repeat.WEEKLY: "Еженедельно",
    Repeat.MONTHLY: "Ежемесячно",
}
SKIP_WORDS = ('-', 'нет', 'skip')
NOW_WORDS = ('сейчас', 'now')

# === Вспомогательные функции ===

def check_auth(func):
    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        user_id = update.effective_user.id
        if user_id not in AUTHORIZED_USER_IDS:
            if update.callback_query:
                await update.callback_query.answer("❌ Доступ запрещён.", show_alert=True)
            else:
                await update.effective_message.reply_text("❌ Доступ запрещён.")
            return ConversationHandler.END
        return await func(update, context)
    return wrapper


def get_core(context: ContextTypes.DEFAULT_TYPE) -> SchedulerCore:
    return context.application.bot_data['core']


async def select_field(context, user_id, field: str, value):
    await get_core(context).handle_interaction(
        InteractionEvent(kind=InteractionKind.SELECT, actor_id=str(user_id), payload_ref=field, selection=value)
    )


def format_message_row(core: SchedulerCore, msg) -> str:
    next_time = core.engine.next_fire_time(msg.id)
    content = msg.title or msg.text or "—"
    return (
        f"ID: {msg.id}\n"
        f"Тип: {TYPE_LABELS.get(msg.type, msg.type)}\n"
        f"Канал: {msg.channel}\n"
        f"Контент: {content[:50]}\n"
        f"Повтор: {REPEAT_LABELS.get(msg.repeat, msg.repeat)} ({msg.date} {msg.time})\n"
        f"Следующая отправка: {next_time.strftime('%d.%m.%Y %H:%M') if next_time else '—'}\n"
        f"{'—' * 30}"
    )

# === Команды ===

@check_auth
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user_id = update.effective_user.id
    get_core(context).sessions.start(user_id)
    keyboard = [
        [InlineKeyboardButton(label, callback_data=f"type:{msg_type}")]
        for msg_type, label in TYPE_LABELS.items()
    ]
    await update.message.reply_text(
        "Что будем отправлять?", reply_markup=InlineKeyboardMarkup(keyboard)
    )
    return SELECT_TYPE


async def select_type(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    msg_type = query.data.split(':', 1)[1]
    await select_field(context, query.from_user.id, 'type', msg_type)
    await query.edit_message_text(
        f"{TYPE_LABELS.get(msg_type, msg_type)}\n\nВведите ID канала (например, -1001234567890 или @channel):"
    )
    return SELECT_CHANNEL


async def select_channel(update: Update, context: ContextTypes.DEFAULT_TYPE):
    channel = update.message.text.strip()
    if not channel:
        await update.message.reply_text("Неверный ID канала.")
        return SELECT_CHANNEL
    await select_field(context, update.effective_user.id, 'channel', channel)
    await update.message.reply_text("Заголовок (или «-», чтобы пропустить):")
    return INPUT_TITLE


async def input_title(update: Update, context: ContextTypes.DEFAULT_TYPE):
    title = update.message.text.strip()
    await select_field(
        context, update.effective_user.id, 'title', None if title.lower() in SKIP_WORDS else title
    )
    draft = get_core(context).sessions.get(update.effective_user.id) or {}
    if draft.get('type') in (MessageType.POLL_SINGLE, MessageType.POLL_MULTIPLE,
                             MessageType.POLL_OPEN, MessageType.CAPACITY):
        await update.message.reply_text("Вопрос:")
    elif draft.get('type') == MessageType.HELP:
        await update.message.reply_text("Описание кнопки помощи (или «-»):")
    else:
        await update.message.reply_text("Текст сообщения:")
    return INPUT_TEXT


async def input_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user_id = update.effective_user.id
    text = update.message.text.strip()
    await select_field(context, user_id, 'text', None if text.lower() in SKIP_WORDS else text)
    draft = get_core(context).sessions.get(user_id) or {}
    msg_type = draft.get('type')

    if msg_type in (MessageType.POLL_SINGLE, MessageType.POLL_MULTIPLE):
        await update.message.reply_text(f"Варианты ответа, по одному в строке (2–{MAX_POLL_OPTIONS}):")
        return INPUT_OPTIONS
    if msg_type == MessageType.CAPACITY:
        await update.message.reply_text("Свои уровни загрузки по одному в строке, или «-» для стандартных:")
        return INPUT_OPTIONS
    if msg_type == MessageType.HELP:
        await update.message.reply_text("Каналы для оповещений через запятую:")
        return INPUT_ALERTS
    await update.message.reply_text("Когда отправить? ДД.ММ.ГГГГ ЧЧ:ММ или «сейчас»:")
    return INPUT_WHEN


async def input_options(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = update.message.text.strip()
    options = [] if text.lower() in SKIP_WORDS else [line.strip() for line in text.splitlines() if line.strip()]
    draft = get_core(context).sessions.get(update.effective_user.id) or {}
    if draft.get('type') != MessageType.CAPACITY and not 2 <= len(options) <= MAX_POLL_OPTIONS:
        await update.message.reply_text(f"Нужно от 2 до {MAX_POLL_OPTIONS} вариантов, получено {len(options)}.")
        return INPUT_OPTIONS
    await select_field(context, update.effective_user.id, 'poll_options', options)
    await update.message.reply_text("Когда отправить? ДД.ММ.ГГГГ ЧЧ:ММ или «сейчас»:")
    return INPUT_WHEN


async def input_alerts(update: Update, context: ContextTypes.DEFAULT_TYPE):
    channels = [part.strip() for part in update.message.text.split(',') if part.strip()]
    if not channels:
        await update.message.reply_text("Укажите хотя бы один канал.")
        return INPUT_ALERTS
    await select_field(context, update.effective_user.id, 'alert_channels', channels)
    await update.message.reply_text("Когда отправить? ДД.ММ.ГГГГ ЧЧ:ММ или «сейчас»:")
    return INPUT_WHEN


async def input_when(update: Update, context: ContextTypes.DEFAULT_TYPE):
    user_id = update.effective_user.id
    text = update.message.text.strip()
    if text.lower() in NOW_WORDS:
        await select_field(context, user_id, 'send_now', True)
        return await show_preview(update, context)
    try:
        date_str, time_str = parse_user_datetime(text)
    except ValidationError as e:
        await update.message.reply_text(str(e))
        return INPUT_WHEN
    await select_field(context, user_id, 'date', date_str)
    await select_field(context, user_id, 'time', time_str)

    keyboard = [
        [InlineKeyboardButton(label, callback_data=f"repeat:{repeat}")]
        for repeat, label in REPEAT_LABELS.items()
    ]
    await update.message.reply_text("Периодичность:", reply_markup=InlineKeyboardMarkup(keyboard))
    return SELECT_REPEAT


async def select_repeat(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    await select_field(context, query.from_user.id, 'repeat', query.data.split(':', 1)[1])
    return await show_preview(update, context)


async def show_preview(update: Update, context: ContextTypes.DEFAULT_TYPE):
    core = get_core(context)
    user_id = update.effective_user.id
    draft = core.sessions.get(user_id) or {}
    msg = core.build_message(draft, user_id=user_id)
    preview = format_payload_text(render_payload(msg))
    when = "сейчас" if draft.get('send_now') else f"{msg.date} {msg.time}, {REPEAT_LABELS.get(msg.repeat, msg.repeat)}"
    keyboard = [[
        InlineKeyboardButton("✅ Подтвердить", callback_data="confirm:yes"),
        InlineKeyboardButton("❌ Отмена", callback_data="confirm:no"),
    ]]
    text = f"Предпросмотр ({msg.channel}, {when}):\n\n{preview}"
    if update.callback_query:
        await update.callback_query.edit_message_text(text, reply_markup=InlineKeyboardMarkup(keyboard))
    else:
        await update.message.reply_text(text, reply_markup=InlineKeyboardMarkup(keyboard))
    return CONFIRM


async def confirm(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    core = get_core(context)
    if query.data == "confirm:no":
        core.sessions.pop(query.from_user.id)
        await query.edit_message_text("Отменено.")
        return ConversationHandler.END

    notice = await core.handle_interaction(
        InteractionEvent(kind=InteractionKind.SUBMIT, actor_id=str(query.from_user.id), payload_ref='draft')
    )
    await query.edit_message_text(notice.text)
    return ConversationHandler.END


async def cancel(update: Update, context: ContextTypes.DEFAULT_TYPE):
    get_core(context).sessions.pop(update.effective_user.id)
    await update.message.reply_text("Отменено.")
    return ConversationHandler.END


@check_auth
async def list_tasks(update: Update, context: ContextTypes.DEFAULT_TYPE):
    core = get_core(context)
    tasks = core.store.list_active()
    if not tasks:
        await update.message.reply_text("Нет активных задач.")
        return
    text = "\n".join(format_message_row(core, t) for t in tasks)
    await update.message.reply_text(f"Активные задачи:\n\n{text}")


@check_auth
async def delete_task(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args:
        await update.message.reply_text("Используйте: /delete <id>")
        return
    notice = await get_core(context).handle_interaction(
        InteractionEvent(kind=InteractionKind.DELETE, actor_id=str(update.effective_user.id),
                         payload_ref=context.args[0].strip())
    )
    await update.message.reply_text(notice.text)


async def on_button(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Голоса и кнопки помощи в отправленных сообщениях; ответ виден только нажавшему."""
    query = update.callback_query
    try:
        kind, msg_id, option_index = parse_action_id(query.data)
    except InvalidOption as e:
        await query.answer(f"⚠️ {e}")
        return
    user = query.from_user
    # Имя без username не уникально, добавляем id
    actor = f"@{user.username}" if user.username else f"{user.full_name} ({user.id})"
    event = InteractionEvent(
        kind=InteractionKind.VOTE if option_index is not None else InteractionKind.HELP,
        actor_id=actor,
        payload_ref=msg_id,
        selection=option_index,
        message_ref=str(query.message.message_id) if query.message else None,
    )
    notice = await get_core(context).handle_interaction(event)
    await query.answer(notice.text, show_alert=False)

# === Запуск ===

async def on_startup(app: Application):
    core: SchedulerCore = app.bot_data['core']
    core.start()
    if WEB_API_ENABLED:
        from web_api import create_app
        server = uvicorn.Server(uvicorn.Config(
            create_app(core), host="0.0.0.0", port=WEB_API_PORT, log_level=LOG_LEVEL.lower()
        ))
        app.bot_data['web_server'] = server
        app.bot_data['web_task'] = asyncio.create_task(server.serve())
        logger.info(f"🚀 Веб-API запущено на порту {WEB_API_PORT}")


async def on_shutdown(app: Application):
    server = app.bot_data.get('web_server')
    if server is not None:
        server.should_exit = True
        await app.bot_data['web_task']
    app.bot_data['core'].shutdown()


def build_application(core: SchedulerCore = None) -> Application:
    app = Application.builder().token(BOT_TOKEN).post_init(on_startup).post_shutdown(on_shutdown).build()
    set_bot(app.bot)
    if core is None:
        core = SchedulerCore(MessageStore(DATABASE_PATH), TelegramMessenger(app.bot))
    app.bot_data['core'] = core

    text_input = filters.TEXT & ~filters.COMMAND
    conv_handler = ConversationHandler(
        entry_points=[CommandHandler("new", start), CommandHandler("start", start)],
        states={
            SELECT_TYPE: [CallbackQueryHandler(select_type, pattern=r"^type:")],
            SELECT_CHANNEL: [MessageHandler(text_input, select_channel)],
            INPUT_TITLE: [MessageHandler(text_input, input_title)],
            INPUT_TEXT: [MessageHandler(text_input, input_text)],
            INPUT_OPTIONS: [MessageHandler(text_input, input_options)],
            INPUT_ALERTS: [MessageHandler(text_input, input_alerts)],
            INPUT_WHEN: [MessageHandler(text_input, input_when)],
            SELECT_REPEAT: [CallbackQueryHandler(select_repeat, pattern=r"^repeat:")],
            CONFIRM: [CallbackQueryHandler(confirm, pattern=r"^confirm:")],
        },
        fallbacks=[CommandHandler("cancel", cancel)],
    )

    app.add_handler(conv_handler)
    app.add_handler(CommandHandler("list", list_tasks))
    app.add_handler(CommandHandler("delete", delete_task))
    app.add_handler(CallbackQueryHandler(on_button, pattern=r"^(vote|help):"))
    return app


def main():
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    app = build_application()
    logger.info("Бот запущен...")
    app.run_polling()


if __name__ == "__main__":
    main()

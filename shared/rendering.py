# shared/rendering.py

from typing import Callable, List, Optional, Tuple

from shared.errors import InvalidOption
from shared.models import (
    ScheduledMessage, RenderedPayload, OptionTally, Action, MessageType
)

VOTE_PREFIX = 'vote'
HELP_PREFIX = 'help'


def vote_action_id(msg_id: str, index: int) -> str:
    return f"{VOTE_PREFIX}:{msg_id}:{index}"


def help_action_id(msg_id: str) -> str:
    return f"{HELP_PREFIX}:{msg_id}"


def parse_action_id(action_id: str) -> Tuple[str, str, Optional[int]]:
    """
    Разбирает идентификатор кнопки.

    Returns:
        (kind, msg_id, option_index); option_index только для голосования
    """
    parts = (action_id or "").split(':')
    if len(parts) == 3 and parts[0] == VOTE_PREFIX and parts[2].isdigit():
        return VOTE_PREFIX, parts[1], int(parts[2])
    if len(parts) == 2 and parts[0] == HELP_PREFIX and parts[1]:
        return HELP_PREFIX, parts[1], None
    raise InvalidOption(f"Неизвестная кнопка: {action_id}")


def render_payload(msg: ScheduledMessage, tallies: Optional[List[OptionTally]] = None) -> RenderedPayload:
    """
    Строит платформенно-независимое сообщение из записи.

    Функция чистая: одинаковые запись и подсчёт голосов дают одинаковый
    результат, поэтому перерисовка после голосования идемпотентна.
    """
    payload = RenderedPayload(title=msg.title or None, body=msg.text or None)

    if msg.type in MessageType.VOTABLE:
        if tallies is None:
            tallies = [
                OptionTally(index=i, label=label, count=0)
                for i, label in enumerate(msg.poll_options)
            ]
        payload.options = [
            OptionTally(
                index=t.index,
                label=t.label,
                count=t.count,
                voters=[] if msg.anonymous else list(t.voters),
            )
            for t in tallies
        ]
        payload.actions = [
            Action(label=f"{t.label} ({t.count})", action_id=vote_action_id(msg.id, t.index))
            for t in tallies
        ]
        total = sum(t.count for t in tallies)
        hint = "можно выбрать несколько" if msg.type == MessageType.POLL_MULTIPLE else "один вариант"
        payload.footer = f"Голосов: {total} · {hint}"
    elif msg.type == MessageType.HELP:
        payload.actions = [Action(label="🙋 Нужна помощь", action_id=help_action_id(msg.id))]
    elif msg.type == MessageType.POLL_OPEN:
        payload.footer = "Ответьте на это сообщение, чтобы поделиться мнением"

    return payload


def format_payload_text(payload: RenderedPayload, escape: Callable[[str], str] = None) -> str:
    """Текстовое представление сообщения; escape применяется к пользовательскому тексту."""
    escape = escape or (lambda s: s)
    lines = []
    if payload.title:
        lines.append(f"*{escape(payload.title)}*")
    if payload.body:
        lines.append(escape(payload.body))
    for option in payload.options:
        line = f"{escape(option.label)} — {option.count}"
        if option.voters:
            line += f": {escape(', '.join(option.voters))}"
        lines.append(line)
    if payload.footer:
        lines.append(f"_{escape(payload.footer)}_")
    return "\n".join(lines) or escape("⚠️ Пустое сообщение")

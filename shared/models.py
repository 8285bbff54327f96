# shared/models.py

from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any


class MessageType:
    CAPACITY = 'capacity'
    POLL_SINGLE = 'pollSingle'
    POLL_MULTIPLE = 'pollMultiple'
    POLL_OPEN = 'pollOpen'
    HELP = 'help'
    CUSTOM = 'custom'

    ALL = (CAPACITY, POLL_SINGLE, POLL_MULTIPLE, POLL_OPEN, HELP, CUSTOM)
    # Типы, у которых в сообщении есть кнопки голосования
    VOTABLE = (CAPACITY, POLL_SINGLE, POLL_MULTIPLE)
    POLL_LIKE = (CAPACITY, POLL_SINGLE, POLL_MULTIPLE, POLL_OPEN)


class Repeat:
    NONE = 'none'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'

    ALL = (NONE, DAILY, WEEKLY, MONTHLY)
    RECURRING = (DAILY, WEEKLY, MONTHLY)


class Status:
    ACTIVE = 'active'
    DONE = 'done'
    FAILED = 'failed'

    ALL = (ACTIVE, DONE, FAILED)


class PollMode:
    SINGLE = 'single'
    MULTIPLE = 'multiple'


DEFAULT_CAPACITY_OPTIONS = [
    "🟢 Plenty of capacity",
    "🟡 Some capacity",
    "🟠 At capacity",
    "🔴 Over capacity",
]

MIN_POLL_OPTIONS = 2
MAX_POLL_OPTIONS = 10


@dataclass
class ScheduledMessage:
    id: str
    type: str
    channel: str
    date: str  # YYYY-MM-DD в опорном часовом поясе
    time: str  # HH:MM в опорном часовом поясе
    repeat: str = Repeat.NONE
    title: Optional[str] = None
    text: Optional[str] = None  # текст или вопрос опроса
    alert_channels: List[str] = field(default_factory=list)
    poll_options: List[str] = field(default_factory=list)
    anonymous: bool = False
    user_id: Optional[str] = None
    status: str = Status.ACTIVE
    # Растёт при каждом создании/изменении; таймер старой ревизии ничего не отправляет
    revision: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_sent_at: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_recurring(self) -> bool:
        return self.repeat in Repeat.RECURRING

    @property
    def is_votable(self) -> bool:
        return self.type in MessageType.VOTABLE

    @property
    def poll_mode(self) -> str:
        if self.type == MessageType.POLL_MULTIPLE:
            return PollMode.MULTIPLE
        return PollMode.SINGLE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledMessage':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known['alert_channels'] = list(known.get('alert_channels') or [])
        known['poll_options'] = list(known.get('poll_options') or [])
        return cls(**known)

    def copy(self) -> 'ScheduledMessage':
        return ScheduledMessage.from_dict(self.to_dict())


@dataclass
class OptionTally:
    index: int
    label: str
    count: int
    voters: List[str] = field(default_factory=list)


@dataclass
class Action:
    label: str
    action_id: str


@dataclass
class RenderedPayload:
    """Сообщение, не зависящее от платформы, готовое к отправке через Messenger."""
    title: Optional[str]
    body: Optional[str]
    options: List[OptionTally] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    footer: Optional[str] = None


@dataclass
class SendResult:
    ok: bool
    message_ref: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PollSnapshot:
    """Копия записи на момент отправки: голоса живут дольше одноразового расписания."""
    poll_id: str
    message: ScheduledMessage
    channel: str
    message_ref: Optional[str] = None
    updated_at: Optional[str] = None


class InteractionKind:
    VOTE = 'vote'
    SUBMIT = 'submit'
    DELETE = 'delete'
    SELECT = 'select'
    HELP = 'help'


@dataclass
class InteractionEvent:
    kind: str  # InteractionKind
    actor_id: str
    payload_ref: str
    selection: Optional[Any] = None
    message_ref: Optional[str] = None  # сообщение, в котором нажата кнопка


@dataclass
class Notice:
    text: str
    ephemeral: bool = True

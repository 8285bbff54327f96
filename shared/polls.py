# shared/polls.py

import asyncio
import logging
from typing import Dict, List, Optional, Set

from shared.database import MessageStore
from shared.errors import InvalidOption
from shared.models import ScheduledMessage, OptionTally, PollMode

logger = logging.getLogger(__name__)


class PollVoteTracker:
    """
    Голоса опросов: номер варианта -> упорядоченный список проголосовавших.

    Состояние хранится в памяти и после каждого изменения сохраняется в
    MessageStore, поэтому переживает перезапуск. Переключения голосов одного
    опроса выполняются последовательно под asyncio.Lock этого опроса.
    """

    def __init__(self, store: MessageStore):
        self._store = store
        self._votes: Dict[str, Dict[int, List[str]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, poll_id: str) -> asyncio.Lock:
        lock = self._locks.get(poll_id)
        if lock is None:
            lock = self._locks[poll_id] = asyncio.Lock()
        return lock

    def _load(self, poll_id: str) -> Optional[Dict[int, List[str]]]:
        votes = self._votes.get(poll_id)
        if votes is None:
            votes = self._store.get_votes(poll_id)
            if votes is not None:
                self._votes[poll_id] = votes
        return votes

    def _poll_message(self, poll_id: str) -> Optional[ScheduledMessage]:
        snapshot = self._store.get_snapshot(poll_id)
        if snapshot is not None:
            return snapshot.message
        return self._store.get(poll_id)

    def ensure(self, poll_id: str, option_count: int) -> Dict[int, List[str]]:
        """Создаёт пустые множества для [0, option_count), существующие голоса не трогает."""
        votes = self._load(poll_id)
        created = votes is None
        if created:
            votes = self._votes[poll_id] = {}
        changed = created
        for idx in range(option_count):
            if idx not in votes:
                votes[idx] = []
                changed = True
        if changed:
            self._store.save_votes(poll_id, votes)
            logger.debug(f"Опрос {poll_id}: подготовлено {option_count} вариантов")
        return votes

    def open_round(self, msg: ScheduledMessage):
        """Перед отправкой: разовый опрос продолжает голосование, повторяющийся начинает заново."""
        if msg.is_recurring:
            self.reset(msg.id, len(msg.poll_options))
        else:
            self.ensure(msg.id, len(msg.poll_options))

    async def toggle_vote(
        self,
        poll_id: str,
        option_index: int,
        voter_id: str,
        mode: Optional[str] = None
    ) -> bool:
        """
        Переключает голос voter_id за вариант option_index.

        single: повторный голос за тот же вариант снимает его, голос за другой
        вариант переносит выбор. multiple: меняется только указанный вариант.
        Возвращает True, если после вызова голос учтён.
        """
        async with self._lock_for(poll_id):
            msg = self._poll_message(poll_id)
            votes = self._load(poll_id)
            if votes is None:
                if msg is None or not msg.is_votable:
                    raise InvalidOption("Опрос не найден или уже удалён")
                logger.warning(f"⚠️ Голоса опроса {poll_id} не найдены, создаём заново")
                votes = self.ensure(poll_id, len(msg.poll_options))

            option_count = len(msg.poll_options) if msg is not None and msg.poll_options else len(votes)
            if not isinstance(option_index, int) or not 0 <= option_index < option_count:
                raise InvalidOption(f"Вариант {option_index} вне диапазона 0..{option_count - 1}")
            if mode is None:
                mode = msg.poll_mode if msg is not None else PollMode.SINGLE
            votes.setdefault(option_index, [])

            voters = votes[option_index]
            if voter_id in voters:
                voters.remove(voter_id)
                voted = False
            else:
                if mode == PollMode.SINGLE:
                    for other in votes.values():
                        if voter_id in other:
                            other.remove(voter_id)
                voters.append(voter_id)
                voted = True

            self._store.save_votes(poll_id, votes)
            logger.info(
                f"🗳 Опрос {poll_id}: {voter_id} {'голосует за' if voted else 'снимает голос с'} "
                f"варианта {option_index}"
            )
            return voted

    def votes(self, poll_id: str) -> Dict[int, Set[str]]:
        votes = self._load(poll_id) or {}
        return {idx: set(voters) for idx, voters in votes.items()}

    def tally(self, poll_id: str, msg: Optional[ScheduledMessage] = None) -> List[OptionTally]:
        """Подсчёт по вариантам; msg задаёт подписи, иначе берётся снимок или запись."""
        msg = msg or self._poll_message(poll_id)
        votes = self._load(poll_id) or {}
        labels = list(msg.poll_options) if msg is not None else []
        count = max(len(labels), max(votes.keys(), default=-1) + 1)
        anonymous = bool(msg.anonymous) if msg is not None else False

        result = []
        for idx in range(count):
            voters = votes.get(idx, [])
            result.append(OptionTally(
                index=idx,
                label=labels[idx] if idx < len(labels) else f"Вариант {idx + 1}",
                count=len(voters),
                voters=[] if anonymous else list(voters),
            ))
        return result

    def reset(self, poll_id: str, option_count: Optional[int] = None):
        """Очищает все варианты опроса."""
        votes = self._load(poll_id) or {}
        count = option_count if option_count is not None else len(votes)
        self._votes[poll_id] = {idx: [] for idx in range(count)}
        self._store.save_votes(poll_id, self._votes[poll_id])
        logger.info(f"Опрос {poll_id}: голоса сброшены")

    def forget(self, poll_id: str):
        self._votes.pop(poll_id, None)
        self._locks.pop(poll_id, None)

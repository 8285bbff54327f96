# shared/database.py

import datetime
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Optional, List, Dict

from shared.errors import PersistenceError
from shared.models import ScheduledMessage, PollSnapshot, Status
from shared.utils import utc_now_iso

logger = logging.getLogger(__name__)


class MessageStore:
    """
    Хранилище запланированных сообщений, снимков опросов и голосов.

    Чтение идёт из зеркала в памяти, загруженного при старте; каждое изменение
    пишется в зеркало, затем в SQLite одной транзакцией. Если файл базы
    недоступен, хранилище работает только в памяти (degraded).
    """

    def __init__(self, path: Optional[str]):
        self.path = path
        self.degraded = False
        self._lock = threading.RLock()
        self._records: Dict[str, ScheduledMessage] = {}
        self._snapshots: Dict[str, PollSnapshot] = {}
        self._votes: Dict[str, Dict[int, List[str]]] = {}

        if not path:
            self.degraded = True
            logger.warning("⚠️ Путь к базе не задан, хранилище работает только в памяти")
            return
        try:
            self._init_db()
            self._load()
        except (sqlite3.Error, OSError) as e:
            self.degraded = True
            self._records.clear()
            self._snapshots.clear()
            self._votes.clear()
            logger.error(f"❌ База {path} недоступна ({e}). Работаем с пустым хранилищем в памяти.")

    # === Подключение ===

    @contextmanager
    def _connection(self):
        with self._lock:
            conn = sqlite3.connect(self.path, check_same_thread=False, timeout=20)
            conn.execute('PRAGMA busy_timeout = 20000;')
            try:
                yield conn
            finally:
                conn.close()

    def _init_db(self):
        with self._connection() as conn:
            conn.execute('PRAGMA journal_mode=WAL;')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS scheduled_messages (
                    id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL,
                    user_id TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT,
                    updated_at TEXT,
                    data TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS poll_snapshots (
                    poll_id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL,
                    message_ref TEXT,
                    data TEXT NOT NULL,
                    updated_at TEXT
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS poll_votes (
                    poll_id TEXT PRIMARY KEY,
                    votes TEXT NOT NULL,
                    updated_at TEXT
                )
            ''')
            conn.commit()
        logger.info(f"База данных {self.path} инициализирована.")

    def _load(self):
        with self._connection() as conn:
            for (data,) in conn.execute("SELECT data FROM scheduled_messages"):
                msg = ScheduledMessage.from_dict(json.loads(data))
                self._records[msg.id] = msg
            for poll_id, channel, message_ref, data, updated_at in conn.execute(
                "SELECT poll_id, channel, message_ref, data, updated_at FROM poll_snapshots"
            ):
                self._snapshots[poll_id] = PollSnapshot(
                    poll_id=poll_id,
                    message=ScheduledMessage.from_dict(json.loads(data)),
                    channel=channel,
                    message_ref=message_ref,
                    updated_at=updated_at,
                )
            for poll_id, votes in conn.execute("SELECT poll_id, votes FROM poll_votes"):
                self._votes[poll_id] = {int(k): list(v) for k, v in json.loads(votes).items()}
        logger.info(
            f"Загружено {len(self._records)} задач, {len(self._snapshots)} опросов из {self.path}"
        )

    def _write(self, operation: str, statements):
        """Выполняет пары (sql, params) одной транзакцией; ошибки I/O логируются, но не пробрасываются."""
        if self.degraded:
            return
        try:
            with self._connection() as conn:
                for sql, params in statements:
                    conn.execute(sql, params)
                conn.commit()
        except sqlite3.Error as e:
            error = PersistenceError(f"{operation}: {e}")
            logger.error(f"❌ Ошибка записи в базу, изменения только в памяти: {error}")

    # === Сообщения ===

    def save(self, msg: ScheduledMessage) -> ScheduledMessage:
        """Upsert по id. updated_at ставится всегда, created_at только при первой вставке."""
        with self._lock:
            now = utc_now_iso()
            existing = self._records.get(msg.id)
            if existing is not None and existing.created_at:
                msg.created_at = existing.created_at
            elif not msg.created_at:
                msg.created_at = now
            msg.updated_at = now
            stored = msg.copy()
            self._records[msg.id] = stored
            self._write(f"save {msg.id}", [(
                '''
                INSERT INTO scheduled_messages (id, channel, user_id, status, created_at, updated_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    channel = excluded.channel, user_id = excluded.user_id,
                    status = excluded.status, updated_at = excluded.updated_at,
                    data = excluded.data
                ''',
                (stored.id, stored.channel, stored.user_id, stored.status,
                 stored.created_at, stored.updated_at, json.dumps(stored.to_dict(), ensure_ascii=False))
            )])
            logger.debug(f"Задача {msg.id} сохранена (status={msg.status})")
            return msg

    def delete(self, msg_id: str, keep_poll: bool = False) -> bool:
        """
        Удаляет запись. Без keep_poll удаляются также снимок опроса и голоса.
        Отсутствие записи не ошибка.
        """
        with self._lock:
            existed = self._records.pop(msg_id, None) is not None
            statements = [("DELETE FROM scheduled_messages WHERE id = ?", (msg_id,))]
            if not keep_poll:
                self._snapshots.pop(msg_id, None)
                self._votes.pop(msg_id, None)
                statements += [
                    ("DELETE FROM poll_snapshots WHERE poll_id = ?", (msg_id,)),
                    ("DELETE FROM poll_votes WHERE poll_id = ?", (msg_id,)),
                ]
            self._write(f"delete {msg_id}", statements)
            if existed:
                logger.info(f"Задача {msg_id} удалена из хранилища")
            return existed

    def get(self, msg_id: str) -> Optional[ScheduledMessage]:
        with self._lock:
            msg = self._records.get(msg_id)
            return msg.copy() if msg else None

    def list_all(self) -> List[ScheduledMessage]:
        with self._lock:
            rows = [m.copy() for m in self._records.values()]
        return sorted(rows, key=lambda m: (m.date, m.time, m.id))

    def list_active(self) -> List[ScheduledMessage]:
        return [m for m in self.list_all() if m.status == Status.ACTIVE]

    def list_by_channel(self, channel: str) -> List[ScheduledMessage]:
        return [m for m in self.list_all() if m.channel == channel]

    def list_by_user(self, user_id: str) -> List[ScheduledMessage]:
        return [m for m in self.list_all() if m.user_id == str(user_id)]

    # === Опросы ===

    def get_snapshot(self, poll_id: str) -> Optional[PollSnapshot]:
        with self._lock:
            snap = self._snapshots.get(poll_id)
            if snap is None:
                return None
            return PollSnapshot(
                poll_id=snap.poll_id, message=snap.message.copy(), channel=snap.channel,
                message_ref=snap.message_ref, updated_at=snap.updated_at,
            )

    def save_snapshot(self, snapshot: PollSnapshot):
        with self._lock:
            snapshot.updated_at = utc_now_iso()
            self._snapshots[snapshot.poll_id] = PollSnapshot(
                poll_id=snapshot.poll_id, message=snapshot.message.copy(),
                channel=snapshot.channel, message_ref=snapshot.message_ref,
                updated_at=snapshot.updated_at,
            )
            self._write(f"snapshot {snapshot.poll_id}", [(
                '''
                INSERT INTO poll_snapshots (poll_id, channel, message_ref, data, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(poll_id) DO UPDATE SET
                    channel = excluded.channel, message_ref = excluded.message_ref,
                    data = excluded.data, updated_at = excluded.updated_at
                ''',
                (snapshot.poll_id, snapshot.channel, snapshot.message_ref,
                 json.dumps(snapshot.message.to_dict(), ensure_ascii=False), snapshot.updated_at)
            )])

    def delete_snapshot(self, poll_id: str):
        with self._lock:
            self._snapshots.pop(poll_id, None)
            self._votes.pop(poll_id, None)
            self._write(f"delete snapshot {poll_id}", [
                ("DELETE FROM poll_snapshots WHERE poll_id = ?", (poll_id,)),
                ("DELETE FROM poll_votes WHERE poll_id = ?", (poll_id,)),
            ])

    def get_votes(self, poll_id: str) -> Optional[Dict[int, List[str]]]:
        with self._lock:
            votes = self._votes.get(poll_id)
            if votes is None:
                return None
            return {idx: list(voters) for idx, voters in votes.items()}

    def save_votes(self, poll_id: str, votes: Dict[int, List[str]]):
        with self._lock:
            self._votes[poll_id] = {idx: list(voters) for idx, voters in votes.items()}
            payload = json.dumps({str(k): v for k, v in sorted(votes.items())}, ensure_ascii=False)
            self._write(f"votes {poll_id}", [(
                '''
                INSERT INTO poll_votes (poll_id, votes, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(poll_id) DO UPDATE SET votes = excluded.votes, updated_at = excluded.updated_at
                ''',
                (poll_id, payload, utc_now_iso())
            )])

    def cleanup_old_snapshots(self, max_age_days: int = 30) -> List[str]:
        """
        Удаляет снимки опросов (и голоса), чьих записей уже нет и которые
        не менялись max_age_days дней. Возвращает их id.
        """
        cutoff = (
            datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=max_age_days)
        ).isoformat()
        with self._lock:
            stale = [
                poll_id for poll_id, snap in self._snapshots.items()
                if poll_id not in self._records and (snap.updated_at or "") < cutoff
            ]
            for poll_id in stale:
                self.delete_snapshot(poll_id)
        if stale:
            logger.info(f"Очистка: удалено {len(stale)} старых опросов")
        return stale

    def cleanup_failed_records(self, max_age_days: int = 30) -> List[str]:
        """Удаляет записи со статусом failed, не менявшиеся max_age_days дней. Возвращает их id."""
        cutoff = (
            datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=max_age_days)
        ).isoformat()
        with self._lock:
            stale = [
                msg_id for msg_id, msg in self._records.items()
                if msg.status == Status.FAILED and (msg.updated_at or "") < cutoff
            ]
            for msg_id in stale:
                self.delete(msg_id)
        if stale:
            logger.info(f"Очистка: удалено {len(stale)} неудачных задач")
        return stale

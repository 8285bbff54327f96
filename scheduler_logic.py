# scheduler_logic.py
import asyncio
import datetime
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from prometheus_client import Counter

from config import DELIVERY_TIMEOUT_SECONDS, SESSION_TTL_SECONDS, SNAPSHOT_RETENTION_DAYS
from shared.database import MessageStore
from shared.errors import ValidationError, DeliveryError, InvalidOption
from shared.messaging import Messenger
from shared.models import (
    ScheduledMessage, PollSnapshot, RenderedPayload, InteractionEvent, InteractionKind,
    Notice, MessageType, Repeat, Status
)
from shared.polls import PollVoteTracker
from shared.rendering import render_payload
from shared.sessions import SessionStore
from shared.triggers import build_trigger
from shared.utils import (
    get_timezone, now_local, schedule_instant, is_past, utc_now_iso,
    generate_message_id, apply_defaults, validate_message
)

logger = logging.getLogger(__name__)

# === Метрики Prometheus ===
TASKS_CREATED = Counter('channel_scheduler_tasks_created_total', 'Total scheduled messages created')
TASKS_DELETED = Counter('channel_scheduler_tasks_deleted_total', 'Total scheduled messages deleted')
DELIVERIES = Counter('channel_scheduler_deliveries_total', 'Delivery attempts', ['result'])
VOTES = Counter('channel_scheduler_votes_total', 'Vote toggles', ['result'])

HOUSEKEEPING_JOB_ID = '__housekeeping__'


class ScheduleEngine:
    """
    Один таймер APScheduler на каждую активную запись; id задачи равен id записи.

    Таймеры производны от хранилища: rehydrate_all восстанавливает их
    после перезапуска из MessageStore.list_active().
    """

    def __init__(
        self,
        store: MessageStore,
        deliver: Callable[[str], Awaitable[bool]],
        scheduler: Optional[AsyncIOScheduler] = None,
        tz=None,
        misfire_grace_time: int = 300
    ):
        self._store = store
        self._deliver = deliver
        self.tz = tz or get_timezone()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.tz)
        self.misfire_grace_time = misfire_grace_time
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, msg_id: str) -> asyncio.Lock:
        """Замок записи: замена, отмена и доставка одного id не пересекаются."""
        lock = self._locks.get(msg_id)
        if lock is None:
            lock = self._locks[msg_id] = asyncio.Lock()
        return lock

    def register_or_replace(self, msg: ScheduledMessage, now: Optional[datetime.datetime] = None) -> bool:
        """
        Заменяет таймер записи новым, рассчитанным по (date, time, repeat).

        Для repeat=none в прошлом таймер не создаётся: запись помечается
        failed и бросается ValidationError.
        """
        self.cancel(msg.id)

        if not (msg.channel or "").strip():
            raise ValidationError("Не указан канал для отправки")
        if msg.status != Status.ACTIVE:
            logger.info(f"Задача {msg.id} не активна ({msg.status}), таймер не создаётся")
            return False

        if msg.repeat == Repeat.NONE:
            instant = schedule_instant(msg.date, msg.time, self.tz)
            if is_past(instant, now or now_local(self.tz)):
                msg.status = Status.FAILED
                msg.last_error = f"Время {msg.date} {msg.time} уже прошло"
                self._store.save(msg)
                logger.error(f"❌ Задача {msg.id}: время {msg.date} {msg.time} в прошлом, не планируем")
                raise ValidationError(msg.last_error)

        trigger = build_trigger(msg, self.tz)
        self.scheduler.add_job(
            self._deliver,
            trigger=trigger,
            args=[msg.id, msg.revision],
            id=msg.id,
            name=f"{msg.type}:{msg.channel}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=self.misfire_grace_time,
        )
        logger.info(f"⏰ Задача {msg.id} запланирована: {trigger}")
        return True

    def cancel(self, msg_id: str) -> bool:
        """Снимает таймер; если его нет или он уже отработал, ничего не делает."""
        if self.scheduler.get_job(msg_id) is None:
            return False
        self.scheduler.remove_job(msg_id)
        logger.info(f"⏹️ Таймер задачи {msg_id} снят")
        return True

    def forget_lock(self, msg_id: str):
        self._locks.pop(msg_id, None)

    def rehydrate_all(self, records: List[ScheduledMessage], now: Optional[datetime.datetime] = None) -> int:
        """
        Восстанавливает таймеры после старта. Повторяющиеся записи планируются
        всегда; разовые, время которых прошло, помечаются failed и пропускаются.
        """
        now = now or now_local(self.tz)
        registered = 0
        for msg in records:
            if msg.status != Status.ACTIVE:
                continue
            try:
                if not msg.is_recurring and is_past(schedule_instant(msg.date, msg.time, self.tz), now):
                    msg.status = Status.FAILED
                    msg.last_error = "Время отправки прошло, пока бот был остановлен"
                    self._store.save(msg)
                    logger.warning(f"⚠️ Разовая задача {msg.id} пропущена: {msg.date} {msg.time} в прошлом")
                    continue
                if self.register_or_replace(msg, now=now):
                    registered += 1
            except ValidationError as e:
                logger.error(f"❌ Задача {msg.id} не восстановлена: {e}")
        logger.info(f"🔄 Восстановлено {registered} таймеров из {len(records)} записей")
        return registered

    def next_fire_time(self, msg_id: str, now: Optional[datetime.datetime] = None) -> Optional[datetime.datetime]:
        job = self.scheduler.get_job(msg_id)
        if job is None:
            return None
        return job.trigger.get_next_fire_time(None, now or now_local(self.tz))

    def job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs() if job.id != HOUSEKEEPING_JOB_ID]

    def start(self, housekeeping: Optional[Callable[[], object]] = None):
        if housekeeping is not None:
            self.scheduler.add_job(
                housekeeping,
                trigger=CronTrigger(hour=3, minute=30, timezone=self.tz),
                id=HOUSEKEEPING_JOB_ID,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info("🚀 Планировщик запущен")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Планировщик остановлен")


class Deliverer:
    """
    Колбэк таймера: отрисовывает запись и отправляет её через Messenger.

    Ошибки не выходят за пределы deliver(): они записываются в запись.
    Разовая запись удаляется после любой попытки, повторяющаяся остаётся active.
    """

    def __init__(
        self,
        store: MessageStore,
        tracker: PollVoteTracker,
        messenger: Messenger,
        timeout: float = DELIVERY_TIMEOUT_SECONDS
    ):
        self._store = store
        self._tracker = tracker
        self._messenger = messenger
        self.timeout = timeout
        self.engine: Optional[ScheduleEngine] = None

    async def deliver(self, msg_id: str, revision: Optional[int] = None) -> bool:
        """revision задаётся таймером; внеочередная отправка передаёт None."""
        logger.info(f"🔄 Запуск задачи {msg_id}")
        async with self.engine.lock_for(msg_id):
            msg = self._store.get(msg_id)
            if msg is None:
                logger.warning(f"⚠️ Задача {msg_id} не найдена, пропускаем")
                return False
            if msg.status != Status.ACTIVE:
                logger.info(f"Задача {msg_id} не активна ({msg.status}), пропускаем")
                return False
            if revision is not None and msg.revision != revision:
                logger.info(
                    f"Таймер задачи {msg_id} устарел (ревизия {revision}, в хранилище {msg.revision}), пропускаем"
                )
                return False

            ok, message_ref, error = await self._attempt(msg)
            DELIVERIES.labels(result='ok' if ok else 'failed').inc()
            try:
                self._finish(msg, ok, message_ref, error)
            except Exception as e:
                logger.exception(f"❌ Ошибка при завершении задачи {msg_id}: {e}")
        if not msg.is_recurring:
            self.engine.forget_lock(msg_id)

        if not ok and msg.user_id:
            await self._notify_author(msg, error)
        return ok

    async def _attempt(self, msg: ScheduledMessage) -> Tuple[bool, Optional[str], Optional[str]]:
        try:
            tallies = None
            if msg.is_votable:
                self._tracker.open_round(msg)
                tallies = self._tracker.tally(msg.id, msg)
            payload = render_payload(msg, tallies)
            result = await asyncio.wait_for(
                self._messenger.send_message(msg.channel, payload), timeout=self.timeout
            )
            if not result.ok:
                raise DeliveryError(result.error or "Платформа отклонила сообщение")
            return True, result.message_ref, None
        except DeliveryError as e:
            logger.error(f"❌ Задача {msg.id} не доставлена в {msg.channel}: {e}")
            return False, None, str(e)
        except asyncio.TimeoutError:
            logger.error(f"❌ Задача {msg.id}: таймаут отправки ({self.timeout} с)")
            return False, None, f"Таймаут отправки ({self.timeout} с)"
        except Exception as e:
            logger.exception(f"❌ Неожиданная ошибка при отправке задачи {msg.id}: {e}")
            return False, None, f"{type(e).__name__}: {e}"

    def _finish(self, msg: ScheduledMessage, ok: bool, message_ref: Optional[str], error: Optional[str]):
        if ok:
            msg.last_sent_at = utc_now_iso()
            msg.last_error = None
            if msg.is_votable or msg.type == MessageType.HELP:
                self._store.save_snapshot(PollSnapshot(
                    poll_id=msg.id, message=msg, channel=msg.channel, message_ref=message_ref
                ))
        else:
            msg.last_error = error

        if msg.is_recurring:
            self._store.save(msg)
            logger.info(f"✅ Задача {msg.id} ({msg.repeat}) обработана, следующая отправка по расписанию")
            return

        if not ok:
            msg.status = Status.FAILED
            self._store.save(msg)
        self._store.delete(msg.id, keep_poll=True)
        self.engine.cancel(msg.id)
        logger.info(f"⏹️ Разовая задача {msg.id} {'выполнена' if ok else 'завершилась ошибкой'} и удалена")

    async def _notify_author(self, msg: ScheduledMessage, error: Optional[str]):
        try:
            await asyncio.wait_for(
                self._messenger.notify(msg.user_id, f"❌ Не удалось отправить сообщение {msg.id} в {msg.channel}: {error}"),
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning(f"⚠️ Не удалось сообщить автору задачи {msg.id}: {e}")

    async def rerender(self, poll_id: str) -> bool:
        """Обновляет отправленный опрос по текущему подсчёту голосов."""
        snapshot = self._store.get_snapshot(poll_id)
        if snapshot is None or not snapshot.message_ref:
            logger.debug(f"Опрос {poll_id}: нет отправленного сообщения для обновления")
            return False
        payload = render_payload(snapshot.message, self._tracker.tally(poll_id, snapshot.message))
        try:
            result = await asyncio.wait_for(
                self._messenger.update_message(snapshot.channel, snapshot.message_ref, payload),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Опрос {poll_id}: таймаут обновления сообщения")
            return False
        return result.ok


class SchedulerCore:
    """Связывает хранилище, трекер голосов, движок расписаний и доставку."""

    def __init__(
        self,
        store: MessageStore,
        messenger: Messenger,
        sessions: Optional[SessionStore] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        tz=None,
        timeout: float = DELIVERY_TIMEOUT_SECONDS
    ):
        self.store = store
        self.messenger = messenger
        self.tz = tz or get_timezone()
        self.sessions = sessions or SessionStore(SESSION_TTL_SECONDS)
        self.tracker = PollVoteTracker(store)
        self.deliverer = Deliverer(store, self.tracker, messenger, timeout=timeout)
        self.engine = ScheduleEngine(store, self.deliverer.deliver, scheduler=scheduler, tz=self.tz)
        self.deliverer.engine = self.engine

    # === Жизненный цикл ===

    def start(self) -> int:
        registered = self.engine.rehydrate_all(self.store.list_active())
        self.engine.start(self.housekeeping)
        return registered

    def shutdown(self):
        self.engine.shutdown()

    async def housekeeping(self):
        sessions = self.sessions.purge_expired()
        polls = self.store.cleanup_old_snapshots(SNAPSHOT_RETENTION_DAYS)
        for poll_id in polls:
            self.tracker.forget(poll_id)
        failed = self.store.cleanup_failed_records(SNAPSHOT_RETENTION_DAYS)
        for msg_id in failed:
            self.tracker.forget(msg_id)
            self.engine.forget_lock(msg_id)
        logger.info(f"🧹 Очистка: {sessions} черновиков, {len(polls)} опросов, {len(failed)} неудачных задач")

    # === Записи ===

    def build_message(self, draft: dict, user_id=None) -> ScheduledMessage:
        """Собирает запись из черновика формы."""
        now = now_local(self.tz)
        return ScheduledMessage(
            id=draft.get('id') or generate_message_id(),
            type=draft.get('type') or MessageType.CUSTOM,
            channel=str(draft.get('channel') or ""),
            date=draft.get('date') or now.strftime('%Y-%m-%d'),
            time=draft.get('time') or now.strftime('%H:%M'),
            repeat=draft.get('repeat') or Repeat.NONE,
            title=draft.get('title'),
            text=draft.get('text'),
            alert_channels=list(draft.get('alert_channels') or []),
            poll_options=list(draft.get('poll_options') or []),
            anonymous=bool(draft.get('anonymous', False)),
            user_id=str(user_id) if user_id is not None else draft.get('user_id'),
        )

    def _bump_revision(self, msg: ScheduledMessage):
        stored = self.store.get(msg.id)
        msg.revision = max(msg.revision, stored.revision if stored else 0) + 1

    async def _check_channel(self, msg: ScheduledMessage):
        try:
            accessible = await asyncio.wait_for(
                self.messenger.verify_channel_accessible(msg.channel), timeout=self.deliverer.timeout
            )
        except asyncio.TimeoutError:
            accessible = False
        if not accessible:
            raise ValidationError(f"Бот не может писать в канал {msg.channel}")

    async def create(self, msg: ScheduledMessage, verify_channel: bool = True) -> ScheduledMessage:
        """Проверяет, сохраняет и планирует запись. ValidationError бросается до записи в хранилище."""
        apply_defaults(msg)
        validate_message(msg, now=now_local(self.tz), tz=self.tz)
        if verify_channel:
            await self._check_channel(msg)
        msg.status = Status.ACTIVE
        msg.last_error = None
        async with self.engine.lock_for(msg.id):
            self._bump_revision(msg)
            self.store.save(msg)
            self.engine.register_or_replace(msg)
        TASKS_CREATED.inc()
        logger.info(f"Создана задача {msg.id} ({msg.type}, {msg.repeat}) для канала {msg.channel}")
        return msg

    async def update(self, msg: ScheduledMessage, verify_channel: bool = True) -> ScheduledMessage:
        if self.store.get(msg.id) is None:
            raise ValidationError(f"Задача {msg.id} не найдена")
        apply_defaults(msg)
        validate_message(msg, now=now_local(self.tz), tz=self.tz)
        if verify_channel:
            await self._check_channel(msg)
        msg.status = Status.ACTIVE
        async with self.engine.lock_for(msg.id):
            self._bump_revision(msg)
            self.store.save(msg)
            self.engine.register_or_replace(msg)
        logger.info(f"Задача {msg.id} обновлена")
        return msg

    async def delete(self, msg_id: str) -> bool:
        async with self.engine.lock_for(msg_id):
            self.engine.cancel(msg_id)
            existed = self.store.delete(msg_id)
            self.tracker.forget(msg_id)
        self.engine.forget_lock(msg_id)
        if existed:
            TASKS_DELETED.inc()
        return existed

    async def send_now(self, msg: ScheduledMessage, verify_channel: bool = True) -> bool:
        """Немедленная разовая отправка новой записи."""
        msg.repeat = Repeat.NONE
        apply_defaults(msg)
        validate_message(msg, check_past=False, tz=self.tz)
        if verify_channel:
            await self._check_channel(msg)
        msg.status = Status.ACTIVE
        self.store.save(msg)
        return await self.deliverer.deliver(msg.id)

    async def publish_now(self, msg_id: str) -> bool:
        """Внеочередная отправка существующей записи; разовая после этого удаляется."""
        if self.store.get(msg_id) is None:
            raise ValidationError(f"Задача {msg_id} не найдена")
        return await self.deliverer.deliver(msg_id)

    # === Взаимодействия ===

    async def handle_interaction(self, event: InteractionEvent) -> Notice:
        handlers = {
            InteractionKind.VOTE: self._on_vote,
            InteractionKind.HELP: self._on_help,
            InteractionKind.DELETE: self._on_delete,
            InteractionKind.SELECT: self._on_select,
            InteractionKind.SUBMIT: self._on_submit,
        }
        handler = handlers.get(event.kind)
        if handler is None:
            return Notice(f"⚠️ Неизвестное действие: {event.kind}")
        try:
            return await handler(event)
        except InvalidOption as e:
            return Notice(f"⚠️ {e}")
        except ValidationError as e:
            return Notice(f"❌ {e}")

    async def _on_vote(self, event: InteractionEvent) -> Notice:
        try:
            option_index = int(event.selection)
        except (TypeError, ValueError):
            VOTES.labels(result='invalid').inc()
            raise InvalidOption(f"Неверный вариант: {event.selection}")
        snapshot = self.store.get_snapshot(event.payload_ref)
        if event.message_ref and snapshot is not None and snapshot.message_ref != str(event.message_ref):
            # Повторяющийся опрос: голосовать можно только в последнем отправленном сообщении
            VOTES.labels(result='invalid').inc()
            raise InvalidOption("Этот опрос уже закрыт, голосуйте в последнем сообщении")
        try:
            voted = await self.tracker.toggle_vote(event.payload_ref, option_index, str(event.actor_id))
        except InvalidOption:
            VOTES.labels(result='invalid').inc()
            raise
        VOTES.labels(result='voted' if voted else 'unvoted').inc()
        await self.deliverer.rerender(event.payload_ref)
        return Notice("✅ Голос учтён" if voted else "↩️ Голос отменён")

    async def _on_help(self, event: InteractionEvent) -> Notice:
        snapshot = self.store.get_snapshot(event.payload_ref)
        msg = snapshot.message if snapshot is not None else self.store.get(event.payload_ref)
        if msg is None or msg.type != MessageType.HELP:
            raise InvalidOption("Запрос помощи не найден")
        payload = RenderedPayload(
            title="🆘 Запрос помощи",
            body=f"{event.actor_id} просит помощи в {msg.channel}: {msg.title or msg.text or ''}".strip(),
        )
        sent = 0
        for channel in msg.alert_channels:
            try:
                result = await asyncio.wait_for(
                    self.messenger.send_message(channel, payload), timeout=self.deliverer.timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ Таймаут оповещения в {channel}")
                continue
            if result.ok:
                sent += 1
        if not sent:
            return Notice("❌ Не удалось отправить запрос помощи")
        return Notice("🙋 Запрос помощи отправлен")

    async def _on_delete(self, event: InteractionEvent) -> Notice:
        if await self.delete(event.payload_ref):
            return Notice(f"🗑️ Задача {event.payload_ref} удалена")
        return Notice(f"Задача {event.payload_ref} не найдена")

    async def _on_select(self, event: InteractionEvent) -> Notice:
        self.sessions.update(event.actor_id, **{event.payload_ref: event.selection})
        return Notice("Сохранено")

    async def _on_submit(self, event: InteractionEvent) -> Notice:
        draft = self.sessions.pop(event.actor_id)
        if draft is None:
            return Notice("⚠️ Черновик не найден или истёк, начните заново")
        msg = self.build_message(draft, user_id=event.actor_id)
        try:
            if draft.get('send_now'):
                ok = await self.send_now(msg)
                return Notice("✅ Сообщение отправлено" if ok else "❌ Сообщение не отправлено")
            await self.create(msg)
        except ValidationError:
            self.sessions.start(event.actor_id, **draft)
            raise
        return Notice(f"✅ Задача создана! ID: {msg.id}")

    # === Состояние ===

    def health_check(self) -> dict:
        try:
            tasks = self.store.list_active()
            repeat_stats = {repeat: 0 for repeat in Repeat.ALL}
            for task in tasks:
                repeat_stats[task.repeat] = repeat_stats.get(task.repeat, 0) + 1

            upcoming = []
            for task in tasks:
                next_time = self.engine.next_fire_time(task.id)
                if next_time is not None:
                    upcoming.append((next_time, task))
            upcoming.sort(key=lambda pair: pair[0])

            return {
                "status": "ok",
                "degraded_storage": self.store.degraded,
                "active_tasks_count": len(tasks),
                "scheduled_jobs_count": len(self.engine.job_ids()),
                "repeat_stats": repeat_stats,
                "next_tasks": [
                    {
                        "id": task.id,
                        "channel": task.channel,
                        "type": task.type,
                        "repeat": task.repeat,
                        "next_run_at": next_time.isoformat(),
                    }
                    for next_time, task in upcoming[:5]
                ],
            }
        except Exception as e:
            logger.error(f"❌ Ошибка проверки здоровья планировщика: {e}")
            return {"status": "error", "error": str(e)}

# shared/sessions.py

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class SessionStore:
    """Черновики формы по пользователям; неактивные черновики истекают через ttl_s секунд."""

    def __init__(self, ttl_s: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, user_id) -> Optional[Dict[str, Any]]:
        key = str(user_id)
        now = self._clock()
        with self._lock:
            item = self._items.get(key)
            if not item:
                return None
            expires_at, draft = item
            if expires_at <= now:
                self._items.pop(key, None)
                return None
            return draft

    def start(self, user_id, **fields) -> Dict[str, Any]:
        draft = dict(fields)
        with self._lock:
            self._items[str(user_id)] = (self._clock() + self.ttl_s, draft)
        return draft

    def update(self, user_id, **fields) -> Dict[str, Any]:
        """Обновляет поля черновика и продлевает его жизнь; создаёт черновик при отсутствии."""
        draft = self.get(user_id)
        if draft is None:
            return self.start(user_id, **fields)
        draft.update(fields)
        with self._lock:
            self._items[str(user_id)] = (self._clock() + self.ttl_s, draft)
        return draft

    def pop(self, user_id) -> Optional[Dict[str, Any]]:
        draft = self.get(user_id)
        with self._lock:
            self._items.pop(str(user_id), None)
        return draft

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._items.items() if expires_at <= now]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._items)

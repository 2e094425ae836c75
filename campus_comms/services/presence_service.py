from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from campus_comms.config import settings
from campus_comms.core.time_provider import TimeProvider, default_time_provider
from campus_comms.schemas import UserRef


logger = logging.getLogger(__name__)


class PresenceTracker:
    """Best-effort typing and online indicators. Nothing here may fail a send."""

    def __init__(
        self,
        *,
        typing_ttl_seconds: int | None = None,
        presence_ttl_seconds: int | None = None,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.typing_ttl = timedelta(seconds=typing_ttl_seconds or settings.typing_indicator_ttl_seconds)
        self.presence_ttl = timedelta(seconds=presence_ttl_seconds or settings.presence_ttl_seconds)
        self.time_provider = time_provider
        self._lock = threading.Lock()
        self._typing: dict[int, dict[str, datetime]] = {}
        self._online: dict[str, datetime] = {}

    @staticmethod
    def _key(user: UserRef) -> str:
        return f'{user.role.value}:{int(user.id)}'

    def set_typing(self, conversation_id: int, user: UserRef, is_typing: bool = True) -> None:
        try:
            now = self.time_provider.utcnow()
            with self._lock:
                self._prune_typing(now)
                typists = self._typing.setdefault(int(conversation_id), {})
                if is_typing:
                    typists[self._key(user)] = now + self.typing_ttl
                else:
                    typists.pop(self._key(user), None)
                    if not typists:
                        del self._typing[int(conversation_id)]
        except Exception:
            logger.exception('typing_indicator_failed conversation_id=%s', conversation_id)

    def get_typing(self, conversation_id: int, *, exclude: UserRef | None = None) -> list[str]:
        try:
            now = self.time_provider.utcnow()
            with self._lock:
                typists = self._typing.get(int(conversation_id), {})
                for key in [key for key, expires in typists.items() if expires <= now]:
                    del typists[key]
                if not typists:
                    self._typing.pop(int(conversation_id), None)
                skip = self._key(exclude) if exclude is not None else None
                return sorted(key for key in typists if key != skip)
        except Exception:
            logger.exception('typing_lookup_failed conversation_id=%s', conversation_id)
            return []

    def _prune_typing(self, now: datetime) -> None:
        # Caller holds the lock.
        for conversation_id in list(self._typing):
            typists = {key: expires for key, expires in self._typing[conversation_id].items() if expires > now}
            if typists:
                self._typing[conversation_id] = typists
            else:
                del self._typing[conversation_id]

    def _prune_online(self, now: datetime) -> None:
        for key in [key for key, expires in self._online.items() if expires <= now]:
            del self._online[key]

    def heartbeat(self, user: UserRef) -> None:
        try:
            now = self.time_provider.utcnow()
            with self._lock:
                self._prune_online(now)
                self._online[self._key(user)] = now + self.presence_ttl
        except Exception:
            logger.exception('presence_heartbeat_failed user=%s:%s', user.role, user.id)

    def is_online(self, user: UserRef) -> bool:
        try:
            now = self.time_provider.utcnow()
            with self._lock:
                self._prune_online(now)
                return self._key(user) in self._online
        except Exception:
            logger.exception('presence_lookup_failed user=%s:%s', user.role, user.id)
            return False


presence_tracker = PresenceTracker()

"""Per-session client state: cached identity and the single-flight refresh."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

RefreshCall = Callable[[], Awaitable[bool]]


class ClientSession:
    """State that belongs to one logged-in browser session (one tab).

    A client normally owns a private instance. Clients that must share one
    (several handles on the same tab) look it up by key through
    :meth:`for_key` and hand it back with :meth:`release`; the entry is
    dropped when the last holder releases it. Two sessions never see each
    other's cached user.
    """

    _registry: Dict[str, "ClientSession"] = {}
    _refs: Dict[str, int] = {}
    _registry_lock = threading.Lock()

    def __init__(self, key: str) -> None:
        self.key = key
        self.cached_user: Optional[Dict[str, Any]] = None
        self.csrf_token: Optional[str] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @classmethod
    def for_key(cls, key: str) -> "ClientSession":
        with cls._registry_lock:
            session = cls._registry.get(key)
            if session is None:
                session = cls(key)
                cls._registry[key] = session
            cls._refs[key] = cls._refs.get(key, 0) + 1
            return session

    @classmethod
    def release(cls, key: str) -> None:
        with cls._registry_lock:
            refs = cls._refs.get(key, 0) - 1
            if refs > 0:
                cls._refs[key] = refs
                return
            cls._refs.pop(key, None)
            cls._registry.pop(key, None)

    @classmethod
    def registered(cls, key: str) -> bool:
        with cls._registry_lock:
            return key in cls._registry

    @classmethod
    def reset_all(cls) -> None:
        with cls._registry_lock:
            cls._registry.clear()
            cls._refs.clear()

    def set_cached_user(self, user: Optional[Dict[str, Any]], csrf_token: Optional[str] = None) -> None:
        self.cached_user = user
        if csrf_token:
            self.csrf_token = csrf_token

    def clear_cached_user(self) -> None:
        self.cached_user = None
        self.csrf_token = None

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def refresh(self, do_refresh: RefreshCall) -> bool:
        """
        Run ``do_refresh`` unless a refresh is already in flight, in which
        case wait for that one.

        Waiters are shielded: cancelling one caller leaves the shared refresh
        running for everybody else.
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_refresh(do_refresh))
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _run_refresh(self, do_refresh: RefreshCall) -> bool:
        self.refresh_count += 1
        try:
            return await do_refresh()
        except Exception:
            logger.exception("Token refresh failed session=%s", self.key)
            return False
        finally:
            self._refresh_task = None

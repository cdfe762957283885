"""Idle-session monitor with cross-instance logout propagation.

Every instance (a browser tab in the web client) writes its last activity to
a shared :class:`ActivityStorage`. Deadlines are always computed from the
shared value, so activity in one instance keeps all of them alive. When one
instance logs out it removes the ``session_active`` key; the others receive
the change event and mirror the logout without calling the server, which has
already revoked the refresh token.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from tourney.config import settings

logger = logging.getLogger(__name__)

LAST_ACTIVITY_KEY = "last_activity_timestamp"
SESSION_ACTIVE_KEY = "session_active"


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class ActivityStorage:
    """Key/value store whose writes are broadcast to the other subscribers.

    Mirrors browser ``localStorage`` semantics: the writer is not notified of
    its own change, and writing an unchanged value produces no event.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, origin: Optional[int] = None) -> None:
        raise NotImplementedError

    def remove(self, key: str, origin: Optional[int] = None) -> None:
        raise NotImplementedError

    def subscribe(self, listener: StorageListener) -> int:
        """Register ``listener``; returns the id to pass as ``origin``."""
        raise NotImplementedError

    def unsubscribe(self, subscription_id: int) -> None:
        raise NotImplementedError


class InMemoryActivityStorage(ActivityStorage):
    """Process-local implementation of :class:`ActivityStorage`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}
        self._listeners: Dict[int, StorageListener] = {}
        self._ids = itertools.count(1)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str, origin: Optional[int] = None) -> None:
        with self._lock:
            old = self._data.get(key)
            self._data[key] = value
        if old != value:
            self._broadcast(StorageEvent(key, old, value), origin)

    def remove(self, key: str, origin: Optional[int] = None) -> None:
        with self._lock:
            old = self._data.pop(key, None)
        if old is not None:
            self._broadcast(StorageEvent(key, old, None), origin)

    def subscribe(self, listener: StorageListener) -> int:
        with self._lock:
            subscription_id = next(self._ids)
            self._listeners[subscription_id] = listener
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> None:
        with self._lock:
            self._listeners.pop(subscription_id, None)

    def _broadcast(self, event: StorageEvent, origin: Optional[int]) -> None:
        with self._lock:
            targets: List[Tuple[int, StorageListener]] = list(self._listeners.items())
        for subscription_id, listener in targets:
            if subscription_id != origin:
                listener(event)


def clear_session_data(storage: ActivityStorage, origin: Optional[int] = None) -> None:
    """Remove the shared session keys; every other subscriber mirrors the logout."""
    storage.remove(LAST_ACTIVITY_KEY, origin=origin)
    storage.remove(SESSION_ACTIVE_KEY, origin=origin)


def has_active_session(storage: ActivityStorage) -> bool:
    return storage.get(SESSION_ACTIVE_KEY) == "true"


def session_remaining_time(
    storage: ActivityStorage,
    timeout: Optional[float] = None,
    clock: Callable[[], float] = time.time,
) -> float:
    """Seconds left before the shared idle deadline; 0 without recorded activity."""
    raw = storage.get(LAST_ACTIVITY_KEY)
    if not raw:
        return 0.0
    try:
        last = int(raw) / 1000.0
    except ValueError:
        return 0.0
    if timeout is None:
        timeout = settings.IDLE_TIMEOUT_MINUTES * 60
    return max(last + timeout - clock(), 0.0)


class IdleState(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"


class IdleMonitor:
    """
    Tracks user activity and logs the session out after ``timeout`` seconds
    of inactivity.

    Args:
        storage: Shared activity storage
        client: SecureClient used for the server-side logout; its cached
            identity is cleared on any logout
        timeout: Idle timeout in seconds
        warning_time: Seconds before the timeout at which ``on_warning`` fires;
            ignored unless ``0 < warning_time < timeout``
        on_warning: Called with the remaining seconds
        on_idle: Called once before an idle logout
        navigate: Called with the login path after logout
        clock: Wall-clock source in seconds
    """

    def __init__(
        self,
        storage: ActivityStorage,
        *,
        client=None,
        timeout: Optional[float] = None,
        warning_time: Optional[float] = None,
        on_warning: Optional[Callable[[float], None]] = None,
        on_idle: Optional[Callable[[], None]] = None,
        navigate: Optional[Callable[[str], None]] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.client = client
        self.timeout = float(timeout if timeout is not None else settings.IDLE_TIMEOUT_MINUTES * 60)
        self.warning_time = float(
            warning_time if warning_time is not None else settings.IDLE_WARNING_MINUTES * 60
        )
        self.on_warning = on_warning
        self.on_idle = on_idle
        self.navigate = navigate
        self.enabled = enabled
        self.clock = clock

        self.state = IdleState.ACTIVE
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[int] = None
        self._warning_handle: Optional[asyncio.TimerHandle] = None
        self._logout_handle: Optional[asyncio.TimerHandle] = None
        self._logout_task: Optional[asyncio.Task] = None

        # Manual logouts through the client then reach the siblings too.
        if client is not None and getattr(client, "activity_storage", False) is None:
            client.activity_storage = storage

        if on_warning and not 0 < self.warning_time < self.timeout:
            logger.warning(
                "Idle warning disabled: warning_time=%s must be below timeout=%s",
                self.warning_time,
                self.timeout,
            )

    @property
    def warning_enabled(self) -> bool:
        return self.on_warning is not None and 0 < self.warning_time < self.timeout

    @property
    def running(self) -> bool:
        return self._subscription is not None

    # ---- lifecycle ----

    def start(self) -> None:
        """Begin tracking. Must be called from inside the event loop."""
        if not self.enabled or self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._subscription = self.storage.subscribe(self._on_storage_event)

        # A suspended instance may wake up long after the deadline passed.
        if self._shared_deadline_passed():
            self._begin_logout("idle")
            return
        self.touch()

    def stop(self) -> None:
        """Cancel timers and stop listening. An in-flight logout still completes."""
        self._cancel_timers()
        if self._subscription is not None:
            self.storage.unsubscribe(self._subscription)
            self._subscription = None

    async def wait_for_logout(self) -> None:
        if self._logout_task is not None:
            await asyncio.shield(self._logout_task)

    async def logout(self) -> None:
        """Log out on user request and wait until the server call is done."""
        if self.running and self.state is not IdleState.EXPIRED:
            self._begin_logout("logout")
        elif not self.running and self._logout_task is None:
            if self.client is not None:
                await self.client.logout()
            clear_session_data(self.storage)
        await self.wait_for_logout()

    # ---- activity ----

    def touch(self) -> None:
        """Record a user interaction and restart the timers."""
        if not self.running or self.state is IdleState.EXPIRED:
            return
        now = self.clock()
        self.storage.set(LAST_ACTIVITY_KEY, str(int(now * 1000)), origin=self._subscription)
        self.storage.set(SESSION_ACTIVE_KEY, "true", origin=self._subscription)
        self.state = IdleState.ACTIVE
        self._schedule(now)

    def check(self) -> IdleState:
        """Re-read the shared storage and react to a missed logout or expiry."""
        if not self.running or self.state is IdleState.EXPIRED:
            return self.state
        if self.storage.get(SESSION_ACTIVE_KEY) is None:
            self._mirror_logout()
        elif self._shared_deadline_passed():
            self._begin_logout("idle")
        return self.state

    # ---- timers ----

    def _shared_last_activity(self) -> Optional[float]:
        raw = self.storage.get(LAST_ACTIVITY_KEY)
        if not raw:
            return None
        try:
            return int(raw) / 1000.0
        except ValueError:
            return None

    def _shared_deadline_passed(self) -> bool:
        last = self._shared_last_activity()
        if last is None:
            return False
        return self.clock() - last >= self.timeout

    def _cancel_timers(self) -> None:
        for handle in (self._warning_handle, self._logout_handle):
            if handle is not None:
                handle.cancel()
        self._warning_handle = None
        self._logout_handle = None

    def _schedule(self, last_activity: float) -> None:
        self._cancel_timers()
        now = self.clock()
        deadline = last_activity + self.timeout
        if self.warning_enabled and self.state is IdleState.ACTIVE:
            warn_at = deadline - self.warning_time
            self._warning_handle = self._loop.call_later(max(warn_at - now, 0), self._on_warning_timer)
        self._logout_handle = self._loop.call_later(max(deadline - now, 0), self._on_logout_timer)

    def _on_warning_timer(self) -> None:
        self._warning_handle = None
        if self.state is not IdleState.ACTIVE:
            return
        last = self._shared_last_activity()
        now = self.clock()
        if last is not None and last + self.timeout - self.warning_time > now:
            # A sibling was active in the meantime.
            self._schedule(last)
            return
        self.state = IdleState.WARNING
        remaining = (last + self.timeout - now) if last is not None else self.warning_time
        self.on_warning(max(remaining, 0.0))

    def _on_logout_timer(self) -> None:
        self._logout_handle = None
        if self.state is IdleState.EXPIRED:
            return
        last = self._shared_last_activity()
        if last is not None and last + self.timeout > self.clock():
            self._schedule(last)
            return
        self._begin_logout("idle")

    # ---- logout ----

    def _begin_logout(self, reason: str) -> None:
        if self.state is IdleState.EXPIRED:
            return
        logger.info("Session logout reason=%s", reason)
        self.state = IdleState.EXPIRED
        self._cancel_timers()
        if reason == "idle" and self.on_idle:
            self.on_idle()
        # Siblings are notified synchronously and stand down before their
        # own timers can fire, so only one instance calls the server.
        clear_session_data(self.storage, origin=self._subscription)
        self._logout_task = self._loop.create_task(self._perform_logout(reason))

    async def _perform_logout(self, reason: str) -> None:
        try:
            if self.client is not None:
                await self.client.logout()
        except Exception:
            logger.exception("Logout request failed reason=%s", reason)
        finally:
            if self.client is not None:
                self.client.session.clear_cached_user()
            self.stop()
            if self.navigate:
                self.navigate(f"/login?reason={reason}")

    def _mirror_logout(self) -> None:
        if self.state is IdleState.EXPIRED:
            return
        logger.info("Sibling logged out; mirroring logout")
        self.state = IdleState.EXPIRED
        self.stop()
        if self.client is not None:
            self.client.session.clear_cached_user()
        if self.navigate:
            self.navigate("/login?reason=logout")

    def _on_storage_event(self, event: StorageEvent) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._handle_storage_event(event)
        else:
            loop.call_soon_threadsafe(self._handle_storage_event, event)

    def _handle_storage_event(self, event: StorageEvent) -> None:
        if self.state is IdleState.EXPIRED:
            return
        if event.key == SESSION_ACTIVE_KEY and event.new_value is None:
            self._mirror_logout()
        elif event.key == LAST_ACTIVITY_KEY and event.new_value:
            last = self._shared_last_activity()
            if last is not None:
                self.state = IdleState.ACTIVE
                self._schedule(last)

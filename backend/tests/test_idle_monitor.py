import asyncio
import time

import httpx
import pytest

from tourney.client.api_client import SecureClient
from tourney.client.idle import (
    LAST_ACTIVITY_KEY,
    SESSION_ACTIVE_KEY,
    IdleMonitor,
    IdleState,
    InMemoryActivityStorage,
    clear_session_data,
    has_active_session,
    session_remaining_time,
)
from tourney.client.session import ClientSession


class FakeClient:
    """Stands in for SecureClient; records server-side logouts."""

    def __init__(self, key):
        self.session = ClientSession.for_key(key)
        self.session.set_cached_user({"id": "u1"}, "csrf")
        self.logout_calls = 0

    async def logout(self):
        self.logout_calls += 1
        self.session.clear_cached_user()


def _monitor(storage, **kwargs):
    navigated = []
    kwargs.setdefault("navigate", navigated.append)
    monitor = IdleMonitor(storage, **kwargs)
    return monitor, navigated


def test_storage_notifies_everyone_but_the_writer():
    storage = InMemoryActivityStorage()
    seen_a, seen_b = [], []
    a = storage.subscribe(seen_a.append)
    storage.subscribe(seen_b.append)

    storage.set("k", "1", origin=a)
    storage.set("k", "1", origin=a)
    storage.remove("k")
    storage.remove("k")

    assert seen_a == [seen_b[1]]
    assert [(e.key, e.old_value, e.new_value) for e in seen_b] == [("k", None, "1"), ("k", "1", None)]


@pytest.mark.asyncio
async def test_no_logout_before_timeout_and_logout_after():
    client = FakeClient("idle-1")
    idle_calls = []
    monitor, navigated = _monitor(
        InMemoryActivityStorage(), client=client, timeout=0.3, warning_time=0, on_idle=lambda: idle_calls.append(1)
    )
    monitor.start()

    await asyncio.sleep(0.2)
    assert monitor.state is IdleState.ACTIVE
    assert navigated == []

    await asyncio.sleep(0.2)
    await monitor.wait_for_logout()
    assert monitor.state is IdleState.EXPIRED
    assert idle_calls == [1]
    assert client.logout_calls == 1
    assert client.session.cached_user is None
    assert navigated == ["/login?reason=idle"]
    monitor.stop()


@pytest.mark.asyncio
async def test_activity_postpones_the_deadline():
    monitor, navigated = _monitor(InMemoryActivityStorage(), timeout=0.3, warning_time=0)
    monitor.start()
    for _ in range(3):
        await asyncio.sleep(0.15)
        monitor.touch()

    assert monitor.state is IdleState.ACTIVE
    assert navigated == []
    monitor.stop()


@pytest.mark.asyncio
async def test_warning_fires_before_logout():
    warnings = []
    monitor, navigated = _monitor(
        InMemoryActivityStorage(), timeout=0.4, warning_time=0.2, on_warning=warnings.append
    )
    monitor.start()

    await asyncio.sleep(0.3)
    assert monitor.state is IdleState.WARNING
    assert len(warnings) == 1
    assert 0 < warnings[0] <= 0.2

    monitor.touch()
    assert monitor.state is IdleState.ACTIVE
    monitor.stop()


@pytest.mark.asyncio
async def test_warning_is_skipped_when_not_shorter_than_timeout():
    warnings = []
    monitor, navigated = _monitor(
        InMemoryActivityStorage(), timeout=0.2, warning_time=0.5, on_warning=warnings.append
    )
    assert not monitor.warning_enabled
    monitor.start()

    await asyncio.sleep(0.3)
    await monitor.wait_for_logout()
    assert warnings == []
    assert navigated == ["/login?reason=idle"]


@pytest.mark.asyncio
async def test_stale_activity_logs_out_immediately_on_start():
    storage = InMemoryActivityStorage()
    storage.set(LAST_ACTIVITY_KEY, str(int((time.time() - 120) * 1000)))
    storage.set(SESSION_ACTIVE_KEY, "true")
    client = FakeClient("idle-stale")

    monitor, navigated = _monitor(storage, client=client, timeout=60)
    monitor.start()
    assert monitor.state is IdleState.EXPIRED

    await monitor.wait_for_logout()
    assert client.logout_calls == 1
    assert navigated == ["/login?reason=idle"]
    assert storage.get(SESSION_ACTIVE_KEY) is None


@pytest.mark.asyncio
async def test_disabled_monitor_does_nothing():
    storage = InMemoryActivityStorage()
    monitor, navigated = _monitor(storage, timeout=0.05, enabled=False)
    monitor.start()
    await asyncio.sleep(0.1)
    assert not monitor.running
    assert storage.get(LAST_ACTIVITY_KEY) is None
    assert navigated == []


@pytest.mark.asyncio
async def test_sibling_logout_is_mirrored_without_server_call():
    storage = InMemoryActivityStorage()
    client_a, client_b = FakeClient("tab-a"), FakeClient("tab-b")
    tab_a, nav_a = _monitor(storage, client=client_a, timeout=0.2, warning_time=0)
    tab_b, nav_b = _monitor(storage, client=client_b, timeout=10, warning_time=0)
    tab_a.start()
    tab_b.start()

    await asyncio.sleep(0.35)
    await tab_a.wait_for_logout()

    assert nav_a == ["/login?reason=idle"]
    assert nav_b == ["/login?reason=logout"]
    assert client_a.logout_calls == 1
    assert client_b.logout_calls == 0
    assert client_b.session.cached_user is None
    assert tab_b.state is IdleState.EXPIRED


@pytest.mark.asyncio
async def test_activity_in_one_tab_keeps_the_other_alive():
    storage = InMemoryActivityStorage()
    client_a, client_b = FakeClient("tab-a"), FakeClient("tab-b")
    tab_a, nav_a = _monitor(storage, client=client_a, timeout=0.3, warning_time=0)
    tab_b, nav_b = _monitor(storage, client=client_b, timeout=0.3, warning_time=0)
    tab_a.start()
    tab_b.start()

    await asyncio.sleep(0.2)
    tab_b.touch()
    await asyncio.sleep(0.2)
    assert tab_a.state is IdleState.ACTIVE

    # Both idle now: exactly one of them calls the server.
    await asyncio.sleep(0.3)
    await tab_a.wait_for_logout()
    await tab_b.wait_for_logout()
    assert client_a.logout_calls + client_b.logout_calls == 1
    assert sorted(nav_a + nav_b) == ["/login?reason=idle", "/login?reason=logout"]


@pytest.mark.asyncio
async def test_check_catches_a_deadline_missed_while_suspended():
    now = [1_000.0]
    monitor, navigated = _monitor(InMemoryActivityStorage(), timeout=60, clock=lambda: now[0])
    monitor.start()
    assert monitor.check() is IdleState.ACTIVE

    now[0] += 61
    assert monitor.check() is IdleState.EXPIRED
    await monitor.wait_for_logout()
    assert navigated == ["/login?reason=idle"]


def test_session_storage_helpers():
    storage = InMemoryActivityStorage()
    assert not has_active_session(storage)
    assert session_remaining_time(storage, timeout=60, clock=lambda: 1_000.0) == 0.0

    storage.set(LAST_ACTIVITY_KEY, str(1_000 * 1000))
    storage.set(SESSION_ACTIVE_KEY, "true")
    assert has_active_session(storage)
    assert session_remaining_time(storage, timeout=60, clock=lambda: 1_045.0) == 15.0
    assert session_remaining_time(storage, timeout=60, clock=lambda: 1_100.0) == 0.0

    seen = []
    storage.subscribe(seen.append)
    clear_session_data(storage)
    assert not has_active_session(storage)
    assert storage.get(LAST_ACTIVITY_KEY) is None
    assert {event.key for event in seen} == {LAST_ACTIVITY_KEY, SESSION_ACTIVE_KEY}


@pytest.mark.asyncio
async def test_manual_logout_is_mirrored_by_siblings():
    storage = InMemoryActivityStorage()
    client_a, client_b = FakeClient("tab-a"), FakeClient("tab-b")
    idle_calls = []
    tab_a, nav_a = _monitor(storage, client=client_a, timeout=10, on_idle=lambda: idle_calls.append(1))
    tab_b, nav_b = _monitor(storage, client=client_b, timeout=10)
    tab_a.start()
    tab_b.start()

    await tab_a.logout()

    assert nav_a == ["/login?reason=logout"]
    assert nav_b == ["/login?reason=logout"]
    assert idle_calls == []
    assert client_a.logout_calls == 1
    assert client_b.logout_calls == 0
    assert tab_b.check() is IdleState.EXPIRED
    assert not has_active_session(storage)


@pytest.mark.asyncio
async def test_client_logout_reaches_sibling_monitors():
    def server(request):
        return httpx.Response(200, json={"success": True})

    storage = InMemoryActivityStorage()
    transport = httpx.MockTransport(server)
    async with SecureClient("http://testserver", transport=transport) as tab_a, \
            SecureClient("http://testserver", transport=transport) as tab_b:
        monitor_a, nav_a = _monitor(storage, client=tab_a, timeout=10)
        monitor_b, nav_b = _monitor(storage, client=tab_b, timeout=10)
        assert tab_a.activity_storage is storage
        monitor_a.start()
        monitor_b.start()
        assert monitor_b.check() is IdleState.ACTIVE

        await tab_a.logout()

        assert monitor_b.check() is IdleState.EXPIRED
        assert monitor_a.state is IdleState.EXPIRED
        assert nav_b == ["/login?reason=logout"]
        assert not has_active_session(storage)

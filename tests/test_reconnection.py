import asyncio

import pytest

from support_panel.domain import InstanceStatus, SessionState

pytestmark = pytest.mark.asyncio


async def start_connected(manager, factory, agent_id=7):
    instance = await manager.start_instance(agent_id, "Maria")
    await factory.for_agent(agent_id)[-1].emit_logged_in()
    return instance


async def test_qr_timeout_regenerates_qr(manager, factory):
    instance = await manager.start_instance(7, "Maria")
    client = factory.clients[0]
    await client.emit_qr("2@abc")

    await client.emit_status(SessionState.SESSION_CLOSED, reason=408)

    assert instance.status == InstanceStatus.DISCONNECTED
    assert instance.qr_payload is None
    assert instance.qr_regeneration_attempts == 1
    assert instance.first_qr_generated is False
    assert [t.attempt_number for t in manager.scheduler.pending()] == [1]

    await asyncio.sleep(0.05)

    assert len(factory.clients) == 2
    assert client.closed
    assert manager.get_instance(7).qr_regeneration_attempts == 1


async def test_qr_regeneration_stops_at_limit(manager, factory):
    instance = await manager.start_instance(7, "Maria")
    instance.qr_regeneration_attempts = instance.max_qr_regenerations

    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=408)

    assert instance.qr_regeneration_attempts == instance.max_qr_regenerations + 1
    assert not manager.scheduler.has_pending(7)


async def test_never_connected_is_not_reconnected(manager, factory):
    await manager.start_instance(7, "Maria")

    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=428)

    assert not manager.scheduler.has_pending(7)


async def test_unexpected_drop_reconnects_with_first_attempt(manager, factory):
    instance = await start_connected(manager, factory)
    instance.reconnect_attempts = 2

    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=428)

    assert instance.reconnect_attempts == 0
    assert [t.attempt_number for t in manager.scheduler.pending()] == [1]

    await asyncio.sleep(0.05)
    assert len(factory.clients) == 2


async def test_device_unlinked_is_not_reconnected(manager, factory):
    await start_connected(manager, factory)

    await factory.clients[0].emit_status(SessionState.DEVICE_DISCONNECTED, reason=401)

    assert not manager.scheduler.has_pending(7)


async def test_auth_failure_wipes_session_and_backs_off(manager, factory, settings):
    instance = await start_connected(manager, factory)
    instance.reconnect_attempts = 1
    credential_dir = settings.session.sessions_dir / "user_7"
    (credential_dir / "Cookies").write_text("session")

    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=403)

    assert instance.reconnect_attempts == 2
    assert instance.has_been_connected is False
    assert not credential_dir.exists()
    task = manager.scheduler.pending()[0]
    assert task.attempt_number == 2
    assert task.delay_seconds == pytest.approx(0.02)


async def test_auth_failure_gives_up_after_max_attempts(manager, factory, settings):
    instance = await start_connected(manager, factory)
    instance.reconnect_attempts = instance.max_reconnect_attempts
    credential_dir = settings.session.sessions_dir / "user_7"

    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=405)

    assert instance.reconnect_attempts == instance.max_reconnect_attempts + 1
    assert not manager.scheduler.has_pending(7)
    assert credential_dir.exists()


async def test_auth_failure_count_survives_restart(manager, factory):
    instance = await start_connected(manager, factory)

    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=401)
    assert instance.reconnect_attempts == 1

    await asyncio.sleep(0.05)

    restarted = manager.get_instance(7)
    assert restarted is not instance
    assert restarted.reconnect_attempts == 1


async def test_drop_notification_reaches_observers(manager, factory):
    seen = []

    async def observer(event):
        seen.append(event)

    manager.add_disconnect_observer(observer)
    await start_connected(manager, factory)

    await factory.clients[0].emit_status(SessionState.DEVICE_DISCONNECTED, reason=401)

    assert len(seen) == 1
    assert seen[0].agent_id == 7
    assert seen[0].reason == 401
    assert seen[0].logged_out is True


async def test_connection_cancels_pending_reconnection(manager, factory):
    await start_connected(manager, factory)
    await factory.clients[0].emit_status(SessionState.SESSION_CLOSED, reason=428)
    assert manager.scheduler.has_pending(7)

    await factory.clients[0].emit_logged_in()

    assert not manager.scheduler.has_pending(7)
